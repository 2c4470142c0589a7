"""
order_executor.py - Guarded order execution

Turns engine decisions into ledger mutations, either directly at the quoted
price (paper) or after a market order fills on the exchange (live).

A per-strategy KeyedTryLock guards every buy/sell: a second request for the
same strategy while the first is still in flight is rejected with
"in progress" instead of waiting. The guard applies in both paper and live
mode.
"""
from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Set

from core.config import RiskConfig
from core.state import Environment
from execution.ledger import AllocationLedger
from monitoring.logger import log_error
from risk.risk_manager import RiskManager, check_exit_condition

logger = logging.getLogger(__name__)


class KeyedTryLock:
    """Non-blocking per-key mutual exclusion."""

    def __init__(self):
        self._held: Set[str] = set()
        self._lock = threading.Lock()

    def try_acquire(self, key: str) -> bool:
        with self._lock:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._held.discard(key)

    def is_held(self, key: str) -> bool:
        with self._lock:
            return key in self._held

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[bool]:
        """Yield True if the key was acquired (and release it on exit), else False."""
        acquired = self.try_acquire(key)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)


class OrderExecutor:
    def __init__(self, ledger: AllocationLedger, gateway=None, risk_manager: Optional[RiskManager] = None,
                 environment: Environment = Environment.PAPER, slippage_buffer: float = 0.0):
        self.ledger = ledger
        self.gateway = gateway
        self.risk_manager = risk_manager
        self.environment = Environment(environment)
        self.slippage_buffer = max(0.0, float(slippage_buffer))
        self.locks = KeyedTryLock()

    @property
    def is_live(self) -> bool:
        return self.environment == Environment.LIVE

    def is_pending(self, strategy_id: str) -> bool:
        return self.locks.is_held(strategy_id)

    async def buy(self, session_id: int, strategy_id: str, symbol: str, price: float,
                  signal_data: Optional[Dict[str, Any]] = None, size_multiplier: float = 1.0) -> Dict[str, Any]:
        """
        Open an entry for a strategy.

        Args:
            price: Quoted price used for sizing (and for the fill in paper mode); live
                entries are sized at `price * (1 + slippage_buffer)`
            size_multiplier: Risk scaling applied to the entry size

        Returns:
            Ledger result dict; {"success": False, "reason": "in progress"} under contention
        """
        async with self.locks.hold(strategy_id) as acquired:
            if not acquired:
                return {'success': False, 'reason': 'in progress'}

            if not self.is_live:
                return self.ledger.paper_buy(session_id, strategy_id, symbol, price,
                                             signal_data=signal_data, size_multiplier=size_multiplier).to_dict()

            sized = self.ledger.size_entry(session_id, strategy_id, price * (1 + self.slippage_buffer),
                                           size_multiplier=size_multiplier)
            if not sized.success:
                return sized.to_dict()
            try:
                fill = await self.gateway.submit_market_order(symbol, 'buy', sized.quantity)
            except Exception as e:
                logger.error(f"[Executor] live buy failed for {strategy_id}: {e}")
                log_error('executor.order_failed', str(e), {'side': 'buy', 'strategy_id': strategy_id, 'symbol': symbol})
                return {'success': False, 'reason': f"order failed: {e}"}

            recorded = self.ledger.record_buy(
                session_id, strategy_id, symbol,
                price=float(fill['filled_price']),
                quantity=float(fill['filled_quantity']),
                fee=fill.get('fee'),
                is_paper=False,
                signal_data=dict(signal_data or {}, order_id=fill.get('order_id')),
                clamp_to_cash=True,
            )
            if not recorded.success:
                logger.error(f"[Executor] filled buy for {strategy_id} not recorded: {recorded.reason}")
                log_error('executor.unrecorded_fill', recorded.reason,
                          {'strategy_id': strategy_id, 'symbol': symbol, 'order_id': fill.get('order_id'),
                           'filled_price': fill['filled_price'], 'filled_quantity': fill['filled_quantity']})
            return recorded.to_dict()

    async def sell(self, session_id: int, strategy_id: str, trade: Dict[str, Any], price: float,
                   reason: str = "", exit_indicators: Optional[Dict[str, float]] = None) -> Dict[str, Any]:
        """Close an open trade of a strategy."""
        async with self.locks.hold(strategy_id) as acquired:
            if not acquired:
                return {'success': False, 'reason': 'in progress'}

            exit_price, exit_fee, filled = price, None, None
            if self.is_live:
                try:
                    fill = await self.gateway.submit_market_order(trade['symbol'], 'sell', trade['quantity'])
                except Exception as e:
                    logger.error(f"[Executor] live sell failed for {strategy_id} #{trade['id']}: {e}")
                    log_error('executor.order_failed', str(e), {'side': 'sell', 'strategy_id': strategy_id, 'trade_id': trade['id']})
                    return {'success': False, 'reason': f"order failed: {e}"}
                exit_price = float(fill['filled_price'])
                exit_fee = fill.get('fee')
                filled = fill.get('filled_quantity') or None

            return self.ledger.close_position(session_id, trade['id'], exit_price, exit_fee=exit_fee,
                                              reason=reason, exit_indicators=exit_indicators,
                                              quantity=filled).to_dict()

    async def check_and_close_position(self, session_id: int, trade: Dict[str, Any], current_price: float,
                                       config: Optional[RiskConfig] = None) -> Dict[str, Any]:
        """
        Close `trade` if its stop-loss or take-profit has been hit.

        Returns:
            {"closed": False, "reason": None} when no exit applies, else the
            sell result with "closed" and the exit "reason"
        """
        if config is None:
            config = self.risk_manager.get_risk_config() if self.risk_manager else RiskConfig()
        exit_reason = check_exit_condition(trade['side'], trade['entry_price'], current_price, config)
        if exit_reason is None:
            return {'closed': False, 'reason': None}

        result = await self.sell(session_id, trade['strategy_id'], trade, current_price, reason=exit_reason.value)
        result['closed'] = bool(result.get('success'))
        if result['closed']:
            result['reason'] = exit_reason.value
        return result

    def __repr__(self) -> str:
        return f"OrderExecutor(environment={self.environment.value}, ledger={self.ledger!r})"
