"""
ledger.py - Allocation Ledger

Per-session, per-strategy cash/asset bookkeeping and the trade lifecycle
(Open -> Closed). Every mutation runs as one database transaction whose
cash and trade updates are conditional SQL statements:

- a buy only debits cash if `current_usdc >= cost + fee`; an exchange fill
  that already happened is recorded with the debit clamped to free cash
- a close only succeeds if the trade row still has `exit_price IS NULL`

so two racing closes of the same trade cannot both succeed and cash can
never go negative.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import and_, case, insert, select, update
from sqlalchemy.engine import Connection

from monitoring.logger import log_error, log_trade
from persistence.store import Store, sessions, strategy_allocations, trades, utc_midnight, utcnow


logger = logging.getLogger(__name__)

FEE_RATE = 0.001
DEFAULT_ENTRY_WEIGHTS = (0.20, 0.25, 0.25, 0.30)


@dataclass
class LedgerResult:
    """Outcome of a ledger mutation."""
    success: bool
    reason: str = ""
    trade_id: Optional[int] = None
    price: float = 0.0
    quantity: float = 0.0
    fee: float = 0.0
    pnl: Optional[float] = None
    pnl_percent: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'success': self.success,
            'reason': self.reason,
            'trade_id': self.trade_id,
            'price': self.price,
            'quantity': self.quantity,
            'fee': self.fee,
            'pnl': self.pnl,
            'pnl_percent': self.pnl_percent,
        }
        data.update(self.extra)
        return data


class AllocationLedger:
    """
    Capital ledger backed by the store's allocation and trade tables.

    Args:
        store: Persistence store
        fee_rate: Fee charged on both legs as a fraction of notional
        entry_weights: Fraction of the initial allocation used by the n-th entry
    """

    def __init__(self, store: Store, fee_rate: float = FEE_RATE,
                 entry_weights: Sequence[float] = DEFAULT_ENTRY_WEIGHTS):
        if not entry_weights:
            raise ValueError("entry_weights must not be empty")
        self.store = store
        self.fee_rate = fee_rate
        self.entry_weights = tuple(float(w) for w in entry_weights)

    # ------------------------------------------------------------------
    # Session setup
    # ------------------------------------------------------------------
    def create_session(self, initial_balance: float, strategy_ids: Sequence[str]) -> int:
        """
        Create an active session and its equal-weight allocations in one transaction.

        Raises:
            ValueError: If no strategies are given or the balance is not positive
        """
        if not strategy_ids:
            raise ValueError("At least one strategy is required to open a session")
        if initial_balance <= 0:
            raise ValueError(f"Initial balance must be positive, got {initial_balance}")

        per_strategy = initial_balance / len(strategy_ids)
        now = utcnow()
        with self.store.begin() as conn:
            session_id = conn.execute(insert(sessions).values(
                started_at=now,
                initial_balance=initial_balance,
                strategy_count=len(strategy_ids),
                allocation_per_strategy=per_strategy,
                status='active',
            )).inserted_primary_key[0]
            self.initialize_allocations(session_id, strategy_ids, initial_balance, conn=conn)
        logger.info(f"[Ledger] session {session_id} opened: {initial_balance:.2f} across "
                    f"{len(strategy_ids)} strategies ({per_strategy:.2f} each)")
        return session_id

    def initialize_allocations(self, session_id: int, strategy_ids: Sequence[str], balance: float,
                               conn: Optional[Connection] = None) -> float:
        """
        Add equal-weight allocations to a session. Returns the per-strategy amount.

        With `conn` the rows join the caller's transaction.
        """
        if not strategy_ids:
            raise ValueError("At least one strategy is required for allocations")
        per_strategy = balance / len(strategy_ids)
        now = utcnow()
        rows = [{
            'session_id': session_id,
            'strategy_id': sid,
            'initial_usdc': per_strategy,
            'current_usdc': per_strategy,
            'asset_qty': 0.0,
            'trade_count': 0,
            'total_pnl': 0.0,
            'updated_at': now,
        } for sid in strategy_ids]
        if conn is not None:
            conn.execute(insert(strategy_allocations), rows)
        else:
            with self.store.begin() as c:
                c.execute(insert(strategy_allocations), rows)
        return per_strategy

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_allocation(self, session_id: int, strategy_id: str) -> Optional[Dict[str, Any]]:
        with self.store.connect() as conn:
            row = conn.execute(select(strategy_allocations).where(and_(
                strategy_allocations.c.session_id == session_id,
                strategy_allocations.c.strategy_id == strategy_id,
            ))).first()
        return dict(row._mapping) if row is not None else None

    def get_allocations(self, session_id: int) -> List[Dict[str, Any]]:
        with self.store.connect() as conn:
            rows = conn.execute(select(strategy_allocations)
                                .where(strategy_allocations.c.session_id == session_id)
                                .order_by(strategy_allocations.c.strategy_id))
            return [dict(r._mapping) for r in rows]

    def get_open_position(self, session_id: int, strategy_id: str) -> Optional[Dict[str, Any]]:
        """Oldest open trade of a strategy in the session (single-entry discipline)."""
        with self.store.connect() as conn:
            row = conn.execute(select(trades).where(and_(
                trades.c.session_id == session_id,
                trades.c.strategy_id == strategy_id,
                trades.c.exit_price.is_(None),
            )).order_by(trades.c.id)).first()
        return dict(row._mapping) if row is not None else None

    def get_open_positions(self, session_id: int, strategy_id: Optional[str] = None) -> List[Dict[str, Any]]:
        conds = [trades.c.session_id == session_id, trades.c.exit_price.is_(None)]
        if strategy_id is not None:
            conds.append(trades.c.strategy_id == strategy_id)
        with self.store.connect() as conn:
            return [dict(r._mapping) for r in conn.execute(select(trades).where(and_(*conds)).order_by(trades.c.id))]

    def get_total_balance(self, session_id: int, mark_price: float) -> float:
        """Sum of cash plus marked asset value over all allocations."""
        return sum(a['current_usdc'] + a['asset_qty'] * mark_price for a in self.get_allocations(session_id))

    def get_unrealized_pnl(self, session_id: int, mark_price: float) -> float:
        total = 0.0
        for t in self.get_open_positions(session_id):
            direction = 1.0 if t['side'] == 'buy' else -1.0
            total += direction * (mark_price - t['entry_price']) * t['quantity']
        return total

    def get_today_trades(self, session_id: int) -> List[Dict[str, Any]]:
        """Trades of the session closed since UTC midnight."""
        with self.store.connect() as conn:
            rows = conn.execute(select(trades).where(and_(
                trades.c.session_id == session_id,
                trades.c.exit_price.isnot(None),
                trades.c.exit_at >= utc_midnight(),
            )).order_by(trades.c.exit_at))
            return [dict(r._mapping) for r in rows]

    def get_today_pnl(self, session_id: int) -> float:
        return sum(t['pnl'] or 0.0 for t in self.get_today_trades(session_id))

    # ------------------------------------------------------------------
    # Entry
    # ------------------------------------------------------------------
    def entry_weight(self, entry_index: int) -> float:
        return self.entry_weights[min(max(entry_index, 0), len(self.entry_weights) - 1)]

    def size_entry(self, session_id: int, strategy_id: str, price: float,
                   entry_index: Optional[int] = None, size_multiplier: float = 1.0) -> LedgerResult:
        """
        Compute the quantity for the next entry of a strategy.

        Position value is `initial_usdc * entry_weight[entry_index] * size_multiplier`,
        clamped to free cash; the quantity is reduced further so cost plus fee fits.
        """
        alloc = self.get_allocation(session_id, strategy_id)
        if alloc is None:
            return LedgerResult(False, "allocation not found")
        if price <= 0:
            return LedgerResult(False, "invalid price")
        if entry_index is None:
            entry_index = len(self.get_open_positions(session_id, strategy_id))

        position_value = alloc['initial_usdc'] * self.entry_weight(entry_index) * size_multiplier
        position_value = min(position_value, alloc['current_usdc'])
        quantity = position_value / price
        if quantity <= 0:
            return LedgerResult(False, "quantity zero")

        cost = quantity * price
        if cost + cost * self.fee_rate > alloc['current_usdc']:
            quantity = (alloc['current_usdc'] / (1 + self.fee_rate)) / price
            if quantity <= 0:
                return LedgerResult(False, "quantity zero")
        return LedgerResult(True, "", price=price, quantity=quantity, fee=quantity * price * self.fee_rate)

    def paper_buy(self, session_id: int, strategy_id: str, symbol: str, price: float,
                  signal_data: Optional[Dict[str, Any]] = None, size_multiplier: float = 1.0) -> LedgerResult:
        """Size and record a simulated buy at `price`."""
        sized = self.size_entry(session_id, strategy_id, price, size_multiplier=size_multiplier)
        if not sized.success:
            return sized
        return self.record_buy(session_id, strategy_id, symbol, price, sized.quantity,
                               fee=None, is_paper=True, signal_data=signal_data)

    def record_buy(self, session_id: int, strategy_id: str, symbol: str, price: float, quantity: float,
                   fee: Optional[float] = None, is_paper: bool = True,
                   signal_data: Optional[Dict[str, Any]] = None, clamp_to_cash: bool = False) -> LedgerResult:
        """
        Insert an open trade and debit the allocation, atomically.

        Args:
            fee: Actual fee (live fills); None computes it from the fee rate
            clamp_to_cash: Record the trade even if the debit exceeds free cash,
                debiting only what is left. Used for exchange fills, which have
                already happened and must not be dropped.

        Returns:
            LedgerResult; without `clamp_to_cash` fails with "insufficient funds"
            if the debit would make cash negative, leaving no trade row behind
        """
        if quantity <= 0:
            return LedgerResult(False, "quantity zero")
        cost = quantity * price
        fee = cost * self.fee_rate if fee is None else float(fee)
        debit = cost + fee
        now = utcnow()
        shortfall = 0.0

        with self.store.begin() as conn:
            conds = [
                strategy_allocations.c.session_id == session_id,
                strategy_allocations.c.strategy_id == strategy_id,
            ]
            if clamp_to_cash:
                cash = conn.execute(select(strategy_allocations.c.current_usdc).where(and_(*conds))).scalar()
                if cash is not None:
                    shortfall = max(debit - cash, 0.0)
            else:
                conds.append(strategy_allocations.c.current_usdc >= debit - 1e-9)
            debited = conn.execute(update(strategy_allocations).where(and_(*conds)).values(
                current_usdc=case(
                    (strategy_allocations.c.current_usdc - debit < 0, 0.0),
                    else_=strategy_allocations.c.current_usdc - debit,
                ),
                asset_qty=strategy_allocations.c.asset_qty + quantity,
                updated_at=now,
            )).rowcount
            if debited == 0:
                reason = "insufficient funds" if self._has_allocation(conn, session_id, strategy_id) \
                    else "allocation not found"
                return LedgerResult(False, reason)

            trade_id = conn.execute(insert(trades).values(
                session_id=session_id,
                strategy_id=strategy_id,
                symbol=symbol,
                side='buy',
                entry_price=price,
                quantity=quantity,
                fee=fee,
                is_paper=is_paper,
                signal_data=signal_data or {},
                entry_at=now,
            )).inserted_primary_key[0]

        if shortfall > 1e-9:
            log_error('ledger.fill_exceeds_cash', f"debit {debit:.4f} exceeded free cash by {shortfall:.4f}",
                      {'trade_id': trade_id, 'session_id': session_id, 'strategy_id': strategy_id,
                       'price': price, 'quantity': quantity, 'shortfall': shortfall})
        log_trade({'trade_id': trade_id, 'session_id': session_id, 'strategy_id': strategy_id,
                   'side': 'buy', 'price': price, 'quantity': quantity, 'fee': fee, 'paper': is_paper})
        logger.info(f"[Ledger] BUY {strategy_id} #{trade_id}: {quantity:.6f} @ {price:.6f} (fee {fee:.4f})")
        return LedgerResult(True, "bought", trade_id, price, quantity, fee)

    # ------------------------------------------------------------------
    # Exit
    # ------------------------------------------------------------------
    def close_position(self, session_id: int, trade_id: int, price: float,
                       exit_fee: Optional[float] = None, reason: str = "",
                       exit_indicators: Optional[Dict[str, float]] = None,
                       quantity: Optional[float] = None) -> LedgerResult:
        """
        Close an open trade at `price`, credit the allocation and append a lesson.

        `quantity` is the exchange's filled quantity when it differs from the
        trade's; proceeds, pnl and the asset reduction follow the filled amount.

        Returns:
            LedgerResult with pnl; `success=False, reason="not found"` when the
            trade does not exist in the session or is already closed
        """
        now = utcnow()
        with self.store.begin() as conn:
            row = conn.execute(select(trades).where(and_(
                trades.c.id == trade_id,
                trades.c.session_id == session_id,
                trades.c.exit_price.is_(None),
            ))).first()
            if row is None:
                return LedgerResult(False, "not found", trade_id)
            trade = dict(row._mapping)

            qty = trade['quantity'] if quantity is None else float(quantity)
            if abs(qty - trade['quantity']) > 1e-12:
                logger.warning(f"[Ledger] #{trade_id} filled {qty:.6f} of {trade['quantity']:.6f}")
            revenue = qty * price
            fee = revenue * self.fee_rate if exit_fee is None else float(exit_fee)
            entry_fee = trade['fee'] or 0.0
            if trade['side'] == 'buy':
                pnl = revenue - qty * trade['entry_price'] - fee - entry_fee
                pnl_percent = (price - trade['entry_price']) / trade['entry_price'] * 100
            else:
                pnl = qty * trade['entry_price'] - revenue - fee - entry_fee
                pnl_percent = (trade['entry_price'] - price) / trade['entry_price'] * 100
            cash_delta = revenue - fee

            closed = conn.execute(update(trades).where(and_(
                trades.c.id == trade_id,
                trades.c.exit_price.is_(None),
            )).values(
                exit_price=price,
                pnl=pnl,
                pnl_percent=pnl_percent,
                fee=entry_fee + fee,
                exit_reason=reason or None,
                exit_at=now,
            )).rowcount
            if closed == 0:
                return LedgerResult(False, "not found", trade_id)

            conn.execute(update(strategy_allocations).where(and_(
                strategy_allocations.c.session_id == session_id,
                strategy_allocations.c.strategy_id == trade['strategy_id'],
            )).values(
                current_usdc=case(
                    (strategy_allocations.c.current_usdc + cash_delta < 0, 0.0),
                    else_=strategy_allocations.c.current_usdc + cash_delta,
                ),
                asset_qty=case(
                    (strategy_allocations.c.asset_qty - qty < 0, 0.0),
                    else_=strategy_allocations.c.asset_qty - qty,
                ),
                trade_count=strategy_allocations.c.trade_count + 1,
                total_pnl=strategy_allocations.c.total_pnl + pnl,
                updated_at=now,
            ))

            signal_data = trade.get('signal_data') or {}
            self.store.add_lesson({
                'strategy_id': trade['strategy_id'],
                'trade_id': trade_id,
                'entry_indicators': signal_data.get('indicators') or {},
                'exit_indicators': exit_indicators,
                'pnl': pnl,
                'pnl_percent': pnl_percent,
                'hold_duration': (now - trade['entry_at']).total_seconds() if trade.get('entry_at') else None,
                'market_regime': signal_data.get('regime'),
                'created_at': now,
            }, conn=conn)

        log_trade({'trade_id': trade_id, 'session_id': session_id, 'strategy_id': trade['strategy_id'],
                   'side': 'close', 'price': price, 'quantity': qty, 'fee': fee, 'pnl': pnl, 'reason': reason})
        logger.info(f"[Ledger] CLOSE {trade['strategy_id']} #{trade_id} @ {price:.6f}: "
                    f"pnl {pnl:.4f} ({pnl_percent:+.2f}%) {reason}")
        return LedgerResult(True, reason or "closed", trade_id, price, qty, fee, pnl, pnl_percent,
                            extra={'strategy_id': trade['strategy_id']})

    @staticmethod
    def _has_allocation(conn, session_id: int, strategy_id: str) -> bool:
        return conn.execute(select(strategy_allocations.c.strategy_id).where(and_(
            strategy_allocations.c.session_id == session_id,
            strategy_allocations.c.strategy_id == strategy_id,
        ))).first() is not None

    def __repr__(self) -> str:
        return f"AllocationLedger(fee_rate={self.fee_rate}, entry_weights={list(self.entry_weights)})"
