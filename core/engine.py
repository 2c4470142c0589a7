"""
engine.py - Trading Engine

Drives the whole system from one asyncio event loop:

- start(): liquidate and close any previous session, size the new session
  from the wallet (or the paper balance), split it equally across the
  enabled strategies, run a first tick and schedule the periodic tick
- tick(): fetch candles (cached) and the ticker, then for every enabled
  strategy either manage its open position (SL/TP, sell signal) or consider
  a new entry (learner adjustment, adaptive threshold, portfolio and
  strategy risk checks)
- stop(): wait for any in-flight tick, close everything, end the session,
  update the learner
- daily_reset(): at UTC midnight, reset risk counters, record yesterday's
  performance and update the learner
- rebalance(): re-tune strategies in a worker thread
- current_signals(): weighted vote of all enabled strategies (read-only)

Engine state is a typed EngineState persisted on every transition.
"""

import asyncio
import logging
from dataclasses import dataclass, asdict
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ai.adaptive_learner import AdaptiveLearner
from ai.grid_search import GridSearchOptimizer
from ai.rebalancer import Rebalancer
from ai.walk_forward_engine import WalkForwardValidator
from ai.weight_adjuster import WeightAdjuster
from backtesting.engine import CostModel
from core.config import DEFAULT_CONFIG, build_risk_configs, deep_merge
from core.scheduler import Scheduler
from core.state import EngineState, EngineStatus, Environment
from data.candles import CandleCache, fetch_history
from execution.ledger import AllocationLedger
from execution.order_executor import OrderExecutor
from monitoring.logger import log_error, log_event, log_strategy_event
from persistence.store import Store, day_bounds, utcnow
from risk.risk_manager import RiskManager
from strategies.aggregator import SignalAggregator, config_from_row, init_strategy_configs
from strategies.base import SignalAction
from strategies.registry import get_strategy
from strategies.regime_detector import RegimeDetector


logger = logging.getLogger(__name__)

TICK_TIMER = "tick"
DAILY_RESET_TIMER = "daily_reset"
ENGINE_STATE_KEY = "engine"


def build_rebalancer(config: Dict[str, Any], store: Store) -> Rebalancer:
    """Rebalancer wired from the `optimization`, `trading` and `exchange` config sections."""
    optimization = config['optimization']
    cost_model = CostModel(initial_balance=float(config['trading']['paper_initial_balance']),
                           fee_rate=float(config['trading']['fee_rate']),
                           slippage_rate=float(config['exchange']['paper_slippage_rate']))
    workers = int(optimization['max_workers'])
    return Rebalancer(
        store, config['trading']['symbol'], config['trading']['timeframe'],
        max_workers=workers,
        optimize_for=optimization['optimize_for'],
        min_candles=int(optimization['rebalance_min_candles']),
        cost_model=cost_model,
        optimizer=GridSearchOptimizer(max_workers=workers,
                                      max_combinations=int(optimization['max_combinations']),
                                      cost_model=cost_model),
        validator=WalkForwardValidator(in_sample_ratio=float(optimization['in_sample_ratio']),
                                       min_pass_ratio=float(optimization['min_pass_ratio']),
                                       cost_model=cost_model),
    )


@dataclass
class TickOutcome:
    """What happened to one strategy during a tick."""
    strategy_id: str
    action: str = "hold"
    reason: str = ""
    success: bool = False
    trade_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TradingEngine:
    """
    Multi-strategy trading engine.

    Args:
        config: Full configuration dict (see core.config.DEFAULT_CONFIG)
        store: Persistence store
        gateway: ExchangeGateway used for market data and (live) orders
        scheduler: Timer abstraction (a fresh Scheduler if omitted)
    """

    def __init__(self, config: Optional[Dict[str, Any]], store: Store, gateway, scheduler: Optional[Scheduler] = None):
        self.config = deep_merge(DEFAULT_CONFIG, config or {})
        self.store = store
        self.gateway = gateway
        self.scheduler = scheduler or Scheduler()

        trading = self.config['trading']
        self.environment = Environment(self.config['environment'])
        self.symbol = trading['symbol']
        self.timeframe = trading['timeframe']
        self.tick_interval = float(trading['tick_interval_seconds'])
        self.candle_limit = int(trading['candle_fetch_limit'])
        self.min_candles = int(trading['min_candles'])
        self.sell_min_confidence = float(trading['sell_signal_min_confidence'])

        self.ledger = AllocationLedger(store, trading['fee_rate'], trading['entry_size_weights'])
        self.risk_manager = RiskManager(store, build_risk_configs(self.config))
        self.executor = OrderExecutor(self.ledger, gateway, self.risk_manager, self.environment,
                                      slippage_buffer=self.config['exchange']['live_slippage_buffer'])
        self.learner = AdaptiveLearner(store)
        self.regime_detector = RegimeDetector()
        self.aggregator = SignalAggregator()
        self.weight_adjuster = WeightAdjuster()
        self.rebalancer = build_rebalancer(self.config, store)
        self.candle_cache = CandleCache(trading['candle_cache_ttl_seconds'])

        self.state = EngineState.from_dict(store.load_engine_state(ENGINE_STATE_KEY))
        # a persisted RUNNING status means the previous process died; timers are gone
        if self.state.status != EngineStatus.STOPPED:
            self.state.status = EngineStatus.STOPPED
        self._tick_in_progress = False
        self._tick_lock: Optional[asyncio.Lock] = None
        self._rebalance_in_progress = False
        self.last_price: Optional[float] = None
        self._regime_weights: Dict[str, float] = {}

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    def _persist_state(self) -> None:
        self.store.save_engine_state(ENGINE_STATE_KEY, self.state.to_dict())

    def _set_status(self, status: EngineStatus) -> None:
        self.state.status = status
        self._persist_state()
        log_event(f"engine.{status.value}", {'session_id': self.state.session_id})

    @property
    def is_running(self) -> bool:
        return self.state.is_running

    @property
    def tick_lock(self) -> asyncio.Lock:
        """Held by a tick for its whole body and by start/stop while they liquidate."""
        if self._tick_lock is None:
            self._tick_lock = asyncio.Lock()
        return self._tick_lock

    def _session_active(self, session_id: int) -> bool:
        session = self.store.get_session(session_id)
        return session is not None and session['status'] == 'active'

    def _enabled_configs(self):
        return [config_from_row(r) for r in self.store.get_configs(enabled_only=True)
                if get_strategy(r['strategy_id']) is not None]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> Dict[str, Any]:
        """
        Open a new session and begin ticking.

        Returns:
            {"success": bool, "reason": str, "session_id": int | None, "balance": float}
        """
        if self.state.status in (EngineStatus.RUNNING, EngineStatus.STARTING):
            return {'success': False, 'reason': f"engine already {self.state.status.value}",
                    'session_id': self.state.session_id}

        self.state.last_error = None
        self._set_status(EngineStatus.STARTING)
        try:
            return await self._open_session()
        except Exception as e:
            self.scheduler.cancel_all()
            self.state.last_error = f"start failed: {e}"
            self.state.session_id = None
            self._set_status(EngineStatus.STOPPED)
            log_error('engine.start_failed', str(e), exc_info=True)
            return {'success': False, 'reason': self.state.last_error, 'session_id': None}

    async def _open_session(self) -> Dict[str, Any]:
        init_strategy_configs(self.store)
        self.scheduler.cancel_all()
        self.candle_cache.clear()

        async with self.tick_lock:
            previous = self.store.get_active_session()
            if previous is not None:
                closed = await self.close_all_positions(previous['id'])
                self.store.end_session(previous['id'])
                logger.info(f"[Engine] ended previous session {previous['id']} ({closed} positions closed)")

        await self.convert_to_quote()
        balance = await self._starting_balance()
        self.scheduler.run_daily_at_utc_midnight(DAILY_RESET_TIMER, self.daily_reset)

        configs = self._enabled_configs()
        if not configs:
            self.state.last_error = "no enabled strategies"
            self.state.session_id = None
            self.scheduler.cancel_all()
            self._set_status(EngineStatus.STOPPED)
            logger.warning("[Engine] start aborted: no enabled strategies")
            return {'success': False, 'reason': self.state.last_error, 'session_id': None}

        session_id = self.ledger.create_session(balance, [c.strategy_id for c in configs])
        self.state.session_id = session_id
        self.state.started_at = utcnow()
        self.state.skipped_ticks = 0
        self.store.save_engine_state('session_start_balance', {'total': balance,
                                                               'recorded_at': utcnow().isoformat()})
        self._set_status(EngineStatus.RUNNING)
        log_event('engine.start', {'session_id': session_id, 'balance': balance, 'strategies': len(configs),
                                   'environment': self.environment.value, 'symbol': self.symbol})
        logger.info(f"[Engine] session #{session_id}: {balance:.2f} across {len(configs)} strategies, "
                    f"{self.tick_interval:.0f}s ticks on {self.symbol} {self.timeframe}")

        await self.tick()
        self.scheduler.run_periodically(TICK_TIMER, self.tick_interval, self.tick)
        return {'success': True, 'reason': 'started', 'session_id': session_id, 'balance': balance}

    async def stop(self) -> Dict[str, Any]:
        if self.state.status == EngineStatus.STOPPED and self.state.session_id is None:
            return {'success': False, 'reason': 'engine not running'}

        self._set_status(EngineStatus.STOPPING)
        self.scheduler.cancel_all()

        session_id = self.state.session_id
        closed = 0
        if session_id is not None:
            # waits for an in-flight tick to finish
            async with self.tick_lock:
                closed = await self.close_all_positions(session_id)
                self.store.end_session(session_id)

        await self.convert_to_quote()
        self.learner.update_all([c.strategy_id for c in self._enabled_configs()])
        self.candle_cache.clear()

        self.state.session_id = None
        self._set_status(EngineStatus.STOPPED)
        log_event('engine.stop', {'session_id': session_id, 'closed_positions': closed})
        return {'success': True, 'reason': 'stopped', 'session_id': session_id, 'closed_positions': closed}

    async def _starting_balance(self) -> float:
        paper_balance = float(self.config['trading']['paper_initial_balance'])
        if self.environment != Environment.LIVE:
            return paper_balance
        try:
            wallet = await self.gateway.fetch_wallet_balance()
            if wallet['quote'] > 0:
                return float(wallet['quote'])
        except Exception as e:
            logger.warning(f"[Engine] wallet balance unavailable, using paper balance: {e}")
        return paper_balance

    async def convert_to_quote(self) -> Dict[str, Any]:
        """Sell any base-currency holdings back to the quote currency (best effort)."""
        try:
            wallet = await self.gateway.fetch_wallet_balance()
            value = wallet['base'] * wallet['base_price']
            if wallet['base'] <= 0 or value < float(self.config['trading']['min_convert_value']):
                return {'converted': False, 'reason': 'nothing to convert'}
            fill = await self.gateway.submit_market_order(self.symbol, 'sell', wallet['base'])
            logger.info(f"[Engine] converted {fill['filled_quantity']:.4f} {wallet['base_currency']} "
                        f"to {wallet['quote_currency']} @ {fill['filled_price']:.4f}")
            return {'converted': True, **fill}
        except Exception as e:
            logger.warning(f"[Engine] convert to quote failed: {e}")
            return {'converted': False, 'reason': str(e)}

    async def close_all_positions(self, session_id: int) -> int:
        """Close every open trade of the session; falls back to entry price if the ticker fails."""
        positions = self.ledger.get_open_positions(session_id)
        if not positions:
            return 0
        price = None
        try:
            price = (await self.gateway.fetch_ticker(positions[0]['symbol']))['last']
        except Exception as e:
            logger.warning(f"[Engine] ticker unavailable, closing at entry prices: {e}")

        closed = 0
        for trade in positions:
            result = await self.executor.sell(session_id, trade['strategy_id'], trade,
                                              price if price is not None else trade['entry_price'],
                                              reason='session_end')
            if result.get('success'):
                closed += 1
        return closed

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    async def tick(self) -> List[TickOutcome]:
        if not self.is_running or self.state.session_id is None:
            return []
        return await self._run_tick(self.state.session_id)

    async def manual_tick(self) -> List[TickOutcome]:
        """Run one tick on the active session even while the engine is stopped."""
        session_id = self.state.session_id
        if session_id is None:
            active = self.store.get_active_session()
            session_id = active['id'] if active else None
        if session_id is None:
            return []
        return await self._run_tick(session_id)

    async def _run_tick(self, session_id: int) -> List[TickOutcome]:
        if self._tick_in_progress:
            self.state.skipped_ticks += 1
            return []
        self._tick_in_progress = True
        try:
            async with self.tick_lock:
                if not self._session_active(session_id):
                    logger.info(f"[Tick] session {session_id} is no longer active")
                    return []
                return await self._tick_body(session_id)
        finally:
            self._tick_in_progress = False

    async def _tick_body(self, session_id: int) -> List[TickOutcome]:
        outcomes: List[TickOutcome] = []
        try:
            candles = await self.candle_cache.get_or_fetch(
                self.symbol, self.timeframe,
                lambda: self.gateway.fetch_candles(self.symbol, self.timeframe, self.candle_limit))
            if len(candles) < self.min_candles:
                logger.info(f"[Tick] not enough candles: {len(candles)}/{self.min_candles}")
                return []

            price = (await self.gateway.fetch_ticker(self.symbol))['last']
            self.last_price = price
            regime = self.regime_detector.detect(candles)
            self.state.current_regime = regime.to_dict()
            configs = self._enabled_configs()
            self._regime_weights = self.weight_adjuster.adjust(configs, regime).weights

            for config in configs:
                outcome = TickOutcome(config.strategy_id)
                try:
                    await self._tick_strategy(session_id, config, candles, price, regime.regime.value, outcome)
                except Exception as e:
                    outcome.success = False
                    outcome.reason = f"error: {e}"
                    log_error('engine.strategy_error', str(e), {'strategy_id': config.strategy_id})
                outcomes.append(outcome)

            self.state.last_tick = utcnow()
            self._persist_state()
            self._log_tick(price, outcomes)
        except Exception as e:
            self.state.last_error = str(e)
            self.state.last_tick = utcnow()
            self._persist_state()
            log_error('engine.tick_error', str(e), {'session_id': session_id})
        return outcomes

    async def _tick_strategy(self, session_id: int, config, candles, price: float, regime: str,
                             outcome: TickOutcome) -> None:
        strategy = get_strategy(config.strategy_id)
        category = strategy.category.value
        signal = strategy.analyze(candles, strategy.params_with_defaults(config.parameters))
        outcome.action = signal.action.value

        position = self.ledger.get_open_position(session_id, config.strategy_id)
        if position is not None:
            if self.executor.is_pending(config.strategy_id):
                outcome.reason = "in progress"
                return
            closed = await self.executor.check_and_close_position(
                session_id, position, price, self.risk_manager.get_risk_config(category))
            if closed.get('closed'):
                outcome.action, outcome.success = 'sell', True
                outcome.reason, outcome.trade_id = closed['reason'], closed.get('trade_id')
                return
            if signal.action == SignalAction.SELL and signal.confidence >= self.sell_min_confidence:
                result = await self.executor.sell(session_id, config.strategy_id, position, price,
                                                  reason='signal', exit_indicators=signal.indicators)
                outcome.success = bool(result.get('success'))
                outcome.trade_id = result.get('trade_id')
                outcome.reason = (f"strategy sell (conf {signal.confidence:.2f})" if outcome.success
                                  else result.get('reason', ''))
                return
            pnl_pct = (price - position['entry_price']) / position['entry_price'] * 100
            outcome.reason = f"holding (PnL {pnl_pct:.2f}%)"
            return

        if signal.action != SignalAction.BUY:
            outcome.reason = "hold" if signal.action == SignalAction.HOLD else \
                f"{signal.action.value} conf {signal.confidence:.2f}"
            return

        factor, learn_reason = self.learner.get_confidence_adjustment(config.strategy_id, signal.indicators)
        adjusted = signal.confidence * factor
        threshold = self.learner.get_min_confidence(config.strategy_id)
        if adjusted < threshold:
            outcome.reason = (f"learner block: {learn_reason} ({signal.confidence:.2f}->{adjusted:.2f}<{threshold})"
                              if factor < 1.0 else f"weak signal ({adjusted:.2f}<{threshold})")
            return

        portfolio = self.risk_manager.check_risk('buy', self.ledger.get_total_balance(session_id, price), price,
                                                 category)
        if not portfolio.allowed:
            log_strategy_event(config.strategy_id, "risk.portfolio_block", {"reason": portfolio.reason}, level="WARNING")
            outcome.reason = portfolio.reason
            return

        allocation = self.ledger.get_allocation(session_id, config.strategy_id)
        if allocation is None:
            outcome.reason = "allocation not found"
            return
        strategy_risk = self.risk_manager.check_strategy_risk(config.strategy_id, allocation['initial_usdc'],
                                                              category)
        if not strategy_risk.allowed:
            log_strategy_event(config.strategy_id, "risk.strategy_block", {"reason": strategy_risk.reason}, level="WARNING")
            outcome.reason = strategy_risk.reason
            return

        signal_data = {
            'strategy_id': config.strategy_id,
            'action': signal.action.value,
            'confidence': signal.confidence,
            'adjusted_confidence': adjusted,
            'reason': signal.reason,
            'indicators': dict(signal.indicators),
            'regime': regime,
            'current_price': price,
            'timestamp': signal.timestamp,
        }
        if self.state.status in (EngineStatus.STOPPING, EngineStatus.STARTING) or not self._session_active(session_id):
            outcome.reason = "session closing"
            return
        multiplier = min(portfolio.position_size_multiplier, strategy_risk.position_size_multiplier)
        result = await self.executor.buy(session_id, config.strategy_id, self.symbol, price,
                                         signal_data=signal_data, size_multiplier=multiplier)
        outcome.success = bool(result.get('success'))
        outcome.trade_id = result.get('trade_id')
        outcome.reason = result.get('reason', '')

    @staticmethod
    def _log_tick(price: float, outcomes: List[TickOutcome]) -> None:
        buys = [o.strategy_id for o in outcomes if o.success and o.action == 'buy']
        sells = [f"{o.strategy_id}({o.reason})" for o in outcomes if o.success and o.action == 'sell']
        holding = sum(1 for o in outcomes if o.reason.startswith('holding'))
        parts = [f"[Tick] {price:.4f}"]
        if buys:
            parts.append(f"BUY: {', '.join(buys)}")
        if sells:
            parts.append(f"SELL: {', '.join(sells)}")
        parts.append(f"[P:{holding} N:{len(outcomes)}]")
        logger.info(" | ".join(parts))

    # ------------------------------------------------------------------
    # Daily reset / rebalance
    # ------------------------------------------------------------------
    async def daily_reset(self) -> Dict[str, Any]:
        self.risk_manager.reset_daily_risk()

        start, end = day_bounds(utcnow() - timedelta(days=1))
        trades = self.store.closed_trades_between(start, end)
        wins = sum(1 for t in trades if (t['pnl'] or 0) > 0)
        total_pnl = sum(t['pnl'] or 0.0 for t in trades)

        summary = {'date': start.date().isoformat(), 'trade_count': len(trades), 'win_count': wins,
                   'loss_count': len(trades) - wins, 'total_pnl': total_pnl}
        session = self.store.get_active_session()
        if trades or session is not None:
            if session is not None:
                realized = sum(a['total_pnl'] for a in self.ledger.get_allocations(session['id']))
                ending_balance = session['initial_balance'] + realized
            else:
                ending_balance = float(self.config['trading']['paper_initial_balance']) + total_pnl
            summary['ending_balance'] = ending_balance
            self.store.upsert_daily_performance(summary['date'], trade_count=len(trades), win_count=wins,
                                                loss_count=len(trades) - wins, total_pnl=total_pnl,
                                                ending_balance=ending_balance)

        ids = [c.strategy_id for c in self._enabled_configs()]
        self.learner.update_all(ids)
        log_event('engine.daily_reset', summary)
        logger.info(f"[DailyReset] {summary['date']}: {len(trades)} trades, pnl {total_pnl:.2f}; "
                    f"learner updated for {len(ids)} strategies")
        return summary

    async def rebalance(self) -> Dict[str, Any]:
        """Fetch history (stored candles if the exchange fails) and run the rebalancer in a worker thread."""
        if self._rebalance_in_progress:
            return {'success': False, 'reason': 'in progress'}
        self._rebalance_in_progress = True
        try:
            limit = int(self.config['optimization']['rebalance_candle_limit'])
            candles = await fetch_history(self.gateway, self.store, self.symbol, self.timeframe, limit)
            loop = asyncio.get_running_loop()
            report = await loop.run_in_executor(None, self.rebalancer.run_daily_rebalance, candles)
            if report.regime:
                self.state.current_regime = report.regime
                self._persist_state()
            return {'success': True, **report.to_dict()}
        except Exception as e:
            log_error('engine.rebalance_error', str(e))
            return {'success': False, 'reason': str(e)}
        finally:
            self._rebalance_in_progress = False

    async def current_signals(self) -> Dict[str, Any]:
        """
        Weighted vote of every enabled strategy on the current candle window.

        Returns:
            AggregatedSignal dict plus symbol, timeframe and candle count; a HOLD
            with reason "not enough candles" below `min_candles`
        """
        init_strategy_configs(self.store)
        candles = await self.candle_cache.get_or_fetch(
            self.symbol, self.timeframe,
            lambda: self.gateway.fetch_candles(self.symbol, self.timeframe, self.candle_limit))
        meta = {'symbol': self.symbol, 'timeframe': self.timeframe, 'candles': len(candles)}
        if len(candles) < self.min_candles:
            return {'action': SignalAction.HOLD.value, 'confidence': 0.0, 'buy_score': 0.0, 'sell_score': 0.0,
                    'signals': [], 'reason': 'not enough candles', **meta}
        aggregated = self.aggregator.aggregate(candles, self._enabled_configs())
        return {**aggregated.to_dict(), **meta}

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def get_status(self) -> Dict[str, Any]:
        session_id = self.state.session_id
        session = self.store.get_session(session_id) if session_id is not None else None
        allocations = self.ledger.get_allocations(session_id) if session_id is not None else []
        open_positions = self.ledger.get_open_positions(session_id) if session_id is not None else []
        today = self.ledger.get_today_trades(session_id) if session_id is not None else []
        total_balance = unrealized = None
        if session_id is not None:
            mark = self.last_price
            if mark is None:
                mark = open_positions[0]['entry_price'] if open_positions else 0.0
            total_balance = self.ledger.get_total_balance(session_id, mark)
            unrealized = self.ledger.get_unrealized_pnl(session_id, mark)
        return {
            'running': self.is_running,
            'status': self.state.status.value,
            'environment': self.environment.value,
            'symbol': self.symbol,
            'timeframe': self.timeframe,
            'session': session,
            'allocations': allocations,
            'open_positions': open_positions,
            'today_trades': len(today),
            'today_pnl': sum(t['pnl'] or 0.0 for t in today),
            'last_price': self.last_price,
            'total_balance': total_balance,
            'unrealized_pnl': unrealized,
            'strategy_count': len(self._enabled_configs()),
            'tick_interval_seconds': self.tick_interval,
            'last_tick': self.state.last_tick.isoformat() if self.state.last_tick else None,
            'last_error': self.state.last_error,
            'regime': self.state.current_regime,
            'regime_weights': dict(self._regime_weights),
            'skipped_ticks': self.state.skipped_ticks + sum(self.scheduler.skipped.values()),
        }

    def __repr__(self) -> str:
        return (f"TradingEngine(status={self.state.status.value}, env={self.environment.value}, "
                f"symbol={self.symbol}, session={self.state.session_id})")
