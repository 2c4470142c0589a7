"""
test_engine.py - Tests for the trading engine lifecycle and tick decisions

Only the scripted strategy is enabled so each test controls the signals.
"""

import asyncio

import pytest

from conftest import DummyGateway, make_candles
from core.engine import TradingEngine
from core.state import EngineStatus
from monitoring.logger import get_recent
from strategies.aggregator import init_strategy_configs
from strategies.base import SignalAction


CONFIG = {
    'trading': {'tick_interval_seconds': 3600, 'paper_initial_balance': 10_000.0},
    'optimization': {'rebalance_min_candles': 1000, 'max_workers': 1},
}


def only_scripted(store):
    init_strategy_configs(store)
    for row in store.get_configs():
        if row['strategy_id'] != 'test-scripted':
            store.update_config(row['strategy_id'], enabled=False)


@pytest.fixture
def engine(store, scripted, gateway):
    only_scripted(store)
    return TradingEngine(CONFIG, store, gateway)


def outcome_for(outcomes, strategy_id='test-scripted'):
    return next(o for o in outcomes if o.strategy_id == strategy_id)


class BlockingTickerGateway(DummyGateway):
    """Ticker requests park until the test releases them. Build it inside the running loop."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.block = False
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_ticker(self, symbol):
        if self.block:
            self.entered.set()
            await self.release.wait()
        return await super().fetch_ticker(symbol)


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, engine, store, scripted):
        scripted.action, scripted.confidence = SignalAction.BUY, 0.8
        started = await engine.start()
        assert started['success']
        assert started['balance'] == 10_000.0
        assert engine.is_running
        assert engine.scheduler.is_scheduled('tick')
        assert engine.scheduler.is_scheduled('daily_reset')

        session_id = started['session_id']
        assert engine.ledger.get_allocation(session_id, 'test-scripted')['initial_usdc'] == 10_000.0
        # the first tick runs during start
        assert engine.ledger.get_open_position(session_id, 'test-scripted') is not None

        stopped = await engine.stop()
        assert stopped['success']
        assert stopped['closed_positions'] == 1
        assert engine.state.status == EngineStatus.STOPPED
        assert engine.state.session_id is None
        assert store.get_active_session() is None
        assert not engine.scheduler.is_scheduled('tick')
        assert store.load_engine_state('engine')['status'] == 'stopped'

    @pytest.mark.asyncio
    async def test_second_start_is_rejected(self, engine):
        first = await engine.start()
        second = await engine.start()
        assert second['success'] is False
        assert second['session_id'] == first['session_id']
        await engine.stop()

    @pytest.mark.asyncio
    async def test_stop_when_idle(self, engine):
        assert await engine.stop() == {'success': False, 'reason': 'engine not running'}

    @pytest.mark.asyncio
    async def test_restart_ends_previous_session(self, engine, store, gateway, scripted):
        scripted.action, scripted.confidence = SignalAction.BUY, 0.8
        first = await engine.start()
        engine.scheduler.cancel_all()

        # a new process over the same database
        restarted = TradingEngine(CONFIG, store, gateway)
        assert restarted.state.status == EngineStatus.STOPPED
        second = await restarted.start()
        assert second['success']
        assert second['session_id'] != first['session_id']

        old = store.get_session(first['session_id'])
        assert old['status'] == 'ended'
        old_trades = store.list_trades(session_id=first['session_id'])
        assert old_trades and all(t['exit_reason'] == 'session_end' for t in old_trades)
        assert store.get_active_session()['id'] == second['session_id']
        await restarted.stop()

    @pytest.mark.asyncio
    async def test_no_enabled_strategies(self, engine, store):
        store.update_config('test-scripted', enabled=False)
        result = await engine.start()
        assert result == {'success': False, 'reason': 'no enabled strategies', 'session_id': None}
        assert engine.state.status == EngineStatus.STOPPED
        assert engine.state.last_error == 'no enabled strategies'
        assert not engine.scheduler.is_scheduled('daily_reset')
        assert store.get_active_session() is None

    @pytest.mark.asyncio
    async def test_failed_start_resets_to_stopped(self, engine, store, monkeypatch):
        create_session = engine.ledger.create_session
        calls = []

        def flaky(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("database locked")
            return create_session(*args, **kwargs)
        monkeypatch.setattr(engine.ledger, 'create_session', flaky)

        result = await engine.start()
        assert result == {'success': False, 'reason': 'start failed: database locked', 'session_id': None}
        assert engine.state.status == EngineStatus.STOPPED
        assert engine.state.last_error == 'start failed: database locked'
        assert not engine.scheduler.is_scheduled('daily_reset')
        assert store.load_engine_state('engine')['status'] == 'stopped'
        assert get_recent(kind='error')[0]['event'] == 'engine.start_failed'

        retried = await engine.start()
        assert retried['success']
        assert engine.state.last_error is None
        await engine.stop()

    @pytest.mark.asyncio
    async def test_live_start_converts_base_holdings(self, store, scripted):
        only_scripted(store)
        gateway = DummyGateway(price=100.0, quote=5_000.0, base=5.0)
        engine = TradingEngine(dict(CONFIG, environment='live'), store, gateway)
        scripted.action, scripted.confidence = SignalAction.BUY, 0.8

        started = await engine.start()
        assert started['balance'] == 5_000.0
        assert gateway.orders[0] == ('WLD/USDC', 'sell', 5.0)
        assert gateway.orders[1][1] == 'buy'
        trade = engine.ledger.get_open_position(started['session_id'], 'test-scripted')
        assert trade['is_paper'] is False
        await engine.stop()


class TestTick:

    @pytest.mark.asyncio
    async def test_tick_requires_running_engine(self, engine):
        assert await engine.tick() == []

    @pytest.mark.asyncio
    async def test_reentrant_tick_is_skipped(self, engine):
        await engine.start()
        engine._tick_in_progress = True
        assert await engine.tick() == []
        assert engine.get_status()['skipped_ticks'] == 1
        engine._tick_in_progress = False
        await engine.stop()

    @pytest.mark.asyncio
    async def test_buy_then_hold_then_sell(self, engine, scripted):
        scripted.action, scripted.confidence = SignalAction.BUY, 0.8
        session_id = (await engine.start())['session_id']
        trade = engine.ledger.get_open_position(session_id, 'test-scripted')
        assert trade['signal_data']['regime'] in ('trending_up', 'trending_down', 'ranging', 'volatile')
        assert trade['signal_data']['adjusted_confidence'] == pytest.approx(0.8)

        scripted.action = SignalAction.HOLD
        outcome = outcome_for(await engine.tick())
        assert outcome.reason.startswith("holding (PnL")

        scripted.action, scripted.confidence = SignalAction.SELL, 0.7
        outcome = outcome_for(await engine.tick())
        assert outcome.success
        assert outcome.reason.startswith("strategy sell")
        assert engine.ledger.get_open_position(session_id, 'test-scripted') is None
        await engine.stop()

    @pytest.mark.asyncio
    async def test_weak_sell_signal_keeps_position(self, engine, scripted):
        scripted.action, scripted.confidence = SignalAction.BUY, 0.8
        session_id = (await engine.start())['session_id']
        scripted.action, scripted.confidence = SignalAction.SELL, 0.2
        outcome = outcome_for(await engine.tick())
        assert outcome.reason.startswith("holding")
        assert engine.ledger.get_open_position(session_id, 'test-scripted') is not None
        await engine.stop()

    @pytest.mark.asyncio
    async def test_stop_loss_closes_position(self, engine, scripted, gateway, store):
        scripted.action, scripted.confidence = SignalAction.BUY, 0.8
        session_id = (await engine.start())['session_id']
        trade_id = engine.ledger.get_open_position(session_id, 'test-scripted')['id']

        gateway.price = 96.0
        scripted.action = SignalAction.HOLD
        outcome = outcome_for(await engine.tick())
        assert outcome.action == 'sell'
        assert outcome.reason == 'stop_loss'
        assert store.get_trade(trade_id)['exit_reason'] == 'stop_loss'
        await engine.stop()

    @pytest.mark.asyncio
    async def test_weak_signal_is_not_traded(self, engine, scripted):
        scripted.action, scripted.confidence = SignalAction.BUY, 0.2
        session_id = (await engine.start())['session_id']
        outcome = outcome_for(await engine.tick())
        assert outcome.reason.startswith("weak signal")
        assert engine.ledger.get_open_positions(session_id) == []
        await engine.stop()

    @pytest.mark.asyncio
    async def test_drawdown_cap_blocks_entries(self, engine, scripted, store):
        store.upsert_daily_performance('2026-01-01', ending_balance=20_000.0)
        scripted.action, scripted.confidence = SignalAction.BUY, 0.9
        session_id = (await engine.start())['session_id']
        outcome = outcome_for(await engine.tick())
        assert outcome.reason.startswith("max drawdown reached")
        assert engine.ledger.get_open_positions(session_id) == []
        await engine.stop()

    @pytest.mark.asyncio
    async def test_pending_order_is_not_touched(self, engine, scripted):
        scripted.action, scripted.confidence = SignalAction.BUY, 0.8
        await engine.start()
        engine.executor.locks.try_acquire('test-scripted')
        outcome = outcome_for(await engine.tick())
        assert outcome.reason == "in progress"
        engine.executor.locks.release('test-scripted')
        await engine.stop()

    @pytest.mark.asyncio
    async def test_strategy_error_is_isolated(self, engine, scripted, monkeypatch):
        await engine.start()

        def broken(candles, params):
            raise RuntimeError("analysis exploded")
        monkeypatch.setattr(scripted, 'analyze', broken)

        outcome = outcome_for(await engine.tick())
        assert outcome.success is False
        assert outcome.reason == "error: analysis exploded"
        assert engine.is_running
        await engine.stop()

    @pytest.mark.asyncio
    async def test_too_few_candles(self, store, scripted):
        only_scripted(store)
        engine = TradingEngine(CONFIG, store, DummyGateway(candles=make_candles(30)))
        await engine.start()
        assert await engine.tick() == []
        await engine.stop()

    @pytest.mark.asyncio
    async def test_ticker_failure_is_recorded(self, engine, gateway):
        await engine.start()
        gateway.fail_ticker = True
        assert await engine.tick() == []
        assert engine.state.last_error == "ticker unavailable"
        gateway.fail_ticker = False
        await engine.stop()

    @pytest.mark.asyncio
    async def test_candles_are_cached_between_ticks(self, engine, gateway):
        await engine.start()
        await engine.tick()
        await engine.tick()
        assert gateway.candle_fetches == 1
        await engine.stop()


class TestStopDuringTick:

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_tick(self, store, scripted):
        only_scripted(store)
        gateway = BlockingTickerGateway()
        engine = TradingEngine(CONFIG, store, gateway)
        scripted.action = SignalAction.HOLD
        session_id = (await engine.start())['session_id']

        scripted.action, scripted.confidence = SignalAction.BUY, 0.8
        gateway.block = True
        tick = asyncio.ensure_future(engine.tick())
        await gateway.entered.wait()

        stop = asyncio.ensure_future(engine.stop())
        await asyncio.sleep(0)
        assert engine.state.status == EngineStatus.STOPPING
        assert not stop.done()

        gateway.release.set()
        outcomes, stopped = await asyncio.gather(tick, stop)

        outcome = outcome_for(outcomes)
        assert outcome.success is False
        assert outcome.reason == "session closing"
        assert stopped['closed_positions'] == 0
        assert store.list_trades(session_id=session_id) == []
        assert engine.ledger.get_open_positions(session_id) == []
        assert store.get_session(session_id)['status'] == 'ended'

    @pytest.mark.asyncio
    async def test_tick_on_ended_session_does_nothing(self, engine, store, scripted):
        scripted.action = SignalAction.HOLD
        session_id = (await engine.start())['session_id']
        store.end_session(session_id)

        scripted.action, scripted.confidence = SignalAction.BUY, 0.8
        assert await engine.tick() == []
        assert store.list_trades(session_id=session_id) == []
        await engine.stop()


class TestManualTick:

    @pytest.mark.asyncio
    async def test_without_session(self, engine):
        assert await engine.manual_tick() == []

    @pytest.mark.asyncio
    async def test_uses_active_session_while_stopped(self, engine, store, gateway, scripted):
        await engine.start()
        engine.scheduler.cancel_all()
        observer = TradingEngine(CONFIG, store, gateway)
        observer.state.session_id = None
        outcomes = await observer.manual_tick()
        assert [o.strategy_id for o in outcomes] == ['test-scripted']
        await engine.stop()


class TestMaintenance:

    @pytest.mark.asyncio
    async def test_daily_reset_records_performance(self, engine, store):
        await engine.start()
        summary = await engine.daily_reset()
        assert summary['trade_count'] == 0
        assert summary['ending_balance'] == pytest.approx(10_000.0)
        assert store.list_daily_performance()[0]['date'] == summary['date']
        assert store.load_risk_state('daily')['daily_loss'] == 0.0
        await engine.stop()

    @pytest.mark.asyncio
    async def test_daily_reset_without_activity_writes_nothing(self, engine, store):
        summary = await engine.daily_reset()
        assert 'ending_balance' not in summary
        assert store.list_daily_performance() == []

    @pytest.mark.asyncio
    async def test_rebalance_with_insufficient_history(self, engine, store):
        result = await engine.rebalance()
        assert result['success'] is True
        assert len(result['changes']) == 1
        assert result['changes'][0]['strategy_id'] == 'system'
        assert len(store.list_rebalance_log()) == 1

    @pytest.mark.asyncio
    async def test_rebalance_falls_back_to_stored_candles(self, engine, store, gateway):
        assert (await engine.rebalance())['success']
        assert len(store.load_candles('WLD/USDC', '1m')) == 300

        async def exchange_down(*args, **kwargs):
            raise RuntimeError("exchange down")
        gateway.fetch_candles = exchange_down

        result = await engine.rebalance()
        assert result['success'] is True
        assert result['changes'][0]['reason'] == "insufficient candle data (300 < 1000)"

    @pytest.mark.asyncio
    async def test_rebalance_without_history_fails(self, engine, gateway):
        async def exchange_down(*args, **kwargs):
            raise RuntimeError("exchange down")
        gateway.fetch_candles = exchange_down

        assert await engine.rebalance() == {'success': False, 'reason': 'exchange down'}

    @pytest.mark.asyncio
    async def test_rebalance_is_not_reentrant(self, engine):
        engine._rebalance_in_progress = True
        assert await engine.rebalance() == {'success': False, 'reason': 'in progress'}

    @pytest.mark.asyncio
    async def test_status(self, engine, scripted):
        scripted.action, scripted.confidence = SignalAction.BUY, 0.8
        await engine.start()
        status = engine.get_status()
        assert status['running'] is True
        assert status['strategy_count'] == 1
        assert len(status['open_positions']) == 1
        assert status['regime']['regime'] in ('trending_up', 'trending_down', 'ranging', 'volatile')
        assert 'test-scripted' in status['regime_weights']
        await engine.stop()
        assert engine.get_status()['session'] is None

    @pytest.mark.asyncio
    async def test_status_marks_positions_to_last_price(self, engine, scripted, gateway):
        idle = engine.get_status()
        assert idle['total_balance'] is None
        assert idle['unrealized_pnl'] is None

        scripted.action, scripted.confidence = SignalAction.BUY, 0.8
        await engine.start()
        scripted.action = SignalAction.HOLD
        gateway.price = 102.0
        await engine.tick()

        status = engine.get_status()
        trade = status['open_positions'][0]
        alloc = status['allocations'][0]
        assert status['last_price'] == 102.0
        assert status['unrealized_pnl'] == pytest.approx(trade['quantity'] * 2.0)
        assert status['total_balance'] == pytest.approx(alloc['current_usdc'] + alloc['asset_qty'] * 102.0)
        await engine.stop()

    @pytest.mark.asyncio
    async def test_current_signals(self, engine, scripted):
        scripted.action, scripted.confidence = SignalAction.BUY, 0.8
        result = await engine.current_signals()
        assert result['symbol'] == 'WLD/USDC'
        assert result['candles'] == 200
        assert [s['strategy_id'] for s in result['signals']] == ['test-scripted']
        assert result['buy_score'] == pytest.approx(0.8)
        # one buy vote is below the two-vote minimum
        assert result['action'] == 'hold'

    @pytest.mark.asyncio
    async def test_current_signals_with_short_history(self, store, scripted):
        only_scripted(store)
        engine = TradingEngine(CONFIG, store, DummyGateway(candles=make_candles(30)))
        result = await engine.current_signals()
        assert result['action'] == 'hold'
        assert result['reason'] == 'not enough candles'
        assert result['signals'] == []
