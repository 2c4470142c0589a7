"""
test_store.py - Tests for the relational persistence store
"""

from datetime import datetime, timedelta

import pytest

from conftest import make_candles
from execution.ledger import AllocationLedger
from persistence.store import Store, day_bounds, utc_midnight, utcnow


class TestConfigs:

    def test_insert_if_absent(self, store):
        cfg = {'strategy_id': 'a', 'name': 'A', 'category': 'momentum', 'parameters': {'p': 1}}
        assert store.insert_config_if_absent(cfg) is True
        assert store.insert_config_if_absent(dict(cfg, name='B')) is False
        assert store.get_config('a')['name'] == 'A'

    def test_update_clamps_weight_and_ignores_unknown_keys(self, store):
        store.insert_config_if_absent({'strategy_id': 'a', 'name': 'A', 'category': 'momentum', 'parameters': {}})
        assert store.update_config('a', weight=9.0, bogus=1) is True
        assert store.get_config('a')['weight'] == 3.0
        assert store.update_config('missing', weight=1.0) is False
        assert store.update_config('a', bogus=1) is False

    def test_enabled_filter(self, store):
        for sid, enabled in (('a', True), ('b', False)):
            store.insert_config_if_absent({'strategy_id': sid, 'name': sid, 'category': 'momentum',
                                           'parameters': {}, 'enabled': enabled})
        assert [r['strategy_id'] for r in store.get_configs(enabled_only=True)] == ['a']
        assert len(store.get_configs()) == 2


class TestSessionsAndTrades:

    def test_end_session_is_idempotent(self, store):
        sid = AllocationLedger(store).create_session(1000.0, ['a'])
        assert store.get_active_session()['id'] == sid
        assert store.end_session(sid) is True
        assert store.end_session(sid) is False
        assert store.get_active_session() is None
        assert store.get_session(sid)['status'] == 'ended'

    def test_trade_queries(self, store):
        ledger = AllocationLedger(store)
        sid = ledger.create_session(1000.0, ['a', 'b'])
        t1 = ledger.record_buy(sid, 'a', 'WLD/USDC', 10.0, 5.0).trade_id
        t2 = ledger.record_buy(sid, 'b', 'WLD/USDC', 10.0, 5.0).trade_id
        ledger.close_position(sid, t1, 9.0)

        assert [t['id'] for t in store.list_trades(status='open')] == [t2]
        assert [t['id'] for t in store.list_trades(status='closed')] == [t1]
        assert len(store.list_trades(strategy_id='b')) == 1

        closed = store.closed_trades_between(utc_midnight())
        assert [t['id'] for t in closed] == [t1]
        assert store.losses_since(utc_midnight()) == pytest.approx(-closed[0]['pnl'])
        assert store.losses_since(utc_midnight(), strategy_id='b') == 0.0
        assert store.recent_closed_pnls('a') == [pytest.approx(closed[0]['pnl'])]


class TestLessonsAndAdaptive:

    def test_lessons_newest_first(self, store):
        base = utcnow()
        for i in range(3):
            store.add_lesson({'strategy_id': 'a', 'trade_id': i, 'entry_indicators': {'rsi': i},
                              'pnl': float(i), 'created_at': base + timedelta(seconds=i)})
        lessons = store.get_lessons('a', limit=2)
        assert [l['trade_id'] for l in lessons] == [2, 1]

    def test_upsert_adaptive(self, store):
        store.upsert_adaptive('a', min_confidence=0.6, win_pattern_count=1)
        store.upsert_adaptive('a', min_confidence=0.7)
        row = store.get_adaptive('a')
        assert row['min_confidence'] == 0.7
        assert row['win_pattern_count'] == 1


class TestAuditAndPerformance:

    def test_backtest_rows(self, store):
        result = {'strategy_id': 'a', 'parameters': {'p': 1}, 'win_rate': 0.5, 'trade_count': 2,
                  'trades': [{'pnl': 1.0}, {'pnl': -1.0}]}
        store.save_backtest(result, 'WLD/USDC', '1m')
        rows = store.list_backtests()
        assert rows[0]['strategy_id'] == 'a'
        assert 'trades' not in rows[0]
        assert store.list_backtests(include_trades=True)[0]['trades'] == result['trades']

    def test_rebalance_log(self, store):
        store.append_rebalance_changes([
            {'change_type': 'weight', 'strategy_id': 'a', 'old_value': 1.0, 'new_value': 1.4, 'reason': 'r'},
            {'change_type': 'risk', 'strategy_id': 'system', 'reason': 'volatile'},
        ])
        assert store.append_rebalance_changes([]) == 0
        log = store.list_rebalance_log()
        assert [r['change_type'] for r in log] == ['risk', 'weight']
        assert store.list_rebalance_log(strategy_id='a')[0]['new_value'] == 1.4

    def test_daily_performance_upsert_and_peak(self, store):
        store.upsert_daily_performance('2026-01-01', trade_count=2, ending_balance=1000.0)
        store.upsert_daily_performance('2026-01-02', trade_count=1, ending_balance=1200.0)
        store.upsert_daily_performance('2026-01-01', trade_count=3)
        assert store.peak_ending_balance() == 1200.0
        rows = store.list_daily_performance()
        assert rows[-1]['trade_count'] == 3

    def test_peak_is_none_without_history(self, store):
        assert store.peak_ending_balance() is None


class TestCandlesAndState:

    def test_candle_roundtrip_replaces_duplicates(self, store):
        candles = make_candles(20)
        store.save_candles('WLD/USDC', '1m', candles)
        store.save_candles('WLD/USDC', '1m', candles[-5:])
        loaded = store.load_candles('WLD/USDC', '1m', limit=10)
        assert len(loaded) == 10
        assert loaded[-1]['timestamp'] == candles[-1]['timestamp']
        assert len(store.load_candles('WLD/USDC', '1m')) == 20

    def test_key_value_state(self, store):
        assert store.load_engine_state('engine') is None
        store.save_engine_state('engine', {'status': 'running'})
        store.save_engine_state('engine', {'status': 'stopped'})
        assert store.load_engine_state('engine') == {'status': 'stopped'}
        store.save_risk_state('portfolio', {'drawdown_percent': 1.5})
        assert store.load_risk_state('portfolio')['drawdown_percent'] == 1.5


def test_day_bounds():
    start, end = day_bounds(datetime(2026, 3, 4, 15, 30))
    assert start == datetime(2026, 3, 4)
    assert end == datetime(2026, 3, 5)


def test_file_database_persists(tmp_path):
    url = f"sqlite:///{tmp_path / 'trading.db'}"
    first = Store(url)
    first.save_engine_state('k', {'v': 1})
    first.dispose()
    assert Store(url).load_engine_state('k') == {'v': 1}
