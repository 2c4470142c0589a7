"""
test_risk_manager.py - Tests for exit classification and pre-trade risk checks
"""

import pytest

from core.config import RiskConfig
from execution.ledger import AllocationLedger
from risk.risk_manager import ExitReason, RiskManager, check_exit_condition, count_consecutive_losses


def close_losers(store, session_id, strategy_id, count, entry=10.0, exit_price=9.0, qty=1.0):
    ledger = AllocationLedger(store)
    for _ in range(count):
        buy = ledger.record_buy(session_id, strategy_id, 'WLD/USDC', entry, qty)
        ledger.close_position(session_id, buy.trade_id, exit_price)


class TestExitCondition:

    def test_long_stop_loss(self):
        assert check_exit_condition('buy', 100.0, 97.0, RiskConfig(stop_loss_percent=3.0)) == ExitReason.STOP_LOSS

    def test_long_take_profit(self):
        assert check_exit_condition('buy', 100.0, 103.0, RiskConfig(take_profit_percent=2.0)) == ExitReason.TAKE_PROFIT

    def test_inside_band_holds(self):
        assert check_exit_condition('buy', 100.0, 99.0, RiskConfig(stop_loss_percent=3.0)) is None

    def test_short_side_is_mirrored(self):
        config = RiskConfig(stop_loss_percent=3.0, take_profit_percent=5.0)
        assert check_exit_condition('sell', 100.0, 103.0, config) == ExitReason.STOP_LOSS
        assert check_exit_condition('sell', 100.0, 95.0, config) == ExitReason.TAKE_PROFIT

    def test_reason_compares_as_string(self):
        assert ExitReason.STOP_LOSS == "stop_loss"
        assert str(ExitReason.TAKE_PROFIT) == "take_profit"

    def test_category_table_is_used(self, store):
        manager = RiskManager(store, {'order-flow': RiskConfig(stop_loss_percent=2.0)})
        assert manager.check_exit_condition('buy', 100.0, 97.9, 'order-flow') == ExitReason.STOP_LOSS
        # unknown categories fall back to the global entry (3% stop)
        assert manager.check_exit_condition('buy', 100.0, 97.9, 'unknown') is None


def test_count_consecutive_losses():
    assert count_consecutive_losses([-1.0, -2.0, 0.5, -3.0]) == 2
    assert count_consecutive_losses([1.0, -2.0]) == 0
    assert count_consecutive_losses([]) == 0


class TestStrategyRisk:

    @pytest.fixture
    def session(self, store):
        return AllocationLedger(store).create_session(1000.0, ['a', 'b'])

    def test_clean_history_is_allowed(self, store, session):
        decision = RiskManager(store).check_strategy_risk('a', 500.0)
        assert decision.allowed
        assert decision.position_size_multiplier == 1.0

    def test_daily_loss_blocks(self, store, session):
        # five trades losing ~1.0 each reach 10% of a 50 USDC balance
        close_losers(store, session, 'a', 5)
        decision = RiskManager(store).check_strategy_risk('a', 50.0)
        assert decision.allowed is False
        assert decision.reason.startswith("daily loss limit reached")
        # other strategies are unaffected
        assert RiskManager(store).check_strategy_risk('b', 50.0).allowed

    def test_consecutive_losses_scale_position(self, store, session):
        manager = RiskManager(store, {'global': RiskConfig(max_consecutive_losses=3, max_daily_loss_percent=100)})
        close_losers(store, session, 'a', 3, exit_price=9.99)
        decision = manager.check_strategy_risk('a', 500.0)
        assert decision.allowed
        assert decision.position_size_multiplier == pytest.approx(0.7)
        assert decision.metrics['consecutive_losses'] == 3


class TestPortfolioRisk:

    def test_hold_is_never_sized(self, store):
        assert RiskManager(store).check_risk('hold', 1000.0, 10.0).allowed is False

    def test_buy_sizing_and_levels(self, store):
        decision = RiskManager(store).check_risk('buy', 1000.0, 10.0)
        assert decision.allowed
        assert decision.quantity == pytest.approx(1000.0 * 0.80 / 10.0)
        assert decision.stop_loss_price == pytest.approx(9.7)
        assert decision.take_profit_price == pytest.approx(10.5)
        assert store.load_risk_state('portfolio')['drawdown_percent'] == 0.0

    def test_drawdown_blocks(self, store):
        store.upsert_daily_performance('2026-01-01', ending_balance=1000.0)
        decision = RiskManager(store).check_risk('buy', 700.0, 10.0)
        assert decision.allowed is False
        assert decision.reason.startswith("max drawdown reached")
        assert decision.metrics['drawdown_percent'] == pytest.approx(30.0)

    def test_drawdown_below_cap_is_allowed(self, store):
        store.upsert_daily_performance('2026-01-01', ending_balance=1000.0)
        assert RiskManager(store).check_risk('buy', 800.0, 10.0).allowed

    def test_global_daily_loss_blocks(self, store):
        session = AllocationLedger(store).create_session(1000.0, ['a'])
        close_losers(store, session, 'a', 2, entry=10.0, exit_price=5.0, qty=10.0)
        decision = RiskManager(store).check_risk('buy', 900.0, 10.0)
        assert decision.allowed is False
        assert decision.reason.startswith("global daily loss limit reached")

    def test_reset_daily_risk(self, store):
        manager = RiskManager(store)
        manager.reset_daily_risk()
        assert manager.get_state()['daily']['daily_loss'] == 0.0
