"""
test_strategies.py - Tests for strategy types, the catalog, the registry and the aggregator
"""

import pytest

from conftest import ScriptedStrategy, make_candles
from strategies.aggregator import SignalAggregator, config_from_row, init_strategy_configs
from strategies.base import (ParameterRange, Signal, SignalAction, StrategyCategory, StrategyConfig,
                             clamp_weight)
from strategies.registry import get_strategy, list_strategies, register_strategy, unregister_strategy


class SecondScripted(ScriptedStrategy):
    id = "test-scripted-2"


class TestSignal:

    def test_frozen(self):
        signal = Signal(SignalAction.BUY, 0.6, "x")
        with pytest.raises(Exception):
            signal.confidence = 0.9

    def test_rejects_out_of_range_confidence(self):
        with pytest.raises(ValueError):
            Signal(SignalAction.BUY, 1.5)

    def test_string_action_is_coerced(self):
        assert Signal("SELL", 0.4).action == SignalAction.SELL

    def test_helper_clamps_confidence(self, scripted):
        assert scripted.signal(SignalAction.BUY, 1.7, "too sure").confidence == 1.0
        assert scripted.signal(SignalAction.BUY, -0.2, "unsure").confidence == 0.0


class TestStrategyConfig:

    def test_weight_clamped(self):
        assert StrategyConfig("a", weight=10).weight == 3.0
        assert StrategyConfig("a", weight=0.01).weight == 0.1
        assert clamp_weight(1.2) == 1.2

    def test_with_updates_clamps_again(self):
        cfg = StrategyConfig("a", weight=1.0).with_updates(weight=5.0)
        assert cfg.weight == 3.0

    def test_parameter_range_validation(self):
        with pytest.raises(ValueError):
            ParameterRange(1, 5, 0)
        with pytest.raises(ValueError):
            ParameterRange(5, 1, 1)
        assert ParameterRange(1, 5, 1).contains(5)


class TestCatalog:

    def test_every_category_is_covered(self):
        categories = {s.category for s in list_strategies()}
        assert set(StrategyCategory) <= categories

    def test_defaults_inside_ranges(self):
        for strategy in list_strategies():
            for name, value in strategy.default_parameters.items():
                assert name in strategy.parameter_ranges, (strategy.id, name)
                assert strategy.parameter_ranges[name].contains(value), (strategy.id, name)

    @pytest.mark.parametrize("strategy_id", [
        "rsi-bb", "vwap-reversion", "ema-crossover", "donchian-breakout",
        "macd-rsi", "obv-divergence", "orderbook-imbalance",
    ])
    def test_analyze_returns_valid_signal(self, strategy_id):
        strategy = get_strategy(strategy_id)
        for window in (make_candles(10), make_candles(200), make_candles(200, drift=0.3)):
            signal = strategy.analyze(window, strategy.default_parameters)
            assert isinstance(signal, Signal)
            assert 0.0 <= signal.confidence <= 1.0

    def test_short_window_holds(self):
        signal = get_strategy("rsi-bb").analyze(make_candles(5), {})
        assert signal.action == SignalAction.HOLD

    def test_describe(self):
        info = get_strategy("ema-crossover").describe()
        assert info['category'] == 'trend-following'
        assert 'fast_period' in info['parameter_ranges']


class TestRegistry:

    def test_duplicate_registration_rejected(self, scripted):
        with pytest.raises(ValueError):
            register_strategy(ScriptedStrategy())

    def test_replace_and_unregister(self):
        register_strategy(SecondScripted(), replace=True)
        assert get_strategy("test-scripted-2") is not None
        unregister_strategy("test-scripted-2")
        assert get_strategy("test-scripted-2") is None


class TestAggregator:

    @pytest.fixture
    def pair(self, scripted):
        second = register_strategy(SecondScripted(), replace=True)
        yield scripted, second
        unregister_strategy(second.id)

    def _configs(self, weight_a=1.0, weight_b=1.0, enabled_b=True):
        return [StrategyConfig("test-scripted", weight=weight_a),
                StrategyConfig("test-scripted-2", weight=weight_b, enabled=enabled_b)]

    def test_two_buys_produce_buy(self, pair):
        a, b = pair
        a.action, a.confidence = SignalAction.BUY, 0.8
        b.action, b.confidence = SignalAction.BUY, 0.6
        result = SignalAggregator().aggregate(make_candles(60), self._configs())
        assert result.action == SignalAction.BUY
        assert result.confidence == pytest.approx(0.7)
        assert len(result.signals) == 2

    def test_single_vote_is_not_enough(self, pair):
        a, b = pair
        a.action, a.confidence = SignalAction.BUY, 0.9
        result = SignalAggregator().aggregate(make_candles(60), self._configs())
        assert result.action == SignalAction.HOLD

    def test_disabled_strategies_are_skipped(self, pair):
        a, b = pair
        a.action, a.confidence = SignalAction.BUY, 0.9
        b.action, b.confidence = SignalAction.BUY, 0.9
        result = SignalAggregator().aggregate(make_candles(60), self._configs(enabled_b=False))
        assert result.action == SignalAction.HOLD
        assert len(result.signals) == 1

    def test_conflicting_votes_need_dominance(self, pair):
        a, b = pair
        a.action, a.confidence = SignalAction.BUY, 0.6
        b.action, b.confidence = SignalAction.SELL, 0.55
        result = SignalAggregator(min_votes=1).aggregate(make_candles(60), self._configs())
        assert result.action == SignalAction.HOLD

        result = SignalAggregator(min_votes=1).aggregate(make_candles(60), self._configs(weight_a=3.0))
        assert result.action == SignalAction.BUY


class TestConfigInit:

    def test_init_inserts_each_strategy_once(self, store, scripted):
        inserted = init_strategy_configs(store)
        assert inserted == len(list_strategies())
        assert init_strategy_configs(store) == 0

        row = store.get_config("test-scripted")
        config = config_from_row(row)
        assert config.enabled is True
        assert config.weight == 1.0
        assert config.parameters == {'threshold': 1.0}
        assert config.category == 'mean-reversion'

    def test_init_keeps_operator_changes(self, store, scripted):
        init_strategy_configs(store)
        store.update_config("test-scripted", enabled=False, weight=2.0)
        init_strategy_configs(store)
        row = store.get_config("test-scripted")
        assert row['enabled'] is False
        assert row['weight'] == 2.0
