"""
test_config.py - Tests for configuration loading and risk tables
"""

from pathlib import Path

import pytest

from core.config import (DEFAULT_CATEGORY_RISK, ConfigError, RiskConfig, build_risk_configs, deep_merge,
                         load_config)


class TestLoadConfig:

    def test_defaults_without_file(self):
        config = load_config(None)
        assert config['environment'] == 'paper'
        assert config['trading']['symbol'] == 'WLD/USDC'
        assert config['optimization']['max_workers'] == 4

    def test_missing_file_falls_back_to_defaults(self, tmp_path):
        config = load_config(str(tmp_path / "nope.yaml"))
        assert config['trading']['timeframe'] == '1m'

    def test_yaml_is_merged_over_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("trading:\n  symbol: BTC/USDT\nrisk:\n  global:\n    stop_loss_percent: 1.5\n")
        config = load_config(str(path))
        assert config['trading']['symbol'] == 'BTC/USDT'
        # untouched siblings survive the merge
        assert config['trading']['timeframe'] == '1m'
        assert config['risk']['global']['stop_loss_percent'] == 1.5
        assert config['risk']['global']['take_profit_percent'] == 5.0

    def test_overrides_applied_last(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("environment: live\n")
        config = load_config(str(path), {'environment': 'paper'})
        assert config['environment'] == 'paper'

    def test_invalid_yaml_raises(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("trading: [unclosed\n")
        with pytest.raises(ConfigError):
            load_config(str(path))

    def test_non_mapping_root_raises(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError):
            load_config(str(path))

    def test_unknown_environment_raises(self):
        with pytest.raises(ConfigError):
            load_config(None, {'environment': 'testnet'})

    def test_shipped_yaml_loads(self):
        config = load_config(str(Path(__file__).parent.parent / "core" / "config.yaml"))
        assert config['trading']['entry_size_weights'] == [0.20, 0.25, 0.25, 0.30]


class TestRiskConfigs:

    def test_global_defaults(self):
        cfg = RiskConfig()
        assert (cfg.stop_loss_percent, cfg.take_profit_percent, cfg.max_position_percent) == (3.0, 5.0, 80.0)
        assert (cfg.max_daily_loss_percent, cfg.max_drawdown_percent) == (10.0, 25.0)
        assert cfg.max_consecutive_losses == 10
        assert cfg.consecutive_loss_reduction == 0.7

    def test_category_table(self):
        table = build_risk_configs(load_config(None))
        assert set(DEFAULT_CATEGORY_RISK) <= set(table)
        assert table['order-flow'].stop_loss_percent == 2.0
        assert table['order-flow'].max_position_percent == 90
        assert table['trend-following'].take_profit_percent == 8.0
        # fields a category omits come from the global entry
        assert table['momentum'].max_drawdown_percent == 25.0

    def test_category_inherits_global_overrides(self):
        config = load_config(None, {'risk': {'global': {'max_daily_loss_percent': 4}}})
        table = build_risk_configs(config)
        assert table['breakout'].max_daily_loss_percent == 4.0

    def test_from_dict_coerces_types(self):
        cfg = RiskConfig.from_dict({'max_consecutive_losses': '3', 'stop_loss_percent': 2})
        assert cfg.max_consecutive_losses == 3
        assert isinstance(cfg.stop_loss_percent, float)


def test_deep_merge_does_not_mutate_inputs():
    base = {'a': {'b': 1, 'c': 2}}
    merged = deep_merge(base, {'a': {'b': 5}})
    assert merged == {'a': {'b': 5, 'c': 2}}
    assert base == {'a': {'b': 1, 'c': 2}}
