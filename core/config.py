"""
config.py - Configuration Loader

Loads the platform configuration from YAML and deep-merges it over the
built-in defaults. Also owns the per-category risk configuration table.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when a configuration file cannot be parsed or is invalid."""


@dataclass(frozen=True)
class RiskConfig:
    """Risk limits applied to one strategy category (percent values)."""
    stop_loss_percent: float = 3.0
    take_profit_percent: float = 5.0
    max_position_percent: float = 80.0
    max_daily_loss_percent: float = 10.0
    max_drawdown_percent: float = 25.0
    max_consecutive_losses: int = 10
    consecutive_loss_reduction: float = 0.7

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], base: Optional["RiskConfig"] = None) -> "RiskConfig":
        merged = asdict(base or cls())
        for f in fields(cls):
            if data and f.name in data and data[f.name] is not None:
                merged[f.name] = type(merged[f.name])(data[f.name])
        return cls(**merged)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_CATEGORY_RISK: Dict[str, Dict[str, float]] = {
    "mean-reversion": {"stop_loss_percent": 2.5, "take_profit_percent": 3.5, "max_position_percent": 85},
    "trend-following": {"stop_loss_percent": 4.0, "take_profit_percent": 8.0, "max_position_percent": 80},
    "breakout": {"stop_loss_percent": 3.0, "take_profit_percent": 6.0, "max_position_percent": 80},
    "momentum": {"stop_loss_percent": 3.0, "take_profit_percent": 5.0, "max_position_percent": 85},
    "divergence": {"stop_loss_percent": 3.5, "take_profit_percent": 7.0, "max_position_percent": 80},
    "order-flow": {"stop_loss_percent": 2.0, "take_profit_percent": 3.0, "max_position_percent": 90},
}


DEFAULT_CONFIG: Dict[str, Any] = {
    'environment': 'paper',
    'exchange': {
        'id': 'binance',
        'mode': 'live',
        'api_key': None,
        'secret': None,
        'timeout': 10.0,
        'max_attempts': 3,
        'paper_slippage_rate': 0.0005,
        'live_slippage_buffer': 0.005,
    },
    'trading': {
        'symbol': 'WLD/USDC',
        'timeframe': '1m',
        'paper_initial_balance': 10000.0,
        'tick_interval_seconds': 5,
        'candle_cache_ttl_seconds': 30,
        'candle_fetch_limit': 200,
        'min_candles': 50,
        'entry_size_weights': [0.20, 0.25, 0.25, 0.30],
        'fee_rate': 0.001,
        'min_convert_value': 1.0,
        'sell_signal_min_confidence': 0.3,
    },
    'risk': {
        'global': RiskConfig().to_dict(),
        'categories': copy.deepcopy(DEFAULT_CATEGORY_RISK),
    },
    'optimization': {
        'max_workers': 4,
        'rebalance_candle_limit': 2000,
        'rebalance_min_candles': 200,
        'optimize_for': 'sharpe',
        'max_combinations': 500,
        'in_sample_ratio': 0.7,
        'min_pass_ratio': 0.5,
    },
    'database': {
        'url': 'sqlite:///trading.db',
    },
    'monitoring': {
        'log_level': 'INFO',
        'log_file': None,
    },
    'api': {
        'host': '127.0.0.1',
        'port': 8000,
    },
}


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Return a new dict with `override` recursively merged over `base`."""
    out = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = deep_merge(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


def load_config(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Load configuration from a YAML file and merge it over the defaults.

    Args:
        path: YAML file path; missing files fall back to defaults
        overrides: Programmatic / CLI overrides merged last

    Returns:
        Configuration dictionary

    Raises:
        ConfigError: If the YAML cannot be parsed or is not a mapping
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if path:
        config_file = Path(path)
        if not config_file.exists():
            logger.warning(f"Config file {path} not found, using defaults")
        else:
            try:
                with open(config_file, 'r') as f:
                    loaded = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid configuration file: {e}") from e
            if not isinstance(loaded, dict):
                raise ConfigError("Configuration root must be a mapping")
            config = deep_merge(config, loaded)
            logger.info(f"Configuration loaded from {path}")

    if overrides:
        config = deep_merge(config, overrides)

    env = str(config.get('environment', 'paper')).lower()
    if env not in ('paper', 'live'):
        raise ConfigError(f"Unknown environment '{env}' (expected paper or live)")
    config['environment'] = env
    return config


def build_risk_configs(config: Dict[str, Any]) -> Dict[str, RiskConfig]:
    """
    Build the category -> RiskConfig table, including the "global" fallback.

    Category entries inherit any field they omit from the global entry.
    """
    risk_section = config.get('risk', {}) or {}
    global_cfg = RiskConfig.from_dict(risk_section.get('global'))
    table: Dict[str, RiskConfig] = {'global': global_cfg}
    for category, overrides in (risk_section.get('categories') or {}).items():
        table[category] = RiskConfig.from_dict(overrides, base=global_cfg)
    return table
