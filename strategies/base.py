"""
base.py - Strategy Contract

Defines the signal type every strategy produces, the strategy definition
(identity, category, parameter ranges) and the BaseStrategy helper class.
Strategies generate signals from candle windows; they never execute trades
and keep no state between calls.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from data.candles import CandleProcessor
from indicators.library import compute_frame


logger = logging.getLogger(__name__)

WEIGHT_MIN = 0.1
WEIGHT_MAX = 3.0


class SignalAction(Enum):
    """Trading signal actions."""
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"

    def __str__(self):
        return self.value


class StrategyCategory(Enum):
    """Fixed strategy taxonomy; also the key for per-category risk limits."""
    MEAN_REVERSION = "mean-reversion"
    TREND_FOLLOWING = "trend-following"
    BREAKOUT = "breakout"
    MOMENTUM = "momentum"
    DIVERGENCE = "divergence"
    ORDER_FLOW = "order-flow"

    def __str__(self):
        return self.value


@dataclass(frozen=True)
class Signal:
    """
    Immutable strategy output.

    Attributes:
        action: buy / sell / hold
        confidence: Signal confidence (0.0 to 1.0)
        strategy_id: Strategy that produced the signal
        reason: Human-readable explanation
        indicators: Indicator snapshot at decision time
        timestamp: Creation time in epoch milliseconds
    """
    action: SignalAction
    confidence: float
    strategy_id: str = ""
    reason: str = ""
    indicators: Dict[str, float] = field(default_factory=dict)
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    def __post_init__(self):
        if isinstance(self.action, str):
            object.__setattr__(self, 'action', SignalAction(self.action.lower()))
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be between 0.0 and 1.0, got {self.confidence}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action.value,
            'confidence': self.confidence,
            'strategy_id': self.strategy_id,
            'reason': self.reason,
            'indicators': dict(self.indicators),
            'timestamp': self.timestamp,
        }

    def __repr__(self) -> str:
        return (f"Signal(action={self.action.value}, "
                f"confidence={self.confidence:.2f}, "
                f"strategy={self.strategy_id})")


@dataclass(frozen=True)
class ParameterRange:
    """Inclusive search range for one tunable parameter."""
    min: float
    max: float
    step: float

    def __post_init__(self):
        if self.step <= 0:
            raise ValueError(f"Parameter step must be positive, got {self.step}")
        if self.max < self.min:
            raise ValueError(f"Parameter max {self.max} below min {self.min}")

    def contains(self, value: float) -> bool:
        return self.min - 1e-9 <= value <= self.max + 1e-9

    def to_dict(self) -> Dict[str, float]:
        return {'min': self.min, 'max': self.max, 'step': self.step}


def clamp_weight(weight: float) -> float:
    return min(max(float(weight), WEIGHT_MIN), WEIGHT_MAX)


@dataclass
class StrategyConfig:
    """
    Mutable, persisted configuration of one strategy.

    Weight is clamped to [0.1, 3.0] on construction and on every update.
    """
    strategy_id: str
    name: str = ""
    category: str = ""
    enabled: bool = True
    weight: float = 1.0
    parameters: Dict[str, float] = field(default_factory=dict)
    description: str = ""
    difficulty: str = ""
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.weight = clamp_weight(self.weight)

    def with_updates(self, **changes: Any) -> "StrategyConfig":
        data = self.to_dict(raw=True)
        data.update(changes)
        return StrategyConfig(**data)

    def to_dict(self, raw: bool = False) -> Dict[str, Any]:
        data = {
            'strategy_id': self.strategy_id,
            'name': self.name,
            'category': self.category,
            'enabled': self.enabled,
            'weight': self.weight,
            'parameters': dict(self.parameters),
            'description': self.description,
            'difficulty': self.difficulty,
            'updated_at': self.updated_at,
        }
        if not raw:
            data['updated_at'] = self.updated_at.isoformat() if self.updated_at else None
        return data


class BaseStrategy(ABC):
    """
    Abstract base class for all strategies.

    Subclasses declare their definition as class attributes and implement
    `analyze`. Instances are stateless; the registry holds one per id.
    """

    id: str = ""
    name: str = ""
    category: StrategyCategory = StrategyCategory.MEAN_REVERSION
    difficulty: str = "beginner"
    description: str = ""
    default_parameters: Dict[str, float] = {}
    parameter_ranges: Dict[str, ParameterRange] = {}
    required_indicators: List[str] = []
    min_candles: int = 30

    @abstractmethod
    def analyze(self, candles: Sequence[Dict[str, float]], params: Dict[str, float]) -> Signal:
        """
        Produce a signal for the newest candle in the window.

        Args:
            candles: Candle dicts, oldest first
            params: Strategy parameters (missing keys fall back to defaults)

        Returns:
            Signal for the latest candle
        """

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def params_with_defaults(self, params: Optional[Dict[str, float]]) -> Dict[str, float]:
        merged = dict(self.default_parameters)
        merged.update(params or {})
        return merged

    def frame(self, candles: Sequence[Dict[str, float]]) -> pd.DataFrame:
        return CandleProcessor.to_dataframe(candles)

    def indicator(self, indicator_id: str, df: pd.DataFrame, **params: Any) -> pd.DataFrame:
        return compute_frame(indicator_id, df, params)

    def hold(self, indicators: Optional[Dict[str, float]] = None, reason: str = "conditions not met") -> Signal:
        return Signal(SignalAction.HOLD, 0.0, self.id, reason, dict(indicators or {}))

    def signal(self, action: SignalAction, confidence: float, reason: str,
               indicators: Optional[Dict[str, float]] = None) -> Signal:
        """Build a signal with confidence clamped into [0, 1]."""
        confidence = min(max(float(confidence), 0.0), 1.0)
        return Signal(action, confidence, self.id, reason, dict(indicators or {}))

    def describe(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'category': self.category.value,
            'difficulty': self.difficulty,
            'description': self.description,
            'default_parameters': dict(self.default_parameters),
            'parameter_ranges': {k: r.to_dict() for k, r in self.parameter_ranges.items()},
            'required_indicators': list(self.required_indicators),
        }

    def default_config(self) -> StrategyConfig:
        return StrategyConfig(
            strategy_id=self.id,
            name=self.name,
            category=self.category.value,
            enabled=True,
            weight=1.0,
            parameters=dict(self.default_parameters),
            description=self.description,
            difficulty=self.difficulty,
        )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id={self.id}, category={self.category.value})"
