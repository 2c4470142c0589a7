"""
regime_detector.py - Market Regime Classification

Stateless and deterministic regime detection from ADX (trend strength),
the ATR ratio (current ATR over its 50-bar mean) and EMA21/EMA50 alignment
(trend direction).

Market Regimes:
- TRENDING_UP: ADX > 25, price > EMA21 > EMA50
- TRENDING_DOWN: ADX > 25, price < EMA21 < EMA50
- VOLATILE: no strong trend, ATR ratio > 1.5
- RANGING: everything else

Each regime carries the strategy categories that suit it.
No machine learning, no future data leakage, fully explainable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Sequence

import numpy as np

from data.candles import CandleProcessor
from indicators.library import Indicators


logger = logging.getLogger(__name__)

MIN_CANDLES = 50
ADX_TREND_THRESHOLD = 25.0
ATR_VOLATILE_RATIO = 1.5
ATR_MEAN_WINDOW = 50


class MarketRegime(Enum):
    """Market regime classifications."""
    TRENDING_UP = "trending_up"
    TRENDING_DOWN = "trending_down"
    RANGING = "ranging"
    VOLATILE = "volatile"

    def __str__(self):
        return self.value


@dataclass
class RegimeAnalysis:
    regime: MarketRegime
    confidence: float
    indicators: Dict[str, float] = field(default_factory=dict)
    recommended_categories: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'regime': self.regime.value,
            'confidence': self.confidence,
            'indicators': dict(self.indicators),
            'recommended_categories': list(self.recommended_categories),
        }

    def __repr__(self) -> str:
        return f"RegimeAnalysis({self.regime.value}, confidence={self.confidence:.2f})"


def _last(series) -> float:
    values = series.dropna()
    return float(values.iloc[-1]) if len(values) else float('nan')


class RegimeDetector:
    """
    Stateless market regime detector.

    All computations use only the candles passed in (no look-ahead).
    """

    def __init__(self, period: int = 14, fast_ema: int = 21, slow_ema: int = 50):
        self.period = period
        self.fast_ema = fast_ema
        self.slow_ema = slow_ema

    def detect(self, candles: Sequence[Dict[str, float]]) -> RegimeAnalysis:
        """
        Classify the market regime of the candle window.

        Args:
            candles: Candle dicts, oldest first

        Returns:
            RegimeAnalysis; ranging with confidence 0 for fewer than 50 candles
        """
        if len(candles) < MIN_CANDLES:
            return RegimeAnalysis(
                MarketRegime.RANGING, 0.0,
                {'adx': 0.0, 'atr': 0.0, 'atr_ratio': 1.0, 'trend_direction': 0},
                ['mean-reversion'],
            )

        df = CandleProcessor.to_dataframe(candles)
        adx = _last(Indicators.adx(df, self.period)['adx'])
        if np.isnan(adx):
            adx = 20.0

        atr_series = Indicators.atr(df, self.period).dropna()
        atr = float(atr_series.iloc[-1]) if len(atr_series) else 0.0
        avg_atr = float(atr_series.tail(ATR_MEAN_WINDOW).mean()) if len(atr_series) else atr
        atr_ratio = atr / avg_atr if avg_atr > 0 else 1.0

        ema_fast = _last(Indicators.ema(df['close'], self.fast_ema))
        ema_slow = _last(Indicators.ema(df['close'], self.slow_ema))
        price = float(df['close'].iloc[-1])
        direction = 0
        if price > ema_fast > ema_slow:
            direction = 1
        elif price < ema_fast < ema_slow:
            direction = -1

        if adx > ADX_TREND_THRESHOLD:
            if direction > 0:
                regime, confidence = MarketRegime.TRENDING_UP, min((adx - 20) / 30, 1.0)
                categories = ['trend-following', 'breakout', 'momentum']
            elif direction < 0:
                regime, confidence = MarketRegime.TRENDING_DOWN, min((adx - 20) / 30, 1.0)
                categories = ['trend-following', 'divergence']
            else:
                regime, confidence = MarketRegime.RANGING, 0.5
                categories = ['mean-reversion']
        elif atr_ratio > ATR_VOLATILE_RATIO:
            regime, confidence = MarketRegime.VOLATILE, min((atr_ratio - 1) / 2, 1.0)
            categories = ['mean-reversion', 'order-flow']
        else:
            regime, confidence = MarketRegime.RANGING, min((ADX_TREND_THRESHOLD - adx) / 15, 1.0)
            categories = ['mean-reversion', 'order-flow']

        analysis = RegimeAnalysis(
            regime, float(confidence),
            {'adx': adx, 'atr': atr, 'atr_ratio': atr_ratio, 'trend_direction': direction},
            categories,
        )
        logger.debug(f"Regime detected: {analysis!r} (adx={adx:.1f}, atr_ratio={atr_ratio:.2f}, dir={direction})")
        return analysis
