"""
aggregator.py - Weighted multi-strategy signal aggregation

Runs every enabled strategy on the same candle window and combines the
votes into one decision, weighting each strategy's confidence by its
configured weight.

Decision rule:
- BUY if buy_score > sell_score * 1.2 and at least 2 strategies vote buy
- SELL symmetric
- HOLD otherwise
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from persistence.store import Store
from strategies.base import Signal, SignalAction, StrategyConfig
from strategies.registry import get_strategy, list_strategies


logger = logging.getLogger(__name__)

DOMINANCE_RATIO = 1.2
MIN_VOTES = 2


@dataclass
class AggregatedSignal:
    action: SignalAction
    confidence: float
    buy_score: float = 0.0
    sell_score: float = 0.0
    signals: List[Signal] = field(default_factory=list)
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action.value,
            'confidence': self.confidence,
            'buy_score': self.buy_score,
            'sell_score': self.sell_score,
            'signals': [s.to_dict() for s in self.signals],
            'reason': self.reason,
        }

    def __repr__(self) -> str:
        return (f"AggregatedSignal({self.action.value}, conf={self.confidence:.2f}, "
                f"buy={self.buy_score:.2f}, sell={self.sell_score:.2f}, n={len(self.signals)})")


def config_from_row(row: Dict[str, Any]) -> StrategyConfig:
    """Build a StrategyConfig from a strategy_configs row."""
    return StrategyConfig(**{k: row.get(k) for k in (
        'strategy_id', 'name', 'category', 'enabled', 'weight', 'parameters',
        'description', 'difficulty', 'updated_at') if k in row})


def init_strategy_configs(store: Store) -> int:
    """
    Insert a default config (enabled, weight 1.0, default parameters) for
    every registered strategy that has none. Returns the number inserted.
    """
    inserted = 0
    for strategy in list_strategies():
        if store.insert_config_if_absent(strategy.default_config().to_dict(raw=True)):
            inserted += 1
    if inserted:
        logger.info(f"[Aggregator] initialized {inserted} strategy configs")
    return inserted


class SignalAggregator:
    def __init__(self, dominance_ratio: float = DOMINANCE_RATIO, min_votes: int = MIN_VOTES):
        self.dominance_ratio = dominance_ratio
        self.min_votes = min_votes

    def aggregate(self, candles: Sequence[Dict[str, float]], configs: Sequence[StrategyConfig]) -> AggregatedSignal:
        """
        Combine the signals of all enabled strategies.

        Args:
            candles: Shared candle window, oldest first
            configs: Strategy configurations; disabled ones are skipped

        Returns:
            AggregatedSignal with the decision and the individual signals
        """
        signals: List[Signal] = []
        buy_score = sell_score = total_weight = 0.0
        buy_votes = sell_votes = 0

        for config in configs:
            if not config.enabled:
                continue
            strategy = get_strategy(config.strategy_id)
            if strategy is None:
                logger.debug(f"[Aggregator] no registered strategy for {config.strategy_id}")
                continue
            try:
                signal = strategy.analyze(candles, strategy.params_with_defaults(config.parameters))
            except Exception as e:
                logger.warning(f"[Aggregator] {config.strategy_id} analyze failed: {e}")
                continue

            signals.append(signal)
            total_weight += config.weight
            if signal.action == SignalAction.BUY:
                buy_score += signal.confidence * config.weight
                buy_votes += 1
            elif signal.action == SignalAction.SELL:
                sell_score += signal.confidence * config.weight
                sell_votes += 1

        action = SignalAction.HOLD
        score = 0.0
        if buy_score > sell_score * self.dominance_ratio and buy_votes >= self.min_votes:
            action, score = SignalAction.BUY, buy_score
        elif sell_score > buy_score * self.dominance_ratio and sell_votes >= self.min_votes:
            action, score = SignalAction.SELL, sell_score

        confidence = min(score / total_weight, 1.0) if total_weight > 0 and action != SignalAction.HOLD else 0.0
        reason = f"{buy_votes} buy / {sell_votes} sell of {len(signals)} signals"
        return AggregatedSignal(action, confidence, buy_score, sell_score, signals, reason)
