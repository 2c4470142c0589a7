"""
Regime-aware weight adjustment.

Scales strategy weights toward the categories that suit the current market
regime. The adjusted weights are advisory: they are returned to the caller
and never written back to the strategy configs.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from strategies.base import StrategyConfig, clamp_weight
from strategies.regime_detector import MarketRegime, RegimeAnalysis


logger = logging.getLogger(__name__)

RECOMMENDED_BONUS = 1.3
OTHER_PENALTY = 0.8
CONSERVATIVE_FACTOR = 0.5
CONSERVATIVE_MIN_CONFIDENCE = 0.7


@dataclass
class WeightAdjustment:
    regime: str
    conservative_mode: bool
    weights: Dict[str, float] = field(default_factory=dict)
    adjustments: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'regime': self.regime,
            'conservative_mode': self.conservative_mode,
            'weights': dict(self.weights),
            'adjustments': [dict(a) for a in self.adjustments],
        }


class WeightAdjuster:
    def adjust(self, configs: Sequence[StrategyConfig], regime: RegimeAnalysis) -> WeightAdjustment:
        """
        Compute regime-adjusted weights for enabled strategies.

        Recommended categories get x1.3, the rest x0.8; in a high-confidence
        volatile regime the non-recommended weights are halved as well.
        """
        conservative = regime.regime == MarketRegime.VOLATILE and regime.confidence > CONSERVATIVE_MIN_CONFIDENCE
        recommended = set(regime.recommended_categories)
        result = WeightAdjustment(regime.regime.value, conservative)

        for config in configs:
            if not config.enabled:
                continue
            if config.category in recommended:
                new_weight = config.weight * RECOMMENDED_BONUS
                reason = f"suits {regime.regime.value} market"
            else:
                new_weight = config.weight * OTHER_PENALTY
                reason = f"unsuited to {regime.regime.value} market"
                if conservative:
                    new_weight *= CONSERVATIVE_FACTOR
                    reason += ", conservative mode"
            new_weight = clamp_weight(new_weight)
            result.weights[config.strategy_id] = new_weight
            result.adjustments.append({
                'strategy_id': config.strategy_id,
                'old_weight': config.weight,
                'new_weight': new_weight,
                'reason': reason,
            })

        logger.debug(f"[WeightAdjuster] {regime!r} conservative={conservative}: {result.weights}")
        return result
