"""
Adaptive Learner

Learns from the lessons appended on every closed trade:

1. Pattern analysis: per-indicator mean/std of entry indicators, separately
   for winning and losing trades (last 50 lessons).
2. Confidence adjustment: a new entry whose indicators sit within one std
   of the loss pattern (and not the win pattern) has its confidence scaled
   down to 0.6-0.8; the reverse scales it up to at most 1.1.
3. Adaptive threshold: the minimum confidence a strategy needs to enter,
   raised when its recent win rate is poor (last 20 lessons).

Purely statistical; no model training.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from persistence.store import Store, utcnow


logger = logging.getLogger(__name__)

MIN_LESSONS = 10
PATTERN_LOOKBACK = 50
THRESHOLD_LOOKBACK = 20
MIN_SAMPLES_PER_INDICATOR = 3
DEFAULT_MIN_CONFIDENCE = 0.3
MIN_CONFIDENCE_BOUND = 0.3
MAX_CONFIDENCE_BOUND = 0.8


@dataclass
class IndicatorStats:
    mean: float
    std: float
    count: int


@dataclass
class PatternAnalysis:
    win_patterns: Dict[str, IndicatorStats] = field(default_factory=dict)
    loss_patterns: Dict[str, IndicatorStats] = field(default_factory=dict)
    win_count: int = 0
    loss_count: int = 0
    win_rate: float = 0.0

    def summary(self) -> Dict[str, Dict[str, str]]:
        out = {}
        for key in sorted(set(self.win_patterns) | set(self.loss_patterns)):
            win = self.win_patterns.get(key)
            loss = self.loss_patterns.get(key)
            out[key] = {
                'win': f"{win.mean:.2f}±{win.std:.2f}" if win else "N/A",
                'loss': f"{loss.mean:.2f}±{loss.std:.2f}" if loss else "N/A",
            }
        return out


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and not np.isnan(value)


def compute_indicator_stats(lessons: Sequence[Dict[str, Any]]) -> Dict[str, IndicatorStats]:
    """Population mean/std per entry indicator with at least 3 samples."""
    values: Dict[str, List[float]] = {}
    for lesson in lessons:
        for key, val in (lesson.get('entry_indicators') or {}).items():
            if _is_number(val):
                values.setdefault(key, []).append(float(val))
    stats = {}
    for key, vals in values.items():
        if len(vals) < MIN_SAMPLES_PER_INDICATOR:
            continue
        arr = np.array(vals)
        stats[key] = IndicatorStats(float(arr.mean()), float(arr.std()), len(vals))
    return stats


class AdaptiveLearner:
    def __init__(self, store: Store):
        self.store = store

    def analyze_patterns(self, strategy_id: str) -> Optional[PatternAnalysis]:
        lessons = self.store.get_lessons(strategy_id, PATTERN_LOOKBACK)
        if len(lessons) < MIN_LESSONS:
            return None
        wins = [l for l in lessons if l['pnl'] > 0]
        losses = [l for l in lessons if l['pnl'] <= 0]
        return PatternAnalysis(
            compute_indicator_stats(wins),
            compute_indicator_stats(losses),
            len(wins),
            len(losses),
            len(wins) / len(lessons),
        )

    def get_confidence_adjustment(self, strategy_id: str, indicators: Dict[str, float]) -> Tuple[float, str]:
        """
        Confidence multiplier for a prospective entry.

        Returns:
            (factor, reason); factor is 1.0 when there is nothing to learn from
        """
        analysis = self.analyze_patterns(strategy_id)
        if analysis is None:
            return 1.0, "learning data insufficient"
        if not indicators:
            return 1.0, "no indicators"

        loss_matches = win_matches = checked = 0
        for key, value in indicators.items():
            if not _is_number(value):
                continue
            loss_stats = analysis.loss_patterns.get(key)
            win_stats = analysis.win_patterns.get(key)
            if loss_stats is None and win_stats is None:
                continue
            checked += 1
            if loss_stats and loss_stats.std > 0 and abs(value - loss_stats.mean) <= loss_stats.std:
                loss_matches += 1
            if win_stats and win_stats.std > 0 and abs(value - win_stats.mean) <= win_stats.std:
                win_matches += 1

        if checked == 0:
            return 1.0, "no comparable indicators"

        loss_ratio = loss_matches / checked
        win_ratio = win_matches / checked
        if loss_ratio > 0.5 and win_ratio < 0.3:
            return 0.6 + 0.2 * (1 - loss_ratio), f"resembles loss pattern ({loss_ratio:.0%} match)"
        if win_ratio > 0.5 and loss_ratio < 0.3:
            return min(1.1, 1.0 + (win_ratio - 0.5) * 0.2), f"resembles win pattern ({win_ratio:.0%} match)"
        return 1.0, "pattern neutral"

    def update_adaptive_threshold(self, strategy_id: str) -> Optional[float]:
        """Recompute and persist the strategy's minimum confidence. None if too few lessons."""
        recent = self.store.get_lessons(strategy_id, THRESHOLD_LOOKBACK)
        if len(recent) < MIN_LESSONS:
            return None

        win_rate = sum(1 for l in recent if l['pnl'] > 0) / len(recent)
        min_confidence = 0.5
        if win_rate < 0.3:
            min_confidence = 0.7
        elif win_rate < 0.4:
            min_confidence = 0.6
        min_confidence = max(MIN_CONFIDENCE_BOUND, min(MAX_CONFIDENCE_BOUND, min_confidence))

        analysis = self.analyze_patterns(strategy_id)
        self.store.upsert_adaptive(
            strategy_id,
            min_confidence=min_confidence,
            win_pattern_count=analysis.win_count if analysis else 0,
            loss_pattern_count=analysis.loss_count if analysis else 0,
            last_analyzed_at=utcnow(),
            analysis_data={'win_rate': win_rate, 'patterns': analysis.summary()} if analysis else None,
        )
        logger.info(f"[Learner] {strategy_id}: win rate {win_rate:.0%} -> min confidence {min_confidence:.2f}")
        return min_confidence

    def get_min_confidence(self, strategy_id: str) -> float:
        row = self.store.get_adaptive(strategy_id)
        return float(row['min_confidence']) if row else DEFAULT_MIN_CONFIDENCE

    def update_all(self, strategy_ids: Sequence[str]) -> Dict[str, Optional[float]]:
        results = {}
        for strategy_id in strategy_ids:
            try:
                results[strategy_id] = self.update_adaptive_threshold(strategy_id)
            except Exception as e:
                logger.error(f"[Learner] update failed for {strategy_id}: {e}")
                results[strategy_id] = None
        return results
