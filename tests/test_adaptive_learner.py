"""
test_adaptive_learner.py - Tests for lesson pattern analysis and adaptive thresholds
"""

from datetime import timedelta

import pytest

from ai.adaptive_learner import AdaptiveLearner, compute_indicator_stats
from persistence.store import utcnow


def add_lessons(store, strategy_id, wins, losses):
    """wins/losses: lists of rsi values; wins are added first (older)."""
    base = utcnow()
    for i, (rsi, pnl) in enumerate([(r, 1.0) for r in wins] + [(r, -1.0) for r in losses]):
        store.add_lesson({'strategy_id': strategy_id, 'trade_id': i, 'entry_indicators': {'rsi': rsi},
                          'pnl': pnl, 'created_at': base + timedelta(seconds=i)})


@pytest.fixture
def learner(store):
    return AdaptiveLearner(store)


def test_indicator_stats_need_three_samples():
    lessons = [{'entry_indicators': {'rsi': 30.0, 'adx': 20.0}},
               {'entry_indicators': {'rsi': 32.0, 'adx': None}},
               {'entry_indicators': {'rsi': 34.0, 'flag': True}}]
    stats = compute_indicator_stats(lessons)
    assert set(stats) == {'rsi'}
    assert stats['rsi'].mean == pytest.approx(32.0)
    assert stats['rsi'].count == 3


class TestConfidenceAdjustment:

    def test_too_few_lessons(self, learner, store):
        add_lessons(store, 'a', [30, 31, 32], [70, 71])
        assert learner.get_confidence_adjustment('a', {'rsi': 70}) == (1.0, "learning data insufficient")

    def test_loss_pattern_reduces_confidence(self, learner, store):
        add_lessons(store, 'a', [28, 29, 30, 31, 32], [68, 69, 70, 71, 72])
        factor, reason = learner.get_confidence_adjustment('a', {'rsi': 70.0})
        assert factor == pytest.approx(0.6)
        assert reason.startswith("resembles loss pattern")

    def test_win_pattern_boosts_confidence(self, learner, store):
        add_lessons(store, 'a', [28, 29, 30, 31, 32], [68, 69, 70, 71, 72])
        factor, reason = learner.get_confidence_adjustment('a', {'rsi': 30.0})
        assert factor == pytest.approx(1.1)
        assert reason.startswith("resembles win pattern")

    def test_neutral_and_unknown_indicators(self, learner, store):
        add_lessons(store, 'a', [28, 29, 30, 31, 32], [68, 69, 70, 71, 72])
        assert learner.get_confidence_adjustment('a', {'rsi': 50.0}) == (1.0, "pattern neutral")
        assert learner.get_confidence_adjustment('a', {'adx': 30.0}) == (1.0, "no comparable indicators")
        assert learner.get_confidence_adjustment('a', {}) == (1.0, "no indicators")

    def test_factor_stays_in_bounds(self, learner, store):
        add_lessons(store, 'a', [28, 29, 30, 31, 32], [68, 69, 70, 71, 72])
        for rsi in range(0, 101, 5):
            factor, _ = learner.get_confidence_adjustment('a', {'rsi': float(rsi)})
            assert 0.6 <= factor <= 1.1


class TestAdaptiveThreshold:

    def test_default_without_row(self, learner):
        assert learner.get_min_confidence('a') == 0.3

    def test_too_few_lessons_is_none(self, learner, store):
        add_lessons(store, 'a', [30] * 4, [70] * 5)
        assert learner.update_adaptive_threshold('a') is None
        assert learner.get_min_confidence('a') == 0.3

    @pytest.mark.parametrize("wins,losses,expected", [
        (5, 5, 0.5),
        (3, 7, 0.6),
        (2, 8, 0.7),
        (10, 0, 0.5),
    ])
    def test_threshold_from_recent_win_rate(self, learner, store, wins, losses, expected):
        add_lessons(store, 'a', [30] * wins, [70] * losses)
        assert learner.update_adaptive_threshold('a') == expected
        assert learner.get_min_confidence('a') == expected
        row = store.get_adaptive('a')
        assert row['win_pattern_count'] == wins
        assert row['loss_pattern_count'] == losses

    def test_update_all(self, learner, store):
        add_lessons(store, 'a', [30] * 5, [70] * 5)
        assert learner.update_all(['a', 'b']) == {'a': 0.5, 'b': None}
