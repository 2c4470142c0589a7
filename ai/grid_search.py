"""
Grid Search Optimizer

Exhaustive parameter search over a strategy's declared parameter ranges:
- build_grid: min..max by step per parameter (rounded to 3 decimals)
- generate_combinations: Cartesian product of the grid
- sample_combinations: evenly strided subset when the product exceeds the cap

Each combination is backtested in a ThreadPoolExecutor. Results with fewer
than 5 trades are discarded; the rest are ranked by the chosen objective,
ties broken by combination order so the search is deterministic.
"""

from __future__ import annotations

import itertools
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from backtesting.engine import BacktestResult, CostModel, run_backtest
from strategies.registry import get_strategy


logger = logging.getLogger(__name__)

MAX_COMBINATIONS = 500
MIN_TRADES = 5
TOP_RESULTS = 5
OBJECTIVES = ('sharpe', 'return', 'winRate')


@dataclass
class GridSearchResult:
    strategy_id: str
    best_params: Dict[str, float]
    best_score: float
    optimize_for: str
    tested_combinations: int
    top_results: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'strategy_id': self.strategy_id,
            'best_params': dict(self.best_params),
            'best_score': self.best_score,
            'optimize_for': self.optimize_for,
            'tested_combinations': self.tested_combinations,
            'top_results': [dict(r) for r in self.top_results],
        }

    def __repr__(self) -> str:
        return (f"GridSearchResult({self.strategy_id}, best_score={self.best_score:.3f}, "
                f"tested={self.tested_combinations}, params={self.best_params})")


def build_grid(strategy_id: str) -> Dict[str, List[float]]:
    """Grid of candidate values per parameter; empty for unknown strategies."""
    strategy = get_strategy(strategy_id)
    if strategy is None:
        return {}
    grid: Dict[str, List[float]] = {}
    for name, rng in strategy.parameter_ranges.items():
        count = int(math.floor((rng.max - rng.min) / rng.step + 1e-9)) + 1
        grid[name] = [round(rng.min + i * rng.step, 3) for i in range(count)]
    return grid


def generate_combinations(grid: Dict[str, Sequence[float]]) -> List[Dict[str, float]]:
    """Cartesian product; the first key varies slowest. An empty grid yields [{}]."""
    keys = list(grid)
    return [dict(zip(keys, values)) for values in itertools.product(*(grid[k] for k in keys))]


def sample_combinations(combinations: Sequence[Dict[str, float]], max_count: int = MAX_COMBINATIONS) -> List[Dict[str, float]]:
    n = len(combinations)
    if n <= max_count:
        return list(combinations)
    return [combinations[min(int(math.floor(i * n / max_count)), n - 1)] for i in range(max_count)]


def score_result(result: BacktestResult, optimize_for: str) -> float:
    if optimize_for == 'return':
        return result.total_return
    if optimize_for == 'winRate':
        return result.win_rate
    return result.sharpe_ratio


class GridSearchOptimizer:
    """
    Args:
        max_workers: Thread pool size for concurrent backtests
        max_combinations: Cap on evaluated combinations
        cost_model: Backtest costs shared by every run
    """

    def __init__(self, max_workers: int = 4, max_combinations: int = MAX_COMBINATIONS,
                 cost_model: Optional[CostModel] = None):
        self.max_workers = max(1, int(max_workers))
        self.max_combinations = max_combinations
        self.cost_model = cost_model or CostModel()

    def search(self, strategy_id: str, candles: Sequence[Dict[str, float]], optimize_for: str = 'sharpe',
               grid: Optional[Dict[str, Sequence[float]]] = None) -> GridSearchResult:
        """
        Backtest every (sampled) combination and rank them.

        Returns:
            GridSearchResult; default parameters with score 0 when no combination
            produced enough trades, an empty result for unknown strategies
        """
        if optimize_for not in OBJECTIVES:
            raise ValueError(f"optimize_for must be one of {OBJECTIVES}, got {optimize_for!r}")
        strategy = get_strategy(strategy_id)
        if strategy is None:
            logger.warning(f"[GridSearch] unknown strategy '{strategy_id}'")
            return GridSearchResult(strategy_id, {}, 0.0, optimize_for, 0)

        combos = sample_combinations(generate_combinations(grid if grid is not None else build_grid(strategy_id)),
                                     self.max_combinations)
        logger.info(f"[GridSearch] {strategy_id}: {len(combos)} combinations, {self.max_workers} workers")

        def _evaluate(params: Dict[str, float]) -> BacktestResult:
            return run_backtest(strategy_id, params, candles, self.cost_model, strategy=strategy)

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            results = list(pool.map(_evaluate, combos))

        ranked = []
        for idx, (params, result) in enumerate(zip(combos, results)):
            if result.trade_count < MIN_TRADES:
                continue
            ranked.append((score_result(result, optimize_for), idx, params, result))
        ranked.sort(key=lambda item: (-item[0], item[1]))

        top = [{
            'params': dict(params),
            'score': score,
            'win_rate': result.win_rate,
            'total_return': result.total_return,
            'sharpe_ratio': result.sharpe_ratio,
            'trade_count': result.trade_count,
        } for score, _, params, result in ranked[:TOP_RESULTS]]

        if not ranked:
            logger.info(f"[GridSearch] {strategy_id}: no combination reached {MIN_TRADES} trades")
            return GridSearchResult(strategy_id, dict(strategy.default_parameters), 0.0, optimize_for, len(combos))

        best_score, _, best_params, _ = ranked[0]
        return GridSearchResult(strategy_id, dict(best_params), best_score, optimize_for, len(combos), top)
