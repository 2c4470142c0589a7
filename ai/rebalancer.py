"""
Daily Rebalancer

Re-tunes every strategy from recent history:

1. Baseline backtest with the current parameters
2. Grid search (objective: sharpe)
3. Walk-forward validation of the best parameters (only if best score > 0)
4. Adopt the parameters only if validation passes and they differ
   (the baseline result is kept on the report for comparison)
5. Re-weight from a backtest with the adopted parameters
6. Disable chronic losers / re-enable recovered strategies
7. Regime check (volatile + confidence > 0.7 -> risk advisory)

Strategy evaluations fan out over a thread pool; the resulting config
updates, backtest rows and audit-log entries are committed sequentially in
one transaction. A strategy whose config was changed while it was being
evaluated (an operator patch) is left alone and logged as "skipped".
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ai.grid_search import GridSearchOptimizer
from ai.walk_forward_engine import WalkForwardValidator
from backtesting.engine import BacktestResult, CostModel, run_backtest
from monitoring.logger import log_event
from persistence.store import Store
from strategies.aggregator import config_from_row, init_strategy_configs
from strategies.base import StrategyConfig, clamp_weight
from strategies.regime_detector import MarketRegime, RegimeDetector


logger = logging.getLogger(__name__)

MIN_CANDLES = 200
MIN_TRADES_FOR_WEIGHT = 3
MIN_TRADES_FOR_TOGGLE = 5
DISABLE_WIN_RATE = 0.35
ENABLE_WIN_RATE = 0.55
WEIGHT_CHANGE_THRESHOLD = 0.05
VOLATILE_ADVISORY_CONFIDENCE = 0.7


def calculate_weight(result: BacktestResult, current_weight: float) -> float:
    """
    Performance-based weight, blended 30/70 with the current weight.

    composite = 0.4 * win + 0.3 * sharpe + 0.3 * return, each score capped at 1.5
    (60% win rate, Sharpe 1.5 and 5% return all score 1.0).
    """
    if result.trade_count < MIN_TRADES_FOR_WEIGHT:
        return current_weight
    win_score = min(result.win_rate / 0.6, 1.5)
    sharpe_score = min(max(result.sharpe_ratio, 0.0) / 1.5, 1.5)
    return_score = min(max(result.total_return, 0.0) / 5.0, 1.5)
    composite = win_score * 0.4 + sharpe_score * 0.3 + return_score * 0.3
    new_weight = max(0.2, min(3.0, composite * 1.5))
    return clamp_weight(current_weight * 0.3 + new_weight * 0.7)


def _config_version(row: Dict[str, Any]) -> tuple:
    return (row.get('updated_at'), row.get('enabled'), row.get('weight'), row.get('parameters'))


@dataclass
class StrategyPlan:
    """Evaluation outcome for one strategy, applied at commit time."""
    strategy_id: str
    parameters: Dict[str, float]
    weight: float
    enabled: bool
    result: BacktestResult
    changes: List[Dict[str, Any]] = field(default_factory=list)
    baseline: Optional[BacktestResult] = None


@dataclass
class RebalanceReport:
    started_at: float
    duration_seconds: float = 0.0
    strategies_updated: int = 0
    strategies_disabled: int = 0
    strategies_enabled: int = 0
    strategies_skipped: int = 0
    regime: Optional[Dict[str, Any]] = None
    changes: List[Dict[str, Any]] = field(default_factory=list)
    baselines: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'started_at': self.started_at,
            'duration_seconds': self.duration_seconds,
            'strategies_updated': self.strategies_updated,
            'strategies_disabled': self.strategies_disabled,
            'strategies_enabled': self.strategies_enabled,
            'strategies_skipped': self.strategies_skipped,
            'regime': self.regime,
            'changes': [dict(c) for c in self.changes],
            'baselines': {k: dict(v) for k, v in self.baselines.items()},
        }

    def __repr__(self) -> str:
        return (f"RebalanceReport(updated={self.strategies_updated}, disabled={self.strategies_disabled}, "
                f"enabled={self.strategies_enabled}, skipped={self.strategies_skipped}, changes={len(self.changes)})")


class Rebalancer:
    """
    Args:
        store: Persistence store
        symbol / timeframe: Market the candles belong to (recorded on backtest rows)
        max_workers: Pool size for the per-strategy fan-out and each grid search
        optimize_for: Grid search objective
    """

    def __init__(self, store: Store, symbol: str = "WLD/USDC", timeframe: str = "1m", max_workers: int = 4,
                 optimize_for: str = "sharpe", min_candles: int = MIN_CANDLES,
                 cost_model: Optional[CostModel] = None,
                 optimizer: Optional[GridSearchOptimizer] = None,
                 validator: Optional[WalkForwardValidator] = None,
                 regime_detector: Optional[RegimeDetector] = None):
        self.store = store
        self.symbol = symbol
        self.timeframe = timeframe
        self.max_workers = max(1, int(max_workers))
        self.optimize_for = optimize_for
        self.min_candles = min_candles
        self.cost_model = cost_model or CostModel()
        self.optimizer = optimizer or GridSearchOptimizer(max_workers=self.max_workers, cost_model=self.cost_model)
        self.validator = validator or WalkForwardValidator(cost_model=self.cost_model)
        self.regime_detector = regime_detector or RegimeDetector()

    # ------------------------------------------------------------------
    # Evaluation (pure; runs in worker threads)
    # ------------------------------------------------------------------
    def evaluate_strategy(self, config: StrategyConfig, candles: Sequence[Dict[str, float]]) -> StrategyPlan:
        sid = config.strategy_id
        current_params = dict(config.parameters)
        changes: List[Dict[str, Any]] = []

        baseline = run_backtest(sid, current_params, candles, self.cost_model)

        new_params = current_params
        grid = self.optimizer.search(sid, candles, self.optimize_for)
        if grid.best_score > 0:
            wf = self.validator.validate(sid, grid.best_params, candles)
            if wf.passed and grid.best_params != current_params:
                new_params = dict(grid.best_params)
                changes.append({
                    'change_type': 'parameter',
                    'strategy_id': sid,
                    'old_value': current_params,
                    'new_value': new_params,
                    'reason': f"walk-forward passed (IS {wf.in_sample_return:.1f}% -> OS {wf.out_sample_return:.1f}%)",
                })

        result = run_backtest(sid, new_params, candles, self.cost_model)

        new_weight = calculate_weight(result, config.weight)
        if abs(new_weight - config.weight) > WEIGHT_CHANGE_THRESHOLD:
            changes.append({
                'change_type': 'weight',
                'strategy_id': sid,
                'old_value': round(config.weight, 4),
                'new_value': round(new_weight, 4),
                'reason': f"win rate {result.win_rate:.0%}, sharpe {result.sharpe_ratio:.2f}",
            })

        enabled = config.enabled
        if config.enabled and result.trade_count >= MIN_TRADES_FOR_TOGGLE and result.win_rate < DISABLE_WIN_RATE:
            enabled = False
            changes.append({
                'change_type': 'enabled',
                'strategy_id': sid,
                'old_value': True,
                'new_value': False,
                'reason': f"win rate {result.win_rate:.0%} < {DISABLE_WIN_RATE:.0%}",
            })
        elif not config.enabled and result.trade_count >= MIN_TRADES_FOR_TOGGLE and result.win_rate > ENABLE_WIN_RATE:
            enabled = True
            changes.append({
                'change_type': 'enabled',
                'strategy_id': sid,
                'old_value': False,
                'new_value': True,
                'reason': f"win rate {result.win_rate:.0%} > {ENABLE_WIN_RATE:.0%}",
            })

        return StrategyPlan(sid, new_params, new_weight, enabled, result, changes, baseline=baseline)

    # ------------------------------------------------------------------
    # Daily run
    # ------------------------------------------------------------------
    def run_daily_rebalance(self, candles: Sequence[Dict[str, float]]) -> RebalanceReport:
        """
        Re-tune all strategies on `candles` (oldest first) and persist the outcome.

        Returns:
            RebalanceReport; with fewer than `min_candles` candles nothing is
            changed beyond a single "insufficient candle data" audit entry
        """
        started = time.time()
        report = RebalanceReport(started_at=started)

        if len(candles) < self.min_candles:
            change = {
                'change_type': 'risk',
                'strategy_id': 'system',
                'old_value': None,
                'new_value': None,
                'reason': f"insufficient candle data ({len(candles)} < {self.min_candles})",
            }
            self.store.append_rebalance_changes([change])
            report.changes.append(change)
            report.duration_seconds = time.time() - started
            logger.warning(f"[Rebalancer] {change['reason']}")
            return report

        init_strategy_configs(self.store)
        rows = self.store.get_configs()
        configs = [config_from_row(r) for r in rows]
        evaluated = {r['strategy_id']: _config_version(r) for r in rows}
        logger.info(f"[Rebalancer] evaluating {len(configs)} strategies on {len(candles)} candles")

        plans: List[StrategyPlan] = []
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [(c, pool.submit(self.evaluate_strategy, c, candles)) for c in configs]
            for config, future in futures:
                try:
                    plans.append(future.result())
                except Exception as e:
                    logger.error(f"[Rebalancer] evaluation failed for {config.strategy_id}: {e}")

        regime = self.regime_detector.detect(candles)
        report.regime = regime.to_dict()
        system_changes = []
        if regime.regime == MarketRegime.VOLATILE and regime.confidence > VOLATILE_ADVISORY_CONFIDENCE:
            system_changes.append({
                'change_type': 'risk',
                'strategy_id': 'system',
                'old_value': {'mode': 'normal'},
                'new_value': {'mode': 'conservative', 'atr_ratio': regime.indicators.get('atr_ratio')},
                'reason': f"high volatility detected (ATR ratio {regime.indicators.get('atr_ratio', 0):.1f}x)",
            })

        with self.store.begin() as conn:
            for plan in plans:
                if plan.baseline is not None:
                    report.baselines[plan.strategy_id] = plan.baseline.summary()
                self.store.save_backtest(plan.result.to_dict(), self.symbol, self.timeframe, conn=conn)
                current = self.store.get_config(plan.strategy_id, conn=conn)
                if current is None or _config_version(current) != evaluated.get(plan.strategy_id):
                    report.strategies_skipped += 1
                    report.changes.append({
                        'change_type': 'skipped',
                        'strategy_id': plan.strategy_id,
                        'old_value': None,
                        'new_value': None,
                        'reason': "config changed during rebalance",
                    })
                    logger.warning(f"[Rebalancer] {plan.strategy_id} changed during evaluation; not updated")
                    continue
                self.store.update_config(plan.strategy_id, conn=conn, parameters=plan.parameters,
                                         weight=plan.weight, enabled=plan.enabled)
                report.changes.extend(plan.changes)
                for change in plan.changes:
                    if change['change_type'] == 'parameter':
                        report.strategies_updated += 1
                    elif change['change_type'] == 'enabled':
                        if change['new_value']:
                            report.strategies_enabled += 1
                        else:
                            report.strategies_disabled += 1
            report.changes.extend(system_changes)
            self.store.append_rebalance_changes(report.changes, conn=conn)

        self.store.save_engine_state('current_regime', {'regime': regime.regime.value,
                                                        'confidence': regime.confidence})
        for change in report.changes:
            log_event('rebalance.change', change)

        report.duration_seconds = time.time() - started
        logger.info(f"[Rebalancer] done in {report.duration_seconds:.1f}s: {report!r}")
        return report
