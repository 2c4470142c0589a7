"""
Walk-Forward Validation

Single in-sample / out-of-sample split used to reject over-fitted parameter
sets before they are adopted:

    split = floor(n * in_sample_ratio)
    pass_ratio = out_of_sample_return / in_sample_return   (0 when IS <= 0)
    passed = IS > 0 and OS > 0 and pass_ratio >= min_pass_ratio

Both halves are backtested independently with the same parameters, so the
out-of-sample run never sees in-sample candles.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Sequence
import logging

from backtesting.engine import BacktestResult, CostModel, run_backtest


logger = logging.getLogger(__name__)

MIN_TOTAL_CANDLES = 100
MIN_IN_SAMPLE = 50
MIN_OUT_SAMPLE = 20


@dataclass
class WalkForwardResult:
    """Outcome of one walk-forward validation."""
    strategy_id: str
    passed: bool
    in_sample_return: float = 0.0
    out_sample_return: float = 0.0
    pass_ratio: float = 0.0
    parameters: Dict[str, float] = field(default_factory=dict)
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'strategy_id': self.strategy_id,
            'passed': self.passed,
            'in_sample_return': self.in_sample_return,
            'out_sample_return': self.out_sample_return,
            'pass_ratio': self.pass_ratio,
            'parameters': dict(self.parameters),
            'reason': self.reason,
        }


class WalkForwardValidator:
    """
    Walk-forward validator for parameter sets.

    Args:
        in_sample_ratio: Fraction of candles used as in-sample (default 0.7)
        min_pass_ratio: Minimum OS/IS return ratio to pass (default 0.5)
        cost_model: Backtest costs for both halves
        backtest: Backtest function (strategy_id, params, candles, cost_model) -> BacktestResult
    """

    def __init__(self, in_sample_ratio: float = 0.7, min_pass_ratio: float = 0.5,
                 cost_model: Optional[CostModel] = None,
                 backtest: Callable[..., BacktestResult] = run_backtest):
        if not 0 < in_sample_ratio < 1:
            raise ValueError(f"in_sample_ratio must be in (0, 1), got {in_sample_ratio}")
        self.in_sample_ratio = in_sample_ratio
        self.min_pass_ratio = min_pass_ratio
        self.cost_model = cost_model or CostModel()
        self.backtest = backtest

    def validate(self, strategy_id: str, parameters: Dict[str, float],
                 candles: Sequence[Dict[str, float]]) -> WalkForwardResult:
        """
        Validate `parameters` on an in-sample / out-of-sample split of `candles`.

        Returns:
            WalkForwardResult; failed with a reason when there is too little data
        """
        params = dict(parameters)
        if len(candles) < MIN_TOTAL_CANDLES:
            return WalkForwardResult(strategy_id, False, parameters=params,
                                     reason=f"need {MIN_TOTAL_CANDLES} candles, got {len(candles)}")

        split = int(len(candles) * self.in_sample_ratio)
        in_sample, out_sample = list(candles[:split]), list(candles[split:])
        if len(in_sample) < MIN_IN_SAMPLE or len(out_sample) < MIN_OUT_SAMPLE:
            return WalkForwardResult(strategy_id, False, parameters=params,
                                     reason=f"split too small ({len(in_sample)}/{len(out_sample)})")

        is_return = self.backtest(strategy_id, params, in_sample, self.cost_model).total_return
        os_return = self.backtest(strategy_id, params, out_sample, self.cost_model).total_return

        pass_ratio = os_return / is_return if is_return > 0 else 0.0
        passed = is_return > 0 and os_return > 0 and pass_ratio >= self.min_pass_ratio

        logger.info(
            f"[WalkForward] {strategy_id}: IS {is_return:.2f}% / OS {os_return:.2f}% "
            f"ratio {pass_ratio:.2f} -> {'PASS' if passed else 'FAIL'}"
        )
        return WalkForwardResult(strategy_id, passed, is_return, os_return, pass_ratio, params,
                                 reason="passed" if passed else f"pass ratio {pass_ratio:.2f} < {self.min_pass_ratio}"
                                 if is_return > 0 and os_return > 0 else "non-positive return")
