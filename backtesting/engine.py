"""
Backtest simulator.

Responsibilities:
- Replay historical OHLCV candles through one registered strategy
- Open/close simulated positions from the strategy's signals, with a fixed
  stop-loss / take-profit band, slippage and a fee on both legs
- Return the trade list and aggregate metrics (win rate, return, drawdown,
  profit factor, approximate Sharpe)

Design notes:
- `run_backtest` is a pure function of (strategy, parameters, candles, cost
  model). It shares no state, so grid search and the rebalancer can run many
  of them concurrently in a worker pool.
- Warm-up: replay starts at max(50, 5% of the candle count).
- Entries need confidence >= 0.5 and are sized at 5% of the current balance;
  an opposite signal with confidence >= 0.6 closes the position.
- Any position still open on the last candle is closed at its close
  ("period_end"), without slippage.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from data.candles import CandleProcessor
from strategies.base import BaseStrategy, SignalAction
from strategies.registry import get_strategy


logger = logging.getLogger(__name__)

MIN_CANDLES = 50
WARMUP_FRACTION = 0.05
STOP_LOSS_PCT = -1.0
TAKE_PROFIT_PCT = 1.5
ENTRY_MIN_CONFIDENCE = 0.5
REVERSE_MIN_CONFIDENCE = 0.6
POSITION_FRACTION = 0.05
ANNUALIZATION = math.sqrt(252)


@dataclass(frozen=True)
class CostModel:
    """Simulation costs and starting capital."""
    initial_balance: float = 10_000.0
    fee_rate: float = 0.001         # fraction of notional per leg
    slippage_rate: float = 0.0005   # buy fills at price*(1+s), sell at price*(1-s)


class BacktestError(RuntimeError):
    pass


@dataclass
class BacktestTrade:
    entry_time: int
    exit_time: int
    side: str
    entry_price: float
    exit_price: float
    quantity: float
    pnl: float
    pnl_percent: float
    fee: float
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BacktestResult:
    strategy_id: str
    parameters: Dict[str, float]
    win_rate: float = 0.0
    total_return: float = 0.0
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0
    trade_count: int = 0
    avg_trade_pnl: float = 0.0
    profit_factor: float = 0.0
    final_balance: float = 0.0
    period_start: Optional[int] = None
    period_end: Optional[int] = None
    trades: List[BacktestTrade] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['trades'] = [t.to_dict() for t in self.trades]
        return data

    def summary(self) -> Dict[str, Any]:
        """Metrics without the trade list."""
        data = self.to_dict()
        data.pop('trades')
        return data

    def __repr__(self) -> str:
        return (f"BacktestResult(strategy={self.strategy_id}, trades={self.trade_count}, "
                f"return={self.total_return:.2f}%, win_rate={self.win_rate:.2f}, sharpe={self.sharpe_ratio:.2f})")


def apply_slippage(price: float, side: str, slippage_rate: float) -> float:
    """Degrade a fill price in the direction of the order."""
    if side == "buy":
        return price * (1.0 + slippage_rate)
    return price * (1.0 - slippage_rate)


def _pnl_percent(side: str, entry: float, price: float) -> float:
    if side == "buy":
        return (price - entry) / entry * 100
    return (entry - price) / entry * 100


class _Position:
    __slots__ = ("side", "entry_price", "entry_time", "quantity")

    def __init__(self, side: str, entry_price: float, entry_time: int, quantity: float):
        self.side = side
        self.entry_price = entry_price
        self.entry_time = entry_time
        self.quantity = quantity


def _close(position: _Position, exit_price: float, exit_time: int, reason: str, fee_rate: float) -> BacktestTrade:
    exit_fee = position.quantity * exit_price * fee_rate
    if position.side == "buy":
        gross = (exit_price - position.entry_price) * position.quantity
    else:
        gross = (position.entry_price - exit_price) * position.quantity
    # entry fee was already charged against the balance at entry
    pnl = gross - exit_fee
    notional = position.quantity * position.entry_price
    return BacktestTrade(
        entry_time=position.entry_time,
        exit_time=exit_time,
        side=position.side,
        entry_price=position.entry_price,
        exit_price=exit_price,
        quantity=position.quantity,
        pnl=pnl,
        pnl_percent=pnl / notional * 100 if notional > 0 else 0.0,
        fee=exit_fee + notional * fee_rate,
        reason=reason,
    )


def simulate(strategy: BaseStrategy, parameters: Dict[str, float], candles: Sequence[Dict[str, float]],
             cost: CostModel) -> BacktestResult:
    """Replay `candles` through `strategy`; callers guarantee len(candles) >= MIN_CANDLES."""
    trades: List[BacktestTrade] = []
    balance = cost.initial_balance
    peak = balance
    max_drawdown = 0.0
    position: Optional[_Position] = None

    start_idx = max(MIN_CANDLES, int(math.floor(len(candles) * WARMUP_FRACTION)))

    for i in range(start_idx, len(candles)):
        candle = candles[i]
        close = candle['close']

        if position is not None:
            move = _pnl_percent(position.side, position.entry_price, close)
            if move <= STOP_LOSS_PCT or move >= TAKE_PROFIT_PCT:
                exit_side = "sell" if position.side == "buy" else "buy"
                exit_price = apply_slippage(close, exit_side, cost.slippage_rate)
                reason = "stop_loss" if move <= STOP_LOSS_PCT else "take_profit"
                trade = _close(position, exit_price, candle['timestamp'], reason, cost.fee_rate)
                trades.append(trade)
                balance += trade.pnl
                position = None

        try:
            signal = strategy.analyze(candles[:i + 1], parameters)
        except Exception as e:
            logger.debug(f"[Backtest] {strategy.id} analyze failed at {i}: {e}")
            signal = None

        if signal is not None and signal.action != SignalAction.HOLD:
            side = signal.action.value
            if position is None and signal.confidence >= ENTRY_MIN_CONFIDENCE:
                entry_price = apply_slippage(close, side, cost.slippage_rate)
                size = balance * POSITION_FRACTION
                quantity = size / entry_price
                entry_fee = quantity * entry_price * cost.fee_rate
                if quantity > 0 and balance >= size + entry_fee:
                    position = _Position(side, entry_price, candle['timestamp'], quantity)
                    balance -= entry_fee
            elif position is not None and side != position.side and signal.confidence >= REVERSE_MIN_CONFIDENCE:
                exit_price = apply_slippage(close, side, cost.slippage_rate)
                trade = _close(position, exit_price, candle['timestamp'], "signal_reverse", cost.fee_rate)
                trades.append(trade)
                balance += trade.pnl
                position = None

        if balance > peak:
            peak = balance
        drawdown = (peak - balance) / peak * 100 if peak > 0 else 0.0
        if drawdown > max_drawdown:
            max_drawdown = drawdown

    if position is not None:
        last = candles[-1]
        trade = _close(position, last['close'], last['timestamp'], "period_end", cost.fee_rate)
        trades.append(trade)
        balance += trade.pnl

    return calculate_metrics(strategy.id, parameters, trades, cost.initial_balance, balance, max_drawdown,
                             candles[0]['timestamp'], candles[-1]['timestamp'])


def calculate_metrics(strategy_id: str, parameters: Dict[str, float], trades: List[BacktestTrade],
                      initial_balance: float, final_balance: float, max_drawdown: float,
                      period_start: Optional[int] = None, period_end: Optional[int] = None) -> BacktestResult:
    """Aggregate trade-level results into a BacktestResult."""
    if not trades:
        return BacktestResult(strategy_id, dict(parameters), final_balance=initial_balance,
                              period_start=period_start, period_end=period_end)

    pnls = np.array([t.pnl for t in trades], dtype=float)
    wins = pnls[pnls > 0]
    losses = pnls[pnls <= 0]
    total_profit = float(wins.sum())
    total_loss = float(abs(losses.sum()))

    if total_loss > 0:
        profit_factor = total_profit / total_loss
    else:
        profit_factor = math.inf if total_profit > 0 else 0.0

    returns = np.array([t.pnl_percent for t in trades], dtype=float)
    std = float(returns.std())  # population std
    sharpe = float(returns.mean() / std * ANNUALIZATION) if std > 0 else 0.0

    return BacktestResult(
        strategy_id=strategy_id,
        parameters=dict(parameters),
        win_rate=len(wins) / len(trades),
        total_return=(final_balance - initial_balance) / initial_balance * 100,
        max_drawdown=max_drawdown,
        sharpe_ratio=sharpe,
        trade_count=len(trades),
        avg_trade_pnl=float(pnls.mean()),
        profit_factor=profit_factor,
        final_balance=final_balance,
        period_start=period_start,
        period_end=period_end,
        trades=trades,
    )


def run_backtest(
    strategy_id: str,
    parameters: Optional[Dict[str, float]],
    candles: Sequence[Dict[str, float]],
    cost_model: Optional[CostModel] = None,
    start_time: Optional[int] = None,
    end_time: Optional[int] = None,
    strategy: Optional[BaseStrategy] = None,
) -> BacktestResult:
    """
    Backtest one strategy over a candle slice.

    Args:
        strategy_id: Registered strategy id
        parameters: Strategy parameters (None -> strategy defaults)
        candles: Candle dicts, oldest first
        cost_model: Fees, slippage and starting balance
        start_time: Optional inclusive lower timestamp bound (ms)
        end_time: Optional inclusive upper timestamp bound (ms)
        strategy: Explicit strategy instance (skips the registry lookup)

    Returns:
        BacktestResult; empty (zero metrics) for unknown strategies or fewer
        than 50 candles in range
    """
    cost = cost_model or CostModel()
    strategy = strategy or get_strategy(strategy_id)
    params = dict(parameters) if parameters is not None else (
        dict(strategy.default_parameters) if strategy else {})

    if strategy is None:
        logger.warning(f"[Backtest] unknown strategy '{strategy_id}'")
        return BacktestResult(strategy_id, params, final_balance=cost.initial_balance)

    window = CandleProcessor.filter_range(candles, start_time, end_time)
    if len(window) < MIN_CANDLES:
        logger.debug(f"[Backtest] {strategy_id}: {len(window)} candles in range, need {MIN_CANDLES}")
        return BacktestResult(strategy_id, params, final_balance=cost.initial_balance)

    try:
        return simulate(strategy, params, window, cost)
    except (KeyError, TypeError) as e:
        raise BacktestError(f"malformed candle data for {strategy_id}: {e!r}") from e
