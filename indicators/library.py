"""
library.py - Technical Indicator Library

Vectorized indicator formulas over OHLCV DataFrames, plus a static registry
so strategies and operators can evaluate any indicator by id:

    calculate("rsi", candles, {"period": 14})
    -> [{"timestamp": 1700000000000, "values": {"value": 41.2}}, ...]

Rows where an indicator is still warming up (NaN) are omitted from
`calculate` output. No trading logic lives here.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from data.candles import CandleProcessor


logger = logging.getLogger(__name__)


class Indicators:
    """Technical indicator calculations (stateless, vectorized)."""

    @staticmethod
    def sma(series: pd.Series, period: int = 20) -> pd.Series:
        """Simple Moving Average."""
        return series.rolling(window=period).mean()

    @staticmethod
    def ema(series: pd.Series, period: int = 20) -> pd.Series:
        """Exponential Moving Average (span-based, non-adjusted)."""
        return series.ewm(span=period, adjust=False).mean()

    @staticmethod
    def rsi(series: pd.Series, period: int = 14) -> pd.Series:
        """
        Relative Strength Index with Wilder smoothing.

        Args:
            series: Price series
            period: RSI period

        Returns:
            RSI series (0-100); first `period` values are NaN
        """
        delta = series.diff()
        gain = delta.clip(lower=0)
        loss = -delta.clip(upper=0)
        avg_gain = gain.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()
        avg_loss = loss.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()
        rs = avg_gain / avg_loss.replace(0, np.nan)
        rsi = 100 - (100 / (1 + rs))
        # no losses in the window -> fully overbought
        return rsi.where(avg_loss != 0, 100.0).where(avg_gain.notna())

    @staticmethod
    def macd(series: pd.Series, fast: int = 12, slow: int = 26, signal: int = 9) -> pd.DataFrame:
        """
        MACD line, signal line and histogram.

        Returns:
            DataFrame with macd, signal, histogram columns
        """
        macd_line = Indicators.ema(series, fast) - Indicators.ema(series, slow)
        signal_line = Indicators.ema(macd_line, signal)
        out = pd.DataFrame({
            'macd': macd_line,
            'signal': signal_line,
            'histogram': macd_line - signal_line,
        })
        # discard the unstable head before the slow EMA has seen `slow` bars
        out.iloc[:max(slow - 1, 0)] = np.nan
        return out

    @staticmethod
    def bollinger_bands(series: pd.Series, period: int = 20, std_dev: float = 2.0) -> pd.DataFrame:
        """
        Bollinger Bands (population std).

        Returns:
            DataFrame with upper, middle, lower columns
        """
        middle = Indicators.sma(series, period)
        std = series.rolling(window=period).std(ddof=0)
        return pd.DataFrame({
            'upper': middle + std * std_dev,
            'middle': middle,
            'lower': middle - std * std_dev,
        })

    @staticmethod
    def true_range(df: pd.DataFrame) -> pd.Series:
        prev_close = df['close'].shift()
        ranges = pd.concat([
            df['high'] - df['low'],
            (df['high'] - prev_close).abs(),
            (df['low'] - prev_close).abs(),
        ], axis=1)
        return ranges.max(axis=1, skipna=False).fillna(df['high'] - df['low'])

    @staticmethod
    def atr(df: pd.DataFrame, period: int = 14) -> pd.Series:
        """Average True Range (Wilder smoothing)."""
        tr = Indicators.true_range(df)
        return tr.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()

    @staticmethod
    def adx(df: pd.DataFrame, period: int = 14) -> pd.DataFrame:
        """
        Average Directional Index.

        Returns:
            DataFrame with adx, plus_di, minus_di columns
        """
        up_move = df['high'].diff()
        down_move = -df['low'].diff()

        plus_dm = pd.Series(np.where((up_move > down_move) & (up_move > 0), up_move, 0.0), index=df.index)
        minus_dm = pd.Series(np.where((down_move > up_move) & (down_move > 0), down_move, 0.0), index=df.index)

        atr = Indicators.atr(df, period)
        alpha = 1.0 / period
        plus_di = 100 * plus_dm.ewm(alpha=alpha, adjust=False, min_periods=period).mean() / atr
        minus_di = 100 * minus_dm.ewm(alpha=alpha, adjust=False, min_periods=period).mean() / atr

        di_sum = (plus_di + minus_di).replace(0, np.nan)
        dx = (100 * (plus_di - minus_di).abs() / di_sum).fillna(0.0).where(atr.notna())
        adx = dx.ewm(alpha=alpha, adjust=False, min_periods=period).mean()

        return pd.DataFrame({'adx': adx, 'plus_di': plus_di, 'minus_di': minus_di})

    @staticmethod
    def stochastic(df: pd.DataFrame, period: int = 14, smooth_k: int = 3, smooth_d: int = 3) -> pd.DataFrame:
        """Stochastic Oscillator (%K smoothed, %D)."""
        low_min = df['low'].rolling(window=period).min()
        high_max = df['high'].rolling(window=period).max()
        span = (high_max - low_min).replace(0, np.nan)
        k = 100 * (df['close'] - low_min) / span
        k_smooth = k.rolling(window=smooth_k).mean()
        return pd.DataFrame({'k': k_smooth, 'd': k_smooth.rolling(window=smooth_d).mean()})

    @staticmethod
    def vwap(df: pd.DataFrame) -> pd.Series:
        """Cumulative Volume Weighted Average Price."""
        typical_price = (df['high'] + df['low'] + df['close']) / 3
        cum_volume = df['volume'].cumsum().replace(0, np.nan)
        return (typical_price * df['volume']).cumsum() / cum_volume

    @staticmethod
    def obv(df: pd.DataFrame) -> pd.Series:
        """On-Balance Volume."""
        return (np.sign(df['close'].diff()) * df['volume']).fillna(0).cumsum()

    @staticmethod
    def donchian(df: pd.DataFrame, period: int = 20) -> pd.DataFrame:
        """
        Donchian channel over the *previous* `period` bars.

        The current bar is excluded so a close above `upper` is a breakout.
        """
        upper = df['high'].rolling(window=period).max().shift()
        lower = df['low'].rolling(window=period).min().shift()
        return pd.DataFrame({'upper': upper, 'middle': (upper + lower) / 2, 'lower': lower})

    @staticmethod
    def cci(df: pd.DataFrame, period: int = 20) -> pd.Series:
        """Commodity Channel Index."""
        tp = (df['high'] + df['low'] + df['close']) / 3
        sma = tp.rolling(window=period).mean()
        mad = tp.rolling(window=period).apply(lambda x: np.mean(np.abs(x - x.mean())), raw=True)
        return (tp - sma) / (0.015 * mad.replace(0, np.nan))

    @staticmethod
    def williams_r(df: pd.DataFrame, period: int = 14) -> pd.Series:
        """Williams %R (-100..0)."""
        high_max = df['high'].rolling(window=period).max()
        low_min = df['low'].rolling(window=period).min()
        span = (high_max - low_min).replace(0, np.nan)
        return -100 * (high_max - df['close']) / span


def _series_frame(series: pd.Series) -> pd.DataFrame:
    return pd.DataFrame({'value': series})


# indicator id -> callable(df, params) -> DataFrame of value columns
INDICATORS: Dict[str, Callable[[pd.DataFrame, Dict[str, Any]], pd.DataFrame]] = {
    'sma': lambda df, p: _series_frame(Indicators.sma(df['close'], int(p.get('period', 20)))),
    'ema': lambda df, p: _series_frame(Indicators.ema(df['close'], int(p.get('period', 20)))),
    'rsi': lambda df, p: _series_frame(Indicators.rsi(df['close'], int(p.get('period', 14)))),
    'macd': lambda df, p: Indicators.macd(
        df['close'], int(p.get('fast', 12)), int(p.get('slow', 26)), int(p.get('signal', 9))
    ),
    'bb': lambda df, p: Indicators.bollinger_bands(
        df['close'], int(p.get('period', 20)), float(p.get('std_dev', 2.0))
    ),
    'atr': lambda df, p: _series_frame(Indicators.atr(df, int(p.get('period', 14)))),
    'adx': lambda df, p: Indicators.adx(df, int(p.get('period', 14))),
    'stochastic': lambda df, p: Indicators.stochastic(
        df, int(p.get('period', 14)), int(p.get('smooth_k', 3)), int(p.get('smooth_d', 3))
    ),
    'vwap': lambda df, p: _series_frame(Indicators.vwap(df)),
    'obv': lambda df, p: _series_frame(Indicators.obv(df)),
    'donchian': lambda df, p: Indicators.donchian(df, int(p.get('period', 20))),
    'cci': lambda df, p: _series_frame(Indicators.cci(df, int(p.get('period', 20)))),
    'williams_r': lambda df, p: _series_frame(Indicators.williams_r(df, int(p.get('period', 14)))),
}


def list_indicators() -> List[str]:
    return sorted(INDICATORS)


def compute_frame(indicator_id: str, df: pd.DataFrame, params: Optional[Dict[str, Any]] = None) -> pd.DataFrame:
    """
    Evaluate an indicator on an OHLCV DataFrame.

    Raises:
        KeyError: If the indicator id is not registered
    """
    fn = INDICATORS.get(indicator_id)
    if fn is None:
        raise KeyError(f"Unknown indicator '{indicator_id}'")
    return fn(df, params or {})


def calculate(indicator_id: str, candles: Sequence[Dict[str, float]], params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    """
    Evaluate an indicator over candle dicts.

    Returns:
        List of {"timestamp", "values"} for every candle where all values are defined
    """
    df = CandleProcessor.to_dataframe(candles)
    if df.empty:
        return []
    frame = compute_frame(indicator_id, df, params)
    frame = frame.replace([np.inf, -np.inf], np.nan)
    out: List[Dict[str, Any]] = []
    for ts, row in zip(df['timestamp'].tolist(), frame.to_dict('records')):
        if any(v is None or (isinstance(v, float) and np.isnan(v)) for v in row.values()):
            continue
        out.append({'timestamp': int(ts), 'values': {k: float(v) for k, v in row.items()}})
    return out
