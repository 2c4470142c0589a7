"""
candles.py - OHLCV Normalization and Candle Cache

Candles travel through the engine as plain dicts:
    {"timestamp": int(ms), "open": float, "high": float, "low": float, "close": float, "volume": float}
ordered oldest-first. This module converts raw exchange rows into that shape,
turns candle lists into pandas DataFrames for indicator math, and provides the
TTL-bounded cache the engine uses to limit exchange calls. History fetches
for rebalancing are mirrored into the store and served from it when the
exchange is unreachable.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd


logger = logging.getLogger(__name__)

OHLCV_COLUMNS = ['timestamp', 'open', 'high', 'low', 'close', 'volume']


class CandleProcessor:
    """
    Stateless processor for OHLCV candle data.

    No trading logic - only shape conversion and cleaning.
    """

    @staticmethod
    def normalize(raw_data: Sequence[Any]) -> List[Dict[str, float]]:
        """
        Convert raw OHLCV rows into sorted, de-duplicated candle dicts.

        Args:
            raw_data: ccxt-style rows [[ts, o, h, l, c, v], ...] or candle dicts

        Returns:
            Candle dicts sorted ascending by timestamp (last row wins on duplicates)
        """
        by_ts: Dict[int, Dict[str, float]] = {}
        for row in raw_data or []:
            if isinstance(row, dict):
                values = [row.get(col) for col in OHLCV_COLUMNS]
            else:
                values = list(row)[:6]
            if len(values) < 6 or any(v is None for v in values):
                logger.debug(f"Dropping malformed candle row: {row!r}")
                continue
            ts = int(values[0])
            by_ts[ts] = {
                'timestamp': ts,
                'open': float(values[1]),
                'high': float(values[2]),
                'low': float(values[3]),
                'close': float(values[4]),
                'volume': float(values[5]),
            }
        return [by_ts[ts] for ts in sorted(by_ts)]

    @staticmethod
    def to_dataframe(candles: Sequence[Dict[str, float]]) -> pd.DataFrame:
        """
        Convert candle dicts to a DataFrame with float OHLCV columns.

        The timestamp column is kept as integer milliseconds so indicator
        output can be mapped back onto candle timestamps.
        """
        if not candles:
            return pd.DataFrame(columns=OHLCV_COLUMNS)
        df = pd.DataFrame(list(candles), columns=OHLCV_COLUMNS)
        for col in OHLCV_COLUMNS[1:]:
            df[col] = pd.to_numeric(df[col], errors='coerce').astype(float)
        df['timestamp'] = df['timestamp'].astype('int64')
        return df.reset_index(drop=True)

    @staticmethod
    def filter_range(
        candles: Sequence[Dict[str, float]],
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> List[Dict[str, float]]:
        """Return candles with start_time <= timestamp <= end_time (bounds optional)."""
        return [
            c for c in candles
            if (start_time is None or c['timestamp'] >= start_time)
            and (end_time is None or c['timestamp'] <= end_time)
        ]


class CandleCache:
    """
    TTL-bounded cache of the latest candle window per (symbol, timeframe).

    Args:
        ttl_seconds: How long a fetched window stays fresh
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(self, ttl_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Tuple[str, str], Tuple[float, List[Dict[str, float]]]] = {}

    def get(self, symbol: str, timeframe: str) -> Optional[List[Dict[str, float]]]:
        entry = self._entries.get((symbol, timeframe))
        if entry is None:
            return None
        fetched_at, candles = entry
        if self._clock() - fetched_at > self.ttl_seconds:
            return None
        return candles

    def put(self, symbol: str, timeframe: str, candles: List[Dict[str, float]]) -> None:
        self._entries[(symbol, timeframe)] = (self._clock(), candles)

    async def get_or_fetch(self, symbol: str, timeframe: str, fetch: Callable[[], Any]) -> List[Dict[str, float]]:
        """Return cached candles, or await `fetch()` and cache its result."""
        cached = self.get(symbol, timeframe)
        if cached is not None:
            return cached
        candles = await fetch()
        self.put(symbol, timeframe, candles)
        return candles

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"CandleCache(ttl={self.ttl_seconds}s, entries={len(self._entries)})"


async def fetch_history(gateway, store, symbol: str, timeframe: str, limit: int) -> List[Dict[str, float]]:
    """
    Fetch `limit` candles and record them in the store's candle history.

    If the exchange call fails, the stored history (newest `limit` candles)
    is returned instead; the error propagates only when nothing is stored.
    """
    try:
        candles = await gateway.fetch_candles(symbol, timeframe, limit)
    except Exception as e:
        stored = store.load_candles(symbol, timeframe, limit)
        if not stored:
            raise
        logger.warning(f"[Candles] fetch failed for {symbol} {timeframe} ({e}); using {len(stored)} stored candles")
        return stored
    store.save_candles(symbol, timeframe, candles)
    return candles
