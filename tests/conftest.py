"""
Pytest configuration file.
Adds project root to Python path to allow imports from main package,
and provides shared fixtures (in-memory store, synthetic candles, dummy
gateway, scripted strategy).
"""

import math
import sys
from pathlib import Path

import pytest

# Add project root to sys.path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from persistence.store import Store  # noqa: E402
from strategies.base import BaseStrategy, ParameterRange, SignalAction, StrategyCategory  # noqa: E402
from strategies.registry import register_strategy, unregister_strategy  # noqa: E402


def make_candles(n=300, start_price=100.0, drift=0.0, amplitude=2.0, period=40, volume=1000.0,
                 start_ts=1_700_000_000_000, step_ms=60_000):
    """Deterministic OHLCV series: linear drift plus a sine wave."""
    candles = []
    prev_close = start_price
    for i in range(n):
        close = start_price + drift * i + amplitude * math.sin(2 * math.pi * i / period)
        open_ = prev_close
        high = max(open_, close) * 1.002
        low = min(open_, close) * 0.998
        candles.append({
            'timestamp': start_ts + i * step_ms,
            'open': open_,
            'high': high,
            'low': low,
            'close': close,
            'volume': volume * (1.0 + 0.5 * math.sin(i / 3.0) ** 2),
        })
        prev_close = close
    return candles


class ScriptedStrategy(BaseStrategy):
    """Strategy whose next signal is set by the test."""

    id = "test-scripted"
    name = "Scripted"
    category = StrategyCategory.MEAN_REVERSION
    default_parameters = {'threshold': 1.0}
    parameter_ranges = {'threshold': ParameterRange(0.0, 2.0, 1.0)}
    required_indicators = []
    min_candles = 1

    def __init__(self):
        self.action = SignalAction.HOLD
        self.confidence = 0.0
        self.indicators = {'rsi': 50.0}
        self.calls = 0

    def analyze(self, candles, params):
        self.calls += 1
        if self.action == SignalAction.HOLD:
            return self.hold(self.indicators)
        return self.signal(self.action, self.confidence, "scripted", self.indicators)


class DummyGateway:
    """In-memory ExchangeGateway stand-in with scriptable prices and failures."""

    def __init__(self, candles=None, price=100.0, quote=10_000.0, base=0.0):
        self.candles = candles if candles is not None else make_candles()
        self.price = price
        self.quote = quote
        self.base = base
        self.orders = []
        self.fail_orders = False
        self.fail_ticker = False
        self.fill_ratio = 1.0
        self.candle_fetches = 0
        self.closed = False

    async def fetch_candles(self, symbol, timeframe, limit=200):
        self.candle_fetches += 1
        return list(self.candles[-limit:])

    async def fetch_ticker(self, symbol):
        if self.fail_ticker:
            raise RuntimeError("ticker unavailable")
        return {'last': self.price, 'bid': self.price, 'ask': self.price, 'timestamp': 0}

    async def fetch_wallet_balance(self):
        return {'quote_currency': 'USDC', 'quote': self.quote, 'base_currency': 'WLD', 'base': self.base,
                'base_price': self.price, 'total_value': self.quote + self.base * self.price}

    async def submit_market_order(self, symbol, side, quantity):
        if self.fail_orders:
            raise RuntimeError("exchange rejected order")
        self.orders.append((symbol, side, quantity))
        filled = quantity * self.fill_ratio
        if side == 'sell':
            self.base = max(0.0, self.base - filled)
        return {'filled_price': self.price, 'filled_quantity': filled,
                'fee': filled * self.price * 0.001, 'order_id': f"dummy-{len(self.orders)}"}

    async def close(self):
        self.closed = True


@pytest.fixture
def store():
    s = Store("sqlite://")
    yield s
    s.dispose()


@pytest.fixture
def candles():
    return make_candles()


@pytest.fixture
def gateway():
    return DummyGateway()


@pytest.fixture
def scripted():
    strategy = register_strategy(ScriptedStrategy(), replace=True)
    yield strategy
    unregister_strategy(strategy.id)
