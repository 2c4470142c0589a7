"""
Exchange gateways (async).

Guarantees provided:
- One contract (ExchangeGateway) for market data, wallet balance and market orders
- CcxtExchangeGateway: per-request timeout via asyncio.wait_for, retries only on
  network-like ccxt errors, adaptive backoff on rate limits
- fetch_candles returns deduplicated, ascending candle dicts (timestamps in ms)
- PaperExchangeGateway: real (or injected) market data, simulated fills at the
  ticker with slippage against an in-memory wallet
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import ccxt
import ccxt.async_support as ccxt_async

from data.candles import CandleProcessor


logger = logging.getLogger(__name__)


class ExchangeError(RuntimeError):
    pass


class RateLimitError(ExchangeError):
    pass


class DataValidationError(ExchangeError):
    pass


def split_symbol(symbol: str) -> tuple:
    """'WLD/USDC' -> ('WLD', 'USDC')."""
    if '/' not in symbol:
        raise DataValidationError(f"Symbol must look like BASE/QUOTE, got {symbol!r}")
    base, quote = symbol.upper().split('/', 1)
    return base.strip(), quote.split(':', 1)[0].strip()


class ExchangeGateway(ABC):
    """
    Async exchange contract used by the engine.

    - fetch_candles(symbol, timeframe, limit) -> candle dicts, oldest first
    - fetch_ticker(symbol) -> {last, bid, ask, timestamp}
    - fetch_wallet_balance() -> {quote_currency, quote, base_currency, base, base_price, total_value}
    - submit_market_order(symbol, side, quantity) -> {filled_price, filled_quantity, fee, order_id}
    """

    symbol: str = "WLD/USDC"

    @abstractmethod
    async def fetch_candles(self, symbol: str, timeframe: str, limit: int = 200) -> List[Dict[str, float]]:
        ...

    @abstractmethod
    async def fetch_ticker(self, symbol: str) -> Dict[str, float]:
        ...

    @abstractmethod
    async def fetch_wallet_balance(self) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def submit_market_order(self, symbol: str, side: str, quantity: float) -> Dict[str, Any]:
        ...

    async def close(self) -> None:
        return None


class CcxtExchangeGateway(ExchangeGateway):
    """
    ccxt-backed gateway.

    Usage:
        gw = CcxtExchangeGateway('binance', symbol='WLD/USDC', api_key=..., secret=...)
        candles = await gw.fetch_candles('WLD/USDC', '1m', 200)
        await gw.close()
    """

    DEFAULT_TIMEOUT = 10.0

    def __init__(self, exchange_id: str = 'binance', symbol: str = 'WLD/USDC', api_key: Optional[str] = None,
                 secret: Optional[str] = None, mode: str = 'live', timeout: float = DEFAULT_TIMEOUT,
                 max_attempts: int = 3, client=None):
        self.exchange_id = exchange_id
        self.symbol = symbol
        self.mode = mode.lower()
        self.timeout = timeout
        self.max_attempts = max(1, int(max_attempts))
        self._rate_backoff = 1.0
        self._client = client if client is not None else self._create_client(api_key, secret)

    def _create_client(self, api_key: Optional[str], secret: Optional[str]):
        ex_cls = getattr(ccxt_async, self.exchange_id, None)
        if ex_cls is None:
            raise ExchangeError(f"Exchange '{self.exchange_id}' not available in ccxt.async_support")
        client = ex_cls({
            "apiKey": api_key,
            "secret": secret,
            "enableRateLimit": True,
        })
        if self.mode == "testnet" and hasattr(client, "set_sandbox_mode"):
            client.set_sandbox_mode(True)
        return client

    # -----------------------
    # Request wrapper: timeout + retry + backoff
    # -----------------------
    @staticmethod
    def _is_retryable_exception(exc: Exception) -> bool:
        """Network-like errors are safe to retry; auth and logical errors are not."""
        return isinstance(exc, (ccxt.NetworkError, asyncio.TimeoutError))

    async def _request_with_retry(self, coro_callable, *args, **kwargs):
        attempt = 0
        last_exc: Optional[Exception] = None
        while attempt < self.max_attempts:
            attempt += 1
            try:
                return await asyncio.wait_for(coro_callable(*args, **kwargs), timeout=self.timeout)
            except ccxt.RateLimitExceeded as exc:
                last_exc = RateLimitError(str(exc))
                self._rate_backoff = min(60.0, self._rate_backoff * 2.0)
                logger.warning(f"[Exchange] rate limit (attempt {attempt}/{self.max_attempts}), "
                               f"backing off {self._rate_backoff:.2f}s")
                if attempt < self.max_attempts:
                    await asyncio.sleep(self._rate_backoff)
            except Exception as exc:
                if not self._is_retryable_exception(exc):
                    raise
                last_exc = exc
                sleep_for = min(10.0, 0.5 * (2 ** (attempt - 1)))
                logger.warning(f"[Exchange] network error (attempt {attempt}/{self.max_attempts}): "
                               f"{exc!r}, retrying in {sleep_for:.2f}s")
                if attempt < self.max_attempts:
                    await asyncio.sleep(sleep_for)
        if isinstance(last_exc, ExchangeError):
            raise last_exc
        raise ExchangeError(f"request failed after {self.max_attempts} attempts: {last_exc!r}")

    # -----------------------
    # Market data
    # -----------------------
    async def fetch_candles(self, symbol: str, timeframe: str, limit: int = 200) -> List[Dict[str, float]]:
        raw = await self._request_with_retry(self._client.fetch_ohlcv, symbol, timeframe, None, int(limit))
        candles = CandleProcessor.normalize(raw)
        for c in candles:
            if not (0 <= c['low'] <= c['high']):
                raise DataValidationError(f"Invalid OHLCV values at {c['timestamp']}: low > high or negative")
        return candles[-int(limit):]

    async def fetch_ticker(self, symbol: str) -> Dict[str, float]:
        raw = await self._request_with_retry(self._client.fetch_ticker, symbol)
        last = raw.get('last') or raw.get('close')
        if last is None:
            raise DataValidationError(f"Ticker for {symbol} has no last price")
        return {
            'last': float(last),
            'bid': float(raw.get('bid') or last),
            'ask': float(raw.get('ask') or last),
            'timestamp': int(raw.get('timestamp') or time.time() * 1000),
        }

    async def fetch_wallet_balance(self) -> Dict[str, Any]:
        base, quote = split_symbol(self.symbol)
        balance = await self._request_with_retry(self._client.fetch_balance)
        free = balance.get('free') or {}
        quote_free = float(free.get(quote) or 0.0)
        base_free = float(free.get(base) or 0.0)
        base_price = 0.0
        if base_free > 0:
            base_price = (await self.fetch_ticker(self.symbol))['last']
        return {
            'quote_currency': quote,
            'quote': quote_free,
            'base_currency': base,
            'base': base_free,
            'base_price': base_price,
            'total_value': quote_free + base_free * base_price,
        }

    # -----------------------
    # Orders
    # -----------------------
    async def submit_market_order(self, symbol: str, side: str, quantity: float) -> Dict[str, Any]:
        if side not in ('buy', 'sell'):
            raise ValueError(f"side must be 'buy' or 'sell', got {side!r}")
        if quantity <= 0:
            raise ValueError(f"quantity must be positive, got {quantity}")
        # orders are not retried: a timed-out submit may still have filled
        order = await asyncio.wait_for(
            self._client.create_order(symbol, 'market', side, quantity), timeout=self.timeout)
        filled = float(order.get('filled') or quantity)
        price = order.get('average') or order.get('price')
        if price is None:
            price = (await self.fetch_ticker(symbol))['last']
        fee_info = order.get('fee') or {}
        fee = fee_info.get('cost')
        logger.info(f"[Exchange] {side.upper()} {filled:.6f} {symbol} @ {float(price):.6f} (order {order.get('id')})")
        return {
            'filled_price': float(price),
            'filled_quantity': filled,
            'fee': float(fee) if fee is not None else None,
            'order_id': order.get('id'),
        }

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.close()
        finally:
            self._client = None

    def __repr__(self) -> str:
        return f"CcxtExchangeGateway(exchange={self.exchange_id}, symbol={self.symbol}, mode={self.mode})"


class PaperExchangeGateway(ExchangeGateway):
    """
    Paper gateway: market data from `market_data` (any ExchangeGateway-like
    object), fills simulated at the ticker with slippage.

    Args:
        market_data: Source of candles and tickers
        symbol: Traded pair
        initial_quote: Starting quote balance of the simulated wallet
        slippage_rate: Buy fills at last*(1+s), sell at last*(1-s)
        fee_rate: Fee charged on the simulated fill notional
    """

    def __init__(self, market_data: ExchangeGateway, symbol: str = 'WLD/USDC', initial_quote: float = 10_000.0,
                 slippage_rate: float = 0.0005, fee_rate: float = 0.001):
        self.market_data = market_data
        self.symbol = symbol
        self.base_currency, self.quote_currency = split_symbol(symbol)
        self.slippage_rate = slippage_rate
        self.fee_rate = fee_rate
        self.wallet = {self.quote_currency: float(initial_quote), self.base_currency: 0.0}
        self._order_seq = 0

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int = 200) -> List[Dict[str, float]]:
        return await self.market_data.fetch_candles(symbol, timeframe, limit)

    async def fetch_ticker(self, symbol: str) -> Dict[str, float]:
        return await self.market_data.fetch_ticker(symbol)

    async def fetch_wallet_balance(self) -> Dict[str, Any]:
        base_qty = self.wallet[self.base_currency]
        base_price = (await self.fetch_ticker(self.symbol))['last'] if base_qty > 0 else 0.0
        quote_qty = self.wallet[self.quote_currency]
        return {
            'quote_currency': self.quote_currency,
            'quote': quote_qty,
            'base_currency': self.base_currency,
            'base': base_qty,
            'base_price': base_price,
            'total_value': quote_qty + base_qty * base_price,
        }

    async def submit_market_order(self, symbol: str, side: str, quantity: float) -> Dict[str, Any]:
        if side not in ('buy', 'sell'):
            raise ValueError(f"side must be 'buy' or 'sell', got {side!r}")
        if quantity <= 0:
            raise ValueError(f"quantity must be positive, got {quantity}")
        last = (await self.fetch_ticker(symbol))['last']
        price = last * (1 + self.slippage_rate) if side == 'buy' else last * (1 - self.slippage_rate)
        fee = quantity * price * self.fee_rate

        if side == 'buy':
            cost = quantity * price + fee
            if cost > self.wallet[self.quote_currency] + 1e-9:
                raise ExchangeError(f"insufficient {self.quote_currency}: need {cost:.2f}")
            self.wallet[self.quote_currency] -= cost
            self.wallet[self.base_currency] += quantity
        else:
            if quantity > self.wallet[self.base_currency] + 1e-12:
                raise ExchangeError(f"insufficient {self.base_currency}: have {self.wallet[self.base_currency]}")
            self.wallet[self.base_currency] = max(0.0, self.wallet[self.base_currency] - quantity)
            self.wallet[self.quote_currency] += quantity * price - fee

        self._order_seq += 1
        return {
            'filled_price': price,
            'filled_quantity': quantity,
            'fee': fee,
            'order_id': f"paper-{self._order_seq}-{uuid.uuid4().hex[:8]}",
        }

    async def close(self) -> None:
        if self.market_data is not self:
            await self.market_data.close()

    def __repr__(self) -> str:
        return f"PaperExchangeGateway(symbol={self.symbol}, wallet={self.wallet})"
