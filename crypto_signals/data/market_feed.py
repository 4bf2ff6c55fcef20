"""Market data models and feed adapters for REST candles and the live ticker stream."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
import asyncio
import json
from typing import TYPE_CHECKING, Iterable, List, Optional, Protocol, Sequence

import ccxt.async_support as ccxt
import websockets
from websockets.exceptions import WebSocketException

from crypto_signals.errors import DataUnavailable
from crypto_signals.logging.feed_log import get_feed_logger

if TYPE_CHECKING:
    from crypto_signals.data.price_cache import PriceCache


class Timeframe(str, Enum):
    """Candle bucket sizes the engine computes signals for."""

    M1 = "1m"
    M5 = "5m"
    M15 = "15m"
    M30 = "30m"
    H1 = "1h"
    H4 = "4h"
    D1 = "1d"
    D3 = "3d"
    W1 = "1w"
    MN1 = "1M"

    @property
    def minutes(self) -> int:
        return _TIMEFRAME_MINUTES[self]

    @property
    def seconds(self) -> int:
        return self.minutes * 60

    @classmethod
    def parse(cls, value: "str | Timeframe") -> "Timeframe":
        if isinstance(value, Timeframe):
            return value
        return cls(value)


_TIMEFRAME_MINUTES = {
    Timeframe.M1: 1,
    Timeframe.M5: 5,
    Timeframe.M15: 15,
    Timeframe.M30: 30,
    Timeframe.H1: 60,
    Timeframe.H4: 240,
    Timeframe.D1: 1440,
    Timeframe.D3: 4320,
    Timeframe.W1: 10080,
    Timeframe.MN1: 43200,
}

ALL_TIMEFRAMES: tuple[Timeframe, ...] = tuple(Timeframe)


@dataclass(frozen=True)
class Candle:
    """OHLCV candle."""

    ts: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    timeframe: Timeframe = Timeframe.H1

    def __post_init__(self) -> None:
        if self.high < max(self.open, self.close):
            raise ValueError(f"high {self.high} below body max {max(self.open, self.close)}")
        if self.low > min(self.open, self.close):
            raise ValueError(f"low {self.low} above body min {min(self.open, self.close)}")
        if self.volume < 0:
            raise ValueError(f"negative volume {self.volume}")


@dataclass(frozen=True)
class PriceQuote:
    """Current price as returned by the provider."""

    price: float
    change24h: float


class MarketDataProvider(Protocol):
    """Upstream source of authentic candles and prices."""

    async def fetch_candles(self, symbol: str, timeframe: Timeframe, limit: int) -> List[Candle]:
        ...

    async def fetch_price(self, symbol: str) -> PriceQuote:
        ...


def ohlcv_to_candles(rows: Iterable[Sequence[float]], timeframe: Timeframe) -> List[Candle]:
    """Convert exchange OHLCV rows into ascending candles."""
    candles = [
        Candle(
            ts=datetime.fromtimestamp(int(row[0]) / 1000, tz=timezone.utc),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
            timeframe=timeframe,
        )
        for row in rows
    ]
    candles.sort(key=lambda c: c.ts)
    return candles


class CcxtMarketDataProvider:
    """REST market data through ccxt's asyncio client."""

    def __init__(self, exchange_id: str = "binance", timeout_ms: int = 10_000) -> None:
        exchange_cls = getattr(ccxt, exchange_id)
        self.exchange = exchange_cls(
            {"enableRateLimit": True, "timeout": timeout_ms, "options": {"defaultType": "spot"}}
        )
        self.logger = get_feed_logger()

    async def fetch_candles(self, symbol: str, timeframe: Timeframe, limit: int) -> List[Candle]:
        tf = Timeframe.parse(timeframe)
        try:
            rows = await self.exchange.fetch_ohlcv(symbol, timeframe=tf.value, limit=limit)
        except ccxt.BaseError as exc:
            raise DataUnavailable(symbol, f"ohlcv {tf.value}: {exc}") from exc
        if not rows:
            raise DataUnavailable(symbol, f"ohlcv {tf.value}: empty response")
        try:
            candles = ohlcv_to_candles(rows, tf)
        except (ValueError, TypeError, IndexError) as exc:
            raise DataUnavailable(symbol, f"ohlcv {tf.value}: malformed row ({exc})") from exc
        self.logger.debug("candles symbol=%s tf=%s count=%d", symbol, tf.value, len(candles))
        return candles

    async def fetch_price(self, symbol: str) -> PriceQuote:
        try:
            ticker = await self.exchange.fetch_ticker(symbol)
        except ccxt.BaseError as exc:
            raise DataUnavailable(symbol, f"ticker: {exc}") from exc
        last = ticker.get("last")
        if last is None or float(last) <= 0:
            raise DataUnavailable(symbol, f"ticker: invalid last price {last!r}")
        change = ticker.get("percentage")
        return PriceQuote(price=float(last), change24h=float(change) if change is not None else 0.0)

    async def close(self) -> None:
        await self.exchange.close()


class LivePriceStream:
    """Binance.US mini-ticker stream pushed into the price cache."""

    BINANCE_WS_URL = "wss://stream.binance.us:9443/stream"

    def __init__(self, cache: "PriceCache", symbols: Sequence[str], reconnect_delay: float = 5.0) -> None:
        self.cache = cache
        self.reconnect_delay = reconnect_delay
        self._by_stream_symbol = {s.replace("/", "").upper(): s for s in symbols}
        self._running = False
        self.logger = get_feed_logger()

    @property
    def url(self) -> str:
        streams = "/".join(f"{s.lower()}@miniTicker" for s in self._by_stream_symbol)
        return f"{self.BINANCE_WS_URL}?streams={streams}"

    async def connect(self) -> None:
        """Consume the stream until stopped, reconnecting after transport errors."""
        self._running = True
        while self._running:
            try:
                async with websockets.connect(self.url) as ws:
                    self.logger.info("stream_connected symbols=%d", len(self._by_stream_symbol))
                    async for message in ws:
                        self._handle_raw(message)
            except (OSError, WebSocketException) as exc:
                self.logger.warning("stream_error error=%s retry_in=%.1f", exc, self.reconnect_delay)
                await asyncio.sleep(self.reconnect_delay)

    def stop(self) -> None:
        self._running = False

    def _handle_raw(self, message: str | bytes) -> Optional[str]:
        """Decode one frame; a malformed frame is logged and skipped."""
        try:
            return self._handle_message(json.loads(message))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            self.logger.warning("stream_bad_message error=%r", exc)
            return None

    def _handle_message(self, msg: dict) -> Optional[str]:
        data = msg.get("data", msg)
        symbol = self._by_stream_symbol.get(str(data.get("s", "")).upper())
        if symbol is None:
            return None
        price = float(data["c"])
        open_price = float(data["o"])
        if price <= 0:
            return None
        change = ((price - open_price) / open_price * 100.0) if open_price > 0 else 0.0
        self.cache.publish_quote(symbol, PriceQuote(price=price, change24h=change))
        return symbol
