"""
Shared pytest fixtures for signal engine tests.

Provides candle builders, a scripted market data provider and a manual clock
so cache and scheduler timing can be driven without sleeping.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

import pytest

from crypto_signals.data.market_feed import Candle, PriceQuote, Timeframe
from crypto_signals.errors import DataUnavailable

BASE_TS = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_candles(
    closes: Sequence[float],
    volumes: Optional[Sequence[float]] = None,
    timeframe: Timeframe = Timeframe.H1,
    wick: float = 0.5,
) -> List[Candle]:
    """Candles whose open is the previous close, with a fixed wick on both sides."""
    candles = []
    for i, close in enumerate(closes):
        open_ = closes[i - 1] if i else close
        candles.append(
            Candle(
                ts=BASE_TS + timedelta(minutes=timeframe.minutes * i),
                open=open_,
                high=max(open_, close) + wick,
                low=min(open_, close) - wick,
                close=close,
                volume=volumes[i] if volumes is not None else 1000.0,
                timeframe=timeframe,
            )
        )
    return candles


def rally_then_drop_closes() -> List[float]:
    """99 closes rising by 2 from 100, then a sharp drop to 216."""
    return [100.0 + 2 * i for i in range(99)] + [216.0]


class ManualClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider:
    """Scripted MarketDataProvider that counts upstream calls."""

    def __init__(
        self,
        candles: Optional[Dict[Timeframe, List[Candle]]] = None,
        prices: Optional[Dict[str, float]] = None,
        delay: float = 0.0,
    ) -> None:
        self.candles = candles or {}
        self.prices = prices or {}
        self.delay = delay
        self.price_calls: Counter = Counter()
        self.candle_calls: Counter = Counter()
        self.failing_prices: set[str] = set()
        self.failing_timeframes: set[Timeframe] = set()
        self.hanging_timeframes: set[Timeframe] = set()
        self.candle_errors: Dict[object, Exception] = {}

    async def fetch_candles(self, symbol: str, timeframe: Timeframe, limit: int) -> List[Candle]:
        self.candle_calls[(symbol, timeframe)] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if timeframe in self.hanging_timeframes:
            await asyncio.Event().wait()
        error = self.candle_errors.get(symbol) or self.candle_errors.get(timeframe)
        if error is not None:
            raise error
        if timeframe in self.failing_timeframes or timeframe not in self.candles:
            raise DataUnavailable(symbol, f"ohlcv {timeframe.value}: empty response")
        return list(self.candles[timeframe][-limit:])

    async def fetch_price(self, symbol: str) -> PriceQuote:
        self.price_calls[symbol] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if symbol in self.failing_prices or symbol not in self.prices:
            raise DataUnavailable(symbol, "ticker: exchange unreachable")
        return PriceQuote(price=self.prices[symbol], change24h=1.5)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def rally_candles() -> List[Candle]:
    return make_candles(rally_then_drop_closes())


@pytest.fixture
def provider(rally_candles: List[Candle]) -> FakeProvider:
    return FakeProvider(
        candles={
            Timeframe.H1: rally_candles,
            Timeframe.D1: make_candles([100.0 + i for i in range(60)], timeframe=Timeframe.D1),
            Timeframe.W1: make_candles([100.0 + i for i in range(10)], timeframe=Timeframe.W1),
        },
        prices={"BTC/USDT": 216.0, "ETH/USDT": 3000.0},
    )
