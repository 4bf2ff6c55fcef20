"""Circuit breaker that suspends upstream market data calls after repeated failures."""

from __future__ import annotations

from enum import Enum
import time
from typing import Any, Callable, Dict, List, Optional

from crypto_signals.config.constants import (
    DEFAULT_BREAKER_COOLDOWN_SECONDS,
    DEFAULT_BREAKER_FAILURE_THRESHOLD,
    DEFAULT_BREAKER_HALF_OPEN_SUCCESSES,
)
from crypto_signals.data.market_feed import Candle, MarketDataProvider, PriceQuote, Timeframe
from crypto_signals.errors import CircuitOpen
from crypto_signals.logging.feed_log import get_feed_logger


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """CLOSED until ``failure_threshold`` consecutive failures, then OPEN for ``cooldown``.

    After the cooldown the breaker is HALF_OPEN: calls go through, one failure
    reopens it and ``half_open_successes`` successes close it.
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_BREAKER_FAILURE_THRESHOLD,
        cooldown: float = DEFAULT_BREAKER_COOLDOWN_SECONDS,
        half_open_successes: int = DEFAULT_BREAKER_HALF_OPEN_SUCCESSES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold <= 0 or half_open_successes <= 0:
            raise ValueError("failure_threshold and half_open_successes must be positive")
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self.half_open_successes = half_open_successes
        self._clock = clock
        self._state = BreakerState.CLOSED
        self._opened_at: Optional[float] = None
        self.consecutive_failures = 0
        self.total_failures = 0
        self.rejected = 0
        self._successes_since_half_open = 0
        self.logger = get_feed_logger()

    @property
    def state(self) -> BreakerState:
        if self._state is BreakerState.OPEN and self.retry_after() <= 0:
            self._state = BreakerState.HALF_OPEN
            self._successes_since_half_open = 0
            self.logger.info("breaker_half_open cooldown=%.1f", self.cooldown)
        return self._state

    def retry_after(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.cooldown - (self._clock() - self._opened_at))

    def check(self, symbol: str) -> None:
        """Raise CircuitOpen instead of letting a call through while the breaker is open."""
        if self.state is BreakerState.OPEN:
            self.rejected += 1
            raise CircuitOpen(symbol, self.retry_after())

    def record_success(self) -> None:
        self.consecutive_failures = 0
        if self._state is BreakerState.HALF_OPEN:
            self._successes_since_half_open += 1
            if self._successes_since_half_open >= self.half_open_successes:
                self._state = BreakerState.CLOSED
                self._opened_at = None
                self.logger.info("breaker_closed successes=%d", self._successes_since_half_open)

    def record_failure(self, reason: str) -> None:
        self.consecutive_failures += 1
        self.total_failures += 1
        if self._state is BreakerState.HALF_OPEN or self.consecutive_failures >= self.failure_threshold:
            self._open(reason)

    def reset(self) -> None:
        self._state = BreakerState.CLOSED
        self._opened_at = None
        self.consecutive_failures = 0
        self._successes_since_half_open = 0

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "total_failures": self.total_failures,
            "rejected": self.rejected,
            "retry_after": round(self.retry_after(), 1),
        }

    def _open(self, reason: str) -> None:
        self._state = BreakerState.OPEN
        self._opened_at = self._clock()
        self.consecutive_failures = 0
        self.logger.warning("breaker_open reason=%s cooldown=%.1f", reason, self.cooldown)


class GuardedMarketDataProvider:
    """MarketDataProvider wrapper that routes every upstream call through a CircuitBreaker."""

    def __init__(self, provider: MarketDataProvider, breaker: Optional[CircuitBreaker] = None) -> None:
        self.provider = provider
        self.breaker = breaker or CircuitBreaker()

    async def fetch_candles(self, symbol: str, timeframe: Timeframe, limit: int) -> List[Candle]:
        self.breaker.check(symbol)
        try:
            candles = await self.provider.fetch_candles(symbol, timeframe, limit)
        except Exception as exc:
            self.breaker.record_failure(type(exc).__name__)
            raise
        self.breaker.record_success()
        return candles

    async def fetch_price(self, symbol: str) -> PriceQuote:
        self.breaker.check(symbol)
        try:
            quote = await self.provider.fetch_price(symbol)
        except Exception as exc:
            self.breaker.record_failure(type(exc).__name__)
            raise
        self.breaker.record_success()
        return quote

    async def close(self) -> None:
        close = getattr(self.provider, "close", None)
        if close is not None:
            await close()
