"""Error taxonomy shared by the cache, indicator, confluence and scheduler layers."""

from __future__ import annotations

from typing import Any


class SignalEngineError(Exception):
    """Base class for all signal engine failures."""


class DataUnavailable(SignalEngineError):
    """Upstream fetch failed, timed out or returned nothing usable."""

    def __init__(self, symbol: str, reason: str, stale_snapshot: Any = None) -> None:
        super().__init__(f"data unavailable for {symbol}: {reason}")
        self.symbol = symbol
        self.reason = reason
        self.stale_snapshot = stale_snapshot


class DataInsufficient(SignalEngineError):
    """Fewer candles than the indicator engine needs."""

    def __init__(self, symbol: str, timeframe: str, available: int, required: int) -> None:
        super().__init__(f"{symbol} {timeframe}: {available} candles available, {required} required")
        self.symbol = symbol
        self.timeframe = timeframe
        self.available = available
        self.required = required


class ComputationError(SignalEngineError):
    """Numeric failure inside a single indicator."""

    def __init__(self, indicator: str, cause: BaseException) -> None:
        super().__init__(f"{indicator} failed: {cause!r}")
        self.indicator = indicator
        self.cause = cause


class CycleRejected(SignalEngineError):
    """A calculation cycle was not started."""


class OverlapRejected(CycleRejected):
    """Another cycle is still running."""


class CycleRateLimited(CycleRejected):
    """The minimum gap since the previous cycle has not elapsed."""

    def __init__(self, wait_seconds: float) -> None:
        super().__init__(f"next cycle allowed in {wait_seconds:.1f}s")
        self.wait_seconds = wait_seconds


class CircuitOpen(DataUnavailable):
    """Upstream calls are suspended after repeated failures."""

    def __init__(self, symbol: str, retry_after: float) -> None:
        super().__init__(symbol, f"circuit open, retry in {retry_after:.1f}s")
        self.retry_after = retry_after
