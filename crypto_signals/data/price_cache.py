"""Last-known price cache with per-symbol fetch deduplication and ordered subscribers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import asyncio
import contextlib
import itertools
import time
from typing import Awaitable, Callable, Dict, List, Optional

from crypto_signals.config.constants import (
    DEFAULT_FETCH_TIMEOUT_SECONDS,
    DEFAULT_FRESHNESS_SECONDS,
    DEFAULT_MIN_REFETCH_SECONDS,
    DEFAULT_REFRESH_INTERVAL_SECONDS,
)
from crypto_signals.data.market_feed import PriceQuote
from crypto_signals.errors import DataUnavailable
from crypto_signals.logging.feed_log import get_feed_logger

PriceFetcher = Callable[[str], Awaitable[PriceQuote]]
PriceCallback = Callable[["PriceSnapshot"], None]


@dataclass(frozen=True)
class PriceSnapshot:
    """Price observed for a symbol; ``fetched_at`` is on the cache clock."""

    symbol: str
    price: float
    change24h: float
    fetched_at: float
    observed_at: datetime

    def age(self, now: float) -> float:
        return max(0.0, now - self.fetched_at)

    def is_stale(self, now: float, threshold: float) -> bool:
        return self.age(now) >= threshold


@dataclass(frozen=True)
class Subscription:
    """Handle returned by ``PriceCache.subscribe``."""

    symbol: str
    token: int
    cache: "PriceCache" = field(repr=False, compare=False)

    def cancel(self) -> bool:
        return self.cache.unsubscribe(self)


class PriceCache:
    """Holds one snapshot per symbol and never issues overlapping fetches for a symbol.

    Concurrent callers needing a fresh price share the same pending task. A
    minimum re-fetch interval applies to every refresh, manual or scheduled. A
    failed fetch keeps the previous snapshot and raises DataUnavailable carrying it.
    Until a later fetch or a live publish succeeds, reads blocked by the re-fetch
    interval raise the same error rather than returning the stale snapshot.
    """

    def __init__(
        self,
        fetch_price: PriceFetcher,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL_SECONDS,
        min_refetch_interval: float = DEFAULT_MIN_REFETCH_SECONDS,
        freshness: float = DEFAULT_FRESHNESS_SECONDS,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        request_spacing: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch_price = fetch_price
        self.refresh_interval = refresh_interval
        self.min_refetch_interval = min_refetch_interval
        self.freshness = freshness
        self.fetch_timeout = fetch_timeout
        self.request_spacing = request_spacing
        self._clock = clock
        self._snapshots: Dict[str, PriceSnapshot] = {}
        self._subscribers: Dict[str, Dict[int, PriceCallback]] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._last_attempt: Dict[str, float] = {}
        self._last_failure: Dict[str, str] = {}
        self._tokens = itertools.count(1)
        self._refresh_task: Optional[asyncio.Task] = None
        self.logger = get_feed_logger()

    # -- subscribers -------------------------------------------------------

    def subscribe(self, symbol: str, callback: PriceCallback) -> Subscription:
        """Register ``callback`` for ``symbol``; it receives the current snapshot at once if known."""
        token = next(self._tokens)
        self._subscribers.setdefault(symbol, {})[token] = callback
        self.logger.debug("subscribe symbol=%s token=%d", symbol, token)

        snapshot = self._snapshots.get(symbol)
        if snapshot is not None:
            self._notify_one(callback, snapshot)
        return Subscription(symbol=symbol, token=token, cache=self)

    def unsubscribe(self, subscription: Subscription) -> bool:
        observers = self._subscribers.get(subscription.symbol)
        if not observers or subscription.token not in observers:
            return False
        del observers[subscription.token]
        if not observers:
            del self._subscribers[subscription.symbol]
        self.logger.debug("unsubscribe symbol=%s token=%d", subscription.symbol, subscription.token)
        return True

    def subscriber_count(self, symbol: str) -> int:
        return len(self._subscribers.get(symbol, {}))

    @property
    def symbols(self) -> List[str]:
        """Symbols with at least one subscriber."""
        return list(self._subscribers)

    # -- reads -------------------------------------------------------------

    def get_snapshot(self, symbol: str) -> Optional[PriceSnapshot]:
        return self._snapshots.get(symbol)

    def get_current_price(self, symbol: str) -> Optional[float]:
        """Last cached price, without fetching."""
        snapshot = self._snapshots.get(symbol)
        return snapshot.price if snapshot is not None else None

    def is_stale(self, symbol: str) -> bool:
        snapshot = self._snapshots.get(symbol)
        return snapshot is None or snapshot.is_stale(self._clock(), self.freshness)

    def last_failure(self, symbol: str) -> Optional[str]:
        """Reason of the last failed fetch, if no price has arrived since."""
        return self._last_failure.get(symbol)

    async def get_immediate_snapshot(self, symbol: str) -> PriceSnapshot:
        """Cached snapshot if fresh, otherwise wait for (or join) a refresh."""
        snapshot = self._snapshots.get(symbol)
        if snapshot is not None and not snapshot.is_stale(self._clock(), self.freshness):
            return snapshot
        return await self.refresh(symbol)

    async def get_immediate_price(self, symbol: str) -> Optional[float]:
        snapshot = await self.get_immediate_snapshot(symbol)
        return snapshot.price

    # -- writes ------------------------------------------------------------

    async def refresh(self, symbol: str) -> PriceSnapshot:
        """Fetch ``symbol`` unless a fetch is already pending or one ran too recently."""
        task = self._in_flight.get(symbol)
        if task is None:
            now = self._clock()
            last = self._last_attempt.get(symbol)
            if last is not None and now - last < self.min_refetch_interval:
                wait = self.min_refetch_interval - (now - last)
                cached = self._snapshots.get(symbol)
                failure = self._last_failure.get(symbol)
                if failure is None and cached is not None:
                    return cached
                raise DataUnavailable(
                    symbol,
                    f"re-fetch blocked for {wait:.1f}s after failed fetch ({failure or 'no price'})",
                    stale_snapshot=cached,
                )
            task = self._start_fetch(symbol, now)
        # Shielded so one cancelled waiter does not cancel the shared fetch.
        return await asyncio.shield(task)

    def publish(self, snapshot: PriceSnapshot) -> PriceSnapshot:
        """Replace the symbol's snapshot and notify its subscribers in subscription order."""
        self._snapshots[snapshot.symbol] = snapshot
        self._last_failure.pop(snapshot.symbol, None)
        for callback in list(self._subscribers.get(snapshot.symbol, {}).values()):
            self._notify_one(callback, snapshot)
        return snapshot

    def publish_quote(self, symbol: str, quote: PriceQuote) -> PriceSnapshot:
        return self.publish(
            PriceSnapshot(
                symbol=symbol,
                price=quote.price,
                change24h=quote.change24h,
                fetched_at=self._clock(),
                observed_at=datetime.now(timezone.utc),
            )
        )

    async def refresh_all(self) -> Dict[str, PriceSnapshot]:
        """Refresh every subscribed symbol, spacing requests to respect upstream limits."""
        refreshed: Dict[str, PriceSnapshot] = {}
        for i, symbol in enumerate(self.symbols):
            if i and self.request_spacing > 0:
                await asyncio.sleep(self.request_spacing)
            try:
                refreshed[symbol] = await self.refresh(symbol)
            except DataUnavailable as exc:
                self.logger.warning("refresh_failed symbol=%s reason=%s", symbol, exc.reason)
        return refreshed

    def start(self) -> None:
        """Start the periodic refresh loop on the running event loop."""
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def stop(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # -- internals ---------------------------------------------------------

    async def _refresh_loop(self) -> None:
        while True:
            refreshed = await self.refresh_all()
            self.logger.info("refresh_cycle symbols=%d refreshed=%d", len(self.symbols), len(refreshed))
            await asyncio.sleep(self.refresh_interval)

    def _start_fetch(self, symbol: str, now: float) -> asyncio.Task:
        self._last_attempt[symbol] = now
        task = asyncio.ensure_future(self._fetch(symbol))
        self._in_flight[symbol] = task
        task.add_done_callback(lambda t: self._on_fetch_done(symbol, t))
        return task

    def _on_fetch_done(self, symbol: str, task: asyncio.Task) -> None:
        if self._in_flight.get(symbol) is task:
            del self._in_flight[symbol]
        if not task.cancelled() and task.exception() is not None:
            self.logger.debug("fetch_done symbol=%s error=%s", symbol, task.exception())

    async def _fetch(self, symbol: str) -> PriceSnapshot:
        try:
            quote = await asyncio.wait_for(self._fetch_price(symbol), timeout=self.fetch_timeout)
        except DataUnavailable as exc:
            raise self._unavailable(symbol, exc.reason) from exc
        except asyncio.TimeoutError as exc:
            raise self._unavailable(symbol, f"timed out after {self.fetch_timeout:.1f}s") from exc
        except Exception as exc:
            raise self._unavailable(symbol, f"{type(exc).__name__}: {exc}") from exc

        if quote is None or quote.price <= 0:
            raise self._unavailable(symbol, f"invalid price {getattr(quote, 'price', None)!r}")
        snapshot = self.publish_quote(symbol, quote)
        self.logger.info("price_updated symbol=%s price=%.8g change24h=%.2f", symbol, quote.price, quote.change24h)
        return snapshot

    def _unavailable(self, symbol: str, reason: str) -> DataUnavailable:
        stale = self._snapshots.get(symbol)
        self._last_failure[symbol] = reason
        self.logger.warning("fetch_failed symbol=%s reason=%s stale=%s", symbol, reason, stale is not None)
        return DataUnavailable(symbol, reason, stale_snapshot=stale)

    def _notify_one(self, callback: PriceCallback, snapshot: PriceSnapshot) -> None:
        try:
            callback(snapshot)
        except Exception:
            self.logger.exception("subscriber_error symbol=%s", snapshot.symbol)
