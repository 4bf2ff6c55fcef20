"""Calculation scheduler: periodic and manual signal cycles over all symbols."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
import asyncio
import contextlib
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import yaml

from crypto_signals.config.constants import (
    DEFAULT_ACCOUNT_BALANCE,
    DEFAULT_BREAKER_COOLDOWN_SECONDS,
    DEFAULT_BREAKER_FAILURE_THRESHOLD,
    DEFAULT_BREAKER_HALF_OPEN_SUCCESSES,
    DEFAULT_CANDLE_LIMIT,
    DEFAULT_CYCLE_INTERVAL_SECONDS,
    DEFAULT_EXCHANGE,
    DEFAULT_FETCH_TIMEOUT_SECONDS,
    DEFAULT_FRESHNESS_SECONDS,
    DEFAULT_MAX_CONCURRENT_FETCHES,
    DEFAULT_MAX_CONCURRENT_SYMBOLS,
    DEFAULT_MC_HORIZON,
    DEFAULT_MC_ITERATIONS,
    DEFAULT_MIN_CYCLE_GAP_SECONDS,
    DEFAULT_MIN_REFETCH_SECONDS,
    DEFAULT_REFRESH_INTERVAL_SECONDS,
    DEFAULT_RISK_CACHE_TTL_SECONDS,
    DEFAULT_RISK_PER_TRADE_PCT,
    DEFAULT_SYMBOLS,
)
from crypto_signals.data.circuit_breaker import CircuitBreaker, GuardedMarketDataProvider
from crypto_signals.data.market_feed import ALL_TIMEFRAMES, CcxtMarketDataProvider, MarketDataProvider, Timeframe
from crypto_signals.data.price_cache import PriceCache
from crypto_signals.edge.regime_detector import RegimeDetector
from crypto_signals.errors import CycleRateLimited, DataUnavailable, OverlapRejected, SignalEngineError
from crypto_signals.logging.cycle_log import get_cycle_logger
from crypto_signals.logging.feed_log import get_feed_logger
from crypto_signals.logging.metrics import summarize_cycle
from crypto_signals.logging.signal_log import get_signal_logger
from crypto_signals.persistence.signal_store import InMemorySignalStore, SignalStore
from crypto_signals.risk.assessment import RiskAssessment, RiskAssessor
from crypto_signals.risk.monte_carlo import MonteCarloRiskEngine
from crypto_signals.risk.position_sizer import PositionSizer
from crypto_signals.strategy.confluence import ConfluenceEngine
from crypto_signals.strategy.signal import Signal
from crypto_signals.strategy.timeframe_coordinator import MultiTimeframeCoordinator, MultiTimeframeResult

SignalBook = Dict[str, Dict[Timeframe, Signal]]
SignalListener = Callable[[Signal], None]


@dataclass
class EngineConfig:
    raw: dict[str, Any]

    @classmethod
    def from_yaml(cls, path: str | Path) -> "EngineConfig":
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return cls(raw=data or {})

    def section(self, name: str) -> dict[str, Any]:
        return self.raw.get(name) or {}


@dataclass(frozen=True)
class CycleReport:
    source: str
    started_at: datetime
    duration_seconds: float
    symbols: tuple[str, ...]
    signals: SignalBook
    failures: Dict[str, str] = field(default_factory=dict)
    timeframe_errors: int = 0


@dataclass(frozen=True)
class SymbolHealth:
    """Per-symbol cycle outcome; ``stale`` means its latest cycle failed and its book entries predate it."""

    symbol: str
    last_success_at: Optional[datetime]
    last_failure_at: Optional[datetime]
    last_error: Optional[str]

    @property
    def stale(self) -> bool:
        return self.last_error is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_success_at": self.last_success_at,
            "last_failure_at": self.last_failure_at,
            "last_error": self.last_error,
            "stale": self.stale,
        }


class CalculationScheduler:
    """Owns the signal book and runs one calculation cycle at a time.

    Timer and manual callers share ``trigger``. A cycle that would overlap a
    running one, or start within ``min_gap`` seconds of the previous start, is
    rejected and counted rather than queued.
    """

    def __init__(
        self,
        cache: PriceCache,
        coordinator: MultiTimeframeCoordinator,
        store: SignalStore,
        symbols: Sequence[str],
        assessor: Optional[RiskAssessor] = None,
        interval: float = DEFAULT_CYCLE_INTERVAL_SECONDS,
        min_gap: float = DEFAULT_MIN_CYCLE_GAP_SECONDS,
        max_concurrent_symbols: int = DEFAULT_MAX_CONCURRENT_SYMBOLS,
        default_balance: float = DEFAULT_ACCOUNT_BALANCE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self.coordinator = coordinator
        self.store = store
        self.symbols = list(symbols)
        self.assessor = assessor or RiskAssessor(MonteCarloRiskEngine(), PositionSizer(DEFAULT_RISK_PER_TRADE_PCT))
        self.interval = interval
        self.min_gap = min_gap
        self.max_concurrent_symbols = max_concurrent_symbols
        self.default_balance = default_balance
        self._clock = clock

        self.is_calculating = False
        self.last_calculation_time: Optional[float] = None
        self.last_calculation_at: Optional[datetime] = None
        self.overlap_rejections = 0
        self.rate_limited = 0
        self.cycles = 0

        self._signals: SignalBook = {}
        self._listeners: List[SignalListener] = []
        self._health: Dict[str, SymbolHealth] = {}
        self._task: Optional[asyncio.Task] = None
        self._next_run_at: Optional[float] = None
        self.logger = get_cycle_logger()

    # -- listeners ---------------------------------------------------------

    def add_listener(self, callback: SignalListener) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: SignalListener) -> bool:
        if callback in self._listeners:
            self._listeners.remove(callback)
            return True
        return False

    # -- cycles ------------------------------------------------------------

    async def trigger(self, source: str = "manual") -> Optional[CycleReport]:
        """Run a cycle now unless one is running or the last one started too recently."""
        try:
            self._admit()
        except OverlapRejected:
            self.overlap_rejections += 1
            self.logger.debug("cycle_rejected source=%s reason=overlap", source)
            return None
        except CycleRateLimited as exc:
            self.rate_limited += 1
            self.logger.debug("cycle_rejected source=%s reason=rate_limited wait=%.1f", source, exc.wait_seconds)
            return None

        self.is_calculating = True
        self.last_calculation_time = self._clock()
        self.last_calculation_at = datetime.now(timezone.utc)
        try:
            return await self._run_cycle(source)
        finally:
            self.is_calculating = False

    def _admit(self) -> None:
        if self.is_calculating:
            raise OverlapRejected("calculation already in progress")
        if self.last_calculation_time is not None:
            elapsed = self._clock() - self.last_calculation_time
            if elapsed < self.min_gap:
                raise CycleRateLimited(self.min_gap - elapsed)

    async def _run_cycle(self, source: str) -> CycleReport:
        started = self._clock()
        started_at = datetime.now(timezone.utc)
        symbols = tuple(self.symbols)
        self.logger.info("cycle_start source=%s symbols=%d", source, len(symbols))

        semaphore = asyncio.Semaphore(self.max_concurrent_symbols)

        async def run_symbol(symbol: str) -> MultiTimeframeResult:
            async with semaphore:
                snapshot = await self.cache.get_immediate_snapshot(symbol)
                return await self.coordinator.run(snapshot)

        outcomes = await asyncio.gather(*(run_symbol(s) for s in symbols), return_exceptions=True)

        fresh: SignalBook = {}
        failures: Dict[str, str] = {}
        timeframe_errors = 0
        for symbol, outcome in zip(symbols, outcomes):
            if isinstance(outcome, Exception):
                failures[symbol] = str(outcome) if isinstance(outcome, SignalEngineError) else repr(outcome)
                kept = len(self._signals.get(symbol, {}))
                self._mark_failed(symbol, failures[symbol], started_at)
                if isinstance(outcome, SignalEngineError):
                    self.logger.warning("symbol_failed symbol=%s error=%s kept=%d", symbol, outcome, kept)
                else:
                    self.logger.error(
                        "symbol_failed symbol=%s error=%r kept=%d", symbol, outcome, kept, exc_info=outcome
                    )
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            fresh[symbol] = dict(outcome.signals)
            timeframe_errors += len(outcome.errors)
            self._mark_ok(symbol, started_at)

        book = {symbol: dict(per_tf) for symbol, per_tf in self._signals.items()}
        for symbol, per_tf in fresh.items():
            book.setdefault(symbol, {}).update(per_tf)
        self._signals = book

        for per_tf in fresh.values():
            for signal in per_tf.values():
                await self._emit(signal)

        self.cycles += 1
        report = CycleReport(
            source=source,
            started_at=started_at,
            duration_seconds=self._clock() - started,
            symbols=symbols,
            signals=fresh,
            failures=failures,
            timeframe_errors=timeframe_errors,
        )
        summary = summarize_cycle(report)
        self.logger.info("cycle_done %s", " ".join(f"{k}={v}" for k, v in summary.items()))
        return report

    def _mark_ok(self, symbol: str, at: datetime) -> None:
        previous = self._health.get(symbol)
        self._health[symbol] = SymbolHealth(
            symbol=symbol,
            last_success_at=at,
            last_failure_at=previous.last_failure_at if previous else None,
            last_error=None,
        )

    def _mark_failed(self, symbol: str, error: str, at: datetime) -> None:
        previous = self._health.get(symbol)
        self._health[symbol] = SymbolHealth(
            symbol=symbol,
            last_success_at=previous.last_success_at if previous else None,
            last_failure_at=at,
            last_error=error,
        )

    async def _emit(self, signal: Signal) -> None:
        for callback in list(self._listeners):
            try:
                callback(signal)
            except Exception:
                self.logger.exception("listener_error symbol=%s tf=%s", signal.symbol, signal.timeframe.value)
        try:
            await self.store.save_signal(signal)
        except Exception:
            self.logger.exception("store_error op=save_signal symbol=%s tf=%s", signal.symbol, signal.timeframe.value)

    # -- periodic loop -----------------------------------------------------

    def start(self) -> None:
        """Start the periodic loop; the first cycle runs immediately."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            self.logger.info("scheduler_started interval=%.0fs symbols=%d", self.interval, len(self.symbols))

    async def stop(self) -> None:
        task, self._task = self._task, None
        self._next_run_at = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            self.logger.info("scheduler_stopped cycles=%d", self.cycles)

    async def _loop(self) -> None:
        next_run = self._clock()
        while True:
            await self.trigger("timer")
            next_run += self.interval
            now = self._clock()
            while next_run <= now:
                next_run += self.interval
            self._next_run_at = next_run
            await asyncio.sleep(next_run - now)

    # -- reads -------------------------------------------------------------

    def get_signals(self, symbol: str, timeframe: Timeframe | str | None = None) -> Dict[Timeframe, Signal]:
        per_tf = self._signals.get(symbol, {})
        if timeframe is None:
            return dict(per_tf)
        tf = Timeframe.parse(timeframe)
        return {tf: per_tf[tf]} if tf in per_tf else {}

    def get_all_signals(self) -> SignalBook:
        return {symbol: dict(per_tf) for symbol, per_tf in self._signals.items()}

    def symbol_health(self, symbol: str) -> Optional[SymbolHealth]:
        """Outcome of the symbol's most recent cycles; None before its first cycle."""
        return self._health.get(symbol)

    def is_stale(self, symbol: str) -> bool:
        """True when the symbol's signals in the book predate its latest failed cycle."""
        health = self._health.get(symbol)
        return health is not None and health.stale

    def get_status(self) -> dict[str, Any]:
        next_in = None
        if self._next_run_at is not None:
            next_in = max(0.0, self._next_run_at - self._clock())
        return {
            "is_running": self._task is not None and not self._task.done(),
            "is_calculating": self.is_calculating,
            "last_calculation_time": self.last_calculation_at,
            "next_calculation_in": next_in,
            "total_symbols": len(self.symbols),
            "total_signals": sum(len(per_tf) for per_tf in self._signals.values()),
            "overlap_rejections": self.overlap_rejections,
            "rate_limited": self.rate_limited,
            "cycles": self.cycles,
            "stale_symbols": sorted(s for s, health in self._health.items() if health.stale),
            "symbol_health": {s: health.to_dict() for s, health in self._health.items()},
        }

    async def assess_risk(
        self, symbol: str, timeframe: Timeframe | str, balance: Optional[float] = None
    ) -> RiskAssessment:
        """Risk assessment for the current signal of (symbol, timeframe), persisted via the store."""
        tf = Timeframe.parse(timeframe)
        signal = self._signals.get(symbol, {}).get(tf)
        if signal is None:
            raise DataUnavailable(symbol, f"no signal for timeframe {tf.value}")
        candles = self.coordinator.candles(symbol, tf)
        assessment = self.assessor.assess(signal, candles, self.default_balance if balance is None else balance)
        try:
            await self.store.save_risk_assessment(assessment)
        except Exception:
            self.logger.exception("store_error op=save_risk_assessment symbol=%s tf=%s", symbol, tf.value)
        return assessment


def build_scheduler(
    config: EngineConfig,
    provider: Optional[MarketDataProvider] = None,
    store: Optional[SignalStore] = None,
) -> CalculationScheduler:
    """Wire cache, coordinator, risk and store from configuration."""
    engine_cfg = config.section("engine")
    market_cfg = config.section("market")
    cache_cfg = config.section("cache")
    risk_cfg = config.section("risk")
    edge_cfg = config.section("edge")
    log_cfg = config.section("logging")
    upstream_cfg = config.section("upstream")

    level = log_cfg.get("level")
    if level:
        for factory in (get_signal_logger, get_cycle_logger, get_feed_logger):
            factory(level)

    fetch_timeout = float(cache_cfg.get("fetch_timeout_seconds", DEFAULT_FETCH_TIMEOUT_SECONDS))
    if provider is None:
        provider = CcxtMarketDataProvider(
            exchange_id=market_cfg.get("exchange", DEFAULT_EXCHANGE),
            timeout_ms=int(fetch_timeout * 1000),
        )
    if not isinstance(provider, GuardedMarketDataProvider):
        provider = GuardedMarketDataProvider(
            provider,
            CircuitBreaker(
                failure_threshold=int(upstream_cfg.get("failure_threshold", DEFAULT_BREAKER_FAILURE_THRESHOLD)),
                cooldown=float(upstream_cfg.get("cooldown_seconds", DEFAULT_BREAKER_COOLDOWN_SECONDS)),
                half_open_successes=int(
                    upstream_cfg.get("half_open_successes", DEFAULT_BREAKER_HALF_OPEN_SUCCESSES)
                ),
            ),
        )

    cache = PriceCache(
        provider.fetch_price,
        refresh_interval=float(cache_cfg.get("refresh_interval_seconds", DEFAULT_REFRESH_INTERVAL_SECONDS)),
        min_refetch_interval=float(cache_cfg.get("min_refetch_seconds", DEFAULT_MIN_REFETCH_SECONDS)),
        freshness=float(cache_cfg.get("freshness_seconds", DEFAULT_FRESHNESS_SECONDS)),
        fetch_timeout=fetch_timeout,
    )
    regime_detector = RegimeDetector(
        volatility_window=edge_cfg.get("volatility_window", 30),
        volatility_threshold=edge_cfg.get("volatility_threshold", 0.02),
        trend_window=edge_cfg.get("trend_window", 50),
        trend_strength_threshold=edge_cfg.get("trend_strength_threshold", 0.05),
        range_ratio_threshold=edge_cfg.get("range_ratio_threshold", 0.3),
    )
    coordinator = MultiTimeframeCoordinator(
        provider,
        ConfluenceEngine(regime_detector=regime_detector),
        timeframes=[Timeframe.parse(tf) for tf in market_cfg.get("timeframes", [tf.value for tf in ALL_TIMEFRAMES])],
        candle_limit=int(market_cfg.get("candle_limit", DEFAULT_CANDLE_LIMIT)),
        max_concurrency=int(engine_cfg.get("max_concurrent_fetches", DEFAULT_MAX_CONCURRENT_FETCHES)),
        fetch_timeout=fetch_timeout,
    )
    assessor = RiskAssessor(
        MonteCarloRiskEngine(
            iterations=int(risk_cfg.get("mc_iterations", DEFAULT_MC_ITERATIONS)),
            horizon=int(risk_cfg.get("mc_horizon", DEFAULT_MC_HORIZON)),
            seed=risk_cfg.get("mc_seed"),
        ),
        PositionSizer(
            risk_per_trade_pct=float(risk_cfg.get("risk_per_trade_pct", DEFAULT_RISK_PER_TRADE_PCT)),
            max_notional_pct=float(risk_cfg.get("max_notional_pct", 1.0)),
        ),
        ttl=float(risk_cfg.get("cache_ttl_seconds", DEFAULT_RISK_CACHE_TTL_SECONDS)),
    )
    return CalculationScheduler(
        cache=cache,
        coordinator=coordinator,
        store=store or InMemorySignalStore(),
        symbols=market_cfg.get("symbols", list(DEFAULT_SYMBOLS)),
        assessor=assessor,
        interval=float(engine_cfg.get("interval_seconds", DEFAULT_CYCLE_INTERVAL_SECONDS)),
        min_gap=float(engine_cfg.get("min_gap_seconds", DEFAULT_MIN_CYCLE_GAP_SECONDS)),
        max_concurrent_symbols=int(engine_cfg.get("max_concurrent_symbols", DEFAULT_MAX_CONCURRENT_SYMBOLS)),
        default_balance=float(risk_cfg.get("account_balance", DEFAULT_ACCOUNT_BALANCE)),
    )
