"""Runs the confluence engine for one symbol across every configured timeframe."""

from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from itertools import combinations
import asyncio
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple

from crypto_signals.config.constants import (
    CONFIDENCE_DECIMALS,
    DEFAULT_CANDLE_LIMIT,
    DEFAULT_FETCH_TIMEOUT_SECONDS,
    DEFAULT_MAX_CONCURRENT_FETCHES,
)
from crypto_signals.data.market_feed import ALL_TIMEFRAMES, Candle, MarketDataProvider, Timeframe
from crypto_signals.data.price_cache import PriceSnapshot
from crypto_signals.errors import DataUnavailable
from crypto_signals.logging.signal_log import get_signal_logger
from crypto_signals.strategy.confluence import ConfluenceEngine
from crypto_signals.strategy.signal import Direction, Signal

# Relative say of each timeframe in the aggregate confidence.
TIMEFRAME_WEIGHTS: dict[Timeframe, float] = {
    Timeframe.M1: 0.75,
    Timeframe.M5: 0.82,
    Timeframe.M15: 0.88,
    Timeframe.M30: 0.94,
    Timeframe.H1: 1.0,
    Timeframe.H4: 1.12,
    Timeframe.D1: 1.15,
    Timeframe.D3: 1.1,
    Timeframe.W1: 1.05,
    Timeframe.MN1: 1.0,
}


class CoordinatorState(str, Enum):
    IDLE = "IDLE"
    FETCHING = "FETCHING"
    COMPUTING = "COMPUTING"
    DONE = "DONE"


@dataclass(frozen=True)
class MultiTimeframeResult:
    symbol: str
    price: float
    signals: Dict[Timeframe, Signal]
    errors: Dict[Timeframe, str] = field(default_factory=dict)
    agreement_score: float = 1.0
    dominant_direction: Direction = Direction.NEUTRAL
    aggregate_confidence: float = 0.0
    completed_at: Optional[datetime] = None


def agreement_score(signals: Sequence[Signal]) -> float:
    """Share of signal pairs pointing the same way; a lone signal agrees with itself."""
    if len(signals) < 2:
        return 1.0
    pairs = list(combinations(signals, 2))
    matching = sum(1 for a, b in pairs if a.direction is b.direction)
    return matching / len(pairs)


def dominant_direction(signals: Sequence[Signal]) -> Direction:
    """Direction with the most timeframe-weighted confidence; ties read as NEUTRAL."""
    totals: Counter = Counter()
    for s in signals:
        totals[s.direction] += TIMEFRAME_WEIGHTS[s.timeframe] * s.confidence
    if not totals:
        return Direction.NEUTRAL
    ranked = totals.most_common()
    if len(ranked) > 1 and ranked[0][1] == ranked[1][1]:
        return Direction.NEUTRAL
    return ranked[0][0]


def aggregate_confidence(signals: Sequence[Signal], agreement: float) -> float:
    if not signals:
        return 0.0
    total_weight = sum(TIMEFRAME_WEIGHTS[s.timeframe] for s in signals)
    weighted = sum(TIMEFRAME_WEIGHTS[s.timeframe] * s.confidence for s in signals) / total_weight
    return round(weighted * (0.5 + 0.5 * agreement), CONFIDENCE_DECIMALS)


class MultiTimeframeCoordinator:
    """Fetches candles for every timeframe concurrently, then computes all signals at one price."""

    def __init__(
        self,
        provider: MarketDataProvider,
        engine: ConfluenceEngine,
        timeframes: Sequence[Timeframe] = ALL_TIMEFRAMES,
        candle_limit: int = DEFAULT_CANDLE_LIMIT,
        max_concurrency: int = DEFAULT_MAX_CONCURRENT_FETCHES,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.provider = provider
        self.engine = engine
        self.timeframes = [Timeframe.parse(tf) for tf in timeframes]
        self.candle_limit = candle_limit
        self.fetch_timeout = fetch_timeout
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._clock = clock
        self._states: Dict[str, CoordinatorState] = {}
        self._candles: Dict[Tuple[str, Timeframe], List[Candle]] = {}
        self.transitions: Deque[Tuple[str, CoordinatorState]] = deque(maxlen=256)
        self.logger = get_signal_logger()

    def state(self, symbol: str) -> CoordinatorState:
        return self._states.get(symbol, CoordinatorState.IDLE)

    def candles(self, symbol: str, timeframe: Timeframe | str) -> List[Candle]:
        """Candles retained from the last run for (symbol, timeframe)."""
        return list(self._candles.get((symbol, Timeframe.parse(timeframe)), []))

    async def run(self, snapshot: PriceSnapshot) -> MultiTimeframeResult:
        symbol = snapshot.symbol
        self._set_state(symbol, CoordinatorState.FETCHING)
        try:
            fetched = await asyncio.gather(
                *(self._fetch(symbol, tf) for tf in self.timeframes), return_exceptions=True
            )

            self._set_state(symbol, CoordinatorState.COMPUTING)
            now = self._clock()
            signals: Dict[Timeframe, Signal] = {}
            errors: Dict[Timeframe, str] = {}
            for tf, outcome in zip(self.timeframes, fetched):
                if isinstance(outcome, DataUnavailable):
                    errors[tf] = outcome.reason
                    self.logger.warning("timeframe_unavailable symbol=%s tf=%s reason=%s", symbol, tf.value, outcome.reason)
                    continue
                if isinstance(outcome, Exception):
                    errors[tf] = f"{type(outcome).__name__}: {outcome}"
                    self.logger.error(
                        "timeframe_failed symbol=%s tf=%s error=%s", symbol, tf.value, errors[tf], exc_info=outcome
                    )
                    continue
                if isinstance(outcome, BaseException):
                    raise outcome
                self._candles[(symbol, tf)] = outcome
                signals[tf] = self.engine.generate(symbol, tf, outcome, snapshot.price, now=now)

            if not signals:
                raise DataUnavailable(symbol, "no timeframe could be fetched", stale_snapshot=snapshot)

            ordered = list(signals.values())
            agreement = agreement_score(ordered)
            result = MultiTimeframeResult(
                symbol=symbol,
                price=snapshot.price,
                signals=signals,
                errors=errors,
                agreement_score=round(agreement, 4),
                dominant_direction=dominant_direction(ordered),
                aggregate_confidence=aggregate_confidence(ordered, agreement),
                completed_at=now,
            )
            self._set_state(symbol, CoordinatorState.DONE)
            self.logger.info(
                "mtf_done symbol=%s signals=%d errors=%d agreement=%.2f dominant=%s confidence=%.2f",
                symbol,
                len(signals),
                len(errors),
                result.agreement_score,
                result.dominant_direction.value,
                result.aggregate_confidence,
            )
            return result
        finally:
            self._set_state(symbol, CoordinatorState.IDLE)

    async def _fetch(self, symbol: str, timeframe: Timeframe) -> List[Candle]:
        async with self._semaphore:
            try:
                return await asyncio.wait_for(
                    self.provider.fetch_candles(symbol, timeframe, self.candle_limit), timeout=self.fetch_timeout
                )
            except asyncio.TimeoutError as exc:
                raise DataUnavailable(
                    symbol, f"ohlcv {timeframe.value}: timed out after {self.fetch_timeout:.1f}s"
                ) from exc

    def _set_state(self, symbol: str, state: CoordinatorState) -> None:
        self._states[symbol] = state
        self.transitions.append((symbol, state))
        self.logger.debug("mtf_state symbol=%s state=%s", symbol, state.value)
