"""Indicator helpers used by the confluence, regime and risk modules."""

from __future__ import annotations

from dataclasses import dataclass
import math
from statistics import mean, pstdev
from typing import Callable, Iterable, List, Optional, Sequence, TypeVar

from crypto_signals.config.constants import MIN_CANDLES
from crypto_signals.data.market_feed import Candle, Timeframe
from crypto_signals.errors import ComputationError, DataInsufficient

T = TypeVar("T")

# (short, medium, long) moving-average lookbacks per timeframe.
MA_LOOKBACKS: dict[Timeframe, tuple[int, int, int]] = {
    Timeframe.M1: (5, 13, 34),
    Timeframe.M5: (5, 13, 34),
    Timeframe.M15: (9, 21, 50),
    Timeframe.M30: (9, 21, 50),
    Timeframe.H1: (9, 21, 50),
    Timeframe.H4: (9, 21, 50),
    Timeframe.D1: (9, 21, 50),
    Timeframe.D3: (7, 14, 30),
    Timeframe.W1: (5, 10, 20),
    Timeframe.MN1: (3, 6, 12),
}


@dataclass(frozen=True)
class MACDValue:
    value: float
    signal: float
    histogram: float
    prev_histogram: float


@dataclass(frozen=True)
class MovingAverages:
    short: float
    medium: float
    long: float


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float


@dataclass(frozen=True)
class StochasticValue:
    k: float
    d: float


@dataclass(frozen=True)
class VolumeProfile:
    """Latest volume against its recent baseline plus the last close change."""

    ratio: float
    change: float


@dataclass(frozen=True)
class IndicatorSet:
    """Snapshot of every indicator for one (symbol, timeframe) computation.

    A field is None when that indicator raised a ComputationError; its name is
    then listed in ``failed``.
    """

    close: float
    rsi: Optional[float]
    macd: Optional[MACDValue]
    ema: Optional[MovingAverages]
    sma: Optional[MovingAverages]
    bollinger: Optional[BollingerBands]
    atr: Optional[float]
    stochastic: Optional[StochasticValue]
    volume: Optional[VolumeProfile]
    failed: tuple[str, ...] = ()


def pct_change(new_value: float, old_value: float) -> float:
    """Safe percentage change."""
    if old_value == 0:
        return 0.0
    return (new_value - old_value) / old_value


def sma(values: Sequence[float], period: int) -> float:
    """Simple moving average of the last ``period`` values."""
    if period <= 0:
        raise ValueError("period must be > 0")
    if len(values) < period:
        raise ValueError(f"need {period} values, got {len(values)}")
    return mean(values[-period:])


def ema_series(values: Sequence[float], period: int) -> List[float]:
    """EMA series seeded with the SMA of the first ``period`` values.

    Element ``i`` of the result lines up with ``values[period - 1 + i]``.
    """
    if period <= 0:
        raise ValueError("period must be > 0")
    if len(values) < period:
        raise ValueError(f"need {period} values, got {len(values)}")

    k = 2.0 / (period + 1.0)
    acc = mean(values[:period])
    out = [acc]
    for v in values[period:]:
        acc = (v * k) + (acc * (1.0 - k))
        out.append(acc)
    return out


def ema(values: Sequence[float], period: int) -> float:
    """Return EMA of the full series using the last value as current signal."""
    if not values:
        raise ValueError("values cannot be empty")
    if len(values) < period:
        # Short input: seed from the first value instead of an SMA.
        k = 2.0 / (period + 1.0)
        acc = values[0]
        for v in values[1:]:
            acc = (v * k) + (acc * (1.0 - k))
        return acc
    return ema_series(values, period)[-1]


def rsi(closes: Sequence[float], period: int = 14) -> float:
    """Compute RSI with Wilder smoothing of average gain/loss."""
    if period <= 0:
        raise ValueError("period must be > 0")
    if len(closes) < period + 1:
        return 50.0

    gains = 0.0
    losses = 0.0
    for i in range(1, period + 1):
        delta = closes[i] - closes[i - 1]
        if delta >= 0:
            gains += delta
        else:
            losses -= delta
    avg_gain = gains / period
    avg_loss = losses / period

    for i in range(period + 1, len(closes)):
        delta = closes[i] - closes[i - 1]
        avg_gain = (avg_gain * (period - 1) + max(delta, 0.0)) / period
        avg_loss = (avg_loss * (period - 1) + max(-delta, 0.0)) / period

    if avg_loss == 0:
        return 50.0 if avg_gain == 0 else 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def macd(closes: Sequence[float], fast: int = 12, slow: int = 26, signal: int = 9) -> MACDValue:
    """MACD line, signal line, histogram and the previous histogram value."""
    if not 0 < fast < slow:
        raise ValueError("require 0 < fast < slow")
    if len(closes) < slow + signal - 1:
        raise ValueError(f"need {slow + signal - 1} closes, got {len(closes)}")

    fast_series = ema_series(closes, fast)
    slow_series = ema_series(closes, slow)
    offset = slow - fast
    line = [fast_series[i + offset] - slow_value for i, slow_value in enumerate(slow_series)]
    signal_series = ema_series(line, signal)

    histogram = line[-1] - signal_series[-1]
    prev_histogram = line[-2] - signal_series[-2] if len(signal_series) > 1 else histogram
    return MACDValue(value=line[-1], signal=signal_series[-1], histogram=histogram, prev_histogram=prev_histogram)


def true_ranges(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float]) -> List[float]:
    return [
        max(highs[i] - lows[i], abs(highs[i] - closes[i - 1]), abs(lows[i] - closes[i - 1]))
        for i in range(1, len(closes))
    ]


def atr(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], period: int = 14) -> float:
    """Compute Average True Range (ATR) with Wilder smoothing."""
    if period <= 0:
        raise ValueError("period must be > 0")
    if len(closes) < period + 1:
        return 0.0

    trs = true_ranges(highs, lows, closes)
    value = mean(trs[:period])
    for tr in trs[period:]:
        value = (value * (period - 1) + tr) / period
    return value


def bollinger_bands(closes: Sequence[float], period: int = 20, stddevs: float = 2.0) -> BollingerBands:
    """Return Bollinger Bands around the SMA of the last ``period`` closes."""
    if period <= 0:
        raise ValueError("period must be > 0")
    if len(closes) < period:
        mid = closes[-1] if closes else 0.0
        return BollingerBands(upper=mid, middle=mid, lower=mid)

    window = closes[-period:]
    mid = mean(window)
    std = pstdev(window)
    return BollingerBands(upper=mid + (stddevs * std), middle=mid, lower=mid - (stddevs * std))


def stochastic(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    k_period: int = 14,
    d_period: int = 3,
) -> StochasticValue:
    """Standard %K/%D oscillator; a flat window reads as 50."""
    if k_period <= 0 or d_period <= 0:
        raise ValueError("periods must be > 0")
    if len(closes) < k_period + d_period - 1:
        raise ValueError(f"need {k_period + d_period - 1} candles, got {len(closes)}")

    ks = []
    for end in range(len(closes) - d_period + 1, len(closes) + 1):
        highest = max(highs[end - k_period : end])
        lowest = min(lows[end - k_period : end])
        span = highest - lowest
        ks.append(50.0 if span <= 0 else (closes[end - 1] - lowest) / span * 100.0)
    return StochasticValue(k=ks[-1], d=mean(ks))


def volume_ratio(volumes: Sequence[float], closes: Sequence[float], period: int = 20) -> VolumeProfile:
    """Latest volume relative to the mean of the ``period`` volumes before it."""
    if len(volumes) < period + 1:
        raise ValueError(f"need {period + 1} volumes, got {len(volumes)}")
    baseline = mean(volumes[-period - 1 : -1])
    if baseline <= 0:
        raise ZeroDivisionError("baseline volume is zero")
    return VolumeProfile(ratio=volumes[-1] / baseline, change=pct_change(closes[-1], closes[-2]))


def log_returns(closes: Sequence[float]) -> List[float]:
    """Per-bar log returns; non-positive prices are skipped."""
    return [
        math.log(closes[i] / closes[i - 1])
        for i in range(1, len(closes))
        if closes[i] > 0 and closes[i - 1] > 0
    ]


def realized_volatility(closes: Sequence[float], window: int) -> float:
    """Simple absolute-return based volatility estimate."""
    if len(closes) < window + 1:
        return 0.0
    rets = [abs(pct_change(closes[i], closes[i - 1])) for i in range(len(closes) - window, len(closes))]
    return mean(rets) if rets else 0.0


def trend_strength(closes: Sequence[float], window: int) -> float:
    """Magnitude of linearized trend proxy over a lookback window."""
    if len(closes) < window:
        return 0.0
    start = closes[-window]
    end = closes[-1]
    return abs(pct_change(end, start))


def range_bound_ratio(highs: Iterable[float], lows: Iterable[float], closes: Iterable[float]) -> float:
    """Return ratio of net move to total range; lower values imply more ranging behavior."""
    highs_list = list(highs)
    lows_list = list(lows)
    closes_list = list(closes)
    if not highs_list or not lows_list or not closes_list:
        return 1.0

    price_range = max(highs_list) - min(lows_list)
    net_move = abs(closes_list[-1] - closes_list[0])
    if price_range <= 0:
        return 1.0
    return net_move / price_range


def _evaluate(name: str, fn: Callable[[], T], failed: list[str]) -> Optional[T]:
    """Run one indicator in isolation; failures are recorded, never raised."""
    try:
        return _computed(name, fn)
    except ComputationError as exc:
        failed.append(exc.indicator)
        return None


def _computed(name: str, fn: Callable[[], T]) -> T:
    try:
        value = fn()
    except (ArithmeticError, ValueError) as exc:
        raise ComputationError(name, exc) from exc
    numbers = value.__dict__.values() if hasattr(value, "__dict__") else (value,)
    for number in numbers:
        if isinstance(number, float) and not math.isfinite(number):
            raise ComputationError(name, ArithmeticError(f"non-finite value {number}"))
    return value


def compute_indicator_set(
    candles: Sequence[Candle],
    timeframe: Timeframe | str,
    symbol: str = "",
    min_candles: int = MIN_CANDLES,
) -> IndicatorSet:
    """Compute every indicator from candle data.

    Raises DataInsufficient below ``min_candles``. Each indicator runs on its own,
    so one numeric failure only drops that indicator.
    """
    tf = Timeframe.parse(timeframe)
    if len(candles) < min_candles:
        raise DataInsufficient(symbol, tf.value, len(candles), min_candles)

    closes = [c.close for c in candles]
    highs = [c.high for c in candles]
    lows = [c.low for c in candles]
    volumes = [c.volume for c in candles]
    short, medium, long = MA_LOOKBACKS[tf]
    failed: list[str] = []

    return IndicatorSet(
        close=closes[-1],
        rsi=_evaluate("rsi", lambda: rsi(closes, 14), failed),
        macd=_evaluate("macd", lambda: macd(closes, 12, 26, 9), failed),
        ema=_evaluate(
            "ema",
            lambda: MovingAverages(short=ema(closes, short), medium=ema(closes, medium), long=ema(closes, long)),
            failed,
        ),
        sma=_evaluate(
            "sma",
            lambda: MovingAverages(short=sma(closes, short), medium=sma(closes, medium), long=sma(closes, long)),
            failed,
        ),
        bollinger=_evaluate("bollinger", lambda: bollinger_bands(closes, 20, 2.0), failed),
        atr=_evaluate("atr", lambda: atr(highs, lows, closes, 14), failed),
        stochastic=_evaluate("stochastic", lambda: stochastic(highs, lows, closes, 14, 3), failed),
        volume=_evaluate("volume", lambda: volume_ratio(volumes, closes, 20), failed),
        failed=tuple(failed),
    )
