"""Confluence engine: turns an IndicatorSet into one weighted directional signal."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from crypto_signals.config.constants import (
    BASE_CONFIDENCE,
    CONFIDENCE_DECIMALS,
    MIN_CANDLES,
    NEUTRAL_BAND,
    PRICE_DECIMALS,
    SIMPLIFIED_CONFIDENCE_CAP,
)
from crypto_signals.data.indicators import IndicatorSet, atr, compute_indicator_set, ema, pct_change
from crypto_signals.data.market_feed import Candle, Timeframe
from crypto_signals.edge.regime_detector import MarketRegime, RegimeDetector
from crypto_signals.errors import DataInsufficient
from crypto_signals.logging.signal_log import get_signal_logger
from crypto_signals.risk.stops import compute_risk
from crypto_signals.strategy.signal import DataQuality, Direction, Signal


class IndicatorCategory(str, Enum):
    TREND = "TREND"
    MOMENTUM = "MOMENTUM"
    VOLUME = "VOLUME"
    VOLATILITY = "VOLATILITY"


CATEGORY_WEIGHTS: dict[IndicatorCategory, float] = {
    IndicatorCategory.TREND: 0.35,
    IndicatorCategory.MOMENTUM: 0.30,
    IndicatorCategory.VOLUME: 0.20,
    IndicatorCategory.VOLATILITY: 0.15,
}

REGIME_MULTIPLIERS: dict[MarketRegime, dict[IndicatorCategory, float]] = {
    MarketRegime.TRENDING: {
        IndicatorCategory.TREND: 1.3,
        IndicatorCategory.MOMENTUM: 0.9,
        IndicatorCategory.VOLUME: 1.0,
        IndicatorCategory.VOLATILITY: 0.8,
    },
    MarketRegime.RANGING: {
        IndicatorCategory.TREND: 0.7,
        IndicatorCategory.MOMENTUM: 1.3,
        IndicatorCategory.VOLUME: 0.9,
        IndicatorCategory.VOLATILITY: 1.2,
    },
    MarketRegime.VOLATILE: {
        IndicatorCategory.TREND: 0.9,
        IndicatorCategory.MOMENTUM: 0.8,
        IndicatorCategory.VOLUME: 1.2,
        IndicatorCategory.VOLATILITY: 1.3,
    },
    MarketRegime.NORMAL: {category: 1.0 for category in IndicatorCategory},
}

VOLUME_CONFIRMATION_RATIO = 1.2
SIMPLIFIED_EMA_PERIOD = 20
SIMPLIFIED_FLAT_DEVIATION = 0.001


@dataclass(frozen=True)
class Vote:
    name: str
    category: IndicatorCategory
    direction: Direction
    strength: float
    reason: str


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def rsi_vote(value: float) -> Vote:
    if value < 30:
        direction, strength = Direction.LONG, 70 + (30 - value) * 1.5
        reason = f"RSI {value:.1f} oversold"
    elif value < 35:
        direction, strength = Direction.LONG, 55 + (35 - value) * 2
        reason = f"RSI {value:.1f} near oversold"
    elif value > 70:
        direction, strength = Direction.SHORT, 70 + (value - 70) * 1.5
        reason = f"RSI {value:.1f} overbought"
    elif value > 65:
        direction, strength = Direction.SHORT, 55 + (value - 65) * 2
        reason = f"RSI {value:.1f} near overbought"
    else:
        direction, strength = Direction.NEUTRAL, 0.0
        reason = f"RSI {value:.1f} neutral"
    return Vote("rsi", IndicatorCategory.MOMENTUM, direction, _clamp(strength), reason)


def macd_vote(value: float, signal: float, histogram: float, prev_histogram: float) -> Vote:
    if value == signal:
        return Vote("macd", IndicatorCategory.MOMENTUM, Direction.NEUTRAL, 0.0, "MACD on signal line")

    direction = Direction.LONG if value > signal else Direction.SHORT
    strength = 50.0
    notes = ["above signal" if direction is Direction.LONG else "below signal"]
    if value * direction.sign > 0:
        strength += 25
        notes.append("same side of zero")
    if abs(histogram) > abs(prev_histogram) and histogram * direction.sign > 0:
        strength += 25
        notes.append("histogram expanding")
    return Vote("macd", IndicatorCategory.MOMENTUM, direction, _clamp(strength), "MACD " + ", ".join(notes))


def ema_stack_vote(short: float, medium: float, long: float) -> Vote:
    if short > medium > long:
        direction = Direction.LONG
    elif short < medium < long:
        direction = Direction.SHORT
    else:
        return Vote("ema", IndicatorCategory.TREND, Direction.NEUTRAL, 0.0, "EMA stack mixed")

    spread = abs(pct_change(short, long))
    strength = 70 + min(30.0, spread * 100 * 3)
    label = "bullish" if direction is Direction.LONG else "bearish"
    return Vote("ema", IndicatorCategory.TREND, direction, _clamp(strength), f"EMA stack {label} spread={spread:.2%}")


def stochastic_vote(k: float, d: float) -> Vote:
    if k < 20:
        strength = 60 + (20 - k)
        if k < d:
            strength -= 10
        return Vote("stochastic", IndicatorCategory.MOMENTUM, Direction.LONG, _clamp(strength), f"Stoch %K {k:.1f} oversold")
    if k > 80:
        strength = 60 + (k - 80)
        if k > d:
            strength -= 10
        return Vote(
            "stochastic", IndicatorCategory.MOMENTUM, Direction.SHORT, _clamp(strength), f"Stoch %K {k:.1f} overbought"
        )
    return Vote("stochastic", IndicatorCategory.MOMENTUM, Direction.NEUTRAL, 0.0, f"Stoch %K {k:.1f} neutral")


def bollinger_vote(close: float, upper: float, lower: float) -> Vote:
    width = upper - lower
    if width > 0 and close < lower:
        strength = 60 + min(40.0, (lower - close) / width * 100)
        return Vote("bollinger", IndicatorCategory.VOLATILITY, Direction.LONG, _clamp(strength), "close below lower band")
    if width > 0 and close > upper:
        strength = 60 + min(40.0, (close - upper) / width * 100)
        return Vote("bollinger", IndicatorCategory.VOLATILITY, Direction.SHORT, _clamp(strength), "close above upper band")
    return Vote("bollinger", IndicatorCategory.VOLATILITY, Direction.NEUTRAL, 0.0, "close inside bands")


def volume_vote(ratio: float, change: float) -> Vote:
    if ratio >= VOLUME_CONFIRMATION_RATIO and change != 0:
        direction = Direction.LONG if change > 0 else Direction.SHORT
        strength = min(100.0, (ratio - 1) * 100)
        return Vote("volume", IndicatorCategory.VOLUME, direction, _clamp(strength), f"volume x{ratio:.2f} confirms move")
    return Vote("volume", IndicatorCategory.VOLUME, Direction.NEUTRAL, 0.0, f"volume x{ratio:.2f} unconfirmed")


def collect_votes(indicators: IndicatorSet) -> List[Vote]:
    """Votes in a fixed order; indicators that failed to compute are skipped."""
    votes: List[Vote] = []
    if indicators.rsi is not None:
        votes.append(rsi_vote(indicators.rsi))
    if indicators.macd is not None:
        m = indicators.macd
        votes.append(macd_vote(m.value, m.signal, m.histogram, m.prev_histogram))
    if indicators.ema is not None:
        votes.append(ema_stack_vote(indicators.ema.short, indicators.ema.medium, indicators.ema.long))
    if indicators.stochastic is not None:
        votes.append(stochastic_vote(indicators.stochastic.k, indicators.stochastic.d))
    if indicators.bollinger is not None:
        votes.append(bollinger_vote(indicators.close, indicators.bollinger.upper, indicators.bollinger.lower))
    if indicators.volume is not None:
        votes.append(volume_vote(indicators.volume.ratio, indicators.volume.change))
    return votes


def effective_weights(regime: MarketRegime, present: Sequence[IndicatorCategory]) -> Dict[IndicatorCategory, float]:
    """Base weight times regime multiplier, normalised over the categories that voted."""
    raw = {c: CATEGORY_WEIGHTS[c] * REGIME_MULTIPLIERS[regime][c] for c in IndicatorCategory if c in present}
    total = sum(raw.values())
    if total <= 0:
        return {}
    return {c: w / total for c, w in raw.items()}


@dataclass(frozen=True)
class ConfluenceScore:
    long_score: float
    short_score: float

    @property
    def net(self) -> float:
        return self.long_score - self.short_score

    @property
    def score(self) -> float:
        return 50 + self.net / 2

    @property
    def direction(self) -> Direction:
        if abs(self.score - 50) <= NEUTRAL_BAND:
            return Direction.NEUTRAL
        return Direction.LONG if self.net > 0 else Direction.SHORT

    @property
    def confidence(self) -> float:
        return round(_clamp(BASE_CONFIDENCE + abs(self.net) / 2), CONFIDENCE_DECIMALS)


def score_votes(votes: Sequence[Vote], regime: MarketRegime) -> ConfluenceScore:
    by_category: Dict[IndicatorCategory, List[Vote]] = {}
    for vote in votes:
        by_category.setdefault(vote.category, []).append(vote)

    weights = effective_weights(regime, list(by_category))
    long_score = 0.0
    short_score = 0.0
    for category, members in by_category.items():
        n = len(members)
        long_score += weights[category] * sum(v.strength for v in members if v.direction is Direction.LONG) / n
        short_score += weights[category] * sum(v.strength for v in members if v.direction is Direction.SHORT) / n
    return ConfluenceScore(long_score=long_score, short_score=short_score)


class ConfluenceEngine:
    """Synthesizes indicator votes into a Signal with ATR-scaled stop and target."""

    def __init__(
        self,
        regime_detector: Optional[RegimeDetector] = None,
        min_candles: int = MIN_CANDLES,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.regime_detector = regime_detector or RegimeDetector()
        self.min_candles = min_candles
        self._clock = clock
        self.logger = get_signal_logger()

    def synthesize(
        self,
        indicators: IndicatorSet,
        regime: MarketRegime,
        timeframe: Timeframe | str,
        *,
        symbol: str,
        entry_price: float,
        now: Optional[datetime] = None,
    ) -> Signal:
        tf = Timeframe.parse(timeframe)
        votes = collect_votes(indicators)
        result = score_votes(votes, regime)
        direction = result.direction
        levels = compute_risk(direction, entry_price, indicators.atr, tf)

        reasoning = [f"{v.reason} -> {v.direction.value} ({v.strength:.0f})" for v in votes]
        reasoning.extend(f"{name} excluded: computation error" for name in indicators.failed)
        reasoning.append(f"regime {regime.value}")
        reasoning.append(f"score {result.score:.1f} long={result.long_score:.1f} short={result.short_score:.1f}")

        return Signal(
            symbol=symbol,
            timeframe=tf,
            direction=direction,
            confidence=result.confidence,
            entry_price=entry_price,
            stop_loss=round(levels.stop_loss, PRICE_DECIMALS),
            take_profit=round(levels.take_profit, PRICE_DECIMALS),
            indicators=indicators,
            reasoning=tuple(reasoning),
            generated_at=now or self._clock(),
            data_quality=DataQuality.FULL,
            regime=regime,
        )

    def synthesize_simplified(
        self,
        symbol: str,
        timeframe: Timeframe | str,
        candles: Sequence[Candle],
        entry_price: float,
        now: Optional[datetime] = None,
    ) -> Signal:
        """Reduced-feature signal for short histories: price against the EMA of what is available."""
        tf = Timeframe.parse(timeframe)
        closes = [c.close for c in candles]
        direction = Direction.NEUTRAL
        confidence = float(BASE_CONFIDENCE)
        atr_value: Optional[float] = None

        if closes:
            baseline = ema(closes, SIMPLIFIED_EMA_PERIOD)
            deviation = pct_change(entry_price, baseline)
            if abs(deviation) > SIMPLIFIED_FLAT_DEVIATION:
                direction = Direction.LONG if deviation > 0 else Direction.SHORT
                confidence = min(float(SIMPLIFIED_CONFIDENCE_CAP), BASE_CONFIDENCE + abs(deviation) * 1000)
            reason = f"price {entry_price:.8g} vs EMA {baseline:.8g} ({deviation:+.2%})"
        else:
            reason = "no candles available"

        if len(closes) >= 2:
            atr_value = atr(
                [c.high for c in candles], [c.low for c in candles], closes, max(1, min(14, len(closes) - 1))
            )
        levels = compute_risk(direction, entry_price, atr_value, tf)

        return Signal(
            symbol=symbol,
            timeframe=tf,
            direction=direction,
            confidence=round(confidence, CONFIDENCE_DECIMALS),
            entry_price=entry_price,
            stop_loss=round(levels.stop_loss, PRICE_DECIMALS),
            take_profit=round(levels.take_profit, PRICE_DECIMALS),
            indicators=None,
            reasoning=(reason, f"reduced features: {len(closes)} of {self.min_candles} candles"),
            generated_at=now or self._clock(),
            data_quality=DataQuality.INSUFFICIENT,
        )

    def generate(
        self,
        symbol: str,
        timeframe: Timeframe | str,
        candles: Sequence[Candle],
        entry_price: float,
        regime: Optional[MarketRegime] = None,
        now: Optional[datetime] = None,
    ) -> Signal:
        """Full signal when there is enough history, simplified signal otherwise."""
        tf = Timeframe.parse(timeframe)
        try:
            indicators = compute_indicator_set(candles, tf, symbol=symbol, min_candles=self.min_candles)
        except DataInsufficient as exc:
            self.logger.info(
                "simplified_signal symbol=%s tf=%s available=%d required=%d",
                symbol,
                tf.value,
                exc.available,
                exc.required,
            )
            signal = self.synthesize_simplified(symbol, tf, candles, entry_price, now)
        else:
            if regime is None:
                regime = self.regime_detector.classify(
                    [c.high for c in candles], [c.low for c in candles], [c.close for c in candles]
                ).regime
            if indicators.failed:
                self.logger.warning(
                    "indicator_failed symbol=%s tf=%s failed=%s", symbol, tf.value, ",".join(indicators.failed)
                )
            signal = self.synthesize(indicators, regime, tf, symbol=symbol, entry_price=entry_price, now=now)

        self.logger.info(
            "signal symbol=%s tf=%s direction=%s confidence=%.2f entry=%.8g sl=%.8g tp=%.8g quality=%s",
            symbol,
            tf.value,
            signal.direction.value,
            signal.confidence,
            signal.entry_price,
            signal.stop_loss,
            signal.take_profit,
            signal.data_quality.value,
        )
        return signal
