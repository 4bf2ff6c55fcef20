"""Signal models shared between the confluence engine, coordinator and scheduler."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from crypto_signals.data.indicators import IndicatorSet
from crypto_signals.data.market_feed import Timeframe
from crypto_signals.edge.regime_detector import MarketRegime


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    NEUTRAL = "NEUTRAL"

    @property
    def sign(self) -> int:
        return {Direction.LONG: 1, Direction.SHORT: -1, Direction.NEUTRAL: 0}[self]


# Per-minute decay applied once a signal is older than one timeframe length.
DECAY_RATES: dict[Timeframe, float] = {
    Timeframe.M1: 0.95,
    Timeframe.M5: 0.97,
    Timeframe.M15: 0.98,
    Timeframe.M30: 0.985,
    Timeframe.H1: 0.99,
    Timeframe.H4: 0.995,
    Timeframe.D1: 0.998,
    Timeframe.D3: 0.999,
    Timeframe.W1: 0.9995,
    Timeframe.MN1: 0.99995,
}


def decay_confidence(confidence: float, timeframe: Timeframe | str, elapsed_seconds: float) -> float:
    """Exponentially decay ``confidence`` for time spent past the freshness window."""
    tf = Timeframe.parse(timeframe)
    overdue_minutes = (elapsed_seconds - tf.seconds) / 60.0
    if overdue_minutes <= 0:
        return confidence
    return confidence * DECAY_RATES[tf] ** overdue_minutes


class DataQuality(str, Enum):
    FULL = "FULL"
    INSUFFICIENT = "DataInsufficient"


@dataclass(frozen=True)
class Signal:
    """Directional call for one (symbol, timeframe); superseded, never mutated."""

    symbol: str
    timeframe: Timeframe
    direction: Direction
    confidence: float
    entry_price: float
    stop_loss: float
    take_profit: float
    indicators: Optional[IndicatorSet]
    reasoning: tuple[str, ...]
    generated_at: datetime
    data_quality: DataQuality = DataQuality.FULL
    regime: MarketRegime = MarketRegime.NORMAL

    @property
    def key(self) -> tuple[str, Timeframe]:
        return self.symbol, self.timeframe

    @property
    def atr(self) -> Optional[float]:
        if self.indicators is None:
            return None
        return self.indicators.atr

    def decayed_confidence(self, now: datetime) -> float:
        """Confidence after time decay for the time elapsed since generation."""
        elapsed = (now - self.generated_at).total_seconds()
        return decay_confidence(self.confidence, self.timeframe, elapsed)

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "timeframe": self.timeframe.value,
            "direction": self.direction.value,
            "confidence": self.confidence,
            "entry_price": self.entry_price,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "reasoning": list(self.reasoning),
            "generated_at": self.generated_at.isoformat(),
            "data_quality": self.data_quality.value,
            "regime": self.regime.value,
        }
