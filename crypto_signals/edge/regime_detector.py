"""Market regime detection used to reweight indicator categories."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from crypto_signals.data.indicators import range_bound_ratio, realized_volatility, trend_strength


class MarketRegime(str, Enum):
    TRENDING = "TRENDING"
    RANGING = "RANGING"
    VOLATILE = "VOLATILE"
    NORMAL = "NORMAL"


@dataclass(frozen=True)
class RegimeState:
    """Market regime classification snapshot."""

    regime: MarketRegime
    volatility: float
    trend_strength: float
    range_ratio: float

    @property
    def is_range_bound(self) -> bool:
        return self.regime is MarketRegime.RANGING


class RegimeDetector:
    """Classifies market conditions from measured volatility, trend and range."""

    def __init__(
        self,
        volatility_window: int = 30,
        volatility_threshold: float = 0.02,
        trend_window: int = 50,
        trend_strength_threshold: float = 0.05,
        range_ratio_threshold: float = 0.3,
    ) -> None:
        self.volatility_window = volatility_window
        self.volatility_threshold = volatility_threshold
        self.trend_window = trend_window
        self.trend_strength_threshold = trend_strength_threshold
        self.range_ratio_threshold = range_ratio_threshold

    def classify(self, highs: Sequence[float], lows: Sequence[float], closes: Sequence[float]) -> RegimeState:
        """Return the regime for the given series; too little history reads as NORMAL."""
        window = min(self.trend_window, len(closes))
        vol = realized_volatility(closes, min(self.volatility_window, max(len(closes) - 1, 0)))
        tr = trend_strength(closes, window) if window else 0.0
        rr = range_bound_ratio(highs[-window:], lows[-window:], closes[-window:]) if window else 1.0

        if len(closes) < 2:
            regime = MarketRegime.NORMAL
        elif vol >= self.volatility_threshold:
            regime = MarketRegime.VOLATILE
        elif tr >= self.trend_strength_threshold and rr > self.range_ratio_threshold:
            regime = MarketRegime.TRENDING
        # Lower net-move-to-range ratio implies more sideways behavior.
        elif rr <= self.range_ratio_threshold:
            regime = MarketRegime.RANGING
        else:
            regime = MarketRegime.NORMAL
        return RegimeState(regime=regime, volatility=vol, trend_strength=tr, range_ratio=rr)
