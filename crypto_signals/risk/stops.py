"""ATR-scaled stop-loss / take-profit levels."""

from __future__ import annotations

from dataclasses import dataclass
import math

from crypto_signals.config.constants import MIN_ATR_PCT
from crypto_signals.data.market_feed import Timeframe
from crypto_signals.strategy.signal import Direction

# (stop-loss ATR multiple, take-profit ATR multiple) per timeframe.
ATR_MULTIPLIERS: dict[Timeframe, tuple[float, float]] = {
    Timeframe.M1: (1.0, 2.0),
    Timeframe.M5: (1.2, 2.4),
    Timeframe.M15: (1.5, 3.0),
    Timeframe.M30: (1.75, 3.5),
    Timeframe.H1: (2.0, 4.0),
    Timeframe.H4: (2.5, 5.0),
    Timeframe.D1: (3.0, 6.0),
    Timeframe.D3: (3.5, 7.0),
    Timeframe.W1: (4.0, 8.0),
    Timeframe.MN1: (5.0, 10.0),
}

NEUTRAL_BAND_ATR = 0.5


@dataclass(frozen=True)
class RiskLevels:
    stop_loss: float
    take_profit: float
    stop_distance: float
    target_distance: float

    @property
    def risk_reward(self) -> float:
        if self.stop_distance <= 0:
            return 0.0
        return self.target_distance / self.stop_distance


def effective_atr(entry_price: float, atr: float | None) -> float:
    """ATR floored at MIN_ATR_PCT of price so levels never collapse onto the entry."""
    floor = abs(entry_price) * MIN_ATR_PCT
    if atr is None or math.isnan(atr):
        return floor
    return max(atr, floor)


def compute_risk(direction: Direction, entry_price: float, atr: float | None, timeframe: Timeframe | str) -> RiskLevels:
    """Stop/target for a signal. LONG stops below entry, SHORT mirrors, NEUTRAL gets a +/-0.5 ATR band."""
    if entry_price <= 0:
        raise ValueError(f"entry price must be > 0, got {entry_price}")
    tf = Timeframe.parse(timeframe)
    unit = effective_atr(entry_price, atr)

    if direction is Direction.NEUTRAL:
        band = unit * NEUTRAL_BAND_ATR
        return RiskLevels(
            stop_loss=entry_price - band, take_profit=entry_price + band, stop_distance=band, target_distance=band
        )

    sl_mult, tp_mult = ATR_MULTIPLIERS[tf]
    stop_distance = unit * sl_mult
    target_distance = unit * tp_mult
    if direction is Direction.LONG:
        stop_loss = entry_price - stop_distance
        take_profit = entry_price + target_distance
    else:
        stop_loss = entry_price + stop_distance
        take_profit = entry_price - target_distance
    # Deep stops on low-priced assets must stay above zero.
    stop_loss = max(stop_loss, entry_price * MIN_ATR_PCT)
    take_profit = max(take_profit, entry_price * MIN_ATR_PCT)
    return RiskLevels(
        stop_loss=stop_loss,
        take_profit=take_profit,
        stop_distance=abs(entry_price - stop_loss),
        target_distance=abs(take_profit - entry_price),
    )
