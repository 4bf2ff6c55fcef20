"""Position sizing from account balance, risk budget and stop distance."""

from __future__ import annotations

from math import floor

from crypto_signals.config.constants import QTY_DECIMALS


def position_size(balance: float, risk_pct: float, stop_distance: float) -> float:
    """Units such that hitting the stop loses ``balance * risk_pct``; 0 means skip."""
    if balance <= 0 or risk_pct <= 0 or stop_distance <= 0:
        return 0.0
    return balance * risk_pct / stop_distance


class PositionSizer:
    """Computes base-asset size for a fixed fraction of the balance at risk."""

    def __init__(self, risk_per_trade_pct: float, max_notional_pct: float = 1.0) -> None:
        self.risk_per_trade_pct = risk_per_trade_pct
        self.max_notional_pct = max_notional_pct

    def size(self, balance: float, entry_price: float, stop_distance: float) -> float:
        """Return size in base units, capped so notional never exceeds the allowed share of balance."""
        qty = position_size(balance, self.risk_per_trade_pct, stop_distance)
        if qty <= 0 or entry_price <= 0:
            return 0.0

        max_qty = balance * self.max_notional_pct / entry_price
        qty = min(qty, max_qty)
        # Basic deterministic quantization.
        scale = 10**QTY_DECIMALS
        return floor(qty * scale) / scale
