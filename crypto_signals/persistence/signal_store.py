"""Storage seam for emitted signals and risk assessments."""

from __future__ import annotations

from typing import Dict, List, Protocol, Tuple

from crypto_signals.data.market_feed import Timeframe
from crypto_signals.risk.assessment import RiskAssessment
from crypto_signals.strategy.signal import Signal


class SignalStore(Protocol):
    """Write-only sink; callers log failures and never retry."""

    async def save_signal(self, signal: Signal) -> None:
        ...

    async def save_risk_assessment(self, assessment: RiskAssessment) -> None:
        ...


class InMemorySignalStore:
    """Keeps the full history plus the latest entry per (symbol, timeframe)."""

    def __init__(self, max_history: int = 10_000) -> None:
        self.max_history = max_history
        self.signals: List[Signal] = []
        self.assessments: List[RiskAssessment] = []
        self.latest: Dict[Tuple[str, Timeframe], Signal] = {}

    async def save_signal(self, signal: Signal) -> None:
        self.signals.append(signal)
        self.latest[signal.key] = signal
        if len(self.signals) > self.max_history:
            del self.signals[: len(self.signals) - self.max_history]

    async def save_risk_assessment(self, assessment: RiskAssessment) -> None:
        self.assessments.append(assessment)
        if len(self.assessments) > self.max_history:
            del self.assessments[: len(self.assessments) - self.max_history]
