"""On-demand risk assessment for a signal: sizing plus Monte-Carlo statistics."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import time
from typing import Callable, Dict, Optional, Sequence, Tuple

from crypto_signals.config.constants import DEFAULT_RISK_CACHE_TTL_SECONDS
from crypto_signals.data.market_feed import Candle, Timeframe
from crypto_signals.risk.monte_carlo import MonteCarloRiskEngine
from crypto_signals.risk.position_sizer import PositionSizer
from crypto_signals.strategy.signal import Signal


@dataclass(frozen=True)
class RiskAssessment:
    symbol: str
    timeframe: Timeframe
    position_size: float
    value_at_risk_95: float
    sharpe_ratio: float
    max_drawdown: float
    expected_return: float
    win_probability: float
    risk_score: float
    risk_level: str
    computed_at: datetime

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "timeframe": self.timeframe.value,
            "position_size": self.position_size,
            "value_at_risk_95": self.value_at_risk_95,
            "sharpe_ratio": self.sharpe_ratio,
            "max_drawdown": self.max_drawdown,
            "expected_return": self.expected_return,
            "win_probability": self.win_probability,
            "risk_score": self.risk_score,
            "risk_level": self.risk_level,
            "computed_at": self.computed_at.isoformat(),
        }


CacheKey = Tuple[str, Timeframe, datetime, float]


class RiskAssessor:
    """Combines position sizing with the Monte-Carlo engine; results are cached per signal."""

    def __init__(
        self,
        engine: MonteCarloRiskEngine,
        sizer: PositionSizer,
        ttl: float = DEFAULT_RISK_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self.sizer = sizer
        self.ttl = ttl
        self._clock = clock
        self._cache: Dict[CacheKey, Tuple[float, RiskAssessment]] = {}

    def assess(self, signal: Signal, candles: Sequence[Candle], balance: float) -> RiskAssessment:
        key = (signal.symbol, signal.timeframe, signal.generated_at, balance)
        now = self._clock()
        cached = self._cache.get(key)
        if cached is not None and now - cached[0] < self.ttl:
            return cached[1]

        stop_distance = abs(signal.entry_price - signal.stop_loss)
        result = self.engine.simulate(signal, [c.close for c in candles], signal.atr)
        assessment = RiskAssessment(
            symbol=signal.symbol,
            timeframe=signal.timeframe,
            position_size=self.sizer.size(balance, signal.entry_price, stop_distance),
            value_at_risk_95=result.var95,
            sharpe_ratio=result.sharpe_ratio,
            max_drawdown=result.max_drawdown,
            expected_return=result.expected_return,
            win_probability=result.win_probability,
            risk_score=result.risk_score,
            risk_level=result.risk_level,
            computed_at=datetime.now(timezone.utc),
        )
        self._evict(now)
        self._cache[key] = (now, assessment)
        return assessment

    def cached(self, symbol: str, timeframe: Timeframe) -> Optional[RiskAssessment]:
        """Most recent unexpired assessment for (symbol, timeframe), if any."""
        now = self._clock()
        best: Optional[Tuple[float, RiskAssessment]] = None
        for (sym, tf, _, _), entry in self._cache.items():
            if sym == symbol and tf == timeframe and now - entry[0] < self.ttl:
                if best is None or entry[0] >= best[0]:
                    best = entry
        return best[1] if best is not None else None

    def _evict(self, now: float) -> None:
        expired = [k for k, (at, _) in self._cache.items() if now - at >= self.ttl]
        for k in expired:
            del self._cache[k]
