"""Monte-Carlo risk simulation over geometric Brownian motion price paths.

Drift and volatility are measured from the candle history (log returns, or
ATR/price when the history is too short). Signal confidence never feeds the
simulation. Randomness here is sampling only; it never stands in for missing
market data.
"""

from __future__ import annotations

from dataclasses import dataclass
import math
import random
from statistics import mean, pstdev
from typing import List, Optional, Sequence

from crypto_signals.config.constants import DEFAULT_MC_HORIZON, DEFAULT_MC_ITERATIONS
from crypto_signals.data.indicators import log_returns
from crypto_signals.strategy.signal import Direction, Signal

MIN_RETURNS_FOR_MEASURED_VOL = 20


@dataclass(frozen=True)
class MonteCarloResult:
    """Aggregated path statistics; returns and drawdowns are in percent."""

    iterations: int
    expected_return: float
    var95: float
    sharpe_ratio: float
    max_drawdown: float
    win_probability: float
    confidence_interval: tuple[float, float]
    risk_score: float
    risk_level: str
    volatility: float
    drift: float


@dataclass(frozen=True)
class PathOutcome:
    final_return: float
    max_drawdown: float


def estimate_dynamics(closes: Sequence[float], atr: Optional[float], entry_price: float) -> tuple[float, float]:
    """Per-bar (drift, volatility) from measured log returns, else ATR/price."""
    rets = log_returns(closes)
    if len(rets) >= MIN_RETURNS_FOR_MEASURED_VOL:
        return mean(rets), pstdev(rets)
    if atr and entry_price > 0:
        return 0.0, atr / entry_price
    return 0.0, 0.0


class MonteCarloRiskEngine:
    """Runs ``iterations`` simulated paths per signal and reports VaR/Sharpe/drawdown."""

    def __init__(
        self,
        iterations: int = DEFAULT_MC_ITERATIONS,
        horizon: int = DEFAULT_MC_HORIZON,
        seed: Optional[int] = None,
    ) -> None:
        if iterations <= 0 or horizon <= 0:
            raise ValueError("iterations and horizon must be > 0")
        self.iterations = iterations
        self.horizon = horizon
        self.seed = seed

    def simulate(self, signal: Signal, closes: Sequence[float] = (), atr: Optional[float] = None) -> MonteCarloResult:
        drift, volatility = estimate_dynamics(closes, atr if atr is not None else signal.atr, signal.entry_price)
        rng = random.Random(self.seed)
        outcomes = [self._simulate_path(signal, drift, volatility, rng) for _ in range(self.iterations)]
        return self._aggregate(outcomes, drift, volatility)

    def _simulate_path(self, signal: Signal, drift: float, volatility: float, rng: random.Random) -> PathOutcome:
        entry = signal.entry_price
        side = -1.0 if signal.direction is Direction.SHORT else 1.0
        directional = signal.direction is not Direction.NEUTRAL
        price = entry
        peak_equity = 1.0
        max_dd = 0.0
        ret = 0.0

        for _ in range(self.horizon):
            shock = rng.gauss(0.0, 1.0)
            price *= math.exp((drift - 0.5 * volatility * volatility) + volatility * shock)
            ret = side * (price - entry) / entry

            if directional:
                exit_price = self._exit_price(signal, price)
                if exit_price is not None:
                    ret = side * (exit_price - entry) / entry
                    max_dd = max(max_dd, _drawdown(peak_equity, 1.0 + ret))
                    break

            equity = 1.0 + ret
            peak_equity = max(peak_equity, equity)
            max_dd = max(max_dd, _drawdown(peak_equity, equity))

        return PathOutcome(final_return=ret * 100.0, max_drawdown=max_dd * 100.0)

    @staticmethod
    def _exit_price(signal: Signal, price: float) -> Optional[float]:
        if signal.direction is Direction.LONG:
            if price <= signal.stop_loss:
                return signal.stop_loss
            if price >= signal.take_profit:
                return signal.take_profit
        elif signal.direction is Direction.SHORT:
            if price >= signal.stop_loss:
                return signal.stop_loss
            if price <= signal.take_profit:
                return signal.take_profit
        return None

    def _aggregate(self, outcomes: List[PathOutcome], drift: float, volatility: float) -> MonteCarloResult:
        returns = sorted(o.final_return for o in outcomes)
        n = len(returns)
        expected = mean(returns)
        std = pstdev(returns)

        var95 = max(0.0, -returns[int(n * 0.05)])
        sharpe = expected / std if std > 0 else 0.0
        max_drawdown = max(o.max_drawdown for o in outcomes)
        win_probability = sum(1 for r in returns if r > 0) / n * 100.0
        margin = 1.96 * std / math.sqrt(n)
        risk_score = _risk_score(expected, var95, max_drawdown, win_probability, sharpe)

        return MonteCarloResult(
            iterations=n,
            expected_return=round(expected, 4),
            var95=round(var95, 4),
            sharpe_ratio=round(sharpe, 4),
            max_drawdown=round(max_drawdown, 4),
            win_probability=round(win_probability, 2),
            confidence_interval=(round(expected - margin, 4), round(expected + margin, 4)),
            risk_score=round(risk_score, 2),
            risk_level=_risk_level(risk_score),
            volatility=volatility,
            drift=drift,
        )


def _drawdown(peak: float, equity: float) -> float:
    if peak <= 0:
        return 0.0
    return max(0.0, (peak - equity) / peak)


def _risk_score(expected: float, var95: float, max_drawdown: float, win_probability: float, sharpe: float) -> float:
    """0-100 composite where higher is safer."""
    score = 50.0
    score += min(25.0, max(-25.0, expected * 5.0))
    score += min(15.0, max(-15.0, (2.0 - var95) * 7.5))
    score -= min(20.0, max_drawdown * 2.0)
    score += min(15.0, max(-15.0, (win_probability - 50.0) * 0.3))
    score += min(15.0, max(-15.0, sharpe * 10.0))
    return max(0.0, min(100.0, score))


def _risk_level(score: float) -> str:
    if score >= 80:
        return "VERY_LOW"
    if score >= 60:
        return "LOW"
    if score >= 40:
        return "MODERATE"
    if score >= 20:
        return "HIGH"
    return "VERY_HIGH"
