"""Metrics summary helpers."""

from __future__ import annotations

from collections import Counter
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from crypto_signals.engine import CycleReport


def summarize_cycle(report: "CycleReport") -> dict[str, float | int | str]:
    """Build a flat metrics snapshot for one calculation cycle."""
    signals = [s for per_symbol in report.signals.values() for s in per_symbol.values()]
    directions = Counter(s.direction.value for s in signals)
    quality = Counter(s.data_quality.value for s in signals)
    duration = report.duration_seconds

    base: dict[str, float | int | str] = {
        "source": report.source,
        "symbols": len(report.symbols),
        "symbols_ok": len(report.signals),
        "symbols_failed": len(report.failures),
        "signals": len(signals),
        "timeframe_errors": report.timeframe_errors,
        "duration_seconds": round(duration, 3),
        "signals_per_second": round(len(signals) / duration, 2) if duration > 0 else float(len(signals)),
        "avg_confidence": round(sum(s.confidence for s in signals) / len(signals), 2) if signals else 0.0,
        "simplified": quality.get("DataInsufficient", 0),
    }
    base.update({f"direction_{k.lower()}": directions.get(k, 0) for k in ("LONG", "SHORT", "NEUTRAL")})
    return base
