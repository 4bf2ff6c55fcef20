"""Calculation cycle logger."""

from __future__ import annotations

import logging

from crypto_signals.logging.signal_log import _channel_logger


def get_cycle_logger(level: int | str | None = None) -> logging.Logger:
    """Return configured scheduler/cycle logger instance."""
    return _channel_logger("crypto_signals.cycle", "CYCLE", level)
