"""Market data feed and price cache logger."""

from __future__ import annotations

import logging

from crypto_signals.logging.signal_log import _channel_logger


def get_feed_logger(level: int | str | None = None) -> logging.Logger:
    """Return configured feed logger instance."""
    return _channel_logger("crypto_signals.feed", "FEED", level)
