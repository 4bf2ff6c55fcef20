"""Signal event logger."""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s | %(channel)s | %(levelname)s | %(message)s"


def _channel_logger(name: str, channel: str, level: int | str | None = None) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT.replace("%(channel)s", channel)))
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
    if level is not None:
        logger.setLevel(level)
    return logger


def get_signal_logger(level: int | str | None = None) -> logging.Logger:
    """Return configured signal logger instance."""
    return _channel_logger("crypto_signals.signal", "SIGNAL", level)
