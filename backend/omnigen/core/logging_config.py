"""Process-wide logging setup."""

from __future__ import annotations

import logging

from omnigen.schemas.config import LoggingConfig

_CONFIGURED = False


def setup_logging(config: LoggingConfig) -> logging.Logger:
    global _CONFIGURED
    logger = logging.getLogger("omnigen")
    logger.setLevel(getattr(logging, config.level.upper(), logging.INFO))
    if not _CONFIGURED:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(config.format))
        logger.addHandler(handler)
        logger.propagate = False
        _CONFIGURED = True
    return logger
