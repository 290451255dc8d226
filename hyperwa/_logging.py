# =============================================================================
# HyperWa -- Shared Logger
# =============================================================================

from __future__ import annotations

import logging

logger = logging.getLogger("hyperwa")

_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: str | int = logging.INFO) -> None:
    """Install a single stream handler on the ``hyperwa`` logger."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(level)
