"""Logging setup for the service process."""
from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a stream handler on the ``apps.hub.pulse`` logger tree."""
    logger = logging.getLogger("apps.hub.pulse")
    logger.setLevel(level)
    if not any(getattr(h, "_pulse", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._pulse = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
