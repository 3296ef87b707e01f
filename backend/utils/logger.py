"""Process-wide logging setup for the match engine."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from backend.utils.config import get_settings


_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_QUIET_LOGGERS = ("httpx", "urllib3", "multipart")
_LOGGER_INITIALIZED = False


def configure_logging(level: Optional[str] = None, force: bool = False) -> None:
    """Install the stdout handler once; `force` re-applies a new level."""

    global _LOGGER_INITIALIZED
    if _LOGGER_INITIALIZED and not force:
        return

    resolved_level = (level or get_settings().log_level).upper()
    logging.basicConfig(
        level=resolved_level,
        format=_LOG_FORMAT,
        stream=sys.stdout,
        force=force,
    )
    for noisy in _QUIET_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
    _LOGGER_INITIALIZED = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)
