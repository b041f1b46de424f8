"""
Logging setup for contextkeeper, built on loguru.

Modules call ``get_logger(__name__)`` at import time; the CLI calls
``setup_logging`` once per invocation to pick the level and optional file sink.
"""

import os
import sys
from typing import Optional

from loguru import logger as _logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan> - <level>{message}</level>"
)

_logger.configure(extra={"name": "contextkeeper"})


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """
    Configure loguru sinks.

    Args:
        level: Minimum level (falls back to LOG_LEVEL, then INFO)
        log_file: Optional path for a rotating file sink (falls back to LOG_FILE)
    """
    level = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    log_file = log_file or os.getenv("LOG_FILE")

    _logger.remove()
    _logger.add(sys.stderr, level=level, format=LOG_FORMAT, colorize=None)

    if log_file:
        _logger.add(
            log_file,
            level=level,
            format=LOG_FORMAT,
            rotation="10 MB",
            retention=5,
            encoding="utf-8",
        )


def get_logger(name: str):
    """Return a loguru logger bound to a module name."""
    return _logger.bind(name=name)
