"""
Logging setup.

Configures the loguru logger for the API process: a stderr sink at the
configured level and, when LOG_FILE is set, a rotating file sink.
"""

import sys

from loguru import logger

from .config import LOG_FILE, LOG_LEVEL


def setup_logging(level: str = LOG_LEVEL, log_file: str = LOG_FILE) -> None:
    """Configure logger sinks. Safe to call more than once."""
    logger.remove()
    logger.add(sys.stderr, level=level)

    if log_file:
        logger.add(
            log_file,
            rotation="1 day",
            retention="7 days",
            level=level,
            encoding="utf-8",
        )
