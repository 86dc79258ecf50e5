#!/usr/bin/env python3
"""
Logging for mini-chroot.

All modules log through ``logging.getLogger(__name__)`` below the
``mini_chroot`` namespace. The command layer calls setup_logging() once with
the configured verbosity:

    0  -> WARNING (default)
    1  -> INFO    (lifecycle steps)
    2+ -> DEBUG   (every external command and its exit status)
"""

import logging
import sys
from datetime import datetime
from typing import Optional, TextIO

LOGGER_NAME = "mini_chroot"

LEVELS = {
    0: logging.WARNING,
    1: logging.INFO,
}


class TimestampFormatter(logging.Formatter):
    """Formatter using millisecond ISO-style timestamps."""

    def formatTime(self, record, datefmt=None):
        ts = datetime.fromtimestamp(record.created)
        return ts.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]


def level_for(verbosity: int) -> int:
    """Map a verbosity count to a logging level."""
    return LEVELS.get(verbosity, logging.DEBUG if verbosity > 1 else logging.WARNING)


def setup_logging(verbosity: int = 0, stream: Optional[TextIO] = None) -> logging.Logger:
    """
    Configure the mini_chroot logger.

    Calling it again replaces the previous handler, so tests and repeated
    CLI invocations in one interpreter do not duplicate output.

    Args:
        verbosity: Number of -v flags
        stream: Output stream (default: stderr)

    Returns:
        The package logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(TimestampFormatter("%(asctime)s %(levelname)s %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(level_for(verbosity))
    return logger
