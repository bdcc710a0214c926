"""
podplacement/shared/log_config.py
──────────────────────────────────
Maps the singleton's logVerbosity to stdlib logging levels.

Every module logs through `logging.getLogger(__name__)`; this file only
decides how loud the two engine packages are and installs one handler.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, TextIO

from podplacement.shared.models import LogVerbosity

TRACE = 5
TRACE_ALL = 1

logging.addLevelName(TRACE, "TRACE")
logging.addLevelName(TRACE_ALL, "TRACEALL")

ENGINE_LOGGERS = ("podplacement", "image_inspect")

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

_LEVELS = {
    LogVerbosity.NORMAL: logging.INFO,
    LogVerbosity.DEBUG: logging.DEBUG,
    LogVerbosity.TRACE: TRACE,
    LogVerbosity.TRACE_ALL: TRACE_ALL,
}


def level_for(verbosity: LogVerbosity) -> int:
    return _LEVELS.get(verbosity, logging.INFO)


def configure_logging(
    verbosity: LogVerbosity = LogVerbosity.NORMAL,
    stream: Optional[TextIO] = None,
) -> int:
    """
    Set the engine loggers to the level for `verbosity`.

    A stream handler is attached to each engine logger once; later calls
    only change the level, so this is safe to call on every config change.

    Returns:
        The numeric level applied.
    """
    level = level_for(verbosity)
    for name in ENGINE_LOGGERS:
        logger = logging.getLogger(name)
        logger.setLevel(level)
        if not any(getattr(h, "_podplacement", False) for h in logger.handlers):
            handler = logging.StreamHandler(stream or sys.stderr)
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            handler._podplacement = True  # type: ignore[attr-defined]
            logger.addHandler(handler)
    return level
