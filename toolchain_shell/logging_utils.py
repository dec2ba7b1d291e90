"""Runtime logging helpers."""

from __future__ import annotations

import os
import sys
from typing import Optional

from loguru import logger

_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<6} | {name}:{function}:{line} | {message}"
_CONFIGURED_LEVEL: Optional[str] = None


def configure_logging(level: Optional[str] = None) -> None:
    """Configure process-level logging once."""
    global _CONFIGURED_LEVEL
    level = (level or os.getenv("TOOLCHAIN_SHELL_LOG_LEVEL", "INFO")).upper()
    if level == _CONFIGURED_LEVEL:
        return

    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format=_FORMAT,
        backtrace=False,
        diagnose=False,
    )
    _CONFIGURED_LEVEL = level
