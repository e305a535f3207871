"""Runtime logging helpers."""

from __future__ import annotations

import os
import sys
from logging import Handler
from typing import Literal

from loguru import logger
from rich import get_console
from rich.logging import RichHandler

LogProfile = Literal["default", "chat"]

_DEFAULT_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<7} | {name}:{function}:{line} | {message}"
_CONFIGURED_PROFILE: LogProfile | None = None


def _build_chat_handler() -> Handler:
    return RichHandler(
        console=get_console(),
        show_level=True,
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=False,
    )


def configure_logging(*, profile: LogProfile = "default", level: str | None = None) -> None:
    """Configure process-level logging once per profile."""

    global _CONFIGURED_PROFILE
    if profile == _CONFIGURED_PROFILE and level is None:
        return

    resolved = (level or os.getenv("TANDEM_LOG_LEVEL", "INFO")).upper()
    logger.remove()
    if profile == "chat":
        # interactive sessions share the console with rendered output
        logger.add(_build_chat_handler(), level=resolved, format="{message}", backtrace=False, diagnose=False)
    else:
        logger.add(sys.stderr, level=resolved, format=_DEFAULT_FORMAT, backtrace=False, diagnose=False)
    _CONFIGURED_PROFILE = profile
