from __future__ import annotations

import logging
import os
import sys
from typing import TextIO

_root_logger = logging.getLogger("skillpin")

DEFAULT_FORMAT = "%(levelname)s %(name)s: %(message)s"


def debug_enabled() -> bool:
    value = os.getenv("SKILLPIN_DEBUG", "").strip().lower()
    return value not in ("", "0", "false", "no", "off")


def setup_logging(level: str | int = "WARNING", *, stream: TextIO | None = None, fmt: str | None = None) -> None:
    """
    Configure the package logger with a single stream handler.

    Repeated calls replace the previous handler instead of stacking them.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.WARNING)

    _root_logger.setLevel(level)
    _root_logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(fmt or DEFAULT_FORMAT))
    handler.setLevel(level)
    _root_logger.addHandler(handler)
    _root_logger.propagate = False
