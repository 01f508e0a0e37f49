"""Logging for the ``ledger_pipeline`` package.

Library modules log through ``get_logger("ledger_pipeline.<module>")`` and
never attach handlers. Entry points (the CLI, a worker host running the
expiry sweep) call :func:`configure_logging` once at startup; until then the
package logger holds a single ``NullHandler`` and stays silent.
"""

from __future__ import annotations

import logging
import sys
import threading
from typing import IO

from .config import env_log_level

PACKAGE_LOGGER = "ledger_pipeline"
DEFAULT_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"

_lock = threading.Lock()
_handler: logging.Handler | None = None


def resolve_level(level: int | str | None) -> int:
    """Turn an int, a level name or a numeric string into a level.

    ``None`` reads ``LEDGER_LOG_LEVEL``. Unknown names mean INFO.
    """

    if level is None:
        level = env_log_level()
        if level is None:
            return logging.INFO
    if isinstance(level, int):
        return level
    name = level.strip().upper()
    if name.isdigit():
        return int(name)
    return logging.getLevelNamesMapping().get(name, logging.INFO)


def configure_logging(
    level: int | str | None = None,
    *,
    fmt: str | None = None,
    stream: IO[str] = sys.stderr,
) -> logging.Handler:
    """Attach the package's one ``StreamHandler`` and return it.

    Later calls return the installed handler unchanged. Records stop at the
    package logger and do not reach the root logger.
    """

    global _handler
    with _lock:
        if _handler is not None:
            return _handler

        logger = logging.getLogger(PACKAGE_LOGGER)
        for null in [h for h in logger.handlers if isinstance(h, logging.NullHandler)]:
            logger.removeHandler(null)

        resolved = resolve_level(level)
        handler = logging.StreamHandler(stream)
        handler.setLevel(resolved)
        handler.setFormatter(logging.Formatter(fmt or DEFAULT_FORMAT))
        logger.setLevel(resolved)
        logger.addHandler(handler)
        logger.propagate = False
        _handler = handler
        return handler


def reset_logging() -> None:
    """Remove the handler installed by :func:`configure_logging`."""

    global _handler
    with _lock:
        logger = logging.getLogger(PACKAGE_LOGGER)
        if _handler is not None:
            logger.removeHandler(_handler)
            _handler = None
        logger.setLevel(logging.NOTSET)
        logger.propagate = True


def get_logger(name: str) -> logging.Logger:
    package = logging.getLogger(PACKAGE_LOGGER)
    if _handler is None and not package.handlers:
        package.addHandler(logging.NullHandler())
    return logging.getLogger(name)


__all__ = [
    "DEFAULT_FORMAT",
    "PACKAGE_LOGGER",
    "configure_logging",
    "get_logger",
    "reset_logging",
    "resolve_level",
]
