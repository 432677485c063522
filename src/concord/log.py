"""Logging for Concord, built on the stdlib ``logging`` module.

Every engine component logs through a ``concord.*`` logger obtained from
:func:`get_logger`.  Handlers are only installed on the ``concord`` root
logger, either explicitly via :func:`configure_logging` or implicitly when
``CONCORD_DEBUG`` / ``CONCORD_LOG_LEVEL`` are present in the environment.

:class:`LogContext` binds identifiers (task, chain, session, agent) to all
records emitted inside a scope, so a single scheduling tick can be followed
through the registry, the session and the recovery manager.

Usage::

    from concord.log import LogContext, configure_logging, get_logger

    _log = get_logger(__name__)
    configure_logging(level="INFO", fmt="json")
    with LogContext(task_id="t-1"):
        _log.info("scheduled")
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

_PREFIX = "concord"

_log_context: ContextVar[dict[str, Any] | None] = ContextVar("_concord_log_context", default=None)

_LEVEL_STYLE: dict[int, tuple[str, str]] = {
    logging.DEBUG: ("D", "\033[2m"),
    logging.INFO: ("I", "\033[32m"),
    logging.WARNING: ("W", "\033[33m"),
    logging.ERROR: ("E", "\033[31m"),
    logging.CRITICAL: ("C", "\033[1;31m"),
}
_RESET = "\033[0m"


def _short_name(name: str) -> str:
    if name.startswith(f"{_PREFIX}."):
        return name[len(_PREFIX) + 1 :]
    return name


def current_context() -> dict[str, Any]:
    """Return a copy of the key-value pairs bound by enclosing ``LogContext`` scopes."""
    ctx = _log_context.get()
    return dict(ctx) if ctx else {}


class TextFormatter(logging.Formatter):
    """One line per record: time, level letter, short logger name, context, message."""

    def __init__(self, *, color: bool = True) -> None:
        super().__init__()
        self._color = color

    def format(self, record: logging.LogRecord) -> str:
        letter, style = _LEVEL_STYLE.get(record.levelno, ("?", ""))
        if not self._color:
            style = ""
        reset = _RESET if style else ""
        ctx = current_context()
        bound = "".join(f" {k}={v}" for k, v in ctx.items())
        line = (
            f"{self.formatTime(record, '%H:%M:%S')} "
            f"{style}{letter} {_short_name(record.name)}{reset}{bound} | {record.getMessage()}"
        )
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            line = f"{line}\n{record.exc_text}"
        return line


class JsonFormatter(logging.Formatter):
    """Structured JSON records; bound context goes under ``"context"``."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        ctx = current_context()
        if ctx:
            entry["context"] = ctx
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the ``concord.`` namespace.

    Module names such as ``concord.engine`` pass through unchanged; bare
    names are prefixed.
    """
    if name != _PREFIX and not name.startswith(f"{_PREFIX}."):
        name = f"{_PREFIX}.{name}"
    return logging.getLogger(name)


_lock = threading.Lock()
_configured = False


def _coerce_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    return getattr(logging, level.upper(), logging.WARNING)


def configure_logging(
    level: str | int = "WARNING",
    fmt: str = "text",
    *,
    force: bool = False,
) -> None:
    """Install a single stderr handler on the ``concord`` root logger.

    A second call is a no-op unless *force* is set, in which case the
    existing handler is replaced.

    Args:
        level: Level name or number.
        fmt: ``"text"`` or ``"json"``.
        force: Replace a previously installed handler.
    """
    global _configured

    with _lock:
        if _configured and not force:
            return
        root = logging.getLogger(_PREFIX)
        root.handlers.clear()
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(JsonFormatter() if fmt == "json" else TextFormatter())
        root.addHandler(handler)
        root.setLevel(_coerce_level(level))
        _configured = True


def reset_logging() -> None:
    """Drop handlers and return to the unconfigured state (tests only)."""
    global _configured
    with _lock:
        root = logging.getLogger(_PREFIX)
        root.handlers.clear()
        root.setLevel(logging.WARNING)
        _configured = False


_ENV_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def _configure_from_env() -> None:
    """Honour ``CONCORD_DEBUG=1`` and ``CONCORD_LOG_LEVEL`` at import time.

    ``CONCORD_DEBUG=1`` wins over ``CONCORD_LOG_LEVEL``; unknown level
    names fall back to WARNING.  A handler is attached only when one of the
    variables is set.
    """
    debug = os.environ.get("CONCORD_DEBUG", "") == "1"
    requested = os.environ.get("CONCORD_LOG_LEVEL")
    if not debug and requested is None:
        return
    name = "DEBUG" if debug else (requested or "WARNING").upper()
    if name not in _ENV_LEVELS:
        name = "WARNING"
    configure_logging(level=name, fmt=os.environ.get("CONCORD_LOG_FORMAT", "text"))


_configure_from_env()


class LogContext:
    """Bind key-value pairs to every record logged inside the ``with`` block.

    Scopes nest; inner bindings override outer ones and are removed on exit.
    Backed by ``contextvars`` so concurrent agent calls keep separate
    contexts.
    """

    def __init__(self, **bindings: Any) -> None:
        self._bindings = bindings
        self._token: Any = None

    def __enter__(self) -> LogContext:
        merged = current_context()
        merged.update(self._bindings)
        self._token = _log_context.set(merged)
        return self

    def __exit__(self, *_: object) -> None:
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None
