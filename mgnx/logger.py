"""Structured JSON logging with a per-context current logger."""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Iterator

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

_LEVEL_NAMES = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
}

_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None))
) | {"message", "asctime"}


def _make_discard_logger() -> logging.Logger:
    log = logging.Logger("mgnx.discard")
    log.addHandler(logging.NullHandler())
    log.propagate = False
    log.disabled = True
    return log


_DISCARD = _make_discard_logger()

_current: contextvars.ContextVar[logging.Logger | None] = contextvars.ContextVar(
    "mgnx_logger", default=None
)


def level_from_string(level: str | None) -> int:
    """Map a level name (case-insensitive) to a logging level; unknown names give INFO."""
    return _LEVELS.get((level or "").lower(), logging.INFO)


@contextlib.contextmanager
def use_logger(logger: logging.Logger) -> Iterator[logging.Logger]:
    """Make ``logger`` the current logger for the duration of the block."""
    token = _current.set(logger)
    try:
        yield logger
    finally:
        _current.reset(token)


def current_logger() -> logging.Logger:
    """Return the current logger, or one that discards everything."""
    log = _current.get()
    return log if log is not None else _DISCARD


class _JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": datetime.fromtimestamp(record.created, timezone.utc)
            .astimezone()
            .isoformat(),
            "level": _LEVEL_NAMES.get(record.levelno, record.levelname),
            "msg": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                entry[key] = value
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def new_logger(level: str | None = None) -> logging.Logger:
    """Create a logger writing one JSON object per line to standard output."""
    log = logging.Logger("mgnx")
    log.setLevel(level_from_string(level))
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JSONFormatter())
    log.addHandler(handler)
    log.propagate = False
    return log