"""The single-callable log channel used for all build diagnostics.

A sink receives `(level, message)`. Components never raise for soft failures;
they report through the sink and return `None` or an empty result instead.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import IntEnum
from typing import TypeAlias


class LogLevel(IntEnum):
    NONE = 0
    DETAILED = 1
    VERBOSE = 2
    WARNING = 3
    ERROR = 4

    @property
    def label(self) -> str:
        return self.name.capitalize()


LogSink: TypeAlias = Callable[[LogLevel, str], None]


_STDLIB_LEVELS: dict[LogLevel, int] = {
    LogLevel.NONE: logging.NOTSET,
    LogLevel.DETAILED: logging.DEBUG,
    LogLevel.VERBOSE: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


def emit(sink: LogSink | None, level: LogLevel, message: str) -> None:
    if sink is not None:
        sink(level, message)


def parse_level(text: str) -> LogLevel:
    try:
        return LogLevel[text.strip().upper()]
    except KeyError:
        raise ValueError(f"unknown log level: {text!r}") from None


def filtered(sink: LogSink, minimum: LogLevel) -> LogSink:
    """Forward only messages at or above `minimum`."""

    def _sink(level: LogLevel, message: str) -> None:
        if level >= minimum:
            sink(level, message)

    return _sink


def logging_sink(logger: logging.Logger) -> LogSink:
    """Bridge sink messages into the stdlib logging tree."""

    def _sink(level: LogLevel, message: str) -> None:
        logger.log(_STDLIB_LEVELS[level] or logging.DEBUG, message)

    return _sink


class ErrorCounter:
    """Sink wrapper that counts Error messages while forwarding everything."""

    def __init__(self, inner: LogSink | None = None) -> None:
        self._inner: LogSink | None = inner
        self.errors: int = 0

    def __call__(self, level: LogLevel, message: str) -> None:
        if level == LogLevel.ERROR:
            self.errors += 1
        if self._inner is not None:
            self._inner(level, message)
