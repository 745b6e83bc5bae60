"""
Numeric log levels used by tts-stream.

    1 = MINIMAL  - startup, shutdown, failures
    2 = NORMAL   - job lifecycle and cache decisions (default)
    3 = VERBOSE  - per-chunk timing and queue activity
    4 = DEBUG    - store internals, retry scheduling

Each numeric level maps onto a stdlib logging level so handlers can filter
on it; DEBUG sits below logging.DEBUG as a custom TRACE level.
"""
from __future__ import annotations

import logging
from enum import IntEnum
from typing import Any


class LogLevel(IntEnum):
    MINIMAL = 1
    NORMAL = 2
    VERBOSE = 3
    DEBUG = 4


LEVEL_MAP = {
    LogLevel.MINIMAL: logging.WARNING,
    LogLevel.NORMAL: logging.INFO,
    LogLevel.VERBOSE: logging.DEBUG,
    LogLevel.DEBUG: logging.DEBUG - 5,
}

LEVEL_NAMES = {
    1: "MINIMAL",
    2: "NORMAL",
    3: "VERBOSE",
    4: "DEBUG",
}

_NAME_TO_LEVEL = {
    "MINIMAL": LogLevel.MINIMAL,
    "NORMAL": LogLevel.NORMAL,
    "VERBOSE": LogLevel.VERBOSE,
    "DEBUG": LogLevel.DEBUG,
    "TRACE": LogLevel.DEBUG,
    "CRITICAL": LogLevel.MINIMAL,
    "ERROR": LogLevel.MINIMAL,
    "WARNING": LogLevel.MINIMAL,
    "WARN": LogLevel.MINIMAL,
    "INFO": LogLevel.NORMAL,
}


def coerce_level(value: Any) -> LogLevel:
    """
    Convert an int, a numeric string or a level name into a LogLevel.

    Python logging constants (logging.INFO etc.) are accepted too.
    Anything unrecognised falls back to NORMAL.

    Examples:
        >>> coerce_level("3")
        <LogLevel.VERBOSE: 3>
        >>> coerce_level(logging.WARNING)
        <LogLevel.MINIMAL: 1>
    """
    if isinstance(value, LogLevel):
        return value

    if isinstance(value, int):
        if 1 <= value <= 4:
            return LogLevel(value)
        if value >= logging.WARNING:
            return LogLevel.MINIMAL
        if value >= logging.INFO:
            return LogLevel.NORMAL
        return LogLevel.DEBUG

    if isinstance(value, str):
        text = value.strip().upper()
        if text.isdigit():
            return coerce_level(int(text))
        return _NAME_TO_LEVEL.get(text, LogLevel.NORMAL)

    return LogLevel.NORMAL
