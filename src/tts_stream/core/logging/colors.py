"""
ANSI colors for console log output.

Colors are disabled when stdout is not a TTY, when NO_COLOR is set, or
when TTS_STREAM_NO_COLOR=1.
"""
from __future__ import annotations

import os
import sys


class Colors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"
    GRAY = "\033[90m"

    BRIGHT_RED = "\033[91m"
    BRIGHT_GREEN = "\033[92m"
    BRIGHT_YELLOW = "\033[93m"
    BRIGHT_CYAN = "\033[96m"


def supports_color() -> bool:
    """Return True when ANSI colors should be written to stdout."""
    if os.getenv("TTS_STREAM_NO_COLOR", "0") == "1":
        return False
    if os.getenv("NO_COLOR"):
        return False
    isatty = getattr(sys.stdout, "isatty", None)
    if isatty is None or not isatty():
        return False
    return sys.platform != "win32" or "WT_SESSION" in os.environ


_TAG_COLORS = {
    "SUCCESS": Colors.BRIGHT_GREEN,
    "FAIL": Colors.BRIGHT_RED,
    "ERROR": Colors.BRIGHT_RED,
    "WARN": Colors.BRIGHT_YELLOW,
    "WARNING": Colors.BRIGHT_YELLOW,
    "INFO": Colors.BRIGHT_CYAN,
    "DEBUG": Colors.GRAY,
    "TRACE": Colors.DIM,
}

# Values of status-like fields that get a color of their own
_VALUE_COLORS = {
    "completed": Colors.GREEN,
    "hit": Colors.GREEN,
    "joined": Colors.CYAN,
    "pending": Colors.YELLOW,
    "processing": Colors.YELLOW,
    "miss": Colors.YELLOW,
    "failed": Colors.RED,
    "rate_limited": Colors.MAGENTA,
}


USE_COLORS = supports_color()


def get_tag_color(tag: str) -> str:
    return _TAG_COLORS.get(tag.upper(), Colors.WHITE)


def get_value_color(key: str, value: object) -> str:
    """Color for an extra ``key=value`` field on a console line."""
    if key in ("status", "cache", "outcome") and isinstance(value, str):
        return _VALUE_COLORS.get(value, Colors.DIM)
    if key == "attempt" and isinstance(value, int) and value > 1:
        return Colors.YELLOW
    return Colors.DIM
