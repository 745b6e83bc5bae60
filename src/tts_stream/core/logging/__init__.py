"""
tts-stream Structured Logging.

A thin layer over the stdlib ``logging`` module with:
    - Numeric log levels (1-4)
    - Colored console output
    - Rotating JSONL file output
    - Request id correlation (HTTP requests and worker tasks)

Configuration:
    export TTS_STREAM_LOG_LEVEL=3   # VERBOSE
    export TTS_STREAM_LOG_DIR=logs  # enable JSONL file
    export TTS_STREAM_NO_COLOR=1

    In settings.yaml:
        logging:
          level: 2
          log_dir: logs
          jsonl_file: tts-stream.jsonl

Usage:
    from tts_stream.core.logging import get_logger, info, warn, verbose

    _LOG = get_logger("tts-stream.jobs")

    info(_LOG, "job_created", job_id=job.id, total_chunks=4)
    warn(_LOG, "chunk_retry", index=2, attempt=1, delay_s=5.0)
    verbose(_LOG, "chunk_uploaded", index=2, seconds=0.41)

See Also:
    - services/tasks.py: chunk task events
    - tts/queue.py: worker events (request id = task name)
"""
from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from . import colors
from .colors import Colors, get_tag_color, supports_color
from .context import (
    get_level,
    get_level_name,
    get_log_config,
    get_request_id,
    is_configured,
    read_logging_config,
    set_configured,
    set_level,
    set_log_config,
    set_request_id,
)
from .formatters import ColoredConsoleFormatter, JsonlFormatter
from .levels import LEVEL_MAP, LEVEL_NAMES, LogLevel, coerce_level


def configure_logging(level: Optional[int | str | LogLevel] = None, force: bool = False) -> None:
    """
    Install console (and optionally JSONL file) handlers on the root logger.

    Args:
        level: Log level (1-4, level name, or LogLevel)
        force: Reconfigure even if already configured
    """
    if is_configured() and not force:
        return

    colors.USE_COLORS = supports_color()

    log_config = read_logging_config()
    set_log_config(log_config)

    current_level = coerce_level(level or log_config.get("level", LogLevel.NORMAL))
    set_level(current_level)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG - 10)
    root.handlers = []

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(LEVEL_MAP.get(current_level, logging.INFO))
    console.setFormatter(ColoredConsoleFormatter())
    root.addHandler(console)

    log_dir = log_config.get("log_dir")
    if log_dir:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            Path(log_dir) / str(log_config.get("jsonl_file", "tts-stream.jsonl")),
            maxBytes=int(log_config.get("rotate_max_bytes", 10 * 1024 * 1024)),
            backupCount=int(log_config.get("rotate_backup_count", 5)),
            encoding="utf-8",
            delay=True,
        )
        file_handler.setLevel(logging.DEBUG - 10)
        file_handler.setFormatter(JsonlFormatter())
        root.addHandler(file_handler)

    set_configured(True)


def _log(
    logger: logging.Logger,
    level: int,
    tag: str,
    msg: str,
    numeric_level: int = 2,
    exc_info: bool = False,
    **fields: Any
) -> None:
    if numeric_level > get_level():
        return

    event = fields.pop("event", None)
    seconds = fields.pop("seconds", None)
    logger.log(
        level,
        msg,
        exc_info=exc_info,
        extra={
            "tag": tag,
            "request_id": get_request_id(),
            "event": event,
            "seconds": seconds,
            "extra_data": fields or None,
            "numeric_level": numeric_level,
        },
    )


def get_logger(name: str = "tts-stream") -> logging.Logger:
    """Get a logger instance, configuring logging on first use."""
    configure_logging()
    return logging.getLogger(name)


def info(logger: logging.Logger, msg: str, **fields: Any) -> None:
    """Level 2 (NORMAL)."""
    _log(logger, logging.INFO, "INFO", msg, numeric_level=2, **fields)


def warn(logger: logging.Logger, msg: str, **fields: Any) -> None:
    """Level 2 (NORMAL)."""
    _log(logger, logging.WARNING, "WARN", msg, numeric_level=2, **fields)


def error(logger: logging.Logger, msg: str, exc_info: bool = False, **fields: Any) -> None:
    """Level 1 (MINIMAL). Pass ``exc_info=True`` inside an except block for a traceback."""
    _log(logger, logging.ERROR, "ERROR", msg, numeric_level=1, exc_info=exc_info, **fields)


def success(logger: logging.Logger, msg: str, **fields: Any) -> None:
    """Level 2 (NORMAL)."""
    _log(logger, logging.INFO, "SUCCESS", msg, numeric_level=2, **fields)


def fail(logger: logging.Logger, msg: str, **fields: Any) -> None:
    """Level 1 (MINIMAL)."""
    _log(logger, logging.ERROR, "FAIL", msg, numeric_level=1, **fields)


def verbose(logger: logging.Logger, msg: str, **fields: Any) -> None:
    """Level 3 (VERBOSE)."""
    _log(logger, logging.DEBUG, "INFO", msg, numeric_level=3, **fields)


def debug(logger: logging.Logger, msg: str, **fields: Any) -> None:
    """Level 4 (DEBUG)."""
    _log(logger, logging.DEBUG - 5, "DEBUG", msg, numeric_level=4, **fields)


__all__ = [
    "LogLevel",
    "LEVEL_MAP",
    "LEVEL_NAMES",
    "coerce_level",
    "Colors",
    "supports_color",
    "get_tag_color",
    "get_request_id",
    "set_request_id",
    "get_level",
    "get_level_name",
    "get_log_config",
    "JsonlFormatter",
    "ColoredConsoleFormatter",
    "configure_logging",
    "get_logger",
    "info",
    "warn",
    "error",
    "success",
    "fail",
    "verbose",
    "debug",
]
