"""
Logging state shared across the process.

The request id lives in a ContextVar so concurrent requests (and worker
threads, which set it to their task name) each tag their own log lines.
Level and file settings are module globals written once by
configure_logging().

Environment Variables:
    - TTS_STREAM_LOG_LEVEL: Override log level (1-4 or name)
    - TTS_STREAM_LOG_DIR: Directory for the JSONL log file
    - TTS_STREAM_JSONL_FILE: JSONL filename
    - TTS_STREAM_LOG_ROTATE_BYTES: Max file size before rotation
    - TTS_STREAM_LOG_ROTATE_BACKUP: Rotated files to keep
"""
from __future__ import annotations

import os
from contextvars import ContextVar
from typing import Any, Dict

from .levels import LEVEL_NAMES, LogLevel

_request_id: ContextVar[str] = ContextVar("request_id", default="-")

_configured: bool = False
_log_config: Dict[str, Any] = {}
_current_level: LogLevel = LogLevel.NORMAL


def get_request_id() -> str:
    return _request_id.get()


def set_request_id(rid: str) -> None:
    """Tag every following log line in this context with ``rid``."""
    _request_id.set(rid)


def get_level() -> LogLevel:
    return _current_level


def set_level(level: LogLevel) -> None:
    global _current_level
    _current_level = level


def get_level_name() -> str:
    return LEVEL_NAMES.get(_current_level, "NORMAL")


def is_configured() -> bool:
    return _configured


def set_configured(value: bool) -> None:
    global _configured
    _configured = value


def get_log_config() -> Dict[str, Any]:
    return _log_config


def set_log_config(config: Dict[str, Any]) -> None:
    global _log_config
    _log_config = config


def _env_int(name: str) -> int | None:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def read_logging_config() -> Dict[str, Any]:
    """
    Resolve logging options: environment, then settings.yaml, then defaults.

    Returns:
        Dictionary with any of: level, log_dir, jsonl_file,
        rotate_max_bytes, rotate_backup_count.
    """
    from tts_stream.core.config import load_settings

    cfg: Dict[str, Any] = {}
    settings = load_settings(os.getenv("TTS_STREAM_SETTINGS", "config/settings.yaml"))
    cfg.update(settings.raw.get("logging", {}) or {})

    if os.getenv("TTS_STREAM_LOG_LEVEL"):
        cfg["level"] = os.environ["TTS_STREAM_LOG_LEVEL"]
    if os.getenv("TTS_STREAM_LOG_DIR"):
        cfg["log_dir"] = os.environ["TTS_STREAM_LOG_DIR"]
    if os.getenv("TTS_STREAM_JSONL_FILE"):
        cfg["jsonl_file"] = os.environ["TTS_STREAM_JSONL_FILE"]

    rotate_bytes = _env_int("TTS_STREAM_LOG_ROTATE_BYTES")
    if rotate_bytes is not None:
        cfg["rotate_max_bytes"] = rotate_bytes
    rotate_backup = _env_int("TTS_STREAM_LOG_ROTATE_BACKUP")
    if rotate_backup is not None:
        cfg["rotate_backup_count"] = rotate_backup

    return cfg
