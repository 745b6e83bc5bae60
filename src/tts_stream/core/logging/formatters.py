"""
Log formatters for the JSONL file and the console.

JSONL (file):
    {"ts":"2026-03-02T10:15:04+00:00","level":2,"tag":"INFO","message":"job_created","request_id":"4f1c0a9e2b7d","extra":{"job_id":"...","total_chunks":4}}

Console:
    10:15:04 [ INFO  ] (4f1c0a9e2b7d) job_created job_id=... total_chunks=4
    10:15:06 [SUCCESS] (chunk-2) chunk_completed index=2 1.842s

Timing values are green under 0.5s, yellow under 5s and red beyond; the
provider is slow, so the thresholds are looser than for local work.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict

from . import colors
from .colors import Colors, get_tag_color, get_value_color


def _paint(text: str, color: str) -> str:
    if not colors.USE_COLORS:
        return text
    return f"{color}{text}{Colors.RESET}"


class JsonlFormatter(logging.Formatter):
    """One JSON object per line; optional keys are omitted when unset."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created).astimezone().isoformat(),
            "level": getattr(record, "numeric_level", 2),
            "tag": getattr(record, "tag", record.levelname),
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", "-"),
            "logger": record.name,
        }

        event = getattr(record, "event", None)
        if event:
            payload["event"] = event

        seconds = getattr(record, "seconds", None)
        if seconds is not None:
            payload["seconds"] = seconds

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            payload["extra"] = extra_data

        return json.dumps(payload, ensure_ascii=False, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    """Human readable ``HH:MM:SS [ TAG ] (rid) message k=v 0.123s`` lines."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        tag = getattr(record, "tag", record.levelname)
        rid = getattr(record, "request_id", "-")

        parts = [
            _paint(ts, Colors.DIM),
            _paint(f"[{tag:^7}]", get_tag_color(tag)),
        ]
        if rid != "-":
            parts.append(_paint(f"({rid})", Colors.DIM + Colors.CYAN))
        parts.append(record.getMessage())

        event = getattr(record, "event", None)
        if event:
            parts.append(_paint(f"event={event}", Colors.BLUE))

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            for key, value in extra_data.items():
                parts.append(_paint(f"{key}={value}", get_value_color(key, value)))

        seconds = getattr(record, "seconds", None)
        if seconds is not None:
            if seconds < 0.5:
                color = Colors.GREEN
            elif seconds < 5.0:
                color = Colors.YELLOW
            else:
                color = Colors.RED
            parts.append(_paint(f"{seconds:.3f}s", color))

        if record.exc_info:
            parts.append("\n" + self.formatException(record.exc_info))

        return " ".join(parts)
