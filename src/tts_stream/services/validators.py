"""
Input Validation for tts-stream.

Validation runs before anything is hashed, stored or queued, so a rejected
request leaves no trace.

Validation Rules:
    - Text / content: required (not blank), at most MAX_TEXT_CHARS
    - Format: one of mp3, wav, opus, flac (case-insensitive)
    - Material id: 1-128 chars of letters, digits and ``._:-``
    - Start chunk: 0 <= start_chunk < total_chunks

Text is returned unchanged: leading and trailing whitespace are part of
the content hash and of the chunk offsets.

Usage:
    from tts_stream.services.validators import validate_text, validate_format

    text = validate_text(request.text)
    fmt = validate_format(request.format)
"""
from __future__ import annotations

import re
from typing import Optional

from tts_stream.services.errors import ErrorCode, ValidationError
from tts_stream.tts.voices import AUDIO_FORMATS, DEFAULT_FORMAT

MAX_TEXT_CHARS = 500_000

_MATERIAL_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]{0,127}$")


def validate_text(text: Optional[str], field: str = "text", max_length: int = MAX_TEXT_CHARS) -> str:
    """
    Raises:
        ValidationError: TEXT_REQUIRED or TEXT_TOO_LONG.
    """
    if text is None or not text.strip():
        raise ValidationError(f"{field} is required", ErrorCode.TEXT_REQUIRED)
    if len(text) > max_length:
        raise ValidationError(
            f"{field} exceeds maximum length ({len(text)} > {max_length})",
            ErrorCode.TEXT_TOO_LONG,
        )
    return text


def validate_format(fmt: Optional[str], default: str = DEFAULT_FORMAT) -> str:
    if not fmt:
        return default
    value = fmt.strip().lower()
    if value not in AUDIO_FORMATS:
        raise ValidationError(
            f"Unsupported format '{fmt}'. Use one of: {', '.join(AUDIO_FORMATS)}",
            ErrorCode.INVALID_FORMAT,
        )
    return value


def validate_material_id(material_id: Optional[str]) -> str:
    if not material_id or not _MATERIAL_ID_RE.match(material_id):
        raise ValidationError(
            "material_id must be 1-128 characters of letters, digits, '.', '_', ':' or '-'",
            ErrorCode.INVALID_MATERIAL_ID,
        )
    return material_id


def validate_start_chunk(start_chunk: Optional[int], total_chunks: int) -> int:
    """
    Check ``start_chunk`` against the plan.

    Out-of-range values are rejected rather than clamped, so a client with a
    stale chunk count finds out instead of silently reading elsewhere.
    """
    value = 0 if start_chunk is None else int(start_chunk)
    if value < 0 or value >= total_chunks:
        raise ValidationError(
            f"start_chunk must be between 0 and {total_chunks - 1}, got {value}",
            ErrorCode.INVALID_START_CHUNK,
            details={"total_chunks": total_chunks},
        )
    return value
