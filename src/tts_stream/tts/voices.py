"""
Voice catalogue and audio formats offered by the speech provider.

Voice names are matched case-insensitively. An unknown voice does not fail
the request: it falls back to the configured default voice with a warning,
so an old client with a retired voice keeps working.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from tts_stream.core.logging import get_logger, warn

_LOG = get_logger("tts-stream.voices")


@dataclass(frozen=True)
class Voice:
    name: str
    gender: str

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "gender": self.gender}


VOICES: List[Voice] = [
    Voice("Idera", "female"),
    Voice("Zainab", "female"),
    Voice("Wura", "female"),
    Voice("Chinenye", "female"),
    Voice("Regina", "female"),
    Voice("Adaora", "female"),
    Voice("Mary", "female"),
    Voice("Remi", "female"),
    Voice("Emma", "male"),
    Voice("Osagie", "male"),
    Voice("Jude", "male"),
    Voice("Tayo", "male"),
    Voice("Femi", "male"),
    Voice("Umar", "male"),
    Voice("Nonso", "male"),
    Voice("Adam", "male"),
]

DEFAULT_VOICE = "Idera"

_BY_NAME: Dict[str, Voice] = {v.name.lower(): v for v in VOICES}

# Supported output formats and the content type served for each
AUDIO_FORMATS: Dict[str, str] = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "opus": "audio/opus",
    "flac": "audio/flac",
}

DEFAULT_FORMAT = "mp3"


def find_voice(name: Optional[str]) -> Optional[Voice]:
    if not name:
        return None
    return _BY_NAME.get(name.strip().lower())


def resolve_voice(name: Optional[str], default: str = DEFAULT_VOICE) -> str:
    """
    Canonical voice name for ``name``, or ``default`` when it is unknown.

    Example:
        >>> resolve_voice("emma")
        'Emma'
        >>> resolve_voice("Nobody")
        'Idera'
    """
    voice = find_voice(name)
    if voice is not None:
        return voice.name
    fallback = find_voice(default)
    resolved = fallback.name if fallback is not None else DEFAULT_VOICE
    if name:
        warn(_LOG, "unknown_voice", requested=name, using=resolved)
    return resolved


def content_type_for(fmt: str) -> str:
    return AUDIO_FORMATS.get(fmt, "application/octet-stream")
