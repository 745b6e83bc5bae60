"""
Command-Line Interface for tts-stream.

Synthesizes a document without running the HTTP server, or shows how it
would be chunked and hashed.

Usage Examples:
    # Single text synthesis
    tts-stream --text "Good morning." --out hello.mp3

    # Positional text (same as above)
    tts-stream "Good morning." --out hello.mp3

    # Whole document from a file
    tts-stream --file chapter1.txt --voice Emma --format wav --out chapter1.wav

    # Dry-run mode (no provider call, shows the chunk plan)
    tts-stream --file chapter1.txt --dry-run --json

    # List voices
    tts-stream --voices

Environment Variables:
    TTS_STREAM_SETTINGS: Settings file (default config/settings.yaml)
    TTS_STREAM_PROVIDER_API_KEY: Speech provider key
"""
from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

from tts_stream.core.config import ConfigValidationError, ServiceConfig, load_settings
from tts_stream.core.logging import configure_logging, fail, get_logger, info, set_request_id
from tts_stream.services.errors import TTSError
from tts_stream.services.validators import validate_format, validate_text
from tts_stream.tts.chunker import chunk_ranges, chunk_texts
from tts_stream.tts.provider import create_provider
from tts_stream.tts.voices import DEFAULT_VOICE, VOICES, resolve_voice
from tts_stream.utils.text import content_hash, preview


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="tts-stream CLI (serverless synth)")

    parser.add_argument("text_pos", nargs="?", help="Text to synthesize (positional)")
    parser.add_argument("--text", help="Text to synthesize")
    parser.add_argument("--file", help="Read the whole text from a file")

    parser.add_argument("--out", help="Output audio path (default out.<format>)")

    parser.add_argument("--voice", help="Voice override")
    parser.add_argument("--format", help="Audio format: mp3, wav, opus, flac")
    parser.add_argument("--max-chars", type=int, help="Chunk size override")
    parser.add_argument("--settings", help="Settings file override")

    parser.add_argument("--dry-run", action="store_true",
                        help="Chunk and hash without calling the provider")
    parser.add_argument("--json", action="store_true",
                        help="Print JSON summary")
    parser.add_argument("--voices", action="store_true",
                        help="List available voices")

    return parser.parse_args(argv)


def _load_text(args: argparse.Namespace) -> str:
    """
    Raises:
        SystemExit: If no input provided or conflicting options used.
    """
    text = args.text or args.text_pos
    if args.file:
        if text:
            raise SystemExit("Use --file without --text or positional text.")
        text = Path(args.file).read_text(encoding="utf-8")
    if not text or not text.strip():
        raise SystemExit("Provide --text, --file or a positional text.")
    return text


def _plan_summary(text: str, max_chars: int, voice: str, fmt: str) -> dict:
    """Chunk plan as the service would compute it, without synthesis."""
    result = chunk_ranges(text, max_chars)
    chunks = chunk_texts(text, result.ranges)
    return {
        "text_len": len(text),
        "content_hash": content_hash(text),
        "voice": voice,
        "format": fmt,
        "max_chars": max_chars,
        "chunks": len(result.ranges),
        "ranges": [
            {"index": r.index, "start": r.start, "end": r.end, "preview": preview(c, 40)}
            for r, c in zip(result.ranges, chunks)
        ],
    }


def _print(payload: dict, as_json: bool) -> None:
    if as_json:
        print(json.dumps(payload, ensure_ascii=False))
    else:
        print(payload)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Returns:
        Exit code: 0 on success, 1 on a synthesis error, 2 on bad
        configuration.
    """
    args = _parse_args(argv)

    if args.voices:
        payload = {"ok": True, "default_voice": DEFAULT_VOICE, "voices": [v.to_dict() for v in VOICES]}
        _print(payload, args.json)
        return 0

    configure_logging()
    log = get_logger("tts-stream.cli")
    set_request_id(str(uuid4())[:12])

    settings = load_settings(args.settings or os.getenv("TTS_STREAM_SETTINGS", "config/settings.yaml"))
    try:
        config = ServiceConfig.from_settings(settings)
    except ConfigValidationError as e:
        fail(log, "bad_config", error=str(e))
        return 2

    text = _load_text(args)
    max_chars = args.max_chars or config.chunking.max_chars
    voice = resolve_voice(args.voice, config.provider.default_voice)
    try:
        text = validate_text(text)
        fmt = validate_format(args.format, config.provider.default_format)
    except TTSError as e:
        _print(e.to_dict(), args.json)
        return 2

    if args.dry_run:
        summary = _plan_summary(text, max_chars, voice, fmt)
        info(log, "dry_run", chars=summary["text_len"], chunks=summary["chunks"], voice=voice)
        _print({"ok": True, "dry_run": True, **summary}, args.json)
        print("DRY_RUN_OK")
        return 0

    provider = create_provider(config.provider)
    if not provider.is_configured():
        fail(log, "provider_not_configured")
        print("Set TTS_STREAM_PROVIDER_API_KEY or provider.api_key in the settings file.")
        return 2

    out_path = Path(args.out or f"out.{fmt}")
    out_path.parent.mkdir(parents=True, exist_ok=True)

    ranges = chunk_ranges(text, max_chars).ranges
    parts = []
    try:
        for r, chunk in zip(ranges, chunk_texts(text, ranges)):
            info(log, "synth_chunk", index=r.index, of=len(ranges), chars=len(chunk))
            parts.append(provider.synthesize(chunk, voice, fmt))
    except TTSError as e:
        fail(log, "synth_failed", error=e.message, code=e.code)
        _print(e.to_dict(), args.json)
        return 1

    audio = b"".join(parts)
    out_path.write_bytes(audio)
    _print({"ok": True, "dry_run": False, "out": str(out_path), "bytes": len(audio),
            "chunks": len(ranges), "voice": voice, "format": fmt}, args.json)
    print("CLI_OK")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
