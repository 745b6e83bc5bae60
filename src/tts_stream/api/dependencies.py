"""
FastAPI Dependency Injection Providers.

    1. get_settings() - Loads and caches application configuration
    2. get_speech_service() - Creates/returns the singleton SpeechService
    3. startup_service() - Builds the service (and its worker pool) at startup

One service per process: the worker queue and the in-memory store must be
shared by every request.

Usage in Route Handlers:
    from fastapi import Depends
    from tts_stream.api.dependencies import get_speech_service

    @router.post("/v1/tts/jobs")
    def start_job(req: GenerateRequest, service: SpeechService = Depends(get_speech_service)):
        return service.start_job(req.text, req.voice, req.format).to_dict()

Tests replace the service with ``app.dependency_overrides[get_speech_service]``.

See Also:
    - core/config.py: Settings class and load_settings()
    - services/speech_service.py: SpeechService and get_service()
"""
from __future__ import annotations

import os
from functools import lru_cache

from tts_stream.core.config import Settings, load_settings
from tts_stream.services.speech_service import SpeechService, get_service


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Load and cache application settings.

    The path comes from TTS_STREAM_SETTINGS (default config/settings.yaml).
    A missing file means defaults plus environment overrides.
    """
    return load_settings(os.getenv("TTS_STREAM_SETTINGS", "config/settings.yaml"))


def get_speech_service() -> SpeechService:
    """Get the singleton SpeechService, creating it on first use."""
    return get_service(get_settings())


def startup_service() -> None:
    """
    Create the service eagerly so the worker pool is running before the
    first request. Skipped when TTS_STREAM_SKIP_STARTUP=1 (tests).
    """
    if os.getenv("TTS_STREAM_SKIP_STARTUP", "0") == "1":
        return
    get_speech_service()
