"""
FastAPI Application Entry Point.

Creates and configures the FastAPI application for tts-stream: logging,
routes, the local audio mount and service startup / shutdown.

Usage:
    # Run with uvicorn
    uvicorn tts_stream.main:app --host 0.0.0.0 --port 8000

    # Or use the module directly
    python -m uvicorn tts_stream.main:app --reload
"""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from tts_stream.api.dependencies import get_settings, startup_service
from tts_stream.api.routes import router
from tts_stream.core.config import ServiceConfig
from tts_stream.core.logging import configure_logging, get_logger, info
from tts_stream.services.speech_service import reset_service

_LOG = get_logger("tts-stream.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Build the service (and start workers) unless TTS_STREAM_SKIP_STARTUP=1
    startup_service()
    yield
    reset_service()


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    This factory function:
        1. Configures structured logging based on environment settings
        2. Creates a FastAPI instance with the service title
        3. Registers the API router
        4. Serves locally stored audio under storage.public_base_url

    Returns:
        FastAPI: Configured application instance ready to serve requests.
    """
    configure_logging()

    app = FastAPI(title="tts-stream", lifespan=lifespan)
    app.include_router(router)

    storage = ServiceConfig.from_settings(get_settings()).storage
    if storage.backend == "local" and storage.public_base_url.startswith("/"):
        app.mount(
            storage.public_base_url,
            StaticFiles(directory=storage.base_dir, check_dir=False),
            name="audio",
        )
        info(_LOG, "audio_mounted", path=storage.public_base_url, directory=storage.base_dir)

    return app


# Global application instance for ASGI servers (uvicorn, gunicorn, etc.)
app = create_app()
