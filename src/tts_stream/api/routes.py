"""
tts-stream API Routes.

Endpoints:
    GET  /v1/tts/voices                     - Voice catalogue
    GET  /v1/tts/status                     - Whether the provider is configured
    POST /v1/tts/generate                   - Synchronous synthesis (returns audio bytes)
    POST /v1/tts/generate-cached            - One-shot synthesis through the whole-text cache
    POST /v1/tts/jobs                       - Start or join a chunked job
    GET  /v1/tts/jobs/{job_id}              - Poll a job
    POST /v1/materials/{material_id}/tts    - Queue a material's chunks for a voice
    GET  /v1/materials/{material_id}/tts    - Poll a material's chunks (?voice=)
    GET  /health                            - Health check
    GET  /metrics                           - Prometheus metrics

Error Handling:
    All errors are returned as JSON:
    {
        "ok": false,
        "error": "<ERROR_CODE>",
        "message": "<human readable message>",
        "details": {...}            (optional)
    }

    HTTP status codes are mapped from TTSError codes:
        - validation codes -> 400 Bad Request
        - PROVIDER_NOT_CONFIGURED -> 503 Service Unavailable
        - NOT_FOUND -> 404 Not Found
        - RATE_LIMITED -> 429 Too Many Requests
        - other provider / storage failures -> 502 Bad Gateway
        - INTERNAL_ERROR -> 500 Internal Server Error

Example Usage:
    >>> import requests
    >>> job = requests.post(
    ...     "http://localhost:8000/v1/tts/jobs",
    ...     json={"text": open("chapter1.txt").read(), "voice": "Emma"},
    ... ).json()
    >>> requests.get(f"http://localhost:8000/v1/tts/jobs/{job['job_id']}").json()["status"]
    'processing'
"""
from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Header, Query, Response
from fastapi.responses import JSONResponse

from tts_stream.api.dependencies import get_speech_service
from tts_stream.api.schemas import (
    CachedAudioResponse,
    GenerateRequest,
    JobResponse,
    MaterialRequest,
    MaterialResponse,
    VoicesResponse,
)
from tts_stream.core.logging import error, get_logger, set_request_id
from tts_stream.core.metrics import metrics
from tts_stream.services.errors import ErrorCode, TTSError
from tts_stream.services.speech_service import SpeechService

router = APIRouter()

_LOG = get_logger("tts-stream.api")

_STATUS_MAP = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.TEXT_REQUIRED: 400,
    ErrorCode.TEXT_TOO_LONG: 400,
    ErrorCode.INVALID_FORMAT: 400,
    ErrorCode.INVALID_START_CHUNK: 400,
    ErrorCode.INVALID_MATERIAL_ID: 400,
    ErrorCode.PROVIDER_NOT_CONFIGURED: 503,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.PROVIDER_TRANSIENT: 502,
    ErrorCode.PROVIDER_TIMEOUT: 502,
    ErrorCode.PROVIDER_REJECTED: 502,
    ErrorCode.STORAGE_FAILED: 502,
    ErrorCode.INTERNAL_ERROR: 500,
}


def _new_request_id() -> str:
    rid = str(uuid.uuid4())[:12]
    set_request_id(rid)
    return rid


def _error_response(e: TTSError, rid: str) -> JSONResponse:
    """Standard JSON error envelope, with the HTTP status taken from the error code."""
    return JSONResponse(
        status_code=_STATUS_MAP.get(e.code, 500),
        content=e.to_dict(),
        headers={"X-Request-Id": rid},
    )


def _internal_error(rid: str) -> JSONResponse:
    # Log internally but don't expose details
    error(_LOG, "unhandled_error", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "ok": False,
            "error": ErrorCode.INTERNAL_ERROR,
            "message": "Internal server error",
            "request_id": rid,
        },
        headers={"X-Request-Id": rid},
    )


# =============================================================================
# Catalogue / status
# =============================================================================

@router.get("/v1/tts/voices", response_model=VoicesResponse)
def list_voices(service: SpeechService = Depends(get_speech_service)):
    return service.list_voices()


@router.get("/v1/tts/status")
def provider_status(service: SpeechService = Depends(get_speech_service)):
    """Lets clients hide speech features when no provider key is set."""
    return {"ok": True, "configured": service.is_configured()}


# =============================================================================
# One-shot synthesis
# =============================================================================

@router.post("/v1/tts/generate", response_class=Response)
def generate(req: GenerateRequest, service: SpeechService = Depends(get_speech_service)):
    """
    Synthesize text and return the audio bytes directly.

    Returns:
        Response: audio with headers:
            - X-Request-Id: Unique request identifier for tracing
            - X-Voice: Voice actually used
            - X-Chunks: Number of provider calls made

    Example:
        curl -X POST http://localhost:8000/v1/tts/generate \\
            -H "Content-Type: application/json" \\
            -d '{"text": "Hello there!", "voice": "Emma"}' \\
            --output speech.mp3
    """
    rid = _new_request_id()
    try:
        result = service.generate(req.text, req.voice, req.format)
    except TTSError as e:
        return _error_response(e, rid)
    except Exception:
        return _internal_error(rid)

    headers = {
        "X-Request-Id": rid,
        "X-Voice": result.voice,
        "X-Chunks": str(result.chunks),
        "X-Bytes": str(len(result.audio)),
    }
    return Response(content=result.audio, media_type=result.content_type, headers=headers)


@router.post("/v1/tts/generate-cached", response_model=CachedAudioResponse)
def generate_cached(req: GenerateRequest, service: SpeechService = Depends(get_speech_service)):
    """Return a URL for the complete audio, synthesizing only on a cache miss."""
    rid = _new_request_id()
    try:
        return service.generate_cached(req.text, req.voice, req.format).to_dict()
    except TTSError as e:
        return _error_response(e, rid)
    except Exception:
        return _internal_error(rid)


# =============================================================================
# Jobs
# =============================================================================

@router.post("/v1/tts/jobs", response_model=JobResponse)
def start_job(
    req: GenerateRequest,
    service: SpeechService = Depends(get_speech_service),
    x_user_id: str | None = Header(default=None),
):
    """
    Start chunked background generation, or join the job already running
    for the same text and voice. Returns immediately; poll the job id.
    """
    rid = _new_request_id()
    try:
        return service.start_job(req.text, req.voice, req.format, requested_by=x_user_id).to_dict()
    except TTSError as e:
        return _error_response(e, rid)
    except Exception:
        return _internal_error(rid)


@router.get("/v1/tts/jobs/{job_id}", response_model=JobResponse)
def get_job(job_id: str, service: SpeechService = Depends(get_speech_service)):
    rid = _new_request_id()
    try:
        return service.get_job_status(job_id).to_dict()
    except TTSError as e:
        return _error_response(e, rid)
    except Exception:
        return _internal_error(rid)


# =============================================================================
# Materials
# =============================================================================

@router.post("/v1/materials/{material_id}/tts", response_model=MaterialResponse)
def start_material(
    material_id: str,
    req: MaterialRequest,
    service: SpeechService = Depends(get_speech_service),
):
    """
    Queue every chunk of the material that has no audio for the voice yet,
    starting at ``start_chunk``. Chunks already generated or in progress
    (by any user) are not queued again.
    """
    rid = _new_request_id()
    try:
        view = service.start_material_generation(
            material_id,
            req.content,
            voice=req.voice,
            start_chunk=req.start_chunk,
            fmt=req.format,
        )
        return view.to_dict()
    except TTSError as e:
        return _error_response(e, rid)
    except Exception:
        return _internal_error(rid)


@router.get("/v1/materials/{material_id}/tts", response_model=MaterialResponse)
def get_material(
    material_id: str,
    voice: str | None = Query(default=None),
    service: SpeechService = Depends(get_speech_service),
):
    rid = _new_request_id()
    try:
        return service.get_material_status(material_id, voice).to_dict()
    except TTSError as e:
        return _error_response(e, rid)
    except Exception:
        return _internal_error(rid)


# =============================================================================
# Operations
# =============================================================================

@router.get("/health")
def health(service: SpeechService = Depends(get_speech_service)):
    """
    Health check for load balancers and probes.

    Includes provider configuration, store reachability, storage backend
    and worker queue statistics.
    """
    return service.get_health_info()


@router.get("/metrics")
def prometheus_metrics():
    """Prometheus metrics in text exposition format."""
    content, content_type = metrics.get_metrics_response()
    return Response(content=content, media_type=content_type)
