"""
tts-stream Services Layer.

Business logic between the HTTP API and the speech pipeline:
    - speech_service.py: SpeechService (one-shot, streaming jobs, materials)
    - tasks.py: Queue tasks that generate one chunk each
    - validators.py: Input validation
    - errors.py: Error taxonomy shared by every layer

Only the error types are re-exported here; import SpeechService from
``tts_stream.services.speech_service``.
"""
from .errors import (
    ErrorCode,
    NotFoundError,
    PermanentProviderError,
    ProviderError,
    RateLimitError,
    StorageError,
    TransientProviderError,
    TTSError,
    ValidationError,
)

__all__ = [
    "ErrorCode",
    "NotFoundError",
    "PermanentProviderError",
    "ProviderError",
    "RateLimitError",
    "StorageError",
    "TransientProviderError",
    "TTSError",
    "ValidationError",
]
