"""
Error taxonomy for tts-stream.

Every error the service raises or records is a TTSError carrying a code
from ErrorCode, a human readable message and optional details. The API
layer turns them into ``{"ok": false, "error": CODE, "message": ...}``.

    TTSError
    ├── ValidationError          bad input, rejected before anything is created
    ├── NotFoundError            unknown job id / material without a plan
    ├── StorageError             upload failed (retried like a transient error)
    └── ProviderError
        ├── TransientProviderError   timeout, 5xx, network (retried)
        ├── RateLimitError           429 (retried with a longer backoff)
        └── PermanentProviderError   other 4xx (never retried)

The worker queue does not look at these classes directly; chunk tasks map
them onto TaskOutcome values (see tts/queue.py).
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ErrorCode:
    """Machine readable error codes returned by the API."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    TEXT_REQUIRED = "TEXT_REQUIRED"
    TEXT_TOO_LONG = "TEXT_TOO_LONG"
    INVALID_FORMAT = "INVALID_FORMAT"
    INVALID_START_CHUNK = "INVALID_START_CHUNK"
    INVALID_MATERIAL_ID = "INVALID_MATERIAL_ID"
    PROVIDER_NOT_CONFIGURED = "PROVIDER_NOT_CONFIGURED"
    NOT_FOUND = "NOT_FOUND"
    PROVIDER_TRANSIENT = "PROVIDER_TRANSIENT"
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
    RATE_LIMITED = "RATE_LIMITED"
    PROVIDER_REJECTED = "PROVIDER_REJECTED"
    STORAGE_FAILED = "STORAGE_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class TTSError(Exception):
    """
    Base exception for service errors.

    Attributes:
        message: Human-readable error message.
        code: Error code from ErrorCode.
        details: Optional dictionary with additional context.
    """
    def __init__(self, message: str, code: str = ErrorCode.INTERNAL_ERROR, details: Optional[Dict] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the API error envelope."""
        result: Dict[str, Any] = {
            "ok": False,
            "error": self.code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(TTSError):
    """Input rejected synchronously; no job, plan or task was created."""
    def __init__(self, message: str, code: str = ErrorCode.VALIDATION_ERROR, details: Optional[Dict] = None):
        super().__init__(message, code, details)


class NotFoundError(TTSError):
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.NOT_FOUND, details)


class StorageError(TTSError):
    """Upload to object storage failed."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.STORAGE_FAILED, details)


class ProviderError(TTSError):
    """
    Base class for speech provider failures.

    ``retryable`` tells the chunk task whether another attempt may help.
    """
    retryable = True

    def __init__(self, message: str, code: str, status_code: Optional[int] = None, details: Optional[Dict] = None):
        details = dict(details or {})
        if status_code is not None:
            details.setdefault("status_code", status_code)
        self.status_code = status_code
        super().__init__(message, code, details)


class TransientProviderError(ProviderError):
    """Timeout, 5xx or connection failure."""
    def __init__(self, message: str, status_code: Optional[int] = None,
                 code: str = ErrorCode.PROVIDER_TRANSIENT, details: Optional[Dict] = None):
        super().__init__(message, code, status_code, details)


class RateLimitError(ProviderError):
    """HTTP 429 from the provider."""
    def __init__(self, message: str = "Speech provider rate limit exceeded", retry_after: Optional[float] = None,
                 details: Optional[Dict] = None):
        details = dict(details or {})
        if retry_after is not None:
            details["retry_after"] = retry_after
        self.retry_after = retry_after
        super().__init__(message, ErrorCode.RATE_LIMITED, 429, details)


class PermanentProviderError(ProviderError):
    """A 4xx other than 429: the same request will fail again."""
    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.PROVIDER_REJECTED, status_code, details)
