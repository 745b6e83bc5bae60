"""
Speech provider clients.

The service only relies on one contract: ``synthesize(text, voice, fmt)``
either returns audio bytes or raises one of the ProviderError classes.

    BaseSpeechProvider      - interface + helpers
    HttpSpeechProvider      - JSON-over-HTTP API (Bearer key), via requests

Failure classification (HttpSpeechProvider):
    timeout                 -> TransientProviderError(PROVIDER_TIMEOUT)
    connection / network    -> TransientProviderError
    HTTP 5xx                -> TransientProviderError
    HTTP 429                -> RateLimitError (Retry-After kept in details)
    other HTTP 4xx          -> PermanentProviderError
    200 with empty body     -> TransientProviderError

Usage:
    provider = create_provider(config.provider)
    if provider.is_configured():
        audio = provider.synthesize("Good morning.", "Idera", "mp3")

See Also:
    - services/errors.py: ProviderError hierarchy
    - tts/queue.py: how chunk tasks turn these errors into retries
"""
from __future__ import annotations

from typing import Dict, Optional

import requests

from tts_stream.core.config import ProviderConfig
from tts_stream.core.logging import debug, get_logger, verbose, warn
from tts_stream.core.metrics import metrics
from tts_stream.services.errors import (
    ErrorCode,
    PermanentProviderError,
    ProviderError,
    RateLimitError,
    TransientProviderError,
)
from tts_stream.utils.timeit import timeit

_LOG = get_logger("tts-stream.provider")

# Longest provider error body kept in messages
_ERROR_BODY_CHARS = 300


class BaseSpeechProvider:
    """
    Interface for speech providers.

    Subclasses implement ``synthesize``; ``is_configured`` lets the service
    reject requests up front when credentials are missing.
    """
    name: str = "base"

    def is_configured(self) -> bool:
        return True

    def synthesize(self, text: str, voice: str, fmt: str) -> bytes:
        raise NotImplementedError


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class HttpSpeechProvider(BaseSpeechProvider):
    """
    Provider that POSTs ``{text, voice, response_format}`` to a TTS API.

    One ``requests.Session`` is shared by all worker threads; a session is
    safe to use concurrently for plain request/response calls.
    """
    name = "http"

    def __init__(self, config: ProviderConfig, session: Optional[requests.Session] = None):
        self.config = config
        self._session = session or requests.Session()

    def is_configured(self) -> bool:
        return bool(self.config.api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }

    def synthesize(self, text: str, voice: str, fmt: str) -> bytes:
        """
        Generate audio for ``text``.

        Raises:
            ProviderError subclass on any failure (see module docstring).
        """
        if not self.is_configured():
            raise PermanentProviderError("Speech provider API key is not configured")

        payload = {"text": text, "voice": voice, "response_format": fmt}
        debug(_LOG, "provider_request", chars=len(text), voice=voice, format=fmt)

        with timeit("provider_call") as t:
            try:
                response = self._post(payload)
                audio = self._check_response(response)
            except ProviderError as exc:
                metrics.observe_provider(t.seconds, exc.code)
                raise

        metrics.observe_provider(t.seconds, "success", audio_bytes=len(audio))
        verbose(_LOG, "provider_ok", chars=len(text), voice=voice, bytes=len(audio),
                seconds=round(t.seconds, 3))
        return audio

    def _post(self, payload: Dict[str, str]) -> requests.Response:
        try:
            return self._session.post(
                self.config.api_url,
                json=payload,
                headers=self._headers(),
                timeout=self.config.timeout_s,
            )
        except requests.exceptions.Timeout as exc:
            warn(_LOG, "provider_timeout", timeout_s=self.config.timeout_s)
            raise TransientProviderError(
                f"Speech provider timed out after {self.config.timeout_s:.0f}s",
                code=ErrorCode.PROVIDER_TIMEOUT,
            ) from exc
        except requests.exceptions.RequestException as exc:
            warn(_LOG, "provider_network_error", error=str(exc))
            raise TransientProviderError(f"Speech provider unreachable: {exc}") from exc

    def _check_response(self, response: requests.Response) -> bytes:
        status = response.status_code
        if status == 429:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            warn(_LOG, "provider_rate_limited", retry_after=retry_after)
            raise RateLimitError(retry_after=retry_after)

        if status >= 500:
            raise TransientProviderError(
                f"Speech provider error {status}: {response.text[:_ERROR_BODY_CHARS]}",
                status_code=status,
            )

        if status >= 400:
            raise PermanentProviderError(
                f"Speech provider rejected request ({status}): {response.text[:_ERROR_BODY_CHARS]}",
                status_code=status,
            )

        if not response.content:
            raise TransientProviderError("Speech provider returned empty audio", status_code=status)

        return response.content


def create_provider(config: ProviderConfig) -> BaseSpeechProvider:
    return HttpSpeechProvider(config)
