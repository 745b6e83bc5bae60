"""
Tests for the HTTP speech provider.

The requests session is a MagicMock, so no network is used. Each HTTP
outcome must map onto the right ProviderError subclass.
"""
from unittest.mock import MagicMock

import pytest
import requests

from tts_stream.core.config import ProviderConfig
from tts_stream.services.errors import (
    ErrorCode,
    PermanentProviderError,
    RateLimitError,
    TransientProviderError,
)
from tts_stream.tts.provider import HttpSpeechProvider, _parse_retry_after, create_provider


def _response(status=200, content=b"ID3audio", headers=None, text=""):
    response = MagicMock()
    response.status_code = status
    response.content = content
    response.headers = headers or {}
    response.text = text
    return response


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def provider(session):
    config = ProviderConfig(api_url="https://tts.example/api", api_key="secret", timeout_s=30)
    return HttpSpeechProvider(config, session=session)


class TestSynthesize:
    """Tests for HttpSpeechProvider.synthesize()."""

    def test_success_returns_bytes(self, provider, session):
        session.post.return_value = _response(content=b"audio-bytes")
        assert provider.synthesize("Hello.", "Idera", "mp3") == b"audio-bytes"

        _, kwargs = session.post.call_args
        assert session.post.call_args[0][0] == "https://tts.example/api"
        assert kwargs["json"] == {"text": "Hello.", "voice": "Idera", "response_format": "mp3"}
        assert kwargs["headers"]["Authorization"] == "Bearer secret"
        assert kwargs["timeout"] == 30

    def test_rate_limited(self, provider, session):
        session.post.return_value = _response(status=429, headers={"Retry-After": "7"})
        with pytest.raises(RateLimitError) as exc_info:
            provider.synthesize("Hello.", "Idera", "mp3")
        assert exc_info.value.retry_after == 7.0

    def test_rate_limited_without_header(self, provider, session):
        session.post.return_value = _response(status=429)
        with pytest.raises(RateLimitError) as exc_info:
            provider.synthesize("Hello.", "Idera", "mp3")
        assert exc_info.value.retry_after is None

    @pytest.mark.parametrize("status", [500, 502, 503])
    def test_server_errors_are_transient(self, provider, session, status):
        session.post.return_value = _response(status=status, text="upstream down")
        with pytest.raises(TransientProviderError) as exc_info:
            provider.synthesize("Hello.", "Idera", "mp3")
        assert exc_info.value.status_code == status
        assert "upstream down" in exc_info.value.message

    @pytest.mark.parametrize("status", [400, 401, 403, 422])
    def test_client_errors_are_permanent(self, provider, session, status):
        session.post.return_value = _response(status=status, text="bad request")
        with pytest.raises(PermanentProviderError) as exc_info:
            provider.synthesize("Hello.", "Idera", "mp3")
        assert exc_info.value.retryable is False

    def test_timeout(self, provider, session):
        session.post.side_effect = requests.exceptions.Timeout("read timed out")
        with pytest.raises(TransientProviderError) as exc_info:
            provider.synthesize("Hello.", "Idera", "mp3")
        assert exc_info.value.code == ErrorCode.PROVIDER_TIMEOUT

    def test_connection_error(self, provider, session):
        session.post.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(TransientProviderError) as exc_info:
            provider.synthesize("Hello.", "Idera", "mp3")
        assert exc_info.value.code == ErrorCode.PROVIDER_TRANSIENT

    def test_empty_body_is_transient(self, provider, session):
        session.post.return_value = _response(content=b"")
        with pytest.raises(TransientProviderError, match="empty"):
            provider.synthesize("Hello.", "Idera", "mp3")

    def test_error_body_truncated(self, provider, session):
        session.post.return_value = _response(status=500, text="e" * 5000)
        with pytest.raises(TransientProviderError) as exc_info:
            provider.synthesize("Hello.", "Idera", "mp3")
        assert len(exc_info.value.message) < 400


class TestConfiguration:
    def test_unconfigured_provider(self, session):
        provider = HttpSpeechProvider(ProviderConfig(api_key=None), session=session)
        assert provider.is_configured() is False
        with pytest.raises(PermanentProviderError):
            provider.synthesize("Hello.", "Idera", "mp3")
        session.post.assert_not_called()

    def test_create_provider(self):
        provider = create_provider(ProviderConfig(api_key="k"))
        assert isinstance(provider, HttpSpeechProvider)
        assert provider.is_configured() is True


class TestRetryAfter:
    @pytest.mark.parametrize("value,expected", [
        (None, None),
        ("", None),
        ("3", 3.0),
        ("1.5", 1.5),
        ("-4", 0.0),
        ("Wed, 21 Oct 2015 07:28:00 GMT", None),
    ])
    def test_parse(self, value, expected):
        assert _parse_retry_after(value) == expected
