"""
Tests for configuration validation and defaults.

Tests cover:
- Defaults class values
- ServiceConfig.from_settings() - all sections
- ConfigValidationError on invalid values
- Missing sections and missing files use defaults
- Environment overrides in load_settings()
- Settings properties
"""
import pytest

from tts_stream.core.config import (
    ConfigValidationError,
    Defaults,
    ServiceConfig,
    Settings,
    load_settings,
)


class TestDefaults:
    """Tests for Defaults class values."""

    def test_chunking_defaults(self):
        """Chunks are at most 800 characters by default."""
        assert Defaults.CHUNKING_MAX_CHARS == 800

    def test_queue_defaults(self):
        """Retry and staleness defaults."""
        assert Defaults.QUEUE_MAX_ATTEMPTS == 2
        assert Defaults.QUEUE_BACKOFF_S == 5.0
        assert Defaults.QUEUE_RATE_LIMIT_BACKOFF_S == 60.0
        assert Defaults.QUEUE_STALENESS_S == 120.0

    def test_provider_defaults(self):
        """Provider timeout and default voice."""
        assert Defaults.PROVIDER_TIMEOUT_S == 120.0
        assert Defaults.PROVIDER_DEFAULT_VOICE == "Idera"
        assert Defaults.PROVIDER_DEFAULT_FORMAT == "mp3"

    def test_backend_defaults(self):
        """Memory store and local storage out of the box."""
        assert Defaults.STORE_BACKEND == "memory"
        assert Defaults.STORAGE_BACKEND == "local"


class TestServiceConfigFromSettings:
    """Tests for ServiceConfig.from_settings()."""

    def test_empty_settings_use_defaults(self):
        """Missing sections fall back to Defaults."""
        cfg = ServiceConfig.from_settings(Settings(raw={}))
        assert cfg.chunking.max_chars == Defaults.CHUNKING_MAX_CHARS
        assert cfg.queue.workers == Defaults.QUEUE_WORKERS
        assert cfg.store.backend == "memory"
        assert cfg.storage.public_base_url == "/audio"
        assert cfg.hashing.collapse_whitespace is False
        assert cfg.provider.api_key is None

    def test_values_are_read(self):
        """Values from every section are applied."""
        cfg = ServiceConfig.from_settings(Settings(raw={
            "chunking": {"max_chars": 500},
            "provider": {"api_key": "k", "timeout_s": 30, "default_voice": "Emma", "default_format": "WAV"},
            "store": {"backend": "SQL", "url": "sqlite:///x.db"},
            "queue": {"workers": 8, "max_attempts": 3, "backoff_s": 1, "staleness_s": 60},
            "hashing": {"collapse_whitespace": True},
            "logging": {"level": "VERBOSE"},
        }))
        assert cfg.chunking.max_chars == 500
        assert cfg.provider.api_key == "k"
        assert cfg.provider.timeout_s == 30.0
        assert cfg.provider.default_format == "wav"
        assert cfg.store.backend == "sql"
        assert cfg.queue.workers == 8
        assert cfg.queue.max_attempts == 3
        assert cfg.queue.staleness_s == 60.0
        assert cfg.hashing.collapse_whitespace is True
        assert cfg.logging.level == 3

    def test_string_numbers_are_coerced(self):
        """Environment overrides arrive as strings."""
        cfg = ServiceConfig.from_settings(Settings(raw={"queue": {"workers": "6"}}))
        assert cfg.queue.workers == 6

    def test_public_base_url_trailing_slash_removed(self):
        cfg = ServiceConfig.from_settings(Settings(raw={"storage": {"public_base_url": "https://cdn.example.com/"}}))
        assert cfg.storage.public_base_url == "https://cdn.example.com"

    @pytest.mark.parametrize("raw", [
        {"chunking": {"max_chars": 1}},
        {"queue": {"workers": 0}},
        {"queue": {"max_attempts": 0}},
        {"queue": {"backoff_s": -1}},
        {"provider": {"timeout_s": 0}},
        {"store": {"backend": "redis"}},
        {"storage": {"backend": "ftp"}},
        {"logging": {"text_preview_chars": -5}},
    ])
    def test_invalid_values_rejected(self, raw):
        """Out of range or unknown values raise ConfigValidationError."""
        with pytest.raises(ConfigValidationError):
            ServiceConfig.from_settings(Settings(raw=raw))

    def test_s3_requires_bucket(self):
        """The s3 backend cannot be used without a bucket."""
        with pytest.raises(ConfigValidationError, match="bucket"):
            ServiceConfig.from_settings(Settings(raw={"storage": {"backend": "s3"}}))

        cfg = ServiceConfig.from_settings(Settings(raw={"storage": {
            "backend": "s3", "bucket": "audio", "public_base_url": "https://cdn.example.com",
        }}))
        assert cfg.storage.bucket == "audio"

    def test_s3_requires_http_public_base_url(self):
        """Chunk and cache URLs are stored for good, so s3 needs a permanent public base."""
        with pytest.raises(ConfigValidationError, match="public_base_url"):
            ServiceConfig.from_settings(Settings(raw={"storage": {"backend": "s3", "bucket": "audio"}}))


class TestSettings:
    """Tests for Settings properties."""

    def test_provider_configured(self):
        assert Settings(raw={}).provider_configured is False
        assert Settings(raw={"provider": {"api_key": "abc"}}).provider_configured is True

    def test_default_voice(self):
        assert Settings(raw={}).default_voice == "Idera"
        assert Settings(raw={"provider": {"default_voice": "Tayo"}}).default_voice == "Tayo"

    def test_get_service_config(self):
        cfg = Settings(raw={"chunking": {"max_chars": 300}}).get_service_config()
        assert cfg.chunking.max_chars == 300


class TestLoadSettings:
    """Tests for load_settings()."""

    def test_missing_file_gives_defaults(self, tmp_path, monkeypatch):
        """A missing settings file is not an error."""
        monkeypatch.delenv("TTS_STREAM_PROVIDER_API_KEY", raising=False)
        settings = load_settings(str(tmp_path / "nope.yaml"))
        assert settings.raw == {}

    def test_yaml_file_is_loaded(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("chunking:\n  max_chars: 400\nqueue:\n  workers: 3\n", encoding="utf-8")
        cfg = load_settings(str(path)).get_service_config()
        assert cfg.chunking.max_chars == 400
        assert cfg.queue.workers == 3

    def test_env_overrides(self, tmp_path, monkeypatch):
        """Environment variables win over the file."""
        path = tmp_path / "settings.yaml"
        path.write_text("provider:\n  api_key: from-file\nstore:\n  backend: memory\n", encoding="utf-8")
        monkeypatch.setenv("TTS_STREAM_PROVIDER_API_KEY", "from-env")
        monkeypatch.setenv("TTS_STREAM_STORE_BACKEND", "sql")
        monkeypatch.setenv("TTS_STREAM_WORKERS", "7")

        settings = load_settings(str(path))
        assert settings.raw["provider"]["api_key"] == "from-env"
        cfg = settings.get_service_config()
        assert cfg.store.backend == "sql"
        assert cfg.queue.workers == 7

    def test_repository_settings_file_is_valid(self):
        """config/settings.yaml shipped with the repo validates."""
        from pathlib import Path

        path = Path(__file__).resolve().parent.parent / "config" / "settings.yaml"
        cfg = load_settings(str(path)).get_service_config()
        assert cfg.chunking.max_chars == 800
        assert cfg.storage.backend == "local"
