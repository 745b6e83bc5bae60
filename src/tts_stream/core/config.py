"""
Configuration Management for tts-stream.

This module provides centralized configuration handling with:
    - Default values (Defaults class)
    - Dataclass-based configuration sections
    - YAML file loading with environment variable overrides
    - Validation with meaningful error messages

Configuration Hierarchy (highest priority first):
    1. Environment variables (TTS_STREAM_PROVIDER_API_KEY, ...)
    2. YAML config file (config/settings.yaml, or $TTS_STREAM_SETTINGS)
    3. Defaults class values

Example settings.yaml:
    provider:
      api_url: https://yarngpt.ai/api/v1/tts
      default_voice: Idera
      timeout_s: 120

    storage:
      backend: s3
      bucket: tts-audio
      public_base_url: https://cdn.example.com

    store:
      backend: sql
      url: postgresql+psycopg://tts:tts@db/tts

    queue:
      workers: 4
      max_attempts: 2
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


class ConfigValidationError(Exception):
    """Raised when a configuration value is out of bounds or unknown."""
    pass


class Defaults:
    """
    Centralized default configuration values.

    Sections:
        - Chunking: window size for the sentence-aware chunker
        - Provider: upstream speech API
        - Storage: where generated audio is uploaded
        - Store: where job / cache / plan state lives
        - Queue: worker pool, retries, staleness
        - Hashing: content hash normalization
        - Logging: level and previews
    """

    # ─────────────────────────────────────────────────────────────────────────
    # Chunking
    # ─────────────────────────────────────────────────────────────────────────
    CHUNKING_MAX_CHARS = 800            # Upper bound on a single chunk

    # ─────────────────────────────────────────────────────────────────────────
    # Provider
    # ─────────────────────────────────────────────────────────────────────────
    PROVIDER_API_URL = "https://yarngpt.ai/api/v1/tts"
    PROVIDER_TIMEOUT_S = 120.0          # Slower than this counts as transient
    PROVIDER_DEFAULT_VOICE = "Idera"
    PROVIDER_DEFAULT_FORMAT = "mp3"

    # ─────────────────────────────────────────────────────────────────────────
    # Object storage
    # ─────────────────────────────────────────────────────────────────────────
    STORAGE_BACKEND = "local"           # local | s3
    STORAGE_BASE_DIR = "./storage"
    STORAGE_PUBLIC_BASE_URL = "/audio"
    STORAGE_CACHE_FOLDER = "tts-cache"
    STORAGE_CHUNK_FOLDER = "tts-chunks"
    STORAGE_MATERIAL_FOLDER = "tts-materials"

    # ─────────────────────────────────────────────────────────────────────────
    # Job store
    # ─────────────────────────────────────────────────────────────────────────
    STORE_BACKEND = "memory"            # memory | sql
    STORE_URL = "sqlite:///./tts-stream.db"

    # ─────────────────────────────────────────────────────────────────────────
    # Worker queue
    # ─────────────────────────────────────────────────────────────────────────
    QUEUE_WORKERS = 4
    QUEUE_MAX_ATTEMPTS = 2
    QUEUE_BACKOFF_S = 5.0               # Doubles per attempt
    QUEUE_RATE_LIMIT_BACKOFF_S = 60.0   # Base delay after a 429
    QUEUE_STALENESS_S = 120.0           # Material chunk stuck in flight
    QUEUE_JOB_STALENESS_S = 900.0       # Whole job stuck in flight

    # ─────────────────────────────────────────────────────────────────────────
    # Hashing
    # ─────────────────────────────────────────────────────────────────────────
    HASHING_COLLAPSE_WHITESPACE = False

    # ─────────────────────────────────────────────────────────────────────────
    # Logging
    # ─────────────────────────────────────────────────────────────────────────
    LOGGING_TEXT_PREVIEW_CHARS = 60
    LOGGING_LEVEL = 2                   # 1=MINIMAL, 2=NORMAL, 3=VERBOSE, 4=DEBUG


STORAGE_BACKENDS = ("local", "s3")
STORE_BACKENDS = ("memory", "sql")


@dataclass
class ChunkingConfig:
    """Chunk window; every chunk is at most ``max_chars`` characters."""
    max_chars: int = Defaults.CHUNKING_MAX_CHARS


@dataclass
class ProviderConfig:
    """
    Upstream speech API.

    ``api_key`` normally comes from TTS_STREAM_PROVIDER_API_KEY; without it
    the service reports itself as not configured.
    """
    api_url: str = Defaults.PROVIDER_API_URL
    api_key: Optional[str] = None
    timeout_s: float = Defaults.PROVIDER_TIMEOUT_S
    default_voice: str = Defaults.PROVIDER_DEFAULT_VOICE
    default_format: str = Defaults.PROVIDER_DEFAULT_FORMAT


@dataclass
class StorageConfig:
    """Object storage for generated audio."""
    backend: str = Defaults.STORAGE_BACKEND
    base_dir: str = Defaults.STORAGE_BASE_DIR
    public_base_url: str = Defaults.STORAGE_PUBLIC_BASE_URL
    cache_folder: str = Defaults.STORAGE_CACHE_FOLDER
    chunk_folder: str = Defaults.STORAGE_CHUNK_FOLDER
    material_folder: str = Defaults.STORAGE_MATERIAL_FOLDER
    bucket: Optional[str] = None
    endpoint_url: Optional[str] = None
    region: Optional[str] = None


@dataclass
class StoreConfig:
    """Persistence for jobs, caches and plans."""
    backend: str = Defaults.STORE_BACKEND
    url: str = Defaults.STORE_URL


@dataclass
class QueueConfig:
    """
    Worker pool and retry policy.

    A chunk gets ``max_attempts`` provider calls in total. Transient
    failures wait ``backoff_s * 2**(attempt-1)``; rate limited ones use
    ``rate_limit_backoff_s`` as the base instead.
    """
    workers: int = Defaults.QUEUE_WORKERS
    max_attempts: int = Defaults.QUEUE_MAX_ATTEMPTS
    backoff_s: float = Defaults.QUEUE_BACKOFF_S
    rate_limit_backoff_s: float = Defaults.QUEUE_RATE_LIMIT_BACKOFF_S
    staleness_s: float = Defaults.QUEUE_STALENESS_S
    job_staleness_s: float = Defaults.QUEUE_JOB_STALENESS_S


@dataclass
class HashingConfig:
    collapse_whitespace: bool = Defaults.HASHING_COLLAPSE_WHITESPACE


@dataclass
class LoggingConfig:
    """
    Logging configuration.

    Log levels:
        1 = MINIMAL: Startup, shutdown, failures only
        2 = NORMAL: Job lifecycle, cache decisions (default)
        3 = VERBOSE: Per-chunk timing, queue activity
        4 = DEBUG: Store internals, retry scheduling
    """
    text_preview_chars: int = Defaults.LOGGING_TEXT_PREVIEW_CHARS
    level: int = Defaults.LOGGING_LEVEL


@dataclass
class ServiceConfig:
    """
    Validated configuration for SpeechService.

    Usage:
        settings = load_settings("config/settings.yaml")
        config = ServiceConfig.from_settings(settings)
        print(config.queue.workers)
    """
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    hashing: HashingConfig = field(default_factory=HashingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ServiceConfig":
        """
        Build a ServiceConfig from raw Settings, applying defaults.

        Raises:
            ConfigValidationError: If any value fails validation.
        """
        raw = settings.raw

        # ─────────────────────────────────────────────────────────────────────
        # Chunking
        # ─────────────────────────────────────────────────────────────────────
        chunking_raw = raw.get("chunking", {}) or {}
        chunking = ChunkingConfig(
            max_chars=int(chunking_raw.get("max_chars", Defaults.CHUNKING_MAX_CHARS)),
        )
        cls._validate_range("chunking.max_chars", chunking.max_chars, 2, 100_000)

        # ─────────────────────────────────────────────────────────────────────
        # Provider
        # ─────────────────────────────────────────────────────────────────────
        provider_raw = raw.get("provider", {}) or {}
        provider = ProviderConfig(
            api_url=str(provider_raw.get("api_url", Defaults.PROVIDER_API_URL)),
            api_key=provider_raw.get("api_key") or None,
            timeout_s=float(provider_raw.get("timeout_s", Defaults.PROVIDER_TIMEOUT_S)),
            default_voice=str(provider_raw.get("default_voice", Defaults.PROVIDER_DEFAULT_VOICE)),
            default_format=str(provider_raw.get("default_format", Defaults.PROVIDER_DEFAULT_FORMAT)).lower(),
        )
        cls._validate_positive("provider.timeout_s", provider.timeout_s)

        # ─────────────────────────────────────────────────────────────────────
        # Object storage
        # ─────────────────────────────────────────────────────────────────────
        storage_raw = raw.get("storage", {}) or {}
        storage = StorageConfig(
            backend=str(storage_raw.get("backend", Defaults.STORAGE_BACKEND)).lower(),
            base_dir=str(storage_raw.get("base_dir", Defaults.STORAGE_BASE_DIR)),
            public_base_url=str(storage_raw.get("public_base_url", Defaults.STORAGE_PUBLIC_BASE_URL)).rstrip("/"),
            cache_folder=str(storage_raw.get("cache_folder", Defaults.STORAGE_CACHE_FOLDER)),
            chunk_folder=str(storage_raw.get("chunk_folder", Defaults.STORAGE_CHUNK_FOLDER)),
            material_folder=str(storage_raw.get("material_folder", Defaults.STORAGE_MATERIAL_FOLDER)),
            bucket=storage_raw.get("bucket"),
            endpoint_url=storage_raw.get("endpoint_url"),
            region=storage_raw.get("region"),
        )
        cls._validate_choice("storage.backend", storage.backend, STORAGE_BACKENDS)
        if storage.backend == "s3" and not storage.bucket:
            raise ConfigValidationError("storage.bucket is required when storage.backend is 's3'")
        if storage.backend == "s3" and not storage.public_base_url.startswith(("http://", "https://")):
            # Stored URLs are served from caches indefinitely; they must not expire
            raise ConfigValidationError(
                "storage.public_base_url must be an http(s) URL when storage.backend is 's3'"
            )

        # ─────────────────────────────────────────────────────────────────────
        # Job store
        # ─────────────────────────────────────────────────────────────────────
        store_raw = raw.get("store", {}) or {}
        store = StoreConfig(
            backend=str(store_raw.get("backend", Defaults.STORE_BACKEND)).lower(),
            url=str(store_raw.get("url", Defaults.STORE_URL)),
        )
        cls._validate_choice("store.backend", store.backend, STORE_BACKENDS)

        # ─────────────────────────────────────────────────────────────────────
        # Worker queue
        # ─────────────────────────────────────────────────────────────────────
        queue_raw = raw.get("queue", {}) or {}
        queue = QueueConfig(
            workers=int(queue_raw.get("workers", Defaults.QUEUE_WORKERS)),
            max_attempts=int(queue_raw.get("max_attempts", Defaults.QUEUE_MAX_ATTEMPTS)),
            backoff_s=float(queue_raw.get("backoff_s", Defaults.QUEUE_BACKOFF_S)),
            rate_limit_backoff_s=float(queue_raw.get("rate_limit_backoff_s", Defaults.QUEUE_RATE_LIMIT_BACKOFF_S)),
            staleness_s=float(queue_raw.get("staleness_s", Defaults.QUEUE_STALENESS_S)),
            job_staleness_s=float(queue_raw.get("job_staleness_s", Defaults.QUEUE_JOB_STALENESS_S)),
        )
        cls._validate_positive("queue.workers", queue.workers)
        cls._validate_positive("queue.max_attempts", queue.max_attempts)
        cls._validate_non_negative("queue.backoff_s", queue.backoff_s)
        cls._validate_non_negative("queue.rate_limit_backoff_s", queue.rate_limit_backoff_s)
        cls._validate_positive("queue.staleness_s", queue.staleness_s)
        cls._validate_positive("queue.job_staleness_s", queue.job_staleness_s)

        # ─────────────────────────────────────────────────────────────────────
        # Hashing
        # ─────────────────────────────────────────────────────────────────────
        hashing_raw = raw.get("hashing", {}) or {}
        hashing = HashingConfig(
            collapse_whitespace=bool(hashing_raw.get("collapse_whitespace", Defaults.HASHING_COLLAPSE_WHITESPACE)),
        )

        # ─────────────────────────────────────────────────────────────────────
        # Logging
        # ─────────────────────────────────────────────────────────────────────
        from tts_stream.core.logging.levels import coerce_level

        logging_raw = raw.get("logging", {}) or {}
        logging_cfg = LoggingConfig(
            text_preview_chars=int(logging_raw.get("text_preview_chars", Defaults.LOGGING_TEXT_PREVIEW_CHARS)),
            level=int(coerce_level(logging_raw.get("level", Defaults.LOGGING_LEVEL))),
        )
        cls._validate_non_negative("logging.text_preview_chars", logging_cfg.text_preview_chars)
        cls._validate_range("logging.level", logging_cfg.level, 1, 4)

        return cls(
            chunking=chunking,
            provider=provider,
            storage=storage,
            store=store,
            queue=queue,
            hashing=hashing,
            logging=logging_cfg,
        )

    @staticmethod
    def _validate_positive(name: str, value: int | float) -> None:
        if value <= 0:
            raise ConfigValidationError(f"{name} must be positive, got {value}")

    @staticmethod
    def _validate_non_negative(name: str, value: int | float) -> None:
        if value < 0:
            raise ConfigValidationError(f"{name} must be non-negative, got {value}")

    @staticmethod
    def _validate_range(name: str, value: int | float, min_val: int | float, max_val: int | float) -> None:
        if not (min_val <= value <= max_val):
            raise ConfigValidationError(f"{name} must be between {min_val} and {max_val}, got {value}")

    @staticmethod
    def _validate_choice(name: str, value: str, choices: tuple) -> None:
        if value not in choices:
            raise ConfigValidationError(f"{name} must be one of {', '.join(choices)}, got {value!r}")


@dataclass(frozen=True)
class Settings:
    """
    Immutable settings container loaded from YAML.

    Use get_service_config() for the validated, typed view.
    """
    raw: Dict[str, Any]

    @property
    def default_voice(self) -> str:
        return str((self.raw.get("provider") or {}).get("default_voice", Defaults.PROVIDER_DEFAULT_VOICE))

    @property
    def store_backend(self) -> str:
        return str((self.raw.get("store") or {}).get("backend", Defaults.STORE_BACKEND)).lower()

    @property
    def provider_configured(self) -> bool:
        """True when an API key is available for the speech provider."""
        return bool((self.raw.get("provider") or {}).get("api_key"))

    def get_service_config(self) -> ServiceConfig:
        return ServiceConfig.from_settings(self)


# Environment variable -> (section, key)
_ENV_OVERRIDES = {
    "TTS_STREAM_PROVIDER_API_KEY": ("provider", "api_key"),
    "TTS_STREAM_PROVIDER_URL": ("provider", "api_url"),
    "TTS_STREAM_STORE_BACKEND": ("store", "backend"),
    "TTS_STREAM_STORE_URL": ("store", "url"),
    "TTS_STREAM_STORAGE_BACKEND": ("storage", "backend"),
    "TTS_STREAM_STORAGE_BUCKET": ("storage", "bucket"),
    "TTS_STREAM_WORKERS": ("queue", "workers"),
}


def load_settings(path: str = "config/settings.yaml") -> Settings:
    """
    Load settings from a YAML file and apply environment overrides.

    A missing file is not an error: the service then runs on Defaults
    plus whatever the environment provides.

    Environment variable overrides:
        - TTS_STREAM_PROVIDER_API_KEY / TTS_STREAM_PROVIDER_URL
        - TTS_STREAM_STORE_BACKEND / TTS_STREAM_STORE_URL
        - TTS_STREAM_STORAGE_BACKEND / TTS_STREAM_STORAGE_BUCKET
        - TTS_STREAM_WORKERS

    Args:
        path: Path to the YAML configuration file.

    Returns:
        Settings object with loaded configuration.
    """
    raw: Dict[str, Any] = {}
    p = Path(path)
    if p.exists():
        with p.open("r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            section_raw = raw.get(section) or {}
            section_raw[key] = value
            raw[section] = section_raw

    return Settings(raw=raw)
