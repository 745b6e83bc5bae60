"""
SpeechService - Chunked, Cached Speech Generation.

This module provides the SpeechService class, the single entry point used by
the API and the CLI. It owns the job store, the speech provider, object
storage and the worker queue, and wires them together.

Request paths:
    generate            Chunk -> Synthesize each chunk -> Concatenate -> bytes
    generate_cached     Hash -> Cache lookup -> (miss) Synthesize -> Upload -> Insert entry
    start_job           Hash -> Find or create job -> (created) Enqueue chunk tasks
    start_material      Hash -> Plan (recompute iff hash changed) -> Claim -> Enqueue by priority

Job and material requests never wait for the provider: they return as soon
as the work is queued and clients poll ``get_job_status`` /
``get_material_status``.

Error Handling:
    - ValidationError: bad input or unconfigured provider; nothing is created
    - NotFoundError: unknown job id / material without a plan
    - ProviderError, StorageError: only raised by the synchronous paths
      (generate, generate_cached); queued work records them on the job or
      chunk row instead

Example:
    >>> from tts_stream.core.config import Settings
    >>> from tts_stream.services.speech_service import SpeechService
    >>>
    >>> service = SpeechService(Settings(raw={"provider": {"api_key": "..."}}))
    >>> view = service.start_job("A long article ...", voice="Emma")
    >>> service.get_job_status(view.job_id).status
    'pending'
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from tts_stream.core.config import ServiceConfig, Settings
from tts_stream.core.logging import debug, fail, get_logger, info, success, verbose
from tts_stream.core.metrics import metrics
from tts_stream.services.errors import ErrorCode, NotFoundError, TTSError, ValidationError
from tts_stream.services.tasks import ChunkContext, JobChunkTask, MaterialChunkTask, synthesize_chunk
from tts_stream.services.validators import (
    validate_format,
    validate_material_id,
    validate_start_chunk,
    validate_text,
)
from tts_stream.store import (
    ChunkStatus,
    GenerationJob,
    JobStatus,
    JobStore,
    MaterialChunkPlan,
    WholeTextCacheEntry,
    create_store,
)
from tts_stream.tts.chunker import chunk_ranges, chunk_texts, ranges_from_boundaries
from tts_stream.tts.provider import BaseSpeechProvider, create_provider
from tts_stream.tts.queue import Priority, RetryPolicy, WorkerQueue
from tts_stream.tts.storage import ObjectStorage, create_storage
from tts_stream.tts.voices import VOICES, content_type_for, resolve_voice
from tts_stream.utils.text import content_hash, prepare_text, preview
from tts_stream.utils.timeit import timeit

_LOG = get_logger("tts-stream.service")

# Status reported for material chunks that have no row for the voice yet
NOT_REQUESTED = "not_requested"


# =============================================================================
# Result types
# =============================================================================

@dataclass
class GenerateResult:
    """Audio produced synchronously by ``generate``."""
    audio: bytes
    content_type: str
    voice: str
    format: str
    chunks: int
    seconds: float


@dataclass
class CachedAudioResult:
    audio_url: str
    text_hash: str
    voice: str
    format: str
    cached: bool
    access_count: int

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class JobView:
    """
    Poll-friendly view of a GenerationJob.

    Attributes:
        chunk_urls: Populated URLs only, as ``[{index, url}]``.
        cached: True when the request was answered by a completed job.
        created: True when this request created the job.
    """
    job_id: str
    status: str
    voice: str
    format: str
    total_chunks: int
    completed_chunks: int
    chunk_urls: List[Dict[str, Any]]
    error_message: Optional[str] = None
    cached: bool = False
    created: bool = False

    @classmethod
    def from_job(cls, job: GenerationJob, cached: bool = False, created: bool = False) -> "JobView":
        return cls(
            job_id=job.id,
            status=job.status.value,
            voice=job.voice,
            format=job.format,
            total_chunks=job.total_chunks,
            completed_chunks=job.completed_chunks,
            chunk_urls=job.populated_urls(),
            error_message=job.error_message,
            cached=cached,
            created=created,
        )

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class MaterialView:
    material_id: str
    voice: str
    content_hash: str
    total_chunks: int
    chunks: List[Dict[str, Any]]
    chunk_boundaries: List[Dict[str, int]]
    start_chunk: Optional[int] = None
    queued: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


# =============================================================================
# Service
# =============================================================================

class SpeechService:
    """
    Orchestrates chunking, caching, job tracking and the worker queue.

    Collaborators can be injected (tests use a fake provider and storage);
    anything not given is built from ``settings``.

    Thread-safety:
        All shared state lives in the JobStore, whose operations are atomic.
        The service itself keeps no mutable request state.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[JobStore] = None,
        provider: Optional[BaseSpeechProvider] = None,
        storage: Optional[ObjectStorage] = None,
        queue: Optional[WorkerQueue] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._settings = settings
        self._config: ServiceConfig = ServiceConfig.from_settings(settings)
        cfg = self._config

        self._store = store or create_store(cfg.store, clock=clock)
        self._provider = provider or create_provider(cfg.provider)
        self._storage = storage or create_storage(cfg.storage)
        self._queue = queue or WorkerQueue(
            workers=cfg.queue.workers,
            policy=RetryPolicy(
                max_attempts=cfg.queue.max_attempts,
                backoff_s=cfg.queue.backoff_s,
                rate_limit_backoff_s=cfg.queue.rate_limit_backoff_s,
            ),
        )
        self._queue.start()

        self._ctx = ChunkContext(
            store=self._store,
            provider=self._provider,
            storage=self._storage,
            chunk_folder=cfg.storage.chunk_folder,
            material_folder=cfg.storage.material_folder,
        )

        info(_LOG, "service_ready",
             provider=self._provider.name,
             configured=self._provider.is_configured(),
             store=self._store.name,
             storage=cfg.storage.backend,
             workers=cfg.queue.workers,
             max_chars=cfg.chunking.max_chars)

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def config(self) -> ServiceConfig:
        return self._config

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def queue(self) -> WorkerQueue:
        return self._queue

    def is_configured(self) -> bool:
        return self._provider.is_configured()

    def list_voices(self) -> Dict[str, Any]:
        return {
            "voices": [v.to_dict() for v in VOICES],
            "default_voice": resolve_voice(self._config.provider.default_voice),
        }

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_provider(self) -> None:
        if not self._provider.is_configured():
            raise ValidationError(
                "Speech provider is not configured",
                ErrorCode.PROVIDER_NOT_CONFIGURED,
            )

    def _resolve(self, voice: Optional[str], fmt: Optional[str]) -> tuple[str, str]:
        return (
            resolve_voice(voice, self._config.provider.default_voice),
            validate_format(fmt, self._config.provider.default_format),
        )

    def _prepare(self, text: Optional[str]) -> str:
        """Validate and apply the configured hashing normalization."""
        text = validate_text(text)
        return prepare_text(text, self._config.hashing.collapse_whitespace)

    def _synthesize_all(self, text: str, voice: str, fmt: str) -> tuple[bytes, int]:
        """Synthesize every chunk in order and concatenate the audio."""
        ranges = chunk_ranges(text, self._config.chunking.max_chars).ranges
        parts = []
        for i, chunk in enumerate(chunk_texts(text, ranges)):
            debug(_LOG, "synth_chunk", index=i, chars=len(chunk))
            parts.append(synthesize_chunk(self._provider, chunk, voice, fmt))
        return b"".join(parts), len(ranges)

    # =========================================================================
    # Public API: generate()
    # =========================================================================

    def generate(self, text: Optional[str], voice: Optional[str] = None, fmt: Optional[str] = None) -> GenerateResult:
        """
        Synthesize ``text`` synchronously and return the audio bytes.

        Nothing is cached or stored.

        Raises:
            ValidationError: Bad input or unconfigured provider.
            ProviderError: The provider call failed.
        """
        text = validate_text(text)
        voice, fmt = self._resolve(voice, fmt)
        self._require_provider()

        info(_LOG, "generate", voice=voice, format=fmt, chars=len(text),
             text=preview(text, self._config.logging.text_preview_chars))
        try:
            with timeit("generate") as t:
                audio, chunks = self._synthesize_all(text, voice, fmt)
        except TTSError as e:
            fail(_LOG, "generate_failed", error=e.message, code=e.code)
            metrics.record_request("generate", "error")
            raise

        metrics.record_request("generate", "success")
        success(_LOG, "generated", bytes=len(audio), chunks=chunks, seconds=round(t.seconds, 3))
        return GenerateResult(
            audio=audio,
            content_type=content_type_for(fmt),
            voice=voice,
            format=fmt,
            chunks=chunks,
            seconds=t.seconds,
        )

    # =========================================================================
    # Public API: generate_cached()
    # =========================================================================

    def generate_cached(
        self,
        text: Optional[str],
        voice: Optional[str] = None,
        fmt: Optional[str] = None,
    ) -> CachedAudioResult:
        """
        One-shot synthesis through the whole-text cache.

        A hit returns the stored URL without calling the provider and bumps
        the entry's access counters. A miss synthesizes, uploads and inserts
        the entry; if another request inserted it first, that entry wins.
        """
        text = self._prepare(text)
        voice, fmt = self._resolve(voice, fmt)
        text_hash = content_hash(text)

        entry = self._store.get_cache_entry(text_hash, voice, touch=True)
        if entry is not None:
            metrics.record_cache("hit", tier="whole_text")
            metrics.record_request("generate_cached", "cache_hit")
            info(_LOG, "cache_hit", text_hash=text_hash[:12], voice=voice, access_count=entry.access_count)
            return CachedAudioResult(
                audio_url=entry.audio_url,
                text_hash=text_hash,
                voice=voice,
                format=entry.format,
                cached=True,
                access_count=entry.access_count,
            )

        metrics.record_cache("miss", tier="whole_text")
        self._require_provider()
        info(_LOG, "cache_miss", text_hash=text_hash[:12], voice=voice, chars=len(text))

        try:
            with timeit("generate_cached") as t:
                audio, chunks = self._synthesize_all(text, voice, fmt)
                uploaded = self._storage.upload(audio, self._config.storage.cache_folder, fmt,
                                                f"{text_hash}_{voice}")
        except TTSError as e:
            fail(_LOG, "generate_cached_failed", error=e.message, code=e.code)
            metrics.record_request("generate_cached", "error")
            raise

        now = self._store.now()
        stored = self._store.put_cache_entry(WholeTextCacheEntry(
            text_hash=text_hash,
            voice=voice,
            audio_url=uploaded.url,
            storage_key=uploaded.key,
            format=fmt,
            access_count=1,
            last_accessed_at=now,
            created_at=now,
        ))
        metrics.record_request("generate_cached", "created")
        success(_LOG, "cached", text_hash=text_hash[:12], voice=voice, chunks=chunks,
                bytes=len(audio), seconds=round(t.seconds, 3))
        return CachedAudioResult(
            audio_url=stored.audio_url,
            text_hash=text_hash,
            voice=voice,
            format=stored.format,
            cached=False,
            access_count=stored.access_count,
        )

    # =========================================================================
    # Public API: start_job() / get_job_status()
    # =========================================================================

    def start_job(
        self,
        text: Optional[str],
        voice: Optional[str] = None,
        fmt: Optional[str] = None,
        requested_by: Optional[str] = None,
    ) -> JobView:
        """
        Start (or join) chunked background generation for ``text``.

        Returns immediately:
            - completed job for the same text and voice: all URLs, ``cached=True``
            - in-flight job: the same job id, nothing enqueued
            - otherwise: a new pending job with one task per chunk enqueued
        """
        text = self._prepare(text)
        voice, fmt = self._resolve(voice, fmt)
        self._require_provider()
        text_hash = content_hash(text)

        ranges = chunk_ranges(text, self._config.chunking.max_chars).ranges
        job, created = self._store.find_or_create_job(
            text_hash,
            voice,
            fmt,
            total_chunks=len(ranges),
            requested_by=requested_by,
            stale_after_s=self._config.queue.job_staleness_s,
        )

        if not created:
            cached = job.status == JobStatus.COMPLETED
            outcome = "cache_hit" if cached else "joined"
            metrics.record_cache("hit" if cached else "miss", tier="job")
            metrics.record_request("start_job", outcome)
            info(_LOG, "job_" + outcome, job_id=job.id, status=job.status.value, voice=voice)
            return JobView.from_job(job, cached=cached)

        metrics.record_cache("miss", tier="job")
        for r, chunk in zip(ranges, chunk_texts(text, ranges)):
            self._queue.submit(JobChunkTask(self._ctx, job.id, r.index, chunk, voice, fmt))
        metrics.record_request("start_job", "created")
        info(_LOG, "job_created", job_id=job.id, chunks=len(ranges), voice=voice, format=fmt,
             requested_by=requested_by, text=preview(text, self._config.logging.text_preview_chars))
        return JobView.from_job(job, created=True)

    def get_job_status(self, job_id: str) -> JobView:
        job = self._store.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job '{job_id}' not found", details={"job_id": job_id})
        return JobView.from_job(job)

    # =========================================================================
    # Public API: materials
    # =========================================================================

    def _ensure_plan(self, material_id: str, content: str, text_hash: str) -> MaterialChunkPlan:
        plan = self._store.get_plan(material_id)
        if plan is not None and plan.content_hash == text_hash:
            return plan
        ranges = chunk_ranges(content, self._config.chunking.max_chars).ranges
        plan, replaced = self._store.save_plan(material_id, text_hash, [r.to_dict() for r in ranges])
        if replaced:
            info(_LOG, "plan_saved", material_id=material_id, content_hash=text_hash[:12],
                 chunks=plan.total_chunks)
        return plan

    def start_material_generation(
        self,
        material_id: str,
        content: Optional[str],
        voice: Optional[str] = None,
        start_chunk: Optional[int] = 0,
        fmt: Optional[str] = None,
    ) -> MaterialView:
        """
        Queue every chunk of a material that still needs audio for ``voice``.

        Chunks from ``start_chunk`` onward are queued in the foreground in
        reading order; earlier chunks follow in the background, nearest
        first. Completed and fresh in-flight chunks are left alone, so a
        second reader never re-triggers work already under way.

        Content is hashed as given: the stored boundaries are offsets into
        the raw content.
        """
        material_id = validate_material_id(material_id)
        content = validate_text(content, field="content")
        voice, fmt = self._resolve(voice, fmt)
        self._require_provider()
        text_hash = content_hash(content)

        plan = self._ensure_plan(material_id, content, text_hash)
        start = validate_start_chunk(start_chunk, plan.total_chunks)
        ranges = ranges_from_boundaries(plan.chunk_boundaries)

        order = list(range(start, plan.total_chunks)) + list(range(start - 1, -1, -1))
        queued: List[int] = []
        for index in order:
            r = ranges[index]
            if not self._store.claim_material_chunk(
                material_id, index, voice, r.start, r.end, text_hash, self._config.queue.staleness_s
            ):
                continue
            self._queue.submit(MaterialChunkTask(
                self._ctx,
                material_id,
                text_hash,
                index,
                content[r.start:r.end],
                voice,
                fmt,
                Priority.for_chunk(index, start),
            ))
            queued.append(index)

        for index in order:
            metrics.record_cache("miss" if index in queued else "hit", tier="material_chunk")
        metrics.record_request("start_material", "queued" if queued else "cache_hit")
        info(_LOG, "material_started", material_id=material_id, voice=voice, start=start,
             chunks=plan.total_chunks, queued=len(queued))

        view = self._material_view(plan, voice)
        view.start_chunk = start
        view.queued = queued
        return view

    def get_material_status(self, material_id: str, voice: Optional[str] = None) -> MaterialView:
        voice = resolve_voice(voice, self._config.provider.default_voice)
        plan = self._store.get_plan(material_id)
        if plan is None:
            raise NotFoundError(f"No chunk plan for material '{material_id}'",
                                details={"material_id": material_id})
        return self._material_view(plan, voice)

    def _material_view(self, plan: MaterialChunkPlan, voice: str) -> MaterialView:
        rows = {row.chunk_index: row for row in self._store.list_material_chunks(plan.material_id, voice)}
        chunks: List[Dict[str, Any]] = []
        for r in ranges_from_boundaries(plan.chunk_boundaries):
            row = rows.get(r.index)
            chunks.append({
                "index": r.index,
                "status": row.status.value if row else NOT_REQUESTED,
                "audio_url": row.audio_url if row and row.status == ChunkStatus.COMPLETED else None,
                "char_start": r.start,
                "char_end": r.end,
                "error_message": row.error_message if row else None,
            })
        return MaterialView(
            material_id=plan.material_id,
            voice=voice,
            content_hash=plan.content_hash,
            total_chunks=plan.total_chunks,
            chunks=chunks,
            chunk_boundaries=list(plan.chunk_boundaries),
        )

    # =========================================================================
    # Public API: health / lifecycle
    # =========================================================================

    def get_health_info(self) -> Dict[str, Any]:
        """
        Health and status information for ``/health``.

        Returns a dictionary with provider, store, storage, queue and
        chunking details.
        """
        store_ok = self._store.ping()
        return {
            "ok": store_ok,
            "provider": {
                "name": self._provider.name,
                "configured": self._provider.is_configured(),
                "default_voice": resolve_voice(self._config.provider.default_voice),
            },
            "store": {"backend": self._store.name, "ok": store_ok},
            "storage": {"backend": self._config.storage.backend},
            "queue": {"running": self._queue.running, **self._queue.stats().to_dict()},
            "chunking": {"max_chars": self._config.chunking.max_chars},
        }

    def shutdown(self) -> None:
        verbose(_LOG, "service_shutdown")
        self._queue.shutdown()
        self._store.close()


# =============================================================================
# Global Service Singleton
# =============================================================================

_service: Optional[SpeechService] = None
_service_lock = threading.Lock()


def get_service(settings: Settings) -> SpeechService:
    """
    Get or create the global SpeechService instance.

    Thread-safe lazy singleton, created on first call.
    """
    global _service
    if _service is None:
        with _service_lock:
            if _service is None:
                _service = SpeechService(settings)
    return _service


def reset_service() -> None:
    """Shut down and forget the global service (used by tests)."""
    global _service
    with _service_lock:
        if _service is not None:
            _service.shutdown()
        _service = None
