"""
JobStore interface.

Every method is a single atomic step against the backing store. Callers
never combine a read and a write to make a decision the store could make
itself: "is there an in-flight job for this text?", "was this the last
chunk?" and "may I regenerate this chunk?" are all answered inside the
store, so concurrent requests and workers cannot race each other.

Implementations:
    - MemoryJobStore (store/memory.py): one lock around plain dicts
    - SqlJobStore (store/sql.py): conditional UPDATEs and unique keys

See Also:
    - services/tasks.py and services/speech_service.py: the callers
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from tts_stream.core.config import StoreConfig

from .models import (
    GenerationJob,
    JobStatus,
    MaterialChunkAudio,
    MaterialChunkPlan,
    WholeTextCacheEntry,
)

Clock = Callable[[], float]

# error_message of a stale job replaced by a newer one
ABANDONED_MESSAGE = "Abandoned: no progress before the staleness threshold; superseded by a new job"


@dataclass(frozen=True)
class ChunkCompletion:
    """
    Outcome of recording one finished job chunk.

    Attributes:
        recorded: False when the chunk URL was already set (duplicate run).
        completed_chunks: Counter value after this call.
        total_chunks: Chunk count of the job.
        job_completed: True for exactly one call per job, the one that
            moved the job to ``completed``.
    """
    recorded: bool
    completed_chunks: int
    total_chunks: int
    job_completed: bool


class JobStore:
    """Abstract job / cache / plan store."""

    name: str = "base"

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or time.time

    def now(self) -> float:
        return self._clock()

    # =========================================================================
    # Generation jobs
    # =========================================================================

    def find_or_create_job(
        self,
        text_hash: str,
        voice: str,
        fmt: str,
        total_chunks: int,
        requested_by: Optional[str] = None,
        stale_after_s: float = 900.0,
    ) -> Tuple[GenerationJob, bool]:
        """
        Return the current job for ``(text_hash, voice)`` or start a new one.

        The current job is returned as-is when it is completed or in flight
        and fresh. A failed, rate limited or stale job is superseded by a new
        pending job. In the same step a stale job is moved to ``failed`` with
        ``ABANDONED_MESSAGE``, so its queued chunk tasks skip. At most one
        in-flight job exists per key.

        Returns:
            ``(job, created)``; ``created`` is True only for a new job.
        """
        raise NotImplementedError

    def get_job(self, job_id: str) -> Optional[GenerationJob]:
        raise NotImplementedError

    def mark_job_processing(self, job_id: str) -> bool:
        """pending -> processing. False if the job was not pending."""
        raise NotImplementedError

    def complete_job_chunk(self, job_id: str, chunk_index: int, url: str) -> ChunkCompletion:
        """
        Record chunk ``chunk_index`` as done.

        In one atomic step: set the chunk URL if unset, increment
        ``completed_chunks`` and, if the new value equals ``total_chunks``,
        move the job to completed. A second call for the same chunk changes
        nothing and reports ``recorded=False``.
        """
        raise NotImplementedError

    def mark_job_terminal(self, job_id: str, status: JobStatus, error_message: Optional[str] = None) -> bool:
        """
        Move an in-flight job to ``failed`` or ``rate_limited``.

        Returns False when the job was already terminal.
        """
        raise NotImplementedError

    # =========================================================================
    # Whole-text cache
    # =========================================================================

    def get_cache_entry(self, text_hash: str, voice: str, touch: bool = True) -> Optional[WholeTextCacheEntry]:
        """Look up an entry; ``touch`` bumps access_count / last_accessed_at atomically."""
        raise NotImplementedError

    def put_cache_entry(self, entry: WholeTextCacheEntry) -> WholeTextCacheEntry:
        """Insert unless an entry exists for the key; returns the stored entry."""
        raise NotImplementedError

    # =========================================================================
    # Material plans and chunk audio
    # =========================================================================

    def get_plan(self, material_id: str) -> Optional[MaterialChunkPlan]:
        raise NotImplementedError

    def save_plan(
        self,
        material_id: str,
        content_hash: str,
        boundaries: List[dict],
    ) -> Tuple[MaterialChunkPlan, bool]:
        """
        Store the plan for ``material_id`` unless it already has ``content_hash``.

        Replacing a plan with a different hash deletes every
        MaterialChunkAudio row of the material, for every voice.

        Returns:
            ``(plan, replaced)``; ``replaced`` is False when the existing
            plan already matched.
        """
        raise NotImplementedError

    def claim_material_chunk(
        self,
        material_id: str,
        chunk_index: int,
        voice: str,
        char_start: int,
        char_end: int,
        content_hash: str,
        stale_after_s: float,
    ) -> bool:
        """
        Reserve a chunk for generation.

        True when the row was absent, failed or stale; it is now pending with
        a fresh ``updated_at`` and the caller must enqueue it. False when the
        chunk is completed or already in flight, or when the plan no longer
        has ``content_hash`` (another request saved a newer version).
        """
        raise NotImplementedError

    def begin_material_chunk(self, material_id: str, chunk_index: int, voice: str, content_hash: str) -> bool:
        """pending -> processing, only while the plan still has ``content_hash``."""
        raise NotImplementedError

    def complete_material_chunk(
        self,
        material_id: str,
        chunk_index: int,
        voice: str,
        url: str,
        content_hash: str,
    ) -> bool:
        """
        Set the chunk URL and mark it completed.

        No-op (False) if it is already completed, the row is gone or the plan
        changed since the task was queued.
        """
        raise NotImplementedError

    def fail_material_chunk(self, material_id: str, chunk_index: int, voice: str, error_message: str) -> bool:
        """Mark an in-flight chunk failed. Completed chunks are left alone."""
        raise NotImplementedError

    def get_material_chunk(self, material_id: str, chunk_index: int, voice: str) -> Optional[MaterialChunkAudio]:
        raise NotImplementedError

    def list_material_chunks(self, material_id: str, voice: str) -> List[MaterialChunkAudio]:
        """Chunk rows for one voice, ordered by index."""
        raise NotImplementedError

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass


def create_store(config: StoreConfig, clock: Optional[Clock] = None) -> JobStore:
    """Build the store named by ``config.backend``."""
    if config.backend == "sql":
        from .sql import SqlJobStore
        return SqlJobStore(config.url, clock=clock)
    from .memory import MemoryJobStore
    return MemoryJobStore(clock=clock)
