"""
In-process JobStore.

All state lives in dicts behind a single lock, so each public method is
one critical section. Callers receive copies; mutating a returned object
never changes the store.

Suited to a single process (development, tests, one-replica deployments).
State is lost on restart.
"""
from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from tts_stream.core.logging import debug, get_logger

from .base import ABANDONED_MESSAGE, ChunkCompletion, Clock, JobStore
from .models import (
    IN_FLIGHT_JOB_STATUSES,
    ChunkStatus,
    GenerationJob,
    JobStatus,
    MaterialChunkAudio,
    MaterialChunkPlan,
    WholeTextCacheEntry,
)

_LOG = get_logger("tts-stream.store.memory")

ChunkKey = Tuple[str, int, str]


def _copy_job(job: GenerationJob) -> GenerationJob:
    return replace(job, chunk_urls=list(job.chunk_urls))


class MemoryJobStore(JobStore):
    name = "memory"

    def __init__(self, clock: Optional[Clock] = None):
        super().__init__(clock)
        self._lock = threading.Lock()
        self._jobs: Dict[str, GenerationJob] = {}
        self._job_slots: Dict[Tuple[str, str], str] = {}
        self._cache: Dict[Tuple[str, str], WholeTextCacheEntry] = {}
        self._plans: Dict[str, MaterialChunkPlan] = {}
        self._chunks: Dict[ChunkKey, MaterialChunkAudio] = {}

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
        with self._lock:
            now = self.now()
            current_id = self._job_slots.get((text_hash, voice))
            current = self._jobs.get(current_id) if current_id else None
            if current is not None:
                if current.status == JobStatus.COMPLETED:
                    return _copy_job(current), False
                if current.status in IN_FLIGHT_JOB_STATUSES:
                    if not current.is_stale(now, stale_after_s):
                        return _copy_job(current), False
                    current.status = JobStatus.FAILED
                    current.error_message = ABANDONED_MESSAGE
                    current.updated_at = now
                debug(_LOG, "job_superseded", job_id=current.id, status=current.status.value)

            job = GenerationJob(
                id=str(uuid.uuid4()),
                text_hash=text_hash,
                voice=voice,
                format=fmt,
                status=JobStatus.PENDING,
                total_chunks=total_chunks,
                chunk_urls=[None] * total_chunks,
                requested_by=requested_by,
                created_at=now,
                updated_at=now,
            )
            self._jobs[job.id] = job
            self._job_slots[(text_hash, voice)] = job.id
            return _copy_job(job), True

    def get_job(self, job_id: str) -> Optional[GenerationJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return _copy_job(job) if job else None

    def mark_job_processing(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PENDING:
                return False
            job.status = JobStatus.PROCESSING
            job.updated_at = self.now()
            return True

    def complete_job_chunk(self, job_id: str, chunk_index: int, url: str) -> ChunkCompletion:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise KeyError(job_id)
            if not 0 <= chunk_index < job.total_chunks:
                raise IndexError(f"chunk {chunk_index} out of range for job {job_id}")

            if job.chunk_urls[chunk_index] is not None:
                return ChunkCompletion(False, job.completed_chunks, job.total_chunks, False)

            job.chunk_urls[chunk_index] = url
            job.completed_chunks += 1
            job.updated_at = self.now()

            flipped = False
            if job.completed_chunks == job.total_chunks and job.status in IN_FLIGHT_JOB_STATUSES:
                job.status = JobStatus.COMPLETED
                flipped = True
            return ChunkCompletion(True, job.completed_chunks, job.total_chunks, flipped)

    def mark_job_terminal(self, job_id: str, status: JobStatus, error_message: Optional[str] = None) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in IN_FLIGHT_JOB_STATUSES:
                return False
            job.status = status
            job.error_message = error_message
            job.updated_at = self.now()
            return True

    # =========================================================================
    # Whole-text cache
    # =========================================================================

    def get_cache_entry(self, text_hash: str, voice: str, touch: bool = True) -> Optional[WholeTextCacheEntry]:
        with self._lock:
            entry = self._cache.get((text_hash, voice))
            if entry is None:
                return None
            if touch:
                entry.access_count += 1
                entry.last_accessed_at = self.now()
            return replace(entry)

    def put_cache_entry(self, entry: WholeTextCacheEntry) -> WholeTextCacheEntry:
        with self._lock:
            key = (entry.text_hash, entry.voice)
            existing = self._cache.get(key)
            if existing is not None:
                return replace(existing)
            now = self.now()
            stored = replace(entry, created_at=entry.created_at or now, last_accessed_at=entry.last_accessed_at or now)
            self._cache[key] = stored
            return replace(stored)

    # =========================================================================
    # Material plans and chunk audio
    # =========================================================================

    def get_plan(self, material_id: str) -> Optional[MaterialChunkPlan]:
        with self._lock:
            plan = self._plans.get(material_id)
            return replace(plan, chunk_boundaries=list(plan.chunk_boundaries)) if plan else None

    def save_plan(self, material_id: str, content_hash: str, boundaries: List[dict]) -> Tuple[MaterialChunkPlan, bool]:
        with self._lock:
            existing = self._plans.get(material_id)
            if existing is not None and existing.content_hash == content_hash:
                return replace(existing, chunk_boundaries=list(existing.chunk_boundaries)), False

            now = self.now()
            plan = MaterialChunkPlan(
                material_id=material_id,
                content_hash=content_hash,
                total_chunks=len(boundaries),
                chunk_boundaries=[dict(b) for b in boundaries],
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self._plans[material_id] = plan
            if existing is not None:
                stale_keys = [k for k in self._chunks if k[0] == material_id]
                for key in stale_keys:
                    del self._chunks[key]
                debug(_LOG, "plan_replaced", material_id=material_id, purged=len(stale_keys))
            return replace(plan, chunk_boundaries=list(plan.chunk_boundaries)), True

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
        with self._lock:
            if not self._plan_matches(material_id, content_hash):
                return False
            now = self.now()
            key = (material_id, chunk_index, voice)
            row = self._chunks.get(key)
            if row is not None and not row.is_reclaimable(now, stale_after_s):
                return False
            self._chunks[key] = MaterialChunkAudio(
                material_id=material_id,
                chunk_index=chunk_index,
                voice=voice,
                status=ChunkStatus.PENDING,
                char_start=char_start,
                char_end=char_end,
                created_at=row.created_at if row else now,
                updated_at=now,
            )
            return True

    def _plan_matches(self, material_id: str, content_hash: str) -> bool:
        plan = self._plans.get(material_id)
        return plan is not None and plan.content_hash == content_hash

    def begin_material_chunk(self, material_id: str, chunk_index: int, voice: str, content_hash: str) -> bool:
        with self._lock:
            row = self._chunks.get((material_id, chunk_index, voice))
            if row is None or row.status != ChunkStatus.PENDING or not self._plan_matches(material_id, content_hash):
                return False
            row.status = ChunkStatus.PROCESSING
            row.updated_at = self.now()
            return True

    def complete_material_chunk(
        self,
        material_id: str,
        chunk_index: int,
        voice: str,
        url: str,
        content_hash: str,
    ) -> bool:
        with self._lock:
            row = self._chunks.get((material_id, chunk_index, voice))
            if row is None or row.status == ChunkStatus.COMPLETED or not self._plan_matches(material_id, content_hash):
                return False
            row.status = ChunkStatus.COMPLETED
            row.audio_url = url
            row.error_message = None
            row.updated_at = self.now()
            return True

    def fail_material_chunk(self, material_id: str, chunk_index: int, voice: str, error_message: str) -> bool:
        with self._lock:
            row = self._chunks.get((material_id, chunk_index, voice))
            if row is None or row.status in (ChunkStatus.COMPLETED, ChunkStatus.FAILED):
                return False
            row.status = ChunkStatus.FAILED
            row.error_message = error_message
            row.updated_at = self.now()
            return True

    def get_material_chunk(self, material_id: str, chunk_index: int, voice: str) -> Optional[MaterialChunkAudio]:
        with self._lock:
            row = self._chunks.get((material_id, chunk_index, voice))
            return replace(row) if row else None

    def list_material_chunks(self, material_id: str, voice: str) -> List[MaterialChunkAudio]:
        with self._lock:
            rows = [replace(r) for k, r in self._chunks.items() if k[0] == material_id and k[2] == voice]
        return sorted(rows, key=lambda r: r.chunk_index)
