"""
Entities persisted by the job store.

Timestamps are POSIX seconds (float) so staleness checks are plain
subtraction on every backend.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.RATE_LIMITED})
IN_FLIGHT_JOB_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})


class ChunkStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


IN_FLIGHT_CHUNK_STATUSES = frozenset({ChunkStatus.PENDING, ChunkStatus.PROCESSING})


@dataclass
class GenerationJob:
    """
    Aggregate progress of one long-form request.

    ``chunk_urls`` has one slot per chunk; a slot is filled exactly once.
    """
    id: str
    text_hash: str
    voice: str
    format: str
    status: JobStatus
    total_chunks: int
    completed_chunks: int = 0
    chunk_urls: List[Optional[str]] = field(default_factory=list)
    error_message: Optional[str] = None
    requested_by: Optional[str] = None
    created_at: float = 0.0
    updated_at: float = 0.0

    def is_stale(self, now: float, stale_after_s: float) -> bool:
        """In flight but untouched for longer than ``stale_after_s``."""
        return self.status in IN_FLIGHT_JOB_STATUSES and now - self.updated_at > stale_after_s

    def populated_urls(self) -> List[Dict[str, Any]]:
        return [{"index": i, "url": url} for i, url in enumerate(self.chunk_urls) if url]


@dataclass
class WholeTextCacheEntry:
    text_hash: str
    voice: str
    audio_url: str
    storage_key: str
    format: str
    access_count: int = 0
    last_accessed_at: float = 0.0
    created_at: float = 0.0


@dataclass
class MaterialChunkPlan:
    """Chunk boundaries of one version (``content_hash``) of a material."""
    material_id: str
    content_hash: str
    total_chunks: int
    chunk_boundaries: List[Dict[str, int]]
    created_at: float = 0.0
    updated_at: float = 0.0


@dataclass
class MaterialChunkAudio:
    material_id: str
    chunk_index: int
    voice: str
    status: ChunkStatus
    char_start: int
    char_end: int
    audio_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: float = 0.0
    updated_at: float = 0.0

    def is_reclaimable(self, now: float, stale_after_s: float) -> bool:
        """Failed, or in flight for longer than ``stale_after_s``."""
        if self.status == ChunkStatus.FAILED:
            return True
        return self.status in IN_FLIGHT_CHUNK_STATUSES and now - self.updated_at > stale_after_s
