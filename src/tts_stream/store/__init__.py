"""
Persistence for jobs, caches and material plans.

    - models.py: Entities and status enums
    - base.py: JobStore interface (every mutation is atomic)
    - memory.py: In-process store guarded by a lock
    - sql.py: SQLAlchemy store (SQLite, PostgreSQL, ...)

The backend is chosen once at startup from ``store.backend``.
"""
from .base import ABANDONED_MESSAGE, ChunkCompletion, JobStore, create_store
from .models import (
    ChunkStatus,
    GenerationJob,
    JobStatus,
    MaterialChunkAudio,
    MaterialChunkPlan,
    WholeTextCacheEntry,
)

__all__ = [
    "ABANDONED_MESSAGE",
    "ChunkCompletion",
    "ChunkStatus",
    "GenerationJob",
    "JobStatus",
    "JobStore",
    "MaterialChunkAudio",
    "MaterialChunkPlan",
    "WholeTextCacheEntry",
    "create_store",
]
