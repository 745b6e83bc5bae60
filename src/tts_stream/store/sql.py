"""
SQLAlchemy JobStore.

Works with any SQLAlchemy dialect; SQLite (file) and PostgreSQL are the
tested targets. Atomicity comes from the database, never from a lock in
this process, so several service replicas can share one database.

Tables:
    tts_job             - GenerationJob rows
    tts_job_chunk       - one row per finished job chunk; the primary key
                          (job_id, chunk_index) makes the URL write-once
    tts_job_slot        - (text_hash, voice) -> current job id; swapped by
                          compare-and-swap so only one in-flight job exists
    tts_cache           - WholeTextCacheEntry, unique per (text_hash, voice)
    tts_material_meta   - MaterialChunkPlan per material
    tts_material_chunk  - MaterialChunkAudio, unique per (material, index, voice)

Concurrency Patterns:
    - Counters use ``SET n = n + 1 WHERE n < total`` instead of read-modify-write
    - State changes are ``UPDATE ... WHERE status = <expected>`` and check
      the rowcount
    - Material chunk reclaims compare a ``version`` column bumped on every
      state change
    - Material chunk claims and writes carry ``EXISTS (plan with this
      content_hash)`` in the same statement
    - Losing an insert race surfaces as IntegrityError and is retried or
      reported, never ignored

Usage:
    store = SqlJobStore("sqlite:///./tts-stream.db")
    store = SqlJobStore("postgresql+psycopg://tts:tts@db/tts")
"""
from __future__ import annotations

import uuid
from typing import Any, List, Optional, Tuple

from sqlalchemy import (
    JSON,
    Column,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    exists,
    insert,
    literal,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from tts_stream.core.logging import debug, get_logger, info, warn

from .base import ABANDONED_MESSAGE, ChunkCompletion, Clock, JobStore
from .models import (
    IN_FLIGHT_CHUNK_STATUSES,
    IN_FLIGHT_JOB_STATUSES,
    ChunkStatus,
    GenerationJob,
    JobStatus,
    MaterialChunkAudio,
    MaterialChunkPlan,
    WholeTextCacheEntry,
)

_LOG = get_logger("tts-stream.store.sql")

Base = declarative_base()

# Attempts for operations that retry after losing an insert / CAS race
_MAX_RACE_RETRIES = 5

_IN_FLIGHT_JOB = [s.value for s in IN_FLIGHT_JOB_STATUSES]
_IN_FLIGHT_CHUNK = [s.value for s in IN_FLIGHT_CHUNK_STATUSES]


class JobRow(Base):
    __tablename__ = "tts_job"

    id = Column(String(36), primary_key=True)
    text_hash = Column(String(64), nullable=False, index=True)
    voice = Column(String(64), nullable=False)
    format = Column(String(8), nullable=False)
    status = Column(String(16), nullable=False, default=JobStatus.PENDING.value)
    total_chunks = Column(Integer, nullable=False)
    completed_chunks = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    requested_by = Column(String(128), nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class JobChunkRow(Base):
    __tablename__ = "tts_job_chunk"

    job_id = Column(String(36), ForeignKey("tts_job.id"), primary_key=True)
    chunk_index = Column(Integer, primary_key=True)
    url = Column(Text, nullable=False)
    created_at = Column(Float, nullable=False)


class JobSlotRow(Base):
    __tablename__ = "tts_job_slot"

    text_hash = Column(String(64), primary_key=True)
    voice = Column(String(64), primary_key=True)
    job_id = Column(String(36), ForeignKey("tts_job.id"), nullable=False)


class CacheRow(Base):
    __tablename__ = "tts_cache"

    text_hash = Column(String(64), primary_key=True)
    voice = Column(String(64), primary_key=True)
    audio_url = Column(Text, nullable=False)
    storage_key = Column(Text, nullable=False)
    format = Column(String(8), nullable=False)
    access_count = Column(Integer, nullable=False, default=0)
    last_accessed_at = Column(Float, nullable=False)
    created_at = Column(Float, nullable=False)


class MaterialPlanRow(Base):
    __tablename__ = "tts_material_meta"

    material_id = Column(String(128), primary_key=True)
    content_hash = Column(String(64), nullable=False)
    total_chunks = Column(Integer, nullable=False)
    chunk_boundaries = Column(JSON, nullable=False)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class MaterialChunkRow(Base):
    __tablename__ = "tts_material_chunk"
    __table_args__ = (
        UniqueConstraint("material_id", "chunk_index", "voice", name="uq_material_chunk_voice"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    material_id = Column(String(128), nullable=False, index=True)
    chunk_index = Column(Integer, nullable=False)
    voice = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, default=ChunkStatus.PENDING.value)
    audio_url = Column(Text, nullable=True)
    char_start = Column(Integer, nullable=False)
    char_end = Column(Integer, nullable=False)
    error_message = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class _LostRace(Exception):
    """A conditional write matched no row; the transaction is rolled back."""


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # Worker threads share the engine; wait on the write lock instead of failing
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {"pool_pre_ping": True}


class SqlJobStore(JobStore):
    name = "sql"

    def __init__(self, url: str, clock: Optional[Clock] = None, engine: Any = None):
        super().__init__(clock)
        self.url = url
        self._engine = engine or create_engine(url, **_engine_kwargs(url))
        Base.metadata.create_all(self._engine)
        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)
        info(_LOG, "store_ready", backend=self._engine.dialect.name)

    # =========================================================================
    # Row conversion
    # =========================================================================

    def _job_from_row(self, session, row: JobRow) -> GenerationJob:
        urls: List[Optional[str]] = [None] * row.total_chunks
        for chunk in session.execute(select(JobChunkRow).where(JobChunkRow.job_id == row.id)).scalars():
            if 0 <= chunk.chunk_index < row.total_chunks:
                urls[chunk.chunk_index] = chunk.url
        return GenerationJob(
            id=row.id,
            text_hash=row.text_hash,
            voice=row.voice,
            format=row.format,
            status=JobStatus(row.status),
            total_chunks=row.total_chunks,
            completed_chunks=row.completed_chunks,
            chunk_urls=urls,
            error_message=row.error_message,
            requested_by=row.requested_by,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _cache_from_row(row: CacheRow) -> WholeTextCacheEntry:
        return WholeTextCacheEntry(
            text_hash=row.text_hash,
            voice=row.voice,
            audio_url=row.audio_url,
            storage_key=row.storage_key,
            format=row.format,
            access_count=row.access_count,
            last_accessed_at=row.last_accessed_at,
            created_at=row.created_at,
        )

    @staticmethod
    def _plan_from_row(row: MaterialPlanRow) -> MaterialChunkPlan:
        return MaterialChunkPlan(
            material_id=row.material_id,
            content_hash=row.content_hash,
            total_chunks=row.total_chunks,
            chunk_boundaries=list(row.chunk_boundaries or []),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _chunk_from_row(row: MaterialChunkRow) -> MaterialChunkAudio:
        return MaterialChunkAudio(
            material_id=row.material_id,
            chunk_index=row.chunk_index,
            voice=row.voice,
            status=ChunkStatus(row.status),
            char_start=row.char_start,
            char_end=row.char_end,
            audio_url=row.audio_url,
            error_message=row.error_message,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    # =========================================================================
    # Generation jobs
    # =========================================================================

    def _new_job_row(self, text_hash: str, voice: str, fmt: str, total_chunks: int,
                     requested_by: Optional[str], now: float) -> JobRow:
        return JobRow(
            id=str(uuid.uuid4()),
            text_hash=text_hash,
            voice=voice,
            format=fmt,
            status=JobStatus.PENDING.value,
            total_chunks=total_chunks,
            completed_chunks=0,
            requested_by=requested_by,
            created_at=now,
            updated_at=now,
        )

    def find_or_create_job(
        self,
        text_hash: str,
        voice: str,
        fmt: str,
        total_chunks: int,
        requested_by: Optional[str] = None,
        stale_after_s: float = 900.0,
    ) -> Tuple[GenerationJob, bool]:
        for _ in range(_MAX_RACE_RETRIES):
            try:
                with self._sessions.begin() as session:
                    now = self.now()
                    slot = session.get(JobSlotRow, (text_hash, voice))
                    current = session.get(JobRow, slot.job_id) if slot else None

                    if current is not None:
                        job = self._job_from_row(session, current)
                        if job.status == JobStatus.COMPLETED or (
                            job.status in IN_FLIGHT_JOB_STATUSES and not job.is_stale(now, stale_after_s)
                        ):
                            return job, False
                        if job.status in IN_FLIGHT_JOB_STATUSES:
                            # Stale: retire it so its queued tasks skip
                            abandoned = session.execute(
                                update(JobRow)
                                .where(
                                    JobRow.id == current.id,
                                    JobRow.status.in_(_IN_FLIGHT_JOB),
                                    JobRow.updated_at == current.updated_at,
                                )
                                .values(status=JobStatus.FAILED.value, error_message=ABANDONED_MESSAGE,
                                        updated_at=now)
                                .execution_options(synchronize_session=False)
                            ).rowcount
                            if abandoned != 1:
                                raise _LostRace()

                    row = self._new_job_row(text_hash, voice, fmt, total_chunks, requested_by, now)
                    session.add(row)
                    session.flush()

                    if slot is None:
                        session.add(JobSlotRow(text_hash=text_hash, voice=voice, job_id=row.id))
                    else:
                        swapped = session.execute(
                            update(JobSlotRow)
                            .where(
                                JobSlotRow.text_hash == text_hash,
                                JobSlotRow.voice == voice,
                                JobSlotRow.job_id == slot.job_id,
                            )
                            .values(job_id=row.id)
                            .execution_options(synchronize_session=False)
                        ).rowcount
                        if swapped != 1:
                            raise _LostRace()
                        debug(_LOG, "job_superseded", job_id=slot.job_id)

                    return self._job_from_row(session, row), True
            except (IntegrityError, _LostRace):
                debug(_LOG, "job_slot_race", text_hash=text_hash[:12], voice=voice)
                continue
        raise RuntimeError(f"could not claim job slot for {text_hash[:12]}/{voice}")

    def get_job(self, job_id: str) -> Optional[GenerationJob]:
        with self._sessions() as session:
            row = session.get(JobRow, job_id)
            return self._job_from_row(session, row) if row else None

    def mark_job_processing(self, job_id: str) -> bool:
        with self._sessions.begin() as session:
            result = session.execute(
                update(JobRow)
                .where(JobRow.id == job_id, JobRow.status == JobStatus.PENDING.value)
                .values(status=JobStatus.PROCESSING.value, updated_at=self.now())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def complete_job_chunk(self, job_id: str, chunk_index: int, url: str) -> ChunkCompletion:
        try:
            with self._sessions.begin() as session:
                now = self.now()
                job = session.get(JobRow, job_id)
                if job is None:
                    raise KeyError(job_id)
                if not 0 <= chunk_index < job.total_chunks:
                    raise IndexError(f"chunk {chunk_index} out of range for job {job_id}")

                session.add(JobChunkRow(job_id=job_id, chunk_index=chunk_index, url=url, created_at=now))
                session.flush()

                session.execute(
                    update(JobRow)
                    .where(JobRow.id == job_id, JobRow.completed_chunks < JobRow.total_chunks)
                    .values(completed_chunks=JobRow.completed_chunks + 1, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                completed, total = session.execute(
                    select(JobRow.completed_chunks, JobRow.total_chunks).where(JobRow.id == job_id)
                ).one()

                flipped = False
                if completed == total:
                    flipped = session.execute(
                        update(JobRow)
                        .where(JobRow.id == job_id, JobRow.status.in_(_IN_FLIGHT_JOB))
                        .values(status=JobStatus.COMPLETED.value, updated_at=now)
                        .execution_options(synchronize_session=False)
                    ).rowcount == 1
                return ChunkCompletion(True, completed, total, flipped)
        except IntegrityError:
            # Chunk already recorded
            with self._sessions() as session:
                row = session.get(JobRow, job_id)
                return ChunkCompletion(False, row.completed_chunks, row.total_chunks, False)

    def mark_job_terminal(self, job_id: str, status: JobStatus, error_message: Optional[str] = None) -> bool:
        with self._sessions.begin() as session:
            result = session.execute(
                update(JobRow)
                .where(JobRow.id == job_id, JobRow.status.in_(_IN_FLIGHT_JOB))
                .values(status=status.value, error_message=error_message, updated_at=self.now())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # =========================================================================
    # Whole-text cache
    # =========================================================================

    def get_cache_entry(self, text_hash: str, voice: str, touch: bool = True) -> Optional[WholeTextCacheEntry]:
        with self._sessions.begin() as session:
            if touch:
                session.execute(
                    update(CacheRow)
                    .where(CacheRow.text_hash == text_hash, CacheRow.voice == voice)
                    .values(access_count=CacheRow.access_count + 1, last_accessed_at=self.now())
                    .execution_options(synchronize_session=False)
                )
            row = session.get(CacheRow, (text_hash, voice))
            return self._cache_from_row(row) if row else None

    def put_cache_entry(self, entry: WholeTextCacheEntry) -> WholeTextCacheEntry:
        now = self.now()
        try:
            with self._sessions.begin() as session:
                row = CacheRow(
                    text_hash=entry.text_hash,
                    voice=entry.voice,
                    audio_url=entry.audio_url,
                    storage_key=entry.storage_key,
                    format=entry.format,
                    access_count=entry.access_count,
                    last_accessed_at=entry.last_accessed_at or now,
                    created_at=entry.created_at or now,
                )
                session.add(row)
                session.flush()
                return self._cache_from_row(row)
        except IntegrityError:
            existing = self.get_cache_entry(entry.text_hash, entry.voice, touch=False)
            if existing is None:
                raise
            return existing

    # =========================================================================
    # Material plans and chunk audio
    # =========================================================================

    def get_plan(self, material_id: str) -> Optional[MaterialChunkPlan]:
        with self._sessions() as session:
            row = session.get(MaterialPlanRow, material_id)
            return self._plan_from_row(row) if row else None

    def save_plan(self, material_id: str, content_hash: str, boundaries: List[dict]) -> Tuple[MaterialChunkPlan, bool]:
        stored = [{"start": int(b["start"]), "end": int(b["end"])} for b in boundaries]
        for _ in range(_MAX_RACE_RETRIES):
            try:
                with self._sessions.begin() as session:
                    now = self.now()
                    row = session.get(MaterialPlanRow, material_id)
                    if row is not None and row.content_hash == content_hash:
                        return self._plan_from_row(row), False

                    if row is None:
                        row = MaterialPlanRow(
                            material_id=material_id,
                            content_hash=content_hash,
                            total_chunks=len(stored),
                            chunk_boundaries=stored,
                            created_at=now,
                            updated_at=now,
                        )
                        session.add(row)
                        session.flush()
                        return self._plan_from_row(row), True

                    old_hash = row.content_hash
                    swapped = session.execute(
                        update(MaterialPlanRow)
                        .where(MaterialPlanRow.material_id == material_id, MaterialPlanRow.content_hash == old_hash)
                        .values(content_hash=content_hash, total_chunks=len(stored),
                                chunk_boundaries=stored, updated_at=now)
                        .execution_options(synchronize_session=False)
                    ).rowcount
                    if swapped != 1:
                        raise _LostRace()
                    purged = session.execute(
                        delete(MaterialChunkRow)
                        .where(MaterialChunkRow.material_id == material_id)
                        .execution_options(synchronize_session=False)
                    ).rowcount
                    debug(_LOG, "plan_replaced", material_id=material_id, purged=purged)
                    plan = MaterialChunkPlan(
                        material_id=material_id,
                        content_hash=content_hash,
                        total_chunks=len(stored),
                        chunk_boundaries=stored,
                        created_at=row.created_at,
                        updated_at=now,
                    )
                    return plan, True
            except (IntegrityError, _LostRace):
                continue
        raise RuntimeError(f"could not save plan for material {material_id}")

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
        try:
            with self._sessions.begin() as session:
                now = self.now()
                row = session.execute(
                    select(MaterialChunkRow).where(
                        MaterialChunkRow.material_id == material_id,
                        MaterialChunkRow.chunk_index == chunk_index,
                        MaterialChunkRow.voice == voice,
                    )
                ).scalar_one_or_none()

                if row is None:
                    # INSERT ... SELECT: no row is written unless the plan still has content_hash
                    values = select(
                        literal(material_id, String),
                        literal(chunk_index, Integer),
                        literal(voice, String),
                        literal(ChunkStatus.PENDING.value, String),
                        literal(char_start, Integer),
                        literal(char_end, Integer),
                        literal(0, Integer),
                        literal(now, Float),
                        literal(now, Float),
                    ).where(self._plan_has_hash(material_id, content_hash))
                    inserted = session.execute(
                        insert(MaterialChunkRow).from_select(
                            ["material_id", "chunk_index", "voice", "status", "char_start", "char_end",
                             "version", "created_at", "updated_at"],
                            values,
                        )
                    ).rowcount
                    return inserted == 1

                if not self._chunk_from_row(row).is_reclaimable(now, stale_after_s):
                    return False

                reclaimed = session.execute(
                    update(MaterialChunkRow)
                    .where(
                        MaterialChunkRow.id == row.id,
                        MaterialChunkRow.version == row.version,
                        self._plan_has_hash(material_id, content_hash),
                    )
                    .values(
                        status=ChunkStatus.PENDING.value,
                        char_start=char_start,
                        char_end=char_end,
                        error_message=None,
                        version=MaterialChunkRow.version + 1,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount
                return reclaimed == 1
        except IntegrityError:
            # Another request inserted the row first and owns the chunk
            return False

    def _plan_has_hash(self, material_id: str, content_hash: str):
        return exists().where(
            MaterialPlanRow.material_id == material_id,
            MaterialPlanRow.content_hash == content_hash,
        )

    def _chunk_filter(self, material_id: str, chunk_index: int, voice: str):
        return (
            MaterialChunkRow.material_id == material_id,
            MaterialChunkRow.chunk_index == chunk_index,
            MaterialChunkRow.voice == voice,
        )

    def begin_material_chunk(self, material_id: str, chunk_index: int, voice: str, content_hash: str) -> bool:
        with self._sessions.begin() as session:
            result = session.execute(
                update(MaterialChunkRow)
                .where(
                    *self._chunk_filter(material_id, chunk_index, voice),
                    MaterialChunkRow.status == ChunkStatus.PENDING.value,
                    self._plan_has_hash(material_id, content_hash),
                )
                .values(
                    status=ChunkStatus.PROCESSING.value,
                    version=MaterialChunkRow.version + 1,
                    updated_at=self.now(),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def complete_material_chunk(
        self,
        material_id: str,
        chunk_index: int,
        voice: str,
        url: str,
        content_hash: str,
    ) -> bool:
        with self._sessions.begin() as session:
            result = session.execute(
                update(MaterialChunkRow)
                .where(
                    *self._chunk_filter(material_id, chunk_index, voice),
                    MaterialChunkRow.status != ChunkStatus.COMPLETED.value,
                    self._plan_has_hash(material_id, content_hash),
                )
                .values(
                    status=ChunkStatus.COMPLETED.value,
                    audio_url=url,
                    error_message=None,
                    version=MaterialChunkRow.version + 1,
                    updated_at=self.now(),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def fail_material_chunk(self, material_id: str, chunk_index: int, voice: str, error_message: str) -> bool:
        with self._sessions.begin() as session:
            result = session.execute(
                update(MaterialChunkRow)
                .where(
                    *self._chunk_filter(material_id, chunk_index, voice),
                    MaterialChunkRow.status.in_(_IN_FLIGHT_CHUNK),
                )
                .values(
                    status=ChunkStatus.FAILED.value,
                    error_message=error_message,
                    version=MaterialChunkRow.version + 1,
                    updated_at=self.now(),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def get_material_chunk(self, material_id: str, chunk_index: int, voice: str) -> Optional[MaterialChunkAudio]:
        with self._sessions() as session:
            row = session.execute(
                select(MaterialChunkRow).where(*self._chunk_filter(material_id, chunk_index, voice))
            ).scalar_one_or_none()
            return self._chunk_from_row(row) if row else None

    def list_material_chunks(self, material_id: str, voice: str) -> List[MaterialChunkAudio]:
        with self._sessions() as session:
            rows = session.execute(
                select(MaterialChunkRow)
                .where(MaterialChunkRow.material_id == material_id, MaterialChunkRow.voice == voice)
                .order_by(MaterialChunkRow.chunk_index)
            ).scalars()
            return [self._chunk_from_row(r) for r in rows]

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def ping(self) -> bool:
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            warn(_LOG, "store_unreachable", error=str(exc))
            return False
        return True

    def close(self) -> None:
        self._engine.dispose()
