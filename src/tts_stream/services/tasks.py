"""
Queue tasks that generate and store one chunk of audio.

    JobChunkTask        - chunk ``index`` of a GenerationJob
    MaterialChunkTask   - chunk ``index`` of a material plan, for one voice

Both follow the same steps: check the work is still wanted, call the
provider, upload, then record the URL with a single store call. Provider
and storage errors are never retried here; they are mapped onto a
TaskOutcome and the WorkerQueue schedules the next attempt.

Final failures (``give_up``):
    rate limited on every attempt   -> job rate_limited / chunk failed, with message
    anything else                   -> job failed / chunk failed, with message
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from tts_stream.core.logging import debug, get_logger, success, verbose, warn
from tts_stream.core.metrics import metrics
from tts_stream.services.errors import ProviderError, RateLimitError, StorageError, TTSError
from tts_stream.store import ChunkStatus, JobStatus, JobStore
from tts_stream.tts.provider import BaseSpeechProvider
from tts_stream.tts.queue import Permanent, Priority, QueueTask, RetryKind, Retryable, Success, TaskOutcome
from tts_stream.tts.storage import ObjectStorage
from tts_stream.utils.timeit import timeit

_LOG = get_logger("tts-stream.tasks")


def classify_error(exc: TTSError) -> TaskOutcome:
    """Map a provider / storage error onto the queue's outcome types."""
    if isinstance(exc, RateLimitError):
        return Retryable(RetryKind.RATE_LIMITED, exc, exc.retry_after)
    if isinstance(exc, ProviderError):
        return Retryable(RetryKind.TRANSIENT, exc) if exc.retryable else Permanent(exc)
    if isinstance(exc, StorageError):
        return Retryable(RetryKind.TRANSIENT, exc)
    return Permanent(exc)


def synthesize_chunk(provider: BaseSpeechProvider, text: str, voice: str, fmt: str) -> bytes:
    """
    Provider audio for one chunk.

    Whitespace-only chunks (runs of blank lines cut at max_chars) have
    nothing to speak: they yield empty audio without a provider call.
    """
    if not text.strip():
        return b""
    return provider.synthesize(text, voice, fmt)


def failure_message(outcome: Union[Retryable, Permanent], attempts: int) -> str:
    if isinstance(outcome, Retryable) and outcome.kind == RetryKind.RATE_LIMITED:
        return f"Rate limited by speech provider after {attempts} attempt(s): {outcome.error.message}"
    if isinstance(outcome, Retryable):
        return f"Failed after {attempts} attempt(s): {outcome.error.message}"
    return outcome.error.message


@dataclass
class ChunkContext:
    """Collaborators shared by every chunk task of a service."""
    store: JobStore
    provider: BaseSpeechProvider
    storage: ObjectStorage
    chunk_folder: str
    material_folder: str


class JobChunkTask(QueueTask):
    def __init__(self, ctx: ChunkContext, job_id: str, index: int, text: str, voice: str, fmt: str):
        self.ctx = ctx
        self.job_id = job_id
        self.index = index
        self.text = text
        self.voice = voice
        self.fmt = fmt
        self.name = f"job-{job_id[:8]}-{index}"
        self.priority = Priority.foreground(index)

    def run(self, attempt: int) -> TaskOutcome:
        store = self.ctx.store
        job = store.get_job(self.job_id)
        if job is None or job.status in (JobStatus.FAILED, JobStatus.RATE_LIMITED) or job.chunk_urls[self.index]:
            debug(_LOG, "job_chunk_skipped", job_id=self.job_id, index=self.index)
            metrics.record_chunk("job", "dropped")
            return Success()

        if store.mark_job_processing(self.job_id):
            verbose(_LOG, "job_processing", job_id=self.job_id)

        with timeit("job_chunk") as t:
            try:
                audio = synthesize_chunk(self.ctx.provider, self.text, self.voice, self.fmt)
                uploaded = self.ctx.storage.upload(
                    audio, self.ctx.chunk_folder, self.fmt, f"tts_{self.job_id}_chunk_{self.index}"
                )
            except TTSError as exc:
                outcome = classify_error(exc)
                if isinstance(outcome, Retryable):
                    metrics.record_chunk("job", "error")
                return outcome

        completion = store.complete_job_chunk(self.job_id, self.index, uploaded.url)
        metrics.record_chunk("job", "success")
        verbose(_LOG, "job_chunk_done", job_id=self.job_id, index=self.index, attempt=attempt,
                progress=f"{completion.completed_chunks}/{completion.total_chunks}",
                seconds=round(t.seconds, 3))
        if completion.job_completed:
            success(_LOG, "job_completed", job_id=self.job_id, chunks=completion.total_chunks)
        return Success()

    def give_up(self, outcome: Union[Retryable, Permanent], attempts: int) -> None:
        rate_limited = isinstance(outcome, Retryable) and outcome.kind == RetryKind.RATE_LIMITED
        status = JobStatus.RATE_LIMITED if rate_limited else JobStatus.FAILED
        message = failure_message(outcome, attempts)
        changed = self.ctx.store.mark_job_terminal(self.job_id, status, f"Chunk {self.index}: {message}")
        metrics.record_chunk("job", status.value)
        warn(_LOG, "job_chunk_failed", job_id=self.job_id, index=self.index, status=status.value,
             applied=changed, error=message)


class MaterialChunkTask(QueueTask):
    def __init__(
        self,
        ctx: ChunkContext,
        material_id: str,
        content_hash: str,
        index: int,
        text: str,
        voice: str,
        fmt: str,
        priority: Priority,
    ):
        self.ctx = ctx
        self.material_id = material_id
        self.content_hash = content_hash
        self.index = index
        self.text = text
        self.voice = voice
        self.fmt = fmt
        self.priority = priority
        self.name = f"mat-{material_id[:16]}-{index}-{voice}"

    def _still_wanted(self, attempt: int) -> bool:
        store = self.ctx.store
        if attempt == 1:
            return store.begin_material_chunk(self.material_id, self.index, self.voice, self.content_hash)
        plan = store.get_plan(self.material_id)
        if plan is None or plan.content_hash != self.content_hash:
            return False
        # A reclaimed copy of this chunk may have finished meanwhile
        row = store.get_material_chunk(self.material_id, self.index, self.voice)
        return row is not None and row.status != ChunkStatus.COMPLETED

    def run(self, attempt: int) -> TaskOutcome:
        if not self._still_wanted(attempt):
            debug(_LOG, "material_chunk_skipped", material_id=self.material_id, index=self.index, voice=self.voice)
            metrics.record_chunk("material", "dropped")
            return Success()

        with timeit("material_chunk") as t:
            try:
                audio = synthesize_chunk(self.ctx.provider, self.text, self.voice, self.fmt)
                uploaded = self.ctx.storage.upload(
                    audio,
                    self.ctx.material_folder,
                    self.fmt,
                    f"{self.material_id}_{self.content_hash[:16]}_{self.index}_{self.voice}",
                )
            except TTSError as exc:
                outcome = classify_error(exc)
                if isinstance(outcome, Retryable):
                    metrics.record_chunk("material", "error")
                return outcome

        recorded = self.ctx.store.complete_material_chunk(
            self.material_id, self.index, self.voice, uploaded.url, self.content_hash
        )
        metrics.record_chunk("material", "success" if recorded else "dropped")
        verbose(_LOG, "material_chunk_done", material_id=self.material_id, index=self.index, voice=self.voice,
                attempt=attempt, recorded=recorded, seconds=round(t.seconds, 3))
        return Success()

    def give_up(self, outcome: Union[Retryable, Permanent], attempts: int) -> None:
        rate_limited = isinstance(outcome, Retryable) and outcome.kind == RetryKind.RATE_LIMITED
        message = failure_message(outcome, attempts)
        changed = self.ctx.store.fail_material_chunk(self.material_id, self.index, self.voice, message)
        metrics.record_chunk("material", "rate_limited" if rate_limited else "failed")
        warn(_LOG, "material_chunk_failed", material_id=self.material_id, index=self.index, voice=self.voice,
             applied=changed, error=message)
