"""
Priority Worker Queue with Retry Scheduling.

A bounded pool of worker threads pulls chunk tasks in priority order. Tasks
never sleep or retry on their own: ``run`` returns a TaskOutcome and the
queue decides what happens next.

    Success                 done
    Retryable(transient)    re-scheduled after backoff_s * 2**(attempt-1)
    Retryable(rate_limited) re-scheduled after rate_limit_backoff_s * 2**(attempt-1)
                            (or the provider's Retry-After, if longer)
    Permanent               task.give_up(outcome), no further attempts

After ``max_attempts`` runs a Retryable outcome is handed to ``give_up``
too. A delayed task does not block a worker: it waits in a timer heap
until it is due, while workers keep serving other tasks. A 429 on one
chunk therefore slows down only that chunk.

Priority:
    ``Priority(tier, rank)`` compares lexicographically. Every FOREGROUND
    task runs before any BACKGROUND task; within a tier lower ranks run
    first, and equal priorities run in submission order.

    For material generation starting at chunk S:
        chunk i >= S  ->  Priority.foreground(i - S)
        chunk i <  S  ->  Priority.background(S - i)

Usage:
    queue = WorkerQueue(workers=4, policy=RetryPolicy(max_attempts=2))
    queue.start()
    queue.submit(task)
    queue.wait_idle(timeout=10)
    queue.shutdown()

See Also:
    - services/tasks.py: JobChunkTask, MaterialChunkTask
"""
from __future__ import annotations

import enum
import heapq
import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple, Union

from tts_stream.core.logging import debug, error, get_logger, info, set_request_id, verbose, warn
from tts_stream.core.metrics import metrics
from tts_stream.services.errors import ErrorCode, TTSError

_LOG = get_logger("tts-stream.queue")


# =============================================================================
# Priority
# =============================================================================

class Tier(enum.IntEnum):
    FOREGROUND = 0
    BACKGROUND = 1


@dataclass(frozen=True, order=True)
class Priority:
    tier: Tier
    rank: int = 0

    @classmethod
    def foreground(cls, rank: int = 0) -> "Priority":
        return cls(Tier.FOREGROUND, rank)

    @classmethod
    def background(cls, rank: int = 0) -> "Priority":
        return cls(Tier.BACKGROUND, rank)

    @classmethod
    def for_chunk(cls, index: int, start_index: int) -> "Priority":
        """Reading position first, then forward, then backward from it."""
        if index >= start_index:
            return cls.foreground(index - start_index)
        return cls.background(start_index - index)


# =============================================================================
# Task outcomes
# =============================================================================

class RetryKind(str, enum.Enum):
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"


@dataclass(frozen=True)
class Success:
    pass


@dataclass(frozen=True)
class Retryable:
    kind: RetryKind
    error: TTSError
    retry_after: Optional[float] = None


@dataclass(frozen=True)
class Permanent:
    error: TTSError


TaskOutcome = Union[Success, Retryable, Permanent]


class QueueTask:
    """
    Unit of work for the queue.

    Subclasses set ``name`` and ``priority`` and implement ``run``;
    ``give_up`` records the final failure.
    """
    name: str = "task"
    priority: Priority = Priority.foreground()

    def run(self, attempt: int) -> TaskOutcome:
        raise NotImplementedError

    def give_up(self, outcome: Union[Retryable, Permanent], attempts: int) -> None:
        pass


# =============================================================================
# Retry policy
# =============================================================================

@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 2
    backoff_s: float = 5.0
    rate_limit_backoff_s: float = 60.0

    def delay_for(self, outcome: Retryable, attempt: int) -> float:
        """Seconds to wait before attempt ``attempt + 1``."""
        if outcome.kind == RetryKind.RATE_LIMITED:
            delay = self.rate_limit_backoff_s * (2 ** (attempt - 1))
            if outcome.retry_after is not None:
                delay = max(delay, outcome.retry_after)
            return delay
        return self.backoff_s * (2 ** (attempt - 1))


# =============================================================================
# Queue
# =============================================================================

@dataclass(order=True)
class _Entry:
    priority: Priority
    seq: int
    attempt: int = field(compare=False)
    task: QueueTask = field(compare=False)


@dataclass
class QueueStats:
    workers: int
    submitted: int
    succeeded: int
    retried: int
    gave_up: int
    ready: int
    delayed: int
    active: int

    def to_dict(self) -> dict:
        return dict(self.__dict__)


class WorkerQueue:
    """
    Thread pool consuming a priority heap plus a delayed-retry heap.

    Thread-safety:
        All queue state is guarded by one Condition; workers wait on it for
        new work or for the earliest delayed task to become due.
    """

    def __init__(
        self,
        workers: int = 4,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
        name: str = "tts-worker",
    ):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self._workers = workers
        self._policy = policy or RetryPolicy()
        self._clock = clock
        self._name = name

        self._cond = threading.Condition()
        self._ready: List[_Entry] = []
        self._delayed: List[Tuple[float, int, _Entry]] = []
        self._seq = itertools.count()
        self._active = 0
        self._stopping = False
        self._threads: List[threading.Thread] = []

        self._submitted = 0
        self._succeeded = 0
        self._retried = 0
        self._gave_up = 0

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self._stopping

    def start(self) -> None:
        with self._cond:
            if self._threads:
                return
            self._stopping = False
            for i in range(self._workers):
                t = threading.Thread(target=self._worker_loop, name=f"{self._name}-{i}", daemon=True)
                self._threads.append(t)
                t.start()
        info(_LOG, "queue_started", workers=self._workers, max_attempts=self._policy.max_attempts)

    def submit(self, task: QueueTask) -> None:
        with self._cond:
            if self._stopping:
                raise RuntimeError("queue is shut down")
            heapq.heappush(self._ready, _Entry(task.priority, next(self._seq), 1, task))
            self._submitted += 1
            self._publish_depth_locked()
            self._cond.notify()
        debug(_LOG, "task_submitted", task=task.name, tier=task.priority.tier.name, rank=task.priority.rank)

    def _publish_depth_locked(self) -> None:
        metrics.set_queue_depth(len(self._ready) + len(self._delayed))

    def _promote_due_locked(self) -> Optional[float]:
        """Move due delayed entries to the ready heap; return seconds until the next one."""
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, entry = heapq.heappop(self._delayed)
            heapq.heappush(self._ready, entry)
        if self._delayed:
            return max(0.0, self._delayed[0][0] - now)
        return None

    def _next_entry(self) -> Optional[_Entry]:
        with self._cond:
            while True:
                if self._stopping:
                    return None
                wait_s = self._promote_due_locked()
                if self._ready:
                    entry = heapq.heappop(self._ready)
                    self._active += 1
                    metrics.set_active_workers(self._active)
                    self._publish_depth_locked()
                    return entry
                self._cond.wait(timeout=wait_s)

    def _worker_loop(self) -> None:
        while True:
            entry = self._next_entry()
            if entry is None:
                return
            try:
                self._run_entry(entry)
            finally:
                with self._cond:
                    self._active -= 1
                    metrics.set_active_workers(self._active)
                    self._cond.notify_all()

    def _run_entry(self, entry: _Entry) -> None:
        task = entry.task
        set_request_id(task.name)
        try:
            outcome = task.run(entry.attempt)
        except Exception as exc:
            error(_LOG, "task_crashed", exc_info=True, task=task.name, attempt=entry.attempt, error=str(exc))
            outcome = Permanent(TTSError(f"Internal error: {exc}", ErrorCode.INTERNAL_ERROR))

        if isinstance(outcome, Success):
            with self._cond:
                self._succeeded += 1
            return

        if isinstance(outcome, Retryable) and entry.attempt < self._policy.max_attempts:
            delay = self._policy.delay_for(outcome, entry.attempt)
            retry = _Entry(entry.priority, next(self._seq), entry.attempt + 1, task)
            with self._cond:
                self._retried += 1
                if delay <= 0:
                    heapq.heappush(self._ready, retry)
                else:
                    heapq.heappush(self._delayed, (self._clock() + delay, retry.seq, retry))
                self._publish_depth_locked()
                self._cond.notify_all()
            warn(_LOG, "task_retry", task=task.name, attempt=entry.attempt, kind=outcome.kind.value,
                 delay_s=round(delay, 2), error=outcome.error.message)
            return

        with self._cond:
            self._gave_up += 1
        verbose(_LOG, "task_gave_up", task=task.name, attempts=entry.attempt)
        try:
            task.give_up(outcome, entry.attempt)
        except Exception as exc:
            error(_LOG, "give_up_failed", exc_info=True, task=task.name, error=str(exc))

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until no task is ready, delayed or running.

        Returns:
            False if ``timeout`` expired first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._ready or self._delayed or self._active:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                # Wake periodically so due delayed tasks are noticed
                self._cond.wait(timeout=0.05 if remaining is None else min(remaining, 0.05))
        return True

    def stats(self) -> QueueStats:
        with self._cond:
            return QueueStats(
                workers=self._workers,
                submitted=self._submitted,
                succeeded=self._succeeded,
                retried=self._retried,
                gave_up=self._gave_up,
                ready=len(self._ready),
                delayed=len(self._delayed),
                active=self._active,
            )

    def shutdown(self, wait: bool = True, timeout: Optional[float] = 5.0) -> None:
        """
        Stop workers. Tasks still queued are dropped; in-flight material
        chunks are reclaimed later through staleness.
        """
        with self._cond:
            if self._stopping:
                return
            self._stopping = True
            dropped = len(self._ready) + len(self._delayed)
            self._ready.clear()
            self._delayed.clear()
            self._publish_depth_locked()
            self._cond.notify_all()
            threads = list(self._threads)
        if wait:
            for t in threads:
                t.join(timeout=timeout)
        with self._cond:
            self._threads = []
        info(_LOG, "queue_stopped", dropped=dropped)
