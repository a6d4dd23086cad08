# =============================================================================
# Queue Manager - Single-Worker Durable Job Queue
# =============================================================================
#
# Owns the in-memory job table, the FIFO ready list, the one worker task,
# retry/backoff, and crash recovery. Every state change is mirrored to the
# durable JobStore.
#
# LIFECYCLE:
#   enqueue()  → row inserted → job appended to ready list → worker armed
#   worker     → pops ready list FIFO → PROCESSING → runner.run()
#              → COMPLETED, or QUEUED again after a backoff timer, or FAILED
#   recover()  → rows in queued/processing reloaded on startup; processing
#                rows were interrupted and are queued again (attempts kept)
#
# CONCURRENCY:
# Everything runs on one asyncio event loop. `_running` guarantees at most
# one worker task. Retries do not park the worker: the backoff is a
# `loop.call_later` timer keyed by job id that appends the job to the tail
# of the ready list when it fires, so fresh work keeps flowing meanwhile.
#
# PERSISTENCE ORDERING:
# Memory is updated first, then the durable write is attempted. If that
# write fails the job is forced to FAILED (and that state is written on a
# best-effort basis) instead of being left half-transitioned. The one
# exception is enqueue: a job whose insert fails is removed from memory
# and enqueue raises EnqueueError, so nothing runnable exists without a row.
# =============================================================================

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import time
from collections import deque
from collections.abc import Mapping
from datetime import timedelta
from typing import Any

from app.errors import EnqueueError, InvalidRequestError, error_message
from app.workers.jobs import (
    START_STAGES,
    Job,
    JobStatus,
    JobType,
    ProgressEvent,
    ProgressReporter,
    QueueSnapshot,
    TaskRunner,
    as_utc,
    default_stage,
    normalize_max_retries,
    utcnow,
)
from app.workers.store import JobStore

logger = logging.getLogger(__name__)

# Subscriber queues drop their oldest event when a consumer falls this far behind
_SUBSCRIBER_QUEUE_SIZE = 256


def compute_backoff(base_delay: float, attempts: int) -> float:
    """Delay in seconds before retry number `attempts`: base * 2^(attempts-1)."""
    return base_delay * (2 ** max(attempts - 1, 0))


class QueueManager:
    """
    Durable single-worker job queue.

    Must be used from inside a running event loop. Instances are fully
    independent: each owns its ready list, job table and worker.
    """

    def __init__(
        self,
        store: JobStore,
        runners: Mapping[JobType, TaskRunner],
        *,
        retry_base_delay: float = 0.25,
        default_max_retries: int = 3,
    ) -> None:
        self._store = store
        self._runners: dict[JobType, TaskRunner] = dict(runners)
        self._retry_base_delay = retry_base_delay
        self._default_max_retries = default_max_retries

        self._jobs: dict[str, Job] = {}
        self._ready: deque[str] = deque()
        self._running = False
        self._worker: asyncio.Task[None] | None = None
        self._retry_timers: dict[str, asyncio.TimerHandle] = {}
        self._subscribers: dict[str, set[asyncio.Queue[ProgressEvent]]] = {}
        self._sequence = itertools.count(1)
        self._closed = False

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def enqueue(
        self,
        job_type: JobType | str,
        payload: Mapping[str, Any] | None = None,
        max_retries: Any = None,
    ) -> Job:
        """
        Create, persist and schedule a job.

        Raises:
            InvalidRequestError: unknown job type or no runner registered.
            EnqueueError: the job row could not be written.
        """
        try:
            resolved_type = JobType(job_type)
        except ValueError as exc:
            raise InvalidRequestError(f"Unsupported job type: {job_type}") from exc
        if resolved_type not in self._runners:
            raise InvalidRequestError(f"No runner registered for job type: {resolved_type.value}")

        job = Job(
            id=self._new_job_id(),
            type=resolved_type,
            payload=dict(payload or {}),
            stage=default_stage(resolved_type),
            max_retries=normalize_max_retries(max_retries, self._default_max_retries),
        )

        self._jobs[job.id] = job
        try:
            await self._store.insert(job)
        except Exception as exc:
            self._jobs.pop(job.id, None)
            logger.error(
                "job.enqueue_persist_failed",
                extra={"job_id": job.id, "type": job.type.value, "stage": "enqueue_insert", "error": str(exc)},
            )
            raise EnqueueError("Failed to enqueue background job.") from exc

        self._ready.append(job.id)
        logger.info(
            "job.enqueued",
            extra={"job_id": job.id, "type": job.type.value, "max_retries": job.max_retries},
        )
        self._ensure_worker()
        return job

    async def get_job(self, job_id: str) -> Job | None:
        """In-memory lookup first, then the durable store for historical jobs."""
        job = self._jobs.get(job_id)
        if job is not None:
            return job
        return await self._store.get(job_id)

    def get_queue_state(self) -> QueueSnapshot:
        jobs = list(self._jobs.values())
        return QueueSnapshot(
            pending=len(self._ready),
            processing=sum(1 for j in jobs if j.status is JobStatus.PROCESSING),
            completed=sum(1 for j in jobs if j.status is JobStatus.COMPLETED),
            failed=sum(1 for j in jobs if j.status is JobStatus.FAILED),
            total=len(jobs),
        )

    async def get_queue_position(self, job_id: str) -> int | None:
        """
        Position in line: 0 when running, finished, or waiting on a backoff
        timer; otherwise the ready-list index, plus one when a job is running.
        None for unknown ids.
        """
        job = await self.get_job(job_id)
        if job is None:
            return None
        return self.position_of(job)

    def position_of(self, job: Job) -> int:
        if job.status is not JobStatus.QUEUED:
            return 0
        try:
            index = self._ready.index(job.id)
        except ValueError:
            return 0
        has_processing = any(j.status is JobStatus.PROCESSING for j in self._jobs.values())
        return index + (1 if has_processing else 0)

    async def recover(self) -> int:
        """
        Reload interrupted work from the durable store and restart the worker.

        Returns the number of jobs put back on the ready list.
        """
        try:
            rows = await self._store.list_recoverable()
        except Exception:
            logger.exception("job.recover_select_failed", extra={"stage": "recover_select"})
            return 0

        recovered = 0
        for job in rows:
            if job.id in self._jobs:
                continue

            interrupted = job.status is JobStatus.PROCESSING
            self._jobs[job.id] = job

            if interrupted and job.attempts > job.max_retries:
                await self._fail(
                    job,
                    job.error or "Interrupted during final attempt.",
                    "recover_exhausted",
                )
                continue

            job.status = JobStatus.QUEUED
            if interrupted:
                job.progress = 0
                job.stage = default_stage(job.type)
            job.touch()
            self._ready.append(job.id)
            await self._persist(job, "recover_update_queued")
            recovered += 1

        if recovered:
            logger.info("job.recovered", extra={"count": recovered})
            self._ensure_worker()
        return recovered

    def subscribe(self, job_id: str) -> asyncio.Queue[ProgressEvent]:
        """
        Receive ProgressEvents for `job_id`.

        If the job is already terminal, its final event is queued right away.
        Call `unsubscribe` when done.
        """
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=_SUBSCRIBER_QUEUE_SIZE)
        self._subscribers.setdefault(job_id, set()).add(queue)
        job = self._jobs.get(job_id)
        if job is not None and job.is_terminal:
            queue.put_nowait(self._event_for(job))
        return queue

    def unsubscribe(self, job_id: str, queue: asyncio.Queue[ProgressEvent]) -> None:
        listeners = self._subscribers.get(job_id)
        if not listeners:
            return
        listeners.discard(queue)
        if not listeners:
            del self._subscribers[job_id]

    async def wait_for_terminal(self, job_id: str, timeout: float | None = None) -> Job | None:
        """Block until the job completes or fails. Raises TimeoutError on timeout."""
        queue = self.subscribe(job_id)
        try:
            job = await self.get_job(job_id)
            if job is None or job.is_terminal:
                return job
            async with asyncio.timeout(timeout):
                while True:
                    event = await queue.get()
                    if event.is_terminal:
                        return self._jobs.get(job_id) or await self.get_job(job_id)
        finally:
            self.unsubscribe(job_id, queue)

    async def cleanup_jobs(
        self,
        completed_older_than: timedelta,
        failed_older_than: timedelta,
    ) -> dict[str, int]:
        """Delete terminal jobs whose last update is older than the given ages."""
        now = utcnow()
        completed_cutoff = now - max(completed_older_than, timedelta(0))
        failed_cutoff = now - max(failed_older_than, timedelta(0))

        completed_deleted, failed_deleted = await self._store.delete_terminal_older_than(
            completed_cutoff, failed_cutoff,
        )

        memory_deleted = 0
        for job_id, job in list(self._jobs.items()):
            updated_at = as_utc(job.updated_at)
            expired = (
                (job.status is JobStatus.COMPLETED and updated_at < completed_cutoff)
                or (job.status is JobStatus.FAILED and updated_at < failed_cutoff)
            )
            if expired:
                del self._jobs[job_id]
                memory_deleted += 1

        self._ready = deque(job_id for job_id in self._ready if job_id in self._jobs)

        return {
            "completed_deleted": completed_deleted,
            "failed_deleted": failed_deleted,
            "memory_deleted": memory_deleted,
        }

    async def shutdown(self) -> None:
        """
        Stop scheduling work. An in-flight job is cancelled and left in
        PROCESSING in the store, to be picked up by the next recover().
        """
        self._closed = True
        for handle in self._retry_timers.values():
            handle.cancel()
        self._retry_timers.clear()

        worker = self._worker
        if worker is not None and not worker.done():
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker

    @property
    def is_running(self) -> bool:
        return self._running

    # -------------------------------------------------------------------------
    # Worker Loop
    # -------------------------------------------------------------------------

    def _ensure_worker(self) -> None:
        if self._running or self._closed:
            return
        self._running = True
        self._worker = asyncio.get_running_loop().create_task(self._process_queue())

    async def _process_queue(self) -> None:
        try:
            while self._ready:
                job_id = self._ready.popleft()
                job = self._jobs.get(job_id)
                if job is None or job.status is not JobStatus.QUEUED:
                    continue
                await self._execute(job)
        except Exception:
            logger.exception("queue.loop_failed", extra={"stage": "process_queue"})
        finally:
            self._running = False
            self._worker = None
            if self._ready and not self._closed:
                self._ensure_worker()

    async def _execute(self, job: Job) -> None:
        job.status = JobStatus.PROCESSING
        job.attempts += 1
        job.result = None
        stage, floor = START_STAGES[job.type]
        job.stage = stage
        job.progress = max(job.progress, floor)
        job.touch()

        if not await self._persist(job, "set_processing"):
            await self._fail(
                job, "Failed to persist processing status.", "mark_failed_after_set_processing",
            )
            return
        self._publish(job)

        logger.info(
            "job.started",
            extra={"job_id": job.id, "type": job.type.value, "attempt": job.attempts},
        )
        started = time.monotonic()
        runner = self._runners[job.type]

        try:
            result = await runner.run(job, ProgressReporter(job, self._on_progress))
        except Exception as exc:
            await self._handle_failure(job, exc)
            return

        job.status = JobStatus.COMPLETED
        job.progress = 100
        job.result = result or {}
        job.error = None
        job.duration_ms = int((time.monotonic() - started) * 1000)
        job.touch()

        if not await self._persist(job, "set_completed"):
            await self._fail(
                job, "Failed to persist completion state.", "mark_failed_after_set_completed",
            )
            return

        logger.info(
            "job.completed",
            extra={"job_id": job.id, "type": job.type.value, "duration_ms": job.duration_ms},
        )
        self._publish(job)

    async def _handle_failure(self, job: Job, exc: Exception) -> None:
        job.error = error_message(exc)
        job.result = None
        job.touch()

        if job.attempts <= job.max_retries:
            job.status = JobStatus.QUEUED
            job.stage = default_stage(job.type)
            job.progress = 0
            if not await self._persist(job, "set_retry"):
                await self._fail(
                    job, "Failed to persist retry state.", "mark_failed_after_retry_persist_error",
                )
                return

            delay = compute_backoff(self._retry_base_delay, job.attempts)
            logger.warning(
                "job.retry_scheduled",
                extra={
                    "job_id": job.id,
                    "type": job.type.value,
                    "attempt": job.attempts,
                    "delay_seconds": delay,
                    "error": job.error,
                },
            )
            self._schedule_retry(job, delay)
            self._publish(job)
            return

        job.status = JobStatus.FAILED
        await self._persist(job, "set_failed")
        logger.error(
            "job.failed",
            extra={
                "job_id": job.id,
                "type": job.type.value,
                "stage": "run_job",
                "attempts": job.attempts,
                "error": job.error,
            },
        )
        self._publish(job)

    async def _fail(self, job: Job, message: str, stage: str) -> None:
        job.status = JobStatus.FAILED
        job.result = None
        job.error = message
        job.touch()
        await self._persist(job, stage)
        self._publish(job)

    # -------------------------------------------------------------------------
    # Retry Timers
    # -------------------------------------------------------------------------

    def _schedule_retry(self, job: Job, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._retry_timers[job.id] = loop.call_later(delay, self._requeue, job.id)

    def _requeue(self, job_id: str) -> None:
        self._retry_timers.pop(job_id, None)
        job = self._jobs.get(job_id)
        if self._closed or job is None or job.status is not JobStatus.QUEUED:
            return
        self._ready.append(job_id)
        self._ensure_worker()

    # -------------------------------------------------------------------------
    # Progress Channel
    # -------------------------------------------------------------------------

    async def _on_progress(self, job: Job, event: ProgressEvent) -> None:
        if job.status is not JobStatus.PROCESSING or event.attempt != job.attempts:
            return

        progress = max(job.progress, event.progress)
        stage = event.stage or job.stage or default_stage(job.type)
        if progress == job.progress and stage == job.stage:
            return

        job.progress = progress
        job.stage = stage
        job.touch()
        await self._persist(job, "set_progress")
        self._publish(job)

    def _event_for(self, job: Job) -> ProgressEvent:
        return ProgressEvent(
            job_id=job.id,
            progress=job.progress,
            stage=job.stage,
            status=job.status,
            attempt=job.attempts,
        )

    def _publish(self, job: Job) -> None:
        listeners = self._subscribers.get(job.id)
        if not listeners:
            return
        event = self._event_for(job)
        for queue in listeners:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    async def _persist(self, job: Job, stage: str) -> bool:
        try:
            await self._store.update(job)
        except Exception as exc:
            logger.error(
                "job.persist_failed",
                extra={"job_id": job.id, "type": job.type.value, "stage": stage, "error": str(exc)},
            )
            return False
        return True

    def _new_job_id(self) -> str:
        return f"job_{int(time.time() * 1000)}_{next(self._sequence)}"
