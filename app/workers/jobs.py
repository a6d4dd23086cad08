# =============================================================================
# Job Model - In-Memory Job State, Enums, and the Progress Channel
# =============================================================================
#
# A Job is the unit of background work tracked by the QueueManager:
#
#   QUEUED ──dequeue──▶ PROCESSING ──success──▶ COMPLETED
#     ▲                     │
#     └──retry (backoff)────┤
#                           └──exhausted / persistence error──▶ FAILED
#
# The dataclass here is the in-memory view; `app.db.models.JobRecord` is
# the durable row. `to_record_values` / `from_record` convert between them.
#
# Runners report progress through a ProgressReporter bound to their job.
# The reporter forwards typed ProgressEvent messages to the manager, which
# clamps, persists-if-changed and fans them out to stream subscribers.
# =============================================================================

from __future__ import annotations

import enum
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from app.db.models import JobRecord


class JobType(str, enum.Enum):
    INDEX_DOCUMENT = "index_document"
    CHAT_QUERY = "chat_query"


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# Stage a job shows while it waits in the ready list
DEFAULT_STAGES: dict[JobType, str] = {
    JobType.INDEX_DOCUMENT: "uploading",
    JobType.CHAT_QUERY: "retrieving",
}

# (stage, minimum progress) applied when an attempt starts
START_STAGES: dict[JobType, tuple[str, int]] = {
    JobType.INDEX_DOCUMENT: ("parsing", 5),
    JobType.CHAT_QUERY: ("retrieving", 10),
}


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything we write is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def clamp_progress(value: Any) -> int:
    """Coerce anything to an int in [0, 100]; garbage becomes 0."""
    try:
        number = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(0, min(100, number))


def default_stage(job_type: JobType | str) -> str | None:
    try:
        return DEFAULT_STAGES[JobType(job_type)]
    except ValueError:
        return None


def normalize_max_retries(value: Any, default: int = 3) -> int:
    """Non-negative ints are accepted as-is; anything else falls back."""
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return default
    return value


@dataclass
class Job:
    """In-memory state of one background job."""

    id: str
    type: JobType
    payload: dict[str, Any]
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    stage: str | None = None
    attempts: int = 0
    max_retries: int = 3
    result: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    duration_ms: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def touch(self) -> None:
        self.updated_at = utcnow()

    def to_record_values(self) -> dict[str, Any]:
        """Column values for a JobRecord insert/update."""
        return {
            "id": self.id,
            "type": self.type.value,
            "payload": self.payload,
            "status": self.status.value,
            "progress": clamp_progress(self.progress),
            "stage": self.stage,
            "attempts": self.attempts,
            "max_retries": self.max_retries,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_record(cls, record: JobRecord) -> Job:
        """Rebuild a Job from its durable row, tolerating sloppy values."""
        payload = record.payload if isinstance(record.payload, dict) else {}
        result = record.result if isinstance(record.result, dict) else None
        return cls(
            id=record.id,
            type=JobType(record.type),
            payload=payload,
            status=JobStatus(record.status),
            progress=clamp_progress(record.progress),
            stage=record.stage or default_stage(record.type),
            attempts=int(record.attempts or 0),
            max_retries=normalize_max_retries(record.max_retries),
            result=result,
            error=record.error,
            created_at=as_utc(record.created_at),
            updated_at=as_utc(record.updated_at),
        )

    def to_dict(self) -> dict[str, Any]:
        """Public view returned to pollers."""
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "progress": self.progress,
            "stage": self.stage,
            "attempts": self.attempts,
            "max_retries": self.max_retries,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class QueueSnapshot:
    """
    Counts derived from memory. Observability only.

    `pending` is the length of the ready list; a queued job waiting on a
    backoff timer is counted in `total` but not in `pending`.
    """

    pending: int
    processing: int
    completed: int
    failed: int
    total: int

    def to_dict(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
            "total": self.total,
        }


# ---------------------------------------------------------------------------
# Progress Channel
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProgressEvent:
    """
    One progress message.

    `progress` is 0–100, `stage` a type-specific label. Runner-originated
    events leave `status` None; the manager fills it in when it fans the
    event out to subscribers.
    """

    job_id: str
    progress: int
    stage: str | None
    status: JobStatus | None = None
    attempt: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "progress": self.progress,
            "stage": self.stage,
            "status": self.status.value if self.status else None,
            "attempt": self.attempt,
        }


ProgressHandler = Callable[[Job, ProgressEvent], Awaitable[None]]


class ProgressReporter:
    """
    Handed to a runner for the duration of one attempt.

    `await reporter.report(40, "embedding")` sends a ProgressEvent to the
    queue manager and returns once it has been applied.
    """

    def __init__(self, job: Job, handler: ProgressHandler) -> None:
        self._job = job
        self._handler = handler

    @property
    def job_id(self) -> str:
        return self._job.id

    async def report(self, progress: int, stage: str | None = None) -> None:
        event = ProgressEvent(
            job_id=self._job.id,
            progress=clamp_progress(progress),
            stage=stage,
            attempt=self._job.attempts,
        )
        await self._handler(self._job, event)


class TaskRunner(Protocol):
    """
    Executes the domain work for one job type.

    Runners do not retry. Any exception propagates to the queue manager,
    which owns the retry policy.
    """

    async def run(self, job: Job, reporter: ProgressReporter) -> dict[str, Any]:
        ...
