# =============================================================================
# Durable Job Store - job_queue Table Access
# =============================================================================
#
# Thin async wrapper over the `job_queue` table. Each call opens its own
# short session and commits before returning, so a successful return means
# the row is durable.
#
# Any database error is re-raised as PersistenceError; the queue manager
# decides what a failed write means for the job.
# =============================================================================

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models import JobRecord
from app.errors import PersistenceError
from app.workers.jobs import Job, JobStatus

logger = logging.getLogger(__name__)


class JobStore:
    """Persistence for Job rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def insert(self, job: Job) -> None:
        try:
            async with self._session_factory() as session:
                session.add(JobRecord(**job.to_record_values()))
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception("Failed to insert job %s", job.id)
            raise PersistenceError(f"Failed to insert job {job.id}.") from exc

    async def update(self, job: Job) -> None:
        values = job.to_record_values()
        job_id = values.pop("id")
        values.pop("created_at")
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(JobRecord).where(JobRecord.id == job_id).values(**values)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception("Failed to update job %s", job_id)
            raise PersistenceError(f"Failed to update job {job_id}.") from exc

    async def get(self, job_id: str) -> Job | None:
        try:
            async with self._session_factory() as session:
                record = await session.get(JobRecord, job_id)
        except SQLAlchemyError as exc:
            logger.exception("Failed to load job %s", job_id)
            raise PersistenceError(f"Failed to load job {job_id}.") from exc
        return Job.from_record(record) if record else None

    async def list_recoverable(self) -> list[Job]:
        """Jobs that were queued or running when the process stopped, oldest first."""
        stmt = (
            select(JobRecord)
            .where(
                JobRecord.status.in_(
                    [JobStatus.QUEUED.value, JobStatus.PROCESSING.value]
                )
            )
            .order_by(JobRecord.created_at.asc(), JobRecord.id.asc())
        )
        try:
            async with self._session_factory() as session:
                records = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            logger.exception("Failed to list recoverable jobs")
            raise PersistenceError("Failed to list recoverable jobs.") from exc

        jobs: list[Job] = []
        for record in records:
            try:
                jobs.append(Job.from_record(record))
            except ValueError:
                logger.warning(
                    "job.recover_skipped_unreadable_row",
                    extra={"job_id": record.id, "type": record.type},
                )
        return jobs

    async def delete_terminal_older_than(
        self,
        completed_before: datetime,
        failed_before: datetime,
    ) -> tuple[int, int]:
        """Delete completed/failed rows last updated before the cutoffs, in one transaction."""
        try:
            async with self._session_factory() as session:
                completed = await session.execute(
                    delete(JobRecord).where(
                        JobRecord.status == JobStatus.COMPLETED.value,
                        JobRecord.updated_at < completed_before,
                    )
                )
                failed = await session.execute(
                    delete(JobRecord).where(
                        JobRecord.status == JobStatus.FAILED.value,
                        JobRecord.updated_at < failed_before,
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception("Failed to delete old jobs")
            raise PersistenceError("Failed to delete old jobs.") from exc
        return completed.rowcount or 0, failed.rowcount or 0
