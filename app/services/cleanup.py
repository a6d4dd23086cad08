# =============================================================================
# Cleanup Sweeper - Periodic Retention for Jobs, Vectors and Uploads
# =============================================================================
#
# Every `interval` seconds:
#   - terminal jobs past their TTL are deleted (completed 24 h, failed 72 h
#     by default), from the job_queue table and from the manager's memory
#   - upload files older than `upload_ttl` that no document row references
#     are deleted (only when a DocumentService and upload_dir are given)
#   - vectors whose document row is gone are deleted, cache entries first
#
# Cycles never overlap: a cycle that starts while another is running
# returns {"skipped": True}. A failing cycle is logged and reported as
# {"failed": True}; the next tick tries again.
# =============================================================================

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import timedelta

from app.services.documents import DocumentService
from app.services.vectorstore import VectorStore
from app.workers.queue import QueueManager

logger = logging.getLogger(__name__)


class CleanupSweeper:
    def __init__(
        self,
        queue_manager: QueueManager,
        vector_store: VectorStore,
        interval: float = 900.0,
        completed_ttl: timedelta = timedelta(hours=24),
        failed_ttl: timedelta = timedelta(hours=72),
        documents: DocumentService | None = None,
        upload_dir: str | None = None,
        upload_ttl: timedelta = timedelta(hours=6),
    ) -> None:
        self._queue = queue_manager
        self._vector_store = vector_store
        self._interval = interval
        self._completed_ttl = completed_ttl
        self._failed_ttl = failed_ttl
        self._documents = documents
        self._upload_dir = upload_dir
        self._upload_ttl = upload_ttl
        self._running = False
        self._task: asyncio.Task[None] | None = None

    async def run_cycle(self) -> dict:
        if self._running:
            return {"skipped": True}

        self._running = True
        try:
            jobs = await self._queue.cleanup_jobs(self._completed_ttl, self._failed_ttl)
            stray_uploads = 0
            if self._documents is not None and self._upload_dir:
                stray_uploads = await self._documents.remove_stray_uploads(
                    self._upload_dir, self._upload_ttl,
                )
            orphaned = await self._vector_store.delete_orphans()
            summary = {
                "jobs_completed_deleted": jobs["completed_deleted"],
                "jobs_failed_deleted": jobs["failed_deleted"],
                "jobs_memory_deleted": jobs["memory_deleted"],
                "removed_stray_uploads": stray_uploads,
                "removed_orphan_vectors": orphaned,
            }
            logger.info("cleanup.done", extra=summary)
            return summary
        except Exception:
            logger.exception("cleanup.failed", extra={"stage": "run_cycle"})
            return {"failed": True}
        finally:
            self._running = False

    def start(self) -> None:
        """Run a cycle now and then every `interval` seconds. Idempotent."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _loop(self) -> None:
        while True:
            await self.run_cycle()
            await asyncio.sleep(self._interval)
