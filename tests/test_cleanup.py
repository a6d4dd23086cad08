# =============================================================================
# Unit Tests - Cleanup Sweeper
# =============================================================================

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

from app.errors import PersistenceError
from app.services.cleanup import CleanupSweeper


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _mocks():
    queue = AsyncMock()
    queue.cleanup_jobs.return_value = {
        "completed_deleted": 2,
        "failed_deleted": 1,
        "memory_deleted": 3,
    }
    vector_store = AsyncMock()
    vector_store.delete_orphans.return_value = 5
    return queue, vector_store


class TestRunCycle:
    def test_summary(self):
        queue, vector_store = _mocks()
        sweeper = CleanupSweeper(
            queue, vector_store,
            completed_ttl=timedelta(hours=1), failed_ttl=timedelta(hours=2),
        )

        summary = _run(sweeper.run_cycle())

        assert summary == {
            "jobs_completed_deleted": 2,
            "jobs_failed_deleted": 1,
            "jobs_memory_deleted": 3,
            "removed_stray_uploads": 0,
            "removed_orphan_vectors": 5,
        }
        queue.cleanup_jobs.assert_awaited_once_with(timedelta(hours=1), timedelta(hours=2))

    def test_stray_uploads_swept_when_configured(self):
        queue, vector_store = _mocks()
        documents = AsyncMock()
        documents.remove_stray_uploads.return_value = 4
        sweeper = CleanupSweeper(
            queue, vector_store,
            documents=documents, upload_dir="data/uploads", upload_ttl=timedelta(hours=6),
        )

        summary = _run(sweeper.run_cycle())

        assert summary["removed_stray_uploads"] == 4
        documents.remove_stray_uploads.assert_awaited_once_with(
            "data/uploads", timedelta(hours=6),
        )

    def test_overlapping_cycle_is_skipped(self):
        queue, vector_store = _mocks()
        release = None

        async def slow_cleanup(*_args):
            await release.wait()
            return {"completed_deleted": 0, "failed_deleted": 0, "memory_deleted": 0}

        queue.cleanup_jobs.side_effect = slow_cleanup
        sweeper = CleanupSweeper(queue, vector_store)

        async def scenario():
            nonlocal release
            release = asyncio.Event()
            first = asyncio.create_task(sweeper.run_cycle())
            await asyncio.sleep(0)
            second = await sweeper.run_cycle()
            release.set()
            return await first, second

        first, second = _run(scenario())
        assert second == {"skipped": True}
        assert first["removed_orphan_vectors"] == 5

    def test_failure_is_reported_not_raised(self):
        queue, vector_store = _mocks()
        vector_store.delete_orphans.side_effect = PersistenceError("db gone")
        sweeper = CleanupSweeper(queue, vector_store)

        assert _run(sweeper.run_cycle()) == {"failed": True}
        # The guard is released, so the next cycle runs normally
        vector_store.delete_orphans.side_effect = None
        assert _run(sweeper.run_cycle())["removed_orphan_vectors"] == 5


class TestLifecycle:
    def test_start_runs_immediately_and_stop_cancels(self):
        queue, vector_store = _mocks()
        sweeper = CleanupSweeper(queue, vector_store, interval=3600)

        async def scenario():
            sweeper.start()
            sweeper.start()
            await asyncio.sleep(0.01)
            await sweeper.stop()

        _run(scenario())
        queue.cleanup_jobs.assert_awaited_once()
