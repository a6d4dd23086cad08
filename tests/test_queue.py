# =============================================================================
# Unit Tests - Queue Manager
# =============================================================================
#
# Drives the QueueManager against a real JobStore on in-memory SQLite.
# Runners are scripted fakes, so no parsing, embedding or LLM calls happen.
# Retry delays are shrunk to milliseconds to keep the suite fast.
# =============================================================================

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import text

from app.errors import EnqueueError, InvalidRequestError, PersistenceError
from app.services.vector_cache import VectorCache
from app.services.vectorstore import VectorStore
from app.workers.jobs import Job, JobStatus, JobType, ProgressReporter
from app.workers.queue import QueueManager, compute_backoff
from app.workers.store import JobStore


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class ScriptedRunner:
    """Returns or raises the scripted outcomes in order, then succeeds."""

    def __init__(self, outcomes=None, gate: asyncio.Event | None = None):
        self.calls: list[tuple[str, int]] = []
        self.payloads: list[dict] = []
        self.reporter: ProgressReporter | None = None
        self._outcomes = list(outcomes or [])
        self._gate = gate

    async def run(self, job: Job, reporter: ProgressReporter) -> dict:
        self.calls.append((job.id, job.attempts))
        self.payloads.append(dict(job.payload))
        self.reporter = reporter
        if self._gate is not None:
            await self._gate.wait()
        outcome = self._outcomes.pop(0) if self._outcomes else {"ok": True}
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class ReportingRunner:
    """Reports a deliberately messy progress sequence."""

    async def run(self, job: Job, reporter: ProgressReporter) -> dict:
        await reporter.report(50, "embedding")
        await reporter.report(20, "embedding")
        await reporter.report(150, "embedding")
        await reporter.report(-5, "finishing")
        return {}


class RecordingQueueManager(QueueManager):
    """Captures the backoff delay of every scheduled retry."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.delays: list[float] = []

    def _schedule_retry(self, job, delay):
        self.delays.append(delay)
        super()._schedule_retry(job, delay)


def _manager(store, runner, cls=QueueManager, **kwargs) -> QueueManager:
    kwargs.setdefault("retry_base_delay", 0.001)
    return cls(store, {JobType.INDEX_DOCUMENT: runner, JobType.CHAT_QUERY: runner}, **kwargs)


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


# ---------------------------------------------------------------------------
# Test: Backoff
# ---------------------------------------------------------------------------


class TestComputeBackoff:
    def test_doubles_per_attempt(self):
        assert [compute_backoff(0.25, n) for n in (1, 2, 3, 4)] == [0.25, 0.5, 1.0, 2.0]

    def test_zero_attempts_uses_base(self):
        assert compute_backoff(0.25, 0) == 0.25


# ---------------------------------------------------------------------------
# Test: Enqueue
# ---------------------------------------------------------------------------


class TestEnqueue:
    def test_job_runs_to_completion(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                store = JobStore(session_factory)
                runner = ScriptedRunner([{"indexed_chunks": 3}])
                manager = _manager(store, runner)

                job = await manager.enqueue(JobType.INDEX_DOCUMENT, {"document_id": 1})
                assert job.status is JobStatus.QUEUED
                assert job.stage == "uploading"

                done = await manager.wait_for_terminal(job.id, timeout=2)
                stored = await store.get(job.id)
                await manager.shutdown()
                return done, stored

        done, stored = _run(scenario())
        assert done.status is JobStatus.COMPLETED
        assert done.progress == 100
        assert done.result == {"indexed_chunks": 3}
        assert done.attempts == 1
        assert stored.status is JobStatus.COMPLETED
        assert stored.result == {"indexed_chunks": 3}

    def test_unknown_job_type_rejected(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                manager = _manager(JobStore(session_factory), ScriptedRunner())
                with pytest.raises(InvalidRequestError):
                    await manager.enqueue("resize_image", {})
                return manager.get_queue_state()

        assert _run(scenario()).total == 0

    def test_type_without_runner_rejected(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                manager = QueueManager(
                    JobStore(session_factory), {JobType.INDEX_DOCUMENT: ScriptedRunner()},
                )
                with pytest.raises(InvalidRequestError):
                    await manager.enqueue(JobType.CHAT_QUERY, {"session_id": 1})

        _run(scenario())

    @pytest.mark.parametrize("value", [-1, "2", 1.5, None, True])
    def test_invalid_max_retries_uses_default(self, memory_db, value):
        async def scenario():
            async with memory_db() as session_factory:
                manager = _manager(
                    JobStore(session_factory), ScriptedRunner(), default_max_retries=3,
                )
                job = await manager.enqueue(JobType.CHAT_QUERY, {}, max_retries=value)
                await manager.shutdown()
                return job.max_retries

        assert _run(scenario()) == 3

    def test_zero_max_retries_accepted(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                manager = _manager(JobStore(session_factory), ScriptedRunner())
                job = await manager.enqueue(JobType.CHAT_QUERY, {}, max_retries=0)
                await manager.shutdown()
                return job.max_retries

        assert _run(scenario()) == 0

    def test_insert_failure_rolls_back(self):
        async def scenario():
            store = AsyncMock(spec=JobStore)
            store.insert.side_effect = PersistenceError("database is down")
            store.get.return_value = None
            runner = ScriptedRunner()
            manager = _manager(store, runner)

            with pytest.raises(EnqueueError) as excinfo:
                await manager.enqueue(JobType.INDEX_DOCUMENT, {"document_id": 1})
            await asyncio.sleep(0.01)
            return manager, runner, excinfo.value

        manager, runner, error = _run(scenario())
        assert str(error) == "Failed to enqueue background job."
        assert manager.get_queue_state().total == 0
        assert not manager.is_running
        assert runner.calls == []


# ---------------------------------------------------------------------------
# Test: Ordering and Positions
# ---------------------------------------------------------------------------


class TestOrdering:
    def test_jobs_run_in_fifo_order(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                runner = ScriptedRunner()
                manager = _manager(JobStore(session_factory), runner)
                jobs = [
                    await manager.enqueue(JobType.CHAT_QUERY, {"n": n}) for n in range(5)
                ]
                await manager.wait_for_terminal(jobs[-1].id, timeout=2)
                await manager.shutdown()
                return runner

        runner = _run(scenario())
        assert [p["n"] for p in runner.payloads] == [0, 1, 2, 3, 4]

    def test_queue_positions(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                gate = asyncio.Event()
                manager = _manager(JobStore(session_factory), ScriptedRunner(gate=gate))
                first = await manager.enqueue(JobType.CHAT_QUERY, {})
                second = await manager.enqueue(JobType.CHAT_QUERY, {})
                third = await manager.enqueue(JobType.CHAT_QUERY, {})

                await _wait_until(lambda: first.status is JobStatus.PROCESSING)
                while_running = [
                    await manager.get_queue_position(j.id) for j in (first, second, third)
                ]
                unknown = await manager.get_queue_position("job_missing")
                state = manager.get_queue_state()

                gate.set()
                await manager.wait_for_terminal(third.id, timeout=2)
                after = [
                    await manager.get_queue_position(j.id) for j in (first, second, third)
                ]
                await manager.shutdown()
                return while_running, unknown, state, after

        while_running, unknown, state, after = _run(scenario())
        assert while_running == [0, 1, 2]
        assert unknown is None
        assert state.processing == 1
        assert state.pending == 2
        assert state.total == 3
        assert after == [0, 0, 0]


# ---------------------------------------------------------------------------
# Test: Retries
# ---------------------------------------------------------------------------


class TestRetries:
    def test_exhausts_after_max_retries_plus_one_attempts(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                store = JobStore(session_factory)
                runner = ScriptedRunner([RuntimeError("boom")] * 10)
                manager = _manager(store, runner, cls=RecordingQueueManager)

                job = await manager.enqueue(JobType.INDEX_DOCUMENT, {}, max_retries=2)
                done = await manager.wait_for_terminal(job.id, timeout=2)
                stored = await store.get(job.id)
                await manager.shutdown()
                return manager, runner, done, stored

        manager, runner, done, stored = _run(scenario())
        assert done.status is JobStatus.FAILED
        assert done.attempts == 3
        assert done.error == "boom"
        assert done.result is None
        assert len(runner.calls) == 3
        assert manager.delays == [0.001, 0.002]
        assert stored.status is JobStatus.FAILED
        assert stored.attempts == 3

    def test_succeeds_after_one_failure(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                runner = ScriptedRunner([RuntimeError("flaky"), {"answer": "ok"}])
                manager = _manager(JobStore(session_factory), runner)
                job = await manager.enqueue(JobType.CHAT_QUERY, {}, max_retries=1)
                done = await manager.wait_for_terminal(job.id, timeout=2)
                await manager.shutdown()
                return done

        done = _run(scenario())
        assert done.status is JobStatus.COMPLETED
        assert done.attempts == 2
        assert done.error is None
        assert done.result == {"answer": "ok"}

    def test_zero_retries_fails_on_first_error(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                runner = ScriptedRunner([ValueError("bad input")])
                manager = _manager(JobStore(session_factory), runner)
                job = await manager.enqueue(JobType.CHAT_QUERY, {}, max_retries=0)
                done = await manager.wait_for_terminal(job.id, timeout=2)
                await manager.shutdown()
                return done, runner

        done, runner = _run(scenario())
        assert done.status is JobStatus.FAILED
        assert done.attempts == 1
        assert len(runner.calls) == 1

    def test_backoff_does_not_block_other_jobs(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                runner = ScriptedRunner([RuntimeError("first try fails")])
                manager = _manager(JobStore(session_factory), runner, retry_base_delay=0.2)
                slow = await manager.enqueue(JobType.CHAT_QUERY, {"n": "slow"}, max_retries=1)
                fast = await manager.enqueue(JobType.CHAT_QUERY, {"n": "fast"})

                fast_done = await manager.wait_for_terminal(fast.id, timeout=2)
                slow_state_then = slow.status
                slow_position = manager.position_of(slow)
                await manager.wait_for_terminal(slow.id, timeout=2)
                await manager.shutdown()
                return runner, fast_done, slow_state_then, slow_position

        runner, fast_done, slow_state_then, slow_position = _run(scenario())
        assert fast_done.status is JobStatus.COMPLETED
        assert slow_state_then is JobStatus.QUEUED
        assert slow_position == 0
        assert [p["n"] for p in runner.payloads] == ["slow", "fast", "slow"]

    def test_job_waiting_on_backoff_is_not_pending(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                runner = ScriptedRunner([RuntimeError("boom")])
                manager = _manager(JobStore(session_factory), runner, retry_base_delay=10)
                job = await manager.enqueue(JobType.CHAT_QUERY, {}, max_retries=3)
                await _wait_until(lambda: job.attempts == 1 and job.status is JobStatus.QUEUED)
                state = manager.get_queue_state()
                await manager.shutdown()
                return state

        state = _run(scenario())
        assert state.pending == 0
        assert state.processing == 0
        assert state.total == 1

    def test_shutdown_cancels_pending_retry(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                runner = ScriptedRunner([RuntimeError("boom")])
                manager = _manager(JobStore(session_factory), runner, retry_base_delay=10)
                job = await manager.enqueue(JobType.CHAT_QUERY, {}, max_retries=3)
                await _wait_until(lambda: job.attempts == 1 and job.status is JobStatus.QUEUED)
                await manager.shutdown()
                await asyncio.sleep(0.01)
                return job, runner

        job, runner = _run(scenario())
        assert job.status is JobStatus.QUEUED
        assert len(runner.calls) == 1


# ---------------------------------------------------------------------------
# Test: Persistence Failures
# ---------------------------------------------------------------------------


class TestPersistenceFailures:
    def test_job_store_error_message_hides_sql(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                async with session_factory() as session:
                    await session.execute(text("DROP TABLE job_queue"))
                    await session.commit()
                store = JobStore(session_factory)
                with pytest.raises(PersistenceError) as info:
                    await store.insert(Job(id="job_1_1", type=JobType.CHAT_QUERY, payload={}))
                return str(info.value)

        assert _run(scenario()) == "Failed to insert job job_1_1."

    def test_vector_write_failure_recorded_without_sql(self, memory_db):
        class StoringRunner:
            def __init__(self, vector_store):
                self.vector_store = vector_store

            async def run(self, job, reporter):
                await self.vector_store.add_vectors(1, 7, ["text"], [[1.0, 0.0]])
                return {}

        async def scenario():
            async with memory_db() as session_factory:
                async with session_factory() as session:
                    await session.execute(text("DROP TABLE chunks"))
                    await session.commit()
                runner = StoringRunner(VectorStore(session_factory, VectorCache()))
                manager = _manager(JobStore(session_factory), runner)
                job = await manager.enqueue(JobType.INDEX_DOCUMENT, {}, max_retries=0)
                done = await manager.wait_for_terminal(job.id, timeout=2)
                await manager.shutdown()
                return done

        done = _run(scenario())
        assert done.status is JobStatus.FAILED
        assert done.error == "Failed to store vectors."

    def test_processing_write_failure_fails_job(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                store = JobStore(session_factory)
                runner = ScriptedRunner()
                manager = _manager(store, runner)
                job = await manager.enqueue(JobType.INDEX_DOCUMENT, {})
                store.update = AsyncMock(side_effect=PersistenceError("disk full"))
                done = await manager.wait_for_terminal(job.id, timeout=2)
                await manager.shutdown()
                return done, runner

        done, runner = _run(scenario())
        assert done.status is JobStatus.FAILED
        assert done.error == "Failed to persist processing status."
        assert runner.calls == []

    def test_completion_write_failure_fails_job(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                store = JobStore(session_factory)
                real_update = store.update

                async def update_unless_completed(job):
                    if job.status is JobStatus.COMPLETED:
                        raise PersistenceError("constraint violated")
                    await real_update(job)

                store.update = update_unless_completed
                manager = _manager(store, ScriptedRunner())
                job = await manager.enqueue(JobType.INDEX_DOCUMENT, {})
                done = await manager.wait_for_terminal(job.id, timeout=2)
                stored = await JobStore(session_factory).get(job.id)
                await manager.shutdown()
                return done, stored

        done, stored = _run(scenario())
        assert done.status is JobStatus.FAILED
        assert done.error == "Failed to persist completion state."
        assert done.result is None
        assert stored.status is JobStatus.FAILED


# ---------------------------------------------------------------------------
# Test: Progress
# ---------------------------------------------------------------------------


class TestProgress:
    def test_progress_is_monotonic_and_clamped(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                manager = _manager(JobStore(session_factory), ReportingRunner())
                job = await manager.enqueue(JobType.INDEX_DOCUMENT, {})
                events = manager.subscribe(job.id)
                await manager.wait_for_terminal(job.id, timeout=2)
                collected = []
                while not events.empty():
                    collected.append(events.get_nowait())
                manager.unsubscribe(job.id, events)
                await manager.shutdown()
                return collected

        events = _run(scenario())
        values = [e.progress for e in events]
        assert values == sorted(values)
        assert all(0 <= v <= 100 for v in values)
        assert events[0].stage == "parsing"
        assert events[0].progress == 5
        assert events[-1].status is JobStatus.COMPLETED
        assert events[-1].progress == 100
        assert 20 not in values

    def test_late_progress_after_completion_is_ignored(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                runner = ScriptedRunner()
                manager = _manager(JobStore(session_factory), runner)
                job = await manager.enqueue(JobType.CHAT_QUERY, {})
                await manager.wait_for_terminal(job.id, timeout=2)
                await runner.reporter.report(10, "late")
                await manager.shutdown()
                return job

        job = _run(scenario())
        assert job.progress == 100
        assert job.stage != "late"

    def test_subscribe_to_finished_job_gets_final_event(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                manager = _manager(JobStore(session_factory), ScriptedRunner())
                job = await manager.enqueue(JobType.CHAT_QUERY, {})
                await manager.wait_for_terminal(job.id, timeout=2)
                events = manager.subscribe(job.id)
                event = events.get_nowait()
                await manager.shutdown()
                return event

        event = _run(scenario())
        assert event.is_terminal
        assert event.to_dict()["status"] == "completed"


# ---------------------------------------------------------------------------
# Test: Recovery
# ---------------------------------------------------------------------------


class TestRecovery:
    def test_interrupted_job_is_requeued_and_completes(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                store = JobStore(session_factory)
                await store.insert(Job(
                    id="job_1_1",
                    type=JobType.INDEX_DOCUMENT,
                    payload={"document_id": 7},
                    status=JobStatus.PROCESSING,
                    progress=45,
                    stage="embedding",
                    attempts=1,
                    max_retries=3,
                ))
                runner = ScriptedRunner()
                manager = _manager(store, runner)

                recovered = await manager.recover()
                job = await manager.get_job("job_1_1")
                requeued = (job.status, job.progress, job.stage)
                again = await manager.recover()

                done = await manager.wait_for_terminal("job_1_1", timeout=2)
                await manager.shutdown()
                return recovered, requeued, again, done, runner

        recovered, requeued, again, done, runner = _run(scenario())
        assert recovered == 1
        assert requeued == (JobStatus.QUEUED, 0, "uploading")
        assert again == 0
        assert done.status is JobStatus.COMPLETED
        assert done.attempts == 2
        assert runner.payloads == [{"document_id": 7}]

    def test_queued_rows_recovered_in_creation_order(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                store = JobStore(session_factory)
                for n in range(3):
                    await store.insert(Job(id=f"job_0_{n}", type=JobType.CHAT_QUERY, payload={"n": n}))
                    await asyncio.sleep(0.002)
                runner = ScriptedRunner()
                manager = _manager(store, runner)
                await manager.recover()
                await manager.wait_for_terminal("job_0_2", timeout=2)
                await manager.shutdown()
                return runner

        runner = _run(scenario())
        assert [p["n"] for p in runner.payloads] == [0, 1, 2]

    def test_interrupted_final_attempt_fails(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                store = JobStore(session_factory)
                await store.insert(Job(
                    id="job_1_2",
                    type=JobType.CHAT_QUERY,
                    payload={},
                    status=JobStatus.PROCESSING,
                    attempts=2,
                    max_retries=1,
                ))
                runner = ScriptedRunner()
                manager = _manager(store, runner)
                recovered = await manager.recover()
                stored = await store.get("job_1_2")
                await manager.shutdown()
                return recovered, stored, runner

        recovered, stored, runner = _run(scenario())
        assert recovered == 0
        assert stored.status is JobStatus.FAILED
        assert stored.error
        assert runner.calls == []

    def test_terminal_job_loaded_from_store(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                store = JobStore(session_factory)
                await store.insert(Job(
                    id="job_1_3",
                    type=JobType.CHAT_QUERY,
                    payload={},
                    status=JobStatus.COMPLETED,
                    progress=100,
                    result={"answer": "42"},
                ))
                manager = _manager(store, ScriptedRunner())
                recovered = await manager.recover()
                job = await manager.get_job("job_1_3")
                position = await manager.get_queue_position("job_1_3")
                return recovered, job, position

        recovered, job, position = _run(scenario())
        assert recovered == 0
        assert job.status is JobStatus.COMPLETED
        assert job.result == {"answer": "42"}
        assert position == 0


# ---------------------------------------------------------------------------
# Test: Cleanup
# ---------------------------------------------------------------------------


class TestCleanupJobs:
    def test_removes_old_terminal_jobs_only(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                store = JobStore(session_factory)
                manager = _manager(store, ScriptedRunner())
                job = await manager.enqueue(JobType.CHAT_QUERY, {})
                await manager.wait_for_terminal(job.id, timeout=2)

                kept = await manager.cleanup_jobs(timedelta(hours=24), timedelta(hours=72))
                removed = await manager.cleanup_jobs(timedelta(0), timedelta(0))
                after = await manager.get_job(job.id)
                await manager.shutdown()
                return kept, removed, after

        kept, removed, after = _run(scenario())
        assert kept == {"completed_deleted": 0, "failed_deleted": 0, "memory_deleted": 0}
        assert removed == {"completed_deleted": 1, "failed_deleted": 0, "memory_deleted": 1}
        assert after is None

    def test_failed_jobs_use_their_own_ttl(self, memory_db):
        async def scenario():
            async with memory_db() as session_factory:
                store = JobStore(session_factory)
                manager = _manager(store, ScriptedRunner([RuntimeError("nope")]))
                job = await manager.enqueue(JobType.CHAT_QUERY, {}, max_retries=0)
                await manager.wait_for_terminal(job.id, timeout=2)

                kept = await manager.cleanup_jobs(timedelta(0), timedelta(hours=72))
                removed = await manager.cleanup_jobs(timedelta(0), timedelta(0))
                await manager.shutdown()
                return kept, removed

        kept, removed = _run(scenario())
        assert kept["failed_deleted"] == 0
        assert kept["memory_deleted"] == 0
        assert removed["failed_deleted"] == 1
        assert removed["memory_deleted"] == 1
