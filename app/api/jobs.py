# =============================================================================
# Jobs API - Polling and Streaming Background Job Progress
# =============================================================================
#
# ENDPOINTS:
#   GET /jobs/{job_id}         - current status, progress, stage, queue
#                                position, result or error
#   GET /jobs/{job_id}/events  - Server-Sent Events stream of progress
#
# SSE FORMAT:
#   event: progress
#   data: {"job_id": ..., "progress": 40, "stage": "embedding", ...}
#
#   event: done
#   data: {full job view, same shape as GET /jobs/{job_id}}
#
# Job errors are reported inside the job view, never as HTTP errors: a
# failed job is still a successful poll.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from app.api.deps import get_queue_manager
from app.errors import TaskEngineError, to_http_exception
from app.models.responses import JobAcceptedResponse, JobResponse
from app.workers.jobs import Job
from app.workers.queue import QueueManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Jobs"])

# Seconds between keep-alive comments on an idle event stream
_KEEPALIVE_SECONDS = 15.0


def job_view(job: Job, queue: QueueManager) -> JobResponse:
    return JobResponse(
        id=job.id,
        type=job.type.value,
        status=job.status.value,
        progress=job.progress,
        stage=job.stage,
        attempts=job.attempts,
        max_retries=job.max_retries,
        queue_position=queue.position_of(job),
        result=job.result,
        error=job.error,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


def accepted_view(job: Job, queue: QueueManager) -> dict:
    """Fields shared by every 202 response that hands back a job."""
    return JobAcceptedResponse(
        job_id=job.id,
        status=job.status.value,
        progress=job.progress,
        stage=job.stage,
        queue_position=queue.position_of(job),
    ).model_dump()


async def _load_job(job_id: str, queue: QueueManager) -> Job:
    try:
        job = await queue.get_job(job_id)
    except TaskEngineError as exc:
        logger.error("Job lookup failed for %s: %s", job_id, exc)
        raise to_http_exception(exc) from exc
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found.")
    return job


# ---------------------------------------------------------------------------
# GET /jobs/{job_id}
# ---------------------------------------------------------------------------


@router.get(
    "/jobs/{job_id}",
    response_model=JobResponse,
    summary="Get background job status",
)
async def get_job(
    job_id: str,
    queue: QueueManager = Depends(get_queue_manager),
) -> JobResponse:
    job = await _load_job(job_id, queue)
    return job_view(job, queue)


# ---------------------------------------------------------------------------
# GET /jobs/{job_id}/events
# ---------------------------------------------------------------------------


@router.get(
    "/jobs/{job_id}/events",
    summary="Stream job progress as Server-Sent Events",
)
async def stream_job_events(
    job_id: str,
    queue: QueueManager = Depends(get_queue_manager),
) -> StreamingResponse:
    await _load_job(job_id, queue)

    async def event_generator() -> AsyncGenerator[str, None]:
        events = queue.subscribe(job_id)
        try:
            job = await queue.get_job(job_id)
            if job is not None and not job.is_terminal:
                yield _sse("progress", {
                    "job_id": job.id,
                    "progress": job.progress,
                    "stage": job.stage,
                    "status": job.status.value,
                    "attempt": job.attempts,
                })
                while True:
                    try:
                        event = await asyncio.wait_for(events.get(), _KEEPALIVE_SECONDS)
                    except TimeoutError:
                        yield ": keep-alive\n\n"
                        continue
                    yield _sse("progress", event.to_dict())
                    if event.is_terminal:
                        break

            final = await queue.get_job(job_id)
            if final is not None:
                yield _sse("done", job_view(final, queue).model_dump(mode="json"))
        finally:
            queue.unsubscribe(job_id, events)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


def _sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"
