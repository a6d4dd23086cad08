# =============================================================================
# Admin API - Queue Observability
# =============================================================================
#
#   GET /admin/queue - job counts by status (in-memory view) plus timing
#                      averages for indexing, embedding and chat queries
#
# Counts come from the queue manager's memory, so jobs already removed by
# the cleanup sweeper are not included.
# =============================================================================

from __future__ import annotations

from fastapi import APIRouter, Depends

from app.api.deps import get_metrics, get_queue_manager
from app.models.responses import QueueStateResponse
from app.services.metrics import MetricsRecorder
from app.workers.queue import QueueManager

router = APIRouter(tags=["Admin"])


@router.get(
    "/admin/queue",
    response_model=QueueStateResponse,
    summary="Queue state and timing metrics",
)
async def get_queue_state(
    queue: QueueManager = Depends(get_queue_manager),
    metrics: MetricsRecorder = Depends(get_metrics),
) -> QueueStateResponse:
    return QueueStateResponse(**queue.get_queue_state().to_dict(), metrics=metrics.snapshot())
