# =============================================================================
# API Response Models - Pydantic V2 Schemas
# =============================================================================
#
# Shape of data going OUT of the API. Stored embeddings and job payloads
# are never part of a response.
# =============================================================================

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    """Response for GET /health - confirms the API is running."""

    status: str = "ok"
    version: str
    service: str
    worker_running: bool


class SessionResponse(BaseModel):
    id: int
    title: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DocumentResponse(BaseModel):
    id: int
    session_id: int
    title: str
    filename: str
    status: str
    indexed_chunks: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SessionSummaryResponse(SessionResponse):
    """One entry of GET /sessions."""

    document_count: int
    message_count: int
    last_message_at: datetime | None = None


class SessionDetailResponse(SessionResponse):
    """Response for GET /sessions/{session_id}: the session and its documents."""

    documents: list[DocumentResponse]


class HistoryClearedResponse(BaseModel):
    session_id: int
    deleted: int


class JobAcceptedResponse(BaseModel):
    """
    Response for endpoints that enqueue background work (202 Accepted).

    Poll GET /jobs/{job_id} or stream GET /jobs/{job_id}/events until
    status is "completed" or "failed".
    """

    job_id: str = Field(description="Queue job ID for progress tracking")
    status: str = Field(description="Initial job status, normally 'queued'")
    progress: int = Field(ge=0, le=100)
    stage: str | None = None
    queue_position: int = Field(
        description="0 when the job is next or running; otherwise jobs ahead of it"
    )


class DocumentUploadResponse(JobAcceptedResponse):
    document_id: int = Field(description="ID of the created document record")


class JobResponse(BaseModel):
    """Response for GET /jobs/{job_id}."""

    id: str
    type: str
    status: str
    progress: int = Field(ge=0, le=100)
    stage: str | None = None
    attempts: int
    max_retries: int
    queue_position: int
    result: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime


class ChatMessageResponse(BaseModel):
    id: int
    role: str
    text: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ChatHistoryResponse(BaseModel):
    session_id: int
    messages: list[ChatMessageResponse]


class QueueStateResponse(BaseModel):
    """Response for GET /admin/queue."""

    pending: int
    processing: int
    completed: int
    failed: int
    total: int
    metrics: dict[str, Any]
