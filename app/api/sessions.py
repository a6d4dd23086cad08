# =============================================================================
# Sessions API - Chat Sessions, History and Chat Queries
# =============================================================================
#
# ENDPOINTS:
#   GET    /sessions                     - list sessions, most recent chat first
#   POST   /sessions                     - create a session
#   GET    /sessions/{session_id}        - a session with its documents
#   DELETE /sessions/{session_id}        - delete it with documents, vectors
#                                          and history
#   GET    /sessions/{session_id}/history - chat messages, oldest first
#   DELETE /sessions/{session_id}/history - clear the chat messages
#   POST   /sessions/{session_id}/chat   - enqueue a chat query (202)
#
# A chat query runs in the background queue like indexing does. The
# response carries a job_id; the answer arrives as the job's result.
# Chat is refused with 400 until the session has an indexed document and
# none still processing or failed.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_chat_history, get_document_service, get_queue_manager
from app.api.jobs import accepted_view
from app.config import settings
from app.errors import DocumentsNotReadyError, TaskEngineError, to_http_exception
from app.models.requests import ChatRequest, CreateSessionRequest
from app.models.responses import (
    ChatHistoryResponse,
    DocumentResponse,
    HistoryClearedResponse,
    JobAcceptedResponse,
    SessionDetailResponse,
    SessionResponse,
    SessionSummaryResponse,
)
from app.services.chat_history import ChatHistory
from app.services.documents import DocumentService
from app.workers.jobs import JobType
from app.workers.queue import QueueManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Sessions"])


@router.get(
    "/sessions",
    response_model=list[SessionSummaryResponse],
    summary="List chat sessions",
)
async def list_sessions(
    documents: DocumentService = Depends(get_document_service),
) -> list[SessionSummaryResponse]:
    try:
        summaries = await documents.list_sessions()
    except TaskEngineError as exc:
        raise to_http_exception(exc) from exc
    return [SessionSummaryResponse.model_validate(s) for s in summaries]


@router.post(
    "/sessions",
    response_model=SessionResponse,
    status_code=201,
    summary="Create a chat session",
)
async def create_session(
    request: CreateSessionRequest,
    documents: DocumentService = Depends(get_document_service),
) -> SessionResponse:
    try:
        record = await documents.create_session(request.title)
    except TaskEngineError as exc:
        raise to_http_exception(exc) from exc
    return SessionResponse.model_validate(record)


@router.get(
    "/sessions/{session_id}",
    response_model=SessionDetailResponse,
    summary="Get a session and its documents",
)
async def get_session(
    session_id: int,
    documents: DocumentService = Depends(get_document_service),
) -> SessionDetailResponse:
    try:
        record = await documents.require_session(session_id)
        records = await documents.list_documents(session_id)
    except TaskEngineError as exc:
        raise to_http_exception(exc) from exc
    return SessionDetailResponse(
        id=record.id,
        title=record.title,
        created_at=record.created_at,
        documents=[DocumentResponse.model_validate(r) for r in records],
    )


@router.delete(
    "/sessions/{session_id}",
    status_code=204,
    summary="Delete a session and everything it owns",
)
async def delete_session(
    session_id: int,
    documents: DocumentService = Depends(get_document_service),
) -> None:
    try:
        await documents.delete_session(session_id)
    except TaskEngineError as exc:
        raise to_http_exception(exc) from exc


@router.get(
    "/sessions/{session_id}/history",
    response_model=ChatHistoryResponse,
    summary="List a session's chat messages",
)
async def get_history(
    session_id: int,
    limit: int = Query(default=1000, ge=1, le=5000),
    offset: int = Query(default=0, ge=0),
    documents: DocumentService = Depends(get_document_service),
    chat_history: ChatHistory = Depends(get_chat_history),
) -> ChatHistoryResponse:
    try:
        await documents.require_session(session_id)
        messages = await chat_history.list_history(session_id, limit=limit, offset=offset)
    except TaskEngineError as exc:
        raise to_http_exception(exc) from exc
    return ChatHistoryResponse(session_id=session_id, messages=messages)


@router.delete(
    "/sessions/{session_id}/history",
    response_model=HistoryClearedResponse,
    summary="Clear a session's chat messages",
)
async def clear_history(
    session_id: int,
    documents: DocumentService = Depends(get_document_service),
    chat_history: ChatHistory = Depends(get_chat_history),
) -> HistoryClearedResponse:
    try:
        await documents.require_session(session_id)
        deleted = await chat_history.clear_history(session_id)
    except TaskEngineError as exc:
        raise to_http_exception(exc) from exc
    return HistoryClearedResponse(session_id=session_id, deleted=deleted)


@router.post(
    "/sessions/{session_id}/chat",
    response_model=JobAcceptedResponse,
    status_code=202,
    summary="Ask a question about the session's documents",
    description=(
        "Enqueues a chat query and returns a job_id. Poll GET /jobs/{job_id} "
        "or stream GET /jobs/{job_id}/events for the answer."
    ),
)
async def chat(
    session_id: int,
    request: ChatRequest,
    documents: DocumentService = Depends(get_document_service),
    chat_history: ChatHistory = Depends(get_chat_history),
    queue: QueueManager = Depends(get_queue_manager),
) -> JobAcceptedResponse:
    try:
        await documents.require_session(session_id)
        readiness = await documents.readiness(session_id)
        if not readiness.is_ready:
            raise DocumentsNotReadyError(session_id)

        recent = await chat_history.recent_history(session_id, settings.chat_history_limit)
        history = [{"role": m.role, "text": m.text} for m in recent]
        job = await queue.enqueue(
            JobType.CHAT_QUERY,
            {
                "session_id": session_id,
                "message": request.message,
                "history": history,
                "top_k": request.top_k or settings.retrieval_top_k,
            },
            max_retries=(
                request.max_retries
                if request.max_retries is not None
                else settings.chat_max_retries
            ),
        )
    except TaskEngineError as exc:
        raise to_http_exception(exc) from exc

    logger.info("Enqueued chat job %s for session %d", job.id, session_id)
    return JobAcceptedResponse(**accepted_view(job, queue))
