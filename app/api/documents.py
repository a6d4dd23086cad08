# =============================================================================
# Documents API - PDF Upload, Lookup and Removal
# =============================================================================
#
# ENDPOINTS:
#   POST   /sessions/{session_id}/documents - upload a PDF, enqueue indexing
#   GET    /sessions/{session_id}/documents - list documents and their status
#   GET    /documents/{document_id}         - one document and its status
#   DELETE /documents/{document_id}         - remove a document, its vectors
#                                             and cached parsed vectors
#
# Upload returns 202 Accepted with both the document_id and the index
# job_id. The document is searchable once the job completes and its status
# is "indexed".
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from app.api.deps import get_document_service, get_queue_manager
from app.api.jobs import accepted_view
from app.config import settings
from app.errors import TaskEngineError, to_http_exception
from app.models.responses import DocumentResponse, DocumentUploadResponse
from app.services.documents import DocumentService, remove_upload
from app.workers.jobs import JobType
from app.workers.queue import QueueManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Documents"])


@router.post(
    "/sessions/{session_id}/documents",
    response_model=DocumentUploadResponse,
    status_code=202,
    summary="Upload a PDF for indexing",
    description=(
        "Stores the PDF and enqueues an index job. Returns immediately; the "
        "document is NOT searchable until the job completes."
    ),
)
async def upload_document(
    session_id: int,
    file: UploadFile = File(..., description="PDF file to index"),
    title: str | None = Form(default=None, max_length=500),
    documents: DocumentService = Depends(get_document_service),
    queue: QueueManager = Depends(get_queue_manager),
) -> DocumentUploadResponse:
    if not file.filename or not file.filename.lower().endswith(".pdf"):
        raise HTTPException(
            status_code=400,
            detail="Only PDF files are accepted. Please upload a .pdf file.",
        )

    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")
    if len(content) > settings.max_upload_bytes:
        raise HTTPException(status_code=413, detail="Uploaded file is too large.")

    try:
        await documents.require_session(session_id)
    except TaskEngineError as exc:
        raise to_http_exception(exc) from exc

    upload_dir = Path(settings.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    # Prefix avoids collisions between uploads with the same name
    file_path = upload_dir / f"{uuid.uuid4().hex}_{Path(file.filename).name}"
    await asyncio.to_thread(file_path.write_bytes, content)
    logger.info("Saved upload: %s (%d bytes) → %s", file.filename, len(content), file_path)

    try:
        document = await documents.create_document(
            session_id, file.filename, str(file_path), title=title,
        )
    except TaskEngineError as exc:
        remove_upload(str(file_path))
        raise to_http_exception(exc) from exc

    try:
        job = await queue.enqueue(JobType.INDEX_DOCUMENT, {"document_id": document.id})
    except TaskEngineError as exc:
        await documents.mark_failed(document.id)
        raise to_http_exception(exc) from exc

    logger.info("Enqueued index job %s for document %d", job.id, document.id)
    return DocumentUploadResponse(document_id=document.id, **accepted_view(job, queue))


@router.delete(
    "/documents/{document_id}",
    status_code=204,
    summary="Delete a document and its vectors",
)
async def delete_document(
    document_id: int,
    documents: DocumentService = Depends(get_document_service),
) -> None:
    try:
        await documents.delete_document(document_id)
    except TaskEngineError as exc:
        raise to_http_exception(exc) from exc


@router.get(
    "/sessions/{session_id}/documents",
    response_model=list[DocumentResponse],
    summary="List a session's documents",
)
async def list_documents(
    session_id: int,
    documents: DocumentService = Depends(get_document_service),
) -> list[DocumentResponse]:
    try:
        await documents.require_session(session_id)
        records = await documents.list_documents(session_id)
    except TaskEngineError as exc:
        raise to_http_exception(exc) from exc
    return [DocumentResponse.model_validate(r) for r in records]


@router.get(
    "/documents/{document_id}",
    response_model=DocumentResponse,
    summary="Get a document and its indexing status",
)
async def get_document(
    document_id: int,
    documents: DocumentService = Depends(get_document_service),
) -> DocumentResponse:
    try:
        record = await documents.require_document(document_id)
    except TaskEngineError as exc:
        raise to_http_exception(exc) from exc
    return DocumentResponse.model_validate(record)
