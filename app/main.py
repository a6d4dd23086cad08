# =============================================================================
# Application Factory - FastAPI App, Lifespan and Component Wiring
# =============================================================================
#
# STARTUP (lifespan):
#   1. Configure logging (JSON or plain, from settings)
#   2. Build the async engine and create missing tables
#   3. Build the shared components:
#        VectorCache → VectorStore → SimilarityEngine
#        DocumentService, ChatHistory, MetricsRecorder
#        IndexDocumentRunner, ChatQueryRunner → QueueManager
#        CleanupSweeper
#   4. QueueManager.recover(): interrupted jobs go back on the ready list
#   5. Start the cleanup sweeper
#
# Requests are rate limited per client IP (slowapi), except /health.
#
# SHUTDOWN: stop the sweeper, stop the queue (an in-flight job stays
# "processing" in the database and is recovered on next start), dispose
# the engine.
#
# Run with:  uvicorn app.main:app
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from app.api import admin, documents, jobs, sessions
from app.config import settings
from app.db.engine import dispose_engine, get_engine, get_session_factory, init_models
from app.logging_config import configure_logging
from app.models.responses import HealthResponse
from app.services.chat_history import ChatHistory
from app.services.cleanup import CleanupSweeper
from app.services.documents import DocumentService
from app.services.metrics import MetricsRecorder
from app.services.similarity import SimilarityEngine
from app.services.vector_cache import VectorCache
from app.services.vectorstore import VectorStore
from app.workers.jobs import JobType
from app.workers.queue import QueueManager
from app.workers.runners import ChatQueryRunner, IndexDocumentRunner
from app.workers.store import JobStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    configure_logging(settings.log_level, settings.log_format)

    engine = get_engine()
    await init_models(engine)
    session_factory = get_session_factory()

    cache = VectorCache(
        max_owners=settings.vector_cache_max_documents,
        max_entries_per_owner=settings.vector_cache_max_entries_per_document,
    )
    vector_store = VectorStore(session_factory, cache)
    similarity = SimilarityEngine(
        vector_store, cache, default_page_size=settings.retrieval_page_size,
    )
    document_service = DocumentService(session_factory, vector_store)
    chat_history = ChatHistory(session_factory)
    metrics = MetricsRecorder()

    runners = {
        JobType.INDEX_DOCUMENT: IndexDocumentRunner(
            document_service, vector_store, metrics=metrics,
        ),
        JobType.CHAT_QUERY: ChatQueryRunner(
            similarity,
            chat_history,
            default_top_k=settings.retrieval_top_k,
            max_top_k=settings.retrieval_max_top_k,
            page_size=settings.retrieval_page_size,
            history_limit=settings.chat_history_limit,
            metrics=metrics,
        ),
    }
    queue_manager = QueueManager(
        JobStore(session_factory),
        runners,
        retry_base_delay=settings.queue_retry_base_delay,
        default_max_retries=settings.queue_default_max_retries,
    )
    sweeper = CleanupSweeper(
        queue_manager,
        vector_store,
        interval=settings.cleanup_interval_seconds,
        completed_ttl=timedelta(hours=settings.cleanup_completed_job_ttl_hours),
        failed_ttl=timedelta(hours=settings.cleanup_failed_job_ttl_hours),
        documents=document_service,
        upload_dir=settings.upload_dir,
        upload_ttl=timedelta(hours=settings.cleanup_upload_ttl_hours),
    )

    app.state.queue_manager = queue_manager
    app.state.documents = document_service
    app.state.chat_history = chat_history
    app.state.metrics = metrics

    recovered = await queue_manager.recover()
    sweeper.start()
    logger.info("Startup complete: %d jobs recovered", recovered)

    try:
        yield
    finally:
        await sweeper.stop()
        await queue_manager.shutdown()
        await dispose_engine()
        logger.info("Shutdown complete")


def create_app() -> FastAPI:
    """Create the FastAPI application with all routers registered."""
    app = FastAPI(
        title=settings.app_name,
        description=(
            "Upload PDFs into chat sessions, index them in a durable background "
            "queue, and ask grounded questions over their content."
        ),
        version=settings.app_version,
        lifespan=lifespan,
    )

    # Per-IP limit on every route; /health is exempt below
    limiter = Limiter(
        key_func=get_remote_address,
        default_limits=[f"{settings.rate_limit_per_minute}/minute"],
        enabled=settings.rate_limit_enabled,
    )
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.include_router(sessions.router)
    app.include_router(documents.router)
    app.include_router(jobs.router)
    app.include_router(admin.router)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    @limiter.exempt
    async def health(request: Request) -> HealthResponse:
        queue_manager: QueueManager | None = getattr(request.app.state, "queue_manager", None)
        return HealthResponse(
            version=settings.app_version,
            service=settings.app_name,
            worker_running=bool(queue_manager and queue_manager.is_running),
        )

    return app


app = create_app()
