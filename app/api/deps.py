# =============================================================================
# API Dependencies - Shared Components from app.state
# =============================================================================
#
# The app factory's lifespan builds one instance of each long-lived
# component and stores it on `app.state`. Handlers receive them through
# these dependencies, so tests can swap any of them via
# `app.dependency_overrides`.
# =============================================================================

from __future__ import annotations

from fastapi import Request

from app.services.chat_history import ChatHistory
from app.services.documents import DocumentService
from app.services.metrics import MetricsRecorder
from app.workers.queue import QueueManager


def get_queue_manager(request: Request) -> QueueManager:
    return request.app.state.queue_manager


def get_document_service(request: Request) -> DocumentService:
    return request.app.state.documents


def get_chat_history(request: Request) -> ChatHistory:
    return request.app.state.chat_history


def get_metrics(request: Request) -> MetricsRecorder:
    return request.app.state.metrics
