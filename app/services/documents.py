# =============================================================================
# Document Service - Sessions and Uploaded Document Records
# =============================================================================
#
# CRUD for the `sessions` and `documents` tables, plus the status updates
# the index runner makes once a document has been processed:
#
#   create_document()  → status "processing"
#   mark_indexed()     → status "indexed", indexed_chunks = n
#   mark_failed()      → status "failed",  indexed_chunks = 0
#
# A session is ready for chat once it has at least one indexed document
# and nothing still processing or failed (see readiness()).
#
# Deleting a document or a whole session goes through the VectorStore
# first, so cached parsed vectors are dropped before their rows disappear.
# Upload files with no document row (a failed insert, a crash between
# write and insert) are reaped by remove_stray_uploads().
# =============================================================================

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models import ChatMessage, ChatSession, Document, DocumentStatus
from app.errors import InvalidRequestError, NotFoundError, PersistenceError
from app.services.vectorstore import VectorStore
from app.workers.jobs import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SessionSummary:
    """A session row with its document and message counts."""

    id: int
    title: str
    created_at: datetime
    document_count: int
    message_count: int
    last_message_at: datetime | None


@dataclass
class DocumentReadiness:
    """Document counts by status for one session."""

    uploaded: int = 0
    indexed: int = 0
    processing: int = 0
    failed: int = 0

    @property
    def is_ready(self) -> bool:
        return (
            self.uploaded > 0
            and self.indexed > 0
            and self.processing == 0
            and self.failed == 0
        )


class DocumentService:
    """Session and document records."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vector_store: VectorStore,
    ) -> None:
        self._session_factory = session_factory
        self._vector_store = vector_store

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    async def create_session(self, title: str) -> ChatSession:
        normalized = (title or "").strip()
        if not normalized:
            raise InvalidRequestError("title is required.")

        record = ChatSession(title=normalized[:500], created_at=utcnow())
        try:
            async with self._session_factory() as session:
                session.add(record)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception("Failed to create session")
            raise PersistenceError("Failed to create session.") from exc
        logger.info("Created session id=%d", record.id)
        return record

    async def get_session(self, session_id: int) -> ChatSession | None:
        async with self._session_factory() as session:
            return await session.get(ChatSession, session_id)

    async def require_session(self, session_id: int) -> ChatSession:
        record = await self.get_session(session_id)
        if record is None:
            raise NotFoundError(f"Session {session_id} does not exist.")
        return record

    async def list_sessions(self) -> list[SessionSummary]:
        """Sessions with recent chat activity first, then newest first."""
        documents = (
            select(Document.session_id, func.count(Document.id).label("n"))
            .group_by(Document.session_id)
            .subquery()
        )
        messages = (
            select(
                ChatMessage.session_id,
                func.count(ChatMessage.id).label("n"),
                func.max(ChatMessage.created_at).label("last_at"),
            )
            .group_by(ChatMessage.session_id)
            .subquery()
        )
        stmt = (
            select(
                ChatSession,
                func.coalesce(documents.c.n, 0),
                func.coalesce(messages.c.n, 0),
                messages.c.last_at,
            )
            .outerjoin(documents, documents.c.session_id == ChatSession.id)
            .outerjoin(messages, messages.c.session_id == ChatSession.id)
            .order_by(
                messages.c.last_at.is_(None),
                messages.c.last_at.desc(),
                ChatSession.id.desc(),
            )
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return [
            SessionSummary(
                id=record.id,
                title=record.title,
                created_at=record.created_at,
                document_count=document_count,
                message_count=message_count,
                last_message_at=last_at,
            )
            for record, document_count, message_count, last_at in rows
        ]

    async def delete_session(self, session_id: int) -> None:
        """Delete a session with its vectors, documents and chat history."""
        await self.require_session(session_id)
        await self._vector_store.delete_session_vectors(session_id)

        try:
            async with self._session_factory() as session:
                paths = (
                    await session.execute(
                        select(Document.path).where(Document.session_id == session_id)
                    )
                ).scalars().all()
                await session.execute(delete(ChatMessage).where(ChatMessage.session_id == session_id))
                await session.execute(delete(Document).where(Document.session_id == session_id))
                await session.execute(delete(ChatSession).where(ChatSession.id == session_id))
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception("Failed to delete session %s", session_id)
            raise PersistenceError(f"Failed to delete session {session_id}.") from exc

        for path in paths:
            remove_upload(path)
        logger.info("Deleted session id=%d (%d documents)", session_id, len(paths))

    # -------------------------------------------------------------------------
    # Documents
    # -------------------------------------------------------------------------

    async def create_document(
        self,
        session_id: int,
        filename: str,
        path: str,
        title: str | None = None,
    ) -> Document:
        await self.require_session(session_id)
        record = Document(
            session_id=session_id,
            title=((title or "").strip() or Path(filename).stem or filename)[:500],
            filename=filename,
            path=path,
            status=DocumentStatus.PROCESSING.value,
            indexed_chunks=0,
            created_at=utcnow(),
        )
        try:
            async with self._session_factory() as session:
                session.add(record)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception("Failed to create document")
            raise PersistenceError("Failed to create document.") from exc
        logger.info("Created document id=%d in session id=%d", record.id, session_id)
        return record

    async def get_document(self, document_id: int) -> Document | None:
        async with self._session_factory() as session:
            return await session.get(Document, document_id)

    async def require_document(self, document_id: int) -> Document:
        record = await self.get_document(document_id)
        if record is None:
            raise NotFoundError(f"Document {document_id} does not exist.")
        return record

    async def list_documents(self, session_id: int) -> list[Document]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Document).where(Document.session_id == session_id).order_by(Document.id)
            )
            return list(result.scalars().all())

    async def readiness(self, session_id: int) -> DocumentReadiness:
        stmt = (
            select(Document.status, func.count(Document.id))
            .where(Document.session_id == session_id)
            .group_by(Document.status)
        )
        async with self._session_factory() as session:
            counts = dict((await session.execute(stmt)).all())
        return DocumentReadiness(
            uploaded=sum(counts.values()),
            indexed=counts.get(DocumentStatus.INDEXED.value, 0),
            processing=counts.get(DocumentStatus.PROCESSING.value, 0),
            failed=counts.get(DocumentStatus.FAILED.value, 0),
        )

    async def mark_indexed(self, document_id: int, indexed_chunks: int) -> None:
        await self._set_status(document_id, DocumentStatus.INDEXED, indexed_chunks)

    async def mark_failed(self, document_id: int) -> None:
        await self._set_status(document_id, DocumentStatus.FAILED, 0)

    async def delete_document(self, document_id: int) -> None:
        """Drop cached vectors, then the vectors and the document row."""
        record = await self.require_document(document_id)

        await self._vector_store.delete_document_vectors(document_id)
        try:
            async with self._session_factory() as session:
                await session.execute(delete(Document).where(Document.id == document_id))
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception("Failed to delete document %s", document_id)
            raise PersistenceError(f"Failed to delete document {document_id}.") from exc

        remove_upload(record.path)
        logger.info("Deleted document id=%d", document_id)

    async def remove_stray_uploads(self, upload_dir: str, older_than: timedelta) -> int:
        """Delete files in `upload_dir` older than `older_than` that no document references."""
        root = Path(upload_dir)
        if not root.is_dir():
            return 0

        async with self._session_factory() as session:
            known = set((await session.execute(select(Document.path))).scalars().all())

        cutoff = time.time() - older_than.total_seconds()
        removed = 0
        for path in root.iterdir():
            if not path.is_file() or str(path) in known:
                continue
            if path.stat().st_mtime > cutoff:
                continue
            if remove_upload(str(path)):
                removed += 1
        if removed:
            logger.info("Removed %d stray uploads from %s", removed, upload_dir)
        return removed

    async def _set_status(
        self, document_id: int, status: DocumentStatus, indexed_chunks: int,
    ) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(Document)
                    .where(Document.id == document_id)
                    .values(status=status.value, indexed_chunks=indexed_chunks)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception("Failed to mark document %s %s", document_id, status.value)
            raise PersistenceError(
                f"Failed to mark document {document_id} {status.value}."
            ) from exc


def remove_upload(path: str) -> bool:
    """Delete a stored upload; a missing file counts as removed."""
    if not path:
        return False
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Could not remove upload %s: %s", path, exc)
        return False
    return True
