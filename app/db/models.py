# =============================================================================
# Database Models - SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌──────────────┐      ┌──────────────────────────┐      ┌────────────────────────────┐
# │  sessions    │      │  documents               │      │  chunks                    │
# ├──────────────┤      ├──────────────────────────┤      ├────────────────────────────┤
# │ id (PK)      │─1:N─▶│ id (PK)                  │─1:N─▶│ id (PK, uuid text)         │
# │ title        │      │ session_id (FK)          │      │ session_id (FK)            │
# │ created_at   │      │ title, filename, path    │      │ document_id (FK, nullable) │
# └──────────────┘      │ status, indexed_chunks   │      │ chunk_index, text          │
#        │              │ created_at               │      │ embedding (JSON text)      │
#        │              └──────────────────────────┘      │ vector_length, created_at  │
#        │                                                └────────────────────────────┘
#        └─1:N─▶ chat_messages (id, session_id, role, text, created_at)
#
#   job_queue (id PK text, type, payload, status, progress, stage, attempts,
#              max_retries, result, error, created_at, updated_at)
#
# NOTES:
#
# 1. `chunks.embedding` holds the vector serialised as a JSON array. The
#    similarity scan parses it lazily and caches the parsed list, so a
#    corrupt row only affects itself.
#
# 2. `chunks.vector_length` repeats the dimensionality so a scan can reject
#    incompatible vectors in SQL, before anything is deserialised.
#
# 3. `job_queue` is the only source of truth for crash recovery; the
#    in-memory queue is rebuilt from rows in status queued / processing.
#
# 4. Timestamps are written from Python in UTC so that paging order and
#    TTL comparisons behave the same on PostgreSQL and SQLite.
# =============================================================================

import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class for every table in the service."""

    pass


class DocumentStatus(str, enum.Enum):
    """
    Indexing state of an uploaded document.

        PROCESSING → INDEXED
                   → FAILED
    """

    PROCESSING = "processing"  # Upload accepted, index job queued or running
    INDEXED = "indexed"        # Vectors stored and searchable
    FAILED = "failed"          # Parsing / embedding failed, or no text found


class ChatSession(Base):
    """A chat workspace: owns documents, vectors and chat history."""

    __tablename__ = "sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    documents: Mapped[list["Document"]] = relationship(
        "Document",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<ChatSession(id={self.id}, title='{self.title}')>"


class Document(Base):
    """An uploaded PDF belonging to a session."""

    __tablename__ = "documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    session_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
    )

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    filename: Mapped[str] = mapped_column(String(500), nullable=False)

    # Location of the stored upload on disk
    path: Mapped[str] = mapped_column(Text, nullable=False)

    # DocumentStatus value
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DocumentStatus.PROCESSING.value,
    )

    indexed_chunks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    session: Mapped["ChatSession"] = relationship("ChatSession", back_populates="documents")

    def __repr__(self) -> str:
        return f"<Document(id={self.id}, filename='{self.filename}', status={self.status})>"


class Chunk(Base):
    """
    One content vector: a slice of document text plus its embedding.

    `document_id` is null for session-level vectors that were not produced
    by indexing a document.
    """

    __tablename__ = "chunks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    session_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
    )

    document_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=True,
    )

    # Position within the batch it was inserted with (0-indexed)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    text: Mapped[str] = mapped_column(Text, nullable=False)

    # JSON array of floats, e.g. "[0.12, -0.04, ...]"
    embedding: Mapped[str] = mapped_column(Text, nullable=False)

    vector_length: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<Chunk(id={self.id}, session_id={self.session_id}, "
            f"document_id={self.document_id}, dims={self.vector_length})>"
        )


class ChatMessage(Base):
    """A single user or assistant turn in a session's chat history."""

    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    session_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
    )

    # "user" | "assistant"
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class JobRecord(Base):
    """
    Durable row for a background job.

    Mirrors `app.workers.jobs.Job` field for field. Written by the queue
    manager on every state transition and on progress changes.
    """

    __tablename__ = "job_queue"

    # job_<epoch-ms>_<counter>
    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # JobType value: "index_document" | "chat_query"
    type: Mapped[str] = mapped_column(String(50), nullable=False)

    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # JobStatus value: "queued" | "processing" | "completed" | "failed"
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    # Present only when completed
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # Last failure message (retryable or terminal)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<JobRecord(id={self.id}, type={self.type}, status={self.status})>"


# =============================================================================
# Database Indexes
# =============================================================================

document_session_idx = Index("idx_documents_session_id", Document.session_id)

chunk_session_idx = Index("idx_chunks_session_id", Chunk.session_id)

chunk_document_idx = Index("idx_chunks_document_id", Chunk.document_id)

# Candidate count and paging both filter on (session_id, vector_length)
chunk_session_dims_idx = Index(
    "idx_chunks_session_id_vector_length",
    Chunk.session_id,
    Chunk.vector_length,
)

chat_message_session_idx = Index(
    "idx_chat_messages_session_id_created_at",
    ChatMessage.session_id,
    ChatMessage.created_at,
)

job_status_idx = Index("idx_job_queue_status", JobRecord.status)
