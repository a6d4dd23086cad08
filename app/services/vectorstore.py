# =============================================================================
# Vector Store - Durable Content Vectors in the `chunks` Table
# =============================================================================
#
# Stores chunk text plus its embedding (JSON text) and hands out
# deterministic pages of candidates to the similarity scan.
#
# WRITE PATHS:
#   add_vectors()               - append rows (one transaction)
#   replace_document_vectors()  - cache dropped, then delete + insert in a
#                                 single transaction, so re-indexing the same
#                                 document never doubles its vectors
#   delete_*()                  - cache dropped before rows are removed
#
# READ PATHS (used by SimilarityEngine):
#   count_candidates() - rows in the session whose vector_length matches
#   fetch_page()       - the same filter, ordered
#                        created_at DESC, chunk_index ASC, id ASC
#                        so offset paging is stable across pages
#
# This is the only component that invalidates the VectorCache.
# =============================================================================

from __future__ import annotations

import json
import logging
import math
import uuid
from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models import Chunk, Document
from app.errors import PersistenceError
from app.services.vector_cache import VectorCache, owner_key
from app.workers.jobs import utcnow

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CandidateRow:
    """One stored vector as fetched for scoring; `embedding` is still raw JSON text."""

    id: str
    session_id: int
    document_id: int | None
    text: str
    embedding: str

    @property
    def owner_key(self) -> str:
        return owner_key(self.document_id, self.session_id)


def serialize_vector(vector: Sequence[float]) -> str:
    return json.dumps([float(x) for x in vector])


# ---------------------------------------------------------------------------
# Vector Store
# ---------------------------------------------------------------------------


class VectorStore:
    """Async persistence for content vectors, with cache invalidation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: VectorCache,
    ) -> None:
        self._session_factory = session_factory
        self.cache = cache

    async def add_vectors(
        self,
        session_id: int,
        document_id: int | None,
        contents: Sequence[str],
        embeddings: Sequence[Sequence[float]],
        replace: bool = False,
    ) -> list[str]:
        """
        Store chunks with their embeddings.

        Args:
            session_id: Owning session.
            document_id: Source document, or None for session-level vectors.
            contents: Chunk texts.
            embeddings: One vector per chunk, same order as `contents`.
            replace: Delete the owner's existing vectors in the same
                transaction before inserting.

        Returns:
            Ids of the inserted rows, in input order.
        """
        if len(contents) != len(embeddings):
            raise ValueError(
                f"contents/embeddings length mismatch: {len(contents)} != {len(embeddings)}"
            )
        for vector in embeddings:
            if not all(math.isfinite(float(x)) for x in vector):
                raise ValueError("Embedding contains non-finite values")

        now = utcnow()
        rows = [
            Chunk(
                id=str(uuid.uuid4()),
                session_id=session_id,
                document_id=document_id,
                chunk_index=index,
                text=text,
                embedding=serialize_vector(vector),
                vector_length=len(vector),
                created_at=now,
            )
            for index, (text, vector) in enumerate(zip(contents, embeddings, strict=True))
        ]

        if replace:
            self.cache.invalidate(owner_key(document_id, session_id))

        try:
            async with self._session_factory() as session:
                if replace:
                    await session.execute(self._owner_delete(session_id, document_id))
                session.add_all(rows)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception("Failed to store vectors")
            raise PersistenceError("Failed to store vectors.") from exc

        logger.info(
            "Stored %d vectors (session_id=%s, document_id=%s, replace=%s)",
            len(rows), session_id, document_id, replace,
        )
        return [row.id for row in rows]

    async def replace_document_vectors(
        self,
        session_id: int,
        document_id: int,
        contents: Sequence[str],
        embeddings: Sequence[Sequence[float]],
    ) -> list[str]:
        """Atomically swap a document's vectors for a fresh set."""
        return await self.add_vectors(
            session_id, document_id, contents, embeddings, replace=True,
        )

    async def count_candidates(self, session_id: int, dimensions: int) -> int:
        stmt = (
            select(func.count())
            .select_from(Chunk)
            .where(Chunk.session_id == session_id, Chunk.vector_length == dimensions)
        )
        try:
            async with self._session_factory() as session:
                return int((await session.execute(stmt)).scalar_one())
        except SQLAlchemyError as exc:
            logger.exception("Failed to count vectors")
            raise PersistenceError("Failed to count vectors.") from exc

    async def count_session_vectors(self, session_id: int) -> int:
        stmt = select(func.count()).select_from(Chunk).where(Chunk.session_id == session_id)
        try:
            async with self._session_factory() as session:
                return int((await session.execute(stmt)).scalar_one())
        except SQLAlchemyError as exc:
            logger.exception("Failed to count vectors")
            raise PersistenceError("Failed to count vectors.") from exc

    async def fetch_page(
        self,
        session_id: int,
        dimensions: int,
        offset: int,
        limit: int,
    ) -> list[CandidateRow]:
        stmt = (
            select(Chunk.id, Chunk.session_id, Chunk.document_id, Chunk.text, Chunk.embedding)
            .where(Chunk.session_id == session_id, Chunk.vector_length == dimensions)
            .order_by(Chunk.created_at.desc(), Chunk.chunk_index.asc(), Chunk.id.asc())
            .offset(offset)
            .limit(limit)
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            logger.exception("Failed to fetch vector page")
            raise PersistenceError("Failed to fetch vector page.") from exc
        return [
            CandidateRow(
                id=row.id,
                session_id=row.session_id,
                document_id=row.document_id,
                text=row.text,
                embedding=row.embedding,
            )
            for row in rows
        ]

    async def delete_document_vectors(self, document_id: int) -> int:
        self.cache.invalidate(owner_key(document_id))
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(Chunk).where(Chunk.document_id == document_id)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception("Failed to delete vectors")
            raise PersistenceError("Failed to delete vectors.") from exc
        return result.rowcount or 0

    async def delete_session_vectors(self, session_id: int) -> int:
        """Remove every vector in the session and all cache owners that held them."""
        try:
            async with self._session_factory() as session:
                document_ids = (
                    await session.execute(
                        select(Chunk.document_id)
                        .where(Chunk.session_id == session_id, Chunk.document_id.is_not(None))
                        .distinct()
                    )
                ).scalars().all()

                for document_id in document_ids:
                    self.cache.invalidate(owner_key(document_id))
                self.cache.invalidate(owner_key(None, session_id))

                result = await session.execute(
                    delete(Chunk).where(Chunk.session_id == session_id)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception("Failed to delete session vectors")
            raise PersistenceError("Failed to delete session vectors.") from exc
        return result.rowcount or 0

    async def delete_orphans(self) -> int:
        """Remove vectors whose document row no longer exists."""
        orphaned = (
            select(Chunk.document_id)
            .outerjoin(Document, Document.id == Chunk.document_id)
            .where(Chunk.document_id.is_not(None), Document.id.is_(None))
            .distinct()
        )
        try:
            async with self._session_factory() as session:
                document_ids = (await session.execute(orphaned)).scalars().all()
                if not document_ids:
                    return 0
                for document_id in document_ids:
                    self.cache.invalidate(owner_key(document_id))
                result = await session.execute(
                    delete(Chunk).where(Chunk.document_id.in_(document_ids))
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception("Failed to delete orphaned vectors")
            raise PersistenceError("Failed to delete orphaned vectors.") from exc

        deleted = result.rowcount or 0
        logger.info("Deleted %d orphaned vectors from %d documents", deleted, len(document_ids))
        return deleted

    def _owner_delete(self, session_id: int, document_id: int | None):
        if document_id is not None:
            return delete(Chunk).where(Chunk.document_id == document_id)
        return delete(Chunk).where(
            Chunk.session_id == session_id, Chunk.document_id.is_(None)
        )
