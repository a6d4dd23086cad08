# =============================================================================
# Chat History - Per-Session Message Log
# =============================================================================

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models import ChatMessage
from app.errors import InvalidRequestError, PersistenceError
from app.workers.jobs import utcnow

logger = logging.getLogger(__name__)

ALLOWED_ROLES = frozenset({"user", "assistant", "system"})
MAX_HISTORY_PAGE = 5000


def _normalize_text(text: str | None) -> str:
    normalized = (text or "").strip()
    if not normalized:
        raise InvalidRequestError("Chat message text is required.")
    return normalized


class ChatHistory:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add_message(self, session_id: int, role: str, text: str) -> ChatMessage:
        if role not in ALLOWED_ROLES:
            raise InvalidRequestError("Invalid chat role.")
        message = ChatMessage(
            session_id=session_id, role=role, text=_normalize_text(text), created_at=utcnow(),
        )
        try:
            async with self._session_factory() as session:
                session.add(message)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception("Failed to store chat message")
            raise PersistenceError("Failed to store chat message.") from exc
        return message

    async def add_conversation(self, session_id: int, user_text: str, assistant_text: str) -> None:
        """Store a user turn and its reply together; the reply sorts 1 ms later."""
        user_at = utcnow()
        rows = [
            ChatMessage(
                session_id=session_id, role="user",
                text=_normalize_text(user_text), created_at=user_at,
            ),
            ChatMessage(
                session_id=session_id, role="assistant",
                text=_normalize_text(assistant_text),
                created_at=user_at + timedelta(milliseconds=1),
            ),
        ]
        try:
            async with self._session_factory() as session:
                session.add_all(rows)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception("Failed to store conversation")
            raise PersistenceError("Failed to store conversation.") from exc

    async def list_history(
        self, session_id: int, limit: int = 1000, offset: int = 0,
    ) -> list[ChatMessage]:
        """Messages oldest first."""
        limit = min(limit, MAX_HISTORY_PAGE) if limit > 0 else 1000
        offset = max(offset, 0)
        stmt = (
            select(ChatMessage)
            .where(ChatMessage.session_id == session_id)
            .order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
            .limit(limit)
            .offset(offset)
        )
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def recent_history(self, session_id: int, limit: int) -> list[ChatMessage]:
        """The latest `limit` messages, returned oldest first."""
        if limit <= 0:
            return []
        stmt = (
            select(ChatMessage)
            .where(ChatMessage.session_id == session_id)
            .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
            .limit(min(limit, MAX_HISTORY_PAGE))
        )
        async with self._session_factory() as session:
            latest = list((await session.execute(stmt)).scalars().all())
        latest.reverse()
        return latest

    async def clear_history(self, session_id: int) -> int:
        """Delete every message in the session; returns how many were removed."""
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(ChatMessage).where(ChatMessage.session_id == session_id)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception("Failed to clear history for session %s", session_id)
            raise PersistenceError(f"Failed to clear history for session {session_id}.") from exc
        logger.info("Cleared %d messages from session id=%d", result.rowcount, session_id)
        return result.rowcount
