# =============================================================================
# Shared Test Fixtures
# =============================================================================
#
# `memory_db` hands tests an async context manager that builds a fresh
# in-memory SQLite database (aiosqlite, StaticPool) with every table
# created, and yields its session factory.
#
# Tests drive coroutines with asyncio.run(); the database must be opened
# and used inside that same run, so it is a context manager rather than a
# pytest fixture holding a live engine.
# =============================================================================

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.engine import build_engine, build_session_factory, init_models


@asynccontextmanager
async def _in_memory_db() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await init_models(engine)
    try:
        yield build_session_factory(engine)
    finally:
        await engine.dispose()


@pytest.fixture
def memory_db():
    return _in_memory_db
