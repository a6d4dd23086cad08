# =============================================================================
# Database Package
# =============================================================================
# Provides the async SQLAlchemy engine, session management, and ORM models.
#
# Key exports:
#   - get_engine / get_session_factory: lazily created application engine
#   - build_engine / build_session_factory: explicit construction (tests)
#   - Base: SQLAlchemy declarative base for ORM models
#   - ChatSession, Document, Chunk, ChatMessage, JobRecord: ORM models
# =============================================================================
