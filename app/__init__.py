# =============================================================================
# PDF Chat Task Engine
# =============================================================================
# Chat over uploaded PDFs, backed by a durable single-worker job queue and
# an exact, paged cosine-similarity search over stored chunk vectors.
#
# Package structure:
#   app/
#   ├── api/          → FastAPI route handlers (sessions, documents, jobs, admin)
#   ├── db/           → Database engine, session, and ORM models
#   ├── models/       → Pydantic V2 request/response schemas
#   ├── services/     → Business logic (parsing, chunking, embedding, vector
#   │                    store and cache, similarity search, cleanup)
#   └── workers/      → Job model, durable job store, queue manager, runners
# =============================================================================
