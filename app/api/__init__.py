# =============================================================================
# API Package - FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter for a specific feature:
#   - sessions.py: Session lifecycle, chat history and chat queries
#   - documents.py: PDF upload (enqueues indexing), lookup and removal
#   - jobs.py: Job polling and Server-Sent Events progress stream
#   - admin.py: Queue state and timing metrics
#   - deps.py: Dependencies resolving shared components from app.state
# =============================================================================
