# =============================================================================
# Error Taxonomy
# =============================================================================
#
# Service-level exceptions carry an HTTP-ish `status_code` so the API layer
# can translate them without knowing where they came from. Anything that
# maps to 5xx is reported to clients as a generic message; the details go
# to the log only.
#
#   TaskEngineError           - base class
#   ├── InvalidRequestError   - 400, caller sent something unusable
#   │   └── DocumentsNotReadyError - chat before indexing finished
#   ├── NotFoundError         - 404, unknown session / document / job
#   ├── PersistenceError      - 500, durable write or read failed
#   ├── EnqueueError          - 500, job could not be made durable
#   └── GenerationError       - 502, the LLM provider call failed
# =============================================================================

from __future__ import annotations

from fastapi import HTTPException

# Status codes whose message is safe to show to a client verbatim.
SAFE_CLIENT_STATUS_CODES = frozenset({400, 401, 403, 404, 409, 413, 415, 422, 429})

GENERIC_SERVER_ERROR = "Internal server error."

# Job error strings are stored on the job row and shown to pollers.
MAX_ERROR_MESSAGE_LENGTH = 1000


class TaskEngineError(Exception):
    """Base class for errors raised by the task engine and its services."""

    status_code: int = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class InvalidRequestError(TaskEngineError):
    status_code = 400


class DocumentsNotReadyError(InvalidRequestError):
    """Chat was requested before the session's documents finished indexing."""

    def __init__(self, session_id: int) -> None:
        super().__init__(
            f"PDF_NOT_READY: session {session_id} needs at least one indexed "
            "document and none still processing or failed."
        )


class NotFoundError(TaskEngineError):
    status_code = 404


class PersistenceError(TaskEngineError):
    """A durable read or write failed."""

    status_code = 500


class EnqueueError(TaskEngineError):
    """The job could not be persisted, so it was never made runnable."""

    status_code = 500


class GenerationError(TaskEngineError):
    """The answer generator failed or timed out; the chat job attempt fails."""

    status_code = 502


def error_message(exc: BaseException) -> str:
    """Human-readable failure text for a job's `error` field (no traceback)."""
    message = str(exc) or type(exc).__name__
    return message[:MAX_ERROR_MESSAGE_LENGTH]


def to_http_exception(exc: Exception) -> HTTPException:
    """Map a service exception to an HTTPException without leaking internals."""
    status = getattr(exc, "status_code", 500)
    if status not in SAFE_CLIENT_STATUS_CODES:
        return HTTPException(status_code=500, detail=GENERIC_SERVER_ERROR)
    return HTTPException(status_code=status, detail=str(exc) or "Request failed.")
