# =============================================================================
# API Request Models - Pydantic V2 Schemas
# =============================================================================
#
# Shape of data coming INTO the API. Validation failures become 422
# responses before a handler runs. File uploads are multipart form fields
# and are validated in the handler instead.
# =============================================================================

from pydantic import BaseModel, Field


class CreateSessionRequest(BaseModel):
    """Request body for POST /sessions."""

    title: str = Field(
        ...,
        min_length=1,
        max_length=500,
        description="Human-readable session name",
        examples=["Q3 board pack"],
    )


class ChatRequest(BaseModel):
    """Request body for POST /sessions/{session_id}/chat."""

    message: str = Field(
        ...,
        min_length=1,
        max_length=4000,
        description="The user's question about the session's documents",
        examples=["What were the main risks called out in the report?"],
    )

    top_k: int | None = Field(
        default=None,
        ge=1,
        le=20,
        description="Number of chunks to retrieve. Clamped to the server maximum (5).",
    )

    max_retries: int | None = Field(
        default=None,
        ge=0,
        le=10,
        description="Override the retry ceiling for this chat job.",
    )
