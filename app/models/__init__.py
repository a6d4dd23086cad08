# =============================================================================
# Models Package - Pydantic V2 Schemas
# =============================================================================
# Request/response schemas for the API, kept apart from the ORM models in
# app/db/models.py so stored embeddings and job payloads never leak into
# responses.
# =============================================================================
