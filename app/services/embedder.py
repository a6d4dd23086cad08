# =============================================================================
# Embedding Service - Batch Vector Generation (Provider-Agnostic)
# =============================================================================
#
# Generates vector embeddings using any OpenAI-compatible embedding API
# (OpenAI, DashScope, a local server, ...) selected by EMBEDDING_BASE_URL.
#
# The SDK client is synchronous. Async callers go through asyncio.to_thread:
# the index runner embeds one batch per thread hop so it can report
# progress between batches.
#
# No retry logic here. A failed call fails the job attempt and the queue
# manager's backoff takes over.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from typing import TypeVar

from openai import OpenAI

from app.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Embedding Client - Lazy Singleton
# ---------------------------------------------------------------------------
# API key resolution order:
#   1. OPENAI_API_KEY (explicit embedding key)
#   2. LLM_API_KEY (shared key for generation and embeddings)
# ---------------------------------------------------------------------------

_client: OpenAI | None = None


def _get_client() -> OpenAI:
    """Lazily initialize and cache the embedding client."""
    global _client
    if _client is None:
        resolved_key = settings.openai_api_key or settings.llm_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for embeddings. "
                "Set OPENAI_API_KEY or LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        if settings.embedding_base_url:
            client_kwargs["base_url"] = settings.embedding_base_url

        _client = OpenAI(**client_kwargs)
        logger.info(
            "Initialized embedding client (model=%s, base_url=%s)",
            settings.embedding_model,
            settings.embedding_base_url or "https://api.openai.com/v1",
        )
    return _client


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def clamp_batch_size(batch_size: int | None) -> int:
    """Keep a requested batch size inside the configured min/max window."""
    value = batch_size or settings.embedding_batch_size
    return max(settings.embedding_batch_size_min, min(settings.embedding_batch_size_max, value))


def iter_batches(items: Sequence[T], batch_size: int) -> Iterator[list[T]]:
    for start in range(0, len(items), batch_size):
        yield list(items[start : start + batch_size])


def embed_batch(
    texts: Sequence[str],
    batch_size: int | None = None,
) -> list[list[float]]:
    """
    Generate embeddings for texts, in input order.

    Args:
        texts: Strings to embed.
        batch_size: Texts per API call, clamped to the configured window.

    Raises:
        ValueError: If no API key is configured, or the API returned a
            different number of vectors than requested.
        openai.APIError: If the API call fails.
    """
    if not texts:
        return []

    client = _get_client()
    size = clamp_batch_size(batch_size)
    vectors: list[list[float]] = []

    for batch in iter_batches(texts, size):
        create_kwargs: dict = {"model": settings.embedding_model, "input": batch}
        if settings.embedding_dimensions:
            create_kwargs["dimensions"] = settings.embedding_dimensions

        response = client.embeddings.create(**create_kwargs)
        if len(response.data) != len(batch):
            raise ValueError(
                f"Embedding API returned {len(response.data)} vectors for {len(batch)} texts"
            )
        vectors.extend(item.embedding for item in sorted(response.data, key=lambda x: x.index))

        logger.debug(
            "Embedded batch of %d texts, %d prompt tokens",
            len(batch),
            response.usage.prompt_tokens if response.usage else 0,
        )

    logger.info("Generated %d embeddings (model=%s)", len(vectors), settings.embedding_model)
    return vectors


def embed_query(text: str) -> list[float]:
    """Embedding for a single query string."""
    return embed_batch([text], batch_size=1)[0]
