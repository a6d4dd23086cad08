# =============================================================================
# Similarity Engine - Paged Exact Cosine Search over a Session
# =============================================================================
#
# Scores every stored vector of a session against a query vector and keeps
# the best K. There is no ANN index: the scan is exact, but it never holds
# more than one page of candidates plus the running top-K in memory.
#
# ALGORITHM:
#   1. Empty query → []. Count candidates with matching dimensionality once.
#   2. Fetch pages of `page_size` in a fixed order (see VectorStore).
#   3. Per candidate: parsed vector from the VectorCache, else parse the
#      stored JSON (malformed rows are skipped, the scan goes on).
#   4. Cosine score; invalid (-1), negative and non-finite scores dropped.
#   5. Merge into the running top-K: stable sort by score descending, so on
#      equal scores the candidate seen first stays ahead. Truncate to K.
#   6. `await asyncio.sleep(0)` after every page so the event loop can run
#      HTTP handlers and progress writes during long scans.
#   7. Stop once offset ≥ count or a page comes back empty.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass

from app.services.vector_cache import VectorCache
from app.services.vectorstore import CandidateRow, VectorStore

logger = logging.getLogger(__name__)

INVALID_SCORE = -1.0


@dataclass
class SearchResult:
    """A scored candidate. `owner_id` is the source document (None for session-level vectors)."""

    id: str
    owner_id: int | None
    text: str
    score: float

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "text": self.text,
            "score": self.score,
        }


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors.

    Returns -1.0 when the lengths differ, either vector is empty, or either
    has zero magnitude.
    """
    if len(a) != len(b) or not a:
        return INVALID_SCORE

    dot = 0.0
    mag_a = 0.0
    mag_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        mag_a += x * x
        mag_b += y * y

    if mag_a == 0 or mag_b == 0:
        return INVALID_SCORE
    return dot / (math.sqrt(mag_a) * math.sqrt(mag_b))


def parse_vector(raw: str) -> list[float] | None:
    """Decode a stored embedding; None if it is not a JSON array of numbers."""
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(parsed, list):
        return None
    if not all(isinstance(x, (int, float)) and not isinstance(x, bool) for x in parsed):
        return None
    return [float(x) for x in parsed]


class SimilarityEngine:
    """Exact top-K search over a session's stored vectors."""

    def __init__(
        self,
        vector_store: VectorStore,
        cache: VectorCache,
        default_page_size: int = 300,
    ) -> None:
        self._store = vector_store
        self._cache = cache
        self._default_page_size = default_page_size

    async def search(
        self,
        session_id: int,
        query_vector: Sequence[float],
        top_k: int = 5,
        page_size: int | None = None,
    ) -> list[SearchResult]:
        """
        Return at most `top_k` results, best first.

        Args:
            session_id: Session whose vectors are scanned.
            query_vector: Query embedding; empty means no results.
            top_k: Result cap (values below 1 are treated as 1).
            page_size: Rows per database page.
        """
        if not query_vector:
            return []

        query = [float(x) for x in query_vector]
        top_k = max(1, int(top_k))
        page_size = max(1, int(page_size or self._default_page_size))
        dimensions = len(query)

        total = await self._store.count_candidates(session_id, dimensions)
        if total == 0:
            return []

        best: list[SearchResult] = []
        offset = 0
        skipped = 0

        while offset < total:
            page = await self._store.fetch_page(session_id, dimensions, offset, page_size)
            if not page:
                break

            scored: list[SearchResult] = []
            for row in page:
                vector = self._vector_for(row)
                if vector is None:
                    skipped += 1
                    continue
                score = cosine_similarity(query, vector)
                if not math.isfinite(score) or score < 0:
                    continue
                scored.append(SearchResult(
                    id=row.id, owner_id=row.document_id, text=row.text, score=score,
                ))

            if scored:
                best = sorted(best + scored, key=lambda r: r.score, reverse=True)[:top_k]

            offset += len(page)
            await asyncio.sleep(0)

        if skipped:
            logger.warning(
                "Skipped %d malformed vectors during search (session_id=%s)",
                skipped, session_id,
            )
        logger.debug(
            "Similarity search scanned %d/%d candidates, returned %d (session_id=%s)",
            offset, total, len(best), session_id,
        )
        return best

    def _vector_for(self, row: CandidateRow) -> list[float] | None:
        owner = row.owner_key
        cached = self._cache.get(owner, row.id)
        if cached is not None:
            return cached
        vector = parse_vector(row.embedding)
        if vector is not None:
            self._cache.put(owner, row.id, vector)
        return vector
