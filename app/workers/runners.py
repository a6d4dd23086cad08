# =============================================================================
# Task Runners - Domain Work for Each Job Type
# =============================================================================
#
# INDEX PIPELINE (JobType.INDEX_DOCUMENT, payload {document_id}):
#   1. Load the document record (gone → skipped, nothing to do)
#   2. Parse PDF with Docling             stage "parsing"     5 → 20
#   3. Chunk with adaptive token windows  stage "chunking"   20 → 30
#   4. Embed batch by batch               stage "embedding"  30 → 90
#   5. Replace the document's vectors atomically, mark it indexed
#
# CHAT PIPELINE (JobType.CHAT_QUERY, payload {session_id, message, history, top_k}):
#   1. Embed the message                  stage "retrieving" 10 → 30
#   2. Similarity search over the session stage "retrieving" 30 → 60
#   3. Grounded answer from the LLM       stage "generating" 60 → 90
#   4. Store the exchange in chat history (best effort)
#
# Runners never retry and never swallow a failure of the pipeline itself:
# the exception propagates and the QueueManager decides between retry and
# FAILED. Blocking collaborators (Docling, tiktoken, the sync embedding
# client) run in worker threads via asyncio.to_thread.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from typing import Any

from app.errors import InvalidRequestError
from app.services.answer import FALLBACK_ANSWER, generate_answer
from app.services.chat_history import ChatHistory
from app.services.chunker import ChunkResult, IndexingParams, plan_chunks
from app.services.documents import DocumentService
from app.services.embedder import clamp_batch_size, embed_batch, embed_query, iter_batches
from app.services.llm import LLMProvider, get_llm_provider
from app.services.metrics import MetricsRecorder
from app.services.parser import ParsedDocument, parse_pdf
from app.services.similarity import SimilarityEngine
from app.services.vectorstore import VectorStore
from app.workers.jobs import Job, ProgressReporter

logger = logging.getLogger(__name__)

ParseFn = Callable[[str], ParsedDocument]
ChunkFn = Callable[[ParsedDocument], tuple[list[ChunkResult], IndexingParams]]
EmbedBatchFn = Callable[[Sequence[str], int], list[list[float]]]
EmbedQueryFn = Callable[[str], list[float]]


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def normalize_top_k(value: Any, default: int = 5, maximum: int = 5) -> int:
    """Integer top-k clamped to [1, maximum]; unusable values fall back to `default`."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = default
    if number < 1:
        number = default
    return max(1, min(maximum, number))


# ---------------------------------------------------------------------------
# Index Runner
# ---------------------------------------------------------------------------


class IndexDocumentRunner:
    """Parse → chunk → embed → store for one uploaded document."""

    def __init__(
        self,
        documents: DocumentService,
        vector_store: VectorStore,
        *,
        parse: ParseFn = parse_pdf,
        chunk: ChunkFn = plan_chunks,
        embed: EmbedBatchFn = embed_batch,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._documents = documents
        self._vector_store = vector_store
        self._parse = parse
        self._chunk = chunk
        self._embed = embed
        self._metrics = metrics

    async def run(self, job: Job, reporter: ProgressReporter) -> dict[str, Any]:
        try:
            document_id = int(job.payload["document_id"])
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidRequestError("Index job payload requires an integer document_id.") from exc

        document = await self._documents.get_document(document_id)
        if document is None:
            logger.info("Document %d no longer exists, skipping job %s", document_id, job.id)
            return {"indexed_chunks": 0, "skipped": True}

        started = time.monotonic()
        try:
            await reporter.report(5, "parsing")
            parsed = await asyncio.to_thread(self._parse, document.path)

            await reporter.report(20, "chunking")
            chunks, params = await asyncio.to_thread(self._chunk, parsed)
            if not chunks:
                logger.warning("Document %d produced no chunks, marking failed", document_id)
                await self._documents.mark_failed(document_id)
                return {"indexed_chunks": 0, "failed": True}

            await reporter.report(30, "embedding")
            embedding_started = time.monotonic()
            texts = [c.content for c in chunks]
            vectors = await self._embed_with_progress(texts, params.batch_size, reporter)
            embedding_ms = _elapsed_ms(embedding_started)

            chunk_ids = await self._vector_store.replace_document_vectors(
                document.session_id, document_id, texts, vectors,
            )
            await self._documents.mark_indexed(document_id, len(chunk_ids))
        except Exception:
            await self._mark_failed_quietly(document_id)
            raise

        indexing_ms = _elapsed_ms(started)
        if self._metrics is not None:
            self._metrics.record_indexing(indexing_ms, embedding_ms)

        logger.info(
            "Indexed document %d: %d chunks in %d ms (embedding %d ms)",
            document_id, len(chunk_ids), indexing_ms, embedding_ms,
        )
        return {
            "document_id": document_id,
            "indexed_chunks": len(chunk_ids),
            "page_count": parsed.page_count,
            "indexing_time_ms": indexing_ms,
            "embedding_time_ms": embedding_ms,
        }

    async def _embed_with_progress(
        self,
        texts: list[str],
        batch_size: int,
        reporter: ProgressReporter,
    ) -> list[list[float]]:
        size = clamp_batch_size(batch_size)
        batches = list(iter_batches(texts, size))
        vectors: list[list[float]] = []

        for index, batch in enumerate(batches, start=1):
            vectors.extend(await asyncio.to_thread(self._embed, batch, size))
            await reporter.report(30 + (60 * index) // len(batches), "embedding")

        if len(vectors) != len(texts):
            raise ValueError(f"Expected {len(texts)} embeddings, got {len(vectors)}")
        return vectors

    async def _mark_failed_quietly(self, document_id: int) -> None:
        try:
            await self._documents.mark_failed(document_id)
        except Exception:
            logger.exception("Could not mark document %d failed", document_id)


# ---------------------------------------------------------------------------
# Chat Runner
# ---------------------------------------------------------------------------


class ChatQueryRunner:
    """Retrieve → generate → remember for one chat message."""

    def __init__(
        self,
        similarity: SimilarityEngine,
        chat_history: ChatHistory,
        *,
        embed: EmbedQueryFn = embed_query,
        llm_factory: Callable[[], LLMProvider] = get_llm_provider,
        default_top_k: int = 5,
        max_top_k: int = 5,
        page_size: int = 300,
        history_limit: int = 12,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._similarity = similarity
        self._chat_history = chat_history
        self._embed = embed
        self._llm_factory = llm_factory
        self._default_top_k = default_top_k
        self._max_top_k = max_top_k
        self._page_size = page_size
        self._history_limit = history_limit
        self._metrics = metrics

    async def run(self, job: Job, reporter: ProgressReporter) -> dict[str, Any]:
        payload = job.payload
        try:
            session_id = int(payload["session_id"])
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidRequestError("Chat job payload requires an integer session_id.") from exc
        message = str(payload.get("message") or "").strip()
        if not message:
            raise InvalidRequestError("Chat job payload requires a non-empty message.")
        history = payload.get("history")
        history = history if isinstance(history, list) else []
        top_k = normalize_top_k(payload.get("top_k"), self._default_top_k, self._max_top_k)

        started = time.monotonic()

        await reporter.report(10, "retrieving")
        query_vector = await asyncio.to_thread(self._embed, message)

        await reporter.report(30, "retrieving")
        results = await self._similarity.search(
            session_id, query_vector, top_k=top_k, page_size=self._page_size,
        )

        await reporter.report(60, "generating")
        if results:
            generated = await generate_answer(
                message, results, self._llm_factory(),
                history=history, history_limit=self._history_limit,
            )
            answer = generated.answer
        else:
            answer = FALLBACK_ANSWER

        await reporter.report(90, "generating")
        try:
            await self._chat_history.add_conversation(session_id, message, answer)
        except Exception:
            logger.exception("Could not store chat exchange for session %d", session_id)

        query_ms = _elapsed_ms(started)
        if self._metrics is not None:
            self._metrics.record_query(query_ms)

        logger.info(
            "Chat query for session %d answered from %d chunks in %d ms",
            session_id, len(results), query_ms,
        )
        return {
            "answer": answer,
            "sources": [
                {"document_id": r.owner_id, "chunk_id": r.id, "score": r.score}
                for r in results
            ],
            "used_chunks_count": len(results),
        }
