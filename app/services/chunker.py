# =============================================================================
# Token-Based Text Chunker - tiktoken
# =============================================================================
#
# Splits a parsed document into overlapping token windows, each annotated
# with the pages it spans.
#
# ADAPTIVE PARAMETERS:
# Window size, overlap and embedding batch size scale with document length,
# so short documents get finer chunks and very long ones fewer, larger
# chunks embedded in smaller batches:
#
#   total tokens      chunk  overlap  embed batch
#   ≤ 4,000             800      160           32
#   ≤ 20,000           1000      200           24
#   ≤ 80,000           1200      240           20
#   > 80,000           1400      280           16
#
# ALGORITHM:
# 1. Concatenate all parsed elements with \n\n separators
# 2. Build a parallel mapping: character position → source element
# 3. Encode full text into tokens using tiktoken (cl100k_base)
# 4. Slide a window of chunk_size tokens with chunk_overlap overlap
# 5. For each window: decode to text, look up pages from the char mapping
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import tiktoken

from app.services.parser import ParsedDocument

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ChunkResult:
    """A single chunk ready for embedding and storage."""

    content: str
    page_number: int  # Starting page of this chunk
    chunk_index: int  # 0-indexed position within the document
    token_count: int
    source_pages: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class IndexingParams:
    chunk_size: int
    chunk_overlap: int
    batch_size: int


# (upper token bound, params); the last tier has no bound
_TIERS: list[tuple[int | None, IndexingParams]] = [
    (4_000, IndexingParams(chunk_size=800, chunk_overlap=160, batch_size=32)),
    (20_000, IndexingParams(chunk_size=1000, chunk_overlap=200, batch_size=24)),
    (80_000, IndexingParams(chunk_size=1200, chunk_overlap=240, batch_size=20)),
    (None, IndexingParams(chunk_size=1400, chunk_overlap=280, batch_size=16)),
]


# ---------------------------------------------------------------------------
# Tiktoken Encoder - Cached Singleton
# ---------------------------------------------------------------------------

_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    """Lazily initialize and cache the tiktoken encoder."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def count_tokens(text: str) -> int:
    return len(_get_encoder().encode(text))


def indexing_params_for(token_count: int) -> IndexingParams:
    """Pick chunk size / overlap / embedding batch size for a document length."""
    for bound, params in _TIERS:
        if bound is None or token_count <= bound:
            return params
    return _TIERS[-1][1]


def chunk_document(
    parsed_doc: ParsedDocument,
    chunk_size: int | None = None,
    chunk_overlap: int | None = None,
) -> list[ChunkResult]:
    """
    Split a parsed document into token-based chunks.

    Args:
        parsed_doc: The parsed document from the parser.
        chunk_size: Maximum tokens per chunk. Defaults to the adaptive tier.
        chunk_overlap: Token overlap between consecutive chunks. Defaults to
            the adaptive tier.

    Returns:
        List of ChunkResult in document order.

    Raises:
        ValueError: If chunk_overlap >= chunk_size.
    """
    encoder = _get_encoder()

    elements = [e for e in parsed_doc.elements if e.text.strip()]
    if not elements:
        logger.warning("No elements to chunk in '%s'", parsed_doc.filename)
        return []

    separator = "\n\n"
    text_parts: list[str] = []
    char_to_element_idx: list[int] = []

    for i, element in enumerate(elements):
        if i > 0:
            text_parts.append(separator)
            char_to_element_idx.extend([i - 1] * len(separator))
        text_parts.append(element.text)
        char_to_element_idx.extend([i] * len(element.text))

    full_text = "".join(text_parts)
    all_tokens = encoder.encode(full_text)
    total_tokens = len(all_tokens)

    if total_tokens == 0:
        logger.warning("No tokens after encoding '%s'", parsed_doc.filename)
        return []

    if chunk_size is None or chunk_overlap is None:
        params = indexing_params_for(total_tokens)
        chunk_size = params.chunk_size if chunk_size is None else chunk_size
        chunk_overlap = params.chunk_overlap if chunk_overlap is None else chunk_overlap
    if chunk_overlap >= chunk_size:
        raise ValueError("chunk_size must be greater than chunk_overlap")

    logger.info(
        "Chunking '%s': %d tokens total, chunk_size=%d, overlap=%d",
        parsed_doc.filename, total_tokens, chunk_size, chunk_overlap,
    )

    token_char_offsets = _build_token_offsets(encoder, all_tokens)

    chunks: list[ChunkResult] = []
    step = chunk_size - chunk_overlap

    for start in range(0, total_tokens, step):
        end = min(start + chunk_size, total_tokens)
        token_window = all_tokens[start:end]

        chunk_text = encoder.decode(token_window).strip()
        if chunk_text:
            char_start = token_char_offsets[start]
            char_end = min(token_char_offsets[end], len(char_to_element_idx))
            element_indices = sorted(set(char_to_element_idx[char_start:char_end]))
            pages = sorted({
                elements[i].page_number for i in element_indices if elements[i].page_number > 0
            })

            chunks.append(ChunkResult(
                content=chunk_text,
                page_number=pages[0] if pages else 1,
                chunk_index=len(chunks),
                token_count=len(token_window),
                source_pages=pages,
            ))

        if end >= total_tokens:
            break

    logger.info(
        "Chunked '%s' into %d chunks (avg %d tokens/chunk)",
        parsed_doc.filename,
        len(chunks),
        total_tokens // max(len(chunks), 1),
    )
    return chunks


def plan_chunks(parsed_doc: ParsedDocument) -> tuple[list[ChunkResult], IndexingParams]:
    """Chunk with the tier chosen from the document's token count."""
    params = indexing_params_for(count_tokens(parsed_doc.text))
    chunks = chunk_document(parsed_doc, params.chunk_size, params.chunk_overlap)
    return chunks, params


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _build_token_offsets(encoder: tiktoken.Encoding, tokens: list[int]) -> list[int]:
    """Character offset where each token starts, plus an end sentinel."""
    offsets: list[int] = []
    char_pos = 0
    for token in tokens:
        offsets.append(char_pos)
        char_pos += len(encoder.decode([token]))
    offsets.append(char_pos)
    return offsets
