# =============================================================================
# Unit Tests - Chunker Service
# =============================================================================
#
# Tests the token-based chunking logic and the adaptive size tiers.
# No API keys, databases, or network calls needed beyond tiktoken's
# encoding file.
# =============================================================================

import pytest

from app.services.chunker import (
    IndexingParams,
    chunk_document,
    count_tokens,
    indexing_params_for,
    plan_chunks,
)
from app.services.parser import ParsedDocument, ParsedElement


def _make_parsed_doc(
    texts: list[str],
    page_numbers: list[int] | None = None,
    element_types: list[str] | None = None,
) -> ParsedDocument:
    """Helper to build a ParsedDocument from simple text lists."""
    pages = page_numbers or [1] * len(texts)
    types = element_types or ["text"] * len(texts)
    elements = [
        ParsedElement(text=text, page_number=page, element_type=etype)
        for text, page, etype in zip(texts, pages, types, strict=True)
    ]
    return ParsedDocument(
        elements=elements,
        page_count=max(pages) if pages else 0,
        filename="test.pdf",
    )


class TestIndexingParams:
    """Adaptive chunk / overlap / batch tiers."""

    @pytest.mark.parametrize(
        ("tokens", "expected"),
        [
            (0, IndexingParams(800, 160, 32)),
            (4_000, IndexingParams(800, 160, 32)),
            (4_001, IndexingParams(1000, 200, 24)),
            (20_000, IndexingParams(1000, 200, 24)),
            (20_001, IndexingParams(1200, 240, 20)),
            (80_000, IndexingParams(1200, 240, 20)),
            (80_001, IndexingParams(1400, 280, 16)),
            (1_000_000, IndexingParams(1400, 280, 16)),
        ],
    )
    def test_tier_boundaries(self, tokens, expected):
        assert indexing_params_for(tokens) == expected

    def test_overlap_is_a_fifth_of_chunk_size(self):
        for tokens in (1, 10_000, 50_000, 100_000):
            params = indexing_params_for(tokens)
            assert params.chunk_overlap * 5 == params.chunk_size


class TestChunkDocument:
    """Tests for chunk_document()."""

    def test_empty_document_returns_no_chunks(self):
        doc = _make_parsed_doc([])
        chunks = chunk_document(doc, chunk_size=64, chunk_overlap=10)
        assert chunks == []

    def test_single_short_element_produces_one_chunk(self):
        doc = _make_parsed_doc(["This is a short sentence."])
        chunks = chunk_document(doc, chunk_size=64, chunk_overlap=10)
        assert len(chunks) == 1
        assert "short sentence" in chunks[0].content
        assert chunks[0].chunk_index == 0
        assert chunks[0].page_number == 1

    def test_chunk_indices_are_sequential(self):
        doc = _make_parsed_doc(["word " * 200])
        chunks = chunk_document(doc, chunk_size=32, chunk_overlap=5)
        assert len(chunks) > 1
        for i, chunk in enumerate(chunks):
            assert chunk.chunk_index == i

    def test_token_count_respects_chunk_size(self):
        doc = _make_parsed_doc(["The quarterly figures were revised upward. " * 100])
        chunks = chunk_document(doc, chunk_size=64, chunk_overlap=10)
        for chunk in chunks:
            assert chunk.token_count <= 64

    def test_overlap_produces_more_chunks(self):
        text = "Careful reading matters. " * 50
        doc = _make_parsed_doc([text])
        chunks_no_overlap = chunk_document(doc, chunk_size=64, chunk_overlap=0)
        chunks_with_overlap = chunk_document(doc, chunk_size=64, chunk_overlap=20)
        assert len(chunks_with_overlap) >= len(chunks_no_overlap)

    def test_overlap_must_be_smaller_than_size(self):
        doc = _make_parsed_doc(["Some text."])
        with pytest.raises(ValueError):
            chunk_document(doc, chunk_size=10, chunk_overlap=10)

    def test_source_pages_span_elements(self):
        doc = _make_parsed_doc(
            texts=["Page one content.", "Page two content."],
            page_numbers=[1, 2],
        )
        chunks = chunk_document(doc, chunk_size=512, chunk_overlap=0)
        assert len(chunks) == 1
        assert chunks[0].page_number == 1
        assert chunks[0].source_pages == [1, 2]

    def test_missing_provenance_defaults_to_page_one(self):
        doc = _make_parsed_doc(["No page info here."], page_numbers=[0])
        chunks = chunk_document(doc, chunk_size=512, chunk_overlap=0)
        assert chunks[0].page_number == 1
        assert chunks[0].source_pages == []

    def test_whitespace_only_elements_skipped(self):
        doc = _make_parsed_doc(["   ", "\n\n", "Actual content here."])
        chunks = chunk_document(doc, chunk_size=512, chunk_overlap=0)
        assert len(chunks) == 1
        assert "Actual content" in chunks[0].content

    def test_default_sizes_come_from_tier(self):
        doc = _make_parsed_doc(["word " * 1000])
        chunks = chunk_document(doc)
        assert len(chunks) >= 2
        assert chunks[0].token_count == 800


class TestPlanChunks:
    def test_short_document_uses_smallest_tier(self):
        doc = _make_parsed_doc(["A brief note about the appendix."])
        chunks, params = plan_chunks(doc)
        assert params == IndexingParams(800, 160, 32)
        assert len(chunks) == 1

    def test_empty_document(self):
        chunks, params = plan_chunks(_make_parsed_doc([]))
        assert chunks == []
        assert params.batch_size == 32


class TestCountTokens:
    def test_counts_tokens(self):
        assert count_tokens("") == 0
        assert count_tokens("hello world") == 2
