# =============================================================================
# Unit Tests - Answer Generation
# =============================================================================
#
# Prompt assembly and the grounded-answer fallback, with a mock LLM.
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

from app.services.answer import (
    FALLBACK_ANSWER,
    SYSTEM_PROMPT,
    format_context,
    format_history,
    generate_answer,
)
from app.services.llm import LLMResponse
from app.services.similarity import SearchResult


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _results() -> list[SearchResult]:
    return [
        SearchResult(id="c1", owner_id=3, text="Net income was $12M.", score=0.87654),
        SearchResult(id="c2", owner_id=None, text="Headcount grew.", score=0.5),
    ]


class TestFormatHistory:
    def test_keeps_last_turns(self):
        history = [{"role": "user", "text": f"m{i}"} for i in range(20)]
        lines = format_history(history, limit=3).splitlines()
        assert lines == ["user: m17", "user: m18", "user: m19"]

    def test_skips_malformed_entries(self):
        history = [
            "not a dict",
            {"role": "user"},
            {"role": "", "text": "orphan"},
            {"role": "assistant", "text": "  kept  "},
        ]
        assert format_history(history) == "assistant: kept"

    def test_zero_limit(self):
        assert format_history([{"role": "user", "text": "x"}], limit=0) == ""


class TestFormatContext:
    def test_numbered_chunks(self):
        context = format_context(_results())
        assert context.startswith("Chunk 1 (document_id=3, score=0.8765):\nNet income was $12M.")
        assert "Chunk 2 (document_id=None, score=0.5000):\nHeadcount grew." in context


class TestGenerateAnswer:
    def test_prompt_and_answer(self):
        llm = AsyncMock()
        llm.complete.return_value = LLMResponse(
            content="  Net income was $12M [1].  ", model="test-model",
            input_tokens=120, output_tokens=9,
        )

        result = _run(generate_answer(
            "What was net income?", _results(), llm,
            history=[{"role": "user", "text": "hello"}],
        ))

        assert result.answer == "Net income was $12M [1]."
        assert result.model == "test-model"
        kwargs = llm.complete.await_args.kwargs
        assert kwargs["system"] == SYSTEM_PROMPT
        prompt = kwargs["messages"][0]["content"]
        assert "User message:\nWhat was net income?" in prompt
        assert "user: hello" in prompt
        assert "Net income was $12M." in prompt

    def test_no_results_skips_llm(self):
        llm = AsyncMock()
        result = _run(generate_answer("anything?", [], llm))
        assert result.answer == FALLBACK_ANSWER
        llm.complete.assert_not_awaited()

    def test_blank_completion_becomes_fallback(self):
        llm = AsyncMock()
        llm.complete.return_value = LLMResponse(
            content="   ", model="test-model", input_tokens=10, output_tokens=0,
        )
        result = _run(generate_answer("q", _results(), llm))
        assert result.answer == FALLBACK_ANSWER

    def test_fallback_is_in_system_prompt(self):
        assert FALLBACK_ANSWER in SYSTEM_PROMPT
