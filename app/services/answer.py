# =============================================================================
# Answer Generation - Grounded Chat Replies from Retrieved Chunks
# =============================================================================
#
# Builds the grounded prompt for a chat turn (recent history + numbered
# context chunks) and asks the LLM for an answer.
#
# Grounding rule: the model may only use the supplied chunks and history,
# and must reply with FALLBACK_ANSWER verbatim when they do not contain the
# answer. The same text is returned without calling the LLM when retrieval
# found nothing.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from app.services.llm import LLMProvider
from app.services.similarity import SearchResult

logger = logging.getLogger(__name__)

FALLBACK_ANSWER = "I don't know - please provide more context."

SYSTEM_PROMPT = (
    "You are a PDF analysis assistant.\n"
    "Use ONLY the provided context chunks and chat history.\n"
    f"If the answer is not found in context, reply exactly: {FALLBACK_ANSWER}"
)


@dataclass
class AnswerResult:
    answer: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0


def format_history(history: Sequence[dict], limit: int = 12) -> str:
    """Last `limit` turns as `role: text` lines; malformed entries are ignored."""
    lines = []
    for entry in list(history)[-limit:] if limit > 0 else []:
        if not isinstance(entry, dict):
            continue
        role = str(entry.get("role", "")).strip()
        text = str(entry.get("text", "")).strip()
        if role and text:
            lines.append(f"{role}: {text}")
    return "\n".join(lines)


def format_context(results: Sequence[SearchResult]) -> str:
    return "\n\n".join(
        f"Chunk {i} (document_id={r.owner_id}, score={r.score:.4f}):\n{r.text}"
        for i, r in enumerate(results, start=1)
    )


async def generate_answer(
    message: str,
    results: Sequence[SearchResult],
    llm: LLMProvider,
    history: Sequence[dict] = (),
    history_limit: int = 12,
) -> AnswerResult:
    """
    Answer `message` from the retrieved chunks.

    LLM errors propagate to the caller. An empty completion is replaced by
    FALLBACK_ANSWER.
    """
    if not results:
        return AnswerResult(answer=FALLBACK_ANSWER, model="n/a")

    user_message = (
        f"Recent chat history:\n{format_history(history, history_limit)}\n\n"
        f"User message:\n{message}\n\n"
        f"Context:\n{format_context(results)}"
    )

    response = await llm.complete(
        messages=[{"role": "user", "content": user_message}],
        system=SYSTEM_PROMPT,
    )
    logger.info(
        "Answer generated: model=%s, chunks=%d, tokens=%d+%d",
        response.model, len(results), response.input_tokens, response.output_tokens,
    )
    return AnswerResult(
        answer=response.content.strip() or FALLBACK_ANSWER,
        model=response.model,
        input_tokens=response.input_tokens,
        output_tokens=response.output_tokens,
    )
