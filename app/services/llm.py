# =============================================================================
# Multi-Provider LLM Abstraction - Answer Generation Backend
# =============================================================================
#
# Chat completions for the chat runner, from Anthropic (Claude) or any
# OpenAI-compatible API (OpenAI, DeepSeek, Qwen, a local server, ...).
#
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        - system prompt as top-level kwarg
#   ├── OpenAICompatibleProvider - system prompt as first message
#   └── get_llm_provider()       - lazy singleton, reads from config
#
# Every request carries `llm_timeout_seconds`. SDK failures (timeouts,
# rate limits, 5xx) are re-raised as GenerationError so the job records a
# readable message; the queue manager's retry policy takes it from there.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import anthropic
import openai

from app.config import settings
from app.errors import GenerationError

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """Normalised completion from any provider."""

    content: str
    model: str
    input_tokens: int
    output_tokens: int


class LLMProvider(Protocol):
    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Generate a completion.

        Args:
            messages: Dicts with "role" ("user" / "assistant") and "content".
            system: System prompt; each provider places it its own way.
            temperature: Override sampling temperature.
            max_tokens: Override max output tokens.

        Raises:
            GenerationError: The provider call failed or timed out.
        """
        ...


def _require_key(*candidates: str | None, hint: str) -> str:
    for key in candidates:
        if key:
            return key
    raise ValueError(f"No API key configured for answer generation. {hint}")


class _SamplingDefaults:
    """Model and sampling settings shared by both providers."""

    def __init__(self, model: str | None) -> None:
        self.model = model or settings.llm_model
        self.temperature = settings.llm_temperature
        self.max_tokens = settings.llm_max_tokens

    def sampling(self, temperature: float | None, max_tokens: int | None) -> dict[str, Any]:
        return {
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature if temperature is None else temperature,
        }


# ---------------------------------------------------------------------------
# Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider(_SamplingDefaults):
    def __init__(self, api_key: str | None = None, model: str | None = None) -> None:
        super().__init__(model)
        self._client = anthropic.AsyncAnthropic(
            api_key=_require_key(
                api_key, settings.llm_api_key, settings.anthropic_api_key,
                hint="Set LLM_API_KEY or ANTHROPIC_API_KEY in .env",
            ),
            timeout=settings.llm_timeout_seconds,
        )
        logger.info("Initialized AnthropicProvider (model=%s)", self.model)

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            **self.sampling(temperature, max_tokens),
        }
        if system:
            kwargs["system"] = system

        try:
            response = await self._client.messages.create(**kwargs)
        except anthropic.APIError as exc:
            raise GenerationError(f"Anthropic request failed: {exc}") from exc

        text = "".join(block.text for block in response.content if block.type == "text")
        return LLMResponse(
            content=text,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )


# ---------------------------------------------------------------------------
# OpenAI-Compatible
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider(_SamplingDefaults):
    """
    Any API that follows the OpenAI chat completions contract.

    Switching providers is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
        LLM_MODEL=deepseek-chat
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
    ) -> None:
        super().__init__(model)
        self.base_url = base_url or settings.llm_base_url
        self._client = openai.AsyncOpenAI(
            api_key=_require_key(
                api_key, settings.llm_api_key, settings.openai_api_key,
                hint="Set LLM_API_KEY in .env",
            ),
            base_url=self.base_url,
            timeout=settings.llm_timeout_seconds,
        )
        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self.model, self.base_url or "https://api.openai.com/v1",
        )

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        prompt = ([{"role": "system", "content": system}] if system else []) + list(messages)
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=prompt,
                **self.sampling(temperature, max_tokens),
            )
        except openai.APIError as exc:
            raise GenerationError(f"Completion request failed: {exc}") from exc

        usage = response.usage
        return LLMResponse(
            content=response.choices[0].message.content or "",
            model=response.model or self.model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_provider: LLMProvider | None = None


def get_llm_provider() -> LLMProvider:
    """Configured provider ("anthropic" or "openai_compatible"), created on first use."""
    global _provider
    if _provider is None:
        if settings.llm_provider == "openai_compatible":
            _provider = OpenAICompatibleProvider()
        else:
            _provider = AnthropicProvider()
    return _provider
