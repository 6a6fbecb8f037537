"""LLM provider abstraction for OpenAI, Anthropic and OpenRouter.

Provides a unified async interface with retry handling and latency
tracking. Callers in the arena treat every provider call as fallible and
map failures to canned text or neutral scores.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from errors import ConfigurationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data containers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LLMResponse:
    """Standardised response from any LLM provider."""

    text: str
    tokens_used: int
    model: str
    provider: str
    latency_ms: float
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ModerationResult:
    allowed: bool
    categories: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Abstract base
# ---------------------------------------------------------------------------

class LLMProvider(ABC):
    """Provider-agnostic interface that all LLM backends implement."""

    name: str
    supports_moderation: bool = False

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        api_key_env: str | None = None,
        timeout: int = 30,
        max_retries: int = 2,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self.max_retries = max(1, max_retries)

        # explicit > env var > raise
        self.api_key = api_key or os.getenv(api_key_env or "")
        if not self.api_key:
            raise ConfigurationError(
                f"No API key for {self.name}. "
                f"Set {api_key_env!r} or pass api_key explicitly."
            )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def generate(
        self,
        messages: list[dict[str, str]],
        *,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 500,
        **kwargs: Any,
    ) -> LLMResponse:
        """Generate a response, retrying transient errors with backoff."""
        use_model = model or self.model
        last_exc: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                start = time.perf_counter()
                payload = await self._call_api(
                    messages,
                    model=use_model,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    **kwargs,
                )
                elapsed = (time.perf_counter() - start) * 1000
                response = LLMResponse(
                    text=payload["text"],
                    tokens_used=payload.get("tokens_used", 0),
                    model=use_model,
                    provider=self.name,
                    latency_ms=round(elapsed, 1),
                    raw=payload.get("raw", {}),
                )
                logger.debug(
                    "[%s] %s responded (%d tokens, %.0f ms)",
                    self.name,
                    use_model,
                    response.tokens_used,
                    response.latency_ms,
                )
                return response
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                if attempt == self.max_retries:
                    break
                wait = min(2**attempt, 16)
                logger.warning(
                    "[%s] Attempt %d/%d failed (%s). Retrying in %ds …",
                    self.name,
                    attempt,
                    self.max_retries,
                    exc,
                    wait,
                )
                await asyncio.sleep(wait)

        raise RuntimeError(
            f"[{self.name}] All {self.max_retries} attempts failed"
        ) from last_exc

    async def moderate(self, text: str) -> ModerationResult:
        """Classify *text*. Backends without a moderation endpoint raise."""
        raise NotImplementedError(f"{self.name} has no moderation endpoint")

    # ------------------------------------------------------------------
    # Backend-specific implementation
    # ------------------------------------------------------------------

    @abstractmethod
    async def _call_api(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Return ``{"text": ..., "tokens_used": ..., "raw": ...}``."""
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model!r})"


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------

class OpenAIProvider(LLMProvider):
    """Async OpenAI provider using the ``openai>=1.0`` client."""

    name = "openai"
    base_url: str | None = None
    supports_moderation = True

    def __init__(self, model: str = "gpt-4o-mini", **kwargs: Any) -> None:
        kwargs.setdefault("api_key_env", "OPENAI_API_KEY")
        super().__init__(model=model, **kwargs)
        import openai
        self._client = openai.AsyncOpenAI(
            api_key=self.api_key,
            base_url=self.base_url,
            timeout=self.timeout,
        )

    async def _call_api(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
        **kwargs: Any,
    ) -> dict[str, Any]:
        response = await self._client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs,
        )
        choice = response.choices[0]
        usage = response.usage
        return {
            "text": choice.message.content or "",
            "tokens_used": usage.total_tokens if usage else 0,
            "raw": response.model_dump(),
        }

    async def moderate(self, text: str) -> ModerationResult:
        res = await self._client.moderations.create(
            model="omni-moderation-latest", input=text
        )
        result = res.results[0] if res.results else None
        if result is None:
            return ModerationResult(allowed=True)
        return ModerationResult(
            allowed=not result.flagged,
            categories=result.categories.model_dump() if result.categories else {},
        )


class OpenRouterProvider(OpenAIProvider):
    """OpenAI-compatible access to many hosted models through OpenRouter.

    Model names use OpenRouter's ``vendor/model`` format.
    """

    name = "openrouter"
    base_url = "https://openrouter.ai/api/v1"
    supports_moderation = False

    def __init__(self, model: str = "openai/gpt-4o-mini", **kwargs: Any) -> None:
        kwargs.setdefault("api_key_env", "OPENROUTER_API_KEY")
        super().__init__(model=model, **kwargs)

    async def moderate(self, text: str) -> ModerationResult:
        raise NotImplementedError("openrouter has no moderation endpoint")


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------

class AnthropicProvider(LLMProvider):
    """Async Anthropic provider using the ``anthropic`` client."""

    name = "anthropic"

    def __init__(self, model: str = "claude-sonnet-4-5", **kwargs: Any) -> None:
        kwargs.setdefault("api_key_env", "ANTHROPIC_API_KEY")
        super().__init__(model=model, **kwargs)
        import anthropic
        self._client = anthropic.AsyncAnthropic(
            api_key=self.api_key,
            timeout=self.timeout,
        )

    async def _call_api(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
        **kwargs: Any,
    ) -> dict[str, Any]:
        # system prompt travels separately
        system_msg = ""
        api_messages: list[dict[str, str]] = []
        for msg in messages:
            if msg["role"] == "system":
                system_msg = msg["content"]
            else:
                api_messages.append(msg)

        create_kwargs: dict[str, Any] = {
            "model": model,
            "messages": api_messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            **kwargs,
        }
        if system_msg:
            create_kwargs["system"] = system_msg

        response = await self._client.messages.create(**create_kwargs)
        text_block = response.content[0].text if response.content else ""
        tokens = (response.usage.input_tokens + response.usage.output_tokens) if response.usage else 0
        return {
            "text": text_block,
            "tokens_used": tokens,
            "raw": response.model_dump() if hasattr(response, "model_dump") else {},
        }


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_PROVIDERS: dict[str, type[LLMProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "openrouter": OpenRouterProvider,
}


def create_provider(name: str, **kwargs: Any) -> LLMProvider:
    """Instantiate an LLM provider by its short name.

    >>> provider = create_provider("openai", model="gpt-4o-mini")
    """
    cls = _PROVIDERS.get(name.lower())
    if cls is None:
        raise ValueError(
            f"Unknown provider {name!r}. Choose from {list(_PROVIDERS)}"
        )
    return cls(**kwargs)
