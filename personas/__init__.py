"""Personas – LLM providers, the persona roster and content generation."""

from personas.llm_provider import (
    AnthropicProvider,
    LLMProvider,
    LLMResponse,
    ModerationResult,
    OpenAIProvider,
    OpenRouterProvider,
    create_provider,
)
from personas.registry import DEFAULT_PERSONAS, SKIP_SENTINEL, Persona, PersonaRegistry
from personas.generation import ContentGenerator, PromptDraft, parse_json_safe

__all__ = [
    "AnthropicProvider",
    "ContentGenerator",
    "DEFAULT_PERSONAS",
    "LLMProvider",
    "LLMResponse",
    "ModerationResult",
    "OpenAIProvider",
    "OpenRouterProvider",
    "Persona",
    "PersonaRegistry",
    "PromptDraft",
    "SKIP_SENTINEL",
    "create_provider",
    "parse_json_safe",
]
