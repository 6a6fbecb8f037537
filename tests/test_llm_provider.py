"""Tests for personas.llm_provider module."""

from __future__ import annotations

import pytest

from errors import ConfigurationError
from personas.llm_provider import LLMResponse, ModerationResult, create_provider


class TestMockProvider:
    """Verify the mock provider works correctly for downstream tests."""

    @pytest.mark.asyncio
    async def test_generate_returns_llm_response(self, mock_provider):
        resp = await mock_provider.generate(
            [{"role": "user", "content": "Hello"}],
            temperature=0.5,
            max_tokens=100,
        )
        assert isinstance(resp, LLMResponse)
        assert resp.provider == "mock"
        assert resp.model == "mock-v1"
        assert resp.text
        assert resp.latency_ms >= 0

    @pytest.mark.asyncio
    async def test_model_override_is_passed_through(self, mock_provider):
        resp = await mock_provider.generate([{"role": "user", "content": "a"}], model="other")
        assert resp.model == "other"
        assert mock_provider.call_log[0]["model"] == "other"

    @pytest.mark.asyncio
    async def test_failure_raises_after_retries(self, failing_provider):
        with pytest.raises(RuntimeError, match="attempts failed"):
            await failing_provider.generate([{"role": "user", "content": "a"}])

    @pytest.mark.asyncio
    async def test_moderation_flags_words(self, make_provider):
        provider = make_provider(flagged={"badword"})
        assert (await provider.moderate("all fine here")).allowed
        result = await provider.moderate("this has badword in it")
        assert isinstance(result, ModerationResult)
        assert not result.allowed


class TestCreateProvider:
    def test_unknown_provider_raises(self):
        with pytest.raises(ValueError, match="Unknown provider"):
            create_provider("nonexistent", api_key="k")

    def test_missing_api_key_is_configuration_error(self, monkeypatch):
        monkeypatch.delenv("ARENA_TEST_MISSING_KEY", raising=False)
        with pytest.raises(ConfigurationError, match="No API key"):
            create_provider("openai", api_key_env="ARENA_TEST_MISSING_KEY")

    def test_openrouter_provider_created(self):
        provider = create_provider("openrouter", api_key="test-key", model="openai/gpt-4")
        assert provider.name == "openrouter"
        assert provider.model == "openai/gpt-4"

    def test_api_key_from_env(self, monkeypatch):
        monkeypatch.setenv("ARENA_TEST_KEY", "sk-test")
        provider = create_provider("anthropic", api_key_env="ARENA_TEST_KEY")
        assert provider.api_key == "sk-test"

    @pytest.mark.asyncio
    async def test_openrouter_has_no_moderation(self):
        provider = create_provider("openrouter", api_key="test-key")
        with pytest.raises(NotImplementedError):
            await provider.moderate("hello")

    def test_only_openai_can_moderate(self, monkeypatch):
        monkeypatch.setenv("ARENA_TEST_KEY", "sk-test")
        assert create_provider("openai", api_key="k").supports_moderation
        assert not create_provider("openrouter", api_key="k").supports_moderation
        assert not create_provider("anthropic", api_key_env="ARENA_TEST_KEY").supports_moderation


class TestLLMResponse:
    def test_frozen_dataclass(self):
        resp = LLMResponse(
            text="hi", tokens_used=5, model="m", provider="p", latency_ms=10.0
        )
        assert resp.text == "hi"
        with pytest.raises(AttributeError):
            resp.text = "modified"  # type: ignore[misc]
