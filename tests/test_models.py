"""Tests for agentloop.llm.models and agentloop.llm.compat."""

from __future__ import annotations

import pytest

from agentloop.llm.compat import (
    detect_compat,
    mistral_tool_id,
    openai_tool_id,
    resolve_compat,
    sanitize_tool_id,
)
from agentloop.llm.models import (
    API_OPENAI_COMPLETIONS,
    Model,
    ModelCost,
    ModelRegistry,
    calculate_cost,
    resolve_api_key,
)
from agentloop.messages import Usage
from agentloop.types import ConfigError
from tests.mock_tools import mock_model


class TestModelRegistry:
    def test_defaults_cover_every_provider_family(self):
        registry = ModelRegistry.with_defaults()
        providers = registry.providers()
        for name in ("openai", "openai-codex", "anthropic", "google", "google-gemini-cli", "mistral"):
            assert name in providers

    def test_resolve(self):
        registry = ModelRegistry.with_defaults()
        model = registry.resolve("anthropic/claude-sonnet-4-5")
        assert model.api == "anthropic-messages"

    def test_resolve_requires_provider(self):
        with pytest.raises(KeyError, match="provider/model"):
            ModelRegistry.with_defaults().resolve("claude-sonnet-4-5")

    def test_unknown_model(self):
        with pytest.raises(KeyError, match="not registered"):
            ModelRegistry.with_defaults().get("openai", "nope")

    def test_unknown_api_rejected(self):
        with pytest.raises(ConfigError):
            ModelRegistry().register(mock_model(api="carrier-pigeon"))

    def test_duplicate_rejected(self):
        registry = ModelRegistry()
        registry.register(mock_model())
        with pytest.raises(ValueError):
            registry.register(mock_model())
        registry.register(mock_model(context_window=1), overwrite=True)
        assert registry.get("mock", "mock-model").context_window == 1

    def test_model_ids_may_contain_slashes(self):
        registry = ModelRegistry()
        registry.register(mock_model(id="meta/llama-3", provider="openrouter"))
        assert registry.resolve("openrouter/meta/llama-3").id == "meta/llama-3"

    def test_copy_is_independent(self):
        registry = ModelRegistry.with_defaults()
        clone = registry.copy()
        clone.get("openai", "gpt-4.1-mini").context_window = 5
        assert registry.get("openai", "gpt-4.1-mini").context_window != 5

    def test_from_dict(self):
        model = Model.from_dict(
            {
                "id": "local",
                "api": API_OPENAI_COMPLETIONS,
                "provider": "vllm",
                "base_url": "http://localhost:8000/v1",
                "cost": {"input": 1.0, "output": 2.0},
            }
        )
        assert model.name == "local"
        assert model.cost.output == 2.0
        assert not model.supports_images


class TestCost:
    def test_per_million_pricing(self):
        model = mock_model(cost=ModelCost(input=3.0, output=15.0, cache_read=0.3))
        usage = Usage(input=1_000_000, output=100_000, cache_read=2_000_000)
        assert calculate_cost(model, usage) == pytest.approx(3.0 + 1.5 + 0.6)
        assert usage.cost == pytest.approx(5.1)


class TestApiKeys:
    def test_explicit_wins(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "from-env")
        assert resolve_api_key("openai", "explicit") == "explicit"

    def test_conventional_variable(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "from-env")
        assert resolve_api_key("openai") == "from-env"

    def test_custom_variable_first(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "conventional")
        monkeypatch.setenv("MY_KEY", "custom")
        assert resolve_api_key("openai", env_var="MY_KEY") == "custom"

    def test_anthropic_oauth_preferred(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-api")
        monkeypatch.setenv("ANTHROPIC_OAUTH_TOKEN", "sk-ant-oat")
        assert resolve_api_key("anthropic") == "sk-ant-oat"

    def test_missing(self, monkeypatch):
        monkeypatch.delenv("MISTRAL_API_KEY", raising=False)
        with pytest.raises(ConfigError, match="MISTRAL_API_KEY"):
            resolve_api_key("mistral")


class TestCompat:
    def test_openai_defaults(self):
        compat = detect_compat(mock_model(provider="openai", base_url="https://api.openai.com/v1"))
        assert compat.supports_store
        assert compat.supports_developer_role
        assert compat.max_tokens_field == "max_completion_tokens"
        assert not compat.requires_mistral_tool_ids

    def test_mistral(self):
        compat = detect_compat(mock_model(provider="mistral", base_url="https://api.mistral.ai/v1"))
        assert compat.requires_mistral_tool_ids
        assert compat.requires_tool_result_name
        assert compat.requires_thinking_as_text
        assert compat.max_tokens_field == "max_tokens"
        assert not compat.supports_store

    def test_detected_from_base_url(self):
        compat = detect_compat(mock_model(provider="custom", base_url="https://api.x.ai/v1"))
        assert not compat.supports_reasoning_effort
        assert not compat.supports_developer_role

    def test_zai_thinking_format(self):
        assert detect_compat(mock_model(provider="zai")).thinking_format == "zai"

    def test_explicit_overrides_win(self):
        model = mock_model(
            provider="mistral",
            compat={"supportsStore": True, "max_tokens_field": "max_completion_tokens", "bogus": 1},
        )
        compat = resolve_compat(model)
        assert compat.supports_store
        assert compat.max_tokens_field == "max_completion_tokens"
        assert compat.requires_mistral_tool_ids


class TestToolIds:
    def test_mistral_ids_are_nine_alphanumerics(self):
        assert mistral_tool_id("call_abc") == "callabcAB"
        assert mistral_tool_id("toolu_01ABCDEFGHIJK") == "toolu01AB"
        assert len(mistral_tool_id("")) == 9

    def test_openai_ids_truncated(self):
        assert openai_tool_id("x" * 64) == "x" * 40

    def test_sanitize(self):
        assert sanitize_tool_id("fc_1|call.2") == "fc_1_call_2"
