"""Provider adapters, one per wire protocol."""

from __future__ import annotations

from typing import Any

from agentloop.llm.models import (
    API_ANTHROPIC_MESSAGES,
    API_GOOGLE_GEMINI_CLI,
    API_GOOGLE_GENERATIVE,
    API_OPENAI_CODEX,
    API_OPENAI_COMPLETIONS,
    API_OPENAI_RESPONSES,
)
from agentloop.llm.providers.anthropic_messages import AnthropicMessagesAdapter
from agentloop.llm.providers.base import AgentResponse, ProviderAdapter, TurnContext
from agentloop.llm.providers.google_gemini_cli import GeminiCliAdapter
from agentloop.llm.providers.google_generative import GoogleGenerativeAdapter
from agentloop.llm.providers.openai_codex import OpenAICodexAdapter
from agentloop.llm.providers.openai_completions import OpenAICompletionsAdapter
from agentloop.llm.providers.openai_responses import OpenAIResponsesAdapter
from agentloop.types import ConfigError

ADAPTERS: dict[str, type[ProviderAdapter]] = {
    API_OPENAI_RESPONSES: OpenAIResponsesAdapter,
    API_OPENAI_COMPLETIONS: OpenAICompletionsAdapter,
    API_OPENAI_CODEX: OpenAICodexAdapter,
    API_ANTHROPIC_MESSAGES: AnthropicMessagesAdapter,
    API_GOOGLE_GENERATIVE: GoogleGenerativeAdapter,
    API_GOOGLE_GEMINI_CLI: GeminiCliAdapter,
}


def get_adapter(api: str, **kw: Any) -> ProviderAdapter:
    """Instantiate the adapter for *api*; keywords go to its constructor."""
    try:
        cls = ADAPTERS[api]
    except KeyError:
        raise ConfigError(f"No adapter for api {api!r}. Known: {sorted(ADAPTERS)}") from None
    return cls(**kw)


__all__ = [
    "ADAPTERS",
    "AgentResponse",
    "AnthropicMessagesAdapter",
    "GeminiCliAdapter",
    "GoogleGenerativeAdapter",
    "OpenAICodexAdapter",
    "OpenAICompletionsAdapter",
    "OpenAIResponsesAdapter",
    "ProviderAdapter",
    "TurnContext",
    "get_adapter",
]
