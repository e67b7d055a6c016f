"""
Compatibility flags for OpenAI-compatible chat-completion endpoints.

Many providers accept the ``/chat/completions`` wire format with small but
breaking differences.  ``resolve_compat`` detects them from the provider id
and base URL, then applies the model's explicit ``compat`` overrides, which
always win.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, fields

from agentloop.llm.models import Model

_NONSTANDARD = ("cerebras", "xai", "x.ai", "mistral", "chutes", "zai", "z.ai", "opencode")


@dataclass
class CompletionsCompat:
    supports_store: bool = True
    supports_developer_role: bool = True
    supports_reasoning_effort: bool = True
    supports_usage_in_streaming: bool = True
    max_tokens_field: str = "max_completion_tokens"
    requires_tool_result_name: bool = False
    requires_assistant_after_tool_result: bool = False
    requires_thinking_as_text: bool = False
    requires_mistral_tool_ids: bool = False
    thinking_format: str = "openai"


# camelCase spellings accepted in model config files.
_ALIASES = {
    "supportsStore": "supports_store",
    "supportsDeveloperRole": "supports_developer_role",
    "supportsReasoningEffort": "supports_reasoning_effort",
    "supportsUsageInStreaming": "supports_usage_in_streaming",
    "maxTokensField": "max_tokens_field",
    "requiresToolResultName": "requires_tool_result_name",
    "requiresAssistantAfterToolResult": "requires_assistant_after_tool_result",
    "requiresThinkingAsText": "requires_thinking_as_text",
    "requiresMistralToolIds": "requires_mistral_tool_ids",
    "thinkingFormat": "thinking_format",
}


def _matches(model: Model, *needles: str) -> bool:
    provider = model.provider.lower()
    base_url = model.base_url.lower()
    return any(n in provider or n in base_url for n in needles)


def detect_compat(model: Model) -> CompletionsCompat:
    nonstandard = _matches(model, *_NONSTANDARD)
    is_mistral = _matches(model, "mistral")
    is_zai = _matches(model, "zai", "z.ai")
    is_grok = _matches(model, "xai", "x.ai") or model.id.startswith("grok")
    return CompletionsCompat(
        supports_store=not nonstandard,
        supports_developer_role=not nonstandard and not _matches(model, "minimax"),
        supports_reasoning_effort=not is_grok and not is_zai,
        supports_usage_in_streaming=True,
        max_tokens_field="max_tokens" if _matches(model, "mistral", "chutes") else "max_completion_tokens",
        requires_tool_result_name=is_mistral,
        requires_assistant_after_tool_result=False,
        requires_thinking_as_text=is_mistral,
        requires_mistral_tool_ids=is_mistral,
        thinking_format="zai" if is_zai else "openai",
    )


def resolve_compat(model: Model) -> CompletionsCompat:
    compat = detect_compat(model)
    if model.compat:
        valid = {f.name for f in fields(CompletionsCompat)}
        for key, value in model.compat.items():
            name = _ALIASES.get(key, key)
            if name in valid and value is not None:
                setattr(compat, name, value)
    return compat


# ---------------------------------------------------------------------------
# Tool-call id normalization
# ---------------------------------------------------------------------------

_MISTRAL_PAD = "ABCDEFGHI"


def mistral_tool_id(call_id: str) -> str:
    """Mistral only accepts ids of exactly nine alphanumerics."""
    cleaned = re.sub(r"[^A-Za-z0-9]", "", call_id)
    if len(cleaned) < 9:
        cleaned += _MISTRAL_PAD[: 9 - len(cleaned)]
    return cleaned[:9]


def openai_tool_id(call_id: str) -> str:
    return call_id[:40]


def sanitize_tool_id(call_id: str, limit: int = 64) -> str:
    return re.sub(r"[^A-Za-z0-9_-]", "_", call_id)[:limit]
