"""
Model descriptors and an explicit model registry.

A ``ModelRegistry`` is an ordinary value: build one (optionally seeded with
``ModelRegistry.with_defaults()``), register extra models from config, and
pass it to whatever needs to resolve ``provider/model`` names.  Nothing here
is process-global.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any

from agentloop.messages import Usage
from agentloop.types import ConfigError

API_OPENAI_RESPONSES = "openai-responses"
API_OPENAI_COMPLETIONS = "openai-completions"
API_OPENAI_CODEX = "openai-codex-responses"
API_ANTHROPIC_MESSAGES = "anthropic-messages"
API_GOOGLE_GENERATIVE = "google-generative-ai"
API_GOOGLE_GEMINI_CLI = "google-gemini-cli"

KNOWN_APIS = (
    API_OPENAI_RESPONSES,
    API_OPENAI_COMPLETIONS,
    API_OPENAI_CODEX,
    API_ANTHROPIC_MESSAGES,
    API_GOOGLE_GENERATIVE,
    API_GOOGLE_GEMINI_CLI,
)


@dataclass
class ModelCost:
    """USD per million tokens."""

    input: float = 0.0
    output: float = 0.0
    cache_read: float = 0.0
    cache_write: float = 0.0


@dataclass
class Model:
    """
    Everything an adapter needs to know about one model.

    Parameters
    ----------
    id:
        Identifier sent on the wire.
    api:
        Which adapter speaks to it (one of ``KNOWN_APIS``).
    provider:
        Provider id, e.g. ``"openai"`` or ``"mistral"``; also drives
        compatibility heuristics for OpenAI-compatible endpoints.
    base_url:
        API root.  Each adapter appends its own path.
    compat:
        Explicit compatibility overrides; these always win over detection.
    kw:
        Extra fields merged into every request body.
    """

    id: str
    api: str
    provider: str
    base_url: str = ""
    name: str = ""
    reasoning: bool = False
    input: list[str] = field(default_factory=lambda: ["text"])
    cost: ModelCost = field(default_factory=ModelCost)
    context_window: int = 128_000
    max_tokens: int = 16_384
    headers: dict[str, str] | None = None
    compat: dict[str, Any] | None = None
    kw: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name:
            self.name = self.id

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Model:
        data = dict(data)
        cost = data.pop("cost", None)
        if isinstance(cost, dict):
            data["cost"] = ModelCost(**cost)
        return cls(**data)

    @property
    def supports_images(self) -> bool:
        return "image" in self.input


def calculate_cost(model: Model, usage: Usage) -> float:
    """Fill in ``usage.cost`` from the model's price table and return it."""
    c = model.cost
    usage.cost = (
        usage.input * c.input
        + usage.output * c.output
        + usage.cache_read * c.cache_read
        + usage.cache_write * c.cache_write
    ) / 1_000_000
    return usage.cost


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ModelRegistry:
    def __init__(self) -> None:
        self._models: dict[str, dict[str, Model]] = {}

    def register(self, model: Model, *, overwrite: bool = False) -> None:
        if model.api not in KNOWN_APIS:
            raise ConfigError(f"Unknown api {model.api!r} for model {model.id}")
        by_id = self._models.setdefault(model.provider, {})
        if model.id in by_id and not overwrite:
            raise ValueError(f"Model already registered: {model.provider}/{model.id}")
        by_id[model.id] = model

    def get(self, provider: str, model_id: str) -> Model:
        try:
            return self._models[provider][model_id]
        except KeyError:
            raise KeyError(
                f"Model '{provider}/{model_id}' not registered. "
                f"Known providers: {self.providers()}"
            ) from None

    def resolve(self, name: str) -> Model:
        """Look up ``"provider/model-id"`` (the model id may contain '/')."""
        provider, sep, model_id = name.partition("/")
        if not sep:
            raise KeyError(f"Expected 'provider/model', got {name!r}")
        return self.get(provider, model_id)

    def providers(self) -> list[str]:
        return sorted(self._models)

    def models(self, provider: str | None = None) -> list[Model]:
        if provider is not None:
            return sorted(self._models.get(provider, {}).values(), key=lambda m: m.id)
        return [m for p in self.providers() for m in self.models(p)]

    def calculate_cost(self, model: Model, usage: Usage) -> float:
        return calculate_cost(model, usage)

    def copy(self) -> ModelRegistry:
        clone = ModelRegistry()
        for provider, by_id in self._models.items():
            clone._models[provider] = {k: replace(v) for k, v in by_id.items()}
        return clone

    @classmethod
    def with_defaults(cls) -> ModelRegistry:
        registry = cls()
        for model in _default_models():
            registry.register(model)
        return registry


def _default_models() -> list[Model]:
    text_image = ["text", "image"]
    return [
        Model(
            id="gpt-4.1-mini",
            api=API_OPENAI_RESPONSES,
            provider="openai",
            base_url="https://api.openai.com/v1",
            input=text_image,
            context_window=1_047_576,
            max_tokens=32_768,
        ),
        Model(
            id="gpt-5-mini",
            api=API_OPENAI_RESPONSES,
            provider="openai",
            base_url="https://api.openai.com/v1",
            reasoning=True,
            input=text_image,
            context_window=400_000,
            max_tokens=128_000,
        ),
        Model(
            id="gpt-5.1-codex",
            api=API_OPENAI_CODEX,
            provider="openai-codex",
            base_url="https://chatgpt.com/backend-api",
            reasoning=True,
            input=text_image,
            context_window=400_000,
            max_tokens=128_000,
        ),
        Model(
            id="claude-sonnet-4-5",
            api=API_ANTHROPIC_MESSAGES,
            provider="anthropic",
            base_url="https://api.anthropic.com",
            reasoning=True,
            input=text_image,
            context_window=200_000,
            max_tokens=64_000,
        ),
        Model(
            id="gemini-2.5-flash",
            api=API_GOOGLE_GENERATIVE,
            provider="google",
            base_url="https://generativelanguage.googleapis.com/v1beta",
            reasoning=True,
            input=text_image,
            context_window=1_048_576,
            max_tokens=65_536,
        ),
        Model(
            id="gemini-2.5-pro",
            api=API_GOOGLE_GEMINI_CLI,
            provider="google-gemini-cli",
            base_url="https://cloudcode-pa.googleapis.com",
            reasoning=True,
            input=text_image,
            context_window=1_048_576,
            max_tokens=65_536,
        ),
        Model(
            id="mistral-large-latest",
            api=API_OPENAI_COMPLETIONS,
            provider="mistral",
            base_url="https://api.mistral.ai/v1",
            context_window=128_000,
            max_tokens=32_768,
        ),
        Model(
            id="grok-4",
            api=API_OPENAI_COMPLETIONS,
            provider="xai",
            base_url="https://api.x.ai/v1",
            reasoning=True,
            context_window=256_000,
            max_tokens=64_000,
        ),
        Model(
            id="llama-3.3-70b-versatile",
            api=API_OPENAI_COMPLETIONS,
            provider="groq",
            base_url="https://api.groq.com/openai/v1",
            context_window=131_072,
            max_tokens=32_768,
        ),
    ]


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------

API_KEY_ENV: dict[str, tuple[str, ...]] = {
    "openai": ("OPENAI_API_KEY",),
    "openai-codex": ("OPENAI_CODEX_ACCESS_TOKEN",),
    "anthropic": ("ANTHROPIC_OAUTH_TOKEN", "ANTHROPIC_API_KEY"),
    "google": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    "google-gemini-cli": ("GOOGLE_GEMINI_CLI_CREDENTIALS",),
    "mistral": ("MISTRAL_API_KEY",),
    "xai": ("XAI_API_KEY",),
    "groq": ("GROQ_API_KEY",),
    "cerebras": ("CEREBRAS_API_KEY",),
    "openrouter": ("OPENROUTER_API_KEY",),
    "zai": ("ZAI_API_KEY",),
}


def resolve_api_key(
    provider: str,
    explicit: str | None = None,
    env_var: str | None = None,
) -> str:
    """
    Pick the API key for *provider*.

    Order: *explicit*, then *env_var* if given, then the provider's
    conventional variables.  Raises ``ConfigError`` when nothing is set.
    """
    if explicit:
        return explicit
    candidates = ((env_var,) if env_var else ()) + API_KEY_ENV.get(provider, ())
    for name in candidates:
        value = os.environ.get(name)
        if value:
            return value
    tried = ", ".join(candidates) or "(no known variable)"
    raise ConfigError(f"No API key for provider '{provider}'; tried {tried}")
