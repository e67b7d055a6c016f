"""Agent definition: the immutable part of a conversation."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Iterable

from agentloop.llm.models import Model, resolve_api_key
from agentloop.tools.base import AgentTool
from agentloop.tools.registry import ToolRegistry


@dataclass
class Agent:
    """
    What to talk to and with which tools.

    Parameters
    ----------
    model:
        The model every turn is sent to.
    prompt:
        System prompt (``instructions`` / ``system`` / developer message,
        depending on the provider).
    name:
        Label used in logs.
    tools:
        A ``ToolRegistry`` or any iterable of ``AgentTool``.  Registered once;
        the registry is shared by every evaluation of this agent.
    api_key:
        Credential for ``model.provider``.  Falls back to the provider's
        conventional environment variable at call time.
    options:
        Default request options (``temperature``, ``max_tokens``,
        ``reasoning_effort``...) merged under per-call options.
    """

    model: Model
    prompt: str = ""
    name: str = "agent"
    tools: ToolRegistry = field(default_factory=ToolRegistry)
    api_key: str | None = None
    options: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.tools, ToolRegistry):
            self.tools = ToolRegistry(self.tools)

    def resolve_api_key(self, explicit: str | None = None) -> str:
        return resolve_api_key(self.model.provider, explicit or self.api_key)

    def without_tools(self, *, prompt: str | None = None, name: str | None = None) -> Agent:
        """Same model and credentials, no tools (summarizer, classifier)."""
        return replace(
            self,
            tools=ToolRegistry(),
            prompt=self.prompt if prompt is None else prompt,
            name=name or self.name,
        )

    @classmethod
    def create(
        cls,
        model: Model,
        prompt: str = "",
        tools: Iterable[AgentTool] = (),
        **kw: Any,
    ) -> Agent:
        return cls(model=model, prompt=prompt, tools=ToolRegistry(tools), **kw)
