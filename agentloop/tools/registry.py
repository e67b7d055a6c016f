from __future__ import annotations

from importlib.metadata import entry_points
from typing import Iterable

from agentloop.tools.base import AgentTool


class ToolRegistry:
    """Tools registered once at agent construction and read-only afterwards."""

    def __init__(self, tools: Iterable[AgentTool] = ()) -> None:
        self._tools: dict[str, AgentTool] = {}
        for t in tools:
            self.register(t)

    def register(self, tool: AgentTool, *, overwrite: bool = False) -> None:
        if tool.name in self._tools and not overwrite:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> AgentTool | None:
        return self._tools.get(name)

    def require(self, name: str) -> AgentTool:
        t = self.get(name)
        if not t:
            raise KeyError(name)
        return t

    def requires_approval(self, name: str) -> bool:
        t = self.get(name)
        return bool(t and t.requires_approval)

    def list(self) -> list[AgentTool]:
        return sorted(self._tools.values(), key=lambda t: t.name)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def to_openai_schema(self) -> list[dict]:
        return [t.to_openai_schema() for t in self.list()]

    def load_plugins(
        self,
        *,
        enabled: bool,
        group: str = "agentloop.tools",
        allow_tools: set[str] | None = None,
    ) -> int:
        """Register tools published under an entry-point group.

        Each entry point must resolve to an ``AgentTool`` (for instance a
        function decorated with ``@tool``).
        """
        if not enabled:
            return 0
        loaded = 0
        for ep in entry_points(group=group):
            if allow_tools and ep.name not in allow_tools:
                continue
            obj = ep.load()
            if not isinstance(obj, AgentTool):
                obj = AgentTool(obj, name=ep.name)
            self.register(obj)
            loaded += 1
        return loaded
