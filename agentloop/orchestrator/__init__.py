"""Tool-calling loop."""

from agentloop.orchestrator.core import Orchestrator, evaluate, stringify_result

__all__ = ["Orchestrator", "evaluate", "stringify_result"]
