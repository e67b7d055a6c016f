from agentloop.tools.base import AgentTool, schema_from_signature, tool
from agentloop.tools.registry import ToolRegistry

__all__ = ["AgentTool", "ToolRegistry", "schema_from_signature", "tool"]
