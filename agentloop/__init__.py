"""
agentloop - a provider-agnostic agent runtime.

Streams replies from several LLM wire protocols into one message model and
drives the tool-calling loop around them.
"""

from agentloop.abort import AbortToken
from agentloop.agent import Agent
from agentloop.events import EventChannel
from agentloop.llm.models import Model, ModelRegistry
from agentloop.messages import (
    AgentState,
    AssistantMessage,
    ImageContent,
    PendingToolCall,
    TextContent,
    ToolResultMessage,
    UserMessage,
)
from agentloop.orchestrator import Orchestrator, evaluate
from agentloop.tools import AgentTool, ToolRegistry, tool
from agentloop.types import (
    AbortedError,
    AgentloopError,
    ConfigError,
    InvalidInputError,
    ProviderHTTPError,
    StopReason,
    ToolIterationLimitError,
)

__version__ = "0.1.0"

__all__ = [
    "AbortToken",
    "AbortedError",
    "Agent",
    "AgentState",
    "AgentTool",
    "AgentloopError",
    "AssistantMessage",
    "ConfigError",
    "EventChannel",
    "ImageContent",
    "InvalidInputError",
    "Model",
    "ModelRegistry",
    "Orchestrator",
    "PendingToolCall",
    "ProviderHTTPError",
    "StopReason",
    "TextContent",
    "ToolIterationLimitError",
    "ToolRegistry",
    "ToolResultMessage",
    "UserMessage",
    "evaluate",
    "tool",
]
