"""LLM subsystem: model registry, streaming normalizer and provider adapters."""

from agentloop.llm.models import (
    KNOWN_APIS,
    Model,
    ModelCost,
    ModelRegistry,
    calculate_cost,
    resolve_api_key,
)
from agentloop.llm.normalizer import StreamNormalizer
from agentloop.llm.transform import transform_messages

__all__ = [
    "KNOWN_APIS",
    "Model",
    "ModelCost",
    "ModelRegistry",
    "StreamNormalizer",
    "calculate_cost",
    "resolve_api_key",
    "transform_messages",
]
