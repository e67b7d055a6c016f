"""Parsing and schema validation of the raw argument strings models send."""

from __future__ import annotations

import json

import jsonschema

from agentloop.tools.base import AgentTool, normalize_schema

RAW_PREVIEW_LIMIT = 500


class ToolArgumentError(ValueError):
    """Arguments could not be decoded into a JSON object."""


def parse_tool_arguments(raw: str) -> dict:
    """Strict parse: the arguments must be a JSON object (empty means ``{}``)."""
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ToolArgumentError(str(exc)) from exc
    if not isinstance(parsed, dict):
        raise ToolArgumentError(
            f"tool arguments must be a JSON object, got {type(parsed).__name__}"
        )
    return parsed


def argument_error_message(exc: Exception, raw: str) -> str:
    if len(raw) > RAW_PREVIEW_LIMIT:
        preview = f"{raw[:RAW_PREVIEW_LIMIT]}... (truncated, length={len(raw)})"
    else:
        preview = raw
    return f"Failed to parse tool arguments: {exc}\nRaw arguments: {preview}"


def validate_arguments(tool: AgentTool, arguments: dict) -> str | None:
    """Return a validation message, or ``None`` when *arguments* fit the schema."""
    try:
        jsonschema.validate(instance=arguments, schema=normalize_schema(tool.parameters))
    except jsonschema.ValidationError as e:
        return str(e.message)
    return None
