"""
Tools exposed to the model.

An ``AgentTool`` wraps a plain (sync or async) function.  Its JSON schema is
derived from the function's type hints unless one is supplied explicitly::

    @tool(requires_approval=True)
    def delete_file(path: str, force: bool = False) -> str:
        \"\"\"Delete a file from the workspace.\"\"\"
        ...
"""

from __future__ import annotations

import asyncio
import inspect
import types
import typing
from typing import Any, Callable, Literal, Union


def normalize_schema(schema: dict) -> dict:
    s = dict(schema or {})
    s.setdefault("type", "object")
    s.setdefault("properties", {})
    s.setdefault("additionalProperties", False)
    return s


# ---------------------------------------------------------------------------
# Schema derivation
# ---------------------------------------------------------------------------

_PRIMITIVES: dict[Any, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
}


def _is_optional(annotation: Any) -> tuple[bool, Any]:
    origin = typing.get_origin(annotation)
    if origin is Union or origin is types.UnionType:
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        if len(args) < len(typing.get_args(annotation)):
            return True, args[0] if len(args) == 1 else Union[tuple(args)]
    return False, annotation


def type_to_schema(annotation: Any) -> dict:
    """Map a Python type hint onto a JSON-schema fragment."""
    if annotation is inspect.Parameter.empty or annotation is Any:
        return {}
    _, annotation = _is_optional(annotation)
    if annotation in _PRIMITIVES:
        return {"type": _PRIMITIVES[annotation]}

    origin = typing.get_origin(annotation)
    args = typing.get_args(annotation)
    if origin is Literal:
        return {"enum": list(args)}
    if annotation in (list, tuple, set) or origin in (list, tuple, set):
        schema: dict = {"type": "array"}
        if args:
            schema["items"] = type_to_schema(args[0])
        return schema
    if annotation is dict or origin is dict:
        return {"type": "object"}
    if origin is Union or origin is types.UnionType:
        return {"anyOf": [type_to_schema(a) for a in args]}
    return {}


def schema_from_signature(func: Callable[..., Any]) -> dict:
    sig = inspect.signature(func)
    try:
        hints = typing.get_type_hints(func)
    except (NameError, TypeError):
        hints = {}

    properties: dict[str, dict] = {}
    required: list[str] = []
    for name, param in sig.parameters.items():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        annotation = hints.get(name, param.annotation)
        prop = type_to_schema(annotation)
        optional, _ = _is_optional(annotation)
        if param.default is param.empty and not optional:
            required.append(name)
        elif param.default is not param.empty and param.default is not None:
            prop["default"] = param.default
        properties[name] = prop

    schema: dict = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return normalize_schema(schema)


# ---------------------------------------------------------------------------
# Tool
# ---------------------------------------------------------------------------


class AgentTool:
    """
    A named, schema-described callable the model may invoke.

    Parameters
    ----------
    func:
        Implementation.  Called with the parsed arguments as keywords; may be
        a coroutine function.  Synchronous functions run in a worker thread.
    name:
        Tool name; defaults to ``func.__name__``.
    description:
        Defaults to the first paragraph of the function's docstring.
    parameters:
        JSON schema for the arguments.  Derived from type hints when omitted.
    strict:
        Ask providers that support it to enforce the schema exactly.
    requires_approval:
        Pause the tool-call loop until the caller approves each call.
    """

    def __init__(
        self,
        func: Callable[..., Any],
        *,
        name: str | None = None,
        description: str | None = None,
        parameters: dict | None = None,
        strict: bool = False,
        requires_approval: bool = False,
    ) -> None:
        self.func = func
        self.name = name or func.__name__
        doc = inspect.getdoc(func) or ""
        self.description = description or doc.split("\n\n", 1)[0].strip() or "Custom tool"
        self.parameters = (
            normalize_schema(parameters) if parameters is not None else schema_from_signature(func)
        )
        self.strict = strict
        self.requires_approval = requires_approval

    def __repr__(self) -> str:
        return f"AgentTool(name={self.name!r}, requires_approval={self.requires_approval})"

    async def execute(self, arguments: dict) -> Any:
        if inspect.iscoroutinefunction(self.func):
            return await self.func(**arguments)
        result = await asyncio.to_thread(self.func, **arguments)
        if inspect.isawaitable(result):
            result = await result
        return result

    # ------------------------------------------------------------------
    # Provider schemas
    # ------------------------------------------------------------------

    def to_openai_schema(self) -> dict:
        """Chat-completions ``tools`` entry."""
        function: dict = {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }
        if self.strict:
            function["strict"] = True
        return {"type": "function", "function": function}

    def to_responses_schema(self) -> dict:
        """Responses-API ``tools`` entry (flat, no ``function`` wrapper)."""
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
            "strict": self.strict or None,
        }


def tool(
    func: Callable[..., Any] | None = None,
    *,
    name: str | None = None,
    description: str | None = None,
    strict: bool = False,
    requires_approval: bool = False,
) -> Any:
    """Decorator form of ``AgentTool``; usable bare or with keywords."""

    def wrap(f: Callable[..., Any]) -> AgentTool:
        return AgentTool(
            f,
            name=name,
            description=description,
            strict=strict,
            requires_approval=requires_approval,
        )

    if func is not None:
        return wrap(func)
    return wrap
