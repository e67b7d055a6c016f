"""Tests for agentloop.tools: schema derivation, registry, argument validation, builtins."""

from __future__ import annotations

from typing import Literal, Optional

import pytest

from agentloop.tools.base import AgentTool, schema_from_signature, tool, type_to_schema
from agentloop.tools.builtin import builtin_tools, calculator, current_time, evaluate_expression
from agentloop.tools.registry import ToolRegistry
from agentloop.tools.validation import (
    RAW_PREVIEW_LIMIT,
    ToolArgumentError,
    argument_error_message,
    parse_tool_arguments,
    validate_arguments,
)
from tests.mock_tools import add, delete_file, echo


class TestSchemaDerivation:
    def test_primitives_and_required(self):
        def f(name: str, count: int, ratio: float = 0.5, verbose: bool = False):
            pass

        schema = schema_from_signature(f)
        assert schema["type"] == "object"
        assert schema["additionalProperties"] is False
        assert schema["properties"]["name"] == {"type": "string"}
        assert schema["properties"]["count"] == {"type": "integer"}
        assert schema["properties"]["ratio"] == {"type": "number", "default": 0.5}
        assert schema["properties"]["verbose"] == {"type": "boolean", "default": False}
        assert schema["required"] == ["name", "count"]

    def test_optional_is_not_required(self):
        def f(path: Optional[str], limit: int | None = None):
            pass

        schema = schema_from_signature(f)
        assert "required" not in schema
        assert schema["properties"]["path"] == {"type": "string"}
        assert schema["properties"]["limit"] == {"type": "integer"}

    def test_containers_and_literals(self):
        assert type_to_schema(list[str]) == {"type": "array", "items": {"type": "string"}}
        assert type_to_schema(dict) == {"type": "object"}
        assert type_to_schema(Literal["a", "b"]) == {"enum": ["a", "b"]}

    def test_varargs_skipped(self):
        def f(a: int, *args, **kwargs):
            pass

        assert list(schema_from_signature(f)["properties"]) == ["a"]

    def test_explicit_parameters_are_normalized(self):
        t = AgentTool(lambda **kw: None, name="raw", parameters={"properties": {"q": {"type": "string"}}})
        assert t.parameters["type"] == "object"
        assert t.parameters["additionalProperties"] is False


class TestAgentTool:
    def test_decorator_defaults(self):
        assert add.name == "add"
        assert add.description == "Add two integers."
        assert add.requires_approval is False
        assert delete_file.requires_approval is True

    def test_decorator_keywords(self):
        @tool(name="search_docs", description="Search the docs.", strict=True)
        def search(query: str) -> list:
            return []

        assert search.name == "search_docs"
        assert search.to_openai_schema()["function"]["strict"] is True
        responses = search.to_responses_schema()
        assert responses["name"] == "search_docs"
        assert responses["strict"] is True

    def test_openai_schema_shape(self):
        schema = add.to_openai_schema()
        assert schema["type"] == "function"
        assert schema["function"]["name"] == "add"
        assert schema["function"]["parameters"]["required"] == ["x", "y"]
        assert "strict" not in schema["function"]

    async def test_execute_sync_and_async(self):
        assert await add.execute({"x": 2, "y": 3}) == 5
        assert await echo.execute({"message": "hi"}) == "hi"


class TestToolRegistry:
    def test_register_and_lookup(self):
        registry = ToolRegistry([add, echo])
        assert len(registry) == 2
        assert "add" in registry
        assert registry.get("missing") is None
        assert registry.require("echo") is echo
        with pytest.raises(KeyError):
            registry.require("missing")

    def test_duplicate_rejected(self):
        registry = ToolRegistry([add])
        with pytest.raises(ValueError, match="already registered"):
            registry.register(add)
        registry.register(add, overwrite=True)

    def test_list_is_sorted(self):
        registry = ToolRegistry([echo, delete_file, add])
        assert [t.name for t in registry.list()] == ["add", "delete_file", "echo"]

    def test_requires_approval(self):
        registry = ToolRegistry([add, delete_file])
        assert registry.requires_approval("delete_file")
        assert not registry.requires_approval("add")
        assert not registry.requires_approval("unknown")

    def test_plugins_disabled(self):
        assert ToolRegistry().load_plugins(enabled=False) == 0

    def test_plugins_loaded_from_entry_points(self, monkeypatch):
        class _EP:
            def __init__(self, name, obj):
                self.name = name
                self._obj = obj

            def load(self):
                return self._obj

        def shout(text: str) -> str:
            return text.upper()

        eps = [_EP("add", add), _EP("shout", shout), _EP("skipped", echo)]
        monkeypatch.setattr(
            "agentloop.tools.registry.entry_points", lambda group: eps
        )
        registry = ToolRegistry()
        loaded = registry.load_plugins(enabled=True, allow_tools={"add", "shout"})
        assert loaded == 2
        assert "shout" in registry
        assert "skipped" not in registry


class TestArgumentParsing:
    def test_empty_means_empty_object(self):
        assert parse_tool_arguments("") == {}
        assert parse_tool_arguments("   ") == {}

    def test_valid_object(self):
        assert parse_tool_arguments('{"x": 1}') == {"x": 1}

    def test_malformed(self):
        with pytest.raises(ToolArgumentError):
            parse_tool_arguments("{not json")

    def test_non_object(self):
        with pytest.raises(ToolArgumentError, match="JSON object"):
            parse_tool_arguments("[1, 2]")

    def test_error_message_includes_raw(self):
        msg = argument_error_message(ValueError("bad"), '{"x":')
        assert msg.startswith("Failed to parse tool arguments: bad")
        assert 'Raw arguments: {"x":' in msg

    def test_error_message_truncates_long_raw(self):
        raw = "x" * (RAW_PREVIEW_LIMIT + 50)
        msg = argument_error_message(ValueError("bad"), raw)
        assert f"(truncated, length={len(raw)})" in msg
        assert "x" * (RAW_PREVIEW_LIMIT + 1) not in msg


class TestSchemaValidation:
    def test_valid(self):
        assert validate_arguments(add, {"x": 1, "y": 2}) is None

    def test_missing_required(self):
        problem = validate_arguments(add, {"x": 1})
        assert problem is not None
        assert "'y' is a required property" in problem

    def test_wrong_type(self):
        assert validate_arguments(add, {"x": "one", "y": 2}) is not None

    def test_extra_property(self):
        assert validate_arguments(add, {"x": 1, "y": 2, "z": 3}) is not None


class TestBuiltins:
    def test_builtin_set(self):
        assert [t.name for t in builtin_tools()] == ["current_time", "calculator"]
        assert calculator.requires_approval
        assert not current_time.requires_approval

    @pytest.mark.parametrize(
        "expression, expected",
        [
            ("1 + 2", 3),
            ("(10 + 20) * 3", 90),
            ("7 // 2", 3),
            ("2 ** 10", 1024),
            ("-4 + 1.5", -2.5),
        ],
    )
    def test_evaluate_expression(self, expression, expected):
        assert evaluate_expression(expression) == expected

    @pytest.mark.parametrize("expression", ["__import__('os')", "a + 1", "2 ** 5000", "1 +"])
    def test_rejects_unsafe_or_invalid(self, expression):
        with pytest.raises(ValueError):
            evaluate_expression(expression)

    async def test_calculator_formats_integers(self):
        assert await calculator.execute({"expression": "10 / 2"}) == "5"
        assert await calculator.execute({"expression": "1 / 4"}) == "0.25"

    async def test_current_time_is_iso(self):
        value = await current_time.execute({})
        assert value.endswith("+00:00")
        assert "T" in value
