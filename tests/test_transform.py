"""Tests for agentloop.llm.transform.transform_messages."""

from __future__ import annotations

from agentloop.llm.compat import mistral_tool_id
from agentloop.llm.transform import MISSING_RESULT_TEXT, SUMMARY_PREFIX, transform_messages
from agentloop.messages import (
    AgentToolCall,
    AssistantMessage,
    CompactionSummaryMessage,
    TextContent,
    ThinkingContent,
    ToolCallContent,
    ToolResultMessage,
    UserMessage,
    message_text,
)
from tests.mock_tools import mock_model


def _assistant(*blocks, model=None, tool_calls=()):
    model = model or mock_model()
    return AssistantMessage(
        content=list(blocks),
        tool_calls=list(tool_calls),
        api=model.api,
        provider=model.provider,
        model=model.id,
    )


class TestBlocks:
    def test_empty_text_dropped(self):
        msgs = transform_messages(
            [UserMessage("hi"), _assistant(TextContent(""), TextContent("answer"))], mock_model()
        )
        assert [b.text for b in msgs[1].content] == ["answer"]

    def test_thinking_kept_for_same_model(self):
        block = ThinkingContent("reasoning", thinking_signature="sig")
        msgs = transform_messages([UserMessage("q"), _assistant(block)], mock_model())
        assert isinstance(msgs[1].content[0], ThinkingContent)
        assert msgs[1].content[0].thinking_signature == "sig"

    def test_thinking_degrades_to_text_across_models(self):
        other = mock_model(id="other-model")
        block = ThinkingContent("reasoning", thinking_signature="sig")
        msgs = transform_messages([UserMessage("q"), _assistant(block, model=other)], mock_model())
        converted = msgs[1].content[0]
        assert isinstance(converted, TextContent)
        assert converted.text == "reasoning"

    def test_text_signature_dropped_across_models(self):
        other = mock_model(provider="elsewhere")
        msgs = transform_messages(
            [UserMessage("q"), _assistant(TextContent("a", text_signature="msg_1"), model=other)],
            mock_model(),
        )
        assert msgs[1].content[0].text_signature is None

    def test_input_not_mutated(self):
        original = _assistant(TextContent(""), TextContent("x"))
        transform_messages([UserMessage("q"), original], mock_model())
        assert len(original.content) == 2


class TestToolCalls:
    def test_ids_normalized_and_results_follow(self):
        call_id = "call_with-symbols|0001"
        history = [
            UserMessage("go"),
            _assistant(
                ToolCallContent(id=call_id, name="add", arguments={"x": 1}),
                tool_calls=[AgentToolCall(call_id, "add", '{"x": 1}')],
            ),
            ToolResultMessage(call_id=call_id, name="add", content="1"),
        ]
        msgs = transform_messages(history, mock_model(), mistral_tool_id)
        new_id = mistral_tool_id(call_id)
        assert msgs[1].content[0].id == new_id
        assert msgs[1].tool_calls[0].call_id == new_id
        assert msgs[2].call_id == new_id

    def test_dangling_call_gets_synthetic_result(self):
        history = [
            UserMessage("go"),
            _assistant(ToolCallContent(id="c1", name="add")),
            UserMessage("never mind"),
        ]
        msgs = transform_messages(history, mock_model())
        assert [m.role for m in msgs] == ["user", "assistant", "toolResult", "user"]
        synthetic = msgs[2]
        assert synthetic.call_id == "c1"
        assert synthetic.is_error
        assert message_text(synthetic) == MISSING_RESULT_TEXT

    def test_answered_call_untouched(self):
        history = [
            UserMessage("go"),
            _assistant(ToolCallContent(id="c1", name="add"), ToolCallContent(id="c2", name="add")),
            ToolResultMessage(call_id="c2", name="add", content="ok"),
            UserMessage("next"),
        ]
        msgs = transform_messages(history, mock_model())
        results = [m for m in msgs if isinstance(m, ToolResultMessage)]
        assert [r.call_id for r in results] == ["c2", "c1"]
        assert not results[0].is_error
        assert results[1].is_error


class TestCompactionSummary:
    def test_summary_becomes_user_message(self):
        msgs = transform_messages(
            [CompactionSummaryMessage("earlier stuff"), UserMessage("continue")], mock_model()
        )
        assert isinstance(msgs[0], UserMessage)
        assert message_text(msgs[0]) == SUMMARY_PREFIX + "earlier stuff"
