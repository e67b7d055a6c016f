"""Tests for agentloop.compaction."""

from __future__ import annotations

import pytest

from agentloop.agent import Agent
from agentloop.compaction import (
    RESULT_PREVIEW_LIMIT,
    SUMMARY_PROMPT,
    CompactionConfig,
    Compactor,
    estimate_tokens,
    find_cut_point,
    format_messages_for_summary,
)
from agentloop.messages import (
    AgentState,
    AgentToolCall,
    AssistantMessage,
    CompactionSummaryMessage,
    ImageContent,
    TextContent,
    ToolResultMessage,
    Usage,
    UserMessage,
    message_text,
)
from tests.mock_providers import MockAdapter, MockTurn, text_turn
from tests.mock_tools import all_tools, mock_model

# 40 characters, 10 estimated tokens.
FORTY = "x" * 40


def _user(text=FORTY):
    return UserMessage(text)


def _assistant(text=FORTY, *, usage=None, calls=()):
    return AssistantMessage(
        content=[TextContent(text)] if text else [],
        tool_calls=[AgentToolCall(c, "add", "{}") for c in calls],
        usage=usage or Usage(),
    )


def _conversation(rounds=3):
    messages = []
    for _ in range(rounds):
        messages += [_user(), _assistant()]
    return messages


def _agent():
    return Agent.create(mock_model(), prompt="You help.", tools=all_tools(), api_key="k")


# ---------------------------------------------------------------------------
# Estimation and cut points
# ---------------------------------------------------------------------------


class TestEstimate:
    def test_four_chars_per_token(self):
        assert estimate_tokens(_user()) == 10
        assert estimate_tokens(_user("abc")) == 1

    def test_images_are_weighted(self):
        msg = UserMessage([TextContent("abcd"), ImageContent(data="x", mime_type="image/png")])
        assert estimate_tokens(msg) == 251

    def test_tool_call_arguments_count(self):
        msg = AssistantMessage(tool_calls=[AgentToolCall("c1", "add", "y" * 8)])
        assert estimate_tokens(msg) == 2

    def test_summary_counts_its_text(self):
        assert estimate_tokens(CompactionSummaryMessage(FORTY)) == 10


class TestFindCutPoint:
    def test_cuts_in_front_of_user(self):
        # 5 -> 10, 4 -> 20, 3 -> 30: candidate 3, next user is 4
        assert find_cut_point(_conversation(), 25) == 4

    def test_nothing_to_cut(self):
        assert find_cut_point(_conversation(), 1000) is None
        assert find_cut_point([_user()], 1) is None
        assert find_cut_point([], 1) is None

    def test_falls_back_to_earlier_user(self):
        messages = [
            _user(),
            _assistant(),
            _user(),
            _assistant("", calls=["c1"]),
            ToolResultMessage(call_id="c1", name="add", content="3"),
            _assistant(),
        ]
        assert find_cut_point(messages, 5) == 2

    def test_never_separates_call_from_result(self):
        messages = [
            _user(),
            _assistant("", calls=["c1"]),
            ToolResultMessage(call_id="c1", name="add", content=FORTY),
            _assistant(),
            _user(),
            _assistant(),
        ]
        cut = find_cut_point(messages, 25)
        assert isinstance(messages[cut], UserMessage)
        assert cut == 4


class TestFormatting:
    def test_transcript(self):
        text = format_messages_for_summary([
            UserMessage("add them"),
            AssistantMessage(content=[TextContent("sure")], tool_calls=[AgentToolCall("c1", "add", '{"x": 1}')]),
            ToolResultMessage(call_id="c1", name="add", content="z" * (RESULT_PREVIEW_LIMIT + 50), is_error=True),
            CompactionSummaryMessage("earlier"),
        ])
        assert "User: add them" in text
        assert "Assistant: sure" in text
        assert 'Assistant called tool: add({"x": 1})' in text
        assert "Tool add error: " in text
        assert "... (truncated)" in text
        assert "z" * (RESULT_PREVIEW_LIMIT + 1) not in text
        assert "Previous summary:\nearlier" in text


# ---------------------------------------------------------------------------
# Compactor
# ---------------------------------------------------------------------------


class TestShouldCompact:
    def _state(self, prompt_tokens):
        return AgentState(messages=[_user(), _assistant(usage=Usage(input=prompt_tokens))])

    def test_threshold(self):
        compactor = Compactor(CompactionConfig(reserve_tokens=1000))
        model = mock_model()
        assert compactor.should_compact(self._state(7500), model)
        assert not compactor.should_compact(self._state(7000), model)

    def test_cache_tokens_count(self):
        compactor = Compactor(CompactionConfig(reserve_tokens=1000))
        state = AgentState(messages=[_assistant(usage=Usage(input=100, cache_read=7200))])
        assert compactor.should_compact(state, mock_model())

    def test_disabled_or_no_reply(self):
        model = mock_model()
        assert not Compactor(CompactionConfig(enabled=False, reserve_tokens=1000)).should_compact(
            self._state(8000), model
        )
        assert not Compactor(CompactionConfig(reserve_tokens=1000)).should_compact(
            AgentState(messages=[_user()]), model
        )


class TestCompactor:
    async def test_replaces_prefix_with_summary(self):
        seen = {}
        adapter = MockAdapter([text_turn("## Goal ship it", before=lambda kw: seen.update(kw))])
        compactor = Compactor(CompactionConfig(keep_recent_tokens=25), adapter_factory=adapter.factory)
        state = AgentState(messages=_conversation())
        tail = state.messages[4:]

        result = await compactor.compact(_agent(), state)

        assert isinstance(result, CompactionSummaryMessage)
        assert result.summary == "## Goal ship it"
        assert result.tokens_before == 40
        assert state.messages == [result, *tail]
        assert state.last_compaction is result
        assert adapter.inputs[0].startswith("Summarize this conversation:")
        assert seen["agent"].prompt == SUMMARY_PROMPT
        assert len(seen["agent"].tools) == 0

    async def test_updates_previous_summary(self):
        seen = {}
        adapter = MockAdapter([text_turn("merged", before=lambda kw: seen.update(kw))])
        compactor = Compactor(CompactionConfig(keep_recent_tokens=25), adapter_factory=adapter.factory)
        previous = CompactionSummaryMessage("old summary", tokens_before=100)
        state = AgentState(messages=[previous, *_conversation()])

        result = await compactor.compact(_agent(), state)

        assert result.summary == "merged"
        assert result.tokens_before == 140
        assert "<previous-summary>\nold summary\n</previous-summary>" in seen["agent"].prompt
        assert "old summary" not in adapter.inputs[0]
        assert [message_text(m) for m in state.messages[1:]] == [FORTY, FORTY]

    async def test_summary_failure_keeps_history(self):
        adapter = MockAdapter([MockTurn(error=RuntimeError("provider down"))])
        compactor = Compactor(CompactionConfig(keep_recent_tokens=25), adapter_factory=adapter.factory)
        state = AgentState(messages=_conversation())
        before = list(state.messages)

        assert await compactor.compact(_agent(), state) is None
        assert state.messages == before
        assert state.last_compaction is None

    async def test_nothing_behind_existing_summary(self):
        adapter = MockAdapter([text_turn("unused")])
        compactor = Compactor(CompactionConfig(keep_recent_tokens=5), adapter_factory=adapter.factory)
        state = AgentState(messages=[CompactionSummaryMessage("s"), _user(), _assistant()])

        assert await compactor.compact(_agent(), state) is None
        assert adapter.call_count == 0

    async def test_maybe_compact_below_threshold(self):
        adapter = MockAdapter([text_turn("unused")])
        compactor = Compactor(CompactionConfig(reserve_tokens=1000), adapter_factory=adapter.factory)
        state = AgentState(messages=[_user(), _assistant(usage=Usage(input=10))])

        assert await compactor.maybe_compact(_agent(), state) is None
        assert adapter.call_count == 0

    async def test_maybe_compact_above_threshold(self):
        adapter = MockAdapter([text_turn("summary")])
        compactor = Compactor(
            CompactionConfig(reserve_tokens=1000, keep_recent_tokens=25), adapter_factory=adapter.factory
        )
        messages = _conversation()
        messages[-1] = _assistant(usage=Usage(input=8000))
        state = AgentState(messages=messages)

        result = await compactor.maybe_compact(_agent(), state)
        assert result is not None
        assert state.messages[0] is result

    @pytest.mark.parametrize("keep", [25, 35])
    async def test_kept_suffix_starts_with_user(self, keep):
        adapter = MockAdapter([text_turn("s")])
        compactor = Compactor(CompactionConfig(keep_recent_tokens=keep), adapter_factory=adapter.factory)
        state = AgentState(messages=_conversation(4))
        await compactor.compact(_agent(), state)
        assert isinstance(state.messages[1], UserMessage)
