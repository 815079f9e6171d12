"""Tests for agents/utils.py -- LLM client, message helpers and output parsing.

Covers completion marker extraction, the finalizer output parser, tool
argument normalization, message formatting, LLMResponse checkpoint
round-tripping and provider error classification.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from litellm.exceptions import AuthenticationError, BadRequestError

from agents.utils import (
    OUTPUT_PLACEHOLDER,
    LLMClient,
    LLMResponse,
    MockLLMClient,
    ToolCallData,
    format_assistant_message_with_tools,
    format_tool_result_for_llm,
    last_assistant_text,
    normalize_tool_args,
    parse_agent_output,
    parse_task_summary,
    to_llm_messages,
)
from models.schemas import MessageRole, OtherMessage, TextChunk, TextMessage
from tests.conftest import make_llm_response, make_tool_call
from workflow.runner import NonRetriableError

# =========================================================================
# parse_agent_output
# =========================================================================


class TestParseAgentOutput:
    """The single parsing boundary for finalizer output."""

    def test_string_content(self) -> None:
        message = TextMessage(role=MessageRole.ASSISTANT, content="hi")
        assert parse_agent_output([message]) == "hi"

    def test_chunked_content_is_joined(self) -> None:
        message = TextMessage(
            role=MessageRole.ASSISTANT,
            content=[TextChunk(text="a"), TextChunk(text="b")],
        )
        assert parse_agent_output([message]) == "ab"

    def test_non_text_message_returns_placeholder(self) -> None:
        message = OtherMessage(role=MessageRole.ASSISTANT, content="ignored")
        assert parse_agent_output([message]) == OUTPUT_PLACEHOLDER == "Fragment"

    def test_only_first_message_is_used(self) -> None:
        messages = [
            TextMessage(role=MessageRole.ASSISTANT, content="first"),
            TextMessage(role=MessageRole.ASSISTANT, content="second"),
        ]
        assert parse_agent_output(messages) == "first"

    def test_empty_sequence_raises(self) -> None:
        with pytest.raises(IndexError):
            parse_agent_output([])


# =========================================================================
# Completion marker
# =========================================================================


class TestParseTaskSummary:
    def test_basic(self) -> None:
        assert parse_task_summary("<task_summary>Added a page</task_summary>") == "Added a page"

    def test_multiline_with_surrounding_text(self) -> None:
        text = "All done.\n<task_summary>\nBuilt a blog\nwith a sidebar\n</task_summary>\n"
        assert parse_task_summary(text) == "Built a blog\nwith a sidebar"

    def test_missing_closing_tag(self) -> None:
        assert parse_task_summary("<task_summary>unfinished") == ""

    def test_no_marker(self) -> None:
        assert parse_task_summary("I'll start by reading the files.") == ""

    def test_empty_marker(self) -> None:
        assert parse_task_summary("<task_summary></task_summary>") == ""


class TestLastAssistantText:
    def test_most_recent_assistant_message(self) -> None:
        messages = [
            TextMessage(role=MessageRole.ASSISTANT, content="older"),
            TextMessage(role=MessageRole.USER, content="user"),
            TextMessage(role=MessageRole.ASSISTANT, content="newer"),
        ]
        assert last_assistant_text(messages) == "newer"

    def test_chunked_content(self) -> None:
        messages = [
            OtherMessage(
                role=MessageRole.ASSISTANT,
                content=[TextChunk(text="<task_summary>x"), TextChunk(text="</task_summary>")],
            )
        ]
        assert last_assistant_text(messages) == "<task_summary>x</task_summary>"

    def test_empty_content_is_none(self) -> None:
        assert last_assistant_text([OtherMessage(role=MessageRole.ASSISTANT)]) is None

    def test_no_assistant_message(self) -> None:
        assert last_assistant_text([TextMessage(role=MessageRole.USER, content="x")]) is None


class TestToLlmMessages:
    def test_only_text_messages_are_converted(self) -> None:
        messages = [
            TextMessage(role=MessageRole.USER, content="build it"),
            OtherMessage(role=MessageRole.ASSISTANT, content="tool stuff"),
            TextMessage(role=MessageRole.SYSTEM, content=[TextChunk(text="ctx")]),
        ]
        assert to_llm_messages(messages) == [
            {"role": "user", "content": "build it"},
            {"role": "system", "content": "ctx"},
        ]


# =========================================================================
# normalize_tool_args
# =========================================================================


class TestNormalizeToolArgs:
    """Normalize malformed tool-call argument payloads."""

    def test_dict_passthrough(self) -> None:
        raw = {"command": "ls"}
        assert normalize_tool_args(raw) == raw

    def test_json_string_dict(self) -> None:
        result = normalize_tool_args('{"command":"npm install zod --yes"}')
        assert result["command"] == "npm install zod --yes"

    def test_json_string_non_dict_wrapped(self) -> None:
        assert normalize_tool_args('["a", "b"]') == {"value": ["a", "b"]}

    def test_invalid_json_string_wrapped_as_raw(self) -> None:
        assert normalize_tool_args("{bad json") == {"raw": "{bad json"}

    def test_none_and_blank_return_empty_dict(self) -> None:
        assert normalize_tool_args(None) == {}
        assert normalize_tool_args("  ") == {}


# =========================================================================
# Message formatting
# =========================================================================


class TestFormatToolResult:
    def test_basic_result(self) -> None:
        result = format_tool_result_for_llm("call_123", "Updated files: a.ts")
        assert result == {"role": "tool", "tool_call_id": "call_123", "content": "Updated files: a.ts"}


class TestFormatAssistantMessage:
    def test_with_tool_calls(self) -> None:
        tc = ToolCallData(id="tc_1", name="terminal", args={"command": "ls"})
        msg = format_assistant_message_with_tools("Listing.", [tc])
        assert msg["role"] == "assistant"
        assert msg["content"] == "Listing."
        assert msg["tool_calls"][0]["function"] == {
            "name": "terminal",
            "arguments": '{"command": "ls"}',
        }

    def test_without_tool_calls(self) -> None:
        msg = format_assistant_message_with_tools("Just text.", [])
        assert "tool_calls" not in msg


# =========================================================================
# LLMResponse
# =========================================================================


class TestLLMResponse:
    def test_checkpoint_round_trip(self) -> None:
        response = make_llm_response(
            "thinking", tool_calls=[make_tool_call("readFiles", {"files": ["a"]})]
        )
        assert LLMResponse.from_dict(response.to_dict()) == response

    def test_text_reply_is_text_message(self) -> None:
        [message] = make_llm_response("Todo List").as_messages()
        assert isinstance(message, TextMessage)
        assert message.text() == "Todo List"

    def test_tool_call_reply_is_other_message(self) -> None:
        response = make_llm_response("x", tool_calls=[make_tool_call("terminal", {"command": "ls"})])
        [message] = response.as_messages()
        assert isinstance(message, OtherMessage)

    def test_empty_reply_is_other_message(self) -> None:
        [message] = make_llm_response("").as_messages()
        assert isinstance(message, OtherMessage)


# =========================================================================
# LLMClient
# =========================================================================


class TestLLMClient:
    def test_parse_response(self) -> None:
        tool_call = MagicMock()
        tool_call.id = "tc_1"
        tool_call.function.name = "terminal"
        tool_call.function.arguments = '{"command": "ls"}'
        raw = MagicMock()
        raw.choices = [MagicMock(finish_reason="tool_calls")]
        raw.choices[0].message.content = None
        raw.choices[0].message.tool_calls = [tool_call]
        raw.usage.prompt_tokens = 12
        raw.usage.completion_tokens = 3

        response = LLMClient(default_model="openai/test")._parse_response(raw, "openai/test", 50)

        assert response.content == ""
        assert response.tool_calls == [ToolCallData(id="tc_1", name="terminal", args={"command": "ls"})]
        assert response.metrics.input_tokens == 12
        assert response.metrics.latency_ms == 50

    async def test_authentication_error_is_not_retriable(self) -> None:
        client = LLMClient(default_model="openai/test")
        client._make_request = AsyncMock(  # type: ignore[method-assign]
            side_effect=AuthenticationError(
                message="invalid key", llm_provider="openai", model="test"
            )
        )
        with pytest.raises(NonRetriableError):
            await client.call([{"role": "user", "content": "hi"}])

    async def test_bad_request_is_not_retriable(self) -> None:
        client = LLMClient(default_model="openai/test")
        client._make_request = AsyncMock(  # type: ignore[method-assign]
            side_effect=BadRequestError(message="bad", model="test", llm_provider="openai")
        )
        with pytest.raises(NonRetriableError):
            await client.call([{"role": "user", "content": "hi"}])

    async def test_other_errors_propagate_unchanged(self) -> None:
        client = LLMClient(default_model="openai/test")
        client._make_request = AsyncMock(side_effect=TimeoutError())  # type: ignore[method-assign]
        with pytest.raises(TimeoutError):
            await client.call([{"role": "user", "content": "hi"}])


class TestMockLLMClient:
    async def test_returns_responses_in_order_and_records_calls(self) -> None:
        client = MockLLMClient(responses=[make_llm_response("one"), make_llm_response("two")])
        first = await client.call([{"role": "user", "content": "a"}], agent_id="x")
        second = await client.call([{"role": "user", "content": "b"}])
        assert (first.content, second.content) == ("one", "two")
        assert client.call_history[0]["agent_id"] == "x"

    async def test_exhausted(self) -> None:
        with pytest.raises(IndexError):
            await MockLLMClient().call([])

    async def test_exception_entries_are_raised(self) -> None:
        client = MockLLMClient(responses=[ValueError("scripted")])
        with pytest.raises(ValueError, match="scripted"):
            await client.call([])
