"""LLM client utilities and message helpers for agent execution.

This module provides:
- LLMClient: Wrapper around LiteLLM that classifies provider errors so the
  workflow runner retries only what is worth retrying
- MockLLMClient: Scripted client for tests
- LLMResponse / ToolCallData: JSON-checkpointable call results
- parse_task_summary / last_assistant_text: completion marker detection
- parse_agent_output: the single parsing boundary for finalizer output
"""

import json
import re
import time
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import AuthenticationError, BadRequestError

from config import settings
from models.schemas import Message, MessageRole, OtherMessage, TextMessage
from workflow.runner import NonRetriableError

logger = structlog.get_logger()

# Returned by parse_agent_output for message kinds that carry no text.
OUTPUT_PLACEHOLDER = "Fragment"

_TASK_SUMMARY_RE = re.compile(r"<task_summary>(.*?)</task_summary>", re.DOTALL)


def normalize_tool_args(raw_args: Any) -> dict[str, Any]:
    """Normalize raw tool-call arguments into a dictionary.

    Models occasionally emit malformed tool arguments (JSON arrays, primitives,
    or partially valid strings). Anything that is not a JSON object is wrapped
    so that schema validation reports it instead of crashing.
    """
    if isinstance(raw_args, dict):
        return raw_args

    if isinstance(raw_args, str):
        if not raw_args.strip():
            return {}
        try:
            parsed = json.loads(raw_args)
        except json.JSONDecodeError:
            return {"raw": raw_args}
        return parsed if isinstance(parsed, dict) else {"value": parsed}

    if raw_args is None:
        return {}

    return {"value": raw_args}


@dataclass
class ToolCallData:
    """Parsed tool call from an LLM response.

    Attributes:
        id: Unique identifier for this tool call
        name: Name of the tool to call
        args: Arguments to pass to the tool
    """

    id: str
    name: str
    args: dict[str, Any]


@dataclass
class LLMMetrics:
    """Token usage and latency of a single LLM call."""

    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0


@dataclass
class LLMResponse:
    """Structured response from an LLM call.

    Responses are stored as step checkpoints, so they round-trip through
    ``to_dict`` / ``from_dict``.

    Attributes:
        content: The text content of the response
        tool_calls: List of tool calls if the model requested tools
        finish_reason: Why the model stopped (stop, tool_calls, length, etc.)
        metrics: Token usage and latency metrics
    """

    content: str
    tool_calls: list[ToolCallData] = field(default_factory=list)
    finish_reason: str = "stop"
    metrics: LLMMetrics = field(default_factory=lambda: LLMMetrics(model="unknown"))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LLMResponse":
        return cls(
            content=data.get("content") or "",
            tool_calls=[ToolCallData(**tc) for tc in data.get("tool_calls", [])],
            finish_reason=data.get("finish_reason", "stop"),
            metrics=LLMMetrics(**data.get("metrics", {"model": "unknown"})),
        )

    def as_messages(self) -> list[Message]:
        """The response as conversation messages.

        Plain text replies become a TextMessage; replies that only request
        tools, or carry no text at all, become an OtherMessage.
        """
        if self.content and not self.tool_calls:
            return [TextMessage(role=MessageRole.ASSISTANT, content=self.content)]
        return [OtherMessage(role=MessageRole.ASSISTANT, content=self.content)]


class LLMClient:
    """Wrapper around LiteLLM for agent model calls.

    The client makes exactly one attempt per call. Retries belong to the
    workflow step that wraps the call: provider errors that cannot succeed
    on retry (401/403, 400) are raised as NonRetriableError, everything else
    propagates unchanged.

    Attributes:
        default_model: Default model to use if not specified
    """

    def __init__(self, default_model: str | None = None) -> None:
        self.default_model = default_model or settings.code_agent_model

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        """Make one LLM call.

        Args:
            messages: List of message dicts with 'role' and 'content'
            tools: Optional list of tool definitions
            model: Model to use (defaults to self.default_model)
            temperature: Sampling temperature (0.0-2.0)
            max_tokens: Maximum tokens in response
            agent_id: Calling agent, for logging

        Returns:
            LLMResponse with content, tool calls, and metrics

        Raises:
            NonRetriableError: On authentication or malformed-request errors.
        """
        model = model or self.default_model
        start_time = time.time()

        try:
            response = await self._make_request(
                messages=messages,
                tools=tools,
                model=model,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except (AuthenticationError, BadRequestError) as e:
            logger.error(
                "llm_call_failed_no_retry",
                model=model,
                agent_id=agent_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise NonRetriableError(f"{type(e).__name__}: {e}") from e

        latency_ms = int((time.time() - start_time) * 1000)
        llm_response = self._parse_response(response, model, latency_ms)

        logger.info(
            "llm_call_complete",
            model=model,
            agent_id=agent_id,
            input_tokens=llm_response.metrics.input_tokens,
            output_tokens=llm_response.metrics.output_tokens,
            latency_ms=latency_ms,
            tool_calls=len(llm_response.tool_calls),
        )
        return llm_response

    async def _make_request(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        model: str,
        temperature: float,
        max_tokens: int | None,
    ) -> ModelResponse:
        """Make the actual LiteLLM request."""
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "timeout": settings.llm_request_timeout_seconds,
        }

        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        return await acompletion(**kwargs)

    def _parse_response(
        self,
        response: ModelResponse,
        model: str,
        latency_ms: int,
    ) -> LLMResponse:
        """Parse the LiteLLM response into our structured format."""
        choice = response.choices[0]
        message = choice.message

        tool_calls: list[ToolCallData] = []
        if message.tool_calls:
            for tc in message.tool_calls:
                tool_calls.append(
                    ToolCallData(
                        id=tc.id,
                        name=tc.function.name,
                        args=normalize_tool_args(tc.function.arguments),
                    )
                )

        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "unknown",
            metrics=LLMMetrics(
                model=model,
                input_tokens=usage.prompt_tokens if usage else 0,
                output_tokens=usage.completion_tokens if usage else 0,
                latency_ms=latency_ms,
            ),
        )


class MockLLMClient(LLMClient):
    """Mock LLM client for testing without API calls.

    Usage:
        >>> client = MockLLMClient(responses=[LLMResponse(content="Hello")])
        >>> response = await client.call(messages=[...])
    """

    def __init__(
        self,
        responses: list[LLMResponse | Exception] | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize with predefined responses.

        Args:
            responses: Responses to return in order. An Exception entry is
                raised instead of returned.
            **kwargs: Additional args passed to parent
        """
        super().__init__(**kwargs)
        self.responses = list(responses) if responses else []
        self.call_history: list[dict[str, Any]] = []
        self._response_index = 0

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        """Return the next predefined response.

        Raises:
            IndexError: If no more responses available
        """
        self.call_history.append({
            "messages": [dict(m) for m in messages],
            "tools": tools,
            "model": model or self.default_model,
            "temperature": temperature,
            "agent_id": agent_id,
        })

        if self._response_index >= len(self.responses):
            raise IndexError("No more mock responses available")

        response = self.responses[self._response_index]
        self._response_index += 1
        if isinstance(response, Exception):
            raise response
        return response


# ---------------------------------------------------------------------------
# Message helpers
# ---------------------------------------------------------------------------


def format_tool_result_for_llm(tool_call_id: str, result: str) -> dict[str, Any]:
    """Format a tool result as a message for the LLM."""
    return {
        "role": "tool",
        "tool_call_id": tool_call_id,
        "content": result,
    }


def format_assistant_message_with_tools(
    content: str,
    tool_calls: list[ToolCallData],
) -> dict[str, Any]:
    """Format an assistant message that may include tool calls.

    Args:
        content: The assistant's text response
        tool_calls: List of ToolCallData the assistant made

    Returns:
        A message dict in the format expected by LLMs
    """
    message: dict[str, Any] = {
        "role": "assistant",
        "content": content,
    }

    if tool_calls:
        message["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {
                    "name": tc.name,
                    "arguments": json.dumps(tc.args),
                },
            }
            for tc in tool_calls
        ]

    return message


def to_llm_messages(messages: Sequence[Message]) -> list[dict[str, Any]]:
    """Convert conversation messages into LiteLLM message dicts.

    Only text messages have a meaningful LLM representation; other kinds
    are dropped.
    """
    converted: list[dict[str, Any]] = []
    for message in messages:
        if isinstance(message, TextMessage):
            converted.append({"role": message.role.value, "content": message.text()})
    return converted


def parse_task_summary(text: str) -> str:
    """Extract the text enclosed by the completion marker.

    Args:
        text: An assistant message.

    Returns:
        The stripped content of the first ``<task_summary>`` block, or an
        empty string when there is no complete marker.
    """
    match = _TASK_SUMMARY_RE.search(text)
    if match:
        return match.group(1).strip()
    return ""


def last_assistant_text(messages: Sequence[Message]) -> str | None:
    """Text of the most recent assistant message.

    Returns:
        The joined text, or None when there is no assistant message or its
        content is empty.
    """
    for message in reversed(messages):
        if message.role != MessageRole.ASSISTANT:
            continue
        if isinstance(message.content, str):
            text = message.content
        else:
            text = "".join(chunk.text for chunk in message.content)
        return text or None
    return None


def parse_agent_output(messages: Sequence[Message]) -> str:
    """Turn a single-turn agent's output into a display string.

    Args:
        messages: Agent output; must contain at least one message.

    Returns:
        The first message's joined text, or OUTPUT_PLACEHOLDER when the
        first message is not a text message.

    Raises:
        IndexError: If ``messages`` is empty.
    """
    first = messages[0]
    if isinstance(first, TextMessage):
        return first.text()
    if isinstance(first, OtherMessage):
        return OUTPUT_PLACEHOLDER
    raise TypeError(f"Unsupported message type: {type(first).__name__}")
