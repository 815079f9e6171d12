"""Coding agent network LangGraph implementation.

The network drives a single coding agent through turns until it reports
completion with a ``<task_summary>`` block or runs out of turns:

    START -> code_agent -> [tools -> code_agent]* -> inspect -> [code_agent | END]

- code_agent: one model call, checkpointed as ``code-agent:turn-{t}:round-{r}``
- tools: executes the requested tool calls sequentially, each checkpointed as
  ``{tool}:turn-{t}:round-{r}:call-{i}``
- inspect: reads the turn's last assistant message, extracts the summary and
  applies the routing function

Every node output is derived from checkpointed step values, so re-running a
crashed run replays the same graph path without repeating model or sandbox
calls.
"""

import operator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Annotated, Any, Literal, TypedDict

import structlog
from langgraph.errors import GraphRecursionError
from langgraph.graph import END, START, StateGraph

from agents.prompts import CODE_AGENT_PROMPT, TURN_CONTINUE_PROMPT
from agents.tools import ToolCall, ToolExecutor, get_tool_definitions_for_llm
from agents.utils import (
    LLMClient,
    LLMResponse,
    format_assistant_message_with_tools,
    format_tool_result_for_llm,
    last_assistant_text,
    parse_task_summary,
    to_llm_messages,
)
from config import settings
from models.schemas import Message
from sandbox.docker_sandbox import SandboxManager
from workflow.runner import StepContext

logger = structlog.get_logger()

CODE_AGENT = "code_agent"


class NetworkStatus(StrEnum):
    """Terminal state of the agent network."""

    DONE = "DONE"
    FAILED_MAX_TURNS = "FAILED_MAX_TURNS"


@dataclass
class SharedRunState:
    """Files and summary accumulated by one run.

    Owned by a single network invocation. Nodes never mutate it in place; the
    graph returns updated values and the controller copies them back.
    """

    files: dict[str, str] = field(default_factory=dict)
    summary: str = ""


@dataclass
class NetworkResult:
    """Outcome of a network run."""

    status: NetworkStatus
    state: SharedRunState
    turns: int


class NetworkState(TypedDict):
    """State flowing through the network graph.

    Attributes:
        messages: LLM conversation, appended by each node
        files: Current file map (replaced on each successful write)
        summary: Extracted task summary, "" until completion
        turn: Zero-based index of the current turn
        round: Zero-based model/tool round inside the current turn
        last_response: The latest model response as a checkpoint dict
        status: running until the network stops
    """

    messages: Annotated[list[dict[str, Any]], operator.add]
    files: dict[str, str]
    summary: str
    turn: int
    round: int
    last_response: dict[str, Any]
    status: Literal["running", "done", "failed_max_turns"]


def route(summary: str) -> str | None:
    """Pick the next agent after a turn.

    Returns:
        The coding agent while no summary exists, otherwise None.
    """
    if summary:
        return None
    return CODE_AGENT


def build_initial_messages(
    task: str,
    prior_messages: list[Message],
    files: dict[str, str],
    history_limit: int | None = None,
) -> list[dict[str, Any]]:
    """Assemble the coding agent's opening conversation.

    Args:
        task: The user's instruction for this run.
        prior_messages: Earlier project conversation, oldest first.
        files: Files carried over from the project's previous fragment.
        history_limit: Number of prior messages to keep (defaults to config).
    """
    limit = history_limit if history_limit is not None else settings.conversation_history_limit
    history = list(prior_messages)[-limit:] if limit > 0 else []

    messages: list[dict[str, Any]] = [{"role": "system", "content": CODE_AGENT_PROMPT}]
    messages.extend(to_llm_messages(history))
    if files:
        listing = "\n".join(f"- {path}" for path in sorted(files))
        messages.append({
            "role": "system",
            "content": f"Files already present in the sandbox from earlier work:\n{listing}",
        })
    messages.append({"role": "user", "content": task})
    return messages


class AgentNetwork:
    """Turn loop around the coding agent.

    Usage:
        >>> network = AgentNetwork(sandbox_manager, llm_client, step, session_id)
        >>> result = await network.run(task, prior_messages, files)
    """

    def __init__(
        self,
        sandbox_manager: SandboxManager,
        llm_client: LLMClient,
        step: StepContext,
        session_id: str,
        max_turns: int | None = None,
        max_tool_rounds: int | None = None,
        temperature: float | None = None,
    ) -> None:
        """Initialize the network.

        Args:
            sandbox_manager: Manager for the run's sandbox session
            llm_client: Client used for coding agent calls
            step: Step context of the current run
            session_id: Sandbox session owned by the run
            max_turns: Turn budget before FAILED_MAX_TURNS (defaults to config)
            max_tool_rounds: Model/tool rounds allowed in one turn (defaults to config)
            temperature: Sampling temperature (defaults to config)
        """
        self.llm_client = llm_client
        self.step = step
        self.session_id = session_id
        self.max_turns = max_turns or settings.max_agent_turns
        self.max_tool_rounds = max_tool_rounds or settings.max_tool_rounds_per_turn
        self.temperature = (
            temperature if temperature is not None else settings.code_agent_temperature
        )
        self.tool_executor = ToolExecutor(sandbox_manager, step, session_id)
        self._compiled_graph = self._build_graph()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(NetworkState)

        graph.add_node(CODE_AGENT, self._call_agent)
        graph.add_node("tools", self._execute_tools)
        graph.add_node("inspect", self._inspect_turn)

        graph.add_edge(START, CODE_AGENT)
        graph.add_conditional_edges(
            CODE_AGENT,
            self._after_agent,
            {"tools": "tools", "inspect": "inspect"},
        )
        graph.add_conditional_edges(
            "tools",
            self._after_tools,
            {CODE_AGENT: CODE_AGENT, "inspect": "inspect"},
        )
        graph.add_conditional_edges(
            "inspect",
            self._after_inspect,
            {CODE_AGENT: CODE_AGENT, "end": END},
        )

        return graph.compile()

    @property
    def recursion_limit(self) -> int:
        # code_agent + tools per round, plus inspect per turn
        return self.max_turns * (2 * self.max_tool_rounds + 1) + 10

    # -----------------------------------------------------------------
    # Nodes
    # -----------------------------------------------------------------

    async def _call_agent(self, state: NetworkState) -> dict[str, Any]:
        """Call the model once, as a checkpointed step."""
        turn, rnd = state["turn"], state["round"]
        messages = list(state["messages"])

        async def call() -> dict[str, Any]:
            response = await self.llm_client.call(
                messages=messages,
                tools=get_tool_definitions_for_llm(),
                temperature=self.temperature,
                agent_id=CODE_AGENT,
            )
            return response.to_dict()

        data = await self.step.run(f"code-agent:turn-{turn}:round-{rnd}", call)
        response = LLMResponse.from_dict(data)

        logger.info(
            "code_agent_round_complete",
            session_id=self.session_id,
            turn=turn,
            round=rnd,
            tool_calls=len(response.tool_calls),
        )

        return {
            "messages": [
                format_assistant_message_with_tools(response.content, response.tool_calls)
            ],
            "last_response": data,
        }

    async def _execute_tools(self, state: NetworkState) -> dict[str, Any]:
        """Run the last response's tool calls in order."""
        turn, rnd = state["turn"], state["round"]
        response = LLMResponse.from_dict(state["last_response"])
        files = dict(state["files"])
        tool_messages: list[dict[str, Any]] = []

        for index, tc in enumerate(response.tool_calls):
            result = await self.tool_executor.execute(
                ToolCall(id=tc.id, name=tc.name, args=tc.args),
                files,
                f"{tc.name}:turn-{turn}:round-{rnd}:call-{index}",
            )
            if result.files is not None:
                files = result.files
            if not result.success:
                logger.info(
                    "tool_call_failed",
                    session_id=self.session_id,
                    tool_name=tc.name,
                    turn=turn,
                    round=rnd,
                )
            tool_messages.append(format_tool_result_for_llm(result.tool_call_id, result.content))

        return {
            "messages": tool_messages,
            "files": files,
            "round": rnd + 1,
        }

    async def _inspect_turn(self, state: NetworkState) -> dict[str, Any]:
        """Close the turn: look for the completion marker and update status."""
        turn = state["turn"]
        response = LLMResponse.from_dict(state["last_response"])
        text = last_assistant_text(response.as_messages()) or ""
        summary = parse_task_summary(text) or state["summary"]

        if route(summary) is None:
            status = "done"
        elif turn + 1 >= self.max_turns:
            status = "failed_max_turns"
            logger.warning(
                "max_agent_turns_reached",
                session_id=self.session_id,
                turns=turn + 1,
                max_turns=self.max_turns,
            )
        else:
            status = "running"

        logger.info(
            "code_agent_turn_complete",
            session_id=self.session_id,
            turn=turn,
            has_summary=bool(summary),
            status=status,
        )

        update: dict[str, Any] = {
            "summary": summary,
            "turn": turn + 1,
            "round": 0,
            "status": status,
        }
        if status == "running":
            update["messages"] = [{"role": "user", "content": TURN_CONTINUE_PROMPT}]
        return update

    # -----------------------------------------------------------------
    # Edges
    # -----------------------------------------------------------------

    def _after_agent(self, state: NetworkState) -> str:
        if state["last_response"].get("tool_calls"):
            return "tools"
        return "inspect"

    def _after_tools(self, state: NetworkState) -> str:
        if state["round"] >= self.max_tool_rounds:
            logger.warning(
                "max_tool_rounds_reached",
                session_id=self.session_id,
                turn=state["turn"],
                rounds=state["round"],
            )
            return "inspect"
        return CODE_AGENT

    def _after_inspect(self, state: NetworkState) -> str:
        if state["status"] != "running":
            return "end"
        return route(state["summary"]) or "end"

    # -----------------------------------------------------------------
    # Entry point
    # -----------------------------------------------------------------

    async def run(
        self,
        task: str,
        prior_messages: list[Message] | None = None,
        files: dict[str, str] | None = None,
    ) -> NetworkResult:
        """Run turns until the agent finishes or the turn budget is spent.

        Args:
            task: The user's instruction.
            prior_messages: Earlier project conversation, oldest first.
            files: Pre-seeded file map from the project's previous fragment.

        Returns:
            NetworkResult with the final shared state.

        Raises:
            StepFailedError: If a model or sandbox step exhausts its retries.
        """
        state = SharedRunState(files=dict(files or {}))
        initial: NetworkState = {
            "messages": build_initial_messages(task, prior_messages or [], state.files),
            "files": dict(state.files),
            "summary": state.summary,
            "turn": 0,
            "round": 0,
            "last_response": {},
            "status": "running",
        }

        try:
            final = await self._compiled_graph.ainvoke(
                initial, config={"recursion_limit": self.recursion_limit}
            )
        except GraphRecursionError:
            logger.error("agent_network_recursion_limit", session_id=self.session_id)
            return NetworkResult(NetworkStatus.FAILED_MAX_TURNS, state, self.max_turns)

        state.files = dict(final["files"])
        state.summary = final["summary"]
        status = (
            NetworkStatus.DONE if final["status"] == "done" else NetworkStatus.FAILED_MAX_TURNS
        )
        logger.info(
            "agent_network_complete",
            session_id=self.session_id,
            status=status.value,
            turns=final["turn"],
            files=len(state.files),
        )
        return NetworkResult(status, state, final["turn"])
