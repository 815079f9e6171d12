"""Coding agent tools, prompts, LLM integration, and the agent network.

This module exports the key components needed for agent execution:
- Tool definitions and executor for sandbox operations
- System prompts for the coding agent and the finalizers
- LLM client utilities and message parsing helpers
- The agent network that drives the coding agent turn loop
"""

from agents.finalizers import OutputFinalizers
from agents.network import (
    AgentNetwork,
    NetworkResult,
    NetworkStatus,
    SharedRunState,
    route,
)
from agents.prompts import CODE_AGENT_PROMPT, FRAGMENT_TITLE_PROMPT, RESPONSE_PROMPT
from agents.tools import (
    TOOL_DEFINITIONS,
    Diagnostic,
    Ok,
    ToolArgumentError,
    ToolCall,
    ToolExecutor,
    ToolResult,
    get_tool_definitions_for_llm,
)
from agents.utils import (
    OUTPUT_PLACEHOLDER,
    LLMClient,
    LLMResponse,
    MockLLMClient,
    ToolCallData,
    last_assistant_text,
    parse_agent_output,
    parse_task_summary,
)

__all__ = [
    # Tools
    "TOOL_DEFINITIONS",
    "Diagnostic",
    "Ok",
    "ToolArgumentError",
    "ToolCall",
    "ToolExecutor",
    "ToolResult",
    "get_tool_definitions_for_llm",
    # Prompts
    "CODE_AGENT_PROMPT",
    "FRAGMENT_TITLE_PROMPT",
    "RESPONSE_PROMPT",
    # Utils
    "OUTPUT_PLACEHOLDER",
    "LLMClient",
    "LLMResponse",
    "MockLLMClient",
    "ToolCallData",
    "last_assistant_text",
    "parse_agent_output",
    "parse_task_summary",
    # Network
    "AgentNetwork",
    "NetworkResult",
    "NetworkStatus",
    "SharedRunState",
    "OutputFinalizers",
    "route",
]
