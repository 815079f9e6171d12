"""Models module for Pydantic schemas and persistence.

This module exposes the message, record and API models.
"""

from models.schemas import (
    Fragment,
    HealthResponse,
    Message,
    MessageRole,
    OtherMessage,
    Plan,
    ProjectMessage,
    RecordKind,
    RunResponse,
    RunStatus,
    TerminalRecord,
    TextChunk,
    TextMessage,
    TriggerRequest,
    TriggerResponse,
    UsageResponse,
    WorkflowRun,
)

__all__ = [
    "Fragment",
    "HealthResponse",
    "Message",
    "MessageRole",
    "OtherMessage",
    "Plan",
    "ProjectMessage",
    "RecordKind",
    "RunResponse",
    "RunStatus",
    "TerminalRecord",
    "TextChunk",
    "TextMessage",
    "TriggerRequest",
    "TriggerResponse",
    "UsageResponse",
    "WorkflowRun",
]
