"""Pydantic schemas for conversation messages, terminal records, and the API.

All models use Pydantic v2. Conversation messages are a tagged variant
discriminated on ``kind`` so callers match on the concrete class instead of
probing the shape of ``content``.
"""

from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field


class MessageRole(StrEnum):
    """Speaker of a conversation message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class RecordKind(StrEnum):
    """Kind of a persisted project message."""

    RESULT = "RESULT"
    ERROR = "ERROR"


class RunStatus(StrEnum):
    """Workflow run lifecycle status."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Plan(StrEnum):
    """Billing plan that decides the credit allowance."""

    FREE = "free"
    PRO = "pro"


# ---------------------------------------------------------------------------
# Conversation messages
# ---------------------------------------------------------------------------


class TextChunk(BaseModel):
    """One piece of a chunked text message."""

    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class TextMessage(BaseModel):
    """A message whose payload is text, either whole or chunked."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["text"] = "text"
    role: MessageRole
    content: str | list[TextChunk]

    def text(self) -> str:
        """Join the content into a single string."""
        if isinstance(self.content, str):
            return self.content
        return "".join(chunk.text for chunk in self.content)


class OtherMessage(BaseModel):
    """Any non-text message (tool call, tool result, media, ...)."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["other"] = "other"
    role: MessageRole
    content: str | list[TextChunk] = ""


Message = Annotated[TextMessage | OtherMessage, Field(discriminator="kind")]


class WorkflowRun(BaseModel):
    """Immutable input of one workflow run."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    project_id: str = Field(min_length=1)
    trigger_text: str = Field(min_length=1)
    prior_messages: list[Message] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Terminal records
# ---------------------------------------------------------------------------


class Fragment(BaseModel):
    """Artifact bundle attached to a successful terminal record."""

    sandbox_url: str
    title: str
    files: dict[str, str]


class TerminalRecord(BaseModel):
    """The single assistant record that closes a workflow run."""

    model_config = ConfigDict(frozen=True)

    project_id: str
    role: Literal["ASSISTANT"] = "ASSISTANT"
    content: str
    type: RecordKind
    fragment: Fragment | None = None


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------


class TriggerRequest(BaseModel):
    """Request body that starts a code-agent run for a project."""

    value: str = Field(
        min_length=1,
        max_length=10000,
        description="Natural-language instruction for the coding agent",
        examples=["Build a todo app"],
    )


class TriggerResponse(BaseModel):
    """Response for an accepted run."""

    run_id: str = Field(examples=["run_3f9a1c2b4d5e"])
    project_id: str
    status: RunStatus
    remaining_credits: int


class ProjectMessage(BaseModel):
    """One stored project message, as listed by the API."""

    id: int
    project_id: str
    role: str
    type: str
    content: str
    created_at: float
    fragment: Fragment | None = None


class RunResponse(BaseModel):
    """Status of a workflow run."""

    run_id: str
    project_id: str
    status: RunStatus
    created_at: float
    updated_at: float
    completed_steps: list[str] = Field(default_factory=list)
    record: ProjectMessage | None = None


class UsageResponse(BaseModel):
    """Remaining credits for a user."""

    user_id: str
    plan: Plan
    remaining_points: int
    consumed_points: int
    reset_at: float | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "degraded"]
    version: str
    timestamp: float
    docker_available: bool
    active_runs: int
