"""HTTP API routes for the Lovibe agent backend.

This module defines the endpoints that trigger code-agent runs for a project,
list the project's conversation, report run status and credit usage, and the
health check.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Annotated, Any

import structlog
from fastapi import APIRouter, Header, HTTPException, Path, Query, status

from config import settings
from models.schemas import (
    HealthResponse,
    Message,
    MessageRole,
    Plan,
    ProjectMessage,
    RunResponse,
    RunStatus,
    TextMessage,
    TriggerRequest,
    TriggerResponse,
    UsageResponse,
    WorkflowRun,
)
from usage import InsufficientCreditsError

if TYPE_CHECKING:
    from models.database import ProjectStore
    from sandbox.docker_sandbox import SandboxManager
    from usage import UsageTracker
    from workflow.checkpoints import CheckpointStore
    from workflow.runner import WorkflowRunner

logger = structlog.get_logger(__name__)

router = APIRouter()

API_VERSION = "0.1.0"


@dataclass
class Services:
    """Collaborators the routes depend on, wired at startup."""

    project_store: ProjectStore
    checkpoint_store: CheckpointStore
    usage_tracker: UsageTracker
    sandbox_manager: SandboxManager
    runner: WorkflowRunner


# Services dependency (set during application startup)
_services: Services | None = None


def set_services(services: Services) -> None:
    """Set the services used by all routes.

    This should be called during application startup.
    """
    global _services
    _services = services
    logger.info("api_services_configured")


def get_services() -> Services:
    """Get the configured services.

    Raises:
        RuntimeError: If the services have not been configured.
    """
    if _services is None:
        logger.error("api_services_not_configured")
        raise RuntimeError("Services not configured. Call set_services() during startup.")
    return _services


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _to_prior_message(stored: dict[str, Any]) -> Message:
    """Convert a stored project message into conversation context."""
    role = MessageRole.USER if stored["role"] == "USER" else MessageRole.ASSISTANT
    return TextMessage(role=role, content=stored["content"])


def _new_run_id() -> str:
    return f"run_{uuid.uuid4().hex[:12]}"


# -----------------------------------------------------------------------------
# Projects
# -----------------------------------------------------------------------------


@router.post(
    "/api/projects/{project_id}/messages",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Send an instruction",
    description="Consume a credit, store the instruction and start a code-agent run.",
)
async def create_message(
    project_id: Annotated[str, Path(description="The project ID", min_length=1)],
    request: TriggerRequest,
    user_id: Annotated[str, Header(alias="X-User-Id", min_length=1)],
    plan: Annotated[Plan, Header(alias="X-User-Plan")] = Plan.FREE,
) -> TriggerResponse:
    """Start a code-agent run for a project.

    Raises:
        HTTPException: 429 when the user is out of credits.
    """
    services = get_services()

    try:
        credits = await services.usage_tracker.consume(user_id, plan)
    except InsufficientCreditsError as e:
        logger.info("trigger_rate_limited", user_id=user_id, project_id=project_id)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="You have run out of credits",
            headers={"Retry-After": str(int(e.retry_after_seconds))},
        ) from e

    try:
        history = await services.project_store.list_messages(
            project_id, limit=settings.conversation_history_limit
        )
        await services.project_store.save_user_message(project_id, request.value)

        run = WorkflowRun(
            run_id=_new_run_id(),
            project_id=project_id,
            trigger_text=request.value,
            prior_messages=[_to_prior_message(m) for m in history],
        )
        await services.runner.start(run)
    except Exception:
        logger.exception("trigger_failed_refunding", user_id=user_id, project_id=project_id)
        await services.usage_tracker.refund(user_id)
        raise

    logger.info(
        "run_triggered",
        run_id=run.run_id,
        project_id=project_id,
        user_id=user_id,
        prior_messages=len(run.prior_messages),
    )

    return TriggerResponse(
        run_id=run.run_id,
        project_id=project_id,
        status=RunStatus.RUNNING,
        remaining_credits=credits.remaining_points,
    )


@router.get(
    "/api/projects/{project_id}/messages",
    response_model=list[ProjectMessage],
    summary="List project messages",
)
async def list_messages(
    project_id: Annotated[str, Path(description="The project ID")],
    limit: Annotated[int | None, Query(ge=1, le=500)] = None,
) -> list[ProjectMessage]:
    services = get_services()
    messages = await services.project_store.list_messages(project_id, limit=limit)
    return [ProjectMessage.model_validate(m) for m in messages]


# -----------------------------------------------------------------------------
# Runs
# -----------------------------------------------------------------------------


@router.get(
    "/api/runs/{run_id}",
    response_model=RunResponse,
    summary="Get run status",
    description="Status, completed steps and terminal record of a run.",
)
async def get_run(
    run_id: Annotated[str, Path(description="The run ID")],
) -> RunResponse:
    """Get the status of a workflow run.

    Raises:
        HTTPException: If the run is not found.
    """
    services = get_services()
    run = await services.checkpoint_store.get_run(run_id)
    if run is None:
        logger.warning("get_run_not_found", run_id=run_id)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run {run_id} not found",
        )

    steps = await services.checkpoint_store.steps_for_run(run_id)
    record = await services.project_store.get_terminal_record(run_id)

    return RunResponse(
        run_id=run_id,
        project_id=run["project_id"],
        status=RunStatus(run["status"]),
        created_at=run["created_at"],
        updated_at=run["updated_at"],
        completed_steps=steps,
        record=ProjectMessage.model_validate(record) if record else None,
    )


# -----------------------------------------------------------------------------
# Usage
# -----------------------------------------------------------------------------


@router.get(
    "/api/usage",
    response_model=UsageResponse,
    summary="Get credit usage",
)
async def get_usage(
    user_id: Annotated[str, Header(alias="X-User-Id", min_length=1)],
    plan: Annotated[Plan, Header(alias="X-User-Plan")] = Plan.FREE,
) -> UsageResponse:
    services = get_services()
    credits = await services.usage_tracker.get_status(user_id, plan)
    return UsageResponse(
        user_id=user_id,
        plan=plan,
        remaining_points=credits.remaining_points,
        consumed_points=credits.consumed_points,
        reset_at=credits.reset_at,
    )


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with Docker and workflow status.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint with infrastructure status.

    Returns:
        HealthResponse with status, Docker availability, and active runs.
    """
    docker_available = False
    active_runs = 0

    try:
        services = get_services()
        docker_available = services.sandbox_manager.is_docker_available()
        active_runs = services.runner.active_runs
    except RuntimeError:
        # Services not configured yet (e.g., during startup)
        pass
    except Exception as e:
        logger.warning("health_check_partial_failure", error=str(e))

    return HealthResponse(
        status="healthy" if docker_available else "degraded",
        version=API_VERSION,
        timestamp=time.time(),
        docker_available=docker_available,
        active_runs=active_runs,
    )
