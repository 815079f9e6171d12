"""FastAPI application entry point for the Lovibe agent backend.

This module initializes the FastAPI application with all middleware,
routers, and startup/shutdown handling configured.

Usage:
    uv run uvicorn main:app --reload
"""

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import API_VERSION, Services, router, set_services
from config import configure_logging, settings
from models.database import ProjectStore
from sandbox import SandboxManager, SandboxSessionStore
from usage import UsageTracker
from workflow.checkpoints import CheckpointStore
from workflow.functions import FUNCTION_ID, CodeAgentWorkflow
from workflow.runner import WorkflowRunner

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)

SANDBOX_REAP_INTERVAL_SECONDS = 60.0


async def _sandbox_reaper_loop(
    sandbox_manager: SandboxManager,
    interval_seconds: float = SANDBOX_REAP_INTERVAL_SECONDS,
) -> None:
    """Periodically remove sandboxes whose idle timeout has elapsed."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await sandbox_manager.reap_expired()
        except Exception as e:
            logger.warning("sandbox_reap_loop_error", error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Initializes the stores, the sandbox manager and the workflow runner,
    resumes runs interrupted by a previous process, and starts the sandbox
    reaper.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    # Startup
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        code_agent_model=settings.code_agent_model,
    )

    project_store = ProjectStore(settings.database_path)
    checkpoint_store = CheckpointStore(settings.database_path)
    usage_tracker = UsageTracker(settings.database_path)
    session_store = SandboxSessionStore(settings.database_path)
    await project_store.init()
    await checkpoint_store.init()
    await usage_tracker.init()
    await session_store.init()

    sandbox_manager = SandboxManager(session_store=session_store)
    workflow = CodeAgentWorkflow(sandbox_manager, project_store)
    runner = WorkflowRunner(
        checkpoint_store,
        FUNCTION_ID,
        workflow,
        on_failure=workflow.on_failure,
    )

    services = Services(
        project_store=project_store,
        checkpoint_store=checkpoint_store,
        usage_tracker=usage_tracker,
        sandbox_manager=sandbox_manager,
        runner=runner,
    )
    set_services(services)
    app.state.services = services

    if settings.resume_incomplete_runs:
        await runner.resume_incomplete()

    reaper_task = asyncio.create_task(_sandbox_reaper_loop(sandbox_manager))
    app.state.reaper_task = reaper_task

    logger.info("application_started")

    yield

    # Shutdown
    logger.info("application_shutting_down")

    reaper_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await reaper_task

    # Interrupted runs stay "running" and their sandboxes are kept, so the
    # next process resumes them.
    await runner.shutdown()

    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Lovibe Agent Backend",
    description="Durable coding-agent workflows that turn instructions into "
    "previewable Next.js apps running in sandboxes.",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(router, tags=["projects"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint pointing at the API documentation."""
    return {
        "message": "Lovibe Agent Backend",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
