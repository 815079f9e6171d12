"""Shared test fixtures for backend tests.

Provides a mock SandboxManager, SQLite-backed stores in a temporary
directory, and LLM response factories so tests never touch real Docker
containers or LLM APIs.
"""

import sys
import time
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from sandbox.security import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(Path(__file__).resolve().parent.parent)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from agents.utils import LLMMetrics, LLMResponse, ToolCallData  # noqa: E402
from models.database import ProjectStore  # noqa: E402
from sandbox.docker_sandbox import CommandResult, SandboxSession  # noqa: E402
from usage import UsageTracker  # noqa: E402
from workflow.checkpoints import CheckpointStore  # noqa: E402
from workflow.runner import StepContext  # noqa: E402

SESSION_ID = "sess_test123"
SANDBOX_URL = "http://localhost:49153"

# ---------------------------------------------------------------------------
# Mock Sandbox Manager
# ---------------------------------------------------------------------------


def _make_mock_sandbox_manager() -> AsyncMock:
    """Create a mock SandboxManager.

    All methods are AsyncMock by default.  Callers can override
    return values per-test.
    """
    session = SandboxSession(session_id=SESSION_ID, expires_at=time.time() + 1800)
    mgr = AsyncMock()
    mgr.create = AsyncMock(return_value=session)
    mgr.connect = AsyncMock(return_value=session)
    mgr.get_address = AsyncMock(return_value=SANDBOX_URL)
    mgr.run_command = AsyncMock(return_value=CommandResult(stdout="OK", stderr=""))
    mgr.write_file = AsyncMock()
    mgr.read_file = AsyncMock(return_value="file content")
    mgr.reap_expired = AsyncMock(return_value=[])
    mgr.is_docker_available = MagicMock(return_value=True)
    return mgr


@pytest.fixture()
def mock_sandbox_manager() -> AsyncMock:
    """Provide a mock SandboxManager for each test."""
    return _make_mock_sandbox_manager()


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


@pytest.fixture()
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "test.db")


@pytest.fixture()
async def checkpoint_store(db_path: str) -> CheckpointStore:
    store = CheckpointStore(db_path)
    await store.init()
    return store


@pytest.fixture()
async def project_store(db_path: str) -> ProjectStore:
    store = ProjectStore(db_path)
    await store.init()
    return store


@pytest.fixture()
async def usage_tracker(db_path: str) -> UsageTracker:
    tracker = UsageTracker(db_path, free_points=2, pro_points=5, window_days=30, cost=1)
    await tracker.init()
    return tracker


def make_step(store: CheckpointStore, run_id: str = "run_test", max_attempts: int = 3) -> StepContext:
    """Create a StepContext that retries without sleeping."""
    return StepContext(run_id, store, max_attempts=max_attempts, base_delay=0, max_delay=0)


@pytest.fixture()
def step(checkpoint_store: CheckpointStore) -> StepContext:
    return make_step(checkpoint_store)


# ---------------------------------------------------------------------------
# Response Factories
# ---------------------------------------------------------------------------


def make_llm_response(
    content: str = "",
    tool_calls: list[ToolCallData] | None = None,
    finish_reason: str = "stop",
) -> LLMResponse:
    """Create an LLMResponse with sensible defaults."""
    return LLMResponse(
        content=content,
        tool_calls=tool_calls or [],
        finish_reason="tool_calls" if tool_calls else finish_reason,
        metrics=LLMMetrics(model="mock", input_tokens=10, output_tokens=20, latency_ms=100),
    )


def make_tool_call(name: str, args: dict[str, Any], call_id: str = "tc_1") -> ToolCallData:
    """Create a ToolCallData."""
    return ToolCallData(id=call_id, name=name, args=args)
