"""Tests for workflow/runner.py and workflow/checkpoints.py.

Covers step memoization, retry/backoff behaviour, non-retriable failures,
run status transitions, failure hooks, and resuming interrupted runs.
"""

import asyncio
from typing import Any
from unittest.mock import AsyncMock

import pytest

from models.schemas import RunStatus, WorkflowRun
from tests.conftest import make_step
from workflow.checkpoints import CheckpointStore
from workflow.runner import (
    NonRetriableError,
    StepContext,
    StepFailedError,
    WorkflowRunner,
)


def _run(run_id: str = "run_1") -> WorkflowRun:
    return WorkflowRun(run_id=run_id, project_id="p1", trigger_text="build a todo app")


# =========================================================================
# Checkpoint store
# =========================================================================


class TestCheckpointStore:
    async def test_load_missing_step(self, checkpoint_store: CheckpointStore) -> None:
        found, value = await checkpoint_store.load("run_1", "missing")
        assert found is False
        assert value is None

    async def test_save_then_load(self, checkpoint_store: CheckpointStore) -> None:
        await checkpoint_store.save("run_1", "step-a", {"files": {"a": "1"}})
        found, value = await checkpoint_store.load("run_1", "step-a")
        assert found is True
        assert value == {"files": {"a": "1"}}

    async def test_none_is_a_valid_checkpoint(self, checkpoint_store: CheckpointStore) -> None:
        await checkpoint_store.save("run_1", "step-a", None)
        found, value = await checkpoint_store.load("run_1", "step-a")
        assert found is True
        assert value is None

    async def test_first_save_wins(self, checkpoint_store: CheckpointStore) -> None:
        first = await checkpoint_store.save("run_1", "step-a", "first")
        second = await checkpoint_store.save("run_1", "step-a", "second")
        assert first == "first"
        assert second == "first"

    async def test_checkpoints_are_scoped_by_run(self, checkpoint_store: CheckpointStore) -> None:
        await checkpoint_store.save("run_1", "step-a", 1)
        found, _ = await checkpoint_store.load("run_2", "step-a")
        assert found is False

    async def test_steps_for_run_in_order(self, checkpoint_store: CheckpointStore) -> None:
        await checkpoint_store.save("run_1", "b", 1)
        await checkpoint_store.save("run_1", "a", 2)
        assert await checkpoint_store.steps_for_run("run_1") == ["b", "a"]

    async def test_run_lifecycle(self, checkpoint_store: CheckpointStore) -> None:
        await checkpoint_store.create_run("run_1", "code-agent", "p1", {"run_id": "run_1"})
        run = await checkpoint_store.get_run("run_1")
        assert run is not None
        assert run["status"] == RunStatus.RUNNING.value
        assert run["payload"] == {"run_id": "run_1"}

        await checkpoint_store.set_run_status("run_1", RunStatus.FAILED, error="boom")
        run = await checkpoint_store.get_run("run_1")
        assert run["status"] == RunStatus.FAILED.value
        assert run["error"] == "boom"
        assert await checkpoint_store.incomplete_runs() == []


# =========================================================================
# StepContext
# =========================================================================


class TestStepContext:
    async def test_step_runs_once_per_run(self, step: StepContext) -> None:
        side_effect = AsyncMock(return_value="value")

        first = await step.run("write", side_effect)
        second = await step.run("write", side_effect)

        assert first == second == "value"
        side_effect.assert_awaited_once()
        assert step.executed == ["write"]

    async def test_memoized_across_contexts(self, checkpoint_store: CheckpointStore) -> None:
        side_effect = AsyncMock(return_value={"n": 1})
        await make_step(checkpoint_store).run("write", side_effect)

        replay = make_step(checkpoint_store)
        value = await replay.run("write", side_effect)

        assert value == {"n": 1}
        side_effect.assert_awaited_once()
        assert replay.executed == []

    async def test_retries_then_succeeds(self, step: StepContext) -> None:
        fn = AsyncMock(side_effect=[ConnectionError("down"), ConnectionError("down"), "ok"])
        assert await step.run("flaky", fn) == "ok"
        assert fn.await_count == 3

    async def test_exhausted_retries_raise(self, step: StepContext) -> None:
        fn = AsyncMock(side_effect=ConnectionError("down"))
        with pytest.raises(StepFailedError) as exc_info:
            await step.run("flaky", fn)
        assert fn.await_count == 3
        assert exc_info.value.step == "flaky"
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.__cause__, ConnectionError)

    async def test_failed_step_is_not_checkpointed(
        self, step: StepContext, checkpoint_store: CheckpointStore
    ) -> None:
        with pytest.raises(StepFailedError):
            await step.run("flaky", AsyncMock(side_effect=RuntimeError("x")))
        found, _ = await checkpoint_store.load("run_test", "flaky")
        assert found is False

    async def test_non_retriable_stops_immediately(self, step: StepContext) -> None:
        fn = AsyncMock(side_effect=NonRetriableError("bad request"))
        with pytest.raises(StepFailedError) as exc_info:
            await step.run("llm", fn)
        assert fn.await_count == 1
        assert exc_info.value.attempts == 1

    async def test_backoff_delays(self, checkpoint_store: CheckpointStore) -> None:
        step = StepContext(
            "run_1", checkpoint_store, max_attempts=4, base_delay=1.0, max_delay=3.0
        )
        delays: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            delays.append(seconds)

        step._async_sleep = fake_sleep  # type: ignore[method-assign]
        with pytest.raises(StepFailedError):
            await step.run("flaky", AsyncMock(side_effect=RuntimeError("x")))

        assert delays == [1.0, 2.0, 3.0]


# =========================================================================
# WorkflowRunner
# =========================================================================


class TestWorkflowRunner:
    async def test_successful_run_completes(self, checkpoint_store: CheckpointStore) -> None:
        async def function(run: WorkflowRun, step: StepContext) -> dict[str, Any]:
            value = await step.run("only-step", AsyncMock(return_value=3))
            return {"value": value}

        runner = WorkflowRunner(checkpoint_store, "fn", function, base_delay=0, max_delay=0)
        task = await runner.start(_run())
        output = await task

        assert output == {"value": 3}
        stored = await checkpoint_store.get_run("run_1")
        assert stored["status"] == RunStatus.COMPLETED.value
        assert stored["function_id"] == "fn"

    async def test_failed_run_calls_hook_and_marks_failed(
        self, checkpoint_store: CheckpointStore
    ) -> None:
        async def function(run: WorkflowRun, step: StepContext) -> dict[str, Any]:
            await step.run("broken", AsyncMock(side_effect=RuntimeError("down")))
            return {}

        on_failure = AsyncMock()
        runner = WorkflowRunner(
            checkpoint_store, "fn", function, on_failure=on_failure,
            max_attempts=2, base_delay=0, max_delay=0,
        )
        output = await (await runner.start(_run()))

        assert output is None
        on_failure.assert_awaited_once()
        run_arg, _step_arg, error_arg = on_failure.await_args.args
        assert run_arg.run_id == "run_1"
        assert isinstance(error_arg, StepFailedError)
        stored = await checkpoint_store.get_run("run_1")
        assert stored["status"] == RunStatus.FAILED.value

    async def test_failure_hook_errors_are_contained(
        self, checkpoint_store: CheckpointStore
    ) -> None:
        async def function(run: WorkflowRun, step: StepContext) -> dict[str, Any]:
            raise ValueError("boom")

        runner = WorkflowRunner(
            checkpoint_store, "fn", function,
            on_failure=AsyncMock(side_effect=RuntimeError("hook")),
        )
        assert await runner.execute(_run()) is None

    async def test_resume_replays_completed_steps(
        self, checkpoint_store: CheckpointStore
    ) -> None:
        calls: list[str] = []

        async def function(run: WorkflowRun, step: StepContext) -> dict[str, Any]:
            async def first() -> str:
                calls.append("first")
                return "a"

            async def second() -> str:
                calls.append("second")
                return "b"

            return {"a": await step.run("first", first), "b": await step.run("second", second)}

        # Simulate a crash after the first step was checkpointed.
        await checkpoint_store.create_run(
            "run_1", "fn", "p1", _run().model_dump(mode="json")
        )
        await checkpoint_store.save("run_1", "first", "a")

        runner = WorkflowRunner(checkpoint_store, "fn", function)
        resumed = await runner.resume_incomplete()
        assert resumed == ["run_1"]
        await asyncio.gather(*runner._tasks.values())

        assert calls == ["second"]
        stored = await checkpoint_store.get_run("run_1")
        assert stored["status"] == RunStatus.COMPLETED.value

    async def test_resume_ignores_other_functions(
        self, checkpoint_store: CheckpointStore
    ) -> None:
        await checkpoint_store.create_run(
            "run_1", "other", "p1", _run().model_dump(mode="json")
        )
        runner = WorkflowRunner(checkpoint_store, "fn", AsyncMock())
        assert await runner.resume_incomplete() == []

    async def test_concurrent_runs_are_independent(
        self, checkpoint_store: CheckpointStore
    ) -> None:
        async def function(run: WorkflowRun, step: StepContext) -> dict[str, Any]:
            async def body() -> str:
                await asyncio.sleep(0)
                return run.run_id

            return {"owner": await step.run("same-name", body)}

        runner = WorkflowRunner(checkpoint_store, "fn", function)
        tasks = [await runner.start(_run(f"run_{i}")) for i in range(3)]
        outputs = await asyncio.gather(*tasks)

        assert [o["owner"] for o in outputs] == ["run_0", "run_1", "run_2"]
        assert runner.active_runs == 0
