"""Step-checkpointed workflow runner.

A workflow function receives the run input and a StepContext. Every unit of
work with side effects goes through ``StepContext.run(name, fn)``:

- if a checkpoint exists for ``(run_id, name)`` the stored value is returned
  and ``fn`` is not called;
- otherwise ``fn`` is attempted up to ``max_attempts`` times with exponential
  backoff, and its value is committed before being returned.

Re-executing a run after a crash therefore replays completed steps from the
store and resumes at the first incomplete one. Step values must be
JSON-serialisable, and step names must be deterministic for a given run.
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from config import settings
from models.schemas import RunStatus, WorkflowRun
from workflow.checkpoints import CheckpointStore

logger = structlog.get_logger()

T = TypeVar("T")


class NonRetriableError(Exception):
    """Raised inside a step to fail it without further attempts."""


class StepFailedError(Exception):
    """Raised when a step exhausts its attempts or fails non-retriably.

    Attributes:
        step: Name of the failed step.
        attempts: Number of attempts made.
    """

    def __init__(self, step: str, cause: BaseException | None, attempts: int) -> None:
        super().__init__(f"Step '{step}' failed after {attempts} attempt(s): {cause}")
        self.step = step
        self.attempts = attempts
        self.__cause__ = cause


class StepContext:
    """Memoizing, retrying step executor bound to one run.

    Attributes:
        run_id: The run whose checkpoints this context reads and writes.
        max_attempts: Attempts per step before StepFailedError.
        base_delay: Backoff delay after the first failed attempt, in seconds.
        max_delay: Upper bound for the backoff delay.
    """

    def __init__(
        self,
        run_id: str,
        store: CheckpointStore,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
    ) -> None:
        self.run_id = run_id
        self.store = store
        self.max_attempts = max_attempts or settings.step_max_attempts
        self.base_delay = (
            base_delay if base_delay is not None else settings.step_retry_base_delay
        )
        self.max_delay = (
            max_delay if max_delay is not None else settings.step_retry_max_delay
        )
        self.executed: list[str] = []

    async def run(self, name: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run a named step at most once for this run.

        Args:
            name: Step name, unique within the run.
            fn: Zero-argument coroutine function performing the work.

        Returns:
            The step's value, from the checkpoint store when memoized.

        Raises:
            StepFailedError: If every attempt failed or a NonRetriableError
                was raised.
        """
        found, stored = await self.store.load(self.run_id, name)
        if found:
            logger.debug("step_memoized", run_id=self.run_id, step=name)
            return stored

        last_exception: Exception | None = None
        for attempt in range(self.max_attempts):
            try:
                value = await fn()
            except NonRetriableError as e:
                logger.error(
                    "step_failed_no_retry",
                    run_id=self.run_id,
                    step=name,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise StepFailedError(name, e, attempt + 1) from e
            except Exception as e:
                last_exception = e
                if attempt < self.max_attempts - 1:
                    delay = min(self.base_delay * (2 ** attempt), self.max_delay)
                    logger.warning(
                        "step_retry",
                        run_id=self.run_id,
                        step=name,
                        attempt=attempt + 1,
                        max_attempts=self.max_attempts,
                        error_type=type(e).__name__,
                        error=str(e),
                        retry_delay=delay,
                    )
                    await self._async_sleep(delay)
                continue

            durable = await self.store.save(self.run_id, name, value)
            self.executed.append(name)
            logger.debug("step_complete", run_id=self.run_id, step=name, attempt=attempt + 1)
            return durable

        logger.error(
            "step_failed_all_retries",
            run_id=self.run_id,
            step=name,
            attempts=self.max_attempts,
            error=str(last_exception),
        )
        raise StepFailedError(name, last_exception, self.max_attempts)

    async def _async_sleep(self, seconds: float) -> None:
        """Async sleep for retry delay.

        Extracted to a method for easier testing/mocking.
        """
        await asyncio.sleep(seconds)


WorkflowFunction = Callable[[WorkflowRun, StepContext], Awaitable[dict[str, Any]]]
FailureHandler = Callable[[WorkflowRun, StepContext, Exception], Awaitable[None]]


class WorkflowRunner:
    """Schedules workflow runs and drives them to a terminal status.

    Each run executes as its own asyncio task; runs never share state.

    Usage:
        >>> runner = WorkflowRunner(store, "code-agent", code_agent_fn)
        >>> await runner.start(run)
    """

    def __init__(
        self,
        store: CheckpointStore,
        function_id: str,
        function: WorkflowFunction,
        on_failure: FailureHandler | None = None,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
    ) -> None:
        """Initialize the runner.

        Args:
            store: Checkpoint and run registry.
            function_id: Identifier recorded with every run.
            function: The workflow body.
            on_failure: Called once when a run fails, before it is marked
                failed. Exceptions from the handler are logged.
            max_attempts: Attempts per step (defaults to config).
            base_delay: Step backoff base delay (defaults to config).
            max_delay: Step backoff cap (defaults to config).
        """
        self.store = store
        self.function_id = function_id
        self.function = function
        self.on_failure = on_failure
        self._step_options = {
            "max_attempts": max_attempts,
            "base_delay": base_delay,
            "max_delay": max_delay,
        }
        self._tasks: dict[str, asyncio.Task[dict[str, Any] | None]] = {}

    @property
    def active_runs(self) -> int:
        return len(self._tasks)

    def step_context(self, run_id: str) -> StepContext:
        return StepContext(run_id, self.store, **self._step_options)

    async def start(self, run: WorkflowRun) -> asyncio.Task[dict[str, Any] | None]:
        """Register a run and schedule it in the background."""
        await self.store.create_run(
            run.run_id,
            self.function_id,
            run.project_id,
            run.model_dump(mode="json"),
        )
        logger.info(
            "workflow_run_started",
            run_id=run.run_id,
            project_id=run.project_id,
            function_id=self.function_id,
        )
        return self._schedule(run)

    def _schedule(self, run: WorkflowRun) -> asyncio.Task[dict[str, Any] | None]:
        task = asyncio.create_task(self.execute(run))
        self._tasks[run.run_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(run.run_id, None))
        return task

    async def execute(self, run: WorkflowRun) -> dict[str, Any] | None:
        """Drive one run to completion or failure.

        Returns:
            The workflow output, or None if the run failed.
        """
        structlog.contextvars.bind_contextvars(
            run_id=run.run_id, project_id=run.project_id
        )
        step = self.step_context(run.run_id)
        try:
            output = await self.function(run, step)
        except Exception as e:
            logger.error(
                "workflow_run_failed",
                run_id=run.run_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            if self.on_failure is not None:
                try:
                    await self.on_failure(run, step, e)
                except Exception as hook_error:
                    logger.error(
                        "workflow_failure_handler_failed",
                        run_id=run.run_id,
                        error=str(hook_error),
                    )
            await self.store.set_run_status(run.run_id, RunStatus.FAILED, error=str(e))
            return None

        await self.store.set_run_status(run.run_id, RunStatus.COMPLETED)
        logger.info(
            "workflow_run_completed",
            run_id=run.run_id,
            steps_executed=len(step.executed),
        )
        return output

    async def resume_incomplete(self) -> list[str]:
        """Reschedule runs left ``running`` by a previous process.

        Returns:
            Ids of the resumed runs.
        """
        resumed: list[str] = []
        for record in await self.store.incomplete_runs():
            if record["function_id"] != self.function_id:
                continue
            if record["run_id"] in self._tasks:
                continue
            run = WorkflowRun.model_validate(record["payload"])
            self._schedule(run)
            resumed.append(run.run_id)
        if resumed:
            logger.info("workflow_runs_resumed", count=len(resumed), run_ids=resumed)
        return resumed

    async def shutdown(self) -> None:
        """Cancel in-flight runs; they stay ``running`` and resume on restart."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._tasks.clear()
