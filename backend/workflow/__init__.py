"""Durable workflow execution: step checkpoints and the run scheduler."""

from workflow.checkpoints import CheckpointStore
from workflow.runner import (
    NonRetriableError,
    StepContext,
    StepFailedError,
    WorkflowRunner,
)

__all__ = [
    "CheckpointStore",
    "NonRetriableError",
    "StepContext",
    "StepFailedError",
    "WorkflowRunner",
]
