"""Terminal record decision and the checkpointed save step."""

import structlog

from models.database import ProjectStore
from models.schemas import Fragment, RecordKind, TerminalRecord
from workflow.runner import StepContext

logger = structlog.get_logger()

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."
SAVE_RESULT_STEP = "save-result"


def build_terminal_record(
    project_id: str,
    summary: str,
    files: dict[str, str],
    sandbox_url: str,
    title: str,
    response: str,
) -> TerminalRecord:
    """Decide between a RESULT and an ERROR record.

    A RESULT needs both a non-empty summary and at least one file; anything
    else yields an ERROR with the generic message and no fragment.
    """
    if not summary or not files:
        return error_record(project_id)
    return TerminalRecord(
        project_id=project_id,
        content=response,
        type=RecordKind.RESULT,
        fragment=Fragment(sandbox_url=sandbox_url, title=title, files=dict(files)),
    )


def error_record(project_id: str) -> TerminalRecord:
    return TerminalRecord(
        project_id=project_id,
        content=GENERIC_ERROR_MESSAGE,
        type=RecordKind.ERROR,
    )


async def persist_record(
    store: ProjectStore,
    step: StepContext,
    record: TerminalRecord,
    step_name: str = SAVE_RESULT_STEP,
) -> int:
    """Write the run's terminal record inside a checkpointed step.

    Returns:
        Id of the stored message. The store ignores repeated writes for the
        same run, so a retry after a crash returns the first record's id.
    """

    async def save() -> int:
        return await store.save_terminal_record(step.run_id, record)

    message_id = await step.run(step_name, save)
    logger.info(
        "save_result_complete",
        run_id=step.run_id,
        project_id=record.project_id,
        record_type=record.type.value,
        message_id=message_id,
    )
    return message_id
