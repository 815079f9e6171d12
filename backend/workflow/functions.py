"""The code-agent workflow function and its failure handler.

Steps, in order:

    get-sandbox-id -> get-previous-files -> restore-previous-files
    -> <agent network steps>
    -> fragment-title-generator -> response-generator (only when DONE)
    -> get-sandbox-url -> save-result
"""

from typing import Any

import structlog

from agents.finalizers import OutputFinalizers
from agents.network import AgentNetwork, NetworkStatus
from agents.utils import LLMClient
from config import settings
from models.database import ProjectStore
from models.schemas import WorkflowRun
from sandbox.docker_sandbox import SandboxManager
from workflow.persister import build_terminal_record, error_record, persist_record
from workflow.runner import StepContext

logger = structlog.get_logger()

FUNCTION_ID = "code-agent"


class CodeAgentWorkflow:
    """Callable workflow body for the WorkflowRunner.

    Usage:
        >>> workflow = CodeAgentWorkflow(sandbox_manager, project_store)
        >>> runner = WorkflowRunner(store, FUNCTION_ID, workflow, on_failure=workflow.on_failure)
    """

    def __init__(
        self,
        sandbox_manager: SandboxManager,
        project_store: ProjectStore,
        llm_client: LLMClient | None = None,
        finalizer_client: LLMClient | None = None,
        max_turns: int | None = None,
    ) -> None:
        """Initialize the workflow.

        Args:
            sandbox_manager: Creates and reaches the run's sandbox.
            project_store: Source of previous files and sink of the terminal record.
            llm_client: Client for the coding agent (defaults to LLMClient()).
            finalizer_client: Client for the title and response generators
                (defaults to the coding agent's client).
            max_turns: Turn budget of the agent network (defaults to config).
        """
        self.sandbox_manager = sandbox_manager
        self.project_store = project_store
        self.llm_client = llm_client or LLMClient()
        self.finalizers = OutputFinalizers(finalizer_client or self.llm_client)
        self.max_turns = max_turns

    async def __call__(self, run: WorkflowRun, step: StepContext) -> dict[str, Any]:
        async def create_sandbox() -> str:
            session = await self.sandbox_manager.create(settings.sandbox_template)
            return session.session_id

        session_id = await step.run("get-sandbox-id", create_sandbox)

        async def previous_files() -> dict[str, str]:
            return await self.project_store.latest_fragment_files(run.project_id)

        files = await step.run("get-previous-files", previous_files)

        async def restore_files() -> list[str]:
            if not files:
                return []
            session = await self.sandbox_manager.connect(session_id)
            for path, content in files.items():
                await self.sandbox_manager.write_file(session, path, content)
            logger.info(
                "previous_files_restored",
                run_id=run.run_id,
                session_id=session_id,
                files=len(files),
            )
            return sorted(files)

        await step.run("restore-previous-files", restore_files)

        network = AgentNetwork(
            self.sandbox_manager,
            self.llm_client,
            step,
            session_id,
            max_turns=self.max_turns,
        )
        result = await network.run(run.trigger_text, run.prior_messages, files)

        title = response = ""
        if result.status == NetworkStatus.DONE:
            title = await self.finalizers.generate_title(result.state.summary, step)
            response = await self.finalizers.generate_response(result.state.summary, step)

        async def sandbox_url() -> str:
            session = await self.sandbox_manager.connect(session_id)
            return await self.sandbox_manager.get_address(session, settings.sandbox_app_port)

        url = await step.run("get-sandbox-url", sandbox_url)

        record = build_terminal_record(
            project_id=run.project_id,
            summary=result.state.summary,
            files=result.state.files,
            sandbox_url=url,
            title=title,
            response=response,
        )
        message_id = await persist_record(self.project_store, step, record)

        return {
            "message_id": message_id,
            "type": record.type.value,
            "network_status": result.status.value,
            "turns": result.turns,
            "sandbox_id": session_id,
            "url": url,
        }

    async def on_failure(self, run: WorkflowRun, step: StepContext, error: Exception) -> None:
        """Close a failed run with the generic ERROR record."""
        logger.warning(
            "code_agent_run_failed_writing_error",
            run_id=run.run_id,
            error_type=type(error).__name__,
        )
        await persist_record(self.project_store, step, error_record(run.project_id))
