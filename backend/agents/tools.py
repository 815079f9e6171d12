"""Tool definitions and sandbox executors for the coding agent.

Three tools are exposed to the model:

- ``terminal``: run a shell command in the sandbox
- ``createOrUpdateFiles``: write files and merge them into the run's file map
- ``readFiles``: read files back from the sandbox

Every tool body runs inside a checkpointed workflow step, so a crash after a
write never replays it. Tool failures do not raise: each executor returns an
explicit ``Ok`` or ``Diagnostic`` outcome and the diagnostic text is fed back
to the model. Only session failures (the sandbox cannot be reached) propagate,
so the step wrapper can retry them.
"""

import json
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from sandbox.docker_sandbox import SandboxManager
from workflow.runner import StepContext

logger = structlog.get_logger()

T = TypeVar("T")

TERMINAL = "terminal"
CREATE_OR_UPDATE_FILES = "createOrUpdateFiles"
READ_FILES = "readFiles"

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": TERMINAL,
        "description": "Use the terminal to run commands",
        "parameters": {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "Shell command to run inside the sandbox",
                },
            },
            "required": ["command"],
        },
    },
    {
        "name": CREATE_OR_UPDATE_FILES,
        "description": "Create or update files in the sandbox",
        "parameters": {
            "type": "object",
            "properties": {
                "files": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "path": {
                                "type": "string",
                                "description": "Relative file path, e.g. 'app/page.tsx'",
                            },
                            "content": {
                                "type": "string",
                                "description": "Complete file content",
                            },
                        },
                        "required": ["path", "content"],
                    },
                },
            },
            "required": ["files"],
        },
    },
    {
        "name": READ_FILES,
        "description": "Read files from the sandbox",
        "parameters": {
            "type": "object",
            "properties": {
                "files": {
                    "type": "array",
                    "items": {"type": "string"},
                },
            },
            "required": ["files"],
        },
    },
]


class ToolArgumentError(ValueError):
    """Raised when a tool call has invalid or unsupported arguments."""


def get_tool_definitions_for_llm() -> list[dict[str, Any]]:
    """Get tool definitions formatted for LLM function calling."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool["description"],
                "parameters": tool["parameters"],
            },
        }
        for tool in TOOL_DEFINITIONS
    ]


# ---------------------------------------------------------------------------
# Argument schemas
# ---------------------------------------------------------------------------


class TerminalArgs(BaseModel):
    model_config = ConfigDict(strict=True)

    command: str

    @field_validator("command")
    @classmethod
    def command_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("command must not be empty")
        return v


class FileEntry(BaseModel):
    model_config = ConfigDict(strict=True)

    path: str
    content: str


class CreateOrUpdateFilesArgs(BaseModel):
    model_config = ConfigDict(strict=True)

    files: list[FileEntry]


class ReadFilesArgs(BaseModel):
    model_config = ConfigDict(strict=True)

    files: list[str]


_TOOL_ARG_MODELS: dict[str, type[BaseModel]] = {
    TERMINAL: TerminalArgs,
    CREATE_OR_UPDATE_FILES: CreateOrUpdateFilesArgs,
    READ_FILES: ReadFilesArgs,
}


def validate_tool_args(tool_name: str, args: Any) -> BaseModel:
    """Validate raw tool arguments against the tool's schema.

    Raises:
        ToolArgumentError: For unknown tools or arguments that do not match.
    """
    model = _TOOL_ARG_MODELS.get(tool_name)
    if model is None:
        raise ToolArgumentError(f"Unknown tool: {tool_name}")
    if not isinstance(args, dict):
        raise ToolArgumentError(
            f"Invalid arguments for {tool_name}: expected an object"
        )
    try:
        return model.model_validate(args)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
            for err in e.errors()
        )
        raise ToolArgumentError(f"Invalid arguments for {tool_name}: {problems}") from e


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful tool outcome."""

    value: T


@dataclass(frozen=True)
class Diagnostic:
    """Failed tool outcome, phrased for the model to read."""

    text: str


ToolOutcome = Ok[T] | Diagnostic


def _outcome_to_checkpoint(outcome: Ok[Any] | Diagnostic) -> dict[str, Any]:
    if isinstance(outcome, Ok):
        return {"ok": True, "value": outcome.value}
    return {"ok": False, "error": outcome.text}


def _outcome_from_checkpoint(data: dict[str, Any]) -> Ok[Any] | Diagnostic:
    if data.get("ok"):
        return Ok(data["value"])
    return Diagnostic(data["error"])


@dataclass
class ToolCall:
    """A tool call requested by the model.

    Attributes:
        id: Unique identifier for this tool call (from LLM)
        name: Name of the tool to execute
        args: Raw arguments to validate and pass to the tool
    """

    id: str
    name: str
    args: dict[str, Any]


@dataclass
class ToolResult:
    """Result of executing a tool call, ready to feed back to the model.

    Attributes:
        tool_call_id: ID of the tool call this result corresponds to
        content: Text the model sees
        success: Whether the tool execution succeeded
        files: Merged file map after a successful createOrUpdateFiles
    """

    tool_call_id: str
    content: str
    success: bool
    files: dict[str, str] | None = None


class ToolExecutor:
    """Executes the coding agent's tool calls against one sandbox session.

    Attributes:
        sandbox_manager: Manager used to reach the session.
        step: Step context of the current run.
        session_id: Sandbox session owned by the run.
    """

    def __init__(
        self,
        sandbox_manager: SandboxManager,
        step: StepContext,
        session_id: str,
    ) -> None:
        self.sandbox_manager = sandbox_manager
        self.step = step
        self.session_id = session_id

    async def execute(
        self,
        tool_call: ToolCall,
        files: dict[str, str],
        step_name: str,
    ) -> ToolResult:
        """Validate and execute a tool call inside a checkpointed step.

        Args:
            tool_call: The call requested by the model.
            files: The run's current file map (not mutated).
            step_name: Checkpoint name for this call.

        Returns:
            ToolResult for the model. Invalid arguments yield a failed result
            without touching the sandbox.

        Raises:
            StepFailedError: If the sandbox session cannot be reached.
        """
        try:
            args = validate_tool_args(tool_call.name, tool_call.args)
        except ToolArgumentError as e:
            logger.warning(
                "tool_arguments_rejected",
                tool_name=tool_call.name,
                session_id=self.session_id,
                error=str(e),
            )
            return ToolResult(
                tool_call_id=tool_call.id,
                content=f"Error: {e}",
                success=False,
            )

        if isinstance(args, TerminalArgs):
            outcome = await self.run_command(args.command, step_name)
        elif isinstance(args, CreateOrUpdateFilesArgs):
            outcome = await self.write_or_update_files(args.files, files, step_name)
        elif isinstance(args, ReadFilesArgs):
            outcome = await self.read_files(args.files, step_name)
        else:
            raise ToolArgumentError(f"Unknown tool: {tool_call.name}")

        if isinstance(outcome, Diagnostic):
            return ToolResult(
                tool_call_id=tool_call.id,
                content=outcome.text,
                success=False,
            )
        if isinstance(args, CreateOrUpdateFilesArgs):
            written = ", ".join(entry.path for entry in args.files) or "(none)"
            return ToolResult(
                tool_call_id=tool_call.id,
                content=f"Updated files: {written}",
                success=True,
                files=outcome.value,
            )
        return ToolResult(
            tool_call_id=tool_call.id,
            content=outcome.value or "(no output)",
            success=True,
        )

    # -----------------------------------------------------------------
    # Executors
    # -----------------------------------------------------------------

    async def run_command(self, command: str, step_name: str) -> Ok[str] | Diagnostic:
        """Run a shell command in the session.

        Returns:
            ``Ok(stdout)``, or a Diagnostic containing "Command failed" with
            the error and the stdout/stderr captured before the failure.
        """

        async def body() -> dict[str, Any]:
            session = await self.sandbox_manager.connect(self.session_id)
            stdout: list[str] = []
            stderr: list[str] = []
            try:
                result = await self.sandbox_manager.run_command(
                    session,
                    command,
                    on_stdout=stdout.append,
                    on_stderr=stderr.append,
                )
                return _outcome_to_checkpoint(Ok(result.stdout))
            except Exception as e:
                logger.warning(
                    "terminal_command_failed",
                    session_id=self.session_id,
                    command=command[:80],
                    error=str(e),
                )
                reason = str(e) or type(e).__name__
                text = (
                    f"Command failed: {reason} \n"
                    f"stdout: {''.join(stdout)}\n"
                    f"stderr: {''.join(stderr)}"
                )
                return _outcome_to_checkpoint(Diagnostic(text))

        return _outcome_from_checkpoint(await self.step.run(step_name, body))

    async def write_or_update_files(
        self,
        entries: list[FileEntry],
        files: dict[str, str],
        step_name: str,
    ) -> Ok[dict[str, str]] | Diagnostic:
        """Write files to the session and merge them into a copy of ``files``.

        Later entries for the same path win. On any write failure the
        merged map is discarded, so the caller's map stays unchanged.
        """

        async def body() -> dict[str, Any]:
            session = await self.sandbox_manager.connect(self.session_id)
            merged = dict(files)
            try:
                for entry in entries:
                    await self.sandbox_manager.write_file(session, entry.path, entry.content)
                    merged[entry.path] = entry.content
            except Exception as e:
                logger.warning(
                    "file_write_failed",
                    session_id=self.session_id,
                    error=str(e),
                )
                return _outcome_to_checkpoint(Diagnostic(f"Error: {e}"))
            logger.debug(
                "files_written",
                session_id=self.session_id,
                paths=[entry.path for entry in entries],
            )
            return _outcome_to_checkpoint(Ok(merged))

        return _outcome_from_checkpoint(await self.step.run(step_name, body))

    async def read_files(self, paths: list[str], step_name: str) -> Ok[str] | Diagnostic:
        """Read files from the session in the given order.

        Returns:
            ``Ok`` with a JSON array of ``{"path", "content"}`` objects, or a
            Diagnostic starting with "Error: ".
        """

        async def body() -> dict[str, Any]:
            session = await self.sandbox_manager.connect(self.session_id)
            contents: list[dict[str, str]] = []
            try:
                for path in paths:
                    content = await self.sandbox_manager.read_file(session, path)
                    contents.append({"path": path, "content": content})
            except Exception as e:
                logger.warning(
                    "file_read_failed",
                    session_id=self.session_id,
                    error=str(e),
                )
                return _outcome_to_checkpoint(Diagnostic(f"Error: {e}"))
            return _outcome_to_checkpoint(Ok(json.dumps(contents)))

        return _outcome_from_checkpoint(await self.step.run(step_name, body))
