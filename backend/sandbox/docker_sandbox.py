"""Docker-based sandbox session manager.

Each workflow run owns exactly one sandbox session: a Docker container started
from the configured template image. Sessions carry an idle timeout that is
pushed forward every time the session is (re)connected, so a long agent loop
keeps its container while an abandoned one is reaped.
"""

import asyncio
import posixpath
import tarfile
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from io import BytesIO

import docker
import structlog
from docker.errors import APIError, ImageNotFound, NotFound

from config import settings
from sandbox.security import resolve_workspace_path, sanitize_output, validate_command
from sandbox.sessions import SandboxSessionStore

logger = structlog.get_logger()

SANDBOX_LABEL = "lovibe.sandbox"
EXPIRES_AT_LABEL = "lovibe.expires_at"

OutputCallback = Callable[[str], None]


class SandboxError(Exception):
    """Base class for sandbox failures."""


class SandboxCreationError(SandboxError):
    """Raised when a sandbox container cannot be started."""


class SandboxConnectionError(SandboxError):
    """Raised when a session is missing, stopped, or past its timeout."""


class CommandExitError(SandboxError):
    """Raised when a sandbox command exits with a non-zero status.

    Attributes:
        exit_code: Process exit status.
        stdout: Everything the command wrote to stdout.
        stderr: Everything the command wrote to stderr.
    """

    def __init__(self, exit_code: int, stdout: str, stderr: str) -> None:
        super().__init__(f"exit status {exit_code}")
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


@dataclass
class SandboxSession:
    """Handle to a running sandbox session."""

    session_id: str
    expires_at: float


@dataclass
class CommandResult:
    """Result of a command that exited successfully."""

    stdout: str
    stderr: str
    exit_code: int = 0


# Container resource configuration
CONTAINER_CONFIG: dict[str, object] = {
    "mem_limit": "2048m",
    "cpu_period": 100000,
    "cpu_quota": 100000,  # one full core; next build is CPU bound
    "security_opt": ["no-new-privileges"],
}


def _container_name(session_id: str) -> str:
    return f"sandbox-{session_id}"


class SandboxManager:
    """Creates, reconnects, and operates on sandbox sessions.

    Attributes:
        template: Default Docker image for new sessions.
        workspace: Working directory inside every sandbox.
        timeout_seconds: Idle timeout applied on create and on every connect.
    """

    def __init__(
        self,
        template: str | None = None,
        workspace: str | None = None,
        timeout_minutes: int | None = None,
        client: docker.DockerClient | None = None,
        session_store: SandboxSessionStore | None = None,
    ) -> None:
        """Initialize the SandboxManager.

        Args:
            template: Default template image (defaults to config).
            workspace: Sandbox working directory (defaults to config).
            timeout_minutes: Session idle timeout (defaults to config).
            client: Docker client to use (created lazily from the environment
                when omitted).
            session_store: Durable record of each session's idle timeout.
                Without it, expiry resets live only in this process.
        """
        self.template = template or settings.sandbox_template
        self.workspace = workspace or settings.sandbox_workspace
        minutes = (
            timeout_minutes if timeout_minutes is not None
            else settings.sandbox_timeout_minutes
        )
        self.timeout_seconds = minutes * 60
        self._client = client
        self.session_store = session_store
        self._expires_at: dict[str, float] = {}

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialization of Docker client."""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    # -----------------------------------------------------------------
    # Session lifecycle
    # -----------------------------------------------------------------

    async def create(self, template_id: str | None = None) -> SandboxSession:
        """Start a new sandbox session from a template image.

        Args:
            template_id: Image to start (defaults to the manager's template).

        Returns:
            The new SandboxSession.

        Raises:
            SandboxCreationError: If the container cannot be started.
        """
        template = template_id or self.template
        session_id = uuid.uuid4().hex[:16]
        expires_at = time.time() + self.timeout_seconds

        try:
            container = await asyncio.wait_for(
                asyncio.get_running_loop().run_in_executor(
                    None,
                    self._create_container,
                    session_id,
                    template,
                    expires_at,
                ),
                timeout=60,
            )
        except (APIError, ImageNotFound, TimeoutError) as e:
            logger.error(
                "sandbox_creation_failed",
                session_id=session_id,
                template=template,
                error=str(e),
            )
            raise SandboxCreationError(f"Failed to create sandbox: {e}") from e

        await self._record_expiry(session_id, expires_at)
        logger.info(
            "sandbox_created",
            session_id=session_id,
            template=template,
            container_id=container.id[:12],
        )
        return SandboxSession(session_id=session_id, expires_at=expires_at)

    def _create_container(
        self, session_id: str, template: str, expires_at: float
    ) -> docker.models.containers.Container:
        """Start the container (blocking operation)."""
        return self.client.containers.run(
            template,
            name=_container_name(session_id),
            detach=True,
            remove=False,
            ports={f"{settings.sandbox_app_port}/tcp": None},
            labels={
                SANDBOX_LABEL: "1",
                EXPIRES_AT_LABEL: str(expires_at),
            },
            mem_limit=CONTAINER_CONFIG["mem_limit"],
            cpu_period=CONTAINER_CONFIG["cpu_period"],
            cpu_quota=CONTAINER_CONFIG["cpu_quota"],
            security_opt=CONTAINER_CONFIG["security_opt"],
            working_dir=self.workspace,
            environment={"PORT": str(settings.sandbox_app_port)},
        )

    async def connect(self, session_id: str) -> SandboxSession:
        """Reconnect to an existing session and reset its idle timeout.

        Raises:
            SandboxConnectionError: If the session is unknown, not running,
                or its timeout has already elapsed.
        """
        try:
            container = await asyncio.wait_for(
                asyncio.get_running_loop().run_in_executor(
                    None, self._get_container, session_id
                ),
                timeout=30,
            )
        except TimeoutError as e:
            raise SandboxConnectionError(
                f"Timed out connecting to sandbox {session_id}"
            ) from e

        now = time.time()
        expires_at = await self._current_expiry(session_id, container)
        if expires_at is not None and expires_at <= now:
            logger.warning("sandbox_expired", session_id=session_id)
            raise SandboxConnectionError(f"Sandbox {session_id} has expired")

        if container.status != "running":
            raise SandboxConnectionError(
                f"Sandbox {session_id} is not running ({container.status})"
            )

        new_expiry = now + self.timeout_seconds
        await self._record_expiry(session_id, new_expiry)
        logger.debug("sandbox_connected", session_id=session_id)
        return SandboxSession(session_id=session_id, expires_at=new_expiry)

    def _get_container(self, session_id: str) -> docker.models.containers.Container:
        """Look a session's container up by name (blocking operation)."""
        try:
            return self.client.containers.get(_container_name(session_id))
        except NotFound as e:
            raise SandboxConnectionError(f"Sandbox {session_id} not found") from e
        except APIError as e:
            raise SandboxConnectionError(
                f"Docker error for sandbox {session_id}: {e}"
            ) from e

    async def _record_expiry(self, session_id: str, expires_at: float) -> None:
        self._expires_at[session_id] = expires_at
        if self.session_store is not None:
            await self.session_store.set_expiry(session_id, expires_at)

    async def _current_expiry(
        self, session_id: str, container: docker.models.containers.Container
    ) -> float | None:
        """Latest known expiry of a session.

        Looks at this process first, then the durable session store, and
        only then at the label written when the container was created.
        """
        if session_id in self._expires_at:
            return self._expires_at[session_id]
        if self.session_store is not None:
            stored = await self.session_store.get_expiry(session_id)
            if stored is not None:
                self._expires_at[session_id] = stored
                return stored
        raw = (container.labels or {}).get(EXPIRES_AT_LABEL)
        try:
            return float(raw) if raw is not None else None
        except ValueError:
            return None

    async def get_address(self, session: SandboxSession, port: int) -> str:
        """Return the externally reachable URL for a port in the sandbox.

        Raises:
            SandboxConnectionError: If the session is gone or the port is
                not published.
        """
        host_port = await asyncio.wait_for(
            asyncio.get_running_loop().run_in_executor(
                None, self._published_port, session.session_id, port
            ),
            timeout=30,
        )
        return f"{settings.sandbox_url_scheme}://{settings.sandbox_public_host}:{host_port}"

    def _published_port(self, session_id: str, port: int) -> str:
        """Read the host port bound to a container port (blocking operation)."""
        container = self._get_container(session_id)
        bindings = (
            container.attrs.get("NetworkSettings", {}).get("Ports") or {}
        ).get(f"{port}/tcp")
        if not bindings:
            raise SandboxConnectionError(
                f"Port {port} is not published by sandbox {session_id}"
            )
        return str(bindings[0]["HostPort"])

    async def kill(self, session_id: str) -> None:
        """Stop and remove a session's container. Missing sessions are ignored."""
        self._expires_at.pop(session_id, None)
        if self.session_store is not None:
            await self.session_store.delete(session_id)
        await asyncio.get_running_loop().run_in_executor(
            None, self._remove_container, _container_name(session_id)
        )
        logger.info("sandbox_killed", session_id=session_id)

    def _remove_container(self, name: str) -> None:
        try:
            container = self.client.containers.get(name)
            container.remove(force=True)
        except NotFound:
            pass

    async def reap_expired(self) -> list[str]:
        """Remove every sandbox container whose idle timeout has elapsed.

        Returns:
            Session ids that were reaped.
        """
        containers = await asyncio.get_running_loop().run_in_executor(
            None,
            lambda: self.client.containers.list(
                all=True, filters={"label": SANDBOX_LABEL}
            ),
        )
        now = time.time()
        reaped: list[str] = []
        for container in containers:
            session_id = container.name.removeprefix("sandbox-")
            expires_at = await self._current_expiry(session_id, container)
            if expires_at is None or expires_at > now:
                continue
            try:
                await self.kill(session_id)
                reaped.append(session_id)
            except APIError as e:
                logger.error("sandbox_reap_failed", session_id=session_id, error=str(e))
        if reaped:
            logger.info("sandboxes_reaped", count=len(reaped))
        return reaped

    # -----------------------------------------------------------------
    # Commands and files
    # -----------------------------------------------------------------

    async def run_command(
        self,
        session: SandboxSession,
        command: str,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
        timeout: int | None = None,
    ) -> CommandResult:
        """Run a shell command in the sandbox, streaming its output.

        Args:
            session: Connected session to run in.
            command: Shell command, executed with ``bash -lc`` in the workspace.
            on_stdout: Called with each decoded stdout chunk.
            on_stderr: Called with each decoded stderr chunk.
            timeout: Seconds before giving up (defaults to config).

        Returns:
            CommandResult for a zero exit status.

        Raises:
            ValueError: If the command is rejected before execution.
            CommandExitError: If the command exits non-zero.
            TimeoutError: If the command does not finish in time.
        """
        validate_command(command)
        result = await asyncio.wait_for(
            asyncio.get_running_loop().run_in_executor(
                None,
                self._exec_streaming,
                session.session_id,
                command,
                on_stdout,
                on_stderr,
            ),
            timeout=timeout or settings.command_timeout_seconds,
        )
        logger.debug(
            "command_executed",
            session_id=session.session_id,
            command=command[:50],
            exit_code=result.exit_code,
        )
        if result.exit_code != 0:
            raise CommandExitError(result.exit_code, result.stdout, result.stderr)
        return result

    def _exec_streaming(
        self,
        session_id: str,
        command: str,
        on_stdout: OutputCallback | None,
        on_stderr: OutputCallback | None,
    ) -> CommandResult:
        """Execute command with demultiplexed streaming (blocking operation)."""
        container = self._get_container(session_id)
        api = self.client.api
        exec_id = api.exec_create(
            container.id,
            ["/bin/bash", "-lc", command],
            stdout=True,
            stderr=True,
            workdir=self.workspace,
        )["Id"]

        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        for out_chunk, err_chunk in api.exec_start(exec_id, stream=True, demux=True):
            if out_chunk:
                text = out_chunk.decode("utf-8", errors="replace")
                stdout_parts.append(text)
                if on_stdout:
                    on_stdout(text)
            if err_chunk:
                text = err_chunk.decode("utf-8", errors="replace")
                stderr_parts.append(text)
                if on_stderr:
                    on_stderr(text)

        exit_code = api.exec_inspect(exec_id).get("ExitCode")
        return CommandResult(
            stdout=sanitize_output("".join(stdout_parts)),
            stderr=sanitize_output("".join(stderr_parts)),
            exit_code=exit_code if exit_code is not None else -1,
        )

    async def write_file(self, session: SandboxSession, path: str, content: str) -> None:
        """Write a file inside the sandbox workspace.

        Creates parent directories automatically.

        Raises:
            ValueError: If the path escapes the workspace.
            SandboxConnectionError: If the session is gone.
        """
        relative = resolve_workspace_path(self.workspace, path)
        await asyncio.wait_for(
            asyncio.get_running_loop().run_in_executor(
                None,
                self._put_file,
                session.session_id,
                relative,
                content,
            ),
            timeout=30,
        )
        logger.debug("file_written", session_id=session.session_id, path=relative)

    def _put_file(self, session_id: str, relative: str, content: str) -> None:
        """Upload one file as a tar archive (blocking operation)."""
        container = self._get_container(session_id)

        parent_dir = posixpath.dirname(relative)
        if parent_dir:
            container.exec_run(
                ["mkdir", "-p", posixpath.join(self.workspace, parent_dir)]
            )

        tar_stream = BytesIO()
        with tarfile.open(fileobj=tar_stream, mode="w") as tar:
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name=relative)
            info.size = len(data)
            info.mode = 0o644
            info.mtime = int(time.time())
            tar.addfile(info, BytesIO(data))
        tar_stream.seek(0)

        if not container.put_archive(self.workspace, tar_stream):
            raise SandboxError(f"Upload rejected for {relative}")

    async def read_file(self, session: SandboxSession, path: str) -> str:
        """Read a file from the sandbox workspace.

        Raises:
            ValueError: If the path escapes the workspace.
            FileNotFoundError: If the file does not exist.
            SandboxConnectionError: If the session is gone.
        """
        relative = resolve_workspace_path(self.workspace, path)
        return await asyncio.wait_for(
            asyncio.get_running_loop().run_in_executor(
                None,
                self._get_file,
                session.session_id,
                relative,
            ),
            timeout=30,
        )

    def _get_file(self, session_id: str, relative: str) -> str:
        """Download one file through a tar archive (blocking operation)."""
        container = self._get_container(session_id)
        try:
            bits, _ = container.get_archive(posixpath.join(self.workspace, relative))
        except NotFound as err:
            raise FileNotFoundError(f"File not found: {relative}") from err

        tar_stream = BytesIO()
        for chunk in bits:
            tar_stream.write(chunk)
        tar_stream.seek(0)

        with tarfile.open(fileobj=tar_stream, mode="r") as tar:
            member = tar.getmembers()[0]
            extracted = tar.extractfile(member)
            if extracted is None:
                raise FileNotFoundError(f"Not a regular file: {relative}")
            return extracted.read().decode("utf-8")

    def is_docker_available(self) -> bool:
        """Check if the Docker daemon is reachable."""
        try:
            self.client.ping()
            return True
        except Exception:
            return False
