"""Tests for sandbox/docker_sandbox.py -- session lifecycle, commands and files.

The Docker client is a MagicMock handed to the manager, so no daemon is
needed. Blocking calls still go through the event loop's executor.
"""

import tarfile
import time
from io import BytesIO
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, NotFound

from sandbox.docker_sandbox import (
    EXPIRES_AT_LABEL,
    SANDBOX_LABEL,
    CommandExitError,
    SandboxConnectionError,
    SandboxCreationError,
    SandboxManager,
    SandboxSession,
)
from sandbox.sessions import SandboxSessionStore

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _container(
    status: str = "running",
    labels: dict[str, str] | None = None,
    name: str = "sandbox-abc",
) -> MagicMock:
    container = MagicMock()
    container.id = "c0ffee1234567890"
    container.name = name
    container.status = status
    container.labels = labels or {}
    container.attrs = {
        "NetworkSettings": {"Ports": {"3000/tcp": [{"HostIp": "0.0.0.0", "HostPort": "49153"}]}}
    }
    container.put_archive.return_value = True
    return container


def _tar_bytes(name: str, content: str) -> bytes:
    stream = BytesIO()
    with tarfile.open(fileobj=stream, mode="w") as tar:
        data = content.encode("utf-8")
        info = tarfile.TarInfo(name=name)
        info.size = len(data)
        tar.addfile(info, BytesIO(data))
    return stream.getvalue()


@pytest.fixture()
def container() -> MagicMock:
    return _container()


@pytest.fixture()
def docker_client(container: MagicMock) -> MagicMock:
    client = MagicMock()
    client.containers.run.return_value = container
    client.containers.get.return_value = container
    return client


@pytest.fixture()
def manager(docker_client: MagicMock) -> SandboxManager:
    return SandboxManager(
        template="lovibe-nextjs-test",
        workspace="/home/user",
        timeout_minutes=30,
        client=docker_client,
    )


SESSION = SandboxSession(session_id="abc", expires_at=time.time() + 1800)

# =========================================================================
# Lifecycle
# =========================================================================


class TestCreate:
    async def test_starts_labelled_container(
        self, manager: SandboxManager, docker_client: MagicMock
    ) -> None:
        before = time.time()
        session = await manager.create()

        args, kwargs = docker_client.containers.run.call_args
        assert args == ("lovibe-nextjs-test",)
        assert kwargs["name"] == f"sandbox-{session.session_id}"
        assert kwargs["labels"][SANDBOX_LABEL] == "1"
        assert float(kwargs["labels"][EXPIRES_AT_LABEL]) == session.expires_at
        assert kwargs["ports"] == {"3000/tcp": None}
        assert kwargs["working_dir"] == "/home/user"
        assert session.expires_at >= before + 1800

    async def test_template_override(
        self, manager: SandboxManager, docker_client: MagicMock
    ) -> None:
        await manager.create("custom-image")
        assert docker_client.containers.run.call_args.args == ("custom-image",)

    async def test_docker_failure(
        self, manager: SandboxManager, docker_client: MagicMock
    ) -> None:
        docker_client.containers.run.side_effect = APIError("daemon unavailable")
        with pytest.raises(SandboxCreationError, match="daemon unavailable"):
            await manager.create()


class TestConnect:
    async def test_connect_extends_timeout(self, manager: SandboxManager) -> None:
        session = await manager.create()
        reconnected = await manager.connect(session.session_id)
        assert reconnected.session_id == session.session_id
        assert reconnected.expires_at >= session.expires_at

    async def test_unknown_session(
        self, manager: SandboxManager, docker_client: MagicMock
    ) -> None:
        docker_client.containers.get.side_effect = NotFound("no such container")
        with pytest.raises(SandboxConnectionError, match="not found"):
            await manager.connect("missing")

    async def test_stopped_container(
        self, manager: SandboxManager, container: MagicMock
    ) -> None:
        container.status = "exited"
        with pytest.raises(SandboxConnectionError, match="not running"):
            await manager.connect("abc")

    async def test_expired_label_without_session_record(
        self, manager: SandboxManager, container: MagicMock
    ) -> None:
        container.labels = {EXPIRES_AT_LABEL: str(time.time() - 5)}
        with pytest.raises(SandboxConnectionError, match="expired"):
            await manager.connect("abc")

    async def test_unexpired_label_is_accepted(
        self, manager: SandboxManager, container: MagicMock
    ) -> None:
        container.labels = {EXPIRES_AT_LABEL: str(time.time() + 60)}
        session = await manager.connect("abc")
        assert session.expires_at > time.time() + 60


class TestSessionExpiryAcrossRestart:
    """Idle-timeout resets survive a process restart through the session store."""

    @pytest.fixture()
    async def session_store(self, db_path: str) -> SandboxSessionStore:
        store = SandboxSessionStore(db_path)
        await store.init()
        return store

    def _manager(self, client: MagicMock, store: SandboxSessionStore) -> SandboxManager:
        return SandboxManager(
            template="lovibe-nextjs-test",
            workspace="/home/user",
            timeout_minutes=30,
            client=client,
            session_store=store,
        )

    async def test_reset_expiry_outlives_creation_label(
        self,
        docker_client: MagicMock,
        container: MagicMock,
        session_store: SandboxSessionStore,
    ) -> None:
        container.labels = {EXPIRES_AT_LABEL: str(time.time() + 60)}
        before_restart = self._manager(docker_client, session_store)
        reset = await before_restart.connect("abc")

        # The creation label has since elapsed; a fresh process takes over
        container.labels = {EXPIRES_AT_LABEL: str(time.time() - 60)}
        after_restart = self._manager(docker_client, session_store)
        session = await after_restart.connect("abc")

        assert session.expires_at >= reset.expires_at
        assert await session_store.get_expiry("abc") == session.expires_at

    async def test_recorded_expiry_still_expires(
        self,
        docker_client: MagicMock,
        container: MagicMock,
        session_store: SandboxSessionStore,
    ) -> None:
        container.labels = {EXPIRES_AT_LABEL: str(time.time() + 600)}
        await session_store.set_expiry("abc", time.time() - 1)

        with pytest.raises(SandboxConnectionError, match="expired"):
            await self._manager(docker_client, session_store).connect("abc")

    async def test_reaper_uses_recorded_expiry(
        self,
        docker_client: MagicMock,
        session_store: SandboxSessionStore,
    ) -> None:
        kept_alive = _container(
            labels={EXPIRES_AT_LABEL: str(time.time() - 60)}, name="sandbox-busy"
        )
        docker_client.containers.list.return_value = [kept_alive]
        await session_store.set_expiry("busy", time.time() + 600)

        assert await self._manager(docker_client, session_store).reap_expired() == []
        kept_alive.remove.assert_not_called()

    async def test_create_and_kill_maintain_the_record(
        self,
        docker_client: MagicMock,
        session_store: SandboxSessionStore,
    ) -> None:
        manager = self._manager(docker_client, session_store)
        session = await manager.create()
        assert await session_store.get_expiry(session.session_id) == session.expires_at

        await manager.kill(session.session_id)
        assert await session_store.get_expiry(session.session_id) is None


class TestGetAddress:
    async def test_published_port(self, manager: SandboxManager) -> None:
        assert await manager.get_address(SESSION, 3000) == "http://localhost:49153"

    async def test_unpublished_port(self, manager: SandboxManager) -> None:
        with pytest.raises(SandboxConnectionError, match="not published"):
            await manager.get_address(SESSION, 8080)


class TestReapExpired:
    async def test_only_expired_sessions_are_removed(
        self, manager: SandboxManager, docker_client: MagicMock
    ) -> None:
        expired = _container(labels={EXPIRES_AT_LABEL: str(time.time() - 1)}, name="sandbox-old")
        live = _container(labels={EXPIRES_AT_LABEL: str(time.time() + 600)}, name="sandbox-new")
        docker_client.containers.list.return_value = [expired, live]
        docker_client.containers.get.side_effect = lambda name: (
            expired if name == "sandbox-old" else live
        )

        assert await manager.reap_expired() == ["old"]
        expired.remove.assert_called_once_with(force=True)
        live.remove.assert_not_called()
        assert docker_client.containers.list.call_args.kwargs["filters"] == {
            "label": SANDBOX_LABEL
        }


# =========================================================================
# Commands
# =========================================================================


class TestRunCommand:
    def _script(self, client: MagicMock, chunks: list, exit_code: int) -> None:
        client.api.exec_create.return_value = {"Id": "exec_1"}
        client.api.exec_start.return_value = iter(chunks)
        client.api.exec_inspect.return_value = {"ExitCode": exit_code}

    async def test_streams_output(
        self, manager: SandboxManager, docker_client: MagicMock
    ) -> None:
        self._script(docker_client, [(b"added 1 package\n", None), (None, b"npm warn\n")], 0)
        seen: list[str] = []

        result = await manager.run_command(SESSION, "npm install zod --yes", on_stdout=seen.append)

        assert result.stdout == "added 1 package\n"
        assert result.stderr == "npm warn\n"
        assert result.exit_code == 0
        assert seen == ["added 1 package\n"]
        cmd = docker_client.api.exec_create.call_args.args[1]
        assert cmd == ["/bin/bash", "-lc", "npm install zod --yes"]

    async def test_non_zero_exit_raises(
        self, manager: SandboxManager, docker_client: MagicMock
    ) -> None:
        self._script(docker_client, [(b"partial", b"boom")], 2)

        with pytest.raises(CommandExitError) as exc_info:
            await manager.run_command(SESSION, "npm run build")

        assert exc_info.value.exit_code == 2
        assert exc_info.value.stdout == "partial"
        assert exc_info.value.stderr == "boom"

    async def test_blank_command_never_executes(
        self, manager: SandboxManager, docker_client: MagicMock
    ) -> None:
        with pytest.raises(ValueError):
            await manager.run_command(SESSION, "   ")
        docker_client.api.exec_create.assert_not_called()


# =========================================================================
# Files
# =========================================================================


class TestFiles:
    async def test_write_uploads_tar_under_workspace(
        self, manager: SandboxManager, container: MagicMock
    ) -> None:
        await manager.write_file(SESSION, "/home/user/app/page.tsx", "export default 1")

        container.exec_run.assert_called_once_with(["mkdir", "-p", "/home/user/app"])
        dest, stream = container.put_archive.call_args.args
        assert dest == "/home/user"
        with tarfile.open(fileobj=stream, mode="r") as tar:
            member = tar.getmembers()[0]
            assert member.name == "app/page.tsx"
            assert tar.extractfile(member).read() == b"export default 1"

    async def test_write_outside_workspace_rejected(
        self, manager: SandboxManager, container: MagicMock
    ) -> None:
        with pytest.raises(ValueError):
            await manager.write_file(SESSION, "../etc/passwd", "x")
        container.put_archive.assert_not_called()

    async def test_read_file(self, manager: SandboxManager, container: MagicMock) -> None:
        container.get_archive.return_value = ([_tar_bytes("page.tsx", "hello")], {})

        assert await manager.read_file(SESSION, "app/page.tsx") == "hello"
        container.get_archive.assert_called_once_with("/home/user/app/page.tsx")

    async def test_read_missing_file(
        self, manager: SandboxManager, container: MagicMock
    ) -> None:
        container.get_archive.side_effect = NotFound("missing")
        with pytest.raises(FileNotFoundError):
            await manager.read_file(SESSION, "nope.ts")


class TestDockerAvailability:
    def test_ping_failure(self, manager: SandboxManager, docker_client: MagicMock) -> None:
        docker_client.ping.side_effect = ConnectionError("refused")
        assert manager.is_docker_available() is False

    def test_ping_ok(self, manager: SandboxManager) -> None:
        assert manager.is_docker_available() is True
