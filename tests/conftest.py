"""
Shared fixtures: a scripted fake SSH host.

FakeRemote answers commands from rules (first match wins) and falls back to
a tiny systemd simulation; unmatched commands succeed with empty output.
FakeConnector hands out FakeConnection sessions bound to that remote and
can inject refused connections or rejected credentials.
"""

import asyncio
import io
import re
import zipfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional, Tuple, Union

import asyncssh
import pytest

from pbdeploy.core.config_loader import DeploymentSettings, DiagnosticsSettings, PoolSettings
from pbdeploy.logger import DeployLogger
from pbdeploy.models import AuthMode, ManagedApplication, ServerTarget, AppVersion
from pbdeploy.services import CommandExecutor, ConnectionPool

Result = Tuple[int, str, str]
Handler = Union[Result, Callable[[str], Result]]

SUDO_PREFIX = "sudo -n "


@dataclass
class FakeService:
    active: bool = False
    starts_ok: bool = True
    pid: int = 4242


class FakeRemote:
    """State of one simulated host, shared by every session against it."""

    def __init__(self):
        self.rules: List[Tuple[re.Pattern, Handler]] = []
        self.commands: List[Tuple[str, str]] = []
        self.files: Dict[str, bytes] = {}
        self.services: Dict[str, FakeService] = {
            "ssh": FakeService(active=True),
            "fail2ban": FakeService(active=True),
        }
        self.drop_connection_on: Optional[str] = None

    def on(self, pattern: str, handler: Handler) -> None:
        """Answer commands matching pattern (regex search) with handler."""
        self.rules.append((re.compile(pattern), handler))

    def fail(self, pattern: str, stderr: str = "boom", exit_code: int = 1) -> None:
        self.on(pattern, (exit_code, "", stderr))

    def ran(self, pattern: str) -> List[str]:
        regex = re.compile(pattern)
        return [command for _, command in self.commands if regex.search(command)]

    def ran_as(self, username: str) -> List[str]:
        return [command for user, command in self.commands if user == username]

    def execute(self, username: str, command: str) -> Result:
        self.commands.append((username, command))
        if self.drop_connection_on and re.search(self.drop_connection_on, command):
            raise ConnectionResetError("connection reset by peer")

        for pattern, handler in self.rules:
            if pattern.search(command):
                return handler(command) if callable(handler) else handler

        bare = command[len(SUDO_PREFIX):] if command.startswith(SUDO_PREFIX) else command
        if bare.startswith("systemctl "):
            return self._systemctl(bare)
        if bare == "ufw status":
            return 0, "Status: active\n", ""
        if bare == "cat /proc/uptime":
            return 0, "1000.50 3000.00\n", ""
        return 0, "", ""

    def _systemctl(self, command: str) -> Result:
        parts = command.split()
        operation = parts[1]
        name = parts[2].replace(".service", "") if len(parts) > 2 else ""
        service = self.services.get(name)

        if operation == "--version":
            return 0, "systemd 252\n", ""
        if operation == "daemon-reload":
            return 0, "", ""
        if operation == "enable":
            self.services.setdefault(name, FakeService())
            return 0, "", ""
        if operation == "show":
            if service is None:
                return 0, "LoadState=not-found\nActiveState=inactive\nSubState=dead\nMainPID=0\n", ""
            state = "active" if service.active else "inactive"
            return (
                0,
                f"LoadState=loaded\nActiveState={state}\n"
                f"SubState={'running' if service.active else 'dead'}\n"
                f"MainPID={service.pid if service.active else 0}\n"
                f"ActiveEnterTimestampMonotonic={400_000_000 if service.active else 0}\n",
                "",
            )
        if service is None:
            return 5, "", f"Unit {name}.service not found.\n"
        if operation == "is-active":
            return (0, "active\n", "") if service.active else (3, "inactive\n", "")
        if operation in ("start", "restart"):
            service.active = service.starts_ok
            return 0, "", ""
        if operation == "stop":
            service.active = False
            return 0, "", ""
        return 0, "", ""


class FakeFile:
    def __init__(self, remote: FakeRemote, path: str):
        self.remote = remote
        self.path = path

    async def write(self, data: bytes) -> None:
        self.remote.files[self.path] = bytes(data)

    async def read(self) -> bytes:
        if self.path not in self.remote.files:
            raise asyncssh.SFTPNoSuchFile(f"No such file: {self.path}")
        return self.remote.files[self.path]


class FakeSFTP:
    def __init__(self, remote: FakeRemote):
        self.remote = remote

    @asynccontextmanager
    async def open(self, path: str, mode: str = "rb"):
        yield FakeFile(self.remote, path)


class FakeConnection:
    """Stands in for asyncssh.SSHClientConnection."""

    def __init__(self, remote: FakeRemote, username: str):
        self.remote = remote
        self.username = username
        self.closed = False
        self.run_delay = 0.0

    async def run(self, command: str, check: bool = False):
        await asyncio.sleep(self.run_delay)
        exit_status, stdout, stderr = self.remote.execute(self.username, command)
        return SimpleNamespace(exit_status=exit_status, stdout=stdout, stderr=stderr)

    @asynccontextmanager
    async def start_sftp_client(self):
        yield FakeSFTP(self.remote)

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None


class FakeConnector:
    """Replacement for asyncssh.connect."""

    def __init__(self, remote: FakeRemote):
        self.remote = remote
        self.calls: List[dict] = []
        self.connections: List[FakeConnection] = []
        self.failures: List[BaseException] = []
        self.denied_users: set = set()
        self.delay = 0.0

    async def __call__(self, host, port=22, username=None, **options):
        self.calls.append({"host": host, "port": port, "username": username, **options})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        if username in self.denied_users:
            raise asyncssh.PermissionDenied("Permission denied (publickey)")
        connection = FakeConnection(self.remote, username)
        self.connections.append(connection)
        return connection


def make_artifact(binary_name: str = "blog", extra: Optional[Dict[str, bytes]] = None,
                  with_public: bool = True) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr(binary_name, b"\x7fELF fake pocketbase binary")
        if with_public:
            archive.writestr("pb_public/index.html", "<h1>hello</h1>")
        archive.writestr("pb_migrations/1700000000_init.js", "migrate(() => {})")
        for name, data in (extra or {}).items():
            archive.writestr(name, data)
    return buffer.getvalue()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def connector(remote):
    return FakeConnector(remote)


@pytest.fixture
def pool_settings():
    return PoolSettings(max_retries=2, retry_delay=0, connect_timeout=5, max_connections=4)


@pytest.fixture
def deployment_settings():
    return DeploymentSettings(
        health_probe_attempts=2,
        health_probe_delay=0,
        start_probe_attempts=2,
        start_probe_delay=0,
        stop_wait_seconds=2,
    )


@pytest.fixture
def diagnostics_settings(tmp_path):
    ssh_dir = tmp_path / "dot-ssh"
    return DiagnosticsSettings(dial_timeout=1, ssh_dir=str(ssh_dir))


@pytest.fixture
def with_executor(connector, pool_settings):
    """Run operation(executor) on a fresh pool inside asyncio.run."""

    def run(operation):
        async def main():
            async with ConnectionPool(pool_settings, connector=connector) as pool:
                return await operation(CommandExecutor(pool))

        return asyncio.run(main())

    return run


@pytest.fixture
def fresh_target():
    return ServerTarget(id="srv1", name="prod", host="203.0.113.10", auth_mode=AuthMode.AGENT)


@pytest.fixture
def setup_target(fresh_target):
    fresh_target.setup_complete = True
    return fresh_target


@pytest.fixture
def locked_target(setup_target):
    setup_target.security_locked = True
    return setup_target


@pytest.fixture
def app():
    return ManagedApplication(id="app1", name="blog", server_id="srv1")


@pytest.fixture
def artifact_path(tmp_path):
    path = tmp_path / "blog.zip"
    path.write_bytes(make_artifact())
    return path


@pytest.fixture
def version(app, artifact_path):
    return AppVersion(id="ver1", app_id=app.id, version_number="1.0.0", artifact=str(artifact_path))


@pytest.fixture
def logger(tmp_path):
    log = DeployLogger("prod", "test", log_root=tmp_path / "logs", quiet=True)
    yield log
    log.close()
