"""
Command Executor

Runs remote commands and file transfers through pooled SSH sessions.
"""

import asyncio
import time
import uuid
from typing import Optional

import asyncssh

from pbdeploy.core.config_loader import ExecutorSettings
from pbdeploy.exceptions import CommandTimeoutError, SSHConnectionError, SSHError
from pbdeploy.logger import DeployLogger
from pbdeploy.models.results import CommandResult
from pbdeploy.models.server import ServerTarget
from pbdeploy.services.connection_pool import ConnectionPool
from pbdeploy.utils import quote


def sudo_wrap(command: str) -> str:
    """
    Prefix a command with non-interactive sudo.

    The app user may only sudo a fixed list of binaries, so sudo covers the
    first program of the command line only.
    """
    return f"sudo -n {command}"


class CommandExecutor:
    """
    Executes commands on a ServerTarget.

    Every call checks a session out of the pool and returns it, also on
    error. A timeout leaves the session reusable; a transport failure
    condemns it.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        settings: Optional[ExecutorSettings] = None,
        logger: Optional[DeployLogger] = None,
    ):
        self.pool = pool
        self.settings = settings or ExecutorSettings()
        self.logger = logger

    def with_logger(self, logger: Optional[DeployLogger]) -> "CommandExecutor":
        """Same pool and settings, logging to another operation log."""
        return CommandExecutor(self.pool, self.settings, logger)

    async def run(
        self,
        target: ServerTarget,
        as_privileged: bool,
        command: str,
        sudo: bool = False,
        timeout: Optional[float] = None,
        display: Optional[str] = None,
    ) -> CommandResult:
        """
        Execute a command and return its result whatever the exit code.

        Args:
            target: Server to run on
            as_privileged: Use the root identity instead of the app user
            command: Shell command
            sudo: Wrap the command in sudo -n
            timeout: Override of the default command timeout (seconds)
            display: Text logged instead of the command (hides secrets)

        Returns:
            CommandResult

        Raises:
            CommandTimeoutError: Deadline exceeded
            SSHConnectionError: Transport failed mid-command
        """
        full_command = sudo_wrap(command) if sudo else command
        deadline = timeout if timeout is not None else self.settings.command_timeout
        user = target.username_for(as_privileged)

        if self.logger:
            shown = display or command
            self.logger.log_command(f"sudo {shown}" if sudo else shown, user=user)

        handle = await self.pool.acquire(target, as_privileged)
        broken = False
        started = time.monotonic()
        try:
            completed = await asyncio.wait_for(
                handle.connection.run(full_command, check=False),
                timeout=deadline,
            )
        except asyncio.TimeoutError:
            raise CommandTimeoutError(display or command, deadline, target.host)
        except (OSError, asyncssh.Error) as e:
            broken = True
            raise SSHConnectionError(
                f"Connection lost while running command on {target.host}",
                f"Command: {display or command}, Error: {e}",
            )
        finally:
            await self.pool.release(handle, broken=broken)

        result = CommandResult(
            command=display or command,
            exit_code=completed.exit_status if completed.exit_status is not None else -1,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            host=target.host,
            duration_seconds=time.monotonic() - started,
        )

        if self.logger:
            self.logger.log_output(result.stdout, "stdout")
            self.logger.log_output(result.stderr, "stderr")
            if result.is_failure:
                self.logger.log(f"Exit code: {result.exit_code}", "DEBUG")

        return result

    async def run_checked(
        self,
        target: ServerTarget,
        as_privileged: bool,
        command: str,
        sudo: bool = False,
        timeout: Optional[float] = None,
        error_message: Optional[str] = None,
        display: Optional[str] = None,
    ) -> CommandResult:
        """
        Execute a command and raise RemoteCommandError on nonzero exit.
        """
        result = await self.run(
            target, as_privileged, command, sudo=sudo, timeout=timeout, display=display
        )
        return result.check(error_message)

    async def upload_file(
        self,
        target: ServerTarget,
        as_privileged: bool,
        data: bytes,
        remote_path: str,
        sudo: bool = False,
        mode: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Write bytes to a remote file over SFTP.

        With sudo the file is written to /tmp first and moved into place, so
        the unprivileged identity can install root-owned files.
        """
        write_path = f"/tmp/pbdeploy-{uuid.uuid4().hex}" if sudo else remote_path
        if self.logger:
            self.logger.log(f"Uploading {len(data)} bytes to {target.host}:{remote_path}", "DEBUG")

        await self._transfer(target, as_privileged, "put", write_path, data, timeout)

        if sudo:
            await self.run_checked(
                target,
                as_privileged,
                f"mv {quote(write_path)} {quote(remote_path)}",
                sudo=True,
                error_message=f"Failed to install {remote_path}",
            )
        if mode is not None:
            await self.run_checked(
                target,
                as_privileged,
                f"chmod {mode:o} {quote(remote_path)}",
                sudo=sudo,
            )

    async def download_file(
        self,
        target: ServerTarget,
        as_privileged: bool,
        remote_path: str,
        timeout: Optional[float] = None,
    ) -> bytes:
        """Read a remote file over SFTP."""
        if self.logger:
            self.logger.log(f"Downloading {target.host}:{remote_path}", "DEBUG")
        return await self._transfer(target, as_privileged, "get", remote_path, None, timeout)

    async def _transfer(
        self,
        target: ServerTarget,
        as_privileged: bool,
        direction: str,
        remote_path: str,
        data: Optional[bytes],
        timeout: Optional[float],
    ) -> Optional[bytes]:
        deadline = timeout if timeout is not None else self.settings.command_timeout
        handle = await self.pool.acquire(target, as_privileged)
        broken = False
        try:
            return await asyncio.wait_for(
                self._sftp(handle.connection, direction, remote_path, data),
                timeout=deadline,
            )
        except asyncio.TimeoutError:
            raise CommandTimeoutError(f"sftp {direction} {remote_path}", deadline, target.host)
        except asyncssh.SFTPError as e:
            raise SSHError(
                f"SFTP {direction} failed for {remote_path}",
                f"Host: {target.host}, Error: {e.reason}",
            )
        except (OSError, asyncssh.Error) as e:
            broken = True
            raise SSHConnectionError(
                f"Connection lost during SFTP {direction} on {target.host}",
                f"Path: {remote_path}, Error: {e}",
            )
        finally:
            await self.pool.release(handle, broken=broken)

    @staticmethod
    async def _sftp(connection, direction: str, remote_path: str, data: Optional[bytes]):
        async with connection.start_sftp_client() as sftp:
            if direction == "put":
                async with sftp.open(remote_path, "wb") as remote_file:
                    await remote_file.write(data)
                return None
            async with sftp.open(remote_path, "rb") as remote_file:
                return await remote_file.read()
