"""
Server setup

Creates the unprivileged service account, installs its keys and the
required packages, and lays out the PocketBase directories. Runs as the
privileged identity; every step is safe to re-run.
"""

import asyncio
import re
from typing import Dict, List, Optional

from pbdeploy.constants import (
    FIREWALL_ALLOWED_PORTS,
    PACKAGE_INSTALL_TIMEOUT,
    POCKETBASE_ROOT,
    REQUIRED_PACKAGES,
    SETUP_DIRECTORIES,
    SETUP_SUBSCRIPTION,
    SUDO_ALLOWED_COMMANDS,
    SUDOERS_DIR,
)
from pbdeploy.core.templates import render_stub
from pbdeploy.exceptions import (
    PreconditionError,
    StepFailedError,
    ValidationError,
)
from pbdeploy.logger import DeployLogger
from pbdeploy.models.progress import subscription_key
from pbdeploy.models.server import ServerTarget
from pbdeploy.services.executor import CommandExecutor
from pbdeploy.services.notifier import ProgressEmitter, ProgressReporter
from pbdeploy.services.task_runner import BackgroundTaskRunner, TaskHandle
from pbdeploy.utils import quote

USERNAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")

SETUP_TASK = "setup"


def validate_username(username: str) -> str:
    if not USERNAME_PATTERN.match(username):
        raise ValidationError(f"Invalid Unix username: {username!r}")
    return username


class SetupManager:
    """Runs the server setup workflow."""

    def __init__(
        self,
        executor: CommandExecutor,
        emitter: Optional[ProgressEmitter] = None,
        packages: Optional[List[str]] = None,
    ):
        self.executor = executor
        self.emitter = emitter
        self.packages = packages if packages is not None else list(REQUIRED_PACKAGES)

    @staticmethod
    def check_preconditions(target: ServerTarget) -> None:
        """
        Raises:
            PreconditionError: Server already set up or locked down
            ValidationError: Invalid app username
        """
        if target.setup_complete:
            raise PreconditionError(
                f"Server '{target.name}' is already set up",
                "Setup only runs once per server",
            )
        if target.security_locked:
            raise PreconditionError(
                f"Server '{target.name}' is locked down",
                "Root access is disabled, setup cannot run",
            )
        validate_username(target.app_username)

    def reporter_for(self, target: ServerTarget, logger: Optional[DeployLogger] = None) -> ProgressReporter:
        return ProgressReporter(self.emitter, subscription_key(SETUP_SUBSCRIPTION, target.id), logger)

    def start_setup(
        self,
        runner: BackgroundTaskRunner,
        target: ServerTarget,
        configure_firewall: bool = False,
        public_keys: Optional[List[str]] = None,
        logger: Optional[DeployLogger] = None,
    ) -> TaskHandle:
        """
        Validate and submit a setup run. Must be called from a running loop.

        The server_setup_<id> subscription ends with 'complete' or 'failed'
        even when the task is cancelled before it starts.
        """
        self.check_preconditions(target)
        reporter = self.reporter_for(target, logger)
        coro = self.run_setup(target, configure_firewall, public_keys, logger, reporter=reporter)
        return runner.submit_reported(SETUP_TASK, target.id, coro, reporter, "Setup")

    async def run_setup(
        self,
        target: ServerTarget,
        configure_firewall: bool = False,
        public_keys: Optional[List[str]] = None,
        logger: Optional[DeployLogger] = None,
        reporter: Optional[ProgressReporter] = None,
    ) -> ServerTarget:
        """
        Provision a fresh server.

        Args:
            target: Server to provision; setup_complete is set on success only
            configure_firewall: Also open the SSH/HTTP/HTTPS ports with ufw
            public_keys: Extra public keys trusted for the app user
            logger: Operation log
            reporter: Progress reporter to use instead of a new one

        Returns:
            The updated target

        Raises:
            PreconditionError: Server already set up (no remote command is run)
            StepFailedError: A step failed; remaining steps were skipped
        """
        self.check_preconditions(target)

        executor = self.executor.with_logger(logger)
        reporter = reporter or self.reporter_for(target, logger)
        reporter.init(f"Starting setup of {target.name} ({target.host})")

        steps = [
            ("create_user", "Creating app user", lambda: self._create_user(executor, target)),
            (
                "setup_ssh_keys",
                "Installing SSH keys",
                lambda: self._setup_ssh_keys(executor, target, public_keys or []),
            ),
            ("install_packages", "Installing packages", lambda: self._install_packages(executor, target)),
            ("setup_directories", "Creating directories", lambda: self._setup_directories(executor, target)),
        ]
        if configure_firewall:
            steps.append(
                ("configure_firewall", "Configuring firewall", lambda: self._configure_firewall(executor, target))
            )
        steps.append(("test_connection", "Testing app user access", lambda: self._test_connection(executor, target)))

        try:
            await reporter.run_steps(steps)
        except StepFailedError as e:
            reporter.fail(f"Setup failed at step '{e.step}'", detail=str(e.cause))
            if logger:
                logger.log_error(f"Setup failed at step '{e.step}'", context=str(e.cause))
            raise
        except asyncio.CancelledError:
            reporter.fail("Setup cancelled")
            raise

        target.setup_complete = True
        reporter.complete(f"Server {target.name} is ready for security lockdown")
        return target

    async def _create_user(self, executor: CommandExecutor, target: ServerTarget) -> None:
        user = target.app_username
        exists = await executor.run(target, True, f"id -u {user}")
        if exists.is_success:
            if executor.logger:
                executor.logger.log(f"User {user} already exists")
        else:
            await executor.run_checked(
                target,
                True,
                f"useradd -m -s /bin/bash {user}",
                error_message=f"Failed to create user {user}",
            )

        sudoers = render_stub(
            "sudoers/app-user.j2", user=user, commands=SUDO_ALLOWED_COMMANDS
        )
        staged = f"/tmp/pbdeploy-sudoers-{user}"
        await executor.upload_file(target, True, sudoers.encode("utf-8"), staged)
        await executor.run_checked(
            target, True, f"visudo -cf {staged}", error_message="Generated sudoers file is invalid"
        )
        await executor.run_checked(
            target,
            True,
            f"install -m 440 -o root -g root {staged} {SUDOERS_DIR}/{user} && rm -f {staged}",
        )

    async def _setup_ssh_keys(
        self, executor: CommandExecutor, target: ServerTarget, public_keys: List[str]
    ) -> None:
        user = target.app_username
        ssh_dir = f"~{user}/.ssh"
        keys_file = f"{ssh_dir}/authorized_keys"

        await executor.run_checked(target, True, f"mkdir -p {ssh_dir} && touch {keys_file}")
        await executor.run_checked(
            target,
            True,
            f"if [ -f /root/.ssh/authorized_keys ]; then "
            f"grep -vxF -f {keys_file} /root/.ssh/authorized_keys >> {keys_file} || true; fi",
        )
        for key in public_keys:
            key = key.strip()
            if not key:
                continue
            await executor.run_checked(
                target, True, f"grep -qxF {quote(key)} {keys_file} || echo {quote(key)} >> {keys_file}"
            )

        await executor.run_checked(
            target,
            True,
            f"chown -R {user}:{user} {ssh_dir} && chmod 700 {ssh_dir} && chmod 600 {keys_file}",
        )
        await executor.run_checked(
            target,
            True,
            f"test -s {keys_file}",
            error_message=f"No authorized keys installed for {user}",
        )

    async def installed_packages(self, target: ServerTarget, executor: CommandExecutor) -> List[str]:
        """Subset of the required packages already installed."""
        result = await executor.run(
            target,
            True,
            "dpkg-query -W -f='${Package} ${Status}\\n' " + " ".join(self.packages) + " 2>/dev/null",
        )
        installed = []
        for line in result.stdout.splitlines():
            parts = line.split(" ", 1)
            if len(parts) == 2 and parts[1].strip() == "install ok installed":
                installed.append(parts[0])
        return installed

    async def _install_packages(self, executor: CommandExecutor, target: ServerTarget) -> None:
        installed = await self.installed_packages(target, executor)
        missing = [p for p in self.packages if p not in installed]
        if not missing:
            if executor.logger:
                executor.logger.log("All required packages already installed")
            return

        await executor.run_checked(
            target, True, "apt-get update -qq", timeout=PACKAGE_INSTALL_TIMEOUT
        )
        await executor.run_checked(
            target,
            True,
            "DEBIAN_FRONTEND=noninteractive apt-get install -y -qq " + " ".join(missing),
            timeout=PACKAGE_INSTALL_TIMEOUT,
            error_message=f"Failed to install packages: {', '.join(missing)}",
        )

    async def _setup_directories(self, executor: CommandExecutor, target: ServerTarget) -> None:
        user = target.app_username
        dirs = " ".join(SETUP_DIRECTORIES)
        await executor.run_checked(
            target,
            True,
            f"mkdir -p {dirs} && chown {user}:{user} {dirs} && chmod 755 {dirs}",
            error_message="Failed to create PocketBase directories",
        )

    async def _configure_firewall(self, executor: CommandExecutor, target: ServerTarget) -> None:
        for port in [target.port] + FIREWALL_ALLOWED_PORTS:
            await executor.run_checked(target, True, f"ufw allow {port}/tcp")
        await executor.run_checked(target, True, "ufw --force enable")

    async def _test_connection(self, executor: CommandExecutor, target: ServerTarget) -> None:
        await executor.run_checked(
            target,
            False,
            "systemctl --version",
            sudo=True,
            error_message=f"{target.app_username} cannot run systemctl through sudo",
        )
        await executor.run_checked(
            target,
            False,
            f"ls -la {POCKETBASE_ROOT}",
            error_message=f"{target.app_username} cannot read {POCKETBASE_ROOT}",
        )

    async def get_setup_status(self, target: ServerTarget) -> Dict[str, bool]:
        """
        Inspect how far setup got on a server.

        Returns:
            {user_exists, ssh_configured, directories_exist, sudo_configured}
        """
        user = target.app_username
        privileged = target.default_privileged

        async def passes(command: str) -> bool:
            result = await self.executor.run(target, privileged, command)
            return result.is_success

        directories = " && ".join(f"test -d {d}" for d in SETUP_DIRECTORIES)
        if privileged:
            sudo_check = passes(f"test -f {SUDOERS_DIR}/{user}")
        else:
            sudo_check = passes("sudo -n -l /usr/bin/systemctl")

        return {
            "user_exists": await passes(f"id -u {user}"),
            "ssh_configured": await passes(f"test -s ~{user}/.ssh/authorized_keys"),
            "directories_exist": await passes(directories),
            "sudo_configured": await sudo_check,
        }
