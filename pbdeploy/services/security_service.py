"""
Security lockdown

One-way hardening of a provisioned server: password and root SSH logins
are disabled, ufw is reduced to an allow-list, fail2ban watches sshd, and
the result is verified as the app user. There is no automatic reversion;
a failure reports the step that failed and leaves the server as that
step left it.
"""

import asyncio
from typing import Dict, Optional

from pbdeploy.constants import (
    FAIL2BAN_BANTIME,
    FAIL2BAN_FINDTIME,
    FAIL2BAN_JAIL_PATH,
    FAIL2BAN_MAXRETRY,
    FAIL2BAN_WATCHED_SERVICES,
    FIREWALL_ALLOWED_PORTS,
    SECURITY_SUBSCRIPTION,
    SSH_SERVICE_CANDIDATES,
    SSHD_CONFIG_BACKUP_PATH,
    SSHD_CONFIG_PATH,
    SSHD_PASSWORD_SETTINGS,
    SSHD_ROOT_SETTINGS,
)
from pbdeploy.core.templates import render_stub
from pbdeploy.exceptions import PreconditionError, RemoteCommandError, StepFailedError
from pbdeploy.logger import DeployLogger
from pbdeploy.models.progress import subscription_key
from pbdeploy.models.server import ServerTarget
from pbdeploy.services.connection_pool import ConnectionPool
from pbdeploy.services.executor import CommandExecutor
from pbdeploy.services.notifier import ProgressEmitter, ProgressReporter
from pbdeploy.services.task_runner import BackgroundTaskRunner, TaskHandle

SSHD_DROPIN_DIR = "/etc/ssh/sshd_config.d"
SSHD_DROPIN_PATH = f"{SSHD_DROPIN_DIR}/00-pbdeploy.conf"
LOCKDOWN_TASK = "lockdown"


def sshd_option_command(option: str, value: str, path: str = SSHD_CONFIG_PATH) -> str:
    """Shell command that sets option to value, replacing or appending."""
    return (
        f"if grep -qiE '^[[:space:]]*#?[[:space:]]*{option}([[:space:]]|$)' {path}; then "
        f"sed -i -E 's/^[[:space:]]*#?[[:space:]]*{option}([[:space:]].*)?$/{option} {value}/I' {path}; "
        f"else echo '{option} {value}' >> {path}; fi"
    )


class SecurityManager:
    """Runs the security lockdown workflow."""

    def __init__(
        self,
        executor: CommandExecutor,
        emitter: Optional[ProgressEmitter] = None,
        settle_attempts: int = 5,
        settle_delay: float = 1.0,
    ):
        self.executor = executor
        self.emitter = emitter
        self.settle_attempts = settle_attempts
        self.settle_delay = settle_delay

    @property
    def pool(self) -> ConnectionPool:
        return self.executor.pool

    @staticmethod
    def check_preconditions(target: ServerTarget) -> None:
        """
        Raises:
            PreconditionError: Already locked, or setup not complete
        """
        if target.security_locked:
            raise PreconditionError(
                f"Server '{target.name}' is already locked down",
                "Lockdown is one-way and cannot be re-applied",
            )
        if not target.setup_complete:
            raise PreconditionError(
                f"Server '{target.name}' has not been set up",
                f"Run: pbdeploy setup {target.name}",
            )

    def reporter_for(self, target: ServerTarget, logger: Optional[DeployLogger] = None) -> ProgressReporter:
        return ProgressReporter(self.emitter, subscription_key(SECURITY_SUBSCRIPTION, target.id), logger)

    def start_lockdown(
        self,
        runner: BackgroundTaskRunner,
        target: ServerTarget,
        logger: Optional[DeployLogger] = None,
    ) -> TaskHandle:
        """Validate and submit a lockdown; its subscription always gets a terminal event."""
        self.check_preconditions(target)
        reporter = self.reporter_for(target, logger)
        coro = self.apply_lockdown(target, logger, reporter=reporter)
        return runner.submit_reported(LOCKDOWN_TASK, target.id, coro, reporter, "Lockdown")

    async def apply_lockdown(
        self,
        target: ServerTarget,
        logger: Optional[DeployLogger] = None,
        reporter: Optional[ProgressReporter] = None,
    ) -> ServerTarget:
        """
        Harden a set-up server and hand it over to the app user.

        Raises:
            PreconditionError: Already locked, or setup not complete (nothing is run)
            StepFailedError: A step failed; remaining steps were skipped
        """
        self.check_preconditions(target)

        executor = self.executor.with_logger(logger)
        reporter = reporter or self.reporter_for(target, logger)
        reporter.init(f"Starting security lockdown of {target.name}")

        applied: Dict[str, str] = {}
        steps = [
            (
                "disable_password_auth",
                "Disabling password authentication",
                lambda: self._apply_sshd_settings(executor, target, SSHD_PASSWORD_SETTINGS, applied, backup=True),
            ),
            (
                "disable_root_login",
                "Disabling root login",
                lambda: self._apply_sshd_settings(executor, target, SSHD_ROOT_SETTINGS, applied),
            ),
            ("configure_firewall", "Configuring firewall allow-list", lambda: self._configure_firewall(executor, target)),
            ("setup_fail2ban", "Installing intrusion-ban policy", lambda: self._setup_fail2ban(executor, target)),
            ("apply_ssh_config", "Reloading SSH daemon", lambda: self._reload_sshd(executor, target)),
            ("verify_security", "Verifying security posture", lambda: self._verify(executor, target)),
        ]

        try:
            await reporter.run_steps(steps)
        except StepFailedError as e:
            reporter.fail(
                f"Lockdown failed at step '{e.step}'; server left as of the previous step",
                detail=str(e.cause),
            )
            if logger:
                logger.log_error(f"Lockdown failed at step '{e.step}'", context=str(e.cause))
            raise
        except asyncio.CancelledError:
            reporter.fail("Lockdown cancelled")
            raise

        target.security_locked = True
        await self.pool.evict(target.connection_key(True))
        reporter.complete(f"Server {target.name} is locked down; root SSH access is disabled")
        return target

    async def _apply_sshd_settings(
        self,
        executor: CommandExecutor,
        target: ServerTarget,
        settings: Dict[str, str],
        applied: Dict[str, str],
        backup: bool = False,
    ) -> None:
        if backup:
            await executor.run_checked(
                target, True, f"cp -n {SSHD_CONFIG_PATH} {SSHD_CONFIG_BACKUP_PATH}"
            )

        for option, value in settings.items():
            await executor.run_checked(target, True, sshd_option_command(option, value))
        applied.update(settings)

        # Debian/Ubuntu include sshd_config.d first and the first value wins
        dropin = "".join(f"{option} {value}\n" for option, value in applied.items())
        has_dropins = await executor.run(target, True, f"test -d {SSHD_DROPIN_DIR}")
        if has_dropins.is_success:
            await executor.upload_file(target, True, dropin.encode("utf-8"), SSHD_DROPIN_PATH, mode=0o644)

        await executor.run_checked(
            target, True, "sshd -t", error_message="sshd rejected the new configuration"
        )

    async def _configure_firewall(self, executor: CommandExecutor, target: ServerTarget) -> None:
        for command in (
            "ufw --force reset",
            "ufw default deny incoming",
            "ufw default allow outgoing",
        ):
            await executor.run_checked(target, True, command)

        for port in [target.port] + FIREWALL_ALLOWED_PORTS:
            await executor.run_checked(target, True, f"ufw allow {port}/tcp")

        await executor.run_checked(target, True, "ufw --force enable")
        status = await executor.run_checked(target, True, "ufw status")
        if "Status: active" not in status.stdout:
            raise RemoteCommandError(
                "ufw status", status.exit_code, stdout=status.stdout, message="Firewall is not active"
            )

    async def _setup_fail2ban(self, executor: CommandExecutor, target: ServerTarget) -> None:
        jail = render_stub(
            "fail2ban/jail.local.j2",
            bantime=FAIL2BAN_BANTIME,
            findtime=FAIL2BAN_FINDTIME,
            maxretry=FAIL2BAN_MAXRETRY,
            services=FAIL2BAN_WATCHED_SERVICES,
            ssh_port=target.port,
        )
        await executor.upload_file(target, True, jail.encode("utf-8"), FAIL2BAN_JAIL_PATH, mode=0o644)
        await executor.run_checked(target, True, "systemctl enable fail2ban")
        await executor.run_checked(target, True, "systemctl restart fail2ban")

        for service in FAIL2BAN_WATCHED_SERVICES:
            await self._wait_for(
                executor, target, True, f"fail2ban-client status {service}", f"fail2ban jail '{service}' is not running"
            )

    async def _wait_for(
        self,
        executor: CommandExecutor,
        target: ServerTarget,
        as_privileged: bool,
        command: str,
        error_message: str,
        sudo: bool = False,
    ) -> None:
        result = None
        for attempt in range(self.settle_attempts):
            result = await executor.run(target, as_privileged, command, sudo=sudo)
            if result.is_success:
                return
            if attempt < self.settle_attempts - 1:
                await asyncio.sleep(self.settle_delay)
        result.check(error_message)

    async def detect_ssh_service(
        self, executor: CommandExecutor, target: ServerTarget, as_privileged: bool
    ) -> str:
        """Name of the SSH daemon's systemd unit (ssh on Debian, sshd elsewhere)."""
        for name in SSH_SERVICE_CANDIDATES:
            result = await executor.run(target, as_privileged, f"systemctl cat {name}.service")
            if result.is_success:
                return name
        raise RemoteCommandError(
            "systemctl cat", 1, message="Could not find the SSH daemon's systemd unit"
        )

    async def _reload_sshd(self, executor: CommandExecutor, target: ServerTarget) -> None:
        await executor.run_checked(target, True, "sshd -t", error_message="sshd configuration is invalid")
        service = await self.detect_ssh_service(executor, target, True)

        reloaded = await executor.run(target, True, f"systemctl reload {service}")
        if reloaded.is_failure:
            if executor.logger:
                executor.logger.warning(f"Reload of {service} failed, restarting instead")
            await executor.run_checked(target, True, f"systemctl restart {service}")

        await self._wait_for(
            executor, target, True, f"systemctl is-active {service}", f"{service} is not active after reload"
        )

    async def _verify(self, executor: CommandExecutor, target: ServerTarget) -> None:
        status = await executor.run_checked(target, False, "ufw status", sudo=True)
        if "Status: active" not in status.stdout:
            raise RemoteCommandError(
                "ufw status", status.exit_code, stdout=status.stdout, message="Firewall is not active"
            )

        await executor.run_checked(
            target, False, "systemctl is-active fail2ban", error_message="fail2ban is not active"
        )

        for option, value in (("PasswordAuthentication", "no"), ("PermitRootLogin", "no")):
            await executor.run_checked(
                target,
                False,
                f"grep -qiE '^[[:space:]]*{option}[[:space:]]+{value}' {SSHD_CONFIG_PATH}",
                error_message=f"{option} is not set to '{value}'",
            )

        service = await self.detect_ssh_service(executor, target, False)
        await executor.run_checked(
            target, False, f"systemctl is-active {service}", error_message=f"{service} is not active"
        )

    async def get_security_status(self, target: ServerTarget) -> Dict[str, bool]:
        """
        Inspect the live security posture.

        Returns:
            {firewall_active, fail2ban_active, password_auth_disabled,
             root_login_disabled, ssh_active}
        """
        privileged = target.default_privileged
        sudo = not privileged

        async def run(command: str, use_sudo: bool = False):
            return await self.executor.run(target, privileged, command, sudo=use_sudo and sudo)

        ufw = await run("ufw status", use_sudo=True)
        fail2ban = await run("systemctl is-active fail2ban")
        password = await run(f"grep -qiE '^[[:space:]]*PasswordAuthentication[[:space:]]+no' {SSHD_CONFIG_PATH}")
        root = await run(f"grep -qiE '^[[:space:]]*PermitRootLogin[[:space:]]+no' {SSHD_CONFIG_PATH}")

        ssh_active = False
        for name in SSH_SERVICE_CANDIDATES:
            if (await run(f"systemctl is-active {name}")).is_success:
                ssh_active = True
                break

        return {
            "firewall_active": ufw.is_success and "Status: active" in ufw.stdout,
            "fail2ban_active": fail2ban.is_success,
            "password_auth_disabled": password.is_success,
            "root_login_disabled": root.is_success,
            "ssh_active": ssh_active,
        }
