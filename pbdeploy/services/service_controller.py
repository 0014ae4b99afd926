"""
Service Controller

systemd operations on a managed application. Identity follows the
target's lockdown state: root before lockdown, the app user with sudo
after it.
"""

from typing import Dict, Optional

from pbdeploy.exceptions import RemoteCommandError, ServiceNotFoundError
from pbdeploy.models.results import CommandResult, ServiceState, ServiceStatus
from pbdeploy.models.server import ServerTarget
from pbdeploy.services.executor import CommandExecutor
from pbdeploy.utils import quote

SHOW_PROPERTIES = [
    "LoadState",
    "ActiveState",
    "SubState",
    "MainPID",
    "ActiveEnterTimestampMonotonic",
]


def _not_found(result: CommandResult) -> bool:
    text = f"{result.stdout}\n{result.stderr}".lower()
    return result.exit_code == 5 or "not found" in text or "not-found" in text


def parse_show_output(output: str) -> Dict[str, str]:
    """Parse KEY=VALUE lines from systemctl show."""
    values = {}
    for line in output.splitlines():
        if "=" in line:
            key, value = line.split("=", 1)
            values[key.strip()] = value.strip()
    return values


class ServiceController:
    """Start, stop and inspect systemd units on a target."""

    def __init__(self, executor: CommandExecutor):
        self.executor = executor

    def _identity(self, target: ServerTarget):
        privileged = target.default_privileged
        return privileged, not privileged

    async def _systemctl(
        self,
        target: ServerTarget,
        operation: str,
        service_name: str,
        executor: Optional[CommandExecutor] = None,
    ) -> CommandResult:
        executor = executor or self.executor
        privileged, sudo = self._identity(target)
        command = f"systemctl {operation} {quote(service_name)}"
        result = await executor.run(target, privileged, command, sudo=sudo)
        if result.is_failure:
            if _not_found(result):
                raise ServiceNotFoundError(service_name, command, result.stderr)
            result.check(f"systemctl {operation} {service_name} failed")
        return result

    async def start(self, target: ServerTarget, service_name: str, executor: Optional[CommandExecutor] = None) -> None:
        await self._systemctl(target, "start", service_name, executor)

    async def stop(self, target: ServerTarget, service_name: str, executor: Optional[CommandExecutor] = None) -> None:
        await self._systemctl(target, "stop", service_name, executor)

    async def restart(self, target: ServerTarget, service_name: str, executor: Optional[CommandExecutor] = None) -> None:
        await self._systemctl(target, "restart", service_name, executor)

    async def enable(self, target: ServerTarget, service_name: str, executor: Optional[CommandExecutor] = None) -> None:
        await self._systemctl(target, "enable", service_name, executor)

    async def disable(self, target: ServerTarget, service_name: str, executor: Optional[CommandExecutor] = None) -> None:
        await self._systemctl(target, "disable", service_name, executor)

    async def is_active(
        self, target: ServerTarget, service_name: str, executor: Optional[CommandExecutor] = None
    ) -> bool:
        executor = executor or self.executor
        privileged, sudo = self._identity(target)
        result = await executor.run(
            target, privileged, f"systemctl is-active {quote(service_name)}", sudo=sudo
        )
        return result.is_success and result.stdout.strip() == "active"

    async def exists(
        self, target: ServerTarget, service_name: str, executor: Optional[CommandExecutor] = None
    ) -> bool:
        """Whether a unit for service_name is loaded."""
        try:
            await self.status(target, service_name, executor)
        except ServiceNotFoundError:
            return False
        return True

    async def status(
        self, target: ServerTarget, service_name: str, executor: Optional[CommandExecutor] = None
    ) -> ServiceStatus:
        """
        Current state of a unit.

        Raises:
            ServiceNotFoundError: No such unit (never deployed)
            RemoteCommandError: systemctl itself failed
        """
        executor = executor or self.executor
        privileged, sudo = self._identity(target)
        props = " ".join(f"-p {p}" for p in SHOW_PROPERTIES)
        command = f"systemctl show {quote(service_name)} --no-pager {props}"

        result = await executor.run(target, privileged, command, sudo=sudo)
        if result.is_failure:
            if _not_found(result):
                raise ServiceNotFoundError(service_name, command, result.stderr)
            result.check(f"Could not read status of {service_name}")

        values = parse_show_output(result.stdout)
        if values.get("LoadState") == "not-found":
            raise ServiceNotFoundError(service_name, command, result.stderr)

        state = ServiceState.from_active_state(values.get("ActiveState", ""))
        pid = None
        if values.get("MainPID", "0").isdigit() and int(values["MainPID"]) > 0:
            pid = int(values["MainPID"])

        uptime = None
        entered = values.get("ActiveEnterTimestampMonotonic", "0")
        if state == ServiceState.RUNNING and entered.isdigit() and int(entered) > 0:
            proc = await executor.run(target, privileged, "cat /proc/uptime")
            if proc.is_success and proc.stdout.split():
                try:
                    boot_seconds = float(proc.stdout.split()[0])
                    uptime = max(boot_seconds - int(entered) / 1_000_000, 0.0)
                except ValueError:
                    uptime = None

        return ServiceStatus(
            name=service_name,
            state=state,
            sub_state=values.get("SubState", ""),
            pid=pid,
            uptime_seconds=uptime,
        )

    async def tail_logs(
        self,
        target: ServerTarget,
        service_name: str,
        lines: int = 50,
        log_path: Optional[str] = None,
        executor: Optional[CommandExecutor] = None,
    ) -> str:
        """Last lines of the app log file, or of the journal when there is none."""
        executor = executor or self.executor
        privileged, sudo = self._identity(target)
        lines = max(int(lines), 1)

        if log_path:
            result = await executor.run(
                target, privileged, f"tail -n {lines} {quote(log_path)}"
            )
            if result.is_success:
                return result.stdout

        command = f"journalctl -u {quote(service_name)} -n {lines} --no-pager"
        result = await executor.run(target, privileged, command, sudo=sudo)
        if result.is_failure:
            raise RemoteCommandError(
                command,
                result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
                message=f"Could not read logs of {service_name}",
            )
        return result.stdout
