"""
Result Models

Dataclass models for remote command results and service state.
"""

from dataclasses import dataclass
from typing import Optional
from enum import Enum

from pbdeploy.exceptions import RemoteCommandError


@dataclass
class CommandResult:
    """Result of a remote command execution."""

    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    host: str = ""
    duration_seconds: float = 0.0

    @property
    def is_success(self) -> bool:
        """Check if the command exited zero."""
        return self.exit_code == 0

    @property
    def is_failure(self) -> bool:
        """Check if the command exited nonzero."""
        return self.exit_code != 0

    @property
    def output(self) -> str:
        """Get combined output (stdout + stderr)."""
        return f"{self.stdout}\n{self.stderr}".strip()

    def check(self, message: Optional[str] = None) -> "CommandResult":
        """
        Raise RemoteCommandError when the command failed.

        Args:
            message: Optional error message replacing the generic one

        Returns:
            self, for chaining
        """
        if self.is_failure:
            raise RemoteCommandError(
                self.command,
                self.exit_code,
                stdout=self.stdout,
                stderr=self.stderr,
                message=message,
            )
        return self

    def __repr__(self) -> str:
        return f"CommandResult(host={self.host}, exit_code={self.exit_code}, duration={self.duration_seconds:.2f}s)"


class ServiceState(Enum):
    """Coarse state of a managed system service."""

    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @classmethod
    def from_active_state(cls, active_state: str) -> "ServiceState":
        """Map a systemd ActiveState value."""
        mapping = {
            "active": cls.RUNNING,
            "reloading": cls.RUNNING,
            "inactive": cls.STOPPED,
            "deactivating": cls.STOPPED,
            "failed": cls.FAILED,
        }
        return mapping.get(active_state, cls.UNKNOWN)


@dataclass
class ServiceStatus:
    """Status snapshot of a system service."""

    name: str
    state: ServiceState = ServiceState.UNKNOWN
    sub_state: str = ""
    pid: Optional[int] = None
    uptime_seconds: Optional[float] = None

    @property
    def is_running(self) -> bool:
        return self.state == ServiceState.RUNNING

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "sub_state": self.sub_state,
            "pid": self.pid,
            "uptime_seconds": self.uptime_seconds,
        }
