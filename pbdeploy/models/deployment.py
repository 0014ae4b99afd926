"""
Deployment Record Model

One attempt to move an application to a given version.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any
from enum import Enum

from pbdeploy.constants import DEPLOYMENT_LOG_MAX_BYTES
from pbdeploy.exceptions import StateError
from pbdeploy.utils import utcnow, append_capped_log


class DeploymentStatus(Enum):
    """Status of a deployment attempt."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeploymentStatus.SUCCESS, DeploymentStatus.FAILED)


@dataclass
class DeploymentRecord:
    """
    Deployment state machine: pending -> running -> success | failed.

    A pending record may also fail directly (cancelled before it ran).
    Terminal records are immutable: every mutator raises StateError once
    status is success or failed.
    """

    id: str
    app_id: str
    version_id: str
    status: DeploymentStatus = DeploymentStatus.PENDING
    logs: str = ""
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    is_rollback: bool = False

    @property
    def is_running(self) -> bool:
        return self.status == DeploymentStatus.RUNNING

    @property
    def can_cancel(self) -> bool:
        return self.status in (DeploymentStatus.PENDING, DeploymentStatus.RUNNING)

    @property
    def can_retry(self) -> bool:
        return self.status == DeploymentStatus.FAILED

    @property
    def duration_seconds(self) -> Optional[float]:
        if not self.started_at:
            return None
        end = self.completed_at or utcnow()
        return (end - self.started_at).total_seconds()

    def _ensure_open(self) -> None:
        if self.status.is_terminal:
            raise StateError(
                f"Deployment {self.id} is already {self.status.value}",
                "Terminal deployments cannot change",
            )

    def append_log(self, message: str) -> None:
        self._ensure_open()
        self.logs = append_capped_log(self.logs, message, DEPLOYMENT_LOG_MAX_BYTES)

    def start(self) -> None:
        if self.status != DeploymentStatus.PENDING:
            raise StateError(
                f"Deployment {self.id} cannot start from {self.status.value}"
            )
        self.status = DeploymentStatus.RUNNING
        self.started_at = utcnow()

    def succeed(self, message: str = "Deployment completed successfully") -> None:
        if self.status != DeploymentStatus.RUNNING:
            raise StateError(
                f"Deployment {self.id} cannot succeed from {self.status.value}"
            )
        self._finish(DeploymentStatus.SUCCESS, message)

    def fail(self, message: str) -> None:
        self._ensure_open()
        self._finish(DeploymentStatus.FAILED, message)

    def _finish(self, status: DeploymentStatus, message: str) -> None:
        now = utcnow()
        if self.started_at:
            elapsed = (now - self.started_at).total_seconds()
            message = f"{message} (duration: {elapsed:.1f}s)"
        self.logs = append_capped_log(self.logs, message, DEPLOYMENT_LOG_MAX_BYTES, now)
        self.status = status
        self.completed_at = now

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "app_id": self.app_id,
            "version_id": self.version_id,
            "status": self.status.value,
            "logs": self.logs,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "created_at": self.created_at.isoformat(),
            "is_rollback": self.is_rollback,
        }

    def __repr__(self) -> str:
        return f"DeploymentRecord(id={self.id}, status={self.status.value}, version={self.version_id})"
