"""
Progress Event Model

Events streamed out of long-running operations through the notification port.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any
from enum import Enum

from pbdeploy.utils import utcnow


class ProgressStatus(Enum):
    """Status carried by one progress event."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


def subscription_key(kind: str, subject_id: str) -> str:
    """Subscription a consumer listens on, e.g. server_setup_<id>."""
    return f"{kind}_{subject_id}"


@dataclass(frozen=True)
class ProgressEvent:
    """One progress update."""

    step: str
    status: ProgressStatus
    message: str
    progress_pct: int = 0
    detail: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.step in ("complete", "failed")

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "step": self.step,
            "status": self.status.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "progress_pct": self.progress_pct,
        }
        if self.detail:
            data["detail"] = self.detail
        return data
