"""
Application Models

Remote deployment targets and the versions recorded for them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum

from pbdeploy.constants import APPS_DIR, APP_LOGS_DIR, BACKUPS_DIR, DEFAULT_HTTP_PORT
from pbdeploy.utils import utcnow


class AppStatus(Enum):
    """Last known status of a managed application."""

    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


@dataclass
class ManagedApplication:
    """A PocketBase app installed on one server."""

    id: str
    name: str
    server_id: str
    remote_path: str = ""
    service_name: str = ""
    domain: Optional[str] = None
    current_version: Optional[str] = None
    status: AppStatus = AppStatus.UNKNOWN

    def __post_init__(self):
        if not self.remote_path:
            self.remote_path = f"{APPS_DIR}/{self.name}"
        if not self.service_name:
            self.service_name = self.name

    @property
    def binary_path(self) -> str:
        return f"{self.remote_path}/{self.name}"

    @property
    def backups_path(self) -> str:
        """Directory holding this app's release backups, one subdirectory each."""
        return f"{BACKUPS_DIR}/{self.name}"

    @property
    def log_path(self) -> str:
        return f"{APP_LOGS_DIR}/{self.service_name}.log"

    @property
    def health_urls(self) -> List[str]:
        """URLs probed after a start; any success counts."""
        urls = [f"http://127.0.0.1:{DEFAULT_HTTP_PORT}/api/health"]
        if self.domain:
            urls.append("https://localhost/api/health")
            urls.append(f"https://{self.domain}/api/health")
        return urls

    def mark_online(self, version: str) -> None:
        self.current_version = version
        self.status = AppStatus.ONLINE

    def mark_offline(self) -> None:
        self.status = AppStatus.OFFLINE

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "server_id": self.server_id,
            "remote_path": self.remote_path,
            "service_name": self.service_name,
            "domain": self.domain,
            "current_version": self.current_version,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManagedApplication":
        """Create from dictionary."""
        return cls(
            id=str(data["id"]),
            name=data["name"],
            server_id=str(data["server_id"]),
            remote_path=data.get("remote_path") or "",
            service_name=data.get("service_name") or "",
            domain=data.get("domain"),
            current_version=data.get("current_version"),
            status=AppStatus(data.get("status", AppStatus.UNKNOWN.value)),
        )


@dataclass
class AppVersion:
    """A packaged release of an app; artifact is a local path or http(s) URL."""

    id: str
    app_id: str
    version_number: str
    artifact: str
    notes: str = ""
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "app_id": self.app_id,
            "version_number": self.version_number,
            "artifact": self.artifact,
            "notes": self.notes,
            "created_at": self.created_at.isoformat(),
        }
