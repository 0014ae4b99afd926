"""
Server Models

Remote host descriptor and the keys used to pool sessions against it.
"""

from dataclasses import dataclass
from typing import Optional, Dict, Any
from enum import Enum

from pbdeploy.constants import (
    DEFAULT_SSH_PORT,
    DEFAULT_ROOT_USERNAME,
    DEFAULT_APP_USERNAME,
)


class AuthMode(Enum):
    """How the engine authenticates against a target."""

    AGENT = "agent"
    KEY_FILE = "key_file"


@dataclass(frozen=True)
class ConnectionKey:
    """Uniquely identifies one pooled session."""

    host: str
    port: int
    username: str

    def __str__(self) -> str:
        return f"{self.host}:{self.port}:{self.username}"


@dataclass
class ServerTarget:
    """
    A remote host under management.

    Once security_locked is set, the privileged identity is assumed to be
    unreachable over SSH and every operation goes through app_username.
    """

    id: str
    name: str
    host: str
    port: int = DEFAULT_SSH_PORT
    root_username: str = DEFAULT_ROOT_USERNAME
    app_username: str = DEFAULT_APP_USERNAME
    auth_mode: AuthMode = AuthMode.AGENT
    key_path: Optional[str] = None
    setup_complete: bool = False
    security_locked: bool = False

    @property
    def is_ready_for_deployment(self) -> bool:
        """Deployments require a provisioned and locked-down server."""
        return self.setup_complete and self.security_locked

    @property
    def default_privileged(self) -> bool:
        """Identity managers should use for routine operations."""
        return not self.security_locked

    def username_for(self, as_privileged: bool) -> str:
        return self.root_username if as_privileged else self.app_username

    def connection_key(self, as_privileged: bool) -> ConnectionKey:
        return ConnectionKey(self.host, self.port, self.username_for(as_privileged))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "root_username": self.root_username,
            "app_username": self.app_username,
            "auth_mode": self.auth_mode.value,
            "key_path": self.key_path,
            "setup_complete": self.setup_complete,
            "security_locked": self.security_locked,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerTarget":
        """Create from dictionary."""
        return cls(
            id=str(data["id"]),
            name=data.get("name", data["host"]),
            host=data["host"],
            port=int(data.get("port", DEFAULT_SSH_PORT)),
            root_username=data.get("root_username", DEFAULT_ROOT_USERNAME),
            app_username=data.get("app_username", DEFAULT_APP_USERNAME),
            auth_mode=AuthMode(data.get("auth_mode", AuthMode.AGENT.value)),
            key_path=data.get("key_path"),
            setup_complete=bool(data.get("setup_complete", False)),
            security_locked=bool(data.get("security_locked", False)),
        )

    def __repr__(self) -> str:
        return f"ServerTarget(name={self.name}, host={self.host}:{self.port}, setup={self.setup_complete}, locked={self.security_locked})"
