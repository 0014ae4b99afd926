"""
Pooled Connection Model

Bookkeeping wrapper around one authenticated SSH session.
"""

from dataclasses import dataclass, field
from typing import Any, Optional
from enum import Enum

from .server import ConnectionKey


class ConnectionState(Enum):
    """Lifecycle state of a pooled session."""

    IDLE = "idle"
    IN_USE = "in_use"
    CONDEMNED = "condemned"


@dataclass
class PooledConnection:
    """
    One authenticated session plus pool metadata.

    Timestamps come from the pool clock (monotonic seconds).
    """

    key: ConnectionKey
    connection: Any
    created_at: float
    last_used: float
    use_count: int = 0
    consecutive_failures: int = 0
    last_health_ok: Optional[bool] = None
    state: ConnectionState = ConnectionState.IDLE

    @property
    def is_reusable(self) -> bool:
        return self.state == ConnectionState.IDLE

    @property
    def is_condemned(self) -> bool:
        return self.state == ConnectionState.CONDEMNED

    def checkout(self, now: float) -> None:
        self.state = ConnectionState.IN_USE
        self.use_count += 1
        self.last_used = now

    def checkin(self, now: float) -> None:
        if self.state == ConnectionState.IN_USE:
            self.state = ConnectionState.IDLE
        self.last_used = now

    def condemn(self) -> None:
        self.state = ConnectionState.CONDEMNED

    def record_health(self, healthy: bool, failure_threshold: int) -> bool:
        """
        Record a health check outcome.

        Returns:
            True if the connection is now condemned
        """
        self.last_health_ok = healthy
        if healthy:
            self.consecutive_failures = 0
            return False
        self.consecutive_failures += 1
        if self.consecutive_failures >= failure_threshold:
            self.condemn()
            return True
        return False

    def age(self, now: float) -> float:
        return now - self.created_at

    def idle_for(self, now: float) -> float:
        return now - self.last_used

    def __repr__(self) -> str:
        return f"PooledConnection(key={self.key}, state={self.state.value}, uses={self.use_count}, failures={self.consecutive_failures})"
