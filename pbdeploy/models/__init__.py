"""
pbdeploy Domain Models

Clean dataclass-based models for type-safe data handling.
"""

from .results import (
    CommandResult,
    ServiceState,
    ServiceStatus,
)
from .server import (
    AuthMode,
    ConnectionKey,
    ServerTarget,
)
from .connection import (
    ConnectionState,
    PooledConnection,
)
from .application import (
    AppStatus,
    ManagedApplication,
    AppVersion,
)
from .deployment import (
    DeploymentStatus,
    DeploymentRecord,
)
from .diagnostics import (
    Diagnostic,
    DiagnosticStatus,
    DiagnosticReport,
    RunStatus,
    Suggestion,
    SuggestionPriority,
)
from .progress import (
    ProgressEvent,
    ProgressStatus,
    subscription_key,
)

__all__ = [
    # Results
    "CommandResult",
    "ServiceState",
    "ServiceStatus",
    # Servers and connections
    "AuthMode",
    "ConnectionKey",
    "ServerTarget",
    "ConnectionState",
    "PooledConnection",
    # Applications
    "AppStatus",
    "ManagedApplication",
    "AppVersion",
    # Deployment
    "DeploymentStatus",
    "DeploymentRecord",
    # Diagnostics
    "Diagnostic",
    "DiagnosticStatus",
    "DiagnosticReport",
    "RunStatus",
    "Suggestion",
    "SuggestionPriority",
    # Progress
    "ProgressEvent",
    "ProgressStatus",
    "subscription_key",
]
