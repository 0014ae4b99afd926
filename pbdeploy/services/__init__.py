"""
pbdeploy Services Layer

Remote execution engine (pool, executor) and the managers built on it.
"""

from .connection_pool import ConnectionPool, ConnectionHandle
from .executor import CommandExecutor, sudo_wrap
from .notifier import (
    ProgressEmitter,
    MemoryEmitter,
    ConsoleEmitter,
    FanoutEmitter,
    ProgressReporter,
)
from .setup_service import SetupManager
from .security_service import SecurityManager
from .service_controller import ServiceController
from .artifact_service import Artifact, ArtifactService
from .deployment_service import (
    AdminCredentials,
    DeploymentPipeline,
    DeploymentManager,
)
from .diagnostics_service import DiagnosticsEngine
from .task_runner import BackgroundTaskRunner, TaskHandle, TaskStatus
from .state_service import StateService

__all__ = [
    "ConnectionPool",
    "ConnectionHandle",
    "CommandExecutor",
    "sudo_wrap",
    "ProgressEmitter",
    "MemoryEmitter",
    "ConsoleEmitter",
    "FanoutEmitter",
    "ProgressReporter",
    "SetupManager",
    "SecurityManager",
    "ServiceController",
    "Artifact",
    "ArtifactService",
    "AdminCredentials",
    "DeploymentPipeline",
    "DeploymentManager",
    "DiagnosticsEngine",
    "BackgroundTaskRunner",
    "TaskHandle",
    "TaskStatus",
    "StateService",
]
