"""
pbdeploy Exception Hierarchy

Clean exception hierarchy for consistent error handling across the engine and CLI.
"""

from typing import Optional


class PBDeployError(Exception):
    """Base exception for all pbdeploy errors."""

    retryable = False

    def __init__(self, message: str, context: Optional[str] = None):
        self.message = message
        self.context = context
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format error message with optional context."""
        if self.context:
            return f"{self.message}\nContext: {self.context}"
        return self.message


class ConfigurationError(PBDeployError):
    """Raised when configuration is invalid or missing."""

    pass


class ValidationError(PBDeployError):
    """Raised when input or an artifact fails validation."""

    pass


class StateError(PBDeployError):
    """Raised when a state transition is not allowed."""

    pass


class PreconditionError(PBDeployError):
    """Raised when an operation is requested against a target in the wrong state."""

    pass


class DeploymentError(PBDeployError):
    """Raised when deployment operations fail."""

    pass


class SSHError(PBDeployError):
    """Raised when SSH operations fail."""

    pass


class SSHConnectionError(SSHError):
    """Raised when a host is unreachable or refuses the connection."""

    retryable = True

    def __init__(self, message: str, context: Optional[str] = None, refused: bool = False):
        self.refused = refused
        super().__init__(message, context)


class AuthenticationError(SSHError):
    """Raised when every configured credential is rejected."""

    pass


class CommandTimeoutError(SSHError):
    """Raised when a remote command exceeds its deadline."""

    def __init__(self, command: str, timeout: float, host: str = ""):
        self.command = command
        self.timeout = timeout
        message = f"Command timed out after {timeout}s"
        context = f"Host: {host}, Command: {command}" if host else f"Command: {command}"
        super().__init__(message, context)


class LockdownExpectedError(SSHError):
    """
    Raised when the privileged identity is requested on a locked target.

    Root login is disabled by the lockdown, so this is a known state rather
    than a connection anomaly.
    """

    def __init__(self, host: str, username: str):
        self.host = host
        self.username = username
        message = "Root SSH access disabled by security lockdown"
        context = f"Host: {host}, User: {username}"
        super().__init__(message, context)


class RemoteCommandError(PBDeployError):
    """Raised when a well-formed remote command exits nonzero."""

    def __init__(
        self,
        command: str,
        exit_code: int,
        stdout: str = "",
        stderr: str = "",
        message: Optional[str] = None,
    ):
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        detail = (stderr or stdout).strip()
        context = f"Command: {command}, Exit code: {exit_code}"
        if detail:
            context += f", Output: {detail}"
        super().__init__(message or "Remote command failed", context)


class ServiceNotFoundError(RemoteCommandError):
    """Raised when the managed system service does not exist on the target."""

    def __init__(self, service_name: str, command: str = "", stderr: str = ""):
        self.service_name = service_name
        super().__init__(
            command,
            5,
            stderr=stderr,
            message=f"Service '{service_name}' not found",
        )


class StepFailedError(PBDeployError):
    """Raised when one step of a multi-step workflow fails."""

    def __init__(self, step: str, cause: Exception):
        self.step = step
        self.cause = cause
        super().__init__(f"Step '{step}' failed", str(cause))


class DeploymentInProgressError(PreconditionError):
    """Raised when an application already has a deployment running."""

    def __init__(self, app_name: str):
        self.app_name = app_name
        message = f"A deployment for app '{app_name}' is already in progress"
        super().__init__(message, "Wait for it to finish or cancel it first")


class ServerNotFoundError(ConfigurationError):
    """Raised when a server is not registered."""

    def __init__(self, server_name: str, available_servers: list[str]):
        self.server_name = server_name
        self.available_servers = available_servers
        message = f"Server '{server_name}' not found"
        context = f"Available servers: {', '.join(available_servers) or 'none'}"
        super().__init__(message, context)


class AppNotFoundError(ConfigurationError):
    """Raised when an app is not registered."""

    def __init__(self, app_name: str, available_apps: list[str]):
        self.app_name = app_name
        self.available_apps = available_apps
        message = f"App '{app_name}' not found"
        context = f"Available apps: {', '.join(available_apps) or 'none'}"
        super().__init__(message, context)


class VersionNotFoundError(ConfigurationError):
    """Raised when a version is not registered for an app."""

    def __init__(self, version_number: str, app_name: str):
        self.version_number = version_number
        self.app_name = app_name
        message = f"Version '{version_number}' not found for app '{app_name}'"
        context = f"Run: pbdeploy versions:list {app_name}"
        super().__init__(message, context)


class DeploymentNotFoundError(ConfigurationError):
    """Raised when a deployment record does not exist."""

    def __init__(self, deployment_id: str):
        self.deployment_id = deployment_id
        super().__init__(f"Deployment '{deployment_id}' not found")
