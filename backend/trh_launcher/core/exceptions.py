"""
Base exception hierarchy

Provides a consistent exception structure across the launcher
with clear error messages and recovery hints.

Every component converts subprocess and OS-level failures into one of
these kinds before the failure crosses a component boundary.
"""


class LauncherError(Exception):
    """
    Base exception for all launcher errors

    Attributes:
        message: Error message
        component: Component that raised the error
        recovery_hint: Optional hint for recovery
        retryable: Whether a full setup retry may resolve the error
    """

    retryable = True

    def __init__(self, message: str, component: str = "", recovery_hint: str = ""):
        self.message = message
        self.component = component
        self.recovery_hint = recovery_hint
        super().__init__(message)

    def __str__(self) -> str:
        msg = super().__str__()
        if self.component:
            msg = f"[{self.component}] {msg}"
        if self.recovery_hint:
            msg += f"\n💡 Recovery: {self.recovery_hint}"
        return msg


class EnvironmentError(LauncherError):
    """Container runtime missing or not running - the user must act outside the app"""

    def __init__(self, message: str, recovery_hint: str = ""):
        super().__init__(
            message,
            component="Environment",
            recovery_hint=recovery_hint or "Install or start Docker Desktop, then retry",
        )


class RuntimeNotInstalledError(EnvironmentError):
    """The Docker CLI could not be found or does not run"""

    def __init__(self, message: str = "Docker is not installed", recovery_hint: str = ""):
        super().__init__(
            message,
            recovery_hint=recovery_hint or "Install Docker Desktop to continue",
        )


class DaemonUnreachableError(EnvironmentError):
    """The Docker daemon refused the connection"""

    def __init__(self, message: str = "Docker daemon is not reachable", recovery_hint: str = ""):
        super().__init__(
            message,
            recovery_hint=recovery_hint or "Start Docker Desktop and retry",
        )


class TransientInfraError(LauncherError):
    """Timeouts and temporary daemon unresponsiveness"""

    def __init__(self, message: str, recovery_hint: str = ""):
        super().__init__(
            message,
            component="Runtime",
            recovery_hint=recovery_hint or "Check your network connection and retry",
        )


class ComposeError(TransientInfraError):
    """A compose or exec command exited with a non-zero status"""

    def __init__(self, message: str, exit_code: int | None = None, stderr: str = ""):
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message, recovery_hint="See the log output for details")


class ConflictError(LauncherError):
    """A required port is bound by a process outside the stack"""

    def __init__(self, message: str, ports: list[int] | None = None, recovery_hint: str = ""):
        self.ports = ports or []
        super().__init__(
            message,
            component="Ports",
            recovery_hint=recovery_hint or "Free the required ports manually and retry",
        )


class PortConflictError(ConflictError):
    """Compose reported a port allocation failure while starting the stack"""


class ConfigurationError(LauncherError):
    """Invalid credentials, missing compose file and similar - retrying won't help"""

    retryable = False

    def __init__(self, message: str, recovery_hint: str = ""):
        super().__init__(
            message,
            component="Configuration",
            recovery_hint=recovery_hint or "Check your settings and credentials",
        )


class MissingImageError(ConfigurationError):
    """A stack image could not be found locally or in the registry"""

    def __init__(self, message: str):
        super().__init__(message, recovery_hint="Pull the images again or check the image names")


class VerificationError(LauncherError):
    """Post-install verification still failing"""

    retryable = False

    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__(
            f"Still missing: {', '.join(self.missing)}",
            component="Dependencies",
            recovery_hint="Install the missing tools inside the backend container manually",
        )


class OperationInProgressError(LauncherError):
    """Another setup, start, stop or install operation is already running"""

    def __init__(self, operation: str | None = None):
        self.operation = operation
        detail = f" ({operation})" if operation else ""
        super().__init__(
            f"Operation in progress{detail}",
            component="Orchestrator",
            recovery_hint="Wait for the current operation to finish",
        )


class InvalidStateError(LauncherError):
    """The requested operation does not apply to the current run"""

    retryable = False

    def __init__(self, message: str, recovery_hint: str = ""):
        super().__init__(message, component="Orchestrator", recovery_hint=recovery_hint)
