"""
Startup-specific exceptions

Provides clear error messages with recovery instructions for startup failures.
"""

from trh_launcher.core.exceptions import LauncherError


class StartupError(LauncherError):
    """Base exception for startup failures"""

    def __init__(self, message: str, component: str, recovery_hint: str = ""):
        super().__init__(message, component=component, recovery_hint=recovery_hint)


class ServicesInitError(StartupError):
    """Application services could not be created"""

    def __init__(self, message: str, recovery_hint: str = ""):
        super().__init__(
            message,
            component="Services",
            recovery_hint=recovery_hint or "Check the launcher configuration and restart",
        )
