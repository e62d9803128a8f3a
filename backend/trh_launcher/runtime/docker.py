"""
Docker detection utilities.

Handles:
- Docker executable detection on macOS, Linux and Windows
- The extended PATH every runtime invocation runs with
- Platform-specific install pages and daemon launch commands
"""

import logging
import os
import platform
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

# Windows-specific subprocess flag to hide console window
# On non-Windows platforms, use 0 (no flags)
CREATION_FLAGS = (
    subprocess.CREATE_NO_WINDOW if platform.system() == "Windows" else 0
)

# Checked in order; the first existing path wins
DOCKER_PATHS = [
    Path("/usr/local/bin/docker"),
    Path("/opt/homebrew/bin/docker"),
    Path("/usr/bin/docker"),
    Path("/Applications/Docker.app/Contents/Resources/bin/docker"),
    Path(os.environ.get("ProgramFiles", "C:\\Program Files"))
    / "Docker"
    / "Docker"
    / "resources"
    / "bin"
    / "docker.exe",
]

# GUI-launched processes on macOS do not inherit the login shell PATH
EXTRA_PATH_DIRS = ["/usr/local/bin", "/opt/homebrew/bin", "/usr/bin", "/bin"]

INSTALL_URLS = {
    "Darwin": "https://docs.docker.com/desktop/install/mac-install/",
    "Windows": "https://docs.docker.com/desktop/install/windows-install/",
    "Linux": "https://docs.docker.com/desktop/install/linux-install/",
}


def find_docker_executable() -> str | None:
    """
    Find the Docker executable path.

    Checks the well-known install locations in order and returns the
    first that exists.

    Returns:
        Path to docker executable, or None if not found
    """
    for path in DOCKER_PATHS:
        if path.exists():
            logger.debug(f"Found Docker at: {path}")
            return str(path)

    logger.debug("Docker not found in well-known locations, relying on PATH")
    return None


def get_docker_command() -> list[str]:
    """
    Get the Docker command with proper path handling.

    Returns:
        List containing the docker command (full path when found,
        otherwise plain "docker" resolved through PATH)
    """
    docker_path = find_docker_executable()
    if docker_path:
        return [docker_path]

    # Fall back to just "docker" and let the shell search path resolve it
    return ["docker"]


def get_extended_path(current: str | None = None) -> str:
    """Prefix the inherited PATH with the well-known binary directories"""
    if current is None:
        current = os.environ.get("PATH", "")
    return os.pathsep.join(EXTRA_PATH_DIRS + ([current] if current else []))


def get_docker_env(extra: dict[str, str] | None = None) -> dict[str, str]:
    """
    Build the environment for a runtime invocation.

    Args:
        extra: Additional variables (e.g. ADMIN_EMAIL) layered on top

    Returns:
        A copy of os.environ with the extended PATH applied
    """
    env = os.environ.copy()
    env["PATH"] = get_extended_path(env.get("PATH"))
    if extra:
        env.update(extra)
    return env


def get_install_url(system: str | None = None) -> str:
    """Docker Desktop install page for the given (or current) platform"""
    system = system or platform.system()
    return INSTALL_URLS.get(system, INSTALL_URLS["Linux"])


def get_daemon_launch_command(system: str | None = None) -> list[str] | None:
    """
    Command that starts the Docker daemon on this platform.

    Returns:
        Command list, or None when the platform has no known launcher
    """
    system = system or platform.system()
    if system == "Darwin":
        return ["open", "-a", "Docker"]
    if system == "Linux":
        return ["systemctl", "--user", "start", "docker-desktop"]
    if system == "Windows":
        desktop = (
            Path(os.environ.get("ProgramFiles", "C:\\Program Files"))
            / "Docker"
            / "Docker"
            / "Docker Desktop.exe"
        )
        return [str(desktop)]
    return None
