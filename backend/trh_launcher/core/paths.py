"""
Dynamic path resolution for the launcher.

Paths are calculated from the installed package location so the launcher
works regardless of the current working directory, the installation method
(pip install -e . vs direct run) or a frozen PyInstaller bundle.
"""

import os
import sys
from pathlib import Path


def is_frozen() -> bool:
    """
    Check if running as a frozen PyInstaller executable.

    Returns:
        bool: True if running as frozen executable, False otherwise
    """
    return getattr(sys, 'frozen', False) and hasattr(sys, '_MEIPASS')


def get_package_dir() -> Path:
    """
    Get the trh_launcher package directory.

    Returns:
        Path: Absolute path to trh_launcher/ directory
    """
    # This file is at: trh_launcher/core/paths.py
    return Path(__file__).parent.parent.resolve()


def get_package_root() -> Path:
    """
    Get the directory containing the trh_launcher package.

    Returns:
        Path: Absolute path to package root (e.g., /git/trh-launcher/backend)
    """
    return get_package_dir().parent


def get_resources_dir() -> Path:
    """
    Get the bundled resources directory (compose definition).

    Handles both development mode (source files) and bundled mode (PyInstaller).
    """
    if is_frozen():
        return Path(sys._MEIPASS) / "trh_launcher" / "resources"
    return get_package_dir() / "resources"


def get_compose_file() -> Path:
    """
    Get the default docker-compose.yml path.

    TRH_COMPOSE_FILE overrides the bundled file.
    """
    override = os.environ.get("TRH_COMPOSE_FILE")
    if override:
        return Path(override).expanduser().resolve()
    return get_resources_dir() / "docker-compose.yml"


def get_user_data_dir() -> Path:
    """
    Get the writable user data directory (~/.trh-launcher).

    TRH_LAUNCHER_DATA overrides the location, which is what a frozen
    installer sets to keep writes out of protected directories.
    """
    env_data = os.environ.get("TRH_LAUNCHER_DATA")
    if env_data:
        path = Path(env_data).expanduser().resolve()
    else:
        path = Path.home() / ".trh-launcher"
    path.mkdir(parents=True, exist_ok=True)
    return path
