"""
Core utilities: configuration, paths, validation and the error hierarchy
"""

from trh_launcher.core.config import Settings, get_settings
from trh_launcher.core.exceptions import LauncherError

__all__ = ["Settings", "get_settings", "LauncherError"]
