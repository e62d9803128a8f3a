"""
Configuration management

Centralized settings using Pydantic BaseSettings for type-safe configuration
with environment variable support.

Every timeout, port and container name the launcher uses lives here so the
setup pipeline can be tuned without code changes (and shortened in tests).
"""

import logging
from pathlib import Path

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict

from .paths import get_compose_file, get_package_root, get_user_data_dir

logger = logging.getLogger(__name__)


class PortRequirement(BaseModel):
    """A local TCP port the stack needs exclusively"""

    port: int
    purpose: str


DEFAULT_REQUIRED_PORTS = [
    PortRequirement(port=3000, purpose="Platform UI"),
    PortRequirement(port=8000, purpose="Backend API"),
    PortRequirement(port=5433, purpose="PostgreSQL"),
]

INSTALL_SCRIPT_URL = (
    "https://raw.githubusercontent.com/tokamak-network/trh-backend/"
    "refs/heads/main/docker_install_dependencies_script.sh"
)


class Settings(BaseSettings):
    """
    Launcher settings with environment variable support

    Settings can be overridden via environment variables:
    - TRH_COMPOSE_FILE=/custom/docker-compose.yml
    - TRH_HEALTH_TIMEOUT=300
    - TRH_API_PORT=5050
    """

    # Stack topology
    compose_file: Path = get_compose_file()
    backend_container: str = "trh-backend"
    expected_containers: int = 3
    required_ports: list[PortRequirement] = DEFAULT_REQUIRED_PORTS
    platform_ui_url: str = "http://localhost:3000"

    # Timeouts (seconds)
    command_timeout: float = 30.0
    pull_timeout: float = 600.0
    compose_timeout: float = 120.0
    exec_timeout: float = 120.0
    install_timeout: float = 1800.0
    health_timeout: float = 180.0
    health_poll_interval: float = 3.0
    daemon_start_timeout: float = 60.0
    shutdown_grace_period: float = 5.0

    # Remediation
    port_settle_interval: float = 1.5
    container_start_attempts: int = 3
    dependency_settle_delay: float = 2.0
    verification_settle_delay: float = 1.0

    # Dependency installer
    install_script_url: str = INSTALL_SCRIPT_URL
    required_tools: list[str] = ["pnpm", "node", "forge", "aws"]

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 5050
    cors_origins: list[str] = ["*"]

    # Logging
    log_level: str = "INFO"
    log_buffer_size: int = 2000

    model_config = SettingsConfigDict(
        env_prefix="TRH_",
        env_file=(str(get_package_root() / ".env"), str(get_user_data_dir() / ".env")),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


# Singleton pattern for settings
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get launcher settings (singleton)

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
        logger.debug(f"Loaded settings (compose file: {_settings.compose_file})")
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next get_settings() re-reads the environment"""
    global _settings
    _settings = None
