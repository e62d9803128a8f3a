"""
Lifecycle management

Orchestrates launcher server startup and shutdown using FastAPI's lifespan
context manager pattern.
"""

import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI

from trh_launcher.core.config import get_settings
from trh_launcher.core.exceptions import ConfigurationError
from trh_launcher.runtime.gateway import RuntimeGateway
from trh_launcher.startup.exceptions import ServicesInitError, StartupError
from trh_launcher.startup.health import (
    HealthStatus,
    get_health_state,
    set_component_degraded,
    set_component_healthy,
    set_component_unhealthy,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan context manager

    Runs startup in phases:
    1. Compose definition (NON-FATAL - setup reports it as a configuration error)
    2. Docker runtime (NON-FATAL - setup walks the user through it)
    3. Application services (CRITICAL - must pass)

    On shutdown, in-flight subprocesses are terminated and the stack is
    stopped once, best-effort.
    """
    health = get_health_state()
    start_time = datetime.now(UTC)
    settings = get_settings()
    gateway = RuntimeGateway(settings)

    logger.info("=" * 60)
    logger.info("TRH Launcher - Startup")
    logger.info("=" * 60)

    try:
        # Phase 1: Compose definition
        logger.info("Phase 1/3: Compose Definition")
        try:
            path = gateway.compose_path()
            set_component_healthy("compose", f"Using {path}")
            logger.info(f"[OK] Compose file found: {path}")
        except ConfigurationError as e:
            logger.warning(f"[WARN]  {e.message}")
            set_component_degraded("compose", e.message)

        # Phase 2: Docker runtime
        logger.info("Phase 2/3: Docker Runtime")
        version = await gateway.docker_version()
        if version is None:
            set_component_degraded("docker", "Docker is not installed")
            logger.warning("[WARN]  Docker is not installed")
        elif not await gateway.daemon_check():
            set_component_degraded("docker", "Docker daemon is not running")
            logger.warning("[WARN]  Docker daemon is not running")
        else:
            set_component_healthy("docker", version)
            logger.info(f"[OK] {version}")

        # Phase 3: Application services (CRITICAL)
        logger.info("Phase 3/3: Initializing Application Services")
        try:
            from trh_launcher.api.services import AppServices

            app.state.services = AppServices.create(settings)
            set_component_healthy("services", "Application services initialized")
            logger.info("[OK] Application services initialized")
        except Exception as e:
            logger.error(f"[ERROR] Failed to initialize services: {e}")
            set_component_unhealthy("services", str(e))
            raise ServicesInitError(str(e))

        health.ready = True
        health.startup_time = datetime.now(UTC)

        if health.errors:
            health.overall = HealthStatus.UNHEALTHY
        elif health.warnings:
            health.overall = HealthStatus.DEGRADED
        else:
            health.overall = HealthStatus.HEALTHY

        elapsed = (datetime.now(UTC) - start_time).total_seconds()
        logger.info("=" * 60)
        logger.info(f"[OK] Launcher Ready (Startup time: {elapsed:.2f}s)")
        logger.info(f"   Overall Status: {health.overall.value.upper()}")
        logger.info(f"   Compose: {health.compose.status.value}")
        logger.info(f"   Docker: {health.docker.status.value}")

        if health.warnings:
            logger.warning(f"   Warnings: {len(health.warnings)}")
            for warning in health.warnings:
                logger.warning(f"     - {warning}")

        logger.info("=" * 60)

        yield

    except StartupError as e:
        logger.error("=" * 60)
        logger.error(f"[ERROR] Startup failed: {e}")
        logger.error("=" * 60)
        health.overall = HealthStatus.UNHEALTHY
        health.ready = False
        raise

    finally:
        logger.info("[STOP] Shutting down...")

        try:
            if hasattr(app.state, "services"):
                await app.state.services.cleanup()
                logger.info("[OK] Application services cleaned up")
        except Exception as e:
            logger.warning(f"[WARN]  Service cleanup warning: {e}")

        logger.info("[OK] Shutdown complete")
