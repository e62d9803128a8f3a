"""
Health check endpoints

Kubernetes-style health endpoints for the launcher server itself:
- GET /health - Overall health check (healthy/degraded/unhealthy)
- GET /health/live - Liveness probe (always 200 if running)
- GET /health/detailed - Component-level health information

Stack health is served by /api/stack/status.
"""

from typing import Any

from fastapi import APIRouter, Response

from trh_launcher import __version__
from trh_launcher.startup.health import HealthStatus, get_health_state

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health_check(response: Response) -> dict[str, Any]:
    """
    Overall health check

    Returns:
        200: Launcher is healthy or degraded (can serve requests)
        503: Launcher is unhealthy
    """
    health = get_health_state()

    if health.overall == HealthStatus.UNHEALTHY:
        response.status_code = 503

    return {
        "status": health.overall.value,
        "ready": health.ready,
        "version": __version__,
        "errors": health.errors if health.errors else None,
        "warnings": health.warnings if health.warnings else None,
    }


@router.get("/live")
async def liveness_probe() -> dict[str, str]:
    """Always returns 200 if the application is running"""
    return {"status": "alive"}


@router.get("/detailed")
async def detailed_health(response: Response) -> dict[str, Any]:
    health = get_health_state()

    if health.overall == HealthStatus.UNHEALTHY:
        response.status_code = 503

    return health.to_dict()
