"""
API routers

Modular FastAPI routers for different API domains.
"""

from trh_launcher.api.routers.health import router as health_router

__all__ = ["health_router"]
