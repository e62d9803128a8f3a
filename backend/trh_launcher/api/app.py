"""
FastAPI application - Launcher API server

Provides REST and WebSocket endpoints that drive the setup pipeline.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from trh_launcher import __version__
from trh_launcher.api.routers import health_router
from trh_launcher.api.routers.logs import router as logs_router
from trh_launcher.api.routers.setup import router as setup_router
from trh_launcher.api.routers.stack import router as stack_router
from trh_launcher.api.routers.websockets import router as websockets_router
from trh_launcher.api.services.log_capture import setup_log_capture
from trh_launcher.core.config import get_settings
from trh_launcher.startup.lifecycle import lifespan

logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(
    title="TRH Launcher API",
    description="REST API for setting up and controlling the local TRH platform stack",
    version=__version__,
    lifespan=lifespan,
)

# Health first, before other routes
app.include_router(health_router)
app.include_router(setup_router)
app.include_router(stack_router)
app.include_router(logs_router)
app.include_router(websockets_router)

setup_log_capture(max_entries=settings.log_buffer_size)
logger.info("Log capture initialized for UI access")

# The server binds to localhost only; the UI shell may use file:// or app:// origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
