"""
Application Services Container

Centralized container for all application-level services.
Routers reach these through app.state.services.
"""

import asyncio
import logging
from dataclasses import dataclass

from fastapi import Request

from trh_launcher.api.services.log_capture import RuntimeLogBuffer, get_runtime_log_buffer
from trh_launcher.api.services.presenter import WebPresenter
from trh_launcher.api.services.websocket_manager import WebSocketManager
from trh_launcher.core.config import Settings, get_settings
from trh_launcher.runtime.process import set_log_sink
from trh_launcher.setup.orchestrator import SetupOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    """
    Container for all application-level services

    Provides centralized access to:
    - SetupOrchestrator (setup pipeline and stack operations)
    - WebSocketManager (WebSocket connections)
    - WebPresenter (bridges the two)
    - RuntimeLogBuffer (raw runtime output)
    """

    orchestrator: SetupOrchestrator
    websocket_manager: WebSocketManager
    presenter: WebPresenter
    log_buffer: RuntimeLogBuffer

    @classmethod
    def create(cls, settings: Settings | None = None) -> "AppServices":
        """
        Create new AppServices instance with all dependencies

        The runtime log buffer becomes the process-wide log sink and every
        line is also pushed to WebSocket clients.
        """
        logger.info("Initializing application services...")
        settings = settings or get_settings()

        websocket_manager = WebSocketManager()
        presenter = WebPresenter(websocket_manager)
        orchestrator = SetupOrchestrator(presenter=presenter, settings=settings)

        log_buffer = get_runtime_log_buffer(settings.log_buffer_size)
        log_buffer.add_listener(websocket_manager.publish_log)
        set_log_sink(log_buffer)

        try:
            websocket_manager.bind_loop(asyncio.get_running_loop())
        except RuntimeError:
            logger.debug("No running loop yet, log lines will not be pushed to WebSocket clients")

        logger.info("✅ Application services initialized")

        return cls(
            orchestrator=orchestrator,
            websocket_manager=websocket_manager,
            presenter=presenter,
            log_buffer=log_buffer,
        )

    async def cleanup(self) -> None:
        """
        Cleanup all services (called on shutdown)
        """
        logger.info("Cleaning up application services...")

        await self.orchestrator.shutdown(stop_stack=True)

        self.log_buffer.remove_listener(self.websocket_manager.publish_log)
        set_log_sink(None)

        await self.websocket_manager.close_all()

        logger.info("✅ Application services cleaned up")


def get_services(request: Request) -> AppServices:
    """FastAPI dependency returning the services created during startup"""
    return request.app.state.services
