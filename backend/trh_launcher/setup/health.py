"""
Health Poller - waits for the stack to report healthy

A polling loop over RuntimeGateway.status(); never raises on timeout.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

from trh_launcher.core.exceptions import LauncherError
from trh_launcher.runtime.gateway import RuntimeGateway
from trh_launcher.runtime.models import StackStatus
from trh_launcher.runtime.process import maybe_await

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str], Awaitable[None] | None]

HEALTHY_LABEL = "All services healthy"


def phase_label(status: StackStatus) -> str:
    """Coarse progress label derived from a stack status"""
    if status.healthy:
        return HEALTHY_LABEL
    if status.containers_up:
        return "Waiting for services to become healthy..."
    if status.running:
        return "Starting containers..."
    return "Waiting for Docker..."


class HealthPoller:
    """Polls the gateway on a fixed interval until healthy or the deadline passes"""

    def __init__(self, gateway: RuntimeGateway, interval: float | None = None):
        self.gateway = gateway
        self.interval = interval if interval is not None else gateway.settings.health_poll_interval

    async def wait_healthy(
        self, timeout: float | None = None, on_status: StatusCallback | None = None
    ) -> bool:
        """
        Wait until every container is running and healthy.

        Args:
            timeout: Seconds before giving up (default: settings.health_timeout)
            on_status: Receives a phase label before every poll interval

        Returns:
            True if a healthy status was seen within the window, False otherwise
        """
        if timeout is None:
            timeout = self.gateway.settings.health_timeout
        start = time.monotonic()

        while time.monotonic() - start < timeout:
            try:
                status = await self.gateway.status()
            except LauncherError as e:
                logger.debug(f"Status query failed while waiting for health: {e}")
                status = StackStatus(error=e.message)

            label = phase_label(status)
            if on_status is not None:
                await maybe_await(on_status(label))

            if status.healthy:
                logger.info(HEALTHY_LABEL)
                return True

            await asyncio.sleep(self.interval)

        logger.warning(f"Services did not become healthy within {timeout:.0f}s")
        return False
