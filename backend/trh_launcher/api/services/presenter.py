"""
Web presentation adapter

Forwards orchestrator updates to WebSocket clients and parks the port-freeing
confirmation on a future that the HTTP confirm/cancel endpoints resolve.
"""

import asyncio
import logging

from trh_launcher.api.services.websocket_manager import WebSocketManager
from trh_launcher.core.exceptions import InvalidStateError
from trh_launcher.ports.models import PortConflict
from trh_launcher.setup.models import SetupError, SetupRun

logger = logging.getLogger(__name__)


class WebPresenter:
    """IPresentationAdapter backed by the WebSocket manager"""

    def __init__(self, websocket_manager: WebSocketManager, confirm_timeout: float | None = None):
        self.websocket_manager = websocket_manager
        self.confirm_timeout = confirm_timeout
        self._pending: asyncio.Future | None = None
        self._pending_conflicts: list[PortConflict] = []

    @property
    def pending_conflicts(self) -> list[PortConflict]:
        """Conflicts awaiting a decision, empty when nothing is pending"""
        if self._pending is None or self._pending.done():
            return []
        return list(self._pending_conflicts)

    async def on_state(self, run: SetupRun) -> None:
        await self.websocket_manager.broadcast_state(run)

    async def on_error(self, run: SetupRun, error: SetupError) -> None:
        self._cancel_pending()
        await self.websocket_manager.broadcast_error(run, error)

    async def on_complete(self, run: SetupRun) -> None:
        await self.websocket_manager.broadcast_complete(run)

    async def confirm_free_ports(self, conflicts: list[PortConflict]) -> bool:
        """
        Wait for the user to confirm or cancel over HTTP.

        A timeout (when configured) counts as a cancel.
        """
        loop = asyncio.get_running_loop()
        self._pending = loop.create_future()
        self._pending_conflicts = list(conflicts)
        logger.info(f"Waiting for confirmation to free ports: {[c.port for c in conflicts]}")
        await self.websocket_manager.broadcast_port_conflict(conflicts)

        try:
            return await asyncio.wait_for(self._pending, timeout=self.confirm_timeout)
        except asyncio.TimeoutError:
            logger.warning("Port confirmation timed out, treating as cancel")
            return False
        finally:
            self._pending = None
            self._pending_conflicts = []

    def resolve(self, confirmed: bool) -> list[PortConflict]:
        """
        Answer the pending confirmation.

        Raises:
            InvalidStateError: If no confirmation is pending
        """
        if self._pending is None or self._pending.done():
            raise InvalidStateError("No port confirmation is pending")
        conflicts = list(self._pending_conflicts)
        self._pending.set_result(confirmed)
        logger.info(f"Port confirmation {'accepted' if confirmed else 'declined'}")
        return conflicts

    def _cancel_pending(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.set_result(False)
