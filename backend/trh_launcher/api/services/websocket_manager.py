"""
WebSocket Manager - Centralized WebSocket connection management

Manages WebSocket connections and broadcasts setup updates.
Runtime output lines are batched since they arrive at high frequency.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime

from fastapi import WebSocket

from trh_launcher.ports.models import PortConflict
from trh_launcher.setup.models import SetupError, SetupRun

logger = logging.getLogger(__name__)

# Batching configuration
BATCH_SIZE_THRESHOLD = 10  # Batch messages when queue exceeds this
BATCH_FLUSH_INTERVAL = 0.1  # Flush batched messages every 100ms


class WebSocketManager:
    """
    Manages WebSocket connections and broadcasts

    Responsibilities:
    - Track active WebSocket connections
    - Broadcast setup state, errors and completion
    - Broadcast runtime output lines (batched)
    - Handle connection cleanup
    """

    def __init__(self, keepalive_interval: int = 15, enable_batching: bool = True):
        """
        Initialize WebSocket manager

        Args:
            keepalive_interval: Seconds between server keepalive pings (default: 15)
            enable_batching: Enable message batching for log lines (default: True)
        """
        self._connections: list[WebSocket] = []
        self._lock = asyncio.Lock()
        self._keepalive_tasks: dict[WebSocket, asyncio.Task] = {}
        self._keepalive_interval = keepalive_interval
        self._loop: asyncio.AbstractEventLoop | None = None

        # Message batching state
        self._enable_batching = enable_batching
        self._message_queue: deque[dict] = deque()
        self._batch_task: asyncio.Task | None = None
        self._batch_lock = asyncio.Lock()

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Remember the server loop so log lines can be published from any thread"""
        self._loop = loop

    async def connect(self, websocket: WebSocket) -> None:
        """
        Add new WebSocket connection

        Args:
            websocket: WebSocket connection to add
        """
        await websocket.accept()
        async with self._lock:
            self._connections.append(websocket)
            task = asyncio.create_task(self._keepalive_loop(websocket))
            self._keepalive_tasks[websocket] = task
            logger.info(f"WebSocket connected. Total connections: {len(self._connections)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        """
        Remove WebSocket connection

        Args:
            websocket: WebSocket connection to remove
        """
        async with self._lock:
            if websocket in self._connections:
                self._connections.remove(websocket)
                if websocket in self._keepalive_tasks:
                    self._keepalive_tasks[websocket].cancel()
                    del self._keepalive_tasks[websocket]
                logger.info(
                    f"WebSocket disconnected. Total connections: {len(self._connections)}"
                )

    async def _keepalive_loop(self, websocket: WebSocket) -> None:
        """
        Send periodic keepalive pings to prevent connection timeout

        Image pulls and dependency installs can run for minutes without a
        state change, so the connection is kept alive independently.
        """
        try:
            while True:
                await asyncio.sleep(self._keepalive_interval)

                try:
                    await websocket.send_json({
                        "type": "keepalive",
                        "timestamp": datetime.now().isoformat()
                    })
                except Exception as e:
                    logger.warning(f"Failed to send keepalive to {websocket.client}: {e}")
                    break

        except asyncio.CancelledError:
            logger.debug(f"Keepalive task cancelled for {websocket.client}")

    # ==========================================================================
    # Setup messages
    # ==========================================================================

    async def broadcast_state(self, run: SetupRun) -> None:
        """Broadcast the current run snapshot"""
        await self._broadcast({"type": "state", "data": run.to_dict()})

    async def broadcast_error(self, run: SetupRun, error: SetupError) -> None:
        if not self._connections:
            logger.warning(
                f"Setup run {run.run_id} failed with no WebSocket connections active"
            )
        await self._broadcast({"type": "error", "run_id": run.run_id, "error": error.to_dict()})

    async def broadcast_complete(self, run: SetupRun) -> None:
        await self._broadcast({"type": "complete", "run_id": run.run_id})

    async def broadcast_port_conflict(self, conflicts: list[PortConflict]) -> None:
        """Ask connected clients to confirm freeing the listed ports"""
        await self._broadcast(
            {"type": "port_conflict", "conflicts": [c.to_dict() for c in conflicts]}
        )

    def publish_log(self, line: str) -> None:
        """
        Queue one runtime output line for broadcast.

        Safe to call from any thread; a no-op until bind_loop() was called.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        message = {"type": "log", "line": line}
        loop.call_soon_threadsafe(lambda: loop.create_task(self._queue_message(message)))

    # ==========================================================================
    # Transport
    # ==========================================================================

    async def _broadcast(self, message: dict) -> None:
        """
        Send message to all connected clients

        Args:
            message: Message dictionary to broadcast
        """
        disconnected = []

        async with self._lock:
            for ws in self._connections:
                try:
                    await ws.send_json(message)
                except Exception as e:
                    logger.warning(f"Failed to send message to WebSocket: {e}")
                    disconnected.append(ws)

            for ws in disconnected:
                self._connections.remove(ws)
                task = self._keepalive_tasks.pop(ws, None)
                if task:
                    task.cancel()

        if disconnected:
            logger.info(f"Removed {len(disconnected)} disconnected WebSocket(s)")

    async def close_all(self) -> None:
        """
        Close all WebSocket connections (called on shutdown)
        """
        logger.info("Closing all WebSocket connections...")

        if self._batch_task:
            self._batch_task.cancel()
            try:
                await self._batch_task
            except asyncio.CancelledError:
                pass
            self._batch_task = None

        await self._flush_batch()

        async with self._lock:
            for task in self._keepalive_tasks.values():
                task.cancel()
            self._keepalive_tasks.clear()

            for ws in self._connections:
                try:
                    await ws.close()
                except Exception as e:
                    logger.warning(f"Error closing WebSocket: {e}")

            self._connections.clear()

        logger.info("All WebSocket connections closed")

    async def _queue_message(self, message: dict) -> None:
        """
        Queue a message for batched sending

        If batching is disabled, sends immediately. Otherwise queues the
        message and starts the batch flush timer.
        """
        if not self._enable_batching:
            await self._broadcast(message)
            return

        async with self._batch_lock:
            self._message_queue.append(message)
            flush_now = len(self._message_queue) >= BATCH_SIZE_THRESHOLD

        if flush_now:
            await self._flush_batch()
        elif self._batch_task is None or self._batch_task.done():
            self._batch_task = asyncio.create_task(self._batch_flush_timer())

    async def _batch_flush_timer(self) -> None:
        try:
            await asyncio.sleep(BATCH_FLUSH_INTERVAL)
            await self._flush_batch()
        except asyncio.CancelledError:
            pass

    async def _flush_batch(self) -> None:
        """
        Flush all queued messages as a batch
        """
        async with self._batch_lock:
            if not self._message_queue:
                return

            messages = list(self._message_queue)
            self._message_queue.clear()

        if len(messages) == 1:
            await self._broadcast(messages[0])
        else:
            await self._broadcast({
                "type": "batch",
                "messages": messages,
                "count": len(messages),
            })
            logger.debug(f"Sent batched message with {len(messages)} items")
