"""
WebSocket endpoints router

Pushes setup state, runtime output and port-conflict prompts to the UI.
"""

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websockets"])


@router.websocket("/ws/setup")
async def setup_websocket(websocket: WebSocket):
    """
    WebSocket for real-time setup updates with heartbeat support

    Sends the current run snapshot on connect, then every update as it
    happens. Clients may send {"type": "ping"} and receive a pong.
    """
    services = websocket.app.state.services
    websocket_manager = services.websocket_manager

    await websocket_manager.connect(websocket)
    logger.info(f"WebSocket connection accepted from {websocket.client}")

    try:
        await websocket.send_json({"type": "state", "data": services.orchestrator.run.to_dict()})
        pending = services.presenter.pending_conflicts
        if pending:
            await websocket.send_json(
                {"type": "port_conflict", "conflicts": [c.to_dict() for c in pending]}
            )

        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "pong", "data": data})
                continue

            msg_type = message.get("type") if isinstance(message, dict) else None
            if msg_type == "ping":
                await websocket.send_json({"type": "pong", "timestamp": message.get("timestamp")})
            elif msg_type == "pong":
                logger.debug("Client acknowledged server keepalive")
            else:
                await websocket.send_json({"type": "pong", "data": data})

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: {websocket.client}")
    finally:
        await websocket_manager.disconnect(websocket)
