"""
Tests for the /ws/setup endpoint and the WebSocket manager
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from trh_launcher.api.routers.websockets import router as websockets_router
from trh_launcher.api.services.presenter import WebPresenter
from trh_launcher.api.services.websocket_manager import WebSocketManager
from trh_launcher.ports.models import PortConflict
from trh_launcher.setup.models import SetupError, SetupRun

CONFLICTS = [PortConflict(3000, 4242, "node")]


@pytest.fixture
def services():
    services = MagicMock()
    services.orchestrator.run = SetupRun()
    services.presenter.pending_conflicts = []
    services.websocket_manager = WebSocketManager()
    return services


@pytest.fixture
def client(services):
    app = FastAPI()
    app.include_router(websockets_router)
    app.state.services = services
    return TestClient(app)


class TestSetupWebSocket:
    def test_sends_state_on_connect(self, client, services):
        with client.websocket_connect("/ws/setup") as websocket:
            message = websocket.receive_json()

        assert message["type"] == "state"
        assert message["data"]["run_id"] == services.orchestrator.run.run_id
        assert message["data"]["phase"] == "idle"

    def test_ping_pong(self, client):
        with client.websocket_connect("/ws/setup") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "ping", "timestamp": 1234})
            assert websocket.receive_json() == {"type": "pong", "timestamp": 1234}

            websocket.send_text("not json")
            assert websocket.receive_json() == {"type": "pong", "data": "not json"}

    def test_replays_pending_port_conflict(self, client, services):
        """Test that a client connecting mid-confirmation still gets the prompt"""
        loop = asyncio.new_event_loop()
        manager = MagicMock()
        manager.broadcast_port_conflict = AsyncMock()
        presenter = WebPresenter(manager)
        services.presenter = presenter
        try:
            waiting = loop.create_task(presenter.confirm_free_ports(CONFLICTS))
            loop.run_until_complete(asyncio.sleep(0))
            assert presenter.pending_conflicts == CONFLICTS

            with client.websocket_connect("/ws/setup") as websocket:
                assert websocket.receive_json()["type"] == "state"
                assert websocket.receive_json() == {
                    "type": "port_conflict",
                    "conflicts": [{"port": 3000, "pid": 4242, "process_name": "node"}],
                }

            presenter.resolve(True)
            assert loop.run_until_complete(waiting) is True
        finally:
            loop.close()


class TestWebSocketManager:
    @pytest.fixture
    def websocket(self):
        websocket = MagicMock()
        websocket.accept = AsyncMock()
        websocket.send_json = AsyncMock()
        websocket.close = AsyncMock()
        return websocket

    @pytest.mark.asyncio
    async def test_broadcasts(self, websocket):
        manager = WebSocketManager()
        await manager.connect(websocket)
        run = SetupRun()

        await manager.broadcast_state(run)
        await manager.broadcast_error(run, SetupError(title="Timeout", message="slow"))
        await manager.broadcast_complete(run)
        await manager.broadcast_port_conflict(CONFLICTS)

        types = [c.args[0]["type"] for c in websocket.send_json.await_args_list]
        assert types == ["state", "error", "complete", "port_conflict"]
        await manager.close_all()

    @pytest.mark.asyncio
    async def test_failed_socket_is_dropped(self, websocket):
        manager = WebSocketManager()
        await manager.connect(websocket)
        websocket.send_json.side_effect = RuntimeError("closed")

        await manager.broadcast_state(SetupRun())

        assert manager._connections == []

    @pytest.mark.asyncio
    async def test_log_lines_are_batched(self, websocket):
        manager = WebSocketManager()
        await manager.connect(websocket)
        manager.bind_loop(asyncio.get_running_loop())

        manager.publish_log("trh-backend Pulling")
        manager.publish_log("trh-backend Pulled")
        await asyncio.sleep(0.3)

        message = websocket.send_json.await_args.args[0]
        assert message["type"] == "batch"
        assert message["messages"] == [
            {"type": "log", "line": "trh-backend Pulling"},
            {"type": "log", "line": "trh-backend Pulled"},
        ]
        await manager.close_all()

    def test_publish_log_without_loop_is_noop(self):
        WebSocketManager().publish_log("ignored")
