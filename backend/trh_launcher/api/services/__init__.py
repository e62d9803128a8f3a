"""
API Services Package

Long-lived services shared by the routers.
"""

from trh_launcher.api.services.app_services import AppServices, get_services
from trh_launcher.api.services.presenter import WebPresenter
from trh_launcher.api.services.websocket_manager import WebSocketManager

__all__ = [
    "AppServices",
    "get_services",
    "WebPresenter",
    "WebSocketManager",
]
