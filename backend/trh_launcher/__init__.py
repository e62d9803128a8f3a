"""
TRH Launcher

Brings up the local TRH platform stack (database, backend API and UI
containers) and keeps it healthy.
"""

__version__ = "1.0.0"

from trh_launcher.runtime.gateway import RuntimeGateway
from trh_launcher.setup.models import SetupRun, SetupStep
from trh_launcher.setup.orchestrator import SetupOrchestrator

__all__ = [
    "RuntimeGateway",
    "SetupOrchestrator",
    "SetupRun",
    "SetupStep",
]
