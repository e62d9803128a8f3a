"""
Core interfaces and protocols

Defines the protocol the setup orchestrator uses to talk to whichever
presentation layer drives it (web API or terminal).
"""

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from trh_launcher.ports.models import PortConflict
    from trh_launcher.setup.models import SetupError, SetupRun


class IPresentationAdapter(Protocol):
    """Protocol for presentation layers driven by the orchestrator"""

    async def on_state(self, run: "SetupRun") -> None:
        """Called after every step transition or detail update"""
        ...

    async def on_error(self, run: "SetupRun", error: "SetupError") -> None:
        """Called once when a run fails"""
        ...

    async def on_complete(self, run: "SetupRun") -> None:
        """Called exactly once when a run reaches DONE"""
        ...

    async def confirm_free_ports(self, conflicts: list["PortConflict"]) -> bool:
        """
        Ask the user whether the processes holding required ports may be stopped

        Returns:
            bool: True to free the ports, False to cancel the run
        """
        ...
