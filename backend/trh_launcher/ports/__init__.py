"""
Required-port probing and conflict remediation
"""

from trh_launcher.ports.models import PortCheckResult, PortConflict
from trh_launcher.ports.probe import PortProbe

__all__ = ["PortProbe", "PortCheckResult", "PortConflict"]
