"""
Container runtime access: subprocess plumbing and the compose gateway
"""

from trh_launcher.runtime.gateway import RuntimeGateway
from trh_launcher.runtime.models import CommandResult, StackStatus

__all__ = ["RuntimeGateway", "CommandResult", "StackStatus"]
