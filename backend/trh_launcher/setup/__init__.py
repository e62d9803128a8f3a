"""
Setup pipeline: health polling, dependency installation and the orchestrator
"""

from trh_launcher.setup.models import SetupPhase, SetupRun, SetupStep, StepStatus
from trh_launcher.setup.orchestrator import SetupOrchestrator

__all__ = ["SetupOrchestrator", "SetupPhase", "SetupRun", "SetupStep", "StepStatus"]
