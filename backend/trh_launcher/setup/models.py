"""
Setup pipeline data models.

Contains the step/phase enums, per-step state, the dependency set and the
SetupRun snapshot handed to presentation layers.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


class SetupStep(str, Enum):
    """Pipeline steps, in execution order"""

    DOCKER_CHECK = "docker_check"
    IMAGE_PULL = "image_pull"
    PORT_RESOLUTION = "port_resolution"
    CONTAINER_START = "container_start"
    DEPENDENCY_INSTALL = "dependency_install"
    HEALTH_CHECK = "health_check"


STEP_ORDER = list(SetupStep)

STEP_TITLES = {
    SetupStep.DOCKER_CHECK: "Docker Environment",
    SetupStep.IMAGE_PULL: "Container Images",
    SetupStep.PORT_RESOLUTION: "Port Availability",
    SetupStep.CONTAINER_START: "Starting Services",
    SetupStep.DEPENDENCY_INSTALL: "Backend Dependencies",
    SetupStep.HEALTH_CHECK: "Platform Ready",
}


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SetupPhase(str, Enum):
    """Where the orchestrator is; DONE and FAILED are terminal"""

    IDLE = "idle"
    FAST_PATH = "fast_path"
    DOCKER_CHECK = "docker_check"
    IMAGE_PULL = "image_pull"
    PORT_RESOLUTION = "port_resolution"
    CONTAINER_START = "container_start"
    DEPENDENCY_INSTALL = "dependency_install"
    HEALTH_CHECK = "health_check"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SetupPhase.DONE, SetupPhase.FAILED)


@dataclass
class StepState:
    """
    State of a single pipeline step

    Attributes:
        status: pending/running/succeeded/failed
        detail: Short human-readable detail shown next to the step
        progress: Optional percentage (0-100) for steps that report one
    """

    step: SetupStep
    status: StepStatus = StepStatus.PENDING
    detail: str = "Waiting..."
    progress: int | None = None

    def to_dict(self) -> dict:
        return {
            "step": self.step.value,
            "title": STEP_TITLES[self.step],
            "status": self.status.value,
            "detail": self.detail,
            "progress": self.progress,
        }


@dataclass
class SetupError:
    """User-facing failure summary attached to a failed run"""

    title: str
    message: str
    recovery_hint: str = ""
    retryable: bool = True
    show_install: bool = False
    kind: str = "LauncherError"

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "message": self.message,
            "recovery_hint": self.recovery_hint,
            "retryable": self.retryable,
            "show_install": self.show_install,
            "kind": self.kind,
        }


@dataclass
class DependencySet:
    """Presence of each required tool inside the backend container"""

    tools: dict[str, bool] = field(default_factory=dict)

    @property
    def all_installed(self) -> bool:
        return bool(self.tools) and all(self.tools.values())

    @property
    def missing(self) -> list[str]:
        return [name for name, installed in self.tools.items() if not installed]

    def to_dict(self) -> dict:
        return {**self.tools, "all_installed": self.all_installed}


def _new_steps() -> dict[SetupStep, StepState]:
    return {step: StepState(step=step) for step in STEP_ORDER}


@dataclass
class SetupRun:
    """
    One traversal of the setup pipeline.

    Owned exclusively by the orchestrator; superseded when a new run starts.
    """

    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    phase: SetupPhase = SetupPhase.IDLE
    steps: dict[SetupStep, StepState] = field(default_factory=_new_steps)
    error: SetupError | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def start(self) -> None:
        self.started_at = datetime.now(UTC)

    def finish(self, phase: SetupPhase) -> None:
        self.phase = phase
        self.finished_at = datetime.now(UTC)

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict for API responses"""
        return {
            "run_id": self.run_id,
            "phase": self.phase.value,
            "steps": [self.steps[step].to_dict() for step in STEP_ORDER],
            "error": self.error.to_dict() if self.error else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
