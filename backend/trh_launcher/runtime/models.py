"""
Runtime data models.

Contains dataclasses for Docker, stack and command status.
"""

from dataclasses import asdict, dataclass


@dataclass
class StackStatus:
    """
    Derived status of the managed stack.

    Recomputed on demand, never persisted.
    containers_up implies running implies installed; healthy implies containers_up.
    """

    installed: bool = False
    running: bool = False
    containers_up: bool = False
    healthy: bool = False
    error: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ContainerRecord:
    """One line of `docker compose ps --format json`"""

    name: str
    service: str
    state: str
    health: str | None = None

    @property
    def is_running(self) -> bool:
        return self.state.lower() == "running"

    @property
    def is_healthy(self) -> bool:
        return not self.health or self.health.lower() == "healthy"

    @classmethod
    def from_json(cls, record: dict) -> "ContainerRecord":
        return cls(
            name=str(record.get("Name", "")),
            service=str(record.get("Service", "")),
            state=str(record.get("State", "unknown")),
            health=record.get("Health") or None,
        )


@dataclass
class PullEvent:
    """Progress notification emitted for each line of `docker compose pull`"""

    source: str
    status: str


@dataclass
class InstallEvent:
    """Progress notification emitted by the dependency installer"""

    source: str
    status: str


@dataclass
class CommandResult:
    """Outcome of a completed subprocess"""

    args: list[str]
    returncode: int | None
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0
