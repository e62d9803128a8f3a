"""
Port probe data models.
"""

from dataclasses import asdict, dataclass, field

UNKNOWN_PROCESS = "unknown"


@dataclass
class PortConflict:
    """A required port bound by a process outside the managed stack"""

    port: int
    pid: int = 0
    process_name: str = UNKNOWN_PROCESS

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PortCheckResult:
    """Result of probing the required ports"""

    available: bool
    blocked_ports: list[int] = field(default_factory=list)
    conflicts: list[PortConflict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "available": self.available,
            "blocked_ports": self.blocked_ports,
            "conflicts": [c.to_dict() for c in self.conflicts],
        }
