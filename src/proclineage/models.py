"""Data models for proclineage."""

from dataclasses import asdict, dataclass
from enum import Enum

# Marker for a value that could not be obtained (hash, path, command line).
UNAVAILABLE = "<unavailable>"


class ProcessStatus(Enum):
    """Lifecycle status of a tracked process."""

    PENDING = "pending"  # Candidate not yet checked against the host
    ACTIVE = "active"
    TERMINATED = "terminated"

    @property
    def rank(self) -> int:
        """Position in the forward-only lifecycle order."""
        return _STATUS_RANK[self]


_STATUS_RANK = {
    ProcessStatus.PENDING: 0,
    ProcessStatus.ACTIVE: 1,
    ProcessStatus.TERMINATED: 2,
}


@dataclass(slots=True, frozen=True)
class ProcessRecord:
    """Immutable view of one observed process."""

    pid: int
    parent_pid: int | None  # None for the root
    name: str
    command_line: str
    executable_path: str
    creation_time: float  # Epoch seconds
    content_hash: str = UNAVAILABLE
    status: ProcessStatus = ProcessStatus.ACTIVE

    @property
    def has_exited(self) -> bool:
        return self.status is ProcessStatus.TERMINATED

    @property
    def is_root(self) -> bool:
        return self.parent_pid is None

    def to_dict(self) -> dict:
        """Return a JSON-ready mapping of the record."""
        data = asdict(self)
        data["status"] = self.status.value
        data["has_exited"] = self.has_exited
        return data


@dataclass(slots=True, frozen=True)
class CreationEvent:
    """Raw process-creation notification."""

    parent_pid: int
    pid: int
    name: str
    command_line: str
    creation_time: float


@dataclass(slots=True, frozen=True)
class LaunchedProcess:
    """Identity of a root process returned by the launcher."""

    pid: int
    name: str
    command_line: str
    executable_path: str
    creation_time: float
