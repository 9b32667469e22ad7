"""Session configuration."""

import hashlib
import math
from dataclasses import dataclass, field

DEFAULT_POLL_INTERVAL = 0.2
DEFAULT_WATCH_INTERVAL = 0.05


@dataclass(slots=True)
class SessionConfig:
    """
    Settings for one monitoring session.

    Exactly one of ``command`` (launch a new root) or ``attach_pid`` (monitor
    an existing process) must be given.
    """

    command: list[str] = field(default_factory=list)
    attach_pid: int | None = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    watch_interval: float = DEFAULT_WATCH_INTERVAL
    hash_algorithm: str = "sha256"

    def __post_init__(self) -> None:
        if not 0 < self.poll_interval < math.inf:
            raise ValueError(f"poll_interval must be a finite number > 0, got {self.poll_interval}")
        if not 0 < self.watch_interval < math.inf:
            raise ValueError(f"watch_interval must be a finite number > 0, got {self.watch_interval}")
        if bool(self.command) == (self.attach_pid is not None):
            raise ValueError("give either a command to launch or a pid to attach to")
        if self.hash_algorithm not in hashlib.algorithms_available:
            raise ValueError(f"unknown hash algorithm: {self.hash_algorithm}")

    @property
    def target(self) -> str:
        """Human-readable description of what is monitored."""
        if self.attach_pid is not None:
            return f"pid {self.attach_pid}"
        return " ".join(self.command)
