"""Exception types raised by proclineage."""


class ProcLineageError(Exception):
    """Base class for all proclineage errors."""


class LaunchFailure(ProcLineageError):
    """The root process could not be launched or attached to."""


class MetadataUnavailable(ProcLineageError):
    """Path or command line of a process could not be read."""

    def __init__(self, pid: int, reason: str = "") -> None:
        self.pid = pid
        self.reason = reason
        super().__init__(f"metadata unavailable for pid {pid}" + (f": {reason}" if reason else ""))


class LivenessCheckError(ProcLineageError):
    """The host could not say whether a process is alive."""

    def __init__(self, pid: int, reason: str = "") -> None:
        self.pid = pid
        self.reason = reason
        super().__init__(f"liveness check failed for pid {pid}" + (f": {reason}" if reason else ""))


class NotificationSubscriptionFailure(ProcLineageError):
    """Process-creation notifications could not be subscribed to."""
