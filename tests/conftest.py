"""Shared fakes for proclineage tests."""

import pytest

from proclineage.errors import (
    LaunchFailure,
    LivenessCheckError,
    MetadataUnavailable,
    NotificationSubscriptionFailure,
)
from proclineage.models import CreationEvent, LaunchedProcess

ROOT_PID = 100


class FakeHost:
    """In-memory launcher, liveness and metadata collaborator."""

    def __init__(self, root_pid: int = ROOT_PID) -> None:
        self.root_pid = root_pid
        self.alive: set[int] = set()
        self.metadata: dict[int, tuple[str, str]] = {}
        self.failing: set[int] = set()
        self.launch_error: Exception | None = None
        self.launched: list[list[str]] = []
        # pid -> creation time of an unrelated process now holding that pid
        self.reused: dict[int, float] = {}

    def launch(self, command: list[str]) -> LaunchedProcess:
        if self.launch_error is not None:
            raise self.launch_error
        self.launched.append(command)
        self.alive.add(self.root_pid)
        return LaunchedProcess(
            pid=self.root_pid,
            name="root",
            command_line=" ".join(command),
            executable_path="/nonexistent/root",
            creation_time=1000.0,
        )

    def attach(self, pid: int) -> LaunchedProcess:
        if pid not in self.alive:
            raise LaunchFailure(f"no such process: {pid}")
        return LaunchedProcess(pid, "attached", "attached", "/nonexistent/attached", 1000.0)

    def is_alive(self, pid: int, creation_time: float | None = None) -> bool:
        if pid in self.failing:
            raise LivenessCheckError(pid, "check failed")
        if creation_time is not None and pid in self.reused and self.reused[pid] != creation_time:
            return False
        return pid in self.alive

    def describe(self, pid: int) -> tuple[str, str]:
        if pid not in self.metadata:
            raise MetadataUnavailable(pid, "gone")
        return self.metadata[pid]


class FakeHostWithChildren(FakeHost):
    """FakeHost that also answers child listings for poll-side discovery."""

    def __init__(self, root_pid: int = ROOT_PID) -> None:
        super().__init__(root_pid)
        self.kids: dict[int, list[CreationEvent]] = {}

    def children(self, pid: int) -> list[CreationEvent]:
        return [event for event in self.kids.get(pid, []) if event.pid in self.alive]


class FakeNotifier:
    """Notifier that delivers events only when a test calls ``emit``."""

    def __init__(self, fail: bool = False, error: Exception | None = None) -> None:
        self.fail = fail
        self.error = error
        self.callbacks: dict = {}
        self.unsubscribe_calls = 0

    def subscribe(self, subscription_id, callback) -> None:
        if self.error is not None:
            raise self.error
        if self.fail:
            raise NotificationSubscriptionFailure("not permitted")
        self.callbacks[subscription_id] = callback

    def unsubscribe(self, subscription_id) -> None:
        self.unsubscribe_calls += 1
        self.callbacks.pop(subscription_id, None)

    def emit(self, event: CreationEvent) -> None:
        for callback in list(self.callbacks.values()):
            callback(event)


def creation(pid: int, parent_pid: int = ROOT_PID, created: float | None = None) -> CreationEvent:
    return CreationEvent(
        parent_pid=parent_pid,
        pid=pid,
        name=f"proc{pid}",
        command_line=f"proc{pid} --run",
        creation_time=created if created is not None else 1000.0 + pid,
    )


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()
