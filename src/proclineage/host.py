"""Host collaborators backed by psutil."""

import logging
import subprocess
import threading
from collections.abc import Callable

import psutil

from proclineage.errors import (
    LaunchFailure,
    LivenessCheckError,
    MetadataUnavailable,
    NotificationSubscriptionFailure,
)
from proclineage.models import UNAVAILABLE, CreationEvent, LaunchedProcess

logger = logging.getLogger(__name__)

# Seconds; create_time is derived from clock ticks
CREATE_TIME_TOLERANCE = 0.01


def _command_line(cmdline: list[str] | None, fallback: str = UNAVAILABLE) -> str:
    return " ".join(cmdline) if cmdline else fallback


class ProcessLauncher:
    """Launches or attaches to the root process."""

    def __init__(self) -> None:
        self._popen: subprocess.Popen | None = None

    def launch(self, command: list[str]) -> LaunchedProcess:
        """Start ``command`` and return its identity."""
        if not command:
            raise LaunchFailure("no command given")
        try:
            self._popen = subprocess.Popen(command)
        except (OSError, ValueError) as e:
            raise LaunchFailure(f"cannot launch {command!r}: {e}") from e
        return self.attach(self._popen.pid)

    def attach(self, pid: int) -> LaunchedProcess:
        """Return the identity of an already running process."""
        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                name = proc.name()
                create_time = proc.create_time()
                try:
                    cmdline = _command_line(proc.cmdline(), name)
                    exe = proc.exe() or UNAVAILABLE
                except (psutil.AccessDenied, psutil.ZombieProcess):
                    cmdline, exe = name, UNAVAILABLE
        except psutil.NoSuchProcess as e:
            raise LaunchFailure(f"no such process: {pid}") from e
        except psutil.AccessDenied as e:
            raise LaunchFailure(f"access denied to process {pid}") from e

        return LaunchedProcess(
            pid=pid,
            name=name,
            command_line=cmdline,
            executable_path=exe,
            creation_time=create_time,
        )

    def reap(self) -> None:
        """Collect the exit status of a launched root so it does not linger as a zombie."""
        if self._popen is not None:
            self._popen.poll()


class LivenessChecker:
    """Answers whether a process is still running."""

    def __init__(self, launcher: ProcessLauncher | None = None) -> None:
        self._launcher = launcher

    def is_alive(self, pid: int, creation_time: float | None = None) -> bool:
        """
        Return True while ``pid`` is running.

        When ``creation_time`` is given, a process under ``pid`` created at a
        different time is a reuse of the PID and the original counts as exited.
        """
        if self._launcher is not None:
            self._launcher.reap()
        try:
            proc = psutil.Process(pid)
            if creation_time is not None and abs(proc.create_time() - creation_time) > CREATE_TIME_TOLERANCE:
                return False
            return proc.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            # The process exists, we just may not inspect it
            return True
        except psutil.Error as e:
            raise LivenessCheckError(pid, str(e)) from e

    def children(self, pid: int) -> list[CreationEvent]:
        """Direct children of ``pid`` as creation events."""
        events: list[CreationEvent] = []
        try:
            children = psutil.Process(pid).children()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return events

        for child in children:
            try:
                with child.oneshot():
                    name = child.name()
                    events.append(
                        CreationEvent(
                            parent_pid=pid,
                            pid=child.pid,
                            name=name,
                            command_line=_command_line(child.cmdline(), name),
                            creation_time=child.create_time(),
                        )
                    )
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return events


class MetadataReader:
    """Reads executable path and command line of a process."""

    def describe(self, pid: int) -> tuple[str, str]:
        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                exe = proc.exe()
                cmdline = proc.cmdline()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess) as e:
            raise MetadataUnavailable(pid, type(e).__name__) from e
        return exe or UNAVAILABLE, _command_line(cmdline)


class ProcessCreationWatcher:
    """
    Delivers a CreationEvent for every process that appears on the host.

    Scans the process table in a daemon thread at a short interval and
    reports PIDs it has not seen before to every subscriber. The thread runs
    while at least one subscription exists.
    """

    def __init__(self, interval: float = 0.05) -> None:
        """
        Initialize the watcher.

        Args:
            interval: Seconds between process table scans.
        """
        self._interval = interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._subscribers: dict[str, Callable[[CreationEvent], None]] = {}
        self._seen: set[tuple[int, float]] = set()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def subscribe(self, subscription_id: str, callback: Callable[[CreationEvent], None]) -> None:
        with self._lock:
            self._subscribers[subscription_id] = callback
        self.start()

    def unsubscribe(self, subscription_id: str) -> None:
        with self._lock:
            self._subscribers.pop(subscription_id, None)
            idle = not self._subscribers
        if idle:
            self.stop()

    def start(self) -> None:
        """Start the scanning thread."""
        if self.is_running:
            return

        try:
            # Processes already running are not creations
            self._seen = {key for key, _ in self._scan()}
        except psutil.Error as e:
            raise NotificationSubscriptionFailure(f"cannot read the process table: {e}") from e

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="ProcessCreationWatcher",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the scanning thread."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None

    def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._deliver_new()
            except Exception:
                logger.warning("Process table scan failed", exc_info=True)
            self._stop_event.wait(timeout=self._interval)

    def _deliver_new(self) -> None:
        current: set[tuple[int, float]] = set()
        fresh: list[CreationEvent] = []
        for key, event in self._scan():
            current.add(key)
            if key not in self._seen and event is not None:
                fresh.append(event)
        self._seen = current

        with self._lock:
            callbacks = list(self._subscribers.values())
        for event in fresh:
            for callback in callbacks:
                try:
                    callback(event)
                except Exception:
                    logger.warning("Subscriber failed on pid %d", event.pid, exc_info=True)

    def _scan(self):
        """Yield ((pid, create_time), event) for each process on the host."""
        for proc in psutil.process_iter(attrs=["pid", "ppid", "name", "cmdline", "create_time"]):
            info = proc.info
            create_time = info.get("create_time") or 0.0
            ppid = info.get("ppid")
            event = None
            if ppid is not None:
                name = info.get("name") or ""
                event = CreationEvent(
                    parent_pid=ppid,
                    pid=info["pid"],
                    name=name,
                    command_line=_command_line(info.get("cmdline"), name or UNAVAILABLE),
                    creation_time=create_time,
                )
            yield (info["pid"], create_time), event
