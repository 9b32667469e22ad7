"""Monitoring session: launch, reconcile until the root exits, finalize."""

import logging
import threading
import uuid
from collections.abc import Callable
from enum import Enum

from proclineage.config import SessionConfig
from proclineage.hashing import hash_file
from proclineage.host import LivenessChecker, MetadataReader, ProcessCreationWatcher, ProcessLauncher
from proclineage.ingestion import EventIngestionAdapter
from proclineage.models import ProcessRecord, ProcessStatus
from proclineage.poller import ReconciliationPoller
from proclineage.registry import MonitoredIds, ProcessRegistry

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[list[ProcessRecord], bool], None]


class SessionState(Enum):
    """Lifecycle of a MonitoringSession."""

    STARTING = "starting"
    RUNNING = "running"
    FINALIZING = "finalizing"
    DONE = "done"


class MonitoringSession:
    """
    Monitors one root process and all of its descendants.

    ``run()`` blocks until the root exits or ``stop()`` is called, then
    returns the final snapshot. A session runs once.
    """

    def __init__(
        self,
        config: SessionConfig,
        launcher=None,
        liveness=None,
        metadata=None,
        notifier=None,
        on_update: UpdateCallback | None = None,
    ) -> None:
        """
        Initialize the session.

        Args:
            config: What to monitor and how often.
            launcher: Object with ``launch(command)`` and ``attach(pid)``.
            liveness: Object with ``is_alive(pid, creation_time)``.
            metadata: Object with ``describe(pid)``.
            notifier: Creation notification source; defaults to a
                ProcessCreationWatcher.
            on_update: Called with ``(snapshot, final)`` every tick and once
                after the session is done.
        """
        self.config = config
        self._launcher = launcher or ProcessLauncher()
        if liveness is None:
            liveness = LivenessChecker(self._launcher if isinstance(self._launcher, ProcessLauncher) else None)
        self._liveness = liveness
        self._metadata = metadata or MetadataReader()
        if notifier is None:
            notifier = ProcessCreationWatcher(interval=config.watch_interval)
        self.on_update = on_update

        self.registry = ProcessRegistry()
        self.monitored = MonitoredIds()
        self.session_id = uuid.uuid4().hex
        self.adapter = EventIngestionAdapter(
            self.monitored,
            self._metadata,
            notifier=notifier,
            subscription_id=self.session_id,
            hash_algorithm=config.hash_algorithm,
        )
        self.poller = ReconciliationPoller(
            self.registry,
            self.monitored,
            self.adapter,
            self._liveness,
        )
        self._stop_event = threading.Event()
        self._state = SessionState.STARTING
        self._started = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def degraded(self) -> bool:
        """True when creation notifications are unavailable and only polling is used."""
        return self.adapter.degraded

    def snapshot(self) -> list[ProcessRecord]:
        return self.registry.snapshot()

    def stop(self) -> None:
        """Request the poll loop to end. Finalization still runs."""
        self._stop_event.set()

    def run(self) -> list[ProcessRecord]:
        """
        Run the session to completion.

        Raises:
            LaunchFailure: The root could not be launched or attached to.
            RuntimeError: The session has already been run.
        """
        if self._started:
            raise RuntimeError("a MonitoringSession can only be run once")
        self._started = True

        try:
            self._launch_root()
        except BaseException:
            self._state = SessionState.DONE
            raise
        try:
            self._subscribe()
            self._state = SessionState.RUNNING
            self._loop()
        finally:
            self._finalize()

        final = self.registry.snapshot()
        self._publish(final, final=True)
        return final

    def _launch_root(self) -> None:
        if self.config.attach_pid is not None:
            root = self._launcher.attach(self.config.attach_pid)
        else:
            root = self._launcher.launch(self.config.command)
        logger.info("Monitoring %s (pid %d)", root.name, root.pid)

        self.registry.upsert(
            ProcessRecord(
                pid=root.pid,
                parent_pid=None,
                name=root.name,
                command_line=root.command_line,
                executable_path=root.executable_path,
                creation_time=root.creation_time,
                content_hash=hash_file(root.executable_path, self.config.hash_algorithm),
                status=ProcessStatus.ACTIVE,
            )
        )
        self.monitored.add(root.pid)

    def _subscribe(self) -> None:
        if not self.adapter.subscribe():
            logger.warning("Running in poll-only mode; short-lived children may be missed")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                if self.poller.tick():
                    return
            except Exception:
                logger.exception("Reconciliation tick failed")
            self._publish(self.registry.snapshot(), final=False)
            self._stop_event.wait(timeout=self.config.poll_interval)
        logger.info("Session %s stopped on request", self.session_id)

    def _finalize(self) -> None:
        self._state = SessionState.FINALIZING
        try:
            self.adapter.unsubscribe()
        finally:
            self.poller.mark_all_terminated()
            self._state = SessionState.DONE

    def _publish(self, snapshot: list[ProcessRecord], final: bool) -> None:
        if self.on_update is None:
            return
        try:
            self.on_update(snapshot, final)
        except Exception:
            logger.warning("Update callback failed", exc_info=True)
