"""Turns process-creation notifications into registry candidates."""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from queue import Empty, Queue

from proclineage.errors import MetadataUnavailable, NotificationSubscriptionFailure
from proclineage.hashing import hash_file
from proclineage.models import UNAVAILABLE, CreationEvent, ProcessRecord, ProcessStatus
from proclineage.registry import MonitoredIds

logger = logging.getLogger(__name__)


def _drain(queue: Queue) -> list:
    items = []
    while True:
        try:
            items.append(queue.get_nowait())
        except Empty:
            break
    return items


class EventIngestionAdapter:
    """
    Receives creation events from a notifier and queues candidate records.

    ``handle`` may be called from any thread, any number of times. It only
    appends to the candidate queue; the reconciliation poller is the single
    consumer. Duplicate events are not filtered here.

    Work requested by the poller (``discover`` and ``request_backfill``) runs
    on a single worker thread so that slow metadata reads and hashing never
    stall the poll loop. Results come back through the same queues.
    """

    def __init__(
        self,
        monitored: MonitoredIds,
        metadata,
        notifier=None,
        subscription_id: str = "proclineage",
        hash_algorithm: str = "sha256",
    ) -> None:
        """
        Initialize the adapter.

        Args:
            monitored: PIDs whose children are currently admitted.
            metadata: Object with ``describe(pid) -> (executable_path, command_line)``.
            notifier: Object with ``subscribe(subscription_id, callback)`` and
                ``unsubscribe(subscription_id)``. None means poll-only.
            subscription_id: Session-scoped identifier for the notifier.
            hash_algorithm: hashlib algorithm name for executable digests.
        """
        self._monitored = monitored
        self._metadata = metadata
        self._notifier = notifier
        self._subscription_id = subscription_id
        self._hash_algorithm = hash_algorithm
        self._candidates: Queue[ProcessRecord] = Queue()
        self._backfills: Queue[tuple[int, dict[str, str]]] = Queue()
        self._lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        self._subscribed = False
        self._closed = False
        self.degraded = False
        self.accepted = 0
        self.discarded = 0

    @property
    def is_subscribed(self) -> bool:
        return self._subscribed

    def subscribe(self) -> bool:
        """
        Start receiving notifications.

        Returns False, and marks the adapter as degraded, when no notifier
        is configured or the subscription fails for any reason. Monitoring
        then relies on polling alone.
        """
        with self._lock:
            if self._subscribed:
                return True
            if self._notifier is None:
                self.degraded = True
                return False
            try:
                self._notifier.subscribe(self._subscription_id, self.handle)
            except Exception as e:
                if isinstance(e, NotificationSubscriptionFailure):
                    logger.warning("Creation notifications unavailable, polling only: %s", e)
                else:
                    logger.warning("Notification subscription failed, polling only", exc_info=True)
                self.degraded = True
                self._release_subscription()
                return False
            self._subscribed = True
            self._closed = False
        return True

    def unsubscribe(self) -> None:
        """Stop receiving notifications and background work. Safe to call more than once."""
        with self._lock:
            already_closed = self._closed
            self._closed = True
            subscribed = self._subscribed
            self._subscribed = False
            executor, self._executor = self._executor, None
            accepted, discarded = self.accepted, self.discarded

        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
        if subscribed:
            self._release_subscription()
        if not already_closed:
            logger.debug(
                "Subscription %s closed: %d candidates accepted, %d events discarded",
                self._subscription_id,
                accepted,
                discarded,
            )

    def _release_subscription(self) -> None:
        try:
            self._notifier.unsubscribe(self._subscription_id)
        except Exception:
            logger.warning("Error while unsubscribing %s", self._subscription_id, exc_info=True)

    def handle(self, event: CreationEvent) -> None:
        """Queue a candidate for ``event`` if its parent is monitored."""
        if self._closed or event.parent_pid not in self._monitored:
            with self._lock:
                self.discarded += 1
            return

        candidate = self.build_candidate(event)
        self._candidates.put(candidate)
        with self._lock:
            self.accepted += 1
        logger.debug("Candidate pid %d (parent %d) queued", event.pid, event.parent_pid)

    def build_candidate(self, event: CreationEvent) -> ProcessRecord:
        """Resolve path and hash for ``event`` on a best-effort basis."""
        executable_path = UNAVAILABLE
        command_line = event.command_line or UNAVAILABLE
        try:
            path, cmdline = self._metadata.describe(event.pid)
        except MetadataUnavailable as e:
            logger.debug("%s", e)
        except Exception:
            logger.warning("Metadata lookup failed for pid %d", event.pid, exc_info=True)
        else:
            executable_path = path or UNAVAILABLE
            if cmdline:
                command_line = cmdline

        return ProcessRecord(
            pid=event.pid,
            parent_pid=event.parent_pid,
            name=event.name or UNAVAILABLE,
            command_line=command_line,
            executable_path=executable_path,
            creation_time=event.creation_time,
            content_hash=hash_file(executable_path, self._hash_algorithm),
            status=ProcessStatus.PENDING,
        )

    def discover(self, event: CreationEvent) -> bool:
        """Handle an event found by polling on the worker thread."""
        return self._submit(self.handle, event)

    def request_backfill(self, pid: int) -> bool:
        """Resolve missing metadata for ``pid`` on the worker thread."""
        return self._submit(self._resolve_backfill, pid)

    def flush(self, timeout: float | None = None) -> None:
        """Wait until work submitted so far has finished."""
        with self._lock:
            executor = self._executor
        if executor is None:
            return
        try:
            future: Future = executor.submit(lambda: None)
        except RuntimeError:
            return
        future.result(timeout=timeout)

    def _submit(self, fn, arg) -> bool:
        with self._lock:
            if self._closed:
                return False
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ProcLineageResolver")
            executor = self._executor
        try:
            executor.submit(self._run_safely, fn, arg)
        except RuntimeError:
            # Shut down between the check and the submit
            return False
        return True

    @staticmethod
    def _run_safely(fn, arg) -> None:
        try:
            fn(arg)
        except Exception:
            logger.warning("Background resolution failed for %r", arg, exc_info=True)

    def _resolve_backfill(self, pid: int) -> None:
        try:
            path, cmdline = self._metadata.describe(pid)
        except MetadataUnavailable:
            return
        self._backfills.put(
            (
                pid,
                {
                    "executable_path": path or UNAVAILABLE,
                    "command_line": cmdline or UNAVAILABLE,
                    "content_hash": hash_file(path, self._hash_algorithm),
                },
            )
        )

    def drain(self) -> list[ProcessRecord]:
        """Remove and return every queued candidate."""
        return _drain(self._candidates)

    def drain_backfills(self) -> list[tuple[int, dict[str, str]]]:
        """Remove and return every resolved backfill."""
        return _drain(self._backfills)
