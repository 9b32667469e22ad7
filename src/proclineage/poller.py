"""Periodic reconciliation of queued candidates and process liveness."""

import logging

from proclineage.ingestion import EventIngestionAdapter
from proclineage.models import UNAVAILABLE, ProcessRecord, ProcessStatus
from proclineage.registry import MonitoredIds, ProcessRegistry

logger = logging.getLogger(__name__)


class ReconciliationPoller:
    """
    Single mutator of registry status.

    Each ``tick`` merges candidates and resolved metadata from the ingestion
    adapter, re-checks liveness of every active descendant, asks for children
    of monitored processes to be discovered, and finally checks the root.
    Once the root is gone the remaining records are swept to TERMINATED and
    later ticks do nothing.

    Liveness is checked against the recorded creation time, so a PID that
    was reused by an unrelated process counts as exited.
    """

    def __init__(
        self,
        registry: ProcessRegistry,
        monitored: MonitoredIds,
        adapter: EventIngestionAdapter,
        liveness,
    ) -> None:
        """
        Initialize the poller.

        Args:
            registry: Registry seeded with the root record.
            monitored: PIDs whose children are admitted.
            adapter: Source of queued candidates and backfills.
            liveness: Object with ``is_alive(pid, creation_time) -> bool`` and
                optionally ``children(pid) -> list[CreationEvent]``.
        """
        self._registry = registry
        self._monitored = monitored
        self._adapter = adapter
        self._liveness = liveness
        self._requested: set[int] = set()
        self._finished = False

    @property
    def finished(self) -> bool:
        """True once root exit has been detected."""
        return self._finished

    def tick(self) -> bool:
        """Run one reconciliation pass. Returns True when the root has exited."""
        if self._finished:
            return True

        self.merge(self._adapter.drain())
        self._apply_backfills()
        self._check_descendants()
        self._discover_children()

        root_pid = self._registry.root_pid
        root = None if root_pid is None else self._registry.get(root_pid)
        if root is None or not self._is_alive(root):
            logger.info("Root process %s has exited", root_pid)
            self.mark_all_terminated()
            return True
        return False

    def merge(self, candidates: list[ProcessRecord]) -> int:
        """Admit candidates whose PID is not yet registered. Returns the count admitted."""
        admitted = 0
        root_pid = self._registry.root_pid
        for candidate in candidates:
            if not self._registry.upsert(candidate):
                continue
            admitted += 1
            if candidate.pid != root_pid:
                self._monitored.add(candidate.pid)
            if candidate.executable_path == UNAVAILABLE or candidate.command_line == UNAVAILABLE:
                self._adapter.request_backfill(candidate.pid)
        return admitted

    def mark_all_terminated(self) -> None:
        """Terminate every remaining record and stop admitting children."""
        self._finished = True
        for pid in self._registry.active_ids():
            self._registry.update_status(pid, ProcessStatus.TERMINATED)
            self._monitored.discard(pid)

    def _apply_backfills(self) -> None:
        for pid, fields in self._adapter.drain_backfills():
            self._registry.backfill(pid, **fields)

    def _discover_children(self) -> None:
        children = getattr(self._liveness, "children", None)
        if children is None:
            return

        for parent_pid in self._monitored.copy():
            try:
                events = children(parent_pid)
            except Exception:
                logger.debug("Could not list children of pid %d", parent_pid, exc_info=True)
                continue
            for event in events:
                if event.pid in self._requested or event.pid in self._registry:
                    continue
                if self._adapter.discover(event):
                    self._requested.add(event.pid)

    def _check_descendants(self) -> None:
        root_pid = self._registry.root_pid
        for pid in self._registry.active_ids():
            if pid == root_pid:
                continue
            record = self._registry.get(pid)
            if record is not None and not self._is_alive(record):
                self._registry.update_status(pid, ProcessStatus.TERMINATED)
                self._monitored.discard(pid)

    def _is_alive(self, record: ProcessRecord) -> bool:
        try:
            return bool(self._liveness.is_alive(record.pid, record.creation_time))
        except Exception as e:
            # A check that cannot answer must not leave an immortal record
            logger.warning("Treating pid %d as exited: %s", record.pid, e)
            return False
