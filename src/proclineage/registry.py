"""Authoritative record store for a monitored process tree."""

import logging
import threading
from dataclasses import replace

from proclineage.models import UNAVAILABLE, ProcessRecord, ProcessStatus

logger = logging.getLogger(__name__)

_BACKFILL_FIELDS = ("executable_path", "command_line", "content_hash")


class ProcessRegistry:
    """
    Mapping of PID to ProcessRecord for one session.

    Records are never removed. Only the reconciliation poller mutates the
    registry; any thread may call ``snapshot()`` or ``get()``. Records are
    immutable and are swapped whole under the lock, so readers never see a
    partially updated record.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[int, ProcessRecord] = {}
        self._root_pid: int | None = None

    @property
    def root_pid(self) -> int | None:
        return self._root_pid

    def __contains__(self, pid: object) -> bool:
        with self._lock:
            return pid in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def get(self, pid: int) -> ProcessRecord | None:
        with self._lock:
            return self._records.get(pid)

    def upsert(self, record: ProcessRecord) -> bool:
        """
        Insert ``record`` if its PID is not yet known.

        An existing record is left untouched (first write wins), including
        its status. Returns True if the record was inserted.
        """
        with self._lock:
            if record.pid in self._records:
                return False
            if record.status is ProcessStatus.PENDING:
                record = replace(record, status=ProcessStatus.ACTIVE)
            self._records[record.pid] = record
            if record.is_root and self._root_pid is None:
                self._root_pid = record.pid
        logger.debug("Registered pid %d (%s)", record.pid, record.name)
        return True

    def update_status(self, pid: int, status: ProcessStatus) -> bool:
        """
        Move a record forward to ``status``.

        Backward moves and unknown PIDs are ignored. Returns True if the
        record changed.
        """
        with self._lock:
            current = self._records.get(pid)
            if current is None or status.rank <= current.status.rank:
                return False
            self._records[pid] = replace(current, status=status)
        logger.debug("pid %d is now %s", pid, status.value)
        return True

    def backfill(self, pid: int, **fields: str) -> bool:
        """
        Fill in metadata fields that are still ``UNAVAILABLE``.

        Only executable_path, command_line and content_hash may be given.
        Known values are never overwritten.
        """
        unknown = set(fields) - set(_BACKFILL_FIELDS)
        if unknown:
            raise TypeError(f"cannot backfill {sorted(unknown)}")

        with self._lock:
            current = self._records.get(pid)
            if current is None:
                return False
            changes = {
                name: value
                for name, value in fields.items()
                if value and value != UNAVAILABLE and getattr(current, name) == UNAVAILABLE
            }
            if not changes:
                return False
            self._records[pid] = replace(current, **changes)
        return True

    def active_ids(self) -> list[int]:
        """PIDs of all records that have not terminated."""
        with self._lock:
            return [pid for pid, rec in self._records.items() if not rec.has_exited]

    def snapshot(self) -> list[ProcessRecord]:
        """Return all records ordered by creation time."""
        with self._lock:
            records = list(self._records.values())
        return sorted(records, key=lambda r: (r.creation_time, r.pid))


class MonitoredIds:
    """Thread-safe set of PIDs whose new children are admitted."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids: set[int] = set()

    def add(self, pid: int) -> None:
        with self._lock:
            self._ids.add(pid)

    def discard(self, pid: int) -> None:
        with self._lock:
            self._ids.discard(pid)

    def __contains__(self, pid: object) -> bool:
        with self._lock:
            return pid in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def copy(self) -> set[int]:
        with self._lock:
            return set(self._ids)
