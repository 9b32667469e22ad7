"""Tests for EventIngestionAdapter."""

import hashlib
import logging
import threading

from conftest import ROOT_PID, FakeHost, FakeNotifier, creation

from proclineage.ingestion import EventIngestionAdapter
from proclineage.models import UNAVAILABLE, ProcessStatus
from proclineage.registry import MonitoredIds


def make_adapter(host=None, notifier=None) -> tuple[EventIngestionAdapter, MonitoredIds]:
    monitored = MonitoredIds()
    monitored.add(ROOT_PID)
    adapter = EventIngestionAdapter(monitored, host or FakeHost(), notifier=notifier, subscription_id="s1")
    return adapter, monitored


class TestHandle:
    """Tests for EventIngestionAdapter.handle."""

    def test_monitored_parent_is_queued(self):
        """Test a child of a monitored process becomes a pending candidate."""
        adapter, _ = make_adapter()

        adapter.handle(creation(200))
        candidates = adapter.drain()

        assert len(candidates) == 1
        assert candidates[0].pid == 200
        assert candidates[0].parent_pid == ROOT_PID
        assert candidates[0].status is ProcessStatus.PENDING
        assert adapter.accepted == 1

    def test_unmonitored_parent_is_discarded(self):
        """Test creations under unrelated parents are dropped."""
        adapter, _ = make_adapter()

        adapter.handle(creation(300, parent_pid=999))

        assert adapter.drain() == []
        assert adapter.discarded == 1

    def test_duplicates_are_queued(self):
        """Test duplicate events are left for the merge step."""
        adapter, _ = make_adapter()

        adapter.handle(creation(200))
        adapter.handle(creation(200))

        assert [c.pid for c in adapter.drain()] == [200, 200]

    def test_metadata_and_hash_resolved(self, tmp_path):
        """Test path, command line and hash come from the metadata collaborator."""
        exe = tmp_path / "child"
        exe.write_bytes(b"child-binary")
        host = FakeHost()
        host.metadata[200] = (str(exe), "child --flag")
        adapter, _ = make_adapter(host)

        adapter.handle(creation(200))
        candidate = adapter.drain()[0]

        assert candidate.executable_path == str(exe)
        assert candidate.command_line == "child --flag"
        assert candidate.content_hash == hashlib.sha256(b"child-binary").hexdigest()

    def test_metadata_unavailable_keeps_event_fields(self):
        """Test a vanished process is still queued with sentinels."""
        adapter, _ = make_adapter()

        adapter.handle(creation(200))
        candidate = adapter.drain()[0]

        assert candidate.executable_path == UNAVAILABLE
        assert candidate.content_hash == UNAVAILABLE
        assert candidate.command_line == "proc200 --run"

    def test_metadata_crash_is_contained(self):
        """Test an unexpected metadata error does not escape handle."""

        class BrokenHost(FakeHost):
            def describe(self, pid):
                raise RuntimeError("boom")

        adapter, _ = make_adapter(BrokenHost())

        adapter.handle(creation(200))

        assert adapter.drain()[0].executable_path == UNAVAILABLE

    def test_removed_parent_stops_admission(self):
        """Test children of a parent no longer monitored are dropped."""
        adapter, monitored = make_adapter()
        monitored.add(200)
        adapter.handle(creation(201, parent_pid=200))
        monitored.discard(200)
        adapter.handle(creation(202, parent_pid=200))

        assert [c.pid for c in adapter.drain()] == [201]

    def test_many_producers(self):
        """Test concurrent producers lose no appends."""
        adapter, _ = make_adapter()

        def produce(offset: int) -> None:
            for i in range(250):
                adapter.handle(creation(1000 + offset * 1000 + i))

        threads = [threading.Thread(target=produce, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        pids = [c.pid for c in adapter.drain()]
        assert len(pids) == 1000
        assert len(set(pids)) == 1000
        assert adapter.drain() == []


class TestSubscription:
    """Tests for subscribe and unsubscribe."""

    def test_subscribe_routes_events(self):
        """Test notifier events reach the candidate queue."""
        notifier = FakeNotifier()
        adapter, _ = make_adapter(notifier=notifier)

        assert adapter.subscribe() is True
        notifier.emit(creation(200))

        assert [c.pid for c in adapter.drain()] == [200]
        assert adapter.is_subscribed

    def test_subscription_failure_degrades(self):
        """Test a failed subscription falls back to polling only."""
        adapter, _ = make_adapter(notifier=FakeNotifier(fail=True))

        assert adapter.subscribe() is False
        assert adapter.degraded is True
        assert not adapter.is_subscribed

    def test_no_notifier_degrades(self):
        """Test an adapter without notifier reports poll-only mode."""
        adapter, _ = make_adapter()

        assert adapter.subscribe() is False
        assert adapter.degraded is True

    def test_unsubscribe_is_idempotent(self):
        """Test unsubscribing twice only reaches the notifier once."""
        notifier = FakeNotifier()
        adapter, _ = make_adapter(notifier=notifier)
        adapter.subscribe()

        adapter.unsubscribe()
        adapter.unsubscribe()

        assert notifier.unsubscribe_calls == 1
        assert notifier.callbacks == {}

    def test_unsubscribe_without_subscribe(self):
        """Test unsubscribing an adapter that never subscribed is safe."""
        notifier = FakeNotifier()
        adapter, _ = make_adapter(notifier=notifier)

        adapter.unsubscribe()

        assert notifier.unsubscribe_calls == 0

    def test_late_events_after_unsubscribe_are_dropped(self):
        """Test events delivered after teardown are not queued."""
        adapter, _ = make_adapter(notifier=FakeNotifier())
        adapter.subscribe()
        adapter.unsubscribe()

        adapter.handle(creation(200))

        assert adapter.drain() == []

    def test_unexpected_subscribe_error_degrades(self):
        """Test a notifier raising an arbitrary error degrades instead of propagating."""
        notifier = FakeNotifier(error=RuntimeError("watcher thread could not start"))
        adapter, _ = make_adapter(notifier=notifier)

        assert adapter.subscribe() is False
        assert adapter.degraded is True
        assert not adapter.is_subscribed
        # Whatever the notifier registered before failing is released
        assert notifier.unsubscribe_calls == 1

    def test_counters_logged_on_unsubscribe(self, caplog):
        """Test accepted and discarded totals are reported once at teardown."""
        adapter, _ = make_adapter(notifier=FakeNotifier())
        adapter.subscribe()
        adapter.handle(creation(200))
        adapter.handle(creation(201))
        adapter.handle(creation(300, parent_pid=999))

        with caplog.at_level(logging.DEBUG, logger="proclineage.ingestion"):
            adapter.unsubscribe()
            adapter.unsubscribe()

        closed = [r for r in caplog.records if "closed" in r.getMessage()]
        assert len(closed) == 1
        assert "2 candidates accepted, 1 events discarded" in closed[0].getMessage()

    def test_concurrent_counters(self):
        """Test counters stay exact under concurrent handle calls."""
        adapter, _ = make_adapter()

        def produce(offset: int) -> None:
            for i in range(200):
                adapter.handle(creation(1000 + offset * 1000 + i, parent_pid=ROOT_PID if i % 2 else 999))

        threads = [threading.Thread(target=produce, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert adapter.accepted == 400
        assert adapter.discarded == 400


class TestBackgroundResolution:
    """Tests for work done on the resolver thread."""

    def test_discover_queues_candidate(self):
        """Test a polled event is resolved off the caller's thread and queued."""
        adapter, _ = make_adapter()

        assert adapter.discover(creation(200)) is True
        adapter.flush(timeout=5.0)

        assert [c.pid for c in adapter.drain()] == [200]
        adapter.unsubscribe()

    def test_backfill_resolved(self, tmp_path):
        """Test a backfill request yields path, command line and hash."""
        exe = tmp_path / "late"
        exe.write_bytes(b"late-binary")
        host = FakeHost()
        host.metadata[200] = (str(exe), "late --start")
        adapter, _ = make_adapter(host)

        adapter.request_backfill(200)
        adapter.flush(timeout=5.0)

        [(pid, fields)] = adapter.drain_backfills()
        assert pid == 200
        assert fields["executable_path"] == str(exe)
        assert fields["command_line"] == "late --start"
        assert fields["content_hash"] == hashlib.sha256(b"late-binary").hexdigest()
        adapter.unsubscribe()

    def test_backfill_for_vanished_process_yields_nothing(self):
        """Test a process that is gone produces no backfill."""
        adapter, _ = make_adapter()

        adapter.request_backfill(200)
        adapter.flush(timeout=5.0)

        assert adapter.drain_backfills() == []
        adapter.unsubscribe()

    def test_resolution_runs_on_worker_thread(self):
        """Test metadata reads for discovered events leave the caller's thread."""
        seen = []

        class RecordingHost(FakeHost):
            def describe(self, pid):
                seen.append(threading.current_thread().name)
                return super().describe(pid)

        adapter, _ = make_adapter(RecordingHost())
        adapter.discover(creation(200))
        adapter.flush(timeout=5.0)

        assert len(seen) == 1
        assert seen[0].startswith("ProcLineageResolver")
        adapter.unsubscribe()

    def test_no_work_after_unsubscribe(self):
        """Test requests made after teardown are refused."""
        adapter, _ = make_adapter()
        adapter.unsubscribe()

        assert adapter.discover(creation(200)) is False
        assert adapter.request_backfill(200) is False
        adapter.flush(timeout=1.0)
        assert adapter.drain() == []

    def test_flush_without_work(self):
        """Test flushing an idle adapter returns at once."""
        adapter, _ = make_adapter()

        adapter.flush(timeout=1.0)
