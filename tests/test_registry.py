"""
Tests for Registry.

Covers create/get/delete, the blocking stream call, idle sweeping and
the end-to-end wait, attach, update, detach sequence.
"""

import threading
import time

from conftest import RecordingConnection, wait_until
from progress_stream.config import ProgressConfig
from progress_stream.progress import Registry, Scope, Tracker


def _start_stream(registry, scope, conn, tracker_id):
    thread = threading.Thread(target=registry.stream, args=(scope, conn, tracker_id))
    thread.start()
    return thread


class TestRegistryLookup:
    """Tests for create, get and delete."""

    def test_create_returns_stored_tracker(self, registry):
        tracker = registry.create()
        assert isinstance(tracker, Tracker)
        assert registry.get(tracker.id) is tracker
        assert registry.get(tracker.id) is tracker
        assert tracker.id in registry
        assert len(registry) == 1

    def test_get_unknown_id(self, registry):
        assert registry.get("does-not-exist") is None

    def test_delete(self, registry):
        tracker = registry.create()
        registry.delete(tracker.id)
        assert registry.get(tracker.id) is None
        assert len(registry) == 0

    def test_delete_unknown_is_noop(self, registry):
        registry.create()
        registry.delete("does-not-exist")
        assert len(registry) == 1

    def test_trackers_use_registry_timeout(self):
        registry = Registry(default_wait_timeout=3.0)
        assert registry.create().default_wait_timeout == 3.0

    def test_from_config(self):
        registry = Registry.from_config(ProgressConfig(default_wait_timeout=12.0))
        assert registry.default_wait_timeout == 12.0

    def test_registries_are_independent(self):
        first = Registry()
        second = Registry()
        tracker = first.create()
        assert second.get(tracker.id) is None

    def test_concurrent_create(self, registry):
        created = []
        lock = threading.Lock()

        def worker():
            for _ in range(50):
                tracker = registry.create()
                with lock:
                    created.append(tracker.id)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(registry) == 400
        assert all(registry.get(tracker_id) is not None for tracker_id in created)


class TestRegistryStream:
    """Tests for the blocking stream call."""

    def test_unknown_id_closes_connection(self, registry, conn):
        registry.stream(Scope(), conn, "does-not-exist")
        assert conn.close_calls == 1

    def test_stream_attaches_until_cancelled(self, registry, conn):
        tracker = registry.create()
        scope = Scope()
        thread = _start_stream(registry, scope, conn, tracker.id)

        assert wait_until(lambda: tracker.observer_count == 1)
        assert tracker.started is True
        assert thread.is_alive()

        scope.cancel()
        thread.join(timeout=2.0)
        assert not thread.is_alive()
        assert tracker.observer_count == 0
        assert conn.close_calls == 1

    def test_stream_ends_at_scope_deadline(self, registry, conn):
        tracker = registry.create()
        start = time.monotonic()
        registry.stream(Scope(timeout=0.05), conn, tracker.id)
        assert time.monotonic() - start < 1.0
        assert tracker.observer_count == 0
        assert conn.closed

    def test_stream_survives_delete(self, registry, conn):
        tracker = registry.create()
        scope = Scope()
        thread = _start_stream(registry, scope, conn, tracker.id)
        assert wait_until(lambda: tracker.observer_count == 1)

        registry.delete(tracker.id)
        tracker.update("Done")
        assert conn.messages == [{"state": "Done", "details": None}]

        scope.cancel()
        thread.join(timeout=2.0)
        assert tracker.observer_count == 0

    def test_dropped_observer_stream_still_ends(self, registry):
        tracker = registry.create()
        dead = RecordingConnection(fail=True)
        scope = Scope()
        thread = _start_stream(registry, scope, dead, tracker.id)
        assert wait_until(lambda: tracker.observer_count == 1)

        tracker.update("Running")
        assert tracker.observer_count == 0

        scope.cancel()
        thread.join(timeout=2.0)
        assert not thread.is_alive()
        assert dead.close_calls == 1

    def test_end_to_end(self, registry, conn):
        tracker = registry.create()
        tracker_id = tracker.id
        outcome = {}

        def wait():
            start = time.monotonic()
            tracker.wait_for_signal(Scope(timeout=5.0))
            outcome["elapsed"] = time.monotonic() - start

        waiter = threading.Thread(target=wait)
        waiter.start()

        time.sleep(0.05)
        scope = Scope()
        stream = _start_stream(registry, scope, conn, tracker_id)

        waiter.join(timeout=2.0)
        assert not waiter.is_alive()
        assert outcome["elapsed"] < 1.0

        tracker.update("Running", {"pct": 10})
        assert conn.messages == [{"state": "Running", "details": {"pct": 10}}]

        scope.cancel()
        stream.join(timeout=2.0)
        assert tracker.observer_count == 0


class TestRegistrySweep:
    """Tests for idle tracker sweeping."""

    def test_sweep_removes_idle_unobserved(self, registry):
        idle = registry.create()
        time.sleep(0.02)
        removed = registry.sweep(0.01)
        assert removed == [idle.id]
        assert registry.get(idle.id) is None

    def test_sweep_keeps_observed(self, registry, conn):
        watched = registry.create()
        watched.attach(conn)
        time.sleep(0.02)
        assert registry.sweep(0.01) == []
        assert registry.get(watched.id) is watched

    def test_sweep_keeps_recent(self, registry):
        tracker = registry.create()
        assert registry.sweep(3600.0) == []
        assert registry.get(tracker.id) is tracker

    def test_update_refreshes_idle_time(self, registry):
        tracker = registry.create()
        time.sleep(0.05)
        tracker.update("Running")
        assert registry.sweep(0.04) == []
