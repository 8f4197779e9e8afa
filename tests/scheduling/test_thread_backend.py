"""Tests for the threaded polling loop."""

from __future__ import annotations

import threading
import time

import pytest

from jobcontroller.scheduling import BackendHealth, ThreadSchedulerBackend


def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture()
def backend():
    backend = ThreadSchedulerBackend(join_timeout=2.0)
    yield backend
    backend.stop()


class TestBackendHealth:
    def test_to_dict(self):
        health = BackendHealth(healthy=True, backend="thread", interval_seconds=0.5, tick_count=3)
        data = health.to_dict()
        assert data["healthy"] is True
        assert data["tick_count"] == 3
        assert data["last_tick"] is None
        assert data["failed_ticks"] == 0


@pytest.mark.slow
class TestThreadSchedulerBackend:
    def test_not_running_before_start(self, backend):
        assert not backend.is_running
        assert backend.health()["healthy"] is False
        assert backend.tick_count == 0

    def test_runs_ticks(self, backend):
        calls = []

        async def tick():
            calls.append(threading.current_thread().name)

        backend.start(tick, interval_seconds=0.01)

        assert wait_for(lambda: len(calls) >= 3)
        assert backend.is_running
        assert calls[0] == "jobcontroller-reconciler"
        assert backend.last_tick is not None
        health = backend.health()
        assert health["healthy"] is True
        assert health["interval_seconds"] == 0.01

    def test_failed_tick_does_not_stop_loop(self, backend):
        calls = []

        async def tick():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")

        backend.start(tick, interval_seconds=0.01)

        assert wait_for(lambda: len(calls) >= 3)
        assert backend.health()["failed_ticks"] == 1

    def test_ticks_never_overlap(self, backend):
        active = []
        overlaps = []

        async def tick():
            if active:
                overlaps.append(1)
            active.append(1)
            time.sleep(0.03)
            active.pop()

        backend.start(tick, interval_seconds=0.001)
        assert wait_for(lambda: backend.tick_count >= 3)
        assert overlaps == []

    def test_stop(self, backend):
        async def tick():
            return None

        backend.start(tick, interval_seconds=0.01)
        assert wait_for(lambda: backend.tick_count >= 1)
        backend.stop()

        assert not backend.is_running
        stopped_at = backend.tick_count
        time.sleep(0.05)
        assert backend.tick_count == stopped_at

    def test_start_twice_keeps_one_thread(self, backend):
        async def tick():
            return None

        backend.start(tick, interval_seconds=0.01)
        first = backend._thread
        backend.start(tick, interval_seconds=0.01)
        assert backend._thread is first
