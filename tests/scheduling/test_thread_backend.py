"""Tests for ThreadSchedulerBackend."""

import threading
import time

from chime.scheduling import ThreadSchedulerBackend
from chime.scheduling.protocol import SchedulerBackend


class TestThreadSchedulerBackend:
    """Test ThreadSchedulerBackend implementation."""

    def test_implements_protocol(self):
        """Backend implements SchedulerBackend protocol."""
        backend = ThreadSchedulerBackend()
        assert isinstance(backend, SchedulerBackend)
        assert backend.name == "thread"

    def test_start_and_stop(self):
        """Backend starts and stops cleanly."""
        backend = ThreadSchedulerBackend()
        tick_count = 0

        def tick():
            nonlocal tick_count
            tick_count += 1

        backend.start(tick, interval_seconds=0.1)
        assert backend.is_running

        time.sleep(0.35)

        backend.stop()
        assert not backend.is_running
        assert tick_count >= 2

    def test_health_before_start(self):
        """Health returns unhealthy before start."""
        health = ThreadSchedulerBackend().health()

        assert health["healthy"] is False
        assert health["backend"] == "thread"
        assert health["tick_count"] == 0
        assert health["last_tick"] is None

    def test_health_after_start(self):
        """Health returns healthy after start."""
        backend = ThreadSchedulerBackend()
        backend.start(lambda: None, interval_seconds=0.1)
        time.sleep(0.15)

        health = backend.health()
        assert health["healthy"] is True
        assert health["tick_count"] >= 1
        assert health["last_tick"] is not None
        assert health["interval_seconds"] == 0.1

        backend.stop()

    def test_double_start_ignored(self):
        """Double start is ignored with warning."""
        backend = ThreadSchedulerBackend()
        backend.start(lambda: None, interval_seconds=1.0)
        first_thread = backend._thread
        backend.start(lambda: None, interval_seconds=1.0)

        assert backend._thread is first_thread
        assert backend.is_running
        backend.stop()

    def test_tick_callback_exception_handled(self):
        """Exceptions in tick callback don't crash backend."""
        backend = ThreadSchedulerBackend()
        calls = 0

        def failing_tick():
            nonlocal calls
            calls += 1
            raise RuntimeError("Test error")

        backend.start(failing_tick, interval_seconds=0.1)
        time.sleep(0.35)

        assert backend.is_running
        backend.stop()
        assert calls >= 2

    def test_stop_waits_for_in_flight_tick(self):
        """stop() returns only after the running tick completes."""
        backend = ThreadSchedulerBackend()
        entered = threading.Event()
        finished = threading.Event()

        def slow_tick():
            entered.set()
            time.sleep(0.3)
            finished.set()

        backend.start(slow_tick, interval_seconds=0.05)
        assert entered.wait(1.0)
        backend.stop()

        assert finished.is_set()

    def test_stop_from_tick_thread(self):
        """A tick may stop its own backend without deadlocking."""
        backend = ThreadSchedulerBackend()
        done = threading.Event()

        def self_stopping_tick():
            backend.stop()
            done.set()

        backend.start(self_stopping_tick, interval_seconds=0.05)
        assert done.wait(1.0)
        time.sleep(0.1)
        assert not backend.is_running

    def test_stop_when_not_started(self):
        """stop() before start() is a no-op."""
        ThreadSchedulerBackend().stop()

    def test_thread_name(self):
        backend = ThreadSchedulerBackend(thread_name="test-ticker")
        backend.start(lambda: None, interval_seconds=1.0)
        assert backend._thread.name == "test-ticker"
        backend.stop()
