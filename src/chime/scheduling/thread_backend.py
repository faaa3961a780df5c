"""Threading-based tick backend.

This is the default backend for the reminder dispatcher. It uses Python's
stdlib threading module and has no external dependencies.

┌──────────────────────────────────────────────────────────────────────────────┐
│  THREAD BACKEND                                                               │
│                                                                               │
│   start()                                                                     │
│      │                                                                        │
│      ▼                                                                        │
│   ┌─────────────────────────────────────────────────────────┐                │
│   │              Daemon Thread (loop)                       │                │
│   │                                                         │                │
│   │   while not stop_event.wait(interval):                  │                │
│   │       tick_count += 1                                   │                │
│   │       last_tick = now()                                 │                │
│   │       tick_callback()                                   │                │
│   └─────────────────────────────────────────────────────────┘                │
│                                                                               │
│   stop()                                                                      │
│      │                                                                        │
│      ▼                                                                        │
│   stop_event.set()                                                            │
│   thread.join(timeout=join_timeout)   ← an in-flight tick finishes first     │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from typing import Any

from chime.core.logging import get_logger
from chime.scheduling.protocol import BackendHealth, TickCallback

logger = get_logger(__name__)


class ThreadSchedulerBackend:
    """Daemon-thread tick backend.

    Example:
        >>> backend = ThreadSchedulerBackend()
        >>> backend.start(lambda: print("Tick!"), interval_seconds=5.0)
        >>> # ... later ...
        >>> backend.stop()
    """

    name = "thread"

    def __init__(self, join_timeout: float = 30.0, thread_name: str = "chime-dispatcher") -> None:
        """Initialize thread backend.

        Args:
            join_timeout: Seconds ``stop()`` waits for an in-flight tick
            thread_name: Name of the daemon thread
        """
        self.join_timeout = join_timeout
        self.thread_name = thread_name
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._tick_count = 0
        self._last_tick: datetime | None = None
        self._interval: float = 5.0
        self._started = False
        self._lock = threading.Lock()

    def start(self, tick_callback: TickCallback, interval_seconds: float = 5.0) -> None:
        """Start the tick loop in a daemon thread.

        Args:
            tick_callback: Function to call on each tick.
            interval_seconds: How often to tick.
        """
        if self._started:
            logger.warning("thread_backend_already_started")
            return

        self._interval = interval_seconds
        self._stop_event.clear()

        def _loop() -> None:
            logger.info("thread_backend_started", interval_seconds=interval_seconds)
            while not self._stop_event.wait(interval_seconds):
                with self._lock:
                    self._tick_count += 1
                    self._last_tick = datetime.now(UTC)

                try:
                    tick_callback()
                except Exception:
                    logger.exception("thread_backend_tick_failed")

            logger.info("thread_backend_stopped")

        self._thread = threading.Thread(target=_loop, daemon=True, name=self.thread_name)
        self._thread.start()
        self._started = True

    def stop(self) -> None:
        """Stop the tick loop, waiting for the current tick to complete."""
        if not self._started:
            return

        self._stop_event.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.join_timeout)
            if self._thread.is_alive():
                logger.warning("thread_backend_stop_timeout", join_timeout=self.join_timeout)

        self._started = False

    def health(self) -> dict[str, Any]:
        """Return backend health status."""
        return self.get_health().to_dict()

    def get_health(self) -> BackendHealth:
        """Return structured health status."""
        return BackendHealth(
            healthy=self.is_running,
            backend=self.name,
            tick_count=self._tick_count,
            last_tick=self._last_tick,
            extra={"interval_seconds": self._interval},
        )

    @property
    def is_running(self) -> bool:
        """Check if backend is currently running."""
        return self._started and self._thread is not None and self._thread.is_alive()

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def last_tick(self) -> datetime | None:
        return self._last_tick
