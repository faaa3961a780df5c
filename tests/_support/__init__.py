"""
Test support utilities for chime tests.

This module provides test doubles and helpers that don't fit as pytest
fixtures but are useful across multiple test files.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

from chime.reminders.models import DeliveryTarget


def wait_for(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class RecordingSink:
    """Delivery sink that records every call and can be told to fail."""

    def __init__(self) -> None:
        self.delivered: list[tuple[DeliveryTarget, str]] = []
        self.reject: set[str] = set()
        self.explode: set[str] = set()
        self.event = threading.Event()

    def deliver(self, target: DeliveryTarget, payload: str) -> bool:
        if payload in self.explode:
            raise RuntimeError(f"cannot reach {target}")
        if payload in self.reject:
            return False
        self.delivered.append((target, payload))
        self.event.set()
        return True

    @property
    def payloads(self) -> list[str]:
        return [payload for _, payload in self.delivered]


class ManualBackend:
    """Tick backend driven by the test instead of a timer."""

    name = "manual"

    def __init__(self) -> None:
        self.callback: Callable[[], object] | None = None
        self.interval: float | None = None
        self.started = False
        self.stopped = False

    def start(self, tick_callback, interval_seconds: float = 5.0) -> None:
        self.callback = tick_callback
        self.interval = interval_seconds
        self.started = True

    def stop(self) -> None:
        self.stopped = True
        self.started = False

    def health(self) -> dict:
        return {"healthy": self.started, "backend": self.name, "tick_count": 0, "last_tick": None}

    def tick(self) -> None:
        assert self.callback is not None, "backend was never started"
        self.callback()


class BackendFactory:
    """Builds ManualBackends and remembers each one."""

    def __init__(self) -> None:
        self.created: list[ManualBackend] = []

    def __call__(self) -> ManualBackend:
        backend = ManualBackend()
        self.created.append(backend)
        return backend

    @property
    def latest(self) -> ManualBackend:
        return self.created[-1]
