"""Scheduling protocols: tick backends and delivery sinks.

┌──────────────────────────────────────────────────────────────────────────────┐
│  BEAT-AS-POLLER                                                               │
│                                                                               │
│   ┌─────────────────┐   tick()   ┌──────────────────────┐  deliver()         │
│   │  Backend        │ ─────────► │  ReminderDispatcher  │ ─────────►  Sink   │
│   │  (timing)       │            │  pop_due + deliver   │  (target, payload) │
│   └─────────────────┘            └──────────────────────┘                    │
│                                                                               │
│  - Backend: controls WHEN ticks happen                                        │
│  - Dispatcher: controls WHAT happens on each tick                             │
│  - Sink: owns how a DeliveryTarget maps onto a real destination              │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from chime.reminders.models import DeliveryTarget

TickCallback = Callable[[], Any]


@runtime_checkable
class SchedulerBackend(Protocol):
    """Protocol for pluggable tick backends.

    A backend is responsible ONLY for timing, calling the tick callback at
    the given interval. All reminder logic lives in ReminderDispatcher.
    """

    name: str

    def start(self, tick_callback: TickCallback, interval_seconds: float = 5.0) -> None:
        """Start calling ``tick_callback`` every ``interval_seconds``."""
        ...

    def stop(self) -> None:
        """Stop ticking; waits for the current tick to complete."""
        ...

    def health(self) -> dict[str, Any]:
        """Return backend health status.

        Returns:
            dict with at least:
                - healthy: bool: whether backend is running
                - backend: str: backend name
                - tick_count: int: number of ticks executed
                - last_tick: str | None: ISO timestamp of last tick
        """
        ...


@runtime_checkable
class DeliverySink(Protocol):
    """Consumer of due reminders.

    ``deliver`` may block on I/O. Returning False or raising both count as a
    failed delivery; the dispatcher logs it and moves on.
    """

    def deliver(self, target: DeliveryTarget, payload: str) -> bool:
        ...


@dataclass
class BackendHealth:
    """Structured backend health response."""

    healthy: bool
    backend: str
    tick_count: int = 0
    last_tick: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "healthy": self.healthy,
            "backend": self.backend,
            "tick_count": self.tick_count,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            **self.extra,
        }
