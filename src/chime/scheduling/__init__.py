"""Reminder scheduling: tick backends, delivery sinks, dispatcher.

Quick Start::

    from chime.scheduling import LoggingDeliverySink, ReminderDispatcher

    dispatcher = ReminderDispatcher(repo, LoggingDeliverySink(),
                                    is_leader=lambda: lease.is_leader)
    dispatcher.start()

Guardrails:
    ❌ Delivering reminders while holding the repository lock
    ✅ ``pop_due`` first, deliver afterwards
    ❌ Starting the dispatcher on a standby replica
    ✅ ``start()`` raises NotLeaderError unless ``is_leader()``
"""

from __future__ import annotations

from chime.scheduling.protocol import (
    BackendHealth,
    DeliverySink,
    SchedulerBackend,
    TickCallback,
)
from chime.scheduling.service import (
    DeliveryOutcome,
    DispatcherHealth,
    DispatcherStats,
    ReminderDispatcher,
)
from chime.scheduling.sinks import CallbackDeliverySink, LoggingDeliverySink
from chime.scheduling.thread_backend import ThreadSchedulerBackend

__all__ = [
    # Protocols
    "SchedulerBackend",
    "DeliverySink",
    "BackendHealth",
    "TickCallback",
    # Backends
    "ThreadSchedulerBackend",
    # Sinks
    "LoggingDeliverySink",
    "CallbackDeliverySink",
    # Dispatcher
    "ReminderDispatcher",
    "DispatcherStats",
    "DispatcherHealth",
    "DeliveryOutcome",
]
