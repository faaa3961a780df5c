"""Reminder dispatcher - the periodic due-check loop.

Manifesto:
    The dispatcher combines a backend (timing), the reminder repository
    (data), a leadership probe (safety) and a delivery sink (I/O). Each
    tick drains due reminders out of the repository's critical section
    first and only then delivers them, one at a time, so a slow or failing
    destination never blocks ``add``/``remove`` callers or other reminders.

Tags:
    chime, scheduling, dispatcher, beat-as-poller, service

Doc-Types:
    api-reference, architecture-diagram


┌──────────────────────────────────────────────────────────────────────────────┐
│  REMINDER DISPATCHER                                                          │
│                                                                               │
│   Stopped ──start() [leader only]──► Running                                  │
│   Running ──stop() / leadership lost──► Stopped                               │
│                                                                               │
│   sweep_once()   (one per tick, serialized by a gate lock)                    │
│   ┌────────────────────────────────────────────────────────────┐             │
│   │ 1. is_leader()?            no → skip (pop nothing)         │             │
│   │ 2. repository.pop_due(now, lookahead)                      │             │
│   │ 3. for each item, oldest first:                            │             │
│   │      sink.deliver(target, payload)                         │             │
│   │        ├── True          → delivered                       │             │
│   │        └── False / raise → logged, item still consumed     │             │
│   └────────────────────────────────────────────────────────────┘             │
│                                                                               │
│   Failed one-shot reminders are not re-queued: dropped after one attempt.    │
│   Failed recurring reminders fire again at their next occurrence.            │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from chime.core.clock import Clock, SystemClock
from chime.core.errors import ConfigError, DeliveryError, NotLeaderError, StorageError
from chime.core.logging import get_logger
from chime.reminders.models import ScheduledItem
from chime.reminders.repository import ReminderRepository
from chime.scheduling.protocol import BackendHealth, DeliverySink, SchedulerBackend
from chime.scheduling.thread_backend import ThreadSchedulerBackend

logger = get_logger(__name__)


@dataclass
class DispatcherStats:
    """Statistics for the reminder dispatcher."""

    tick_count: int = 0
    reminders_delivered: int = 0
    reminders_failed: int = 0
    sweeps_skipped: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None


@dataclass
class DispatcherHealth:
    """Health status for the reminder dispatcher."""

    healthy: bool
    backend: BackendHealth | dict
    pending: int = 0
    next_due_at: datetime | None = None
    stats: DispatcherStats = field(default_factory=DispatcherStats)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "healthy": self.healthy,
            "backend": self.backend.to_dict() if isinstance(self.backend, BackendHealth) else self.backend,
            "pending": self.pending,
            "next_due_at": self.next_due_at.isoformat() if self.next_due_at else None,
            "stats": {
                "tick_count": self.stats.tick_count,
                "reminders_delivered": self.stats.reminders_delivered,
                "reminders_failed": self.stats.reminders_failed,
                "sweeps_skipped": self.stats.sweeps_skipped,
                "last_tick": self.stats.last_tick.isoformat() if self.stats.last_tick else None,
                "last_error": self.stats.last_error,
            },
        }


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of handing one reminder to the sink."""

    item: ScheduledItem
    delivered: bool
    error: str | None = None


class ReminderDispatcher:
    """Scheduler loop: poll for due reminders and deliver them.

    Example:
        >>> dispatcher = ReminderDispatcher(
        ...     repository=repo,
        ...     sink=LoggingDeliverySink(),
        ...     is_leader=lambda: lease.is_leader,
        ...     poll_interval_seconds=5,
        ...     lookahead_seconds=2,
        ... )
        >>> dispatcher.start()
        >>>
        >>> # Later...
        >>> dispatcher.stop()
    """

    def __init__(
        self,
        repository: ReminderRepository,
        sink: DeliverySink,
        *,
        is_leader: Callable[[], bool] | None = None,
        clock: Clock | None = None,
        backend: SchedulerBackend | None = None,
        poll_interval_seconds: float = 5.0,
        lookahead_seconds: float = 2.0,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            repository: Reminder repository to pop due items from
            sink: Delivery sink
            is_leader: Leadership probe checked before every sweep
                       (defaults to always-leader, for single-instance use)
            clock: Time source for due checks
            backend: Tick backend (default: ThreadSchedulerBackend)
            poll_interval_seconds: Tick period
            lookahead_seconds: Due-check slack; must be smaller than the period

        Raises:
            ConfigError: If lookahead is negative or not below the poll period
        """
        if poll_interval_seconds <= 0:
            raise ConfigError(f"poll_interval_seconds must be positive, got {poll_interval_seconds}")
        if not 0 <= lookahead_seconds < poll_interval_seconds:
            raise ConfigError(
                f"lookahead_seconds ({lookahead_seconds}) must be >= 0 and smaller than "
                f"poll_interval_seconds ({poll_interval_seconds})"
            )

        self.repository = repository
        self.sink = sink
        self.backend = backend or ThreadSchedulerBackend()
        self.interval = poll_interval_seconds
        self.lookahead = timedelta(seconds=lookahead_seconds)
        self._is_leader = is_leader or (lambda: True)
        self._clock = clock or SystemClock()

        self._stats = DispatcherStats()
        self._running = False
        self._gate = threading.Lock()

    # === Lifecycle ===

    def start(self) -> None:
        """Start polling.

        Raises:
            NotLeaderError: This process does not hold the leader lease
        """
        if self._running:
            logger.warning("dispatcher_already_running")
            return
        if not self._is_leader():
            raise NotLeaderError("Reminder dispatcher may only run on the leader")

        logger.info(
            "dispatcher_starting",
            backend=self.backend.name,
            interval_seconds=self.interval,
            lookahead_seconds=self.lookahead.total_seconds(),
            pending=self.repository.count(),
        )
        self.backend.start(self._tick, self.interval)
        self._running = True

    def stop(self) -> None:
        """Stop polling; an in-flight sweep finishes its deliveries first."""
        if not self._running:
            return

        logger.info("dispatcher_stopping")
        self.backend.stop()
        self._running = False
        logger.info("dispatcher_stopped", **self._stats_fields())

    @property
    def is_running(self) -> bool:
        return self._running

    # === Sweep ===

    def _tick(self) -> None:
        try:
            self.sweep_once()
        except Exception as e:
            self._stats.last_error = str(e)
            logger.exception("dispatcher_tick_failed")

    def sweep_once(self) -> list[DeliveryOutcome]:
        """Run one due-check cycle synchronously.

        Returns:
            One outcome per reminder popped in this cycle, oldest first.
        """
        with self._gate:
            now = self._clock.now()
            self._stats.tick_count += 1
            self._stats.last_tick = now

            if not self._is_leader():
                self._stats.sweeps_skipped += 1
                logger.warning("dispatcher_sweep_skipped", reason="not leader")
                return []

            try:
                due = self.repository.pop_due(now, self.lookahead)
            except StorageError as e:
                self._stats.last_error = e.message
                logger.error("dispatcher_pop_failed", **e.to_dict())
                return []

            if not due:
                logger.debug("dispatcher_nothing_due")
                return []

            logger.info("dispatcher_reminders_due", count=len(due))
            return [self._deliver(item) for item in due]

    def _deliver(self, item: ScheduledItem) -> DeliveryOutcome:
        fields = {
            "item_id": item.id,
            "owner_id": item.owner_id,
            "target": str(item.delivery_target),
            "due_at": item.due_at.isoformat(),
            "recurring": item.is_recurring,
        }
        try:
            delivered = self.sink.deliver(item.delivery_target, item.payload)
        except Exception as e:
            self._stats.reminders_failed += 1
            self._stats.last_error = str(e)
            logger.exception("reminder_delivery_failed", **fields)
            return DeliveryOutcome(item=item, delivered=False, error=str(e))

        if not delivered:
            error = DeliveryError("Delivery sink rejected reminder").with_context(
                item_id=item.id, owner_id=item.owner_id
            )
            self._stats.reminders_failed += 1
            self._stats.last_error = error.message
            logger.error("reminder_delivery_failed", **{**fields, **error.to_dict()})
            return DeliveryOutcome(item=item, delivered=False, error=error.message)

        self._stats.reminders_delivered += 1
        logger.info("reminder_dispatched", **fields)
        return DeliveryOutcome(item=item, delivered=True)

    # === Health & Stats ===

    def health(self) -> DispatcherHealth:
        backend_health = self.backend.health()
        return DispatcherHealth(
            healthy=self._running and backend_health.get("healthy", False),
            backend=backend_health,
            pending=self.repository.count(),
            next_due_at=self.repository.next_due_at(),
            stats=self._stats,
        )

    def get_stats(self) -> DispatcherStats:
        return self._stats

    def reset_stats(self) -> None:
        self._stats = DispatcherStats()

    def _stats_fields(self) -> dict[str, Any]:
        return {
            "ticks": self._stats.tick_count,
            "delivered": self._stats.reminders_delivered,
            "failed": self._stats.reminders_failed,
        }


__all__ = [
    "DeliveryOutcome",
    "DispatcherHealth",
    "DispatcherStats",
    "ReminderDispatcher",
]
