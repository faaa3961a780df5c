"""Reminder repository - the single point of mutation for reminders.

┌──────────────────────────────────────────────────────────────────────────────┐
│  REMINDER REPOSITORY                                                          │
│                                                                               │
│  ┌────────────────────────────────────────────────────────────────────┐      │
│  │                   ReminderRepository                               │      │
│  │                                                                    │      │
│  │   In-memory index (id → ScheduledItem), loaded ONCE from the      │      │
│  │   durable store at construction. One lock guards every            │      │
│  │   read-modify-write:                                               │      │
│  │                                                                    │      │
│  │   ├── add(owner, target, payload, due_at, repeat) → ScheduledItem │      │
│  │   ├── remove(owner, id) → bool                                     │      │
│  │   ├── list_for(owner) → list[ScheduledItem]   (read-only)         │      │
│  │   └── pop_due(now, lookahead) → list[ScheduledItem]               │      │
│  │                                                                    │      │
│  │   Mutation protocol (all writers):                                 │      │
│  │     1. build the new index                                         │      │
│  │     2. store.save(new index)     ── fails → StorageError,          │      │
│  │     3. swap it in                    memory == last saved state    │      │
│  └────────────────────────────────────────────────────────────────────┘      │
│                                                                               │
│  pop_due(now, lookahead):                                                     │
│    horizon = now + lookahead                                                  │
│    due     = items with due_at <= horizon, oldest first                       │
│    one-shot → removed                                                         │
│    repeat   → due_at += k * interval, smallest k with due_at > horizon        │
│    exactly one save per call (none when nothing is due)                       │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta
from uuid import uuid4

from chime.core.clock import Clock, SystemClock, ensure_utc
from chime.core.errors import ValidationError
from chime.core.logging import get_logger
from chime.reminders.models import DeliveryTarget, ScheduledItem
from chime.reminders.storage import DurableStore

logger = get_logger(__name__)

MAX_REPEAT_INTERVAL = timedelta(days=3660)


class ReminderRepository:
    """Repository for reminder CRUD and due-item popping.

    Example:
        >>> repo = ReminderRepository(JsonFileStore("reminders.json"))
        >>> item = repo.add("user-1", DIRECT, "stretch", now + timedelta(minutes=10))
        >>> repo.list_for("user-1")
        [ScheduledItem(id='...', ...)]
        >>> due = repo.pop_due(clock.now(), timedelta(seconds=2))
    """

    def __init__(
        self,
        store: DurableStore,
        *,
        clock: Clock | None = None,
        max_backdate: timedelta = timedelta(days=1),
    ) -> None:
        """Load the collection from ``store``.

        Args:
            store: Durable store, read once here and written on every mutation
            clock: Time source used to validate new reminders
            max_backdate: Oldest acceptable ``due_at`` relative to now for ``add``
        """
        self.store = store
        self._clock = clock or SystemClock()
        self.max_backdate = max_backdate
        self._lock = threading.RLock()
        self._items: dict[str, ScheduledItem] = {}

        for item in store.load():
            if item.id in self._items:
                logger.warning("reminder_duplicate_id_dropped", item_id=item.id)
                continue
            self._items[item.id] = item

    # === Mutation ===

    def add(
        self,
        owner_id: str,
        delivery_target: DeliveryTarget,
        payload: str,
        due_at: datetime,
        repeat_interval: timedelta | None = None,
    ) -> ScheduledItem:
        """Create, persist and return a new reminder.

        Raises:
            ValidationError: Bad owner, naive, too-old or out-of-range
                ``due_at``, or a ``repeat_interval`` that is non-positive,
                longer than ``MAX_REPEAT_INTERVAL`` or would overflow the
                calendar
            StorageError: Persisting failed; nothing was added
        """
        now = self._clock.now()
        item = ScheduledItem(
            id=uuid4().hex,
            owner_id=self._validate_owner(owner_id),
            delivery_target=delivery_target,
            payload=payload,
            due_at=self._validate_due_at(due_at, now),
            repeat_interval=self._validate_repeat(repeat_interval),
            created_at=now,
        )
        if item.repeat_interval is not None:
            self._check_next_occurrence(item.due_at, item.repeat_interval)

        with self._lock:
            while item.id in self._items:
                item = replace(item, id=uuid4().hex)
            updated = dict(self._items)
            updated[item.id] = item
            self._commit(updated)

        logger.info(
            "reminder_added",
            item_id=item.id,
            owner_id=item.owner_id,
            due_at=item.due_at.isoformat(),
            repeat_seconds=item.repeat_interval.total_seconds() if item.repeat_interval else None,
        )
        return item

    def remove(self, owner_id: str, item_id: str) -> bool:
        """Remove the owner's reminder ``item_id``.

        Returns:
            True if a reminder was removed, False if no such reminder exists
            for that owner.
        """
        owner_id = self._normalize_owner(owner_id)
        with self._lock:
            item = self._items.get(item_id)
            if item is None or item.owner_id != owner_id:
                return False
            updated = dict(self._items)
            del updated[item_id]
            self._commit(updated)

        logger.info("reminder_removed", item_id=item_id, owner_id=owner_id)
        return True

    def pop_due(self, now: datetime, lookahead: timedelta = timedelta(0)) -> list[ScheduledItem]:
        """Take every reminder due at or before ``now + lookahead``.

        One-shot reminders leave the collection; recurring ones are moved to
        their next occurrence after the horizon. The returned snapshots carry
        the ``due_at`` they were due at, oldest first.

        Raises:
            StorageError: Persisting failed; nothing was popped
        """
        horizon = ensure_utc(now) + max(lookahead, timedelta(0))

        with self._lock:
            due = sorted(
                (item for item in self._items.values() if item.due_at <= horizon),
                key=lambda item: (item.due_at, item.id),
            )
            if not due:
                return []

            updated = dict(self._items)
            for item in due:
                if not item.is_recurring:
                    del updated[item.id]
                    continue
                try:
                    updated[item.id] = item.advanced_past(horizon)
                except OverflowError:
                    # Delivered one last time; no later occurrence exists
                    del updated[item.id]
                    logger.error(
                        "reminder_schedule_exhausted",
                        item_id=item.id,
                        owner_id=item.owner_id,
                        due_at=item.due_at.isoformat(),
                        repeat_seconds=item.repeat_interval.total_seconds(),
                    )
            self._commit(updated)

        logger.debug(
            "reminders_popped",
            count=len(due),
            recurring=sum(1 for item in due if item.is_recurring),
            horizon=horizon.isoformat(),
        )
        return due

    def flush(self) -> None:
        """Persist the current collection again (used on shutdown)."""
        with self._lock:
            self.store.save(self._sorted(self._items.values()))

    def _commit(self, updated: dict[str, ScheduledItem]) -> None:
        # Caller holds the lock. Memory changes only after the save succeeds.
        self.store.save(self._sorted(updated.values()))
        self._items = updated

    # === Queries ===

    def get(self, item_id: str) -> ScheduledItem | None:
        with self._lock:
            return self._items.get(item_id)

    def list_for(self, owner_id: str) -> list[ScheduledItem]:
        """Reminders of one owner, earliest first."""
        owner_id = self._normalize_owner(owner_id)
        with self._lock:
            return self._sorted(i for i in self._items.values() if i.owner_id == owner_id)

    def all(self) -> list[ScheduledItem]:
        with self._lock:
            return self._sorted(self._items.values())

    def count(self) -> int:
        with self._lock:
            return len(self._items)

    def next_due_at(self) -> datetime | None:
        """Earliest pending ``due_at``, if any."""
        with self._lock:
            return min((i.due_at for i in self._items.values()), default=None)

    @staticmethod
    def _sorted(items) -> list[ScheduledItem]:
        return sorted(items, key=lambda item: (item.due_at, item.id))

    # === Validation ===

    @staticmethod
    def _normalize_owner(owner_id: str) -> str:
        return str(owner_id).strip() if owner_id is not None else ""

    def _validate_owner(self, owner_id: str) -> str:
        owner = self._normalize_owner(owner_id)
        if not owner:
            raise ValidationError("owner_id must not be empty")
        return owner

    def _validate_due_at(self, due_at: datetime, now: datetime) -> datetime:
        if not isinstance(due_at, datetime):
            raise ValidationError(f"due_at must be a datetime, got {type(due_at).__name__}")
        try:
            due_utc = ensure_utc(due_at)
        except OverflowError as e:
            raise ValidationError(f"due_at {due_at.isoformat()} is out of range", cause=e) from e
        except ValueError as e:
            raise ValidationError(str(e), cause=e) from e
        if due_utc < now - self.max_backdate:
            raise ValidationError(
                f"due_at {due_utc.isoformat()} is more than "
                f"{self.max_backdate} in the past"
            )
        return due_utc

    @staticmethod
    def _validate_repeat(repeat_interval: timedelta | None) -> timedelta | None:
        if repeat_interval is None:
            return None
        if not isinstance(repeat_interval, timedelta) or repeat_interval <= timedelta(0):
            raise ValidationError(f"repeat_interval must be a positive duration, got {repeat_interval!r}")
        if repeat_interval > MAX_REPEAT_INTERVAL:
            raise ValidationError(
                f"repeat_interval {repeat_interval} exceeds the maximum of {MAX_REPEAT_INTERVAL}"
            )
        return repeat_interval

    @staticmethod
    def _check_next_occurrence(due_at: datetime, repeat_interval: timedelta) -> None:
        try:
            due_at + repeat_interval
        except OverflowError as e:
            raise ValidationError(
                f"due_at {due_at.isoformat()} leaves no room for another occurrence", cause=e
            ) from e


__all__ = ["ReminderRepository"]
