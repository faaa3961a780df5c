"""Reminder data model.

Manifesto:
    A reminder is an immutable value: the repository replaces items rather
    than mutating them in place, so a snapshot handed to the dispatcher can
    never change underneath a delivery. ``due_at`` is always an aware UTC
    instant; the serialized form keeps the offset so no reader can mistake
    it for local time.

Tags:
    chime, models, reminders, dataclasses, serialization

Doc-Types:
    api-reference, data-model
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any

from chime.core.clock import ensure_utc
from chime.core.errors import StorageCorruptionError

# ---------------------------------------------------------------------------
# Delivery target
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeliveryTarget:
    """Where a reminder should be delivered.

    Opaque to the engine; only delivery sinks interpret it. Both fields unset
    means "deliver directly to the owner" (see :data:`DIRECT`).
    """

    guild_id: str | None = None
    channel_id: str | None = None

    @property
    def is_direct(self) -> bool:
        return self.guild_id is None and self.channel_id is None

    def to_dict(self) -> dict[str, Any]:
        return {"guild_id": self.guild_id, "channel_id": self.channel_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> DeliveryTarget:
        if not data:
            return DIRECT
        guild_id = data.get("guild_id")
        channel_id = data.get("channel_id")
        return cls(
            guild_id=str(guild_id) if guild_id is not None else None,
            channel_id=str(channel_id) if channel_id is not None else None,
        )

    def __str__(self) -> str:
        if self.is_direct:
            return "direct"
        return f"{self.guild_id or '-'}/{self.channel_id or '-'}"


DIRECT = DeliveryTarget()
"""Sentinel target: deliver to the owner directly."""


# ---------------------------------------------------------------------------
# Scheduled item
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScheduledItem:
    """A pending reminder."""

    id: str
    owner_id: str
    delivery_target: DeliveryTarget
    payload: str
    due_at: datetime  # aware, UTC
    repeat_interval: timedelta | None = None  # None → one-shot
    created_at: datetime | None = None

    @property
    def is_recurring(self) -> bool:
        return self.repeat_interval is not None

    def advanced_past(self, horizon: datetime) -> ScheduledItem:
        """Return a copy whose ``due_at`` moved forward by whole intervals
        until it lies strictly after ``horizon``.

        Missed occurrences are skipped rather than replayed, and the result
        stays on the original schedule grid (``due_at + k * interval``).

        Raises:
            OverflowError: The next occurrence lies beyond ``datetime.max``
        """
        if self.repeat_interval is None:
            raise ValueError(f"Reminder {self.id} does not repeat")
        if self.due_at > horizon:
            return self
        steps = (horizon - self.due_at) // self.repeat_interval + 1
        return replace(self, due_at=self.due_at + self.repeat_interval * steps)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-compatible primitives."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "delivery_target": self.delivery_target.to_dict(),
            "payload": self.payload,
            "due_at": self.due_at.isoformat(),
            "repeat_interval_seconds": (
                self.repeat_interval.total_seconds() if self.repeat_interval else None
            ),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScheduledItem:
        """Deserialize a stored item.

        Raises:
            StorageCorruptionError: Missing fields, bad or out-of-range
                timestamps and intervals, or a zone-less ``due_at``.
        """
        try:
            repeat_seconds = data.get("repeat_interval_seconds")
            created_raw = data.get("created_at")
            item = cls(
                id=str(data["id"]),
                owner_id=str(data["owner_id"]),
                delivery_target=DeliveryTarget.from_dict(data.get("delivery_target")),
                payload=str(data["payload"]),
                due_at=ensure_utc(datetime.fromisoformat(data["due_at"])),
                repeat_interval=(
                    timedelta(seconds=float(repeat_seconds)) if repeat_seconds else None
                ),
                created_at=(
                    ensure_utc(datetime.fromisoformat(created_raw)) if created_raw else None
                ),
            )
        except (AttributeError, KeyError, OverflowError, TypeError, ValueError) as e:
            raise StorageCorruptionError(f"Invalid reminder record: {e}", cause=e) from e

        if item.repeat_interval is not None and item.repeat_interval <= timedelta(0):
            raise StorageCorruptionError(
                f"Reminder {item.id} has non-positive repeat interval"
            ).with_context(item_id=item.id)
        return item


__all__ = ["DeliveryTarget", "DIRECT", "ScheduledItem"]
