"""Reminder persistence.

Modules::

    models.py      ScheduledItem, DeliveryTarget, DIRECT
    storage.py     DurableStore protocol, JsonFileStore (atomic replace)
    repository.py  ReminderRepository (add / remove / list_for / pop_due)
"""

from __future__ import annotations

from chime.reminders.models import DIRECT, DeliveryTarget, ScheduledItem
from chime.reminders.repository import ReminderRepository
from chime.reminders.storage import DurableStore, JsonFileStore

__all__ = [
    "DIRECT",
    "DeliveryTarget",
    "ScheduledItem",
    "DurableStore",
    "JsonFileStore",
    "ReminderRepository",
]
