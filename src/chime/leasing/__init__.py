"""Leader election over a shared coordination store.

Quick Start::

    from chime.leasing import LeaseManager, RedisCoordinationStore

    store = RedisCoordinationStore("redis://localhost:6379/0")
    lease = LeaseManager(store, key="chime:leader", ttl_seconds=30)
    if lease.try_acquire():
        lease.start_renewal()

Modules::

    store.py      CoordinationStore protocol, in-memory and Redis clients
    manager.py    LeaseManager (acquire / renew / release)
"""

from __future__ import annotations

from chime.leasing.manager import LeaseLostCallback, LeaseManager
from chime.leasing.store import (
    CoordinationStore,
    InMemoryCoordinationStore,
    RedisCoordinationStore,
)

__all__ = [
    "CoordinationStore",
    "InMemoryCoordinationStore",
    "RedisCoordinationStore",
    "LeaseManager",
    "LeaseLostCallback",
]
