"""
Coordination store clients for the leader lease.

The lease manager needs exactly two kinds of atomic primitive from a shared
key-value service: "create key if absent with a TTL", and "extend / delete the
key only if it still holds my token". This module defines that contract and
ships an in-process implementation and a Redis one.

Manifesto:
    Leader safety is enforced by the coordination service's atomicity, never
    by client-side read-then-write. Every conditional step here is a single
    server-side operation (``SET NX PX`` or a Lua script), so two replicas can
    never both believe a renewal or a release succeeded for the same lease.

Architecture:
    ::

        CoordinationStore (Protocol)
        ├── InMemoryCoordinationStore : single process, clock-driven expiry
        └── RedisCoordinationStore    : distributed, server-side TTL

        API: set_if_absent(key, value, ttl_seconds) → bool
             extend_if_owner(key, value, ttl_seconds) → bool
             delete_if_owner(key, value) → bool
             get_holder(key) → str | None

Guardrails:
    ❌ DON'T: GET the key, compare in Python, then PEXPIRE/DEL
    ✅ DO: Use the compare-and-extend / compare-and-delete scripts

    ❌ DON'T: Let redis exceptions leak out of the store
    ✅ DO: Wrap them as CoordinationUnavailableError

Tags:
    leasing, redis, coordination, ttl, compare-and-swap, chime
"""

from __future__ import annotations

import math
import threading
from datetime import datetime, timedelta
from typing import Any, Protocol, runtime_checkable

import redis
from redis.exceptions import RedisError

from chime.core.clock import Clock, SystemClock
from chime.core.errors import CoordinationUnavailableError
from chime.core.logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class CoordinationStore(Protocol):
    """Atomic primitives the lease manager relies on.

    Implementations raise :class:`CoordinationUnavailableError` when the
    service cannot be reached; a ``False`` return always means the service
    answered and the condition did not hold.
    """

    def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        """Create ``key = value`` expiring after ``ttl_seconds`` iff ``key`` is absent."""
        ...

    def extend_if_owner(self, key: str, value: str, ttl_seconds: float) -> bool:
        """Reset the TTL of ``key`` iff it currently holds ``value``."""
        ...

    def delete_if_owner(self, key: str, value: str) -> bool:
        """Delete ``key`` iff it currently holds ``value``."""
        ...

    def get_holder(self, key: str) -> str | None:
        """Return the current value of ``key``, or ``None`` if absent/expired."""
        ...


def _ttl_ms(ttl_seconds: float) -> int:
    """Convert a TTL to whole milliseconds, never zero."""
    return max(1, math.ceil(ttl_seconds * 1000))


# ------------------------------------------------------------------ #
# In-Memory Store
# ------------------------------------------------------------------ #


class InMemoryCoordinationStore:
    """Coordination store for replicas living in one process.

    Expiry is evaluated against the injected clock, which makes lease
    handover scenarios testable with a ``FakeClock``. A single lock makes
    every primitive atomic.

    Example:
        store = InMemoryCoordinationStore(clock=FakeClock())
        store.set_if_absent("chime:leader", "token-a", ttl_seconds=30)
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._entries: dict[str, tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    def _live_value(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock.now() >= expires_at:
            del self._entries[key]
            return None
        return value

    def _expiry(self, ttl_seconds: float) -> datetime:
        return self._clock.now() + timedelta(milliseconds=_ttl_ms(ttl_seconds))

    def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        with self._lock:
            if self._live_value(key) is not None:
                return False
            self._entries[key] = (value, self._expiry(ttl_seconds))
            return True

    def extend_if_owner(self, key: str, value: str, ttl_seconds: float) -> bool:
        with self._lock:
            if self._live_value(key) != value:
                return False
            self._entries[key] = (value, self._expiry(ttl_seconds))
            return True

    def delete_if_owner(self, key: str, value: str) -> bool:
        with self._lock:
            if self._live_value(key) != value:
                return False
            del self._entries[key]
            return True

    def get_holder(self, key: str) -> str | None:
        with self._lock:
            return self._live_value(key)

    def expires_at(self, key: str) -> datetime | None:
        """Expiry of a live key (diagnostics only)."""
        with self._lock:
            if self._live_value(key) is None:
                return None
            return self._entries[key][1]


# ------------------------------------------------------------------ #
# Redis Store
# ------------------------------------------------------------------ #

# KEYS[1] = lease key, ARGV[1] = holder token, ARGV[2] = ttl in ms
_EXTEND_IF_OWNER = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return 0
"""

# KEYS[1] = lease key, ARGV[1] = holder token
_DELETE_IF_OWNER = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisCoordinationStore:
    """Redis-backed coordination store.

    Acquire is ``SET key token NX PX ttl``; conditional extend and delete run
    as Lua scripts so the token comparison and the mutation are one atomic
    step on the server. TLS URLs (``rediss://``) are handled by redis-py.

    Attributes:
        url: Redis connection URL (``redis://host:port/db``), if built from one.

    Example:
        store = RedisCoordinationStore("redis://localhost:6379/0")
        store.set_if_absent("chime:leader", token, ttl_seconds=30)
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        client: Any | None = None,
        socket_timeout: float = 10.0,
    ) -> None:
        """Initialize the store from a URL or an existing client.

        Args:
            url: Redis connection URL.
            client: Pre-built ``redis.Redis`` client (takes precedence).
            socket_timeout: Connect/read timeout in seconds.
        """
        if client is None and url is None:
            raise ValueError("RedisCoordinationStore needs a url or a client")

        self.url = url
        self._client = client or redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            health_check_interval=15,
        )
        self._extend_script = self._client.register_script(_EXTEND_IF_OWNER)
        self._delete_script = self._client.register_script(_DELETE_IF_OWNER)

    def _unavailable(self, operation: str, key: str, exc: Exception) -> CoordinationUnavailableError:
        return CoordinationUnavailableError(
            f"Redis {operation} failed: {exc}", retry_after=1, cause=exc
        ).with_context(lease_key=key, operation=operation)

    def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        try:
            return bool(self._client.set(key, value, nx=True, px=_ttl_ms(ttl_seconds)))
        except RedisError as e:
            raise self._unavailable("set_if_absent", key, e) from e

    def extend_if_owner(self, key: str, value: str, ttl_seconds: float) -> bool:
        try:
            result = self._extend_script(keys=[key], args=[value, _ttl_ms(ttl_seconds)])
        except RedisError as e:
            raise self._unavailable("extend_if_owner", key, e) from e
        return int(result) == 1

    def delete_if_owner(self, key: str, value: str) -> bool:
        try:
            result = self._delete_script(keys=[key], args=[value])
        except RedisError as e:
            raise self._unavailable("delete_if_owner", key, e) from e
        return int(result) == 1

    def get_holder(self, key: str) -> str | None:
        try:
            value = self._client.get(key)
        except RedisError as e:
            raise self._unavailable("get_holder", key, e) from e
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def close(self) -> None:
        """Close the underlying connection pool."""
        try:
            self._client.close()
        except RedisError as e:
            logger.warning("redis_close_failed", error=str(e))


__all__ = [
    "CoordinationStore",
    "InMemoryCoordinationStore",
    "RedisCoordinationStore",
]
