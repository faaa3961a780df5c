"""Leader lease manager.

Manifesto:
    Exactly one replica may deliver reminders at any instant. The lease
    manager claims a TTL-bounded key in the coordination store, renews it
    from a supervised daemon thread only while it still holds its own token,
    and treats any doubt about ownership as fatal to leader-only work.
    A crashed leader never blocks the others for longer than one TTL.

Tags:
    chime, leasing, leader-election, TTL, distributed-locks, safety

Doc-Types:
    api-reference, architecture-diagram


    Lease Lifecycle::

        try_acquire()  ── SET NX PX ttl ──►  leader (expires_at = now + ttl)
             │                                   │
             │ held elsewhere → False            │ start_renewal()
             │ unreachable    → policy           ▼
             │   DEGRADE      → leader (degraded, no renewal)
             │   FAIL_CLOSED  → False      every max(ttl - margin, floor):
             │                               extend_if_owner(token)
             │                                 ├── True  → expires_at = now + ttl
             │                                 ├── False → LOST (fatal)
             │                                 └── error → retry every retry_seconds
             │                                             until expires_at → LOST
             ▼
        release()  ── delete_if_owner(token) ──►  not leader
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from chime.core.clock import Clock, SystemClock
from chime.core.errors import ConfigError, CoordinationUnavailableError, LeaseLostError
from chime.core.logging import get_logger
from chime.core.settings import ChimeSettings, LeasePolicy
from chime.leasing.store import CoordinationStore

logger = get_logger(__name__)

LeaseLostCallback = Callable[[str], None]


class LeaseManager:
    """Acquire, renew and release the leader lease.

    Example:
        >>> manager = LeaseManager(store, key="chime:leader", ttl_seconds=30)
        >>> if manager.try_acquire():
        ...     manager.add_listener(lambda reason: stop_event.set())
        ...     manager.start_renewal()
        ...     try:
        ...         run_leader_work()
        ...     finally:
        ...         manager.release()
    """

    def __init__(
        self,
        store: CoordinationStore | None,
        key: str = "chime:leader",
        ttl_seconds: float = 30.0,
        *,
        token: str | None = None,
        policy: LeasePolicy = LeasePolicy.DEGRADE,
        clock: Clock | None = None,
        renew_margin_seconds: float = 5.0,
        renew_floor_seconds: float = 5.0,
        retry_seconds: float = 1.0,
        acquire_attempts: int = 3,
        acquire_backoff_seconds: float = 0.5,
    ) -> None:
        """Initialize the lease manager.

        Args:
            store: Coordination store; ``None`` means coordination is unconfigured
            key: Lease key shared by all replicas
            ttl_seconds: Lease lifetime without renewal
            token: Fixed holder token. A fresh random token is drawn on every
                   acquisition when not provided.
            policy: Behaviour when the store is unconfigured or unreachable
            clock: Time source for local expiry tracking
            renew_margin_seconds: Renew this long before expiry
            renew_floor_seconds: Never renew more often than this
            retry_seconds: Retry cadence after a transient renewal error
            acquire_attempts: Transport-error attempts before the policy applies
            acquire_backoff_seconds: Pause between acquire attempts
        """
        if ttl_seconds <= 0:
            raise ConfigError(f"Lease TTL must be positive, got {ttl_seconds}")

        self.store = store
        self.key = key
        self.ttl_seconds = ttl_seconds
        self.policy = LeasePolicy(policy)
        self.renewal_interval = max(ttl_seconds - renew_margin_seconds, renew_floor_seconds)
        if self.renewal_interval >= ttl_seconds:
            raise ConfigError(
                f"Renewal interval {self.renewal_interval}s must be shorter than TTL {ttl_seconds}s"
            ).with_context(lease_key=key)

        self.retry_seconds = retry_seconds
        self.acquire_attempts = max(1, acquire_attempts)
        self.acquire_backoff_seconds = acquire_backoff_seconds

        self._fixed_token = token
        self._token = token or uuid4().hex
        self._clock = clock or SystemClock()

        self._lock = threading.Lock()
        self._held = False
        self._degraded = False
        self._expires_at: datetime | None = None
        self._listeners: list[LeaseLostCallback] = []

        self.lost = threading.Event()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_settings(
        cls,
        settings: ChimeSettings,
        store: CoordinationStore | None,
        clock: Clock | None = None,
    ) -> LeaseManager:
        """Build a manager from ``ChimeSettings``."""
        return cls(
            store,
            key=settings.lease_key,
            ttl_seconds=settings.lease_ttl_seconds,
            token=settings.instance_id,
            policy=settings.lease_policy,
            clock=clock,
            renew_margin_seconds=settings.renew_margin_seconds,
            renew_floor_seconds=settings.renew_floor_seconds,
            retry_seconds=settings.renew_retry_seconds,
            acquire_attempts=settings.acquire_attempts,
        )

    # === State ===

    @property
    def token(self) -> str:
        """Holder token of the current (or last) acquisition."""
        return self._token

    @property
    def is_leader(self) -> bool:
        """True while this process may run leader-only work.

        A held lease whose local expiry has passed no longer counts, even
        before the renewal thread notices.
        """
        with self._lock:
            if not self._held:
                return False
            if self._degraded:
                return True
            return self._expires_at is not None and self._clock.now() < self._expires_at

    @property
    def degraded(self) -> bool:
        """True when leadership was granted by policy rather than by the lease."""
        return self._degraded

    @property
    def expires_at(self) -> datetime | None:
        return self._expires_at

    def add_listener(self, callback: LeaseLostCallback) -> None:
        """Register a callback invoked with the reason when leadership is lost."""
        self._listeners.append(callback)

    # === Acquire ===

    def try_acquire(self) -> bool:
        """Attempt to become leader.

        Returns:
            True if this process is now leader (by lease, or by the DEGRADE
            policy when coordination is unavailable), False otherwise.
        """
        if self._held:
            return True

        self.lost.clear()
        if self.store is None:
            return self._apply_policy("coordination store not configured")

        if self._fixed_token is None:
            self._token = uuid4().hex

        last_error: CoordinationUnavailableError | None = None
        for attempt in range(1, self.acquire_attempts + 1):
            started = self._clock.now()
            try:
                acquired = self.store.set_if_absent(self.key, self._token, self.ttl_seconds)
            except CoordinationUnavailableError as e:
                last_error = e
                logger.warning(
                    "lease_acquire_error",
                    attempt=attempt,
                    attempts=self.acquire_attempts,
                    **e.to_dict(),
                )
                if attempt < self.acquire_attempts and self.acquire_backoff_seconds > 0:
                    time.sleep(self.acquire_backoff_seconds)
                continue

            if acquired:
                with self._lock:
                    self._held = True
                    self._degraded = False
                    self._expires_at = started + timedelta(seconds=self.ttl_seconds)
                logger.info(
                    "lease_acquired",
                    key=self.key,
                    token=self._token,
                    ttl_seconds=self.ttl_seconds,
                    expires_at=self._expires_at.isoformat(),
                )
                return True

            logger.info("lease_held_elsewhere", key=self.key, token=self._token)
            return False

        return self._apply_policy(f"coordination store unreachable: {last_error}")

    def _apply_policy(self, reason: str) -> bool:
        if self.policy is LeasePolicy.FAIL_CLOSED:
            logger.error("lease_unavailable_fail_closed", key=self.key, reason=reason)
            return False

        with self._lock:
            self._held = True
            self._degraded = True
            self._expires_at = None
        logger.warning(
            "lease_degraded_leadership",
            key=self.key,
            reason=reason,
            detail="running without a leader lock; assuming a single instance",
        )
        return True

    # === Renewal ===

    def renew(self) -> bool:
        """Extend the lease once, iff the stored token is still ours.

        Returns:
            True if renewed (or degraded). False if not leader or if the store
            rejected the renewal, which is reported as leadership loss.

        Raises:
            CoordinationUnavailableError: Transport failure; ownership unknown
        """
        if not self._held:
            return False
        if self._degraded:
            return True

        started = self._clock.now()
        if self.store.extend_if_owner(self.key, self._token, self.ttl_seconds):
            with self._lock:
                self._expires_at = started + timedelta(seconds=self.ttl_seconds)
            logger.debug("lease_renewed", key=self.key, expires_at=self._expires_at.isoformat())
            return True

        self._mark_lost("renewal rejected: lease held by another token or expired")
        return False

    def start_renewal(self) -> None:
        """Start the renewal daemon thread (no-op when degraded or not leader)."""
        if not self._held or self._degraded:
            return
        if self._thread is not None and self._thread.is_alive():
            logger.warning("lease_renewal_already_running", key=self.key)
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._renew_loop, daemon=True, name="chime-lease-renewal"
        )
        self._thread.start()
        logger.info(
            "lease_renewal_started", key=self.key, interval_seconds=self.renewal_interval
        )

    def stop_renewal(self, timeout: float = 5.0) -> None:
        """Stop the renewal thread and wait for it to exit."""
        self._stop_event.set()
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return
        thread.join(timeout=timeout)
        if thread.is_alive():
            logger.warning("lease_renewal_stop_timeout", key=self.key)
        self._thread = None

    def _renew_loop(self) -> None:
        wait = self.renewal_interval
        while not self._stop_event.wait(wait):
            if not self.is_leader:
                self._mark_lost("lease expired before renewal succeeded")
                return

            try:
                if not self.renew():
                    return
                wait = self.renewal_interval
            except CoordinationUnavailableError as e:
                expires_at = self._expires_at
                if expires_at is None:
                    return
                remaining = (expires_at - self._clock.now()).total_seconds()
                logger.warning("lease_renew_error", remaining_seconds=remaining, **e.to_dict())
                wait = max(0.0, min(self.retry_seconds, remaining))

    def _mark_lost(self, reason: str) -> None:
        with self._lock:
            if not self._held:
                return
            self._held = False
            self._expires_at = None

        self.lost.set()
        error = LeaseLostError(reason).with_context(lease_key=self.key, holder_token=self._token)
        logger.error("lease_lost", **error.to_dict())
        for callback in list(self._listeners):
            try:
                callback(reason)
            except Exception:
                logger.exception("lease_lost_listener_failed", key=self.key)

    # === Release ===

    def release(self) -> bool:
        """Give up leadership.

        The stored lease is deleted only if it still carries our token, so a
        stale shutdown never removes a newer leader's lease.

        Returns:
            True if a lease record was deleted.
        """
        self.stop_renewal()

        with self._lock:
            held, degraded = self._held, self._degraded
            self._held = False
            self._degraded = False
            self._expires_at = None

        if not held or degraded or self.store is None:
            return False

        try:
            released = self.store.delete_if_owner(self.key, self._token)
        except CoordinationUnavailableError as e:
            logger.warning("lease_release_error", **e.to_dict())
            return False

        if released:
            logger.info("lease_released", key=self.key, token=self._token)
        else:
            logger.warning("lease_release_not_owner", key=self.key, token=self._token)
        return released

    # === Diagnostics ===

    def status(self) -> dict[str, Any]:
        """Serializable snapshot for health endpoints and the CLI."""
        return {
            "key": self.key,
            "token": self._token,
            "leader": self.is_leader,
            "degraded": self._degraded,
            "policy": self.policy.value,
            "ttl_seconds": self.ttl_seconds,
            "renewal_interval_seconds": self.renewal_interval,
            "expires_at": self._expires_at.isoformat() if self._expires_at else None,
            "renewing": self._thread is not None and self._thread.is_alive(),
        }


__all__ = ["LeaseManager", "LeaseLostCallback"]
