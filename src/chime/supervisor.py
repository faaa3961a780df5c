"""Process supervisor - lifetime owner of the leader-only components.

Manifesto:
    Exactly one replica may mutate reminders and deliver them. The
    supervisor is the only place that decides when that replica is *this*
    process: it acquires the lease, builds the repository and dispatcher
    only while holding it, and tears both down the moment the lease is
    lost or the process is asked to stop.

Tags:
    chime, supervisor, leader-election, lifecycle, shutdown

Doc-Types:
    api-reference, architecture-diagram


┌──────────────────────────────────────────────────────────────────────────────┐
│  PROCESS SUPERVISOR                                                           │
│                                                                               │
│         ┌──────────── try_acquire() ── False ──► standby? ── no ──► return   │
│         │                                           │ yes                     │
│         ▼                                           ▼                         │
│   ┌──────────┐   acquired    ┌──────────────────────────────┐                │
│   │ STANDBY  │ ────────────► │ LEADING                      │                │
│   └──────────┘               │  repository = load from disk │                │
│         ▲                    │  lease.start_renewal()       │                │
│         │                    │  dispatcher.start()          │                │
│         │  lease lost        └──────────────┬───────────────┘                │
│         └─── (standby) ─────────────────────┤                                │
│                                             │ shutdown()                     │
│                                             ▼                                │
│                    1. stop renewal   2. stop dispatcher (in-flight sweep     │
│                    finishes)   3. release lease iff ours   4. flush store    │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from chime.core.clock import Clock, SystemClock
from chime.core.errors import NotLeaderError, StorageError
from chime.core.logging import LogContext, get_logger
from chime.core.settings import ChimeSettings, get_settings
from chime.leasing.manager import LeaseManager
from chime.leasing.store import CoordinationStore, RedisCoordinationStore
from chime.reminders.repository import ReminderRepository
from chime.reminders.storage import DurableStore, JsonFileStore
from chime.scheduling.protocol import DeliverySink, SchedulerBackend
from chime.scheduling.service import ReminderDispatcher
from chime.scheduling.sinks import LoggingDeliverySink
from chime.scheduling.thread_backend import ThreadSchedulerBackend

logger = get_logger(__name__)

BackendFactory = Callable[[], SchedulerBackend]


class ProcessSupervisor:
    """Run the reminder subsystem on whichever replica holds the lease.

    Example:
        >>> supervisor = ProcessSupervisor.from_settings()
        >>> supervisor.start()          # background thread
        >>> supervisor.repository.add("user-1", DIRECT, "stand up", due_at)
        >>> supervisor.shutdown()
    """

    def __init__(
        self,
        settings: ChimeSettings,
        sink: DeliverySink,
        *,
        store: CoordinationStore | None = None,
        durable_store: DurableStore | None = None,
        clock: Clock | None = None,
        backend_factory: BackendFactory | None = None,
    ) -> None:
        """Wire the components; nothing is acquired or loaded until ``run()``.

        Args:
            settings: Process configuration
            sink: Destination for due reminders
            store: Coordination store (``None`` lets the lease policy decide)
            durable_store: Reminder persistence (default: JSON file at
                           ``settings.storage_path``)
            clock: Shared time source
            backend_factory: Builds a fresh tick backend per leadership term
        """
        self.settings = settings
        self.sink = sink
        self.store = store
        self.durable_store = durable_store or JsonFileStore(settings.storage_path)
        self._clock = clock or SystemClock()
        self._backend_factory = backend_factory or ThreadSchedulerBackend

        self.lease = LeaseManager.from_settings(settings, store, clock=self._clock)
        self.lease.add_listener(self._on_lease_lost)

        self._state_lock = threading.RLock()
        self._repository: ReminderRepository | None = None
        self._dispatcher: ReminderDispatcher | None = None

        self._shutdown = threading.Event()
        self._wake = threading.Event()
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None
        self._terms = 0

    @classmethod
    def from_settings(
        cls,
        settings: ChimeSettings | None = None,
        sink: DeliverySink | None = None,
        **kwargs: Any,
    ) -> ProcessSupervisor:
        """Build a supervisor, connecting to Redis when a URL is configured."""
        settings = settings or get_settings()
        if "store" not in kwargs:
            kwargs["store"] = RedisCoordinationStore(settings.redis_url) if settings.redis_url else None
        return cls(settings, sink or LoggingDeliverySink(), **kwargs)

    # === State ===

    @property
    def is_leader(self) -> bool:
        return self.lease.is_leader

    @property
    def repository(self) -> ReminderRepository:
        """Leader-only reminder repository.

        Raises:
            NotLeaderError: While standing by, or after leadership was lost
        """
        with self._state_lock:
            repository = self._repository
        if repository is None or not self.lease.is_leader:
            raise NotLeaderError("Reminder repository is only available on the leader").with_context(
                lease_key=self.lease.key, holder_token=self.lease.token
            )
        return repository

    @property
    def dispatcher(self) -> ReminderDispatcher | None:
        return self._dispatcher

    @property
    def is_stopped(self) -> bool:
        return self._stopped.is_set()

    # === Lifecycle ===

    def run(self) -> None:
        """Block until ``shutdown()`` (or, without standby, until leadership ends)."""
        self._stopped.clear()
        logger.info(
            "supervisor_starting",
            lease_key=self.lease.key,
            policy=self.lease.policy.value,
            standby=self.settings.standby,
            dispatcher_enabled=self.settings.dispatcher_enabled,
        )
        try:
            while not self._shutdown.is_set():
                self._wake.clear()
                if self._shutdown.is_set():
                    break
                if not self.lease.try_acquire():
                    if not self.settings.standby:
                        logger.warning("supervisor_exiting", reason="lease not acquired")
                        return
                    logger.info("supervisor_standby", retry_seconds=self.settings.acquire_retry_seconds)
                    self._wake.wait(self.settings.acquire_retry_seconds)
                    continue

                with LogContext(term=self._terms + 1):
                    self._lead()
                if self._shutdown.is_set():
                    break

                self._step_down()
                if not self.settings.standby:
                    logger.warning("supervisor_exiting", reason="leadership lost")
                    return
        finally:
            self._teardown()
            self._stopped.set()
            logger.info("supervisor_stopped", terms=self._terms)

    def start(self) -> threading.Thread:
        """Run on a daemon thread and return it."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("supervisor_already_running")
            return self._thread

        self._shutdown.clear()
        self._stopped.clear()
        self._thread = threading.Thread(target=self.run, daemon=True, name="chime-supervisor")
        self._thread.start()
        return self._thread

    def join(self, timeout: float | None = None) -> bool:
        """Wait for ``run()`` to return; True if it has."""
        return self._stopped.wait(timeout)

    def shutdown(self, timeout: float | None = 30.0) -> None:
        """Request a graceful stop. Safe to call repeatedly and from signal handlers."""
        if not self._shutdown.is_set():
            logger.info("supervisor_shutdown_requested")
        self._shutdown.set()
        self._wake.set()

        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("supervisor_shutdown_timeout", timeout=timeout)

    # === Leadership terms ===

    def _lead(self) -> None:
        with self._state_lock:
            self._terms += 1
            self._repository = ReminderRepository(
                self.durable_store,
                clock=self._clock,
                max_backdate=timedelta(seconds=self.settings.max_backdate_seconds),
            )
            self.lease.start_renewal()

            if self.settings.dispatcher_enabled:
                self._dispatcher = ReminderDispatcher(
                    self._repository,
                    self.sink,
                    is_leader=lambda: self.lease.is_leader,
                    clock=self._clock,
                    backend=self._backend_factory(),
                    poll_interval_seconds=self.settings.poll_interval_seconds,
                    lookahead_seconds=self.settings.lookahead_seconds,
                )
                try:
                    self._dispatcher.start()
                except NotLeaderError as e:
                    logger.error("supervisor_dispatcher_not_started", **e.to_dict())
                    return

        logger.info(
            "supervisor_leading",
            term=self._terms,
            token=self.lease.token,
            degraded=self.lease.degraded,
            pending=self._repository.count(),
        )
        # A lease whose local expiry passed counts as lost even before the
        # renewal thread reports it.
        while not self._shutdown.is_set() and self.lease.is_leader:
            self._wake.wait(self.lease.renewal_interval)
            self._wake.clear()

    def _on_lease_lost(self, reason: str) -> None:
        logger.warning("supervisor_leadership_lost", reason=reason)
        self._wake.set()

    def _step_down(self) -> None:
        """Drop leader-only state after a lost lease; the store is not flushed."""
        with self._state_lock:
            self.lease.stop_renewal()
            if self._dispatcher is not None:
                self._dispatcher.stop()
            self.lease.release()
            self._dispatcher = None
            self._repository = None

    def _teardown(self) -> None:
        with self._state_lock:
            self.lease.stop_renewal()
            if self._dispatcher is not None:
                self._dispatcher.stop()
            self.lease.release()

            if self._repository is not None:
                try:
                    self._repository.flush()
                except StorageError as e:
                    logger.error("supervisor_flush_failed", **e.to_dict())

            self._dispatcher = None
            self._repository = None

    # === Diagnostics ===

    def health(self) -> dict[str, Any]:
        dispatcher = self._dispatcher
        repository = self._repository
        if self._stopped.is_set():
            state = "stopped"
        elif repository is not None and self.lease.is_leader:
            state = "leading"
        else:
            state = "standby"
        return {
            "state": state,
            "leader": self.lease.is_leader,
            "terms": self._terms,
            "lease": self.lease.status(),
            "pending": repository.count() if repository is not None else None,
            "dispatcher": dispatcher.health().to_dict() if dispatcher is not None else None,
        }


__all__ = ["BackendFactory", "ProcessSupervisor"]
