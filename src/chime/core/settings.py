"""
Centralized settings for Chime.

All knobs of the lease manager, the reminder dispatcher and the durable store
are plain scalars with working defaults, read once at startup from
``CHIME_*`` environment variables or a ``.env`` file.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.
    Replicas of the same bot must agree on the lease key and TTL, so those
    values come from one validated object rather than ad-hoc ``os.environ``
    lookups scattered over the code.

    - **Pydantic validation:** Type-checked at startup, not runtime
    - **Environment-driven:** Reads from env vars and .env files
    - **Hosting aliases:** ``REDIS_URL``, ``IS_DISPATCHER``, ``RENDER_INSTANCE_ID``
    - **Sensible defaults:** Works out of the box as a single instance

Examples:
    >>> from chime.core.settings import ChimeSettings
    >>> settings = ChimeSettings(lease_ttl_seconds=30, poll_interval_seconds=5)
    >>> settings.renewal_interval_seconds
    25.0

Tags:
    settings, configuration, pydantic, environment, chime
"""

from __future__ import annotations

from datetime import timedelta
from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

POLL_INTERVAL_FLOOR_SECONDS = 2.0
LOOKAHEAD_MAX_SECONDS = 10.0


class LeasePolicy(str, Enum):
    """What to do when the coordination store is unreachable or unconfigured."""

    DEGRADE = "degrade"          # run as leader anyway, log a warning
    FAIL_CLOSED = "fail_closed"  # refuse leadership


class LogFormat(str, Enum):
    AUTO = "auto"
    JSON = "json"
    CONSOLE = "console"


class ChimeSettings(BaseSettings):
    """Chime configuration.

    Fields
    ──────
    redis_url            : Coordination store URL (None → no coordination)
    lease_key            : Key of the leader lease in the coordination store
    lease_ttl_seconds    : Lease lifetime without renewal
    lease_policy         : degrade | fail_closed when coordination is down
    instance_id          : Holder token override (random when unset)
    poll_interval_seconds: Dispatcher period (floor 2s)
    lookahead_seconds    : Due-check slack (clamped to 0..10s, < poll period)
    storage_path         : Durable store file
    """

    model_config = SettingsConfigDict(
        env_prefix="CHIME_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # ── Coordination ─────────────────────────────────────────────
    redis_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "CHIME_REDIS_URL",
            "REDIS_URL",
            "UPSTASH_REDIS_URL",
            "REDIS",
            "REDIS_CONNECTION_STRING",
        ),
    )
    lease_key: str = Field(
        default="chime:leader",
        validation_alias=AliasChoices("CHIME_LEASE_KEY", "LEADER_LOCK_KEY"),
    )
    lease_ttl_seconds: float = Field(default=30.0, gt=0)
    lease_policy: LeasePolicy = Field(default=LeasePolicy.DEGRADE)
    instance_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("CHIME_INSTANCE_ID", "RENDER_INSTANCE_ID"),
    )
    renew_margin_seconds: float = Field(default=5.0, ge=0)
    renew_floor_seconds: float = Field(default=5.0, gt=0)
    renew_retry_seconds: float = Field(default=1.0, gt=0)
    acquire_attempts: int = Field(default=3, ge=1)
    acquire_retry_seconds: float = Field(default=10.0, gt=0)
    standby: bool = Field(default=True)

    # ── Dispatcher ───────────────────────────────────────────────
    poll_interval_seconds: float = Field(default=5.0)
    lookahead_seconds: float = Field(default=2.0)
    dispatcher_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("CHIME_DISPATCHER_ENABLED", "IS_DISPATCHER"),
    )

    # ── Storage ──────────────────────────────────────────────────
    storage_path: Path = Field(default=Path("reminders.json"))
    max_backdate_seconds: float = Field(default=86400.0, ge=0)

    # ── Observability ────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: LogFormat = Field(default=LogFormat.AUTO)

    @field_validator("redis_url", "instance_id", mode="before")
    @classmethod
    def _blank_is_unset(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value.strip() if isinstance(value, str) else value

    @field_validator("poll_interval_seconds")
    @classmethod
    def _clamp_poll_interval(cls, value: float) -> float:
        return max(POLL_INTERVAL_FLOOR_SECONDS, value)

    @field_validator("lookahead_seconds")
    @classmethod
    def _clamp_lookahead(cls, value: float) -> float:
        return min(max(0.0, value), LOOKAHEAD_MAX_SECONDS)

    @model_validator(mode="after")
    def _check_timings(self) -> ChimeSettings:
        if self.lookahead_seconds >= self.poll_interval_seconds:
            raise ValueError(
                f"lookahead_seconds ({self.lookahead_seconds}) must be smaller than "
                f"poll_interval_seconds ({self.poll_interval_seconds})"
            )
        if self.renewal_interval_seconds >= self.lease_ttl_seconds:
            raise ValueError(
                f"renewal interval ({self.renewal_interval_seconds}s) must be shorter than "
                f"lease_ttl_seconds ({self.lease_ttl_seconds}s); raise the TTL or the margin"
            )
        return self

    @property
    def renewal_interval_seconds(self) -> float:
        """Seconds between lease renewals: ``max(ttl - margin, floor)``."""
        return max(self.lease_ttl_seconds - self.renew_margin_seconds, self.renew_floor_seconds)

    @property
    def lookahead(self) -> timedelta:
        return timedelta(seconds=self.lookahead_seconds)

    @property
    def max_backdate(self) -> timedelta:
        return timedelta(seconds=self.max_backdate_seconds)

    @property
    def json_logs(self) -> bool | None:
        """Renderer choice for ``configure_logging`` (None → detect TTY)."""
        if self.log_format is LogFormat.AUTO:
            return None
        return self.log_format is LogFormat.JSON


@lru_cache(maxsize=1)
def get_settings() -> ChimeSettings:
    """Return the process-wide settings, loaded once."""
    return ChimeSettings()


__all__ = [
    "ChimeSettings",
    "LeasePolicy",
    "LogFormat",
    "get_settings",
    "POLL_INTERVAL_FLOOR_SECONDS",
    "LOOKAHEAD_MAX_SECONDS",
]
