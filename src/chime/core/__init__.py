"""Chime Core -- errors, logging, settings and clock shared by all components.

Architecture::

    errors.py      Structured error hierarchy (ChimeError, LeaseLostError, ...)
    logging.py     structlog configuration and helpers
    settings.py    ChimeSettings (pydantic-settings, CHIME_* env vars)
    clock.py       Clock protocol, SystemClock, FakeClock
"""

from chime.core.clock import Clock, FakeClock, SystemClock, ensure_utc
from chime.core.errors import (
    ChimeError,
    ConfigError,
    CoordinationUnavailableError,
    DeliveryError,
    ErrorCategory,
    ErrorContext,
    LeaseError,
    LeaseLostError,
    NotLeaderError,
    StorageCorruptionError,
    StorageError,
    TransientError,
    ValidationError,
)
from chime.core.logging import configure_logging, get_logger
from chime.core.settings import ChimeSettings, LeasePolicy, get_settings

__all__ = [
    # Clock
    "Clock",
    "FakeClock",
    "SystemClock",
    "ensure_utc",
    # Errors
    "ChimeError",
    "ConfigError",
    "CoordinationUnavailableError",
    "DeliveryError",
    "ErrorCategory",
    "ErrorContext",
    "LeaseError",
    "LeaseLostError",
    "NotLeaderError",
    "StorageCorruptionError",
    "StorageError",
    "TransientError",
    "ValidationError",
    # Logging
    "configure_logging",
    "get_logger",
    # Settings
    "ChimeSettings",
    "LeasePolicy",
    "get_settings",
]
