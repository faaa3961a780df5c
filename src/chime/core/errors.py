"""
Structured error types for Chime.

Every failure the engine can surface is a ``ChimeError`` carrying a
category, explicit retry semantics, structured context and an optional
chained cause, so background loops can log failures as structured events
instead of bare strings.

Manifesto:
    - **Typed Error Hierarchy:** One type per failure mode of the engine
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Rich Context:** Errors carry metadata for logging
    - **Error Chaining:** Preserve original exceptions while adding context

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       ChimeError                                 │
        │  (category, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  TransientError              LeaseError                          │
        │  (retryable=True)            (COORDINATION)                      │
        │       │                          │                               │
        │  CoordinationUnavailable     LeaseLostError                      │
        │                              NotLeaderError                      │
        │                                                                  │
        │  StorageError                ValidationError    ConfigError      │
        │  (STORAGE)                   (VALIDATION)       (CONFIG)         │
        │       │                                                          │
        │  StorageCorruptionError                                          │
        └─────────────────────────────────────────────────────────────────┘

Examples:
    >>> error = CoordinationUnavailableError("redis timeout", retry_after=1)
    >>> error.retryable
    True
    >>> LeaseLostError("renewal rejected").with_context(lease_key="chime:leader").context.lease_key
    'chime:leader'

Guardrails:
    ❌ DON'T: Raise generic Exception from engine code
    ✅ DO: Use the ChimeError subclass matching the failure mode

    ❌ DON'T: Swallow the original exception
    ✅ DO: Pass it as cause= for error chaining

Tags:
    error-handling, exception-hierarchy, retry-logic, chime
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    # Infrastructure errors (usually transient)
    NETWORK = "NETWORK"           # Coordination store connection, timeout
    STORAGE = "STORAGE"           # Durable store read/write

    # Input errors
    VALIDATION = "VALIDATION"     # Rejected reminder fields

    # Configuration errors (never retryable)
    CONFIG = "CONFIG"             # Inconsistent settings

    # Application errors
    COORDINATION = "COORDINATION"  # Leadership / lease state
    DELIVERY = "DELIVERY"         # Delivery sink failures

    # Internal errors
    INTERNAL = "INTERNAL"         # Bugs, unexpected state


@dataclass
class ErrorContext:
    """
    Structured metadata context for errors.

    Typed fields cover the identifiers the engine logs most often; anything
    else goes into ``metadata``. ``to_dict()`` drops unset fields.

    Attributes:
        lease_key: Coordination key of the guarded resource
        holder_token: Token of the process that raised the error
        item_id: ScheduledItem involved in the failure
        owner_id: Owner of that item
        path: Durable store location
        metadata: Additional key-value pairs
    """

    lease_key: str | None = None
    holder_token: str | None = None
    item_id: str | None = None
    owner_id: str | None = None
    path: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["lease_key", "holder_token", "item_id", "owner_id", "path"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class ChimeError(Exception):
    """
    Base exception for all Chime errors.

    Subclasses set ``default_category`` and ``default_retryable`` so callers
    rarely pass them explicitly.

    Examples:
        >>> error = ChimeError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.retryable
        False
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ChimeError:
        """
        Add context to this error (fluent API).

        Usage:
            raise StorageError("write failed").with_context(path="reminders.json")
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialize for structured logging."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS (Usually Retryable)
# =============================================================================


class TransientError(ChimeError):
    """Temporary error that may succeed on retry."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class CoordinationUnavailableError(TransientError):
    """
    The coordination store is unreachable or failed at the transport level.

    Raised by coordination store clients; the lease manager decides whether
    to retry, degrade, or fail closed.
    """


# =============================================================================
# LEASE ERRORS
# =============================================================================


class LeaseError(ChimeError):
    """Base class for leadership errors."""

    default_category = ErrorCategory.COORDINATION


class LeaseLostError(LeaseError):
    """The lease was taken over or expired before it could be renewed."""


class NotLeaderError(LeaseError):
    """A leader-only operation was requested by a process without the lease."""


# =============================================================================
# STORAGE ERRORS
# =============================================================================


class StorageError(ChimeError):
    """
    Persisting the reminder collection failed.

    The previously persisted state is untouched and remains authoritative.
    """

    default_category = ErrorCategory.STORAGE


class StorageCorruptionError(StorageError):
    """Stored data could not be decoded into reminders."""


# =============================================================================
# INPUT / CONFIG ERRORS (Never Retryable)
# =============================================================================


class ValidationError(ChimeError):
    """A reminder was rejected before being stored."""

    default_category = ErrorCategory.VALIDATION


class ConfigError(ChimeError):
    """Settings are inconsistent."""

    default_category = ErrorCategory.CONFIG


class DeliveryError(ChimeError):
    """A delivery sink could not deliver a reminder."""

    default_category = ErrorCategory.DELIVERY


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "ChimeError",
    "TransientError",
    "CoordinationUnavailableError",
    "LeaseError",
    "LeaseLostError",
    "NotLeaderError",
    "StorageError",
    "StorageCorruptionError",
    "ValidationError",
    "ConfigError",
    "DeliveryError",
]
