"""
Structured error types for the job controller.

Every failure the controller can observe is mapped onto a small, typed
hierarchy so that the reconciliation loop can decide, per action, whether
to retry on the next tick or to treat the condition as fatal.

Manifesto:
    - **Typed Error Hierarchy:** Infrastructure, protocol and configuration
      failures are different things and are handled differently
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Rich Context:** Errors carry job ids, feature set refs and versions
    - **Error Chaining:** The underlying client exception is kept as cause

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       ControllerError                            │
        │  (category, retryable, context, cause)                           │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  TransientError         ConfigError          ProtocolError       │
        │  (retryable=True)       (CONFIG, fatal)      (PROTOCOL)          │
        │       │                      │                    │              │
        │  JobManagerError        InvalidSourceError   MalformedMessage    │
        │  RepositoryError        InvalidSelectorError                     │
        │  CatalogError           InvalidVersionError                      │
        │  ChannelError                                                    │
        │  TimeoutExpired                                                  │
        │  ConcurrentModificationError                                     │
        │  LockUnavailableError                                            │
        │                                                                  │
        │  JobNotFoundError (NOT_FOUND)                                    │
        └─────────────────────────────────────────────────────────────────┘

Tags:
    error-handling, exception-hierarchy, retry-logic, jobcontroller

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    # Infrastructure errors (usually transient)
    JOB_RUNTIME = "JOB_RUNTIME"      # Job manager start/abort/status calls
    REPOSITORY = "REPOSITORY"        # Job record persistence
    CATALOG = "CATALOG"              # Feature set / store catalog calls
    CHANNEL = "CHANNEL"              # Message bus publish/consume
    TIMEOUT = "TIMEOUT"              # Deadline exceeded
    CONCURRENCY = "CONCURRENCY"      # Lost optimistic update or lease

    # Protocol errors
    PROTOCOL = "PROTOCOL"            # Malformed or anomalous messages

    # Configuration errors (never retryable)
    CONFIG = "CONFIG"                # Selectors, sources, versions

    # Lookup errors
    NOT_FOUND = "NOT_FOUND"

    # Internal errors
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Structured metadata attached to a controller error."""

    job_id: str | None = None
    job_key: str | None = None
    feature_set: str | None = None
    version: int | None = None
    operation: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize all non-None fields."""
        result = {
            key: value
            for key, value in {
                "job_id": self.job_id,
                "job_key": self.job_key,
                "feature_set": self.feature_set,
                "version": self.version,
                "operation": self.operation,
            }.items()
            if value is not None
        }
        result.update(self.metadata)
        return result


class ControllerError(Exception):
    """
    Base exception for all job controller errors.

    Subclasses set ``default_category`` and ``default_retryable`` so that
    call sites only need to pass a message and, where useful, a cause.

    Examples:
        >>> error = JobManagerError("start failed").with_context(job_id="kafka-1a2b")
        >>> error.retryable
        True
        >>> error.context.job_id
        'kafka-1a2b'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ControllerError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context = self.context.to_dict()
        if context:
            result["context"] = context
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# Transient infrastructure errors
# =============================================================================


class TransientError(ControllerError):
    """Infrastructure failure; the level-triggered loop retries it next tick."""

    default_category = ErrorCategory.INTERNAL
    default_retryable = True


class JobManagerError(TransientError):
    """A job runtime call (start/update/abort/status) failed."""

    default_category = ErrorCategory.JOB_RUNTIME


class RepositoryError(TransientError):
    """A job repository read or write failed."""

    default_category = ErrorCategory.REPOSITORY


class CatalogError(TransientError):
    """The feature set / store catalog could not be queried or updated."""

    default_category = ErrorCategory.CATALOG


class ChannelError(TransientError):
    """Publishing to or consuming from the notification channel failed."""

    default_category = ErrorCategory.CHANNEL


class ConcurrentModificationError(TransientError):
    """An optimistic update lost against a concurrent writer."""

    default_category = ErrorCategory.CONCURRENCY


class LockUnavailableError(TransientError):
    """A per-key lease could not be obtained in time."""

    default_category = ErrorCategory.CONCURRENCY


# =============================================================================
# Configuration errors
# =============================================================================


class ConfigError(ControllerError):
    """Invalid configuration or identity input. Fatal at startup."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class InvalidSourceError(ConfigError):
    """A source cannot be canonically encoded into a job identity."""


class InvalidSelectorError(ConfigError):
    """A feature set selector is malformed."""


class InvalidVersionError(ConfigError):
    """A controller version is not a semantic version or not label-safe."""


# =============================================================================
# Protocol errors
# =============================================================================


class ProtocolError(ControllerError):
    """A notification-channel message violates the ack protocol."""

    default_category = ErrorCategory.PROTOCOL


class MalformedMessageError(ProtocolError):
    """A message payload is missing fields or has the wrong types."""


# =============================================================================
# Lookup errors
# =============================================================================


class JobNotFoundError(ControllerError):
    """An operator command referenced a job id that does not exist."""

    default_category = ErrorCategory.NOT_FOUND

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}", context=ErrorContext(job_id=job_id))
        self.job_id = job_id


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, ControllerError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError))


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "ControllerError",
    # Transient
    "TransientError",
    "JobManagerError",
    "RepositoryError",
    "CatalogError",
    "ChannelError",
    "ConcurrentModificationError",
    "LockUnavailableError",
    # Config
    "ConfigError",
    "InvalidSourceError",
    "InvalidSelectorError",
    "InvalidVersionError",
    # Protocol
    "ProtocolError",
    "MalformedMessageError",
    # Lookup
    "JobNotFoundError",
    # Utilities
    "is_retryable",
]
