"""
Structured error types for category-spine.

Every failure the engine reasons about is a typed error carrying a category,
a retry hint, structured context and an optional chained cause. The pipeline
distinguishes four failure kinds; everything else is an infrastructure or
programming error.

Manifesto:
    - **Typed Error Hierarchy:** Cancellation, stage failure, unmet
      dependency and degraded persistence are different things and are
      handled at different boundaries.
    - **Explicit Retry Semantics:** Each error knows if it's retryable.
    - **Rich Context:** Errors carry job/work-item/stage metadata for logging.
    - **Error Chaining:** The raw stage exception is kept as ``cause``.

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                     CategorySpineError                          │
        │  (category, retryable, context, cause)                          │
        ├─────────────────────────────────────────────────────────────────┤
        │  JobCancelledError        StageFailedError    DependencyUnmetError│
        │  (CANCELLED)              (STAGE)             (DEPENDENCY)       │
        │                                │                                  │
        │                         StageNotRegisteredError                  │
        │                                                                   │
        │  StorageError             CheckpointNotFoundError                │
        │  (STORAGE)                (STORAGE)                              │
        │       │                                                           │
        │  PersistenceDegradedError  InvalidPlanError   ConfigError        │
        │  (retryable=True)          (VALIDATION)       (CONFIG)           │
        └─────────────────────────────────────────────────────────────────┘

Where each error is handled:
    - Stage failures are caught at the work-item boundary by the orchestrator.
    - Chunk failures are caught at the chunk boundary by the chunked runner.
    - Persistence degradation is never raised by the ledger; it is reported
      through :class:`~category_spine.core.storage.Persisted`.
    - Cancellation propagates until the owning job has been marked CANCELLED.

Examples:
    >>> err = StageFailedError("demand model timed out").with_context(
    ...     work_item_id="cat-01", stage="DEMAND"
    ... )
    >>> err.to_dict()["context"]["stage"]
    'DEMAND'
    >>> is_cancellation(JobCancelledError("Cancelled: user request"))
    True

Tags:
    error-handling, exception-hierarchy, cancellation, category-spine
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    CANCELLED = "CANCELLED"        # Cooperative cancellation
    STAGE = "STAGE"                # A stage computation raised
    DEPENDENCY = "DEPENDENCY"      # Upstream artifact unavailable
    STORAGE = "STORAGE"            # Key-value backend failures
    VALIDATION = "VALIDATION"      # Bad plan or bad input
    CONFIG = "CONFIG"              # Invalid settings
    INTERNAL = "INTERNAL"          # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"            # Uncategorized errors


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Attributes:
        job_id: Job record the error belongs to
        plan_id: Run plan being executed
        work_item_id: Category the failure happened on
        stage: Stage kind name
        namespace: Storage namespace for persistence errors
        key: Storage key for persistence errors
        metadata: Additional key-value pairs
    """

    job_id: str | None = None
    plan_id: str | None = None
    work_item_id: str | None = None
    stage: str | None = None
    namespace: str | None = None
    key: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for name in ["job_id", "plan_id", "work_item_id", "stage", "namespace", "key"]:
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class CategorySpineError(Exception):
    """Base exception for all category-spine errors.

    Subclasses set ``default_category`` and ``default_retryable`` so callers
    only pass a message in the common case.
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
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> CategorySpineError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
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
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# PIPELINE ERRORS
# =============================================================================


class JobCancelledError(CategorySpineError):
    """Raised when a cancellation token has been tripped.

    The message always starts with ``Cancelled`` so string-based abort
    detection on foreign exceptions and this type agree.
    """

    default_category = ErrorCategory.CANCELLED

    def __init__(self, reason: str = "Cancelled", **kwargs: Any):
        message = reason if reason.lower().startswith("cancelled") else f"Cancelled: {reason}"
        super().__init__(message, **kwargs)
        self.reason = reason


class StageFailedError(CategorySpineError):
    """A stage invocation raised a non-cancellation error."""

    default_category = ErrorCategory.STAGE


class StageNotRegisteredError(StageFailedError):
    """No callable is registered for a stage that must run."""

    def __init__(self, stage: str):
        super().__init__(f"No stage registered for {stage}")
        self.context.stage = stage


class DependencyUnmetError(CategorySpineError):
    """An upstream artifact is missing, so the stage cannot run."""

    default_category = ErrorCategory.DEPENDENCY


class InvalidPlanError(CategorySpineError):
    """Run plan parameters are invalid."""

    default_category = ErrorCategory.VALIDATION


class ConfigError(CategorySpineError):
    """Settings are missing or invalid."""

    default_category = ErrorCategory.CONFIG


# =============================================================================
# STORAGE ERRORS
# =============================================================================


class StorageError(CategorySpineError):
    """Key-value backend error."""

    default_category = ErrorCategory.STORAGE


class PersistenceDegradedError(StorageError):
    """A write did not complete within its time budget or failed outright.

    The in-memory value is still authoritative for the caller; the write
    may still land later.
    """

    default_retryable = True


class CheckpointNotFoundError(StorageError):
    """A sub-unit result was saved for a work item with no checkpoint."""

    def __init__(self, work_item_id: str):
        super().__init__(f"No checkpoint found for work item {work_item_id!r}")
        self.context.work_item_id = work_item_id


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

_ABORT_MARKERS = ("aborted", "cancelled", "canceled")


def is_cancellation(error: BaseException) -> bool:
    """Return True if *error* carries an abort signature.

    Matches :class:`JobCancelledError`, :class:`asyncio.CancelledError`, and
    any exception whose message mentions an abort or cancellation, which
    is how foreign stage code usually reports one.
    """
    if isinstance(error, (JobCancelledError, asyncio.CancelledError)):
        return True
    text = str(error).lower()
    return any(marker in text for marker in _ABORT_MARKERS)


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, CategorySpineError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError))


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, CategorySpineError):
        return error.category
    if is_cancellation(error):
        return ErrorCategory.CANCELLED
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorCategory.STORAGE
    if isinstance(error, ValueError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "CategorySpineError",
    "JobCancelledError",
    "StageFailedError",
    "StageNotRegisteredError",
    "DependencyUnmetError",
    "InvalidPlanError",
    "ConfigError",
    "StorageError",
    "PersistenceDegradedError",
    "CheckpointNotFoundError",
    "is_cancellation",
    "is_retryable",
    "categorize_error",
]
