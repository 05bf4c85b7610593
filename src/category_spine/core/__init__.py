"""Core primitives: errors, logging, settings, storage, cache, cancellation."""

from category_spine.core.cache import ArtifactCache
from category_spine.core.cancellation import CancellationToken
from category_spine.core.errors import (
    CategorySpineError,
    CheckpointNotFoundError,
    DependencyUnmetError,
    ErrorCategory,
    InvalidPlanError,
    JobCancelledError,
    PersistenceDegradedError,
    StageFailedError,
    StageNotRegisteredError,
    StorageError,
    is_cancellation,
)
from category_spine.core.logging import LogContext, configure_logging, get_logger
from category_spine.core.settings import CategorySpineSettings, get_settings
from category_spine.core.storage import (
    InMemoryStore,
    KeyValueStore,
    PersistenceAdapter,
    Persisted,
    SqliteStore,
    build_store,
)

__all__ = [
    "ArtifactCache",
    "CancellationToken",
    "CategorySpineError",
    "CheckpointNotFoundError",
    "DependencyUnmetError",
    "ErrorCategory",
    "InvalidPlanError",
    "JobCancelledError",
    "PersistenceDegradedError",
    "StageFailedError",
    "StageNotRegisteredError",
    "StorageError",
    "is_cancellation",
    "LogContext",
    "configure_logging",
    "get_logger",
    "CategorySpineSettings",
    "get_settings",
    "InMemoryStore",
    "KeyValueStore",
    "PersistenceAdapter",
    "Persisted",
    "SqliteStore",
    "build_store",
]
