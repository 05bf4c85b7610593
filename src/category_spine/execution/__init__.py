"""Job tracking, chunked bulk jobs and stage checkpoints."""

from .checkpoints import CheckpointStatus, StageCheckpoint, StageCheckpointStore
from .chunked import (
    ChunkedJob,
    ChunkedJobRunner,
    ChunkedJobStatus,
    ChunkedJobStore,
    FrozenChunk,
    TickResult,
    TickStatus,
    normalize_key,
)
from .ledger import JobLedger, SelfTestResult
from .models import (
    PIPELINE_ORDER,
    InvalidTransitionError,
    JobRecord,
    JobStatus,
    StageKind,
)

__all__ = [
    "CheckpointStatus",
    "StageCheckpoint",
    "StageCheckpointStore",
    "ChunkedJob",
    "ChunkedJobRunner",
    "ChunkedJobStatus",
    "ChunkedJobStore",
    "FrozenChunk",
    "TickResult",
    "TickStatus",
    "normalize_key",
    "JobLedger",
    "SelfTestResult",
    "PIPELINE_ORDER",
    "InvalidTransitionError",
    "JobRecord",
    "JobStatus",
    "StageKind",
]
