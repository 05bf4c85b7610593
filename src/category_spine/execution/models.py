"""Job domain models.

Defines the records the job ledger persists:
- StageKind: which computation a job runs
- JobStatus: lifecycle state, with the terminal-override rule
- JobRecord: one attempt at one stage for one work item

Records serialize to plain dicts (ISO-8601 UTC timestamps) so any
key-value backend can hold them.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class InvalidTransitionError(ValueError):
    """Raised when an illegal job status change is attempted."""

    def __init__(self, current: str, target: str, enum_name: str = "JobStatus") -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid {enum_name} transition: {current} -> {target}")


class StageKind(str, Enum):
    """Kind of computation a job performs.

    The first four are the pipeline stages, in dependency order. WARMUP
    tracks chunked bulk runs and PING is the ledger self-test.
    """

    NEEDS = "NEEDS"
    DEMAND = "DEMAND"
    DEEP_ANALYSIS = "DEEP_ANALYSIS"
    SYNTHESIS = "SYNTHESIS"
    WARMUP = "WARMUP"
    PING = "PING"

    @property
    def label(self) -> str:
        return _STAGE_LABELS[self]

    @property
    def is_pipeline_stage(self) -> bool:
        return self in PIPELINE_ORDER


_STAGE_LABELS = {
    StageKind.NEEDS: "Needs",
    StageKind.DEMAND: "Demand",
    StageKind.DEEP_ANALYSIS: "Deep Analysis",
    StageKind.SYNTHESIS: "Synthesis",
    StageKind.WARMUP: "Warmup",
    StageKind.PING: "Ping",
}

PIPELINE_ORDER: tuple[StageKind, ...] = (
    StageKind.NEEDS,
    StageKind.DEMAND,
    StageKind.DEEP_ANALYSIS,
    StageKind.SYNTHESIS,
)


class JobStatus(str, Enum):
    """Lifecycle state of a job.

    Valid transition graph::

        PENDING    → RUNNING | CANCELLING | COMPLETED | FAILED | CANCELLED
        RUNNING    → CANCELLING | COMPLETED | FAILED | CANCELLED
        CANCELLING → CANCELLED | COMPLETED | FAILED
        COMPLETED  → FAILED | CANCELLED   (override only)
        FAILED     → FAILED | CANCELLED   (override only)
        CANCELLED  → FAILED | CANCELLED   (override only)

    A non-terminal status may always be re-applied (progress updates).
    """

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    CANCELLING = "CANCELLING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
_TERMINAL_OVERRIDES = frozenset({JobStatus.FAILED, JobStatus.CANCELLED})

JOB_VALID_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({
        JobStatus.RUNNING,
        JobStatus.CANCELLING,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    }),
    JobStatus.RUNNING: frozenset({
        JobStatus.CANCELLING,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    }),
    JobStatus.CANCELLING: frozenset({
        JobStatus.CANCELLED,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
    }),
    JobStatus.COMPLETED: _TERMINAL_OVERRIDES,
    JobStatus.FAILED: _TERMINAL_OVERRIDES,
    JobStatus.CANCELLED: _TERMINAL_OVERRIDES,
}


def validate_job_transition(current: JobStatus, target: JobStatus | None) -> None:
    """Raise :class:`InvalidTransitionError` if an update may not be applied.

    ``target=None`` stands for an update that leaves the status alone; it is
    allowed only while the job is not terminal.

    Example:
        >>> validate_job_transition(JobStatus.COMPLETED, JobStatus.CANCELLED)
        >>> validate_job_transition(JobStatus.COMPLETED, None)
        InvalidTransitionError: Invalid JobStatus transition: COMPLETED -> COMPLETED
    """
    if target is None or target == current:
        if current.is_terminal and target not in _TERMINAL_OVERRIDES:
            raise InvalidTransitionError(current.value, current.value)
        return
    if target not in JOB_VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value)


# ── Job ids ───────────────────────────────────────────────────────────

_last_id_millis = 0


def _next_millis() -> int:
    global _last_id_millis
    millis = max(int(time.time() * 1000), _last_id_millis + 1)
    _last_id_millis = millis
    return millis


def new_job_id(stage_kind: StageKind, work_item_id: str) -> str:
    """``JOB-{stage}-{work item}-{epoch millis}``, never reused in-process."""
    return f"JOB-{stage_kind.value}-{work_item_id}-{_next_millis()}"


def new_plan_id() -> str:
    return f"PLAN-{_next_millis()}"


# ── Job record ────────────────────────────────────────────────────────


@dataclass
class JobRecord:
    """One attempt at one stage for one work item."""

    job_id: str
    stage_kind: StageKind
    work_item_id: str
    window_id: str
    status: JobStatus = JobStatus.PENDING
    progress: float = 0.0
    processed: int | None = None
    total: int | None = None
    message: str = ""
    current_stage_label: str | None = None
    error: str | None = None
    logs: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    @classmethod
    def create(cls, stage_kind: StageKind, work_item_id: str, window_id: str) -> JobRecord:
        """Fresh PENDING record with a new id."""
        now = utcnow()
        return cls(
            job_id=new_job_id(stage_kind, work_item_id),
            stage_kind=stage_kind,
            work_item_id=work_item_id,
            window_id=window_id,
            message="Queued...",
            current_stage_label=stage_kind.label,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def sort_time(self) -> datetime:
        return self.started_at or self.created_at

    def copy(self, **changes: Any) -> JobRecord:
        changes.setdefault("logs", list(self.logs))
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "job_id": self.job_id,
            "stage_kind": self.stage_kind.value,
            "work_item_id": self.work_item_id,
            "window_id": self.window_id,
            "status": self.status.value,
            "progress": self.progress,
            "processed": self.processed,
            "total": self.total,
            "message": self.message,
            "current_stage_label": self.current_stage_label,
            "error": self.error,
            "logs": list(self.logs),
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobRecord:
        return cls(
            job_id=data["job_id"],
            stage_kind=StageKind(data["stage_kind"]),
            work_item_id=data["work_item_id"],
            window_id=data.get("window_id", ""),
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            progress=float(data.get("progress") or 0.0),
            processed=data.get("processed"),
            total=data.get("total"),
            message=data.get("message", ""),
            current_stage_label=data.get("current_stage_label"),
            error=data.get("error"),
            logs=list(data.get("logs") or []),
            created_at=_parse(data.get("created_at")) or utcnow(),
            started_at=_parse(data.get("started_at")),
            updated_at=_parse(data.get("updated_at")) or utcnow(),
            completed_at=_parse(data.get("completed_at")),
        )


__all__ = [
    "utcnow",
    "InvalidTransitionError",
    "StageKind",
    "PIPELINE_ORDER",
    "JobStatus",
    "TERMINAL_STATUSES",
    "JOB_VALID_TRANSITIONS",
    "validate_job_transition",
    "new_job_id",
    "new_plan_id",
    "JobRecord",
]
