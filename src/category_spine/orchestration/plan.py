"""Run plan models.

A :class:`RunPlan` is a batch request: run these stages for these work
items. Progress is counted in (work item, stage) tasks, and each work item
keeps a per-stage record of what happened to it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from category_spine.execution.models import StageKind, utcnow


class ExecutionMode(str, Enum):
    """Iteration order of a plan.

    Both modes are strictly sequential; they differ only in whether the
    outer loop is over work items or over stages.
    """

    SEQUENTIAL_BY_WORK_ITEM = "SEQUENTIAL_BY_WORK_ITEM"
    SEQUENTIAL_BY_STAGE = "SEQUENTIAL_BY_STAGE"


class PlanStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class StageOutcomeStatus(str, Enum):
    """What happened to one stage of one work item."""

    COMPLETED = "COMPLETED"          # ran and succeeded
    CACHED = "CACHED"                # reused a cached artifact
    FAILED = "FAILED"                # ran and raised
    CANCELLED = "CANCELLED"          # token tripped before or during the stage
    SKIPPED_UNMET = "SKIPPED_UNMET"  # upstream artifact unavailable
    NOT_REQUESTED = "NOT_REQUESTED"  # neither it nor anything downstream requested

    @property
    def succeeded(self) -> bool:
        return self in (StageOutcomeStatus.COMPLETED, StageOutcomeStatus.CACHED)


@dataclass
class StageExecution:
    """Result of one stage for one work item."""

    stage_kind: StageKind
    status: StageOutcomeStatus
    requested: bool = False
    job_id: str | None = None
    error: str | None = None
    artifact: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage_kind": self.stage_kind.value,
            "status": self.status.value,
            "requested": self.requested,
            "job_id": self.job_id,
            "error": self.error,
        }


@dataclass
class WorkItemOutcome:
    """Per-stage outcomes for one work item."""

    work_item_id: str
    stages: dict[StageKind, StageExecution] = field(default_factory=dict)

    def record(self, execution: StageExecution) -> None:
        self.stages[execution.stage_kind] = execution

    def status_of(self, stage_kind: StageKind) -> StageOutcomeStatus | None:
        execution = self.stages.get(stage_kind)
        return execution.status if execution else None

    @property
    def completed_count(self) -> int:
        """Requested stages that ended COMPLETED or CACHED."""
        return sum(1 for s in self.stages.values() if s.requested and s.status.succeeded)

    @property
    def failed(self) -> bool:
        return any(s.status == StageOutcomeStatus.FAILED for s in self.stages.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "work_item_id": self.work_item_id,
            "stages": {k.value: s.to_dict() for k, s in self.stages.items()},
        }


@dataclass
class RunPlan:
    """A batch of (work item, stage) tasks and its progress."""

    id: str
    work_item_ids: list[str]
    stage_kinds: list[StageKind]
    mode: ExecutionMode = ExecutionMode.SEQUENTIAL_BY_WORK_ITEM
    batch_size: int = 3
    max_concurrency: int = 2
    status: PlanStatus = PlanStatus.PENDING
    total_tasks: int = 0
    completed_tasks: int = 0
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    outcomes: dict[str, WorkItemOutcome] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def recount(self) -> None:
        self.completed_tasks = sum(o.completed_count for o in self.outcomes.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "work_item_ids": list(self.work_item_ids),
            "stage_kinds": [k.value for k in self.stage_kinds],
            "mode": self.mode.value,
            "batch_size": self.batch_size,
            "max_concurrency": self.max_concurrency,
            "status": self.status.value,
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
            "outcomes": {k: o.to_dict() for k, o in self.outcomes.items()},
        }


__all__ = [
    "ExecutionMode",
    "PlanStatus",
    "StageOutcomeStatus",
    "StageExecution",
    "WorkItemOutcome",
    "RunPlan",
]
