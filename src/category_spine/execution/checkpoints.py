"""Stage checkpoints - per-sub-unit progress inside a long stage.

A stage that fans out over many sub-units (one model call per
sub-category, say) records each finished sub-unit here. On restart the
stage asks for :meth:`StageCheckpointStore.remaining_sub_units` and only
recomputes those. A sub-unit result is written at most once.

Example:
    >>> checkpoints = StageCheckpointStore(adapter)
    >>> ckpt = await checkpoints.init_checkpoint("cat-01", ["a", "b", "c"])
    >>> await checkpoints.save_sub_unit_result("cat-01", "a", {"score": 0.8})
    >>> await checkpoints.remaining_sub_units("cat-01", ["a", "b", "c"])
    ['b', 'c']
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from category_spine.core.errors import CheckpointNotFoundError
from category_spine.core.logging import get_logger
from category_spine.core.storage import PersistenceAdapter, Persisted

from .models import utcnow

logger = get_logger(__name__)

CHECKPOINT_NAMESPACE = "stage_checkpoints"


class CheckpointStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (CheckpointStatus.COMPLETE, CheckpointStatus.FAILED)


@dataclass
class StageCheckpoint:
    work_item_id: str
    total_sub_units: int
    status: CheckpointStatus = CheckpointStatus.PENDING
    completed_sub_unit_ids: list[str] = field(default_factory=list)
    sub_unit_results: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utcnow)
    last_updated_at: datetime = field(default_factory=utcnow)

    @property
    def completed_count(self) -> int:
        return len(self.completed_sub_unit_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "work_item_id": self.work_item_id,
            "status": self.status.value,
            "total_sub_units": self.total_sub_units,
            "completed_sub_unit_ids": list(self.completed_sub_unit_ids),
            "sub_unit_results": dict(self.sub_unit_results),
            "started_at": self.started_at.isoformat(),
            "last_updated_at": self.last_updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StageCheckpoint:
        return cls(
            work_item_id=data["work_item_id"],
            total_sub_units=data.get("total_sub_units", 0),
            status=CheckpointStatus(data["status"]),
            completed_sub_unit_ids=list(data.get("completed_sub_unit_ids") or []),
            sub_unit_results=dict(data.get("sub_unit_results") or {}),
            started_at=datetime.fromisoformat(data["started_at"]),
            last_updated_at=datetime.fromisoformat(data["last_updated_at"]),
        )


class StageCheckpointStore:
    """Checkpoint records keyed by work item id.

    Every save is also kept in memory and read back before the store, so a
    write that timed out or failed does not hide progress from the next call.
    """

    def __init__(self, adapter: PersistenceAdapter):
        self._adapter = adapter
        self._live: dict[str, StageCheckpoint] = {}

    async def get_checkpoint(self, work_item_id: str) -> StageCheckpoint | None:
        live = self._live.get(work_item_id)
        if live is not None:
            return StageCheckpoint.from_dict(live.to_dict())
        data = await self._adapter.read(work_item_id, CHECKPOINT_NAMESPACE)
        if data is None:
            return None
        try:
            return StageCheckpoint.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("checkpoint.corrupt_record", work_item_id=work_item_id, error=str(e))
            return None

    async def init_checkpoint(
        self,
        work_item_id: str,
        all_sub_unit_ids: list[str],
    ) -> StageCheckpoint:
        """Resume a non-terminal checkpoint, or start a new IN_PROGRESS one."""
        existing = await self.get_checkpoint(work_item_id)
        if existing is not None and not existing.status.is_terminal:
            logger.info(
                "checkpoint.resume",
                work_item_id=work_item_id,
                completed=existing.completed_count,
                total=existing.total_sub_units,
            )
            return existing

        checkpoint = StageCheckpoint(
            work_item_id=work_item_id,
            total_sub_units=len(all_sub_unit_ids),
            status=CheckpointStatus.IN_PROGRESS,
        )
        await self._save(checkpoint)
        return checkpoint

    async def save_sub_unit_result(
        self,
        work_item_id: str,
        sub_unit_id: str,
        result: Any,
    ) -> Persisted[StageCheckpoint]:
        """Record one finished sub-unit; repeated saves are no-ops.

        Raises:
            CheckpointNotFoundError: no checkpoint exists for *work_item_id*.
        """
        checkpoint = await self.get_checkpoint(work_item_id)
        if checkpoint is None:
            raise CheckpointNotFoundError(work_item_id)
        if sub_unit_id in checkpoint.completed_sub_unit_ids:
            return Persisted(value=checkpoint)

        checkpoint.completed_sub_unit_ids.append(sub_unit_id)
        checkpoint.sub_unit_results[sub_unit_id] = result
        return await self._save(checkpoint)

    async def remaining_sub_units(
        self,
        work_item_id: str,
        all_sub_unit_ids: list[str],
    ) -> list[str]:
        checkpoint = await self.get_checkpoint(work_item_id)
        done = set(checkpoint.completed_sub_unit_ids) if checkpoint else set()
        return [s for s in all_sub_unit_ids if s not in done]

    async def mark_complete(self, work_item_id: str) -> Persisted[StageCheckpoint]:
        return await self._set_status(work_item_id, CheckpointStatus.COMPLETE)

    async def mark_failed(self, work_item_id: str) -> Persisted[StageCheckpoint]:
        return await self._set_status(work_item_id, CheckpointStatus.FAILED)

    async def clear_checkpoint(self, work_item_id: str) -> None:
        self._live.pop(work_item_id, None)
        await self._adapter.remove(work_item_id, CHECKPOINT_NAMESPACE)

    async def _set_status(
        self,
        work_item_id: str,
        status: CheckpointStatus,
    ) -> Persisted[StageCheckpoint]:
        checkpoint = await self.get_checkpoint(work_item_id)
        if checkpoint is None:
            raise CheckpointNotFoundError(work_item_id)
        checkpoint.status = status
        return await self._save(checkpoint)

    async def _save(self, checkpoint: StageCheckpoint) -> Persisted[StageCheckpoint]:
        checkpoint.last_updated_at = utcnow()
        self._live[checkpoint.work_item_id] = StageCheckpoint.from_dict(checkpoint.to_dict())
        written = await self._adapter.write(
            checkpoint.work_item_id, checkpoint.to_dict(), CHECKPOINT_NAMESPACE
        )
        return written.with_value(checkpoint)


__all__ = [
    "CHECKPOINT_NAMESPACE",
    "CheckpointStatus",
    "StageCheckpoint",
    "StageCheckpointStore",
]
