"""Job ledger - persistent record of every stage attempt.

The JobLedger owns the ``jobs`` namespace of the key-value store. Each
stage attempt for a work item gets its own :class:`JobRecord`; the ledger
creates it, merges updates into it, keeps its log bounded, and wraps stage
invocations so failures and cancellations land on the record.

Architecture:

    .. code-block:: text

        JobLedger — jobs namespace
        ┌───────────────────────────────────────────────────────────┐
        │  LIFECYCLE                 QUERIES                         │
        │  ─────────                 ───────                         │
        │  create_job()              get_job()                       │
        │  update_job()              get_recent_jobs()               │
        │  append_log()              latest_job_for()                │
        │  complete_job()            active_job_for()                │
        │  run_step()                                                │
        │  request_cancel()          MAINTENANCE                     │
        │                            ───────────                     │
        │                            reset()   self_test()           │
        ├───────────────────────────────────────────────────────────┤
        │  update_job(): read latest → guard terminal → merge →      │
        │                append log line → cap logs → raced write    │
        └───────────────────────────────────────────────────────────┘

Writes never raise. Every mutating call returns ``Persisted[JobRecord]``
whose value is the in-memory record; ``durable=False`` means the store may
be stale.

Example:
    >>> ledger = JobLedger(PersistenceAdapter(InMemoryStore()))
    >>> job = (await ledger.create_job(StageKind.DEMAND, "cat-01", "v1")).value
    >>> result = await ledger.run_step(job, "Demand", compute_demand)
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from category_spine.core.errors import is_cancellation
from category_spine.core.logging import get_logger
from category_spine.core.storage import PersistenceAdapter, Persisted

from .models import (
    InvalidTransitionError,
    JobRecord,
    JobStatus,
    StageKind,
    utcnow,
    validate_job_transition,
)

logger = get_logger(__name__)

T = TypeVar("T")

JOB_NAMESPACE = "jobs"
DEFAULT_LOG_CAP = 200
DEFAULT_RECENT_LIMIT = 20

SELF_TEST_WORK_ITEM = "GLOBAL"
SELF_TEST_WINDOW = "test"


@dataclass(frozen=True)
class SelfTestResult:
    """Outcome of :meth:`JobLedger.self_test`."""

    ok: bool
    job_id: str
    durable: bool
    error: str | None = None


class JobLedger:
    """Creates, updates and queries job records.

    Concurrent writers of the same job are last-writer-wins; the ledger does
    not lock.
    """

    def __init__(
        self,
        adapter: PersistenceAdapter,
        *,
        log_cap: int = DEFAULT_LOG_CAP,
        recent_limit: int = DEFAULT_RECENT_LIMIT,
    ):
        self._adapter = adapter
        self._log_cap = log_cap
        self._recent_limit = recent_limit

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def create_job(
        self,
        stage_kind: StageKind,
        work_item_id: str,
        window_id: str,
    ) -> Persisted[JobRecord]:
        """Register a fresh PENDING job.

        The record is returned even when the write times out or fails.
        """
        job = JobRecord.create(stage_kind, work_item_id, window_id)
        written = await self._adapter.write(job.job_id, job.to_dict(), JOB_NAMESPACE)
        logger.info(
            "ledger.job_created",
            job_id=job.job_id,
            stage=stage_kind.value,
            work_item_id=work_item_id,
            durable=written.durable,
        )
        return written.with_value(job)

    async def update_job(
        self,
        job: JobRecord,
        *,
        log: str | None = None,
        **updates: Any,
    ) -> Persisted[JobRecord]:
        """Merge *updates* into the latest stored version of *job*.

        Args:
            job: Caller's copy; used when the stored copy can't be read.
            log: Raw line appended to ``logs`` as-is.
            **updates: JobRecord fields to overwrite.

        A terminal job only accepts a status of FAILED or CANCELLED; any
        other update returns the current record unchanged.
        """
        current = await self.get_job(job.job_id) or job

        if "status" in updates and updates["status"] is not None:
            updates["status"] = JobStatus(updates["status"])
        new_status: JobStatus | None = updates.get("status")

        try:
            validate_job_transition(current.status, new_status)
        except InvalidTransitionError as e:
            logger.warning(
                "ledger.update_rejected",
                job_id=job.job_id,
                current=current.status.value,
                requested=new_status.value if new_status else None,
                reason=str(e),
            )
            return Persisted(value=current)

        now = utcnow()
        merged = current.copy(**updates, updated_at=now)

        if new_status == JobStatus.RUNNING and merged.started_at is None:
            merged.started_at = now
        if new_status is not None and new_status.is_terminal:
            merged.completed_at = now

        message = updates.get("message")
        if message and message != current.message:
            label = updates.get("current_stage_label") or current.current_stage_label or "INFO"
            merged.logs.append(f"{now:%H:%M:%S} [{label}] {message}")
        if log:
            merged.logs.append(log)
        if len(merged.logs) > self._log_cap:
            merged.logs = merged.logs[-self._log_cap:]

        written = await self._adapter.write(merged.job_id, merged.to_dict(), JOB_NAMESPACE)
        return written.with_value(merged)

    async def append_log(self, job: JobRecord, line: str) -> Persisted[JobRecord]:
        """Append a raw line to the job's log (stage log sink)."""
        return await self.update_job(job, log=line)

    async def complete_job(
        self,
        job: JobRecord,
        message: str = "Done",
    ) -> Persisted[JobRecord]:
        return await self.update_job(
            job,
            status=JobStatus.COMPLETED,
            progress=100.0,
            message=message,
        )

    async def run_step(
        self,
        job: JobRecord,
        stage_label: str,
        fn: Callable[[], Awaitable[T]],
        on_started: Callable[[JobRecord], None] | None = None,
    ) -> T:
        """Run *fn* as the body of *job*.

        Marks the job RUNNING, awaits *fn*, and on exception marks the job
        CANCELLED (abort signature) or FAILED before re-raising. Success is
        left to the caller so it can attach results first. *on_started*
        receives the RUNNING record, which callers should keep updating
        instead of the PENDING one they passed in.
        """
        running = await self.update_job(
            job,
            status=JobStatus.RUNNING,
            message=f"Starting {stage_label}...",
            current_stage_label=stage_label,
        )
        if on_started is not None:
            on_started(running.value)
        try:
            return await fn()
        except (Exception, asyncio.CancelledError) as e:
            if is_cancellation(e):
                logger.info("ledger.step_cancelled", job_id=job.job_id, stage=stage_label)
                await self.update_job(
                    running.value,
                    status=JobStatus.CANCELLED,
                    message="Execution aborted by user.",
                    current_stage_label="Cancelled",
                    error=str(e) or "Cancelled",
                )
            else:
                logger.warning(
                    "ledger.step_failed",
                    job_id=job.job_id,
                    stage=stage_label,
                    error=str(e),
                )
                await self.update_job(
                    running.value,
                    status=JobStatus.FAILED,
                    message=f"Error: {e}",
                    current_stage_label="Failed",
                    error=str(e),
                )
            raise

    async def request_cancel(self, job_id: str) -> Persisted[JobRecord] | None:
        """Ask a live job to stop; it moves to CANCELLING.

        Returns ``None`` for unknown jobs. Terminal jobs are returned
        unchanged.
        """
        job = await self.get_job(job_id)
        if job is None:
            return None
        if job.is_terminal:
            return Persisted(value=job)
        logger.info("ledger.cancel_requested", job_id=job_id)
        return await self.update_job(
            job,
            status=JobStatus.CANCELLING,
            message="Cancellation requested...",
        )

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_job(self, job_id: str) -> JobRecord | None:
        data = await self._adapter.read(job_id, JOB_NAMESPACE)
        if data is None:
            return None
        try:
            return JobRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("ledger.corrupt_record", job_id=job_id, error=str(e))
            return None

    async def list_jobs(self) -> list[JobRecord]:
        jobs = []
        for key in await self._adapter.list_keys(JOB_NAMESPACE):
            job = await self.get_job(key)
            if job is not None:
                jobs.append(job)
        return jobs

    async def get_recent_jobs(self, limit: int | None = None) -> list[JobRecord]:
        """Jobs sorted by start time (newest first), capped at *limit*."""
        jobs = await self.list_jobs()
        jobs.sort(key=lambda j: j.sort_time, reverse=True)
        return jobs[: self._recent_limit if limit is None else limit]

    async def latest_job_for(
        self,
        work_item_id: str,
        stage_kind: StageKind | None = None,
    ) -> JobRecord | None:
        """Most recent job for a work item (optionally one stage)."""
        candidates = [
            j for j in await self.list_jobs()
            if j.work_item_id == work_item_id
            and (stage_kind is None or j.stage_kind == stage_kind)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda j: j.sort_time)

    async def active_job_for(
        self,
        work_item_id: str,
        stage_kind: StageKind | None = None,
    ) -> JobRecord | None:
        """Most recent non-terminal job for a work item."""
        candidates = [
            j for j in await self.list_jobs()
            if j.work_item_id == work_item_id
            and not j.is_terminal
            and (stage_kind is None or j.stage_kind == stage_kind)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda j: j.sort_time)

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    async def reset(self) -> None:
        """Delete every job record."""
        await self._adapter.clear(JOB_NAMESPACE)
        logger.info("ledger.reset")

    async def self_test(self) -> SelfTestResult:
        """Create a PING job and read it back."""
        created = await self.create_job(StageKind.PING, SELF_TEST_WORK_ITEM, SELF_TEST_WINDOW)
        job = created.value
        if created.degraded:
            return SelfTestResult(ok=False, job_id=job.job_id, durable=False, error=created.error)
        stored = await self.get_job(job.job_id)
        if stored is None:
            return SelfTestResult(
                ok=False,
                job_id=job.job_id,
                durable=True,
                error="job not readable after write",
            )
        return SelfTestResult(ok=True, job_id=job.job_id, durable=True)


__all__ = [
    "JOB_NAMESPACE",
    "JobLedger",
    "SelfTestResult",
]
