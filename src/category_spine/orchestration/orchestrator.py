"""
Pipeline Orchestrator - dependency-ordered stage execution per work item.

Runs the four-stage analysis pipeline over a batch of work items. For each
work item the orchestrator walks NEEDS → DEMAND → DEEP_ANALYSIS → SYNTHESIS
up to the furthest requested stage, reusing cached artifacts, running
missing upstream stages automatically, and skipping everything downstream
of a failure.

Manifesto:
    - **Strictly sequential:** one stage invocation at a time, so
      rate-limited collaborators are never hit concurrently.
    - **Failure isolation:** a failed stage stops its own work item's
      downstream stages and nothing else.
    - **Cooperative cancellation:** one token per plan, checked before
      every work item and stage, handed to every stage.
    - **Precise progress:** ``completed_tasks`` credits exactly the
      requested (work item, stage) pairs that ended COMPLETED or CACHED.

Architecture:
    ::

        execute_plan(plan)
          for work item:                       (SEQUENTIAL_BY_WORK_ITEM)
            run_category_pipeline(item)
              for stage in NEEDS..furthest requested:
                token tripped?        ─► CANCELLED
                upstream unavailable? ─► SKIPPED_UNMET
                cached artifact?      ─► CACHED    (job: "Loaded from cache")
                ledger.run_step(stage)
                  ├─ ok  ─► cache artifact, job COMPLETED ─► COMPLETED
                  └─ err ─► CANCELLED if token tripped, else FAILED
          plan ─► COMPLETED | CANCELLED | FAILED (unexpected error)

Examples:
    >>> orchestrator = PipelineOrchestrator(ledger, cache, registry)
    >>> plan = orchestrator.create_plan(["cat-01", "cat-02"], [StageKind.SYNTHESIS])
    >>> plan = await orchestrator.execute_plan(plan, on_update=print)
    >>> plan.status
    <PlanStatus.COMPLETED: 'COMPLETED'>

Tags:
    orchestration, pipeline, dependencies, cancellation, category-spine
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from category_spine.core.cache import ArtifactCache
from category_spine.core.cancellation import CancellationToken
from category_spine.core.errors import DependencyUnmetError, InvalidPlanError, is_cancellation
from category_spine.core.logging import LogContext, get_logger
from category_spine.execution.ledger import JobLedger
from category_spine.execution.models import (
    PIPELINE_ORDER,
    JobRecord,
    JobStatus,
    StageKind,
    new_plan_id,
    utcnow,
)

from .plan import (
    ExecutionMode,
    PlanStatus,
    RunPlan,
    StageExecution,
    StageOutcomeStatus,
    WorkItemOutcome,
)
from .stages import StageInvocation, StageRegistry, stages_to_run, upstream_of

logger = get_logger(__name__)

DEFAULT_WINDOW_ID = "v1"

PlanCallback = Callable[[RunPlan], Any]


@dataclass
class _ItemState:
    """Carry-over between stages of one work item."""

    outcome: WorkItemOutcome
    upstream: Any = None
    blocked_by: StageKind | None = None
    artifacts: dict[StageKind, Any] = field(default_factory=dict)


def _unique(values: Iterable[Any]) -> list[Any]:
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


class PipelineOrchestrator:
    """Executes run plans against a stage registry.

    Only one plan runs at a time per orchestrator; :meth:`stop_plan` trips
    the token of whichever plan is active.
    """

    def __init__(
        self,
        ledger: JobLedger,
        cache: ArtifactCache,
        registry: StageRegistry,
        *,
        window_id: str = DEFAULT_WINDOW_ID,
    ):
        self._ledger = ledger
        self._cache = cache
        self._registry = registry
        self._window_id = window_id
        self._active_token: CancellationToken | None = None

    @property
    def is_running(self) -> bool:
        return self._active_token is not None

    # =========================================================================
    # PLANS
    # =========================================================================

    def create_plan(
        self,
        work_item_ids: Iterable[str],
        stage_kinds: Iterable[StageKind | str],
        mode: ExecutionMode = ExecutionMode.SEQUENTIAL_BY_WORK_ITEM,
        batch_size: int = 3,
        max_concurrency: int = 2,
    ) -> RunPlan:
        """Build a PENDING plan with ``total_tasks = items × stages``.

        Duplicate ids and stages are dropped; stages are put in pipeline
        order. ``batch_size`` and ``max_concurrency`` are recorded but
        execution stays sequential.
        """
        items = _unique(work_item_ids)
        try:
            kinds = _unique(StageKind(k) for k in stage_kinds)
        except ValueError as e:
            raise InvalidPlanError(f"Unknown stage kind: {e}") from e

        non_pipeline = [k.value for k in kinds if not k.is_pipeline_stage]
        if non_pipeline:
            raise InvalidPlanError(f"Not pipeline stages: {', '.join(non_pipeline)}")
        if not kinds:
            raise InvalidPlanError("A plan needs at least one stage")
        if batch_size < 1 or max_concurrency < 1:
            raise InvalidPlanError("batch_size and max_concurrency must be >= 1")

        kinds.sort(key=PIPELINE_ORDER.index)
        plan = RunPlan(
            id=new_plan_id(),
            work_item_ids=items,
            stage_kinds=kinds,
            mode=ExecutionMode(mode),
            batch_size=batch_size,
            max_concurrency=max_concurrency,
            total_tasks=len(items) * len(kinds),
        )
        logger.info(
            "plan.created",
            plan_id=plan.id,
            work_items=len(items),
            stages=[k.value for k in kinds],
            total_tasks=plan.total_tasks,
        )
        return plan

    async def execute_plan(
        self,
        plan: RunPlan,
        token: CancellationToken | None = None,
        on_update: PlanCallback | None = None,
    ) -> RunPlan:
        """Run every work item of *plan* sequentially.

        Stage failures are recorded per work item and never stop the plan.
        An unexpected error inside the orchestrator marks the plan FAILED.
        """
        token = token or CancellationToken()
        self._active_token = token
        plan.status = PlanStatus.RUNNING
        plan.started_at = utcnow()
        logger.info("plan.start", plan_id=plan.id, mode=plan.mode.value)

        try:
            async with LogContext(plan_id=plan.id):
                if plan.mode == ExecutionMode.SEQUENTIAL_BY_STAGE:
                    await self._execute_by_stage(plan, token, on_update)
                else:
                    await self._execute_by_work_item(plan, token, on_update)
            plan.status = PlanStatus.CANCELLED if token.cancelled else PlanStatus.COMPLETED
        except asyncio.CancelledError:
            token.cancel("Plan task cancelled")
            plan.status = PlanStatus.CANCELLED
            raise
        except Exception as e:
            plan.status = PlanStatus.FAILED
            plan.error = str(e)
            logger.error("plan.failed", plan_id=plan.id, error=str(e), exc_info=True)
        finally:
            plan.recount()
            plan.completed_at = utcnow()
            self._active_token = None
            logger.info(
                "plan.finished",
                plan_id=plan.id,
                status=plan.status.value,
                completed_tasks=plan.completed_tasks,
                total_tasks=plan.total_tasks,
                duration_seconds=plan.duration_seconds,
            )
        await self._notify(on_update, plan)
        return plan

    def stop_plan(self, reason: str = "Plan stopped by user") -> bool:
        """Trip the active plan's token. Returns False if nothing is running."""
        if self._active_token is None:
            return False
        logger.info("plan.stop_requested", reason=reason)
        self._active_token.cancel(reason)
        return True

    async def _execute_by_work_item(
        self,
        plan: RunPlan,
        token: CancellationToken,
        on_update: PlanCallback | None,
    ) -> None:
        for work_item_id in plan.work_item_ids:
            if token.cancelled:
                logger.info("plan.aborted", plan_id=plan.id, before=work_item_id)
                break
            outcome = await self.run_category_pipeline(
                work_item_id, plan.stage_kinds, token, plan_id=plan.id
            )
            plan.outcomes[work_item_id] = outcome
            plan.recount()
            await self._notify(on_update, plan)

    async def _execute_by_stage(
        self,
        plan: RunPlan,
        token: CancellationToken,
        on_update: PlanCallback | None,
    ) -> None:
        requested = frozenset(plan.stage_kinds)
        states = {
            item: _ItemState(outcome=WorkItemOutcome(item)) for item in plan.work_item_ids
        }
        for item, state in states.items():
            plan.outcomes[item] = state.outcome

        for stage_kind in stages_to_run(requested):
            if token.cancelled:
                logger.info("plan.aborted", plan_id=plan.id, before=stage_kind.value)
                break
            for item, state in states.items():
                async with LogContext(work_item_id=item):
                    await self._advance(state, stage_kind, requested, token)
                plan.recount()
            await self._notify(on_update, plan)

    # =========================================================================
    # PER WORK ITEM
    # =========================================================================

    async def run_category_pipeline(
        self,
        work_item_id: str,
        requested: Iterable[StageKind],
        token: CancellationToken,
        plan_id: str | None = None,
    ) -> WorkItemOutcome:
        """Run the requested stages (and their missing upstreams) for one item."""
        wanted = frozenset(requested)
        state = _ItemState(outcome=WorkItemOutcome(work_item_id))
        async with LogContext(work_item_id=work_item_id):
            for stage_kind in PIPELINE_ORDER:
                await self._advance(state, stage_kind, wanted, token)
            logger.info(
                "pipeline.finished",
                plan_id=plan_id,
                completed=state.outcome.completed_count,
                failed=state.outcome.failed,
            )
        return state.outcome

    async def _advance(
        self,
        state: _ItemState,
        stage_kind: StageKind,
        requested: frozenset[StageKind],
        token: CancellationToken,
    ) -> StageExecution:
        execution = await self._resolve_stage(state, stage_kind, requested, token)
        state.outcome.record(execution)
        if execution.status.succeeded:
            state.upstream = execution.artifact
            state.artifacts[stage_kind] = execution.artifact
        elif execution.status != StageOutcomeStatus.NOT_REQUESTED and state.blocked_by is None:
            state.blocked_by = stage_kind
        return execution

    async def _resolve_stage(
        self,
        state: _ItemState,
        stage_kind: StageKind,
        requested: frozenset[StageKind],
        token: CancellationToken,
    ) -> StageExecution:
        work_item_id = state.outcome.work_item_id
        is_requested = stage_kind in requested

        if stage_kind not in stages_to_run(requested):
            return StageExecution(stage_kind, StageOutcomeStatus.NOT_REQUESTED)

        if token.cancelled:
            return StageExecution(
                stage_kind,
                StageOutcomeStatus.CANCELLED,
                requested=is_requested,
                error=token.reason,
            )

        upstream_kind = upstream_of(stage_kind)
        if state.blocked_by is not None or (
            upstream_kind is not None and upstream_kind not in state.artifacts
        ):
            unmet = DependencyUnmetError(
                f"{stage_kind.value} needs {upstream_kind.value if upstream_kind else 'input'}"
            ).with_context(work_item_id=work_item_id, stage=stage_kind.value)
            logger.info("stage.skipped_unmet", stage=stage_kind.value, blocked_by=(
                state.blocked_by.value if state.blocked_by else None
            ))
            return StageExecution(
                stage_kind,
                StageOutcomeStatus.SKIPPED_UNMET,
                requested=is_requested,
                error=unmet.message,
            )

        cached = await self._cache.get(stage_kind.value, work_item_id)
        if cached is not None:
            job_id = await self._register_cache_hit(stage_kind, work_item_id)
            logger.info("stage.cache_hit", stage=stage_kind.value, job_id=job_id)
            return StageExecution(
                stage_kind,
                StageOutcomeStatus.CACHED,
                requested=is_requested,
                job_id=job_id,
                artifact=cached,
            )

        return await self._invoke_stage(state, stage_kind, is_requested, token)

    async def _register_cache_hit(self, stage_kind: StageKind, work_item_id: str) -> str:
        created = await self._ledger.create_job(stage_kind, work_item_id, self._window_id)
        await self._ledger.complete_job(created.value, message="Loaded from cache")
        return created.value.job_id

    async def _invoke_stage(
        self,
        state: _ItemState,
        stage_kind: StageKind,
        is_requested: bool,
        token: CancellationToken,
    ) -> StageExecution:
        work_item_id = state.outcome.work_item_id
        job = (await self._ledger.create_job(stage_kind, work_item_id, self._window_id)).value
        current = job

        def track(record: JobRecord) -> None:
            nonlocal current
            current = record

        async def log_sink(line: str) -> None:
            track((await self._ledger.append_log(current, line)).value)

        async def body() -> Any:
            stage = self._registry.get(stage_kind)
            return await stage(
                StageInvocation(
                    stage_kind=stage_kind,
                    work_item_id=work_item_id,
                    upstream=state.upstream,
                    token=token,
                    log=log_sink,
                )
            )

        logger.info("stage.start", stage=stage_kind.value, job_id=job.job_id)
        try:
            artifact = await self._ledger.run_step(
                job, stage_kind.label, body, on_started=track
            )
        except Exception as e:
            if token.cancelled or is_cancellation(e):
                await self._mark_plan_cancelled(current)
                return StageExecution(
                    stage_kind,
                    StageOutcomeStatus.CANCELLED,
                    requested=is_requested,
                    job_id=job.job_id,
                    error=str(e) or token.reason,
                )
            logger.warning(
                "stage.failed",
                stage=stage_kind.value,
                job_id=job.job_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return StageExecution(
                stage_kind,
                StageOutcomeStatus.FAILED,
                requested=is_requested,
                job_id=job.job_id,
                error=str(e),
            )

        cached = await self._cache.set(stage_kind.value, work_item_id, artifact)
        if cached.degraded:
            logger.warning("stage.artifact_not_cached", stage=stage_kind.value, error=cached.error)
        await self._ledger.complete_job(current)
        logger.info("stage.completed", stage=stage_kind.value, job_id=job.job_id)
        return StageExecution(
            stage_kind,
            StageOutcomeStatus.COMPLETED,
            requested=is_requested,
            job_id=job.job_id,
            artifact=artifact,
        )

    async def _mark_plan_cancelled(self, job: JobRecord) -> None:
        current = await self._ledger.get_job(job.job_id) or job
        if current.status != JobStatus.CANCELLED:
            await self._ledger.update_job(
                current,
                status=JobStatus.CANCELLED,
                message="Plan Cancelled",
                current_stage_label="Cancelled",
            )

    @staticmethod
    async def _notify(callback: PlanCallback | None, plan: RunPlan) -> None:
        if callback is None:
            return
        result = callback(plan)
        if inspect.isawaitable(result):
            await result


__all__ = [
    "DEFAULT_WINDOW_ID",
    "PipelineOrchestrator",
]
