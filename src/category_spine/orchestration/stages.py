"""Stage contracts and registry.

A stage is an async callable that receives a :class:`StageInvocation` and
returns an artifact (any JSON-serializable value). Raising means failure.
The orchestrator never looks inside artifacts; it only hands each one to
the next stage as ``upstream``.

Dependency chain::

    NEEDS ──► DEMAND ──► DEEP_ANALYSIS ──► SYNTHESIS

Example:
    >>> registry = StageRegistry()
    >>> @registry.register(StageKind.NEEDS)
    ... async def discover_needs(inv: StageInvocation) -> dict:
    ...     await inv.log("scanning sources")
    ...     return {"needs": ["durability", "price"]}
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from category_spine.core.cancellation import CancellationToken
from category_spine.core.errors import StageNotRegisteredError
from category_spine.execution.models import PIPELINE_ORDER, StageKind

Artifact = Any
LogSink = Callable[[str], Awaitable[None]]


@dataclass(frozen=True)
class StageInvocation:
    """Everything a stage receives for one run."""

    stage_kind: StageKind
    work_item_id: str
    upstream: Artifact | None
    token: CancellationToken
    log: LogSink


class Stage(Protocol):
    async def __call__(self, invocation: StageInvocation) -> Artifact:
        ...


def upstream_of(stage_kind: StageKind) -> StageKind | None:
    """Stage whose artifact *stage_kind* consumes (``None`` for NEEDS)."""
    index = PIPELINE_ORDER.index(stage_kind)
    return PIPELINE_ORDER[index - 1] if index else None


def stages_to_run(requested: set[StageKind] | frozenset[StageKind]) -> list[StageKind]:
    """Pipeline prefix up to the furthest requested stage.

    >>> stages_to_run({StageKind.DEMAND})
    [<StageKind.NEEDS: 'NEEDS'>, <StageKind.DEMAND: 'DEMAND'>]
    """
    furthest = max((PIPELINE_ORDER.index(k) for k in requested), default=-1)
    return list(PIPELINE_ORDER[: furthest + 1])


class StageRegistry:
    """Maps each pipeline stage kind to the callable that computes it."""

    def __init__(self) -> None:
        self._stages: dict[StageKind, Stage] = {}

    def register(self, stage_kind: StageKind, fn: Stage | None = None):
        """Register *fn* for *stage_kind*; usable as a decorator."""
        if not stage_kind.is_pipeline_stage:
            raise ValueError(f"{stage_kind.value} is not a pipeline stage")

        def decorator(func: Stage) -> Stage:
            self._stages[stage_kind] = func
            return func

        if fn is not None:
            return decorator(fn)
        return decorator

    def get(self, stage_kind: StageKind) -> Stage:
        try:
            return self._stages[stage_kind]
        except KeyError:
            raise StageNotRegisteredError(stage_kind.value) from None

    def __contains__(self, stage_kind: object) -> bool:
        return stage_kind in self._stages

    def __len__(self) -> int:
        return len(self._stages)


__all__ = [
    "Artifact",
    "LogSink",
    "StageInvocation",
    "Stage",
    "StageRegistry",
    "upstream_of",
    "stages_to_run",
]
