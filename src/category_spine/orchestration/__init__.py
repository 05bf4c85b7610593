"""Run plans and the dependency-ordered pipeline orchestrator."""

from .orchestrator import DEFAULT_WINDOW_ID, PipelineOrchestrator
from .plan import (
    ExecutionMode,
    PlanStatus,
    RunPlan,
    StageExecution,
    StageOutcomeStatus,
    WorkItemOutcome,
)
from .stages import (
    Stage,
    StageInvocation,
    StageRegistry,
    stages_to_run,
    upstream_of,
)

__all__ = [
    "DEFAULT_WINDOW_ID",
    "PipelineOrchestrator",
    "ExecutionMode",
    "PlanStatus",
    "RunPlan",
    "StageExecution",
    "StageOutcomeStatus",
    "WorkItemOutcome",
    "Stage",
    "StageInvocation",
    "StageRegistry",
    "stages_to_run",
    "upstream_of",
]
