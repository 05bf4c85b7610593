"""
category-spine - pipeline orchestration and checkpointing engine.

Tracks long-running stage jobs, runs the NEEDS → DEMAND → DEEP_ANALYSIS →
SYNTHESIS pipeline per work item with automatic upstream materialization,
supports cooperative cancellation, and drives resumable chunked bulk jobs,
all on top of a slow, unreliable key-value store.

Quick start::

    from category_spine import build_engine

    engine = build_engine()
    plan = engine.orchestrator.create_plan(["cat-01"], ["SYNTHESIS"])
    plan = await engine.orchestrator.execute_plan(plan)
"""

from category_spine.engine import Engine, build_engine

__version__ = "0.1.0"

__all__ = ["Engine", "build_engine", "__version__"]
