"""Tests for stage dependency helpers and StageRegistry."""

from __future__ import annotations

import pytest

from category_spine.core.errors import StageNotRegisteredError
from category_spine.execution.models import StageKind
from category_spine.orchestration.stages import StageRegistry, stages_to_run, upstream_of


class TestDependencies:
    def test_upstream_chain(self):
        assert upstream_of(StageKind.NEEDS) is None
        assert upstream_of(StageKind.DEMAND) == StageKind.NEEDS
        assert upstream_of(StageKind.SYNTHESIS) == StageKind.DEEP_ANALYSIS

    def test_stages_to_run_is_prefix_to_furthest(self):
        assert stages_to_run({StageKind.DEEP_ANALYSIS, StageKind.NEEDS}) == [
            StageKind.NEEDS,
            StageKind.DEMAND,
            StageKind.DEEP_ANALYSIS,
        ]
        assert stages_to_run({StageKind.NEEDS}) == [StageKind.NEEDS]
        assert stages_to_run(set()) == []


class TestStageRegistry:
    def test_register_as_decorator(self):
        registry = StageRegistry()

        @registry.register(StageKind.NEEDS)
        async def needs(inv):
            return {}

        assert registry.get(StageKind.NEEDS) is needs
        assert StageKind.NEEDS in registry
        assert len(registry) == 1

    def test_register_direct_replaces(self):
        registry = StageRegistry()

        async def first(inv):
            return 1

        async def second(inv):
            return 2

        registry.register(StageKind.DEMAND, first)
        registry.register(StageKind.DEMAND, second)
        assert registry.get(StageKind.DEMAND) is second

    def test_non_pipeline_kind_rejected(self):
        with pytest.raises(ValueError, match="WARMUP"):
            StageRegistry().register(StageKind.WARMUP)

    def test_missing_stage(self):
        with pytest.raises(StageNotRegisteredError, match="No stage registered for SYNTHESIS"):
            StageRegistry().get(StageKind.SYNTHESIS)
