"""
Shared pytest fixtures and configuration for category-spine tests.

This module provides:
- Logging/settings reset fixtures for test isolation
- In-memory store, adapter, ledger and cache fixtures
- A stage registry pre-loaded with recording stages

Usage:
    Fixtures are auto-discovered by pytest. Use them as function arguments.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from pathlib import Path

import pytest
import structlog

from category_spine.core.cache import ArtifactCache
from category_spine.core.settings import clear_settings_cache
from category_spine.core.storage import InMemoryStore, PersistenceAdapter
from category_spine.execution.ledger import JobLedger
from category_spine.execution.models import PIPELINE_ORDER, StageKind
from category_spine.orchestration.stages import StageInvocation, StageRegistry


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)
        if "integration" in str(test_path):
            item.add_marker(pytest.mark.integration)
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Isolation Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_global_state(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Fresh structlog defaults and settings cache for every test."""
    for key in list(os.environ):
        if key.startswith("CATSPINE_"):
            monkeypatch.delenv(key, raising=False)
    structlog.reset_defaults()
    clear_settings_cache()
    yield
    structlog.reset_defaults()
    clear_settings_cache()


# =============================================================================
# Storage Fixtures
# =============================================================================


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def adapter(store: InMemoryStore) -> PersistenceAdapter:
    return PersistenceAdapter(store, write_timeout=0.25)


@pytest.fixture
def ledger(adapter: PersistenceAdapter) -> JobLedger:
    return JobLedger(adapter)


@pytest.fixture
def cache(adapter: PersistenceAdapter) -> ArtifactCache:
    return ArtifactCache(adapter)


# =============================================================================
# Stage Fixtures
# =============================================================================


class StageRecorder:
    """Registers one recording stage per pipeline kind.

    ``calls`` collects ``(stage, work_item_id)`` in invocation order and
    ``upstreams`` what each call received. Failures are configured per
    ``(stage, work_item_id)`` via :meth:`fail`.
    """

    def __init__(self, registry: StageRegistry):
        self.registry = registry
        self.calls: list[tuple[StageKind, str]] = []
        self.upstreams: dict[tuple[StageKind, str], object] = {}
        self._failures: dict[tuple[StageKind, str], Exception] = {}
        for kind in PIPELINE_ORDER:
            registry.register(kind, self._make_stage(kind))

    def fail(self, kind: StageKind, work_item_id: str, error: Exception | None = None) -> None:
        self._failures[(kind, work_item_id)] = error or RuntimeError(f"{kind.value} exploded")

    def _make_stage(self, kind: StageKind):
        async def stage(inv: StageInvocation) -> dict:
            self.calls.append((kind, inv.work_item_id))
            self.upstreams[(kind, inv.work_item_id)] = inv.upstream
            await inv.log(f"running {kind.value}")
            error = self._failures.get((kind, inv.work_item_id))
            if error is not None:
                raise error
            return {"stage": kind.value, "work_item": inv.work_item_id}

        return stage


@pytest.fixture
def registry() -> StageRegistry:
    return StageRegistry()


@pytest.fixture
def recorder(registry: StageRegistry) -> StageRecorder:
    return StageRecorder(registry)
