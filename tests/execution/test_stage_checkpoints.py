"""Tests for StageCheckpointStore."""

from __future__ import annotations

import pytest

from category_spine.core.errors import CheckpointNotFoundError
from category_spine.core.storage import InMemoryStore, PersistenceAdapter
from category_spine.execution.checkpoints import CheckpointStatus, StageCheckpointStore

SUB_UNITS = ["apparel", "footwear", "accessories"]


@pytest.fixture
def checkpoints(adapter) -> StageCheckpointStore:
    return StageCheckpointStore(adapter)


class TestInit:
    @pytest.mark.asyncio
    async def test_new_checkpoint(self, checkpoints):
        ckpt = await checkpoints.init_checkpoint("cat-01", SUB_UNITS)
        assert ckpt.status == CheckpointStatus.IN_PROGRESS
        assert ckpt.total_sub_units == 3
        assert ckpt.completed_sub_unit_ids == []
        assert await checkpoints.get_checkpoint("cat-01") == ckpt

    @pytest.mark.asyncio
    async def test_resume_keeps_progress(self, checkpoints):
        await checkpoints.init_checkpoint("cat-01", SUB_UNITS)
        await checkpoints.save_sub_unit_result("cat-01", "apparel", {"score": 0.8})
        resumed = await checkpoints.init_checkpoint("cat-01", SUB_UNITS)
        assert resumed.completed_sub_unit_ids == ["apparel"]
        assert resumed.sub_unit_results == {"apparel": {"score": 0.8}}

    @pytest.mark.asyncio
    async def test_terminal_checkpoint_restarts(self, checkpoints):
        await checkpoints.init_checkpoint("cat-01", SUB_UNITS)
        await checkpoints.save_sub_unit_result("cat-01", "apparel", 1)
        await checkpoints.mark_complete("cat-01")
        fresh = await checkpoints.init_checkpoint("cat-01", SUB_UNITS[:2])
        assert fresh.status == CheckpointStatus.IN_PROGRESS
        assert fresh.total_sub_units == 2
        assert fresh.completed_sub_unit_ids == []


class TestSubUnits:
    @pytest.mark.asyncio
    async def test_remaining(self, checkpoints):
        await checkpoints.init_checkpoint("cat-01", SUB_UNITS)
        await checkpoints.save_sub_unit_result("cat-01", "footwear", 2)
        assert await checkpoints.remaining_sub_units("cat-01", SUB_UNITS) == [
            "apparel",
            "accessories",
        ]

    @pytest.mark.asyncio
    async def test_remaining_without_checkpoint(self, checkpoints):
        assert await checkpoints.remaining_sub_units("cat-99", SUB_UNITS) == SUB_UNITS

    @pytest.mark.asyncio
    async def test_second_save_is_ignored(self, checkpoints):
        await checkpoints.init_checkpoint("cat-01", SUB_UNITS)
        await checkpoints.save_sub_unit_result("cat-01", "apparel", "first")
        result = await checkpoints.save_sub_unit_result("cat-01", "apparel", "second")
        assert result.value.sub_unit_results["apparel"] == "first"
        assert result.value.completed_sub_unit_ids == ["apparel"]

    @pytest.mark.asyncio
    async def test_save_without_checkpoint_raises(self, checkpoints):
        with pytest.raises(CheckpointNotFoundError):
            await checkpoints.save_sub_unit_result("cat-99", "apparel", 1)


class TestStatus:
    @pytest.mark.asyncio
    async def test_mark_failed(self, checkpoints):
        await checkpoints.init_checkpoint("cat-01", SUB_UNITS)
        result = await checkpoints.mark_failed("cat-01")
        assert result.value.status == CheckpointStatus.FAILED
        assert (await checkpoints.get_checkpoint("cat-01")).status == CheckpointStatus.FAILED

    @pytest.mark.asyncio
    async def test_mark_missing_raises(self, checkpoints):
        with pytest.raises(CheckpointNotFoundError):
            await checkpoints.mark_complete("cat-99")

    @pytest.mark.asyncio
    async def test_clear(self, checkpoints):
        await checkpoints.init_checkpoint("cat-01", SUB_UNITS)
        await checkpoints.clear_checkpoint("cat-01")
        assert await checkpoints.get_checkpoint("cat-01") is None


class TestSlowOrBrokenStore:
    @pytest.mark.asyncio
    async def test_save_right_after_init_on_slow_store(self):
        adapter = PersistenceAdapter(InMemoryStore(write_delay=0.2), write_timeout=0.02)
        checkpoints = StageCheckpointStore(adapter)
        await checkpoints.init_checkpoint("cat-01", SUB_UNITS)

        first = await checkpoints.save_sub_unit_result("cat-01", "apparel", 1)
        second = await checkpoints.save_sub_unit_result("cat-01", "footwear", 2)
        assert first.degraded
        assert second.value.completed_sub_unit_ids == ["apparel", "footwear"]
        assert await checkpoints.remaining_sub_units("cat-01", SUB_UNITS) == ["accessories"]

        await adapter.drain()
        reopened = StageCheckpointStore(adapter)
        stored = await reopened.get_checkpoint("cat-01")
        assert stored.completed_sub_unit_ids == ["apparel", "footwear"]
        assert stored.sub_unit_results == {"apparel": 1, "footwear": 2}

    @pytest.mark.asyncio
    async def test_failed_writes_keep_progress_in_memory(self):
        store = InMemoryStore()
        checkpoints = StageCheckpointStore(PersistenceAdapter(store))
        await checkpoints.init_checkpoint("cat-01", SUB_UNITS)
        store.fail_writes = True

        result = await checkpoints.save_sub_unit_result("cat-01", "apparel", 1)
        assert result.degraded
        await checkpoints.save_sub_unit_result("cat-01", "footwear", 2)
        assert (await checkpoints.mark_failed("cat-01")).value.completed_sub_unit_ids == [
            "apparel",
            "footwear",
        ]

    @pytest.mark.asyncio
    async def test_clear_forgets_memory_copy(self, checkpoints):
        await checkpoints.init_checkpoint("cat-01", SUB_UNITS)
        await checkpoints.save_sub_unit_result("cat-01", "apparel", 1)
        await checkpoints.clear_checkpoint("cat-01")
        assert await checkpoints.remaining_sub_units("cat-01", SUB_UNITS) == SUB_UNITS
