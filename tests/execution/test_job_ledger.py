"""Tests for JobLedger."""

from __future__ import annotations

import asyncio
import re
from datetime import UTC, datetime, timedelta

import pytest

from category_spine.core.errors import JobCancelledError
from category_spine.core.storage import InMemoryStore, PersistenceAdapter
from category_spine.execution.ledger import JOB_NAMESPACE, JobLedger
from category_spine.execution.models import JobRecord, JobStatus, StageKind


# ── Helpers ──────────────────────────────────────────────────────────────


async def _create(ledger, kind=StageKind.DEMAND, item="cat-01") -> JobRecord:
    return (await ledger.create_job(kind, item, "v1")).value


async def _ok() -> dict:
    return {"volume": 42}


async def _boom() -> dict:
    raise ValueError("model returned garbage")


# ── create_job ───────────────────────────────────────────────────────────


class TestCreateJob:
    @pytest.mark.asyncio
    async def test_create_persists_pending(self, ledger):
        result = await ledger.create_job(StageKind.DEMAND, "cat-01", "v1")
        assert result.durable
        job = result.value
        assert job.status == JobStatus.PENDING
        assert job.message == "Queued..."
        assert job.current_stage_label == "Demand"
        assert await ledger.get_job(job.job_id) == job

    @pytest.mark.asyncio
    async def test_slow_store_returns_in_memory_record(self):
        adapter = PersistenceAdapter(InMemoryStore(write_delay=0.2), write_timeout=0.02)
        ledger = JobLedger(adapter)
        result = await ledger.create_job(StageKind.NEEDS, "cat-01", "v1")
        assert result.degraded
        assert result.value.status == JobStatus.PENDING
        assert result.value.job_id.startswith("JOB-NEEDS-cat-01-")

        await adapter.drain()
        assert await ledger.get_job(result.value.job_id) == result.value


# ── update_job ───────────────────────────────────────────────────────────


class TestUpdateJob:
    @pytest.mark.asyncio
    async def test_merge_and_log_line(self, ledger):
        job = await _create(ledger)
        result = await ledger.update_job(
            job, status=JobStatus.RUNNING, message="Fetching volumes", progress=10.0
        )
        updated = result.value
        assert updated.status == JobStatus.RUNNING
        assert updated.progress == 10.0
        assert updated.started_at is not None
        assert updated.updated_at >= job.updated_at
        assert len(updated.logs) == 1
        assert re.fullmatch(r"\d{2}:\d{2}:\d{2} \[Demand\] Fetching volumes", updated.logs[0])

    @pytest.mark.asyncio
    async def test_label_from_update_wins(self, ledger):
        job = await _create(ledger)
        updated = (await ledger.update_job(job, message="go", current_stage_label="CHUNK_1")).value
        assert updated.logs[-1].endswith("[CHUNK_1] go")

    @pytest.mark.asyncio
    async def test_unchanged_message_adds_no_line(self, ledger):
        job = await _create(ledger)
        await ledger.update_job(job, message="same")
        updated = (await ledger.update_job(job, message="same", progress=50.0)).value
        assert len(updated.logs) == 1
        assert updated.progress == 50.0

    @pytest.mark.asyncio
    async def test_reads_latest_stored_version(self, ledger):
        job = await _create(ledger)
        await ledger.update_job(job, progress=30.0)
        # stale copy still passed in; stored progress is kept
        updated = (await ledger.update_job(job, message="later")).value
        assert updated.progress == 30.0

    @pytest.mark.asyncio
    async def test_falls_back_to_passed_job(self, ledger):
        job = JobRecord.create(StageKind.NEEDS, "cat-02", "v1")
        updated = (await ledger.update_job(job, message="first")).value
        assert updated.job_id == job.job_id
        assert updated.message == "first"

    @pytest.mark.asyncio
    async def test_logs_capped_at_200(self, ledger):
        job = await _create(ledger)
        for i in range(250):
            job = (await ledger.update_job(job, message=f"step {i}")).value
        assert len(job.logs) == 200
        assert job.logs[-1].endswith("step 249")
        assert job.logs[0].endswith("step 50")

    @pytest.mark.asyncio
    async def test_append_log_respects_cap(self):
        ledger = JobLedger(PersistenceAdapter(InMemoryStore()), log_cap=3)
        job = (await ledger.create_job(StageKind.NEEDS, "cat-01", "v1")).value
        for i in range(5):
            job = (await ledger.append_log(job, f"line {i}")).value
        assert job.logs == ["line 2", "line 3", "line 4"]

    @pytest.mark.asyncio
    async def test_degraded_update_still_returns_merge(self, store, ledger):
        job = await _create(ledger)
        store.fail_writes = True
        result = await ledger.update_job(job, progress=70.0)
        assert result.degraded
        assert result.value.progress == 70.0


class TestTerminalGuard:
    @pytest.mark.asyncio
    async def test_completed_rejects_plain_updates(self, ledger):
        job = await _create(ledger)
        done = (await ledger.complete_job(job)).value
        assert done.status == JobStatus.COMPLETED
        assert done.progress == 100.0
        assert done.completed_at is not None

        again = (await ledger.update_job(done, status=JobStatus.RUNNING)).value
        assert again.status == JobStatus.COMPLETED
        assert again.logs == done.logs

        msg_only = (await ledger.update_job(done, message="late message")).value
        assert msg_only.message == "Done"

    @pytest.mark.asyncio
    async def test_completed_accepts_failed_and_cancelled(self, ledger):
        job = await _create(ledger)
        done = (await ledger.complete_job(job)).value
        failed = (await ledger.update_job(done, status=JobStatus.FAILED, error="late")).value
        assert failed.status == JobStatus.FAILED
        cancelled = (await ledger.update_job(failed, status="CANCELLED")).value
        assert cancelled.status == JobStatus.CANCELLED


# ── run_step ─────────────────────────────────────────────────────────────


class TestRunStep:
    @pytest.mark.asyncio
    async def test_success_leaves_job_running(self, ledger):
        job = await _create(ledger)
        result = await ledger.run_step(job, "Demand", _ok)
        assert result == {"volume": 42}
        stored = await ledger.get_job(job.job_id)
        assert stored.status == JobStatus.RUNNING
        assert stored.message == "Starting Demand..."
        assert stored.started_at is not None

    @pytest.mark.asyncio
    async def test_on_started_receives_running_record(self, ledger):
        job = await _create(ledger)
        seen = []
        await ledger.run_step(job, "Demand", _ok, on_started=seen.append)
        assert [r.status for r in seen] == [JobStatus.RUNNING]
        assert seen[0].logs[-1].endswith("[Demand] Starting Demand...")

    @pytest.mark.asyncio
    async def test_failure_marks_failed_and_reraises(self, ledger):
        job = await _create(ledger)
        with pytest.raises(ValueError, match="garbage"):
            await ledger.run_step(job, "Demand", _boom)
        stored = await ledger.get_job(job.job_id)
        assert stored.status == JobStatus.FAILED
        assert stored.message == "Error: model returned garbage"
        assert stored.current_stage_label == "Failed"
        assert stored.error == "model returned garbage"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [JobCancelledError("user"), RuntimeError("request aborted")],
    )
    async def test_abort_marks_cancelled(self, ledger, error):
        job = await _create(ledger)

        async def _abort():
            raise error

        with pytest.raises(type(error)):
            await ledger.run_step(job, "Demand", _abort)
        stored = await ledger.get_job(job.job_id)
        assert stored.status == JobStatus.CANCELLED
        assert stored.message == "Execution aborted by user."
        assert stored.current_stage_label == "Cancelled"

    @pytest.mark.asyncio
    async def test_task_cancellation_marks_cancelled(self, ledger):
        job = await _create(ledger)
        started = asyncio.Event()

        async def _forever():
            started.set()
            await asyncio.sleep(10)

        task = asyncio.create_task(ledger.run_step(job, "Demand", _forever))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert (await ledger.get_job(job.job_id)).status == JobStatus.CANCELLED


# ── Cancellation requests ────────────────────────────────────────────────


class TestRequestCancel:
    @pytest.mark.asyncio
    async def test_running_job_moves_to_cancelling(self, ledger):
        job = await _create(ledger)
        await ledger.update_job(job, status=JobStatus.RUNNING)
        result = await ledger.request_cancel(job.job_id)
        assert result.value.status == JobStatus.CANCELLING
        assert (await ledger.get_job(job.job_id)).status == JobStatus.CANCELLING

    @pytest.mark.asyncio
    async def test_terminal_job_untouched(self, ledger):
        job = await _create(ledger)
        await ledger.complete_job(job)
        result = await ledger.request_cancel(job.job_id)
        assert result.value.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_job(self, ledger):
        assert await ledger.request_cancel("JOB-NOPE") is None


# ── Queries ──────────────────────────────────────────────────────────────


class TestQueries:
    @pytest.mark.asyncio
    async def test_recent_jobs_sorted_and_limited(self, ledger):
        base = datetime(2025, 1, 1, tzinfo=UTC)
        for offset in (5, 1, 9, 3):
            job = await _create(ledger, item=f"cat-{offset}")
            await ledger.update_job(job, started_at=base + timedelta(minutes=offset))

        recent = await ledger.get_recent_jobs(limit=3)
        assert [j.work_item_id for j in recent] == ["cat-9", "cat-5", "cat-3"]

    @pytest.mark.asyncio
    async def test_recent_jobs_default_limit(self):
        ledger = JobLedger(PersistenceAdapter(InMemoryStore()), recent_limit=2)
        for i in range(4):
            await ledger.create_job(StageKind.NEEDS, f"cat-{i}", "v1")
        assert len(await ledger.get_recent_jobs()) == 2

    @pytest.mark.asyncio
    async def test_recent_jobs_zero_limit(self, ledger):
        await _create(ledger)
        assert await ledger.get_recent_jobs(limit=0) == []

    @pytest.mark.asyncio
    async def test_latest_and_active_for_work_item(self, ledger):
        first = await _create(ledger, StageKind.NEEDS, "cat-01")
        await ledger.complete_job(first)
        second = await _create(ledger, StageKind.DEMAND, "cat-01")
        await ledger.update_job(second, status=JobStatus.RUNNING)
        await _create(ledger, StageKind.NEEDS, "cat-02")

        latest = await ledger.latest_job_for("cat-01")
        assert latest.job_id == second.job_id
        assert (await ledger.latest_job_for("cat-01", StageKind.NEEDS)).job_id == first.job_id

        active = await ledger.active_job_for("cat-01")
        assert active.job_id == second.job_id
        assert await ledger.active_job_for("cat-01", StageKind.NEEDS) is None
        assert await ledger.latest_job_for("cat-99") is None

    @pytest.mark.asyncio
    async def test_corrupt_record_ignored(self, store, ledger):
        await store.set("JOB-BAD", {"nope": True}, JOB_NAMESPACE)
        assert await ledger.get_job("JOB-BAD") is None
        assert await ledger.list_jobs() == []


# ── Maintenance ──────────────────────────────────────────────────────────


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_reset(self, ledger):
        await _create(ledger)
        await ledger.reset()
        assert await ledger.get_recent_jobs() == []

    @pytest.mark.asyncio
    async def test_self_test_ok(self, ledger):
        result = await ledger.self_test()
        assert result.ok
        job = await ledger.get_job(result.job_id)
        assert job.stage_kind == StageKind.PING
        assert job.work_item_id == "GLOBAL"
        assert job.window_id == "test"

    @pytest.mark.asyncio
    async def test_self_test_reports_broken_store(self):
        ledger = JobLedger(PersistenceAdapter(InMemoryStore(fail_writes=True)))
        result = await ledger.self_test()
        assert not result.ok
        assert not result.durable
        assert "write rejected" in result.error
