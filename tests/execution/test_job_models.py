"""Tests for job ids, status transitions and JobRecord serialization."""

from __future__ import annotations

import re

import pytest

from category_spine.execution.models import (
    InvalidTransitionError,
    JobRecord,
    JobStatus,
    StageKind,
    new_job_id,
    new_plan_id,
    validate_job_transition,
)


class TestStageKind:
    def test_labels(self):
        assert StageKind.DEMAND.label == "Demand"
        assert StageKind.DEEP_ANALYSIS.label == "Deep Analysis"
        assert StageKind.PING.label == "Ping"

    def test_pipeline_membership(self):
        assert StageKind.SYNTHESIS.is_pipeline_stage
        assert not StageKind.WARMUP.is_pipeline_stage


class TestIds:
    def test_job_id_format(self):
        job_id = new_job_id(StageKind.NEEDS, "cat-01")
        assert re.fullmatch(r"JOB-NEEDS-cat-01-\d{13,}", job_id)

    def test_ids_never_repeat(self):
        ids = {new_job_id(StageKind.DEMAND, "cat-01") for _ in range(500)}
        assert len(ids) == 500

    def test_plan_id_format(self):
        assert re.fullmatch(r"PLAN-\d{13,}", new_plan_id())


class TestTransitions:
    @pytest.mark.parametrize(
        "current,target",
        [
            (JobStatus.PENDING, JobStatus.RUNNING),
            (JobStatus.PENDING, JobStatus.COMPLETED),
            (JobStatus.RUNNING, JobStatus.RUNNING),
            (JobStatus.RUNNING, None),
            (JobStatus.RUNNING, JobStatus.CANCELLING),
            (JobStatus.CANCELLING, JobStatus.CANCELLED),
            (JobStatus.COMPLETED, JobStatus.FAILED),
            (JobStatus.COMPLETED, JobStatus.CANCELLED),
            (JobStatus.FAILED, JobStatus.FAILED),
        ],
    )
    def test_allowed(self, current, target):
        validate_job_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (JobStatus.COMPLETED, JobStatus.RUNNING),
            (JobStatus.COMPLETED, JobStatus.COMPLETED),
            (JobStatus.COMPLETED, None),
            (JobStatus.CANCELLED, JobStatus.PENDING),
            (JobStatus.RUNNING, JobStatus.PENDING),
        ],
    )
    def test_rejected(self, current, target):
        with pytest.raises(InvalidTransitionError):
            validate_job_transition(current, target)


class TestJobRecord:
    def test_create(self):
        job = JobRecord.create(StageKind.DEMAND, "cat-01", "v1")
        assert job.status == JobStatus.PENDING
        assert job.message == "Queued..."
        assert job.current_stage_label == "Demand"
        assert job.logs == []
        assert job.started_at is None
        assert job.job_id.startswith("JOB-DEMAND-cat-01-")

    def test_dict_roundtrip_keeps_timestamps(self):
        job = JobRecord.create(StageKind.NEEDS, "cat-01", "v1")
        job.logs.append("12:00:00 [Needs] hi")
        restored = JobRecord.from_dict(job.to_dict())
        assert restored == job
        assert restored.created_at.tzinfo is not None

    def test_copy_does_not_share_logs(self):
        job = JobRecord.create(StageKind.NEEDS, "cat-01", "v1")
        clone = job.copy(message="changed")
        clone.logs.append("x")
        assert job.logs == []
        assert job.message == "Queued..."
