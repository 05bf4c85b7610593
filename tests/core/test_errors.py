"""Tests for the category-spine error hierarchy."""

from __future__ import annotations

import asyncio

import pytest

from category_spine.core.errors import (
    CategorySpineError,
    CheckpointNotFoundError,
    DependencyUnmetError,
    ErrorCategory,
    JobCancelledError,
    PersistenceDegradedError,
    StageFailedError,
    StageNotRegisteredError,
    StorageError,
    categorize_error,
    is_cancellation,
    is_retryable,
)


class TestCategorySpineError:
    def test_defaults(self):
        err = CategorySpineError("boom")
        assert err.category == ErrorCategory.INTERNAL
        assert err.retryable is False
        assert str(err) == "boom"

    def test_with_context_and_to_dict(self):
        cause = ValueError("bad row")
        err = StageFailedError("demand failed", cause=cause).with_context(
            work_item_id="cat-01", stage="DEMAND", attempt=2
        )
        data = err.to_dict()
        assert data["error_type"] == "StageFailedError"
        assert data["category"] == "STAGE"
        assert data["context"] == {"work_item_id": "cat-01", "stage": "DEMAND", "attempt": 2}
        assert data["cause"] == "bad row"
        assert err.__cause__ is cause

    def test_subclass_categories(self):
        assert DependencyUnmetError("x").category == ErrorCategory.DEPENDENCY
        assert StorageError("x").category == ErrorCategory.STORAGE
        assert PersistenceDegradedError("x").retryable is True
        assert StageNotRegisteredError("NEEDS").context.stage == "NEEDS"
        assert CheckpointNotFoundError("cat-01").context.work_item_id == "cat-01"

    def test_repr(self):
        assert repr(StorageError("nope")) == "StorageError('nope', category=STORAGE)"


class TestJobCancelledError:
    def test_prefixes_reason(self):
        err = JobCancelledError("user pressed stop")
        assert str(err) == "Cancelled: user pressed stop"
        assert err.reason == "user pressed stop"

    def test_keeps_existing_prefix(self):
        assert str(JobCancelledError("Cancelled by user")) == "Cancelled by user"


class TestIsCancellation:
    @pytest.mark.parametrize(
        "error",
        [
            JobCancelledError("x"),
            asyncio.CancelledError(),
            RuntimeError("request aborted by client"),
            RuntimeError("Cancelled upstream"),
        ],
    )
    def test_abort_signatures(self, error):
        assert is_cancellation(error)

    def test_plain_error(self):
        assert not is_cancellation(RuntimeError("model returned garbage"))


class TestHelpers:
    def test_is_retryable(self):
        assert is_retryable(PersistenceDegradedError("slow"))
        assert is_retryable(ConnectionError())
        assert not is_retryable(StageFailedError("x"))

    def test_categorize_error(self):
        assert categorize_error(StorageError("x")) == ErrorCategory.STORAGE
        assert categorize_error(RuntimeError("aborted")) == ErrorCategory.CANCELLED
        assert categorize_error(ValueError("x")) == ErrorCategory.VALIDATION
        assert categorize_error(RuntimeError("x")) == ErrorCategory.UNKNOWN
