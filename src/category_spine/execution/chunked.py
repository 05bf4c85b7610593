"""
Chunked bulk jobs - frozen, resumable execution plans.

A bulk sub-operation (fetching a metric for thousands of keys against a
rate-limited API) is turned into a :class:`ChunkedJob` whose key list is
normalized, de-duplicated and split into fixed chunks exactly once. The
runner then advances one chunk per tick, persisting after every tick, so a
crash mid-run resumes at the first unfinished chunk.

Manifesto:
    - **Frozen partition:** chunks are computed once and never re-split,
      so progress counters stay meaningful across restarts.
    - **Bounded retries:** a chunk gets ``max_retries + 1`` attempts; after
      that its keys are recorded as failed and the cursor moves on.
    - **Idempotent init:** initializing a job that already exists and is
      not terminal returns it untouched.

Architecture:
    ::

        initialize_job(keys)
            normalize → dedupe → chunk(20) → persist(cursor=0)
                                   │
        run_tick() ◄───────────────┘
            cursor ≥ len(chunks) ─────────────► COMPLETE
            fetch(chunk.keys)
              ├─ ok ──► save results, chunk SUCCESS, cursor+1 ─► CONTINUE
              └─ err ─► attempt+1
                          ├─ attempt > max_retries ─► chunk FAILED,
                          │                           cursor+1 ─► CONTINUE
                          └─ else ─────────────────► CONTINUE (same cursor)

Examples:
    >>> runner = ChunkedJobRunner(ChunkedJobStore(adapter))
    >>> job = await runner.initialize_job("v1", "cat-01", keywords)
    >>> job = await runner.run_to_completion(job, fetch_volumes, token)
    >>> job.status
    <ChunkedJobStatus.COMPLETE: 'COMPLETE'>

Tags:
    chunking, resumable, rate-limiting, retries, category-spine
"""

from __future__ import annotations

import asyncio
import inspect
import re
import unicodedata
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from category_spine.core.cancellation import CancellationToken
from category_spine.core.errors import JobCancelledError
from category_spine.core.logging import get_logger
from category_spine.core.storage import PersistenceAdapter, Persisted

from .ledger import JobLedger
from .models import JobRecord, JobStatus, StageKind, utcnow

logger = get_logger(__name__)

CHUNKED_JOB_NAMESPACE = "chunked_jobs"
RESULTS_NAMESPACE = "volume_results"
DEFAULT_CHUNK_SIZE = 20
DEFAULT_MAX_RETRIES = 2

FetchFn = Callable[[list[str]], Awaitable[dict[str, float]]]
TickCallback = Callable[["ChunkedJob", "TickResult"], Any]


# ── Key normalization ─────────────────────────────────────────────────

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_key(raw: str) -> str:
    """Lowercase, strip diacritics and punctuation, collapse whitespace.

    >>> normalize_key("  Café   Crème! ")
    'cafe creme'
    """
    text = unicodedata.normalize("NFKD", raw.lower().strip())
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = _NON_ALNUM.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


def dedupe_keys(keys: Iterable[str]) -> list[str]:
    """Normalized keys, empties dropped, first occurrence order kept."""
    seen: set[str] = set()
    result = []
    for raw in keys:
        key = normalize_key(raw)
        if key and key not in seen:
            seen.add(key)
            result.append(key)
    return result


# ── Models ────────────────────────────────────────────────────────────


class ChunkStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class ChunkedJobStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ChunkedJobStatus.COMPLETE, ChunkedJobStatus.FAILED)


class TickStatus(str, Enum):
    CONTINUE = "CONTINUE"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


@dataclass
class FrozenChunk:
    index: int
    keys: list[str]
    status: ChunkStatus = ChunkStatus.PENDING
    attempt_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "keys": list(self.keys),
            "status": self.status.value,
            "attempt_count": self.attempt_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FrozenChunk:
        return cls(
            index=data["index"],
            keys=list(data["keys"]),
            status=ChunkStatus(data.get("status", ChunkStatus.PENDING.value)),
            attempt_count=data.get("attempt_count", 0),
        )


def chunked_job_id(window_id: str, work_item_id: str) -> str:
    return f"{window_id}::{work_item_id}"


@dataclass
class ChunkedJob:
    """A bulk operation over a frozen partition of keys."""

    window_id: str
    work_item_id: str
    frozen_chunks: list[FrozenChunk]
    total_keys: int
    status: ChunkedJobStatus = ChunkedJobStatus.PENDING
    current_chunk_index: int = 0
    processed_keys: list[str] = field(default_factory=list)
    failed_keys: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    last_updated_at: datetime = field(default_factory=utcnow)

    @property
    def id(self) -> str:
        return chunked_job_id(self.window_id, self.work_item_id)

    @property
    def total_chunks(self) -> int:
        return len(self.frozen_chunks)

    @property
    def exhausted(self) -> bool:
        return self.current_chunk_index >= len(self.frozen_chunks)

    @property
    def progress(self) -> float:
        if not self.frozen_chunks:
            return 100.0
        return round(100.0 * min(self.current_chunk_index, self.total_chunks) / self.total_chunks, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "window_id": self.window_id,
            "work_item_id": self.work_item_id,
            "status": self.status.value,
            "total_keys": self.total_keys,
            "frozen_chunks": [c.to_dict() for c in self.frozen_chunks],
            "current_chunk_index": self.current_chunk_index,
            "processed_keys": list(self.processed_keys),
            "failed_keys": list(self.failed_keys),
            "started_at": self.started_at.isoformat(),
            "last_updated_at": self.last_updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChunkedJob:
        return cls(
            window_id=data["window_id"],
            work_item_id=data["work_item_id"],
            frozen_chunks=[FrozenChunk.from_dict(c) for c in data["frozen_chunks"]],
            total_keys=data["total_keys"],
            status=ChunkedJobStatus(data["status"]),
            current_chunk_index=data.get("current_chunk_index", 0),
            processed_keys=list(data.get("processed_keys") or []),
            failed_keys=list(data.get("failed_keys") or []),
            started_at=datetime.fromisoformat(data["started_at"]),
            last_updated_at=datetime.fromisoformat(data["last_updated_at"]),
        )


@dataclass(frozen=True)
class TickResult:
    status: TickStatus
    processed_count: int = 0


# ── Store ─────────────────────────────────────────────────────────────


class ChunkedJobStore:
    """Persists chunked jobs and the per-key results they produce."""

    def __init__(self, adapter: PersistenceAdapter):
        self._adapter = adapter

    async def get_job(self, window_id: str, work_item_id: str) -> ChunkedJob | None:
        data = await self._adapter.read(
            chunked_job_id(window_id, work_item_id), CHUNKED_JOB_NAMESPACE
        )
        if data is None:
            return None
        try:
            return ChunkedJob.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(
                "chunked.corrupt_record",
                job_id=chunked_job_id(window_id, work_item_id),
                error=str(e),
            )
            return None

    async def create_job(
        self,
        window_id: str,
        work_item_id: str,
        keys: list[str],
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> Persisted[ChunkedJob]:
        """Partition *keys* (already normalized) into frozen chunks and save."""
        chunks = [
            FrozenChunk(index=i, keys=keys[start:start + chunk_size])
            for i, start in enumerate(range(0, len(keys), chunk_size))
        ]
        job = ChunkedJob(
            window_id=window_id,
            work_item_id=work_item_id,
            frozen_chunks=chunks,
            total_keys=len(keys),
        )
        return await self.save_job(job)

    async def save_job(self, job: ChunkedJob) -> Persisted[ChunkedJob]:
        job.last_updated_at = utcnow()
        written = await self._adapter.write(job.id, job.to_dict(), CHUNKED_JOB_NAMESPACE)
        return written.with_value(job)

    async def clear_job(self, window_id: str, work_item_id: str) -> None:
        await self._adapter.remove(chunked_job_id(window_id, work_item_id), CHUNKED_JOB_NAMESPACE)

    async def list_jobs(self) -> list[ChunkedJob]:
        jobs = []
        for key in await self._adapter.list_keys(CHUNKED_JOB_NAMESPACE):
            window_id, _, work_item_id = key.partition("::")
            job = await self.get_job(window_id, work_item_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def save_result(self, window_id: str, key: str, value: float) -> Persisted[Any]:
        return await self._adapter.write(
            f"{window_id}::{key}",
            {"key": key, "value": value, "recorded_at": utcnow().isoformat()},
            RESULTS_NAMESPACE,
        )

    async def get_result(self, window_id: str, key: str) -> float | None:
        data = await self._adapter.read(f"{window_id}::{key}", RESULTS_NAMESPACE)
        return None if data is None else data["value"]


# ── Runner ────────────────────────────────────────────────────────────


class ChunkedJobRunner:
    """Drives a :class:`ChunkedJob` one chunk per tick.

    When a ledger is supplied, :meth:`run_to_completion` mirrors progress onto
    a WARMUP job so bulk runs show up next to pipeline stages.
    """

    def __init__(
        self,
        store: ChunkedJobStore,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        inter_chunk_delay: float = 1.0,
        ledger: JobLedger | None = None,
    ):
        self._store = store
        self._chunk_size = chunk_size
        self._max_retries = max_retries
        self._delay = inter_chunk_delay
        self._ledger = ledger

    async def initialize_job(
        self,
        window_id: str,
        work_item_id: str,
        keys: Iterable[str],
    ) -> ChunkedJob:
        """Return the live job for this window/work item, or create one.

        A job that exists and is not terminal is returned as-is, even when
        *keys* differ from the frozen partition.
        """
        existing = await self._store.get_job(window_id, work_item_id)
        if existing is not None and not existing.status.is_terminal:
            logger.info(
                "chunked.resume",
                job_id=existing.id,
                cursor=existing.current_chunk_index,
                total_chunks=existing.total_chunks,
            )
            return existing

        unique = dedupe_keys(keys)
        created = await self._store.create_job(
            window_id, work_item_id, unique, chunk_size=self._chunk_size
        )
        job = created.value
        logger.info(
            "chunked.created",
            job_id=job.id,
            total_keys=job.total_keys,
            total_chunks=job.total_chunks,
            durable=created.durable,
        )
        return job

    async def run_tick(
        self,
        job: ChunkedJob,
        fetch: FetchFn,
        token: CancellationToken | None = None,
    ) -> TickResult:
        """Process the chunk under the cursor."""
        if job.status == ChunkedJobStatus.FAILED:
            return TickResult(TickStatus.FAILED)

        if job.exhausted:
            if job.status != ChunkedJobStatus.COMPLETE:
                job.status = ChunkedJobStatus.COMPLETE
                await self._store.save_job(job)
                logger.info(
                    "chunked.complete",
                    job_id=job.id,
                    processed=len(job.processed_keys),
                    failed=len(job.failed_keys),
                )
            return TickResult(TickStatus.COMPLETE)

        if token is not None:
            token.raise_if_cancelled()

        chunk = job.frozen_chunks[job.current_chunk_index]
        try:
            results = await fetch(list(chunk.keys))
        except JobCancelledError:
            raise
        except Exception as e:
            if token is not None:
                token.raise_if_cancelled()
            chunk.attempt_count += 1
            if chunk.attempt_count > self._max_retries:
                chunk.status = ChunkStatus.FAILED
                job.failed_keys.extend(chunk.keys)
                job.current_chunk_index += 1
                logger.warning(
                    "chunk.failed",
                    job_id=job.id,
                    chunk=chunk.index,
                    attempts=chunk.attempt_count,
                    error=str(e),
                )
            else:
                logger.info(
                    "chunk.retry",
                    job_id=job.id,
                    chunk=chunk.index,
                    attempts=chunk.attempt_count,
                    error=str(e),
                )
            job.status = ChunkedJobStatus.IN_PROGRESS
            await self._store.save_job(job)
            return TickResult(TickStatus.CONTINUE)

        for key in chunk.keys:
            await self._store.save_result(job.window_id, key, float(results.get(key) or 0))
        chunk.status = ChunkStatus.SUCCESS
        job.processed_keys.extend(chunk.keys)
        job.current_chunk_index += 1
        job.status = ChunkedJobStatus.IN_PROGRESS
        await self._store.save_job(job)
        logger.debug("chunk.success", job_id=job.id, chunk=chunk.index, keys=len(chunk.keys))
        return TickResult(TickStatus.CONTINUE, processed_count=len(chunk.keys))

    async def run_to_completion(
        self,
        job: ChunkedJob,
        fetch: FetchFn,
        token: CancellationToken | None = None,
        on_tick: TickCallback | None = None,
    ) -> ChunkedJob:
        """Tick until the job completes, pausing between chunks.

        Cancellation stops between chunks and leaves the job resumable.
        """
        tracker = await self._start_tracking(job)
        try:
            while True:
                if tracker is not None and not job.exhausted:
                    tracker = await self._track_chunk(tracker, job)
                result = await self.run_tick(job, fetch, token)
                if on_tick is not None:
                    outcome = on_tick(job, result)
                    if inspect.isawaitable(outcome):
                        await outcome
                if result.status != TickStatus.CONTINUE:
                    break
                if job.exhausted:
                    continue
                if token is not None:
                    if await token.sleep(self._delay):
                        token.raise_if_cancelled()
                elif self._delay:
                    await asyncio.sleep(self._delay)
        except (JobCancelledError, asyncio.CancelledError) as e:
            logger.info("chunked.cancelled", job_id=job.id, cursor=job.current_chunk_index)
            if tracker is not None:
                await self._ledger.update_job(
                    tracker,
                    status=JobStatus.CANCELLED,
                    message="Execution aborted by user.",
                    current_stage_label="Cancelled",
                    error=str(e) or "Cancelled",
                )
            raise
        except Exception as e:
            logger.error(
                "chunked.error", job_id=job.id, cursor=job.current_chunk_index, error=str(e)
            )
            if tracker is not None:
                await self._ledger.update_job(
                    tracker,
                    status=JobStatus.FAILED,
                    message=f"Error: {e}",
                    current_stage_label="Failed",
                    error=str(e),
                )
            raise

        if tracker is not None:
            if job.status == ChunkedJobStatus.COMPLETE:
                await self._ledger.complete_job(
                    tracker,
                    message=f"Warmed {len(job.processed_keys)} keys, {len(job.failed_keys)} failed",
                )
            else:
                await self._ledger.update_job(
                    tracker, status=JobStatus.FAILED, message="Chunked job failed"
                )
        return job

    async def reset(self, window_id: str, work_item_id: str) -> None:
        await self._store.clear_job(window_id, work_item_id)
        logger.info("chunked.reset", job_id=chunked_job_id(window_id, work_item_id))

    # ── Ledger mirroring ──────────────────────────────────────────────

    async def _start_tracking(self, job: ChunkedJob) -> JobRecord | None:
        if self._ledger is None:
            return None
        created = await self._ledger.create_job(StageKind.WARMUP, job.work_item_id, job.window_id)
        running = await self._ledger.update_job(
            created.value,
            status=JobStatus.RUNNING,
            total=job.total_keys,
            processed=len(job.processed_keys),
            progress=job.progress,
        )
        return running.value

    async def _track_chunk(self, tracker: JobRecord, job: ChunkedJob) -> JobRecord:
        chunk = job.frozen_chunks[job.current_chunk_index]
        updated = await self._ledger.update_job(
            tracker,
            message=(
                f"Warming {len(chunk.keys)} keys "
                f"(Chunk {chunk.index + 1}/{job.total_chunks})"
            ),
            current_stage_label=f"CHUNK_{chunk.index + 1}",
            processed=len(job.processed_keys),
            progress=job.progress,
        )
        return updated.value


__all__ = [
    "CHUNKED_JOB_NAMESPACE",
    "RESULTS_NAMESPACE",
    "normalize_key",
    "dedupe_keys",
    "ChunkStatus",
    "ChunkedJobStatus",
    "TickStatus",
    "FrozenChunk",
    "ChunkedJob",
    "TickResult",
    "ChunkedJobStore",
    "ChunkedJobRunner",
]
