"""
Lazy-initialised component container.

:class:`Engine` wires the store, ledger, caches, chunked runner and
orchestrator from one :class:`CategorySpineSettings`, creating each on
first access.

Usage::

    from category_spine import build_engine

    engine = build_engine()
    engine.registry.register(StageKind.NEEDS, discover_needs)
    plan = engine.orchestrator.create_plan(["cat-01"], [StageKind.NEEDS])

    # As a context manager for automatic cleanup:
    with build_engine(settings) as engine:
        ...
"""

from __future__ import annotations

from category_spine.core.cache import ArtifactCache
from category_spine.core.settings import CategorySpineSettings, get_settings
from category_spine.core.storage import (
    KeyValueStore,
    PersistenceAdapter,
    SqliteStore,
    build_store,
)
from category_spine.execution.checkpoints import StageCheckpointStore
from category_spine.execution.chunked import ChunkedJobRunner, ChunkedJobStore
from category_spine.execution.ledger import JobLedger
from category_spine.orchestration.orchestrator import PipelineOrchestrator
from category_spine.orchestration.stages import StageRegistry


class Engine:
    """Lazy-initialised engine components.

    Components are created on first property access and the store is
    closed via :meth:`close` (or the context-manager protocol).
    """

    def __init__(
        self,
        settings: CategorySpineSettings | None = None,
        *,
        store: KeyValueStore | None = None,
        registry: StageRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._registry = registry
        self._adapter: PersistenceAdapter | None = None
        self._ledger: JobLedger | None = None
        self._cache: ArtifactCache | None = None
        self._chunked_store: ChunkedJobStore | None = None
        self._chunk_runner: ChunkedJobRunner | None = None
        self._checkpoints: StageCheckpointStore | None = None
        self._orchestrator: PipelineOrchestrator | None = None

    # ── Properties (lazy) ────────────────────────────────────────

    @property
    def settings(self) -> CategorySpineSettings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    @property
    def store(self) -> KeyValueStore:
        if self._store is None:
            self._store = build_store(self.settings)
        return self._store

    @property
    def adapter(self) -> PersistenceAdapter:
        if self._adapter is None:
            self._adapter = PersistenceAdapter(
                self.store, write_timeout=self.settings.write_timeout_seconds
            )
        return self._adapter

    @property
    def ledger(self) -> JobLedger:
        if self._ledger is None:
            self._ledger = JobLedger(
                self.adapter,
                log_cap=self.settings.job_log_cap,
                recent_limit=self.settings.recent_jobs_limit,
            )
        return self._ledger

    @property
    def cache(self) -> ArtifactCache:
        if self._cache is None:
            self._cache = ArtifactCache(
                self.adapter, ttl_seconds=self.settings.artifact_ttl_seconds
            )
        return self._cache

    @property
    def chunked_store(self) -> ChunkedJobStore:
        if self._chunked_store is None:
            self._chunked_store = ChunkedJobStore(self.adapter)
        return self._chunked_store

    @property
    def chunk_runner(self) -> ChunkedJobRunner:
        if self._chunk_runner is None:
            self._chunk_runner = ChunkedJobRunner(
                self.chunked_store,
                chunk_size=self.settings.chunk_size,
                max_retries=self.settings.chunk_max_retries,
                inter_chunk_delay=self.settings.inter_chunk_delay_seconds,
                ledger=self.ledger,
            )
        return self._chunk_runner

    @property
    def checkpoints(self) -> StageCheckpointStore:
        if self._checkpoints is None:
            self._checkpoints = StageCheckpointStore(self.adapter)
        return self._checkpoints

    @property
    def registry(self) -> StageRegistry:
        if self._registry is None:
            self._registry = StageRegistry()
        return self._registry

    @property
    def orchestrator(self) -> PipelineOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = PipelineOrchestrator(self.ledger, self.cache, self.registry)
        return self._orchestrator

    # ── Lifecycle ────────────────────────────────────────────────

    async def drain(self) -> None:
        """Wait for background writes that outlived their timeout."""
        if self._adapter is not None:
            await self._adapter.drain()

    def close(self) -> None:
        if isinstance(self._store, SqliteStore):
            self._store.close()

    def __enter__(self) -> Engine:
        return self

    def __exit__(self, *args) -> None:
        self.close()


def build_engine(
    settings: CategorySpineSettings | None = None,
    *,
    store: KeyValueStore | None = None,
    registry: StageRegistry | None = None,
) -> Engine:
    """Create an :class:`Engine` (components are built lazily)."""
    return Engine(settings, store=store, registry=registry)


__all__ = ["Engine", "build_engine"]
