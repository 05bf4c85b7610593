"""Stage artifact cache.

Completed stage outputs are cached per ``(stage, work item)`` so a later run
plan can reuse them instead of recomputing upstream stages. Entries live in
the ``artifacts`` namespace of the key-value store and expire lazily: an
expired entry is deleted when it is next read.

Entry layout::

    {"version": 1, "stored_at": 1700000000.0, "expires_at": 1700604800.0,
     "value": <artifact>}

Entries written by an older layout version are treated as misses.

Example:
    cache = ArtifactCache(adapter, ttl_seconds=7 * 86400)
    await cache.set("DEMAND", "cat-01", {"volume": 1200})
    artifact = await cache.get("DEMAND", "cat-01")
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from category_spine.core.logging import get_logger
from category_spine.core.storage import PersistenceAdapter, Persisted

logger = get_logger(__name__)

ARTIFACT_NAMESPACE = "artifacts"
CACHE_VERSION = 1
DEFAULT_TTL_SECONDS = 7 * 24 * 60 * 60


def artifact_key(stage: str, work_item_id: str) -> str:
    return f"{stage}::{work_item_id}"


class ArtifactCache:
    """TTL cache of stage artifacts keyed by stage and work item."""

    def __init__(
        self,
        adapter: PersistenceAdapter,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._adapter = adapter
        self._ttl = ttl_seconds
        self._clock = clock

    async def get(self, stage: str, work_item_id: str) -> Any | None:
        """Return the cached artifact, or ``None`` on miss/expiry/old version."""
        key = artifact_key(stage, work_item_id)
        entry = await self._adapter.read(key, ARTIFACT_NAMESPACE)
        if not isinstance(entry, dict):
            return None
        if entry.get("version") != CACHE_VERSION:
            return None
        expires_at = entry.get("expires_at")
        if expires_at is not None and self._clock() > expires_at:
            logger.debug("cache.expired", key=key)
            await self._adapter.remove(key, ARTIFACT_NAMESPACE)
            return None
        return entry.get("value")

    async def set(self, stage: str, work_item_id: str, value: Any) -> Persisted[Any]:
        """Store an artifact; returns the write's durability outcome."""
        now = self._clock()
        entry = {
            "version": CACHE_VERSION,
            "stored_at": now,
            "expires_at": now + self._ttl,
            "value": value,
        }
        written = await self._adapter.write(
            artifact_key(stage, work_item_id), entry, ARTIFACT_NAMESPACE
        )
        return written.with_value(value)

    async def invalidate(self, stage: str, work_item_id: str) -> None:
        await self._adapter.remove(artifact_key(stage, work_item_id), ARTIFACT_NAMESPACE)

    async def clear(self) -> None:
        await self._adapter.clear(ARTIFACT_NAMESPACE)


__all__ = ["ARTIFACT_NAMESPACE", "ArtifactCache", "artifact_key"]
