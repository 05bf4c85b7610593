"""
Key-value persistence for category-spine.

All engine state (job records, chunked jobs, checkpoints, cached artifacts)
lives in a namespaced key-value store. The backing store is assumed to be
slow and occasionally broken, so writes go through a
:class:`PersistenceAdapter` that races each write against a fixed time
budget and reports durability instead of raising.

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                    PersistenceAdapter                        │
        │  write() ── asyncio.shield(store.set) ── wait_for(timeout)   │
        │     │                                                        │
        │     ├─ finished in time ─────► Persisted(durable=True)       │
        │     ├─ timed out ────────────► Persisted(durable=False)      │
        │     │     (write keeps running; drain() awaits it)           │
        │     └─ raised ───────────────► Persisted(durable=False)      │
        ├──────────────────────────────────────────────────────────────┤
        │                  KeyValueStore (protocol)                    │
        │        InMemoryStore            SqliteStore                  │
        └──────────────────────────────────────────────────────────────┘

Guardrails:
    - Values must be JSON-serializable; stores keep serialized copies so a
      caller mutating its object never mutates stored state.
    - No atomicity across operations. Read-merge-write races are
      last-writer-wins.

Examples:
    >>> store = InMemoryStore()
    >>> adapter = PersistenceAdapter(store, write_timeout=0.25)
    >>> result = await adapter.write("JOB-1", {"status": "PENDING"}, "jobs")
    >>> result.durable
    True
    >>> await adapter.read("JOB-1", "jobs")
    {'status': 'PENDING'}

Tags:
    storage, key-value, sqlite, timeout, degraded-writes, category-spine
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

from category_spine.core.errors import PersistenceDegradedError, StorageError
from category_spine.core.logging import get_logger
from category_spine.core.settings import CategorySpineSettings, StorageBackend

logger = get_logger(__name__)

T = TypeVar("T")


# ── Durability result ──────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Persisted(Generic[T]):
    """A value plus whether it reached durable storage.

    ``durable=False`` means the caller's in-memory value is authoritative
    and the persisted copy may be stale (or may still land later).
    """

    value: T
    durable: bool = True
    error: str | None = None

    @property
    def degraded(self) -> bool:
        return not self.durable

    def with_value(self, value: Any) -> Persisted[Any]:
        """Carry this durability outcome over to a different value."""
        return Persisted(value=value, durable=self.durable, error=self.error)

    def unwrap_durable(self) -> T:
        """Return the value, raising if it never reached storage."""
        if not self.durable:
            raise PersistenceDegradedError(self.error or "write not durable")
        return self.value


# ── Store protocol ─────────────────────────────────────────────────────


@runtime_checkable
class KeyValueStore(Protocol):
    """Async namespaced key-value store holding JSON-serializable values."""

    async def get(self, key: str, namespace: str) -> Any | None:
        ...

    async def set(self, key: str, value: Any, namespace: str) -> None:
        ...

    async def remove(self, key: str, namespace: str) -> None:
        ...

    async def list_keys(self, namespace: str) -> list[str]:
        ...

    async def clear(self, namespace: str) -> None:
        ...


class InMemoryStore:
    """Process-local store.

    ``write_delay`` and ``fail_writes`` simulate a slow or broken backend.
    They are plain attributes so tests can flip them mid-run.
    """

    def __init__(self, *, write_delay: float = 0.0, fail_writes: bool = False) -> None:
        self._data: dict[str, dict[str, str]] = {}
        self.write_delay = write_delay
        self.fail_writes = fail_writes

    async def get(self, key: str, namespace: str) -> Any | None:
        raw = self._data.get(namespace, {}).get(key)
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any, namespace: str) -> None:
        raw = json.dumps(value)
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        if self.fail_writes:
            raise StorageError(f"write rejected for {namespace}/{key}").with_context(
                namespace=namespace, key=key
            )
        self._data.setdefault(namespace, {})[key] = raw

    async def remove(self, key: str, namespace: str) -> None:
        self._data.get(namespace, {}).pop(key, None)

    async def list_keys(self, namespace: str) -> list[str]:
        return list(self._data.get(namespace, {}))

    async def clear(self, namespace: str) -> None:
        self._data.pop(namespace, None)


class SqliteStore:
    """SQLite-backed store; blocking calls run in a worker thread.

    Schema::

        kv_store(namespace TEXT, key TEXT, value TEXT, updated_at REAL,
                 PRIMARY KEY (namespace, key))
    """

    def __init__(self, path: str | Path = ":memory:") -> None:
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._path = str(path)
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._lock = threading.Lock()
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_store (
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL,
                    PRIMARY KEY (namespace, key)
                )
                """
            )
            self._conn.commit()

    def _execute(self, sql: str, params: tuple = (), *, fetch: bool = False) -> list[tuple]:
        with self._lock:
            try:
                cursor = self._conn.execute(sql, params)
                rows = cursor.fetchall() if fetch else []
                self._conn.commit()
            except sqlite3.Error as e:
                raise StorageError(f"sqlite error: {e}", cause=e) from e
        return rows

    async def get(self, key: str, namespace: str) -> Any | None:
        rows = await asyncio.to_thread(
            self._execute,
            "SELECT value FROM kv_store WHERE namespace = ? AND key = ?",
            (namespace, key),
            fetch=True,
        )
        return json.loads(rows[0][0]) if rows else None

    async def set(self, key: str, value: Any, namespace: str) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO kv_store (namespace, key, value, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(namespace, key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (namespace, key, json.dumps(value), time.time()),
        )

    async def remove(self, key: str, namespace: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM kv_store WHERE namespace = ? AND key = ?",
            (namespace, key),
        )

    async def list_keys(self, namespace: str) -> list[str]:
        rows = await asyncio.to_thread(
            self._execute,
            "SELECT key FROM kv_store WHERE namespace = ? ORDER BY updated_at",
            (namespace,),
            fetch=True,
        )
        return [row[0] for row in rows]

    async def clear(self, namespace: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM kv_store WHERE namespace = ?",
            (namespace,),
        )

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __repr__(self) -> str:
        return f"SqliteStore({self._path!r})"


def build_store(settings: CategorySpineSettings) -> KeyValueStore:
    """Create the store selected by ``settings.storage_backend``."""
    if settings.storage_backend == StorageBackend.SQLITE:
        return SqliteStore(settings.sqlite_path)
    return InMemoryStore()


# ── Adapter ────────────────────────────────────────────────────────────


class PersistenceAdapter:
    """Timeout-raced writes and failure-tolerant reads over a store.

    A write that overruns ``write_timeout`` is not cancelled; it keeps
    running in the background and is tracked until it finishes.
    """

    def __init__(self, store: KeyValueStore, *, write_timeout: float = 0.25) -> None:
        self._store = store
        self._write_timeout = write_timeout
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def store(self) -> KeyValueStore:
        return self._store

    @property
    def write_timeout(self) -> float:
        return self._write_timeout

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    async def write(self, key: str, value: Any, namespace: str) -> Persisted[Any]:
        """Race ``store.set`` against the write timeout."""
        task = asyncio.ensure_future(self._store.set(key, value, namespace))
        self._pending.add(task)
        task.add_done_callback(self._write_finished)

        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self._write_timeout)
        except TimeoutError:
            logger.warning(
                "storage.write_degraded",
                namespace=namespace,
                key=key,
                reason="timeout",
                timeout_seconds=self._write_timeout,
            )
            return Persisted(
                value=value,
                durable=False,
                error=f"write timed out after {self._write_timeout}s",
            )
        except Exception as e:
            logger.warning(
                "storage.write_degraded",
                namespace=namespace,
                key=key,
                reason="error",
                error=str(e),
            )
            return Persisted(value=value, durable=False, error=str(e))
        return Persisted(value=value)

    def _write_finished(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.debug("storage.write_failed", error=str(error))

    async def read(self, key: str, namespace: str) -> Any | None:
        """Read a value; backend failures degrade to ``None``."""
        try:
            return await self._store.get(key, namespace)
        except Exception as e:
            logger.warning("storage.read_failed", namespace=namespace, key=key, error=str(e))
            return None

    async def remove(self, key: str, namespace: str) -> None:
        await self._store.remove(key, namespace)

    async def list_keys(self, namespace: str) -> list[str]:
        return await self._store.list_keys(namespace)

    async def clear(self, namespace: str) -> None:
        await self._store.clear(namespace)

    async def drain(self) -> None:
        """Wait for every background write still in flight."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


__all__ = [
    "Persisted",
    "KeyValueStore",
    "InMemoryStore",
    "SqliteStore",
    "build_store",
    "PersistenceAdapter",
]
