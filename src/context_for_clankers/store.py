"""
Vector store for semantic memory, persisted through a ``StorageBackend``.

Vectors and metadata live in two separate collections so metadata
filtering never touches vector payloads. Both are flushed, together with
a small index summary, after every mutating call:

    <namespace>/vectors.json    [{id, chunk_id, vector}, ...]
    <namespace>/metadata.json   {id: record}
    <namespace>/index.json      {size, last_updated, chunk_ids}

Similarity is cosine similarity computed with numpy:
    similarity = dot(a, b) / (|a| * |b|),  0.0 when either norm is zero
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import numpy as np

from .cache import LRUCache
from .errors import StorageError, ValidationError
from .intelligence import content_hash
from .models import (
    MetadataFilters,
    SearchOptions,
    SortBy,
    StoredMemory,
    VectorEntry,
    VectorStoreStats,
    utcnow,
)
from .storage import StorageBackend

logger = logging.getLogger(__name__)

SEARCH_CACHE_PREFIX = "search:"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def cosine_similarity(a, b) -> float:
    """Cosine similarity of two vectors; 0.0 if either has zero norm."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValidationError(
            f"Vector dimensionality mismatch: {va.shape[0]} != {vb.shape[0]}",
        )
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


class ReadWriteLock:
    """Single-writer / multiple-reader lock for asyncio tasks.

    Waiting writers block new readers so a steady stream of searches cannot
    starve a mutation.
    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._waiting_writers == 0)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            self._waiting_writers += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


def matches_filters(record: dict[str, Any] | None, filters: MetadataFilters | None) -> bool:
    """True when the metadata *record* satisfies every set filter."""
    if filters is None or filters.is_empty():
        return True
    if record is None:
        return False
    meta = record.get("metadata") or {}

    if filters.types:
        wanted = {t.value if hasattr(t, "value") else str(t) for t in filters.types}
        if meta.get("type") not in wanted:
            return False
    if filters.tags:
        if not set(meta.get("tags") or []) & {t.lower() for t in filters.tags}:
            return False
    if filters.project and meta.get("project") != filters.project:
        return False
    if filters.language and meta.get("language") != filters.language:
        return False
    if filters.date_range:
        created = _record_created(record)
        if filters.date_range.from_ and created < _as_utc(filters.date_range.from_):
            return False
        if filters.date_range.to and created > _as_utc(filters.date_range.to):
            return False
    if filters.importance:
        importance = float(meta.get("importance", 0.0))
        if filters.importance.min is not None and importance < filters.importance.min:
            return False
        if filters.importance.max is not None and importance > filters.importance.max:
            return False
    return True


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _record_created(record: dict[str, Any] | None) -> datetime:
    if not record or not record.get("created"):
        return _EPOCH
    return _as_utc(datetime.fromisoformat(record["created"]))


class VectorStore:
    """
    In-memory vector index with durable JSON persistence.

    Mutations (``store``, ``store_memory``, ``delete``, ``clear``,
    ``optimize``) take the write side of a ``ReadWriteLock``; searches and
    reads take the read side, so a search never observes a half-applied
    delete.

    Parameters
    ----------
    backend:
        Where the three index resources are persisted.
    dimensions:
        Required length of every vector, stored or queried.
    namespace:
        Directory prefix of the index resources inside *backend*.
    cache:
        Optional ``LRUCache`` for search results. Every mutation drops all
        ``search:`` keys.
    embedding_model:
        Reported in statistics when no stored record names its model.
    """

    def __init__(
        self,
        backend: StorageBackend,
        dimensions: int,
        namespace: str = "vectors",
        cache: LRUCache | None = None,
        embedding_model: str = "unknown",
    ) -> None:
        self.backend = backend
        self.dimensions = dimensions
        self.namespace = namespace
        self.cache = cache
        self.embedding_model = embedding_model

        self._entries: dict[str, VectorEntry] = {}
        self._metadata: dict[str, dict[str, Any]] = {}
        self._lock = ReadWriteLock()
        self._init_lock = asyncio.Lock()
        self._initialized = False
        self._search_times: deque[float] = deque(maxlen=100)
        self._last_optimization: datetime | None = None

    @property
    def vectors_path(self) -> str:
        return f"{self.namespace}/vectors.json"

    @property
    def metadata_path(self) -> str:
        return f"{self.namespace}/metadata.json"

    @property
    def index_path(self) -> str:
        return f"{self.namespace}/index.json"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Load persisted collections. Missing or corrupt files load empty."""
        async with self._init_lock:
            if self._initialized:
                return
            raw_vectors = await self._load_json(self.vectors_path, default=[])
            raw_metadata = await self._load_json(self.metadata_path, default={})

            entries: dict[str, VectorEntry] = {}
            try:
                for item in raw_vectors:
                    entry = VectorEntry.from_dict(item)
                    entries[entry.id] = entry
            except (KeyError, TypeError) as exc:
                logger.warning("Discarding malformed vector index %s: %s", self.vectors_path, exc)
                entries = {}
            if not isinstance(raw_metadata, dict):
                logger.warning("Discarding malformed metadata index %s", self.metadata_path)
                raw_metadata = {}

            self._entries = entries
            self._metadata = raw_metadata
            self._initialized = True
            logger.info("Vector store %s loaded with %d vectors", self.namespace, len(entries))

    async def dispose(self) -> None:
        """Drop in-memory state. Persisted data is already flushed."""
        async with self._lock.write():
            self._entries = {}
            self._metadata = {}
            self._initialized = False

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    async def _load_json(self, path: str, default: Any) -> Any:
        try:
            raw = await self.backend.read(path)
        except FileNotFoundError:
            return default
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"Failed to initialise vector store from {path}", original_error=exc) from exc
        try:
            return json.loads(raw.decode("utf-8")) if raw else default
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Corrupt index file %s, starting empty: %s", path, exc)
            return default

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    async def store_memory(self, memory: StoredMemory) -> None:
        """Persist *memory* and its embedding, replacing any entry with the same id."""
        self._check_dimensions(memory.embedding, memory.id)
        await self._ensure_initialized()
        async with self._lock.write():
            snapshot = self._snapshot()
            self._entries[memory.id] = VectorEntry(memory.id, memory.id, list(memory.embedding))
            self._metadata[memory.id] = memory.to_record()
            await self._flush_or_restore(snapshot)
        self._invalidate_search_cache()

    async def store_memories(self, memories: list[StoredMemory], replace: list[str] | None = None) -> int:
        """
        Drop the entries in *replace*, then write *memories*, as one flush.

        Either every change is persisted or none is. Returns how many of
        the *replace* ids were removed.
        """
        for memory in memories:
            self._check_dimensions(memory.embedding, memory.id)
        await self._ensure_initialized()
        async with self._lock.write():
            snapshot = self._snapshot()
            removed = 0
            for entry_id in replace or []:
                if self._entries.pop(entry_id, None) is not None:
                    removed += 1
                self._metadata.pop(entry_id, None)
            for memory in memories:
                self._entries[memory.id] = VectorEntry(memory.id, memory.id, list(memory.embedding))
                self._metadata[memory.id] = memory.to_record()
            await self._flush_or_restore(snapshot)
        self._invalidate_search_cache()
        return removed

    async def store(self, entries: list[VectorEntry]) -> None:
        """Persist raw vector entries that have no memory record."""
        for entry in entries:
            self._check_dimensions(entry.vector, entry.id)
        await self._ensure_initialized()
        async with self._lock.write():
            snapshot = self._snapshot()
            for entry in entries:
                self._entries[entry.id] = VectorEntry(entry.id, entry.chunk_id, list(entry.vector))
            await self._flush_or_restore(snapshot)
        self._invalidate_search_cache()

    async def delete(self, ids: list[str]) -> int:
        """Remove every entry whose id or chunk id is in *ids*."""
        await self._ensure_initialized()
        wanted = set(ids)
        async with self._lock.write():
            doomed = [
                entry_id
                for entry_id, entry in self._entries.items()
                if entry_id in wanted or entry.chunk_id in wanted
            ]
            if not doomed:
                return 0
            snapshot = self._snapshot()
            for entry_id in doomed:
                del self._entries[entry_id]
                self._metadata.pop(entry_id, None)
            await self._flush_or_restore(snapshot)
        self._invalidate_search_cache()
        return len(doomed)

    async def clear(self) -> None:
        await self._ensure_initialized()
        async with self._lock.write():
            snapshot = self._snapshot()
            self._entries = {}
            self._metadata = {}
            await self._flush_or_restore(snapshot)
        self._invalidate_search_cache()

    async def optimize(self) -> int:
        """Remove entries whose vector duplicates an earlier one. Returns the count."""
        await self._ensure_initialized()
        async with self._lock.write():
            seen: set[tuple[float, ...]] = set()
            doomed: list[str] = []
            for entry_id, entry in self._entries.items():
                key = tuple(entry.vector)
                if key in seen:
                    doomed.append(entry_id)
                else:
                    seen.add(key)
            snapshot = self._snapshot()
            for entry_id in doomed:
                del self._entries[entry_id]
                self._metadata.pop(entry_id, None)
            if doomed:
                await self._flush_or_restore(snapshot)
            self._last_optimization = utcnow()
        if doomed:
            self._invalidate_search_cache()
        logger.info("Optimised vector store %s: removed %d duplicates", self.namespace, len(doomed))
        return len(doomed)

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def search_with_filters(
        self,
        query_vector: list[float],
        options: SearchOptions | None = None,
    ) -> list[VectorEntry]:
        """
        Return stored entries ranked against *query_vector*.

        Entries are filtered on their metadata record first, then scored by
        cosine similarity, cut at ``options.threshold`` (``None`` means 0.0),
        sorted by ``options.sort_by`` (stable) and truncated to
        ``options.limit``.
        """
        options = options or SearchOptions()
        self._check_dimensions(query_vector, "query")
        await self._ensure_initialized()

        cache_key = None
        if self.cache is not None:
            cache_key = SEARCH_CACHE_PREFIX + content_hash(
                np.asarray(query_vector, dtype=np.float64).tobytes().hex(),
                repr(options),
            )
            cached = self.cache.get(cache_key)
            if cached is not None:
                return [copy.copy(e) for e in cached]

        started = time.perf_counter()
        async with self._lock.read():
            candidates = [
                entry
                for entry in self._entries.values()
                if matches_filters(self._metadata.get(entry.id), options.filters)
            ]
            results = self._score(query_vector, candidates, options)
        self._search_times.append((time.perf_counter() - started) * 1000.0)

        if cache_key is not None:
            self.cache.set(cache_key, results)
        return [copy.copy(e) for e in results]

    async def search(self, query_vector: list[float], limit: int = 10) -> list[VectorEntry]:
        """Similarity-only search with no filters."""
        return await self.search_with_filters(query_vector, SearchOptions(limit=limit))

    async def get_memory(self, memory_id: str) -> StoredMemory | None:
        await self._ensure_initialized()
        async with self._lock.read():
            record = self._metadata.get(memory_id)
            entry = self._entries.get(memory_id)
            if record is None or entry is None:
                return None
            return StoredMemory.from_record(record, entry.vector)

    async def all_memories(self) -> list[StoredMemory]:
        """Every stored memory, in insertion order."""
        await self._ensure_initialized()
        async with self._lock.read():
            return [
                StoredMemory.from_record(self._metadata[entry_id], entry.vector)
                for entry_id, entry in self._entries.items()
                if entry_id in self._metadata
            ]

    async def count(self) -> int:
        await self._ensure_initialized()
        return len(self._entries)

    async def get_statistics(self) -> VectorStoreStats:
        await self._ensure_initialized()
        async with self._lock.read():
            total = len(self._entries)
            metadata_bytes = sum(len(json.dumps(r)) for r in self._metadata.values())
            first = next(iter(self._metadata.values()), None)
            model = first.get("embedding_model", self.embedding_model) if first else self.embedding_model

        index_size = 0
        for path in (self.vectors_path, self.metadata_path, self.index_path):
            try:
                index_size += (await self.backend.stat(path)).size
            except FileNotFoundError:
                continue

        times = list(self._search_times)
        return VectorStoreStats(
            total_vectors=total,
            index_size=index_size,
            average_search_time=sum(times) / len(times) if times else 0.0,
            memory_usage=total * self.dimensions * 8 + metadata_bytes,
            embedding_model=model,
            last_optimization=self._last_optimization,
        )

    async def export_backup(self, path: str) -> None:
        """Write every entry and record to *path* as a version 2.0 backup."""
        await self._ensure_initialized()
        async with self._lock.read():
            payload = {
                "version": "2.0",
                "timestamp": utcnow().isoformat(),
                "entries": [e.to_dict() for e in self._entries.values()],
                "metadata": copy.deepcopy(self._metadata),
            }
        await self.backend.write(path, json.dumps(payload).encode("utf-8"))
        logger.info("Exported %d vectors to %s", len(payload["entries"]), path)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _check_dimensions(self, vector: list[float], label: str) -> None:
        if len(vector) != self.dimensions:
            raise ValidationError(
                f"Vector for {label} has {len(vector)} dimensions, expected {self.dimensions}",
                context={"id": label, "dimensions": len(vector)},
            )

    def _score(
        self,
        query_vector: list[float],
        candidates: list[VectorEntry],
        options: SearchOptions,
    ) -> list[VectorEntry]:
        if not candidates:
            return []
        for entry in candidates:
            self._check_dimensions(entry.vector, entry.id)

        matrix = np.asarray([e.vector for e in candidates], dtype=np.float64)
        query = np.asarray(query_vector, dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        with np.errstate(divide="ignore", invalid="ignore"):
            sims = np.where(norms > 0, dots / np.where(norms > 0, norms, 1.0), 0.0)

        threshold = options.threshold if options.threshold is not None else 0.0
        scored = [
            VectorEntry(e.id, e.chunk_id, e.vector, float(sim))
            for e, sim in zip(candidates, sims)
            if sim >= threshold
        ]

        sort_by = SortBy(options.sort_by)
        if sort_by is SortBy.DATE:
            scored.sort(key=lambda e: _record_created(self._metadata.get(e.id)), reverse=True)
        elif sort_by is SortBy.IMPORTANCE:
            scored.sort(
                key=lambda e: float(
                    (self._metadata.get(e.id) or {}).get("metadata", {}).get("importance", 0.0)
                ),
                reverse=True,
            )
        else:
            scored.sort(key=lambda e: e.similarity, reverse=True)
        return scored[: options.limit]

    def _snapshot(self) -> tuple[dict[str, VectorEntry], dict[str, dict[str, Any]]]:
        return dict(self._entries), dict(self._metadata)

    async def _flush_or_restore(self, snapshot) -> None:
        try:
            await self._flush()
        except Exception as exc:
            self._entries, self._metadata = snapshot
            if isinstance(exc, StorageError):
                raise
            raise StorageError(f"Failed to persist vector store {self.namespace}", original_error=exc) from exc

    async def _flush(self) -> None:
        vectors = [e.to_dict() for e in self._entries.values()]
        index = {
            "size": len(self._entries),
            "last_updated": utcnow().isoformat(),
            "chunk_ids": [e.chunk_id for e in self._entries.values()],
        }
        await self.backend.write(self.vectors_path, json.dumps(vectors).encode("utf-8"))
        await self.backend.write(self.metadata_path, json.dumps(self._metadata).encode("utf-8"))
        await self.backend.write(self.index_path, json.dumps(index).encode("utf-8"))

    def _invalidate_search_cache(self) -> None:
        if self.cache is not None:
            self.cache.invalidate_prefix(SEARCH_CACHE_PREFIX)
