"""
MemoryManager: high-level API over the context engine.

This is the main entry-point for applications that want to persist
workspace knowledge and assemble token-bounded context for an LLM.

Usage example::

    import asyncio
    from context_for_clankers import MemoryManager, MemoryType

    async def main():
        memory = MemoryManager(data_path="./context_data")
        await memory.initialize()

        await memory.create_memory(
            "Always validate tags before storing a memory.",
            type=MemoryType.NOTE,
            tags=["guidelines"],
        )
        await memory.index_file("src/app.py", open("src/app.py").read())

        context = await memory.build_context(
            "how are tags validated?",
            max_tokens=4000,
            active_file_path="src/app.py",
        )
        print(context.content)

    asyncio.run(main())
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any

from .cache import LRUCache
from .compression import CompressionEngine, PauseToken
from .config import Settings
from .embeddings import ChromaEmbeddingPort, EmbeddingPort
from .errors import ContextEngineError, RetrievalError, StorageError, ValidationError
from .intelligence import (
    chunk_text,
    compute_importance,
    content_hash,
    extract_named_structures,
    generate_id,
    sanitize_tags,
    validate_content,
)
from .models import (
    BatchResult,
    CompressionLevel,
    Memory,
    MemoryMetadata,
    MemoryType,
    RankedResult,
    SearchOptions,
    SearchResult,
    StoredMemory,
    utcnow,
)
from .optimizer import ContentBlock, ContentType, ContextOptimizer, OptimizedContext
from .ranking import ContextualRanker, FileActivityTracker, normalize_path
from .storage import FileStorageBackend, StorageBackend
from .store import VectorStore

logger = logging.getLogger(__name__)

CONTEXT_CACHE_PREFIX = "context:"


class MemoryManager:
    """
    Workspace memory backed by a persisted numpy vector index.

    Responsibilities
    ----------------
    * **Store** – Validates content and tags, embeds the text and writes it
      to the vector store. Workspace files are split into line-ranged
      chunks with their function and class names attached.
    * **Search** – Plain similarity search with metadata filters, and
      contextual search that blends similarity with recency, proximity to
      the active file and referenced symbol names.
    * **Assemble** – Turns ranked results into a context string that fits a
      token budget, compressing oversized blocks and dropping duplicates.
    * **Maintain** – Bulk compression of stored memories, statistics and
      cache invalidation after every mutation.

    Parameters
    ----------
    data_path:
        Directory for persisted indexes. Overrides ``settings.data_path``.
    settings:
        Engine configuration. Defaults to ``Settings()``.
    backend:
        Storage backend. Defaults to a ``FileStorageBackend`` on *data_path*.
    embeddings:
        Embedding port. Defaults to ChromaDB's sentence-transformer function
        for ``settings.embedding_model``.
    """

    def __init__(
        self,
        data_path: str | None = None,
        settings: Settings | None = None,
        backend: StorageBackend | None = None,
        embeddings: EmbeddingPort | None = None,
    ) -> None:
        self.settings = settings or Settings()
        if data_path is not None:
            self.settings = self.settings.model_copy(update={"data_path": data_path})

        self.backend = backend or FileStorageBackend(self.settings.data_path)
        self.embeddings = embeddings or ChromaEmbeddingPort(
            model_name=self.settings.embedding_model,
            dimensions=self.settings.dimensions,
        )
        self.cache: LRUCache[Any] = LRUCache(self.settings.cache)
        self.store = VectorStore(
            self.backend,
            dimensions=self.embeddings.dimensions(),
            cache=self.cache,
            embedding_model=self.embeddings.name,
        )
        self.compression = CompressionEngine(self.settings.compression, self.settings.limits)
        self.tracker = FileActivityTracker(self.backend)
        self.ranker = ContextualRanker(self.store, self.embeddings, self.settings.ranking, self.tracker)
        self.optimizer = ContextOptimizer(self.settings.optimizer, compressor=self.compression)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        await self.store.initialize()
        await self.tracker.load()

    async def dispose(self) -> None:
        await self.store.dispose()
        self.cache.clear()

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    async def create_memory(
        self,
        content: str,
        type: MemoryType | str = MemoryType.NOTE,
        tags: list[str] | None = None,
        **metadata: Any,
    ) -> StoredMemory:
        """
        Validate, embed and store a new memory.

        Extra keyword arguments populate ``MemoryMetadata`` fields such as
        ``project``, ``language``, ``importance``, ``category`` or
        ``source``. Raises ``ValidationError`` before anything is stored.
        With ``settings.auto_compress`` on, the compression thresholds are
        re-checked afterwards and the returned memory reflects any
        compression that ran.
        """
        validate_content(content, self.settings.validation)
        clean_tags = sanitize_tags(tags, self.settings.validation)
        memory_type = self._memory_type(type)
        metadata = self._check_metadata(metadata)
        metadata.setdefault("importance", compute_importance(content))

        memory = Memory(
            id=generate_id(),
            content=content,
            metadata=MemoryMetadata(type=memory_type, tags=clean_tags, **metadata),
        )
        stored = await self.store_memory(memory)
        if self.settings.auto_compress:
            await self.compress_memories()
            stored = await self.store.get_memory(stored.id) or stored
        return stored

    async def store_memory(self, memory: Memory) -> StoredMemory:
        """Embed *memory* if needed and write it to the vector store."""
        if isinstance(memory, StoredMemory) and memory.embedding:
            stored = memory
        else:
            embedding = await self.embeddings.embed(memory.content)
            stored = StoredMemory(
                id=memory.id,
                content=memory.content,
                metadata=memory.metadata,
                created=memory.created,
                updated=memory.updated,
                embedding=embedding,
                embedding_model=self.embeddings.name,
            )
        await self.store.store_memory(stored)
        self._invalidate_context()
        logger.info("Stored memory %s (%s, %d bytes)", stored.id, stored.metadata.type.value, stored.size)
        return stored

    async def get(self, memory_id: str) -> StoredMemory | None:
        return await self.store.get_memory(memory_id)

    async def update(
        self,
        memory_id: str,
        content: str | None = None,
        tags: list[str] | None = None,
        **metadata: Any,
    ) -> StoredMemory:
        """Replace content, tags or metadata fields of an existing memory."""
        existing = await self.store.get_memory(memory_id)
        if existing is None:
            raise ValidationError(f"Memory {memory_id} not found", context={"id": memory_id})

        changes: dict[str, Any] = self._check_metadata(metadata)
        if "type" in changes:
            changes["type"] = self._memory_type(changes["type"])
        if tags is not None:
            changes["tags"] = sanitize_tags(tags, self.settings.validation)

        embedding = existing.embedding
        new_content = existing.content
        if content is not None and content != existing.content:
            validate_content(content, self.settings.validation)
            new_content = content
            embedding = await self.embeddings.embed(content)
            changes.update(compressed=False, original_size=None, summary=None, compression_stats=None)

        updated = dataclasses.replace(
            existing,
            content=new_content,
            metadata=dataclasses.replace(existing.metadata, **changes),
            embedding=embedding,
            updated=utcnow(),
        )
        await self.store.store_memory(updated)
        self._invalidate_context()
        return updated

    async def delete(self, memory_id: str) -> bool:
        removed = await self.store.delete([memory_id])
        self._invalidate_context()
        return removed > 0

    async def list_all(self, limit: int = 100) -> list[StoredMemory]:
        memories = await self.store.all_memories()
        return memories[:limit]

    async def count(self) -> int:
        return await self.store.count()

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(self, query: str, options: SearchOptions | None = None) -> list[SearchResult]:
        """
        Similarity search with optional metadata filters.

        When ``options.threshold`` is unset the configured
        ``min_relevance_score`` applies.
        """
        if len(query.strip()) < self.settings.search.min_query_length:
            raise ValidationError(
                f"Query must be at least {self.settings.search.min_query_length} characters",
                context={"query": query},
            )
        options = options or SearchOptions(limit=self.settings.search.default_limit)
        if options.threshold is None:
            options = dataclasses.replace(options, threshold=self.settings.search.min_relevance_score)

        vector = await self.embeddings.embed(query)
        entries = await self.store.search_with_filters(vector, options)

        results: list[SearchResult] = []
        for entry in entries:
            memory = await self.store.get_memory(entry.id)
            if memory is None:
                continue
            similarity = entry.similarity or 0.0
            results.append(
                SearchResult(
                    memory=memory,
                    similarity=similarity,
                    rank=len(results) + 1,
                    explanation=f"cosine similarity {similarity:.3f}",
                )
            )
        return results

    async def contextual_search(
        self,
        query: str,
        active_file_path: str | None = None,
        active_symbols: list[str] | None = None,
    ) -> list[RankedResult]:
        """Ranked search, falling back to similarity only if ranking fails."""
        try:
            return await self.ranker.search(query, active_file_path, active_symbols)
        except RetrievalError as exc:
            logger.warning("Contextual ranking failed, falling back to basic search: %s", exc.message)
            return await self.ranker.basic_search(query, self.settings.ranking.max_results)

    async def explain_ranking(self, query: str, active_file_path: str | None = None) -> list[str]:
        return await self.ranker.explain_ranking(query, active_file_path)

    # ------------------------------------------------------------------
    # Context assembly
    # ------------------------------------------------------------------

    async def build_context(
        self,
        query: str,
        max_tokens: int = 4000,
        active_file_path: str | None = None,
        active_symbols: list[str] | None = None,
        level: CompressionLevel | str = CompressionLevel.NONE,
    ) -> OptimizedContext:
        """
        Rank memories for *query* and pack them into *max_tokens*.

        Results are cached until the next mutation. If both contextual and
        basic search fail, an empty context carrying the error is returned.
        """
        level = CompressionLevel(level)
        key = CONTEXT_CACHE_PREFIX + content_hash(
            query,
            str(max_tokens),
            active_file_path or "",
            ",".join(active_symbols or []),
            level.value,
        )
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            ranked = await self.contextual_search(query, active_file_path, active_symbols)
        except RetrievalError as exc:
            logger.warning("Context assembly failed: %s", exc.message)
            return OptimizedContext(content="", total_tokens=0, compression_ratio=1.0, error=str(exc))

        recent = set(self.tracker.recent_files(self.settings.ranking.recent_modification_window_ms))
        blocks = [self._to_block(result, active_file_path, recent) for result in ranked]
        blocks = self.optimizer.compress_context(blocks)
        blocks = self.optimizer.apply_smart_compression(blocks, level)
        context = self.optimizer.optimize_for_token_limit(blocks, max_tokens)

        self.cache.set(key, context)
        return context

    @staticmethod
    def _to_block(result: RankedResult, active_file_path: str | None, recent: set[str]) -> ContentBlock:
        memory = result.memory
        meta = memory.metadata
        source = normalize_path(meta.source) if meta.source else meta.source

        content_type: ContentType | None = None
        if active_file_path and source == normalize_path(active_file_path):
            content_type = ContentType.ACTIVE_FILE
        elif source in recent:
            content_type = ContentType.RECENT_FILES
        elif meta.type is MemoryType.DOCUMENTATION:
            content_type = ContentType.DOCUMENTATION

        return ContentBlock(
            path=meta.source or memory.id,
            content=memory.content,
            content_type=content_type,
            start_line=meta.start_line,
            end_line=meta.end_line,
            scores=result.scores,
            function_name=meta.function_name,
            class_name=meta.class_name,
        )

    # ------------------------------------------------------------------
    # Workspace files
    # ------------------------------------------------------------------

    async def touch_file(self, path: str) -> None:
        """Record that *path* was just modified."""
        await self.ranker.update_file_modification_time(path)
        self._invalidate_context()

    async def index_file(self, path: str, content: str, language: str | None = None) -> list[str]:
        """
        Replace the stored chunks of *path* with a fresh chunking of
        *content*. Returns the new memory ids.
        """
        source = normalize_path(path)
        limits = self.settings.validation
        chunks = [
            c for c in chunk_text(content, self.settings.chunk_size)
            if len(c.content.strip()) >= limits.min_content_length
        ]
        # Embed before touching the index so a failure leaves the old chunks in place.
        vectors = await self.embeddings.embed_batch([c.content for c in chunks]) if chunks else []

        memories: list[StoredMemory] = []
        for chunk, vector in zip(chunks, vectors):
            function_name, class_name = extract_named_structures(chunk.content)
            memory = StoredMemory(
                id=generate_id(),
                content=chunk.content,
                metadata=MemoryMetadata(
                    type=MemoryType.CODE_SNIPPET,
                    language=language,
                    importance=compute_importance(chunk.content),
                    category="workspace",
                    source=source,
                    start_line=chunk.start_line,
                    end_line=chunk.end_line,
                    function_name=function_name,
                    class_name=class_name,
                ),
                embedding=vector,
                embedding_model=self.embeddings.name,
            )
            memories.append(memory)

        stale = [m.id for m in await self.store.all_memories() if m.metadata.source == source]
        if memories or stale:
            await self.store.store_memories(memories, replace=stale)

        await self.tracker.touch(source)
        self._invalidate_context()
        logger.info("Indexed %s into %d chunks (replaced %d)", source, len(memories), len(stale))
        return [m.id for m in memories]

    async def index_files(
        self,
        files: dict[str, str],
        language: str | None = None,
        pause: PauseToken | None = None,
    ) -> BatchResult:
        """Index many files, collecting per-file failures."""
        batch = BatchResult()
        paths = list(files)
        for index, path in enumerate(paths):
            if pause is not None and pause.is_paused:
                batch.paused = True
                batch.skipped.extend(paths[index:])
                logger.info("Indexing paused after %d of %d files", index, len(paths))
                break
            try:
                await self.index_file(path, files[path], language)
            except ContextEngineError as exc:
                logger.warning("Failed to index %s: %s", path, exc.message)
                batch.failures.append((path, exc.message))
                continue
            batch.succeeded.append(path)
        return batch

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def compress_memories(self, pause: PauseToken | None = None, force: bool = False) -> BatchResult:
        """
        Compress stored memories once the store crosses a size or count
        threshold (or always, with *force*).
        """
        memories = await self.store.all_memories()
        if not force and not self.compression.should_compress(memories):
            return BatchResult(skipped=[m.id for m in memories])

        updated, batch = self.compression.compress_memories(memories, pause)
        by_id = {m.id: m for m in updated}
        for memory_id in list(batch.succeeded):
            try:
                await self.store.store_memory(by_id[memory_id])
            except StorageError as exc:
                logger.warning("Failed to persist compressed memory %s: %s", memory_id, exc.message)
                batch.succeeded.remove(memory_id)
                batch.failures.append((memory_id, exc.message))

        self._invalidate_context()
        logger.info(
            "Compressed %d memories (%d skipped, %d failed)",
            len(batch.succeeded),
            len(batch.skipped),
            batch.failed_count,
        )
        return batch

    async def optimize(self) -> int:
        removed = await self.store.optimize()
        self._invalidate_context()
        return removed

    async def get_stats(self) -> dict[str, Any]:
        store_stats = await self.store.get_statistics()
        memories = await self.store.all_memories()
        cache_metrics = self.cache.get_metrics()
        return {
            "store": dataclasses.asdict(store_stats),
            "cache": dataclasses.asdict(cache_metrics),
            "compression": dataclasses.asdict(self.compression.get_compression_stats(memories)),
            "search": self.ranker.get_search_stats(),
        }

    def _invalidate_context(self) -> None:
        self.cache.invalidate_prefix(CONTEXT_CACHE_PREFIX)

    @staticmethod
    def _memory_type(value: MemoryType | str) -> MemoryType:
        try:
            return MemoryType(value)
        except ValueError as exc:
            raise ValidationError(f"Unknown memory type {value!r}", original_error=exc) from exc

    @staticmethod
    def _check_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
        unknown = set(metadata) - set(MemoryMetadata.__dataclass_fields__)
        if unknown:
            raise ValidationError(f"Unknown metadata fields: {', '.join(sorted(unknown))}")
        return dict(metadata)
