"""Tests for MemoryManager – the main high-level API."""

from __future__ import annotations

import pytest

from conftest import FAKE_DIMENSIONS, FailingEmbeddingFunction
from context_for_clankers.compression import PauseToken
from context_for_clankers.embeddings import ChromaEmbeddingPort
from context_for_clankers.errors import CompressionError, RetrievalError, ValidationError
from context_for_clankers.memory import MemoryManager
from context_for_clankers.models import MemoryType, MetadataFilters, SearchOptions

APP_SOURCE = (
    "def validate_tags(tags):\n"
    "    # tags are lower-cased before storage\n"
    "    return [t.lower() for t in tags]"
)

LONG_NOTE = "\n".join(
    ["// TODO: split this loader into smaller functions"]
    + [f"   loader step {i} reads     another     settings    section   " for i in range(60)]
)


class TestEndToEnd:
    async def test_search_finds_only_matching_memory(self, memory_manager: MemoryManager):
        for content in ("TypeScript best practices", "React component patterns", "Database optimization"):
            await memory_manager.create_memory(content)

        results = await memory_manager.search("TypeScript", SearchOptions(limit=10))
        assert len(results) == 1
        assert "TypeScript" in results[0].memory.content
        assert results[0].similarity > 0

    async def test_tags_normalised(self, memory_manager: MemoryManager):
        memory = await memory_manager.create_memory(
            "Memory with messy tags attached",
            tags=["  Tag1  ", "tag2", "TAG1", "tag2"],
        )
        assert memory.metadata.tags == ["tag1", "tag2"]
        stored = await memory_manager.get(memory.id)
        assert stored.metadata.tags == ["tag1", "tag2"]

    async def test_compress_below_minimum(self, memory_manager: MemoryManager):
        memory = await memory_manager.create_memory("A short memory that is far too small to compress")
        with pytest.raises(CompressionError):
            memory_manager.compression.compress_memory(memory)
        stored = await memory_manager.get(memory.id)
        assert stored.compressed is False


class TestCreateMemory:
    async def test_content_too_short_stores_nothing(self, memory_manager: MemoryManager):
        with pytest.raises(ValidationError):
            await memory_manager.create_memory("tiny")
        assert await memory_manager.count() == 0

    async def test_reserved_tag_stores_nothing(self, memory_manager: MemoryManager):
        with pytest.raises(ValidationError):
            await memory_manager.create_memory("Perfectly valid content here", tags=["internal"])
        assert await memory_manager.count() == 0

    async def test_unknown_type(self, memory_manager: MemoryManager):
        with pytest.raises(ValidationError):
            await memory_manager.create_memory("Perfectly valid content here", type="poem")

    async def test_unknown_metadata_field(self, memory_manager: MemoryManager):
        with pytest.raises(ValidationError):
            await memory_manager.create_memory("Perfectly valid content here", session_id="abc")

    async def test_metadata_fields(self, memory_manager: MemoryManager):
        memory = await memory_manager.create_memory(
            "Use exponential backoff for retries",
            type="documentation",
            project="api",
            language="python",
            importance=2.5,
        )
        assert memory.metadata.type is MemoryType.DOCUMENTATION
        assert memory.metadata.project == "api"
        assert memory.metadata.importance == 2.5
        assert memory.embedding_model == memory_manager.embeddings.name

    async def test_importance_defaults_from_content(self, memory_manager: MemoryManager):
        memory = await memory_manager.create_memory("class Widget:\n    def render(self): ...")
        assert 0.0 < memory.metadata.importance <= 3.0


class TestUpdateDelete:
    async def test_update_content_reembeds(self, memory_manager: MemoryManager):
        memory = await memory_manager.create_memory("original wording about caching")
        await memory_manager.update(memory.id, content="replacement text about indexing")

        assert await memory_manager.search("caching") == []
        results = await memory_manager.search("indexing")
        assert [r.memory.id for r in results] == [memory.id]

    async def test_update_tags_and_fields(self, memory_manager: MemoryManager):
        memory = await memory_manager.create_memory("note about deployment windows")
        updated = await memory_manager.update(memory.id, tags=["Ops"], project="infra")
        assert updated.metadata.tags == ["ops"]
        assert updated.metadata.project == "infra"
        assert updated.content == memory.content
        assert updated.updated >= memory.updated

    async def test_update_missing(self, memory_manager: MemoryManager):
        with pytest.raises(ValidationError):
            await memory_manager.update("nope", content="some replacement content")

    async def test_update_rejects_bad_type_and_fields(self, memory_manager: MemoryManager):
        memory = await memory_manager.create_memory("note that must stay a note")
        with pytest.raises(ValidationError):
            await memory_manager.update(memory.id, type="bogus")
        with pytest.raises(ValidationError):
            await memory_manager.update(memory.id, content="never written either", colour="red")

        stored = await memory_manager.get(memory.id)
        assert stored.metadata.type is MemoryType.NOTE
        assert stored.content == "note that must stay a note"

    async def test_update_accepts_type_name(self, memory_manager: MemoryManager):
        memory = await memory_manager.create_memory("release checklist for friday")
        updated = await memory_manager.update(memory.id, type="task")
        assert updated.metadata.type is MemoryType.TASK

    async def test_delete(self, memory_manager: MemoryManager):
        memory = await memory_manager.create_memory("memory that will be removed")
        assert await memory_manager.delete(memory.id) is True
        assert await memory_manager.delete(memory.id) is False
        assert await memory_manager.get(memory.id) is None
        assert await memory_manager.count() == 0

    async def test_list_all_limit(self, memory_manager: MemoryManager):
        for i in range(5):
            await memory_manager.create_memory(f"listed memory number {i}")
        memories = await memory_manager.list_all(limit=3)
        assert [m.content for m in memories] == [f"listed memory number {i}" for i in range(3)]


class TestSearch:
    async def test_query_too_short(self, memory_manager: MemoryManager):
        with pytest.raises(ValidationError):
            await memory_manager.search("a")

    async def test_tag_filter(self, memory_manager: MemoryManager):
        await memory_manager.create_memory("deploy checklist for staging", tags=["ops"])
        tagged = await memory_manager.create_memory("deploy checklist for production", tags=["release"])

        options = SearchOptions(filters=MetadataFilters(tags=["release"]))
        results = await memory_manager.search("deploy checklist", options)
        assert [r.memory.id for r in results] == [tagged.id]
        assert results[0].explanation.startswith("cosine similarity")

    async def test_contextual_search_falls_back(self, memory_manager: MemoryManager, monkeypatch):
        await memory_manager.create_memory("fallback path for ranking failures")

        async def broken(*args, **kwargs):
            raise RetrievalError("ranking exploded")

        monkeypatch.setattr(memory_manager.ranker, "search", broken)
        results = await memory_manager.contextual_search("ranking failures")
        assert len(results) == 1
        assert results[0].scores.final_score == results[0].scores.semantic
        assert memory_manager.ranker.get_search_stats()["fallbacks"] == 1


class TestIndexing:
    async def test_index_file_records_structure(self, memory_manager: MemoryManager):
        ids = await memory_manager.index_file("src/app.py", APP_SOURCE, language="python")
        assert len(ids) == 1
        memory = await memory_manager.get(ids[0])
        assert memory.metadata.type is MemoryType.CODE_SNIPPET
        assert memory.metadata.source == "src/app.py"
        assert (memory.metadata.start_line, memory.metadata.end_line) == (1, 3)
        assert memory.metadata.function_name == "validate_tags"
        assert memory.metadata.language == "python"
        assert memory_manager.tracker.last_modified("src/app.py") is not None

    async def test_reindex_replaces_chunks(self, memory_manager: MemoryManager):
        await memory_manager.index_file("src/app.py", APP_SOURCE)
        await memory_manager.create_memory("unrelated note stays put")
        await memory_manager.index_file("./src/app.py", APP_SOURCE + "\n# trailing comment line")
        assert await memory_manager.count() == 2

    async def test_failed_reindex_keeps_previous_chunks(self, memory_manager: MemoryManager):
        [old_id] = await memory_manager.index_file("src/app.py", APP_SOURCE)
        memory_manager.embeddings = ChromaEmbeddingPort(FailingEmbeddingFunction(), dimensions=FAKE_DIMENSIONS)

        with pytest.raises(RetrievalError):
            await memory_manager.index_file("src/app.py", APP_SOURCE + "\n# changed")
        assert await memory_manager.count() == 1
        assert (await memory_manager.get(old_id)).content == APP_SOURCE

    async def test_index_file_flushes_once(self, settings, backend, embedding_port, monkeypatch):
        manager = MemoryManager(
            settings=settings.model_copy(update={"chunk_size": 100}),
            backend=backend,
            embeddings=embedding_port,
        )
        await manager.index_file("src/handlers.py", APP_SOURCE)

        writes: list[str] = []
        original_write = backend.write

        async def counting_write(path: str, data: bytes) -> None:
            writes.append(path)
            await original_write(path, data)

        monkeypatch.setattr(backend, "write", counting_write)
        source = "\n".join(f"def handler_{i}(event):  return event['body_{i}']" for i in range(8))
        ids = await manager.index_file("src/handlers.py", source)

        assert len(ids) > 1
        assert await manager.count() == len(ids)
        assert sorted(p for p in writes if p.startswith("vectors/")) == [
            "vectors/index.json",
            "vectors/metadata.json",
            "vectors/vectors.json",
        ]

    async def test_index_files_pause(self, memory_manager: MemoryManager):
        token = PauseToken()
        token.pause()
        batch = await memory_manager.index_files({"a.py": APP_SOURCE, "b.py": APP_SOURCE}, pause=token)
        assert batch.paused is True
        assert batch.skipped == ["a.py", "b.py"]
        assert await memory_manager.count() == 0

        token.resume()
        batch = await memory_manager.index_files({"a.py": APP_SOURCE, "b.py": APP_SOURCE}, pause=token)
        assert batch.succeeded == ["a.py", "b.py"]
        assert await memory_manager.count() == 2


class TestBuildContext:
    async def test_assembles_ranked_blocks(self, memory_manager: MemoryManager):
        await memory_manager.index_file("src/app.py", APP_SOURCE)
        context = await memory_manager.build_context("validate tags", active_file_path="src/app.py")

        assert context.error is None
        assert context.included_files == ["src/app.py"]
        assert context.content.startswith("File: src/app.py (Lines 1-3)")
        assert "Function: validate_tags" in context.content
        assert 0 < context.total_tokens <= 3200

    async def test_cached_until_mutation(self, memory_manager: MemoryManager):
        await memory_manager.index_file("src/app.py", APP_SOURCE)
        first = await memory_manager.build_context("validate tags")
        assert await memory_manager.build_context("validate tags") is first

        await memory_manager.create_memory("tags must be validated before storage")
        assert await memory_manager.build_context("validate tags") is not first

    async def test_search_failure_returns_error_context(self, settings, backend):
        port = ChromaEmbeddingPort(FailingEmbeddingFunction(), dimensions=FAKE_DIMENSIONS)
        manager = MemoryManager(settings=settings, backend=backend, embeddings=port)
        context = await manager.build_context("anything at all")
        assert context.content == ""
        assert context.total_tokens == 0
        assert context.error


class TestMaintenance:
    async def test_compress_only_when_threshold_crossed(self, memory_manager: MemoryManager):
        memory = await memory_manager.create_memory("a small memory that stays as written")
        batch = await memory_manager.compress_memories()
        assert batch.succeeded == []
        assert batch.skipped == [memory.id]

    async def test_forced_compression_persists(self, settings, backend, embedding_port):
        memory_manager = MemoryManager(
            settings=settings.model_copy(update={"auto_compress": False}),
            backend=backend,
            embeddings=embedding_port,
        )
        memory = await memory_manager.create_memory(LONG_NOTE)
        assert memory.compressed is False
        batch = await memory_manager.compress_memories(force=True)
        assert batch.succeeded == [memory.id]

        stored = await memory_manager.get(memory.id)
        assert stored.compressed is True
        assert stored.metadata.original_size == memory.size
        assert stored.metadata.summary.startswith("Compressed from")
        assert "// TODO: split this loader into smaller functions" in stored.content.split("\n")

    async def test_create_compresses_once_threshold_crossed(self, memory_manager: MemoryManager):
        small = await memory_manager.create_memory("a small memory that stays as written")
        assert small.compressed is False

        large = await memory_manager.create_memory(LONG_NOTE)
        assert large.compressed is True
        assert large.metadata.original_size == len(LONG_NOTE.encode("utf-8"))
        assert (await memory_manager.get(large.id)).compressed is True
        assert (await memory_manager.get(small.id)).content == "a small memory that stays as written"

    async def test_auto_compress_disabled(self, settings, backend, embedding_port):
        manager = MemoryManager(
            settings=settings.model_copy(update={"auto_compress": False}),
            backend=backend,
            embeddings=embedding_port,
        )
        memory = await manager.create_memory(LONG_NOTE)
        assert memory.compressed is False
        assert (await manager.get(memory.id)).content == LONG_NOTE

    async def test_state_survives_reload(self, memory_manager: MemoryManager, settings, backend, embedding_port):
        memory = await memory_manager.create_memory("persisted between sessions")
        await memory_manager.dispose()

        reloaded = MemoryManager(settings=settings, backend=backend, embeddings=embedding_port)
        await reloaded.initialize()
        assert await reloaded.count() == 1
        assert (await reloaded.get(memory.id)).content == "persisted between sessions"

    async def test_stats(self, memory_manager: MemoryManager):
        await memory_manager.create_memory("memory counted in statistics")
        stats = await memory_manager.get_stats()
        assert stats["store"]["total_vectors"] == 1
        assert set(stats) == {"store", "cache", "compression", "search"}
