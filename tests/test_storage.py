"""Tests for the file-system and in-memory storage backends."""

from __future__ import annotations

import pytest

from context_for_clankers.errors import StorageError
from context_for_clankers.models import StoredMemory
from context_for_clankers.storage import FileStorageBackend, MemoryStorageBackend, StorageBackend
from context_for_clankers.store import VectorStore


class TestFileStorageBackend:
    async def test_write_creates_parents_atomically(self, tmp_path):
        backend = FileStorageBackend(tmp_path)
        await backend.write("vectors/index.json", b'{"size": 0}')

        assert (tmp_path / "vectors" / "index.json").read_bytes() == b'{"size": 0}'
        assert list((tmp_path / "vectors").iterdir()) == [tmp_path / "vectors" / "index.json"]
        assert (await backend.stat("vectors/index.json")).size == 11
        assert await backend.list_dir("vectors") == ["index.json"]

    async def test_missing_resource(self, tmp_path):
        backend = FileStorageBackend(tmp_path)
        with pytest.raises(FileNotFoundError):
            await backend.read("nope.json")
        with pytest.raises(FileNotFoundError):
            await backend.stat("nope.json")
        assert await backend.list_dir("nowhere") == []

    async def test_delete_is_idempotent(self, tmp_path):
        backend = FileStorageBackend(tmp_path)
        await backend.write("a.json", b"{}")
        await backend.delete("a.json")
        await backend.delete("a.json")
        assert not (tmp_path / "a.json").exists()

    async def test_os_error_becomes_storage_error(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        backend = FileStorageBackend(blocker)
        with pytest.raises(StorageError):
            await backend.write("vectors/vectors.json", b"[]")

    async def test_vector_store_survives_restart(self, tmp_path):
        store = VectorStore(FileStorageBackend(tmp_path), dimensions=3)
        await store.store_memory(StoredMemory(id="a", content="persisted memory", embedding=[1.0, 0.0, 0.0]))
        assert (tmp_path / "vectors" / "vectors.json").exists()
        assert (tmp_path / "vectors" / "metadata.json").exists()

        reopened = VectorStore(FileStorageBackend(tmp_path), dimensions=3)
        await reopened.initialize()
        assert await reopened.count() == 1
        assert (await reopened.get_memory("a")).content == "persisted memory"


class TestMemoryStorageBackend:
    def test_satisfies_protocol(self):
        assert isinstance(MemoryStorageBackend(), StorageBackend)
        assert isinstance(FileStorageBackend("."), StorageBackend)

    async def test_list_dir_returns_first_segment(self):
        backend = MemoryStorageBackend()
        await backend.write("vectors/vectors.json", b"[]")
        await backend.write("vectors/metadata.json", b"{}")
        await backend.write("temporal/timestamps.json", b"{}")
        assert await backend.list_dir("") == ["temporal", "vectors"]
        assert await backend.list_dir("vectors") == ["metadata.json", "vectors.json"]

    async def test_missing_and_delete(self):
        backend = MemoryStorageBackend()
        with pytest.raises(FileNotFoundError):
            await backend.read("missing")
        await backend.write("x", b"data")
        assert (await backend.stat("x")).size == 4
        await backend.delete("x")
        with pytest.raises(FileNotFoundError):
            await backend.stat("x")
