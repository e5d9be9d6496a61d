"""
Shared pytest fixtures for context-for-clankers tests.

Uses the dict-backed storage backend and a deterministic keyword
embedding function so that tests run fast without downloading any ML
models or touching the filesystem.
"""

from __future__ import annotations

import re

import pytest

from context_for_clankers.config import Settings
from context_for_clankers.embeddings import ChromaEmbeddingPort
from context_for_clankers.memory import MemoryManager
from context_for_clankers.storage import MemoryStorageBackend
from context_for_clankers.store import VectorStore

FAKE_DIMENSIONS = 256


class KeywordEmbeddingFunction:
    """
    Deterministic embedding function: every distinct lower-cased word gets
    its own dimension, and a text embeds to the normalised bag of its
    words. Texts sharing no word have similarity exactly 0.
    Implements the ChromaDB embedding-function call interface.
    """

    def __init__(self, dimensions: int = FAKE_DIMENSIONS) -> None:
        self.dimensions = dimensions
        self._vocab: dict[str, int] = {}

    def name(self) -> str:  # required by ChromaDB >= 0.5
        return "fake-keyword-embedding"

    def _embed(self, texts: list[str]) -> list[list[float]]:
        embeddings = []
        for text in texts:
            vec = [0.0] * self.dimensions
            for token in re.findall(r"[a-z0-9]+", text.lower()):
                index = self._vocab.setdefault(token, len(self._vocab) % self.dimensions)
                vec[index] += 1.0
            norm = sum(x * x for x in vec) ** 0.5 or 1.0
            embeddings.append([x / norm for x in vec])
        return embeddings

    def __call__(self, input: list[str]) -> list[list[float]]:  # noqa: A002
        return self._embed(input)


class FailingEmbeddingFunction:
    def name(self) -> str:
        return "failing-embedding"

    def __call__(self, input: list[str]) -> list[list[float]]:  # noqa: A002
        raise RuntimeError("embedding service unavailable")


@pytest.fixture()
def backend() -> MemoryStorageBackend:
    return MemoryStorageBackend()


@pytest.fixture()
def embedding_port() -> ChromaEmbeddingPort:
    return ChromaEmbeddingPort(
        KeywordEmbeddingFunction(),
        model_name="keyword-test",
        dimensions=FAKE_DIMENSIONS,
    )


@pytest.fixture()
def settings() -> Settings:
    return Settings(data_path="unused", dimensions=FAKE_DIMENSIONS)


@pytest.fixture()
def vector_store(backend: MemoryStorageBackend) -> VectorStore:
    """Three-dimensional store for hand-written vectors."""
    return VectorStore(backend, dimensions=3)


@pytest.fixture()
def memory_manager(
    settings: Settings,
    backend: MemoryStorageBackend,
    embedding_port: ChromaEmbeddingPort,
) -> MemoryManager:
    """MemoryManager wired to in-memory storage and keyword embeddings."""
    return MemoryManager(settings=settings, backend=backend, embeddings=embedding_port)
