"""
Embedding port: the engine's only view of the embedding model.

Any ChromaDB-compatible embedding function (a callable taking
``input: list[str]`` and returning a list of vectors) can be plugged in.
The default is ChromaDB's sentence-transformer function, loaded lazily so
that importing this module never downloads a model.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol, runtime_checkable

from chromadb.utils import embedding_functions

from .errors import RetrievalError

logger = logging.getLogger(__name__)


def get_embedding_function(
    model_name: str = "all-MiniLM-L6-v2",
) -> embedding_functions.SentenceTransformerEmbeddingFunction:
    """Return a sentence-transformer embedding function for ChromaDB."""
    return embedding_functions.SentenceTransformerEmbeddingFunction(
        model_name=model_name
    )


@runtime_checkable
class EmbeddingPort(Protocol):
    name: str

    async def embed(self, text: str) -> list[float]: ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]: ...

    def dimensions(self) -> int: ...

    def is_ready(self) -> bool: ...


class ChromaEmbeddingPort:
    """
    Adapts a ChromaDB embedding function to ``EmbeddingPort``.

    Embedding runs in a worker thread so the event loop stays responsive
    while the model computes. Provider failures surface as
    ``RetrievalError``.
    """

    def __init__(
        self,
        embedding_function: Any | None = None,
        model_name: str = "all-MiniLM-L6-v2",
        dimensions: int = 384,
    ) -> None:
        self._function = embedding_function
        self.model_name = model_name
        self._dimensions = dimensions

    @property
    def name(self) -> str:
        fn = self._function
        fn_name = fn.name() if fn is not None and hasattr(fn, "name") else "sentence-transformers"
        return f"{fn_name}:{self.model_name}"

    def _get_function(self) -> Any:
        if self._function is None:
            logger.info("Loading embedding model %s", self.model_name)
            self._function = get_embedding_function(self.model_name)
        return self._function

    def dimensions(self) -> int:
        return self._dimensions

    def is_ready(self) -> bool:
        return self._function is not None

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            fn = self._get_function()
            raw = await asyncio.to_thread(fn, list(texts))
        except Exception as exc:
            raise RetrievalError(
                "Embedding provider failed",
                context={"model": self.model_name, "count": len(texts)},
                original_error=exc,
            ) from exc
        vectors = [[float(x) for x in vec] for vec in raw]
        for vec in vectors:
            if len(vec) != self._dimensions:
                raise RetrievalError(
                    f"Embedding provider returned {len(vec)} dimensions, expected {self._dimensions}",
                    context={"model": self.model_name},
                )
        return vectors
