"""
Error types raised by the context engine.

Every error carries a human-readable message, an optional context dict
with the values that triggered it, and the underlying exception when one
was wrapped.

Propagation rules:
- ValidationError: rejected before any state is touched.
- StorageError: the calling operation aborts, in-memory state is restored.
- CompressionError: single calls propagate, batch calls collect and continue.
- RetrievalError: callers fall back to a plain similarity search.
- CacheError: never leaves the cache; failures degrade to a miss.
"""

from __future__ import annotations

from typing import Any


class ContextEngineError(Exception):
    """Base exception for context-for-clankers errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        self.message = message
        self.context = context or {}
        self.original_error = original_error
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.original_error:
            parts.append(f"Cause: {self.original_error}")
        return "\n".join(parts)


class ValidationError(ContextEngineError):
    """Malformed memory, tag, configuration or vector dimensionality."""


class StorageError(ContextEngineError):
    """Reading or writing a persisted index failed."""


class CompressionError(ContextEngineError):
    """The memory is not eligible for compression."""


class RetrievalError(ContextEngineError):
    """Embedding or store failure while searching."""


class CacheError(ContextEngineError):
    """Internal cache failure. Never propagated to callers."""
