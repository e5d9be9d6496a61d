"""
context-for-clankers: workspace-aware context retrieval and compression
for LLM coding assistants.
"""

from .cache import LRUCache
from .compression import CompressionEngine, PauseToken
from .config import Settings
from .errors import (
    CacheError,
    CompressionError,
    ContextEngineError,
    RetrievalError,
    StorageError,
    ValidationError,
)
from .memory import MemoryManager
from .models import CompressionLevel, Memory, MemoryType, SearchOptions, StoredMemory
from .optimizer import ContentBlock, ContextOptimizer
from .ranking import ContextualRanker
from .storage import FileStorageBackend, MemoryStorageBackend
from .store import VectorStore

__all__ = [
    "CacheError",
    "CompressionEngine",
    "CompressionError",
    "CompressionLevel",
    "ContentBlock",
    "ContextEngineError",
    "ContextOptimizer",
    "ContextualRanker",
    "FileStorageBackend",
    "LRUCache",
    "Memory",
    "MemoryManager",
    "MemoryStorageBackend",
    "MemoryType",
    "PauseToken",
    "RetrievalError",
    "SearchOptions",
    "Settings",
    "StorageError",
    "StoredMemory",
    "ValidationError",
    "VectorStore",
]
