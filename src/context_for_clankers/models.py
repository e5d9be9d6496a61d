"""
Data types shared by every layer of the engine.

Memories are plain dataclasses so they can be copied with
``dataclasses.replace`` and serialised with ``to_dict`` / ``from_dict``
for the JSON indexes.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class MemoryType(str, Enum):
    CODE_SNIPPET = "code_snippet"
    DOCUMENTATION = "documentation"
    CONVERSATION = "conversation"
    TASK = "task"
    NOTE = "note"
    FUNCTION = "function"
    CLASS = "class"
    INTERFACE = "interface"


class SortBy(str, Enum):
    SIMILARITY = "similarity"
    DATE = "date"
    IMPORTANCE = "importance"


class CompressionLevel(str, Enum):
    NONE = "none"
    LIGHT = "light"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


# ---------------------------------------------------------------------------
# Memories
# ---------------------------------------------------------------------------


@dataclass
class CompressionStats:
    original_size: int
    compressed_size: int
    compression_ratio: float
    time_to_compress: float
    algorithm: str = "intelligent-semantic"


@dataclass
class CompressionResult:
    compressed_content: str
    stats: CompressionStats
    preserved_keywords: list[str]
    summary: str


@dataclass
class MemoryMetadata:
    """Typed metadata attached to every memory.

    The code-location fields are only populated for chunks produced by
    workspace file indexing.
    """

    type: MemoryType = MemoryType.NOTE
    tags: list[str] = field(default_factory=list)
    project: str | None = None
    language: str | None = None
    importance: float = 1.0
    category: str = "general"
    source: str = "user"
    compressed: bool = False
    original_size: int | None = None
    summary: str | None = None
    compression_stats: CompressionStats | None = None
    start_line: int | None = None
    end_line: int | None = None
    function_name: str | None = None
    class_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MemoryMetadata":
        data = dict(data)
        data["type"] = MemoryType(data.get("type", MemoryType.NOTE.value))
        stats = data.get("compression_stats")
        if isinstance(stats, dict):
            data["compression_stats"] = CompressionStats(**stats)
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Memory:
    id: str
    content: str
    metadata: MemoryMetadata = field(default_factory=MemoryMetadata)
    created: datetime = field(default_factory=utcnow)
    updated: datetime = field(default_factory=utcnow)

    @property
    def size(self) -> int:
        """UTF-8 byte length of the content."""
        return len(self.content.encode("utf-8"))

    @property
    def compressed(self) -> bool:
        return self.metadata.compressed


@dataclass
class StoredMemory(Memory):
    """A memory together with its embedding. Never persisted without one."""

    embedding: list[float] = field(default_factory=list)
    embedding_model: str = "unknown"

    def to_record(self) -> dict[str, Any]:
        """Metadata record persisted by the vector store (no vector payload)."""
        return {
            "id": self.id,
            "content": self.content,
            "metadata": self.metadata.to_dict(),
            "created": self.created.isoformat(),
            "updated": self.updated.isoformat(),
            "embedding_model": self.embedding_model,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any], embedding: list[float]) -> "StoredMemory":
        return cls(
            id=record["id"],
            content=record["content"],
            metadata=MemoryMetadata.from_dict(record.get("metadata") or {}),
            created=_parse_dt(record.get("created")) or utcnow(),
            updated=_parse_dt(record.get("updated")) or utcnow(),
            embedding=list(embedding),
            embedding_model=record.get("embedding_model", "unknown"),
        )


@dataclass
class VectorEntry:
    """One row of the vector collection.

    ``similarity`` is only set on search results and is never persisted.
    """

    id: str
    chunk_id: str
    vector: list[float]
    similarity: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "chunk_id": self.chunk_id, "vector": list(self.vector)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VectorEntry":
        return cls(id=data["id"], chunk_id=data.get("chunk_id", data["id"]), vector=list(data["vector"]))


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


@dataclass
class DateRange:
    from_: datetime | None = None
    to: datetime | None = None


@dataclass
class ImportanceRange:
    min: float | None = None
    max: float | None = None


@dataclass
class MetadataFilters:
    types: list[MemoryType] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    project: str | None = None
    language: str | None = None
    date_range: DateRange | None = None
    importance: ImportanceRange | None = None

    def is_empty(self) -> bool:
        return not (
            self.types
            or self.tags
            or self.project
            or self.language
            or self.date_range
            or self.importance
        )


@dataclass
class SearchOptions:
    limit: int = 10
    threshold: float | None = None
    filters: MetadataFilters | None = None
    sort_by: SortBy = SortBy.SIMILARITY


@dataclass
class SearchResult:
    memory: StoredMemory
    similarity: float
    rank: int
    explanation: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.memory.id,
            "content": self.memory.content,
            "similarity": round(self.similarity, 4),
            "rank": self.rank,
            "type": self.memory.metadata.type.value,
            "tags": list(self.memory.metadata.tags),
            "source": self.memory.metadata.source,
        }


@dataclass
class VectorStoreStats:
    total_vectors: int
    index_size: int
    average_search_time: float
    memory_usage: int
    embedding_model: str
    last_optimization: datetime | None


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------


@dataclass
class ContextualScore:
    semantic: float = 0.0
    temporal: float = 0.0
    spatial: float = 0.0
    structural: float = 0.0
    final_score: float = 0.0


@dataclass
class RankedResult:
    memory: StoredMemory
    scores: ContextualScore
    rank: int = 0


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------


@dataclass
class BatchResult:
    """Aggregate outcome of a bulk operation."""

    succeeded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failures: list[tuple[str, str]] = field(default_factory=list)
    paused: bool = False

    @property
    def failed_count(self) -> int:
        return len(self.failures)
