"""
Configuration models for the context engine.

Each component takes its own config struct so keyword lists, thresholds
and scoring weights can be swapped out in tests. ``Settings`` bundles
them and reads overrides from the environment.

Environment variables:
    CONTEXT_FOR_CLANKERS_DATA_PATH   - directory for persisted indexes (default: ~/.cache/context-for-clankers)
    CONTEXT_FOR_CLANKERS_MODEL       - sentence-transformers model (default: all-MiniLM-L6-v2)
    CONTEXT_FOR_CLANKERS_DIMENSIONS  - embedding dimensionality (default: 384)
    CONTEXT_FOR_CLANKERS_CACHE_SIZE  - max entries in the result cache (default: 100)
    CONTEXT_FOR_CLANKERS_CACHE_TTL   - result cache TTL in milliseconds (default: 300000)
    CONTEXT_FOR_CLANKERS_LOG_LEVEL   - logging level name (default: WARNING)
    CONTEXT_FOR_CLANKERS_AUTO_COMPRESS - "true" to compress after every create (default: true)
"""

from __future__ import annotations

import math
import os
from pathlib import Path

from pydantic import BaseModel, Field, model_validator

from .errors import ValidationError

ENV_PREFIX = "CONTEXT_FOR_CLANKERS_"

DEFAULT_DATA_PATH = str(Path.home() / ".cache" / "context-for-clankers")

DEFAULT_PRESERVED_KEYWORDS: list[str] = [
    "function", "class", "interface", "type", "const", "let", "var",
    "import", "export", "async", "await", "return", "throw", "try",
    "catch", "if", "else", "for", "while", "switch", "case", "break",
    "continue", "TODO", "FIXME", "NOTE", "WARNING", "ERROR", "DEBUG",
]

# Bare PascalCase/camelCase identifiers are left out: they match almost
# every line of source code and would disable compression entirely.
DEFAULT_PRESERVED_PATTERNS: list[str] = [
    r"\b\d+\.\d+\.\d+\b",
    r"https?://[^\s]+",
    r"\b[A-Z][A-Z0-9_]{2,}\b",
    r"@\w+",
    r"/\*\*[\s\S]*?\*/",
    r"//\s*(?:TODO|FIXME|NOTE)",
]


class CacheConfig(BaseModel):
    """Bounds for an ``LRUCache``."""

    max_size: int = Field(default=1000, ge=1, description="Maximum number of entries")
    ttl_ms: int | None = Field(default=300_000, ge=0, description="Entry lifetime, 0/None = forever")
    enable_metrics: bool = Field(default=True, description="Track hits, misses and evictions")

    model_config = {"extra": "forbid"}


class CompressionConfig(BaseModel):
    """What the compression engine must never throw away."""

    min_size_for_compression: int = Field(default=1000, ge=0)
    target_compression_ratio: float = Field(default=0.6, gt=0, le=1)
    preserved_keywords: list[str] = Field(default_factory=lambda: list(DEFAULT_PRESERVED_KEYWORDS))
    preserved_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_PRESERVED_PATTERNS))
    memo_cache_size: int = Field(default=100, ge=1)

    model_config = {"extra": "forbid"}


class MemoryLimits(BaseModel):
    """Aggregate limits that trigger compression."""

    compression_threshold: int = Field(default=500_000, ge=0, description="Total bytes")
    max_memories_per_type: int = Field(default=100, ge=1)
    max_memory_size: int = Field(default=1_000_000, ge=1)

    model_config = {"extra": "forbid"}


class ValidationConfig(BaseModel):
    min_content_length: int = Field(default=10, ge=0)
    max_content_length: int = Field(default=100_000, ge=1)
    max_tags_count: int = Field(default=20, ge=0)
    max_tag_length: int = Field(default=50, ge=1)
    allowed_tag_pattern: str = r"^[a-z0-9\-_]+$"
    reserved_tags: list[str] = Field(default_factory=lambda: ["system", "internal", "temp"])

    model_config = {"extra": "forbid"}


class RankingWeights(BaseModel):
    """Weights of the four relevance signals. Must sum to 1.0."""

    semantic: float = Field(default=0.4, ge=0, le=1)
    temporal: float = Field(default=0.25, ge=0, le=1)
    spatial: float = Field(default=0.25, ge=0, le=1)
    structural: float = Field(default=0.1, ge=0, le=1)

    model_config = {"extra": "forbid"}

    @model_validator(mode="after")
    def _check_sum(self) -> "RankingWeights":
        total = self.semantic + self.temporal + self.spatial + self.structural
        if not math.isclose(total, 1.0, abs_tol=1e-3):
            raise ValidationError(
                f"Ranking weights must sum to 1.0, got {total:.4f}",
                context={"weights": self.model_dump()},
            )
        return self


class RankingConfig(BaseModel):
    weights: RankingWeights = Field(default_factory=RankingWeights)
    recent_modification_window_ms: int = Field(default=10 * 60 * 1000, ge=0)
    max_temporal_age_ms: int = Field(default=7 * 24 * 60 * 60 * 1000, gt=0)
    temporal_decay_factor: float = Field(default=3.0, gt=0)
    temporal_floor: float = Field(default=0.1, ge=0, le=1)
    same_file_bonus: float = Field(default=0.3, ge=0, le=1)
    same_directory_bonus: float = Field(default=0.2, ge=0, le=1)
    structural_match_bonus: float = Field(default=1.0, ge=0)
    max_results: int = Field(default=10, ge=1)
    candidate_multiplier: int = Field(default=2, ge=1)
    min_semantic_threshold: float = Field(default=0.3, ge=0, le=1)

    model_config = {"extra": "forbid"}


class OptimizerConfig(BaseModel):
    """Token budgeting for the assembled context."""

    chars_per_token: float = Field(default=0.25, gt=0, description="Tokens per character")
    max_code_multiplier: float = Field(default=1.5, ge=1)
    safety_margin: float = Field(default=0.8, gt=0, le=1)
    min_viable_tokens: int = Field(default=100, ge=0)
    truncation_reserve_tokens: int = Field(default=50, ge=0)
    header_lines: int = Field(default=3, ge=0)
    type_priorities: dict[str, float] = Field(
        default_factory=lambda: {
            "active_file": 1.0,
            "imports": 0.8,
            "related_files": 0.6,
            "recent_files": 0.4,
            "dependencies": 0.3,
            "documentation": 0.2,
        }
    )
    default_priority: float = Field(default=0.5, ge=0, le=1)
    type_token_limits: dict[str, int] = Field(
        default_factory=lambda: {
            "active_file": 2000,
            "imports": 500,
            "related_files": 1500,
            "recent_files": 1000,
            "dependencies": 300,
            "documentation": 500,
        },
        description="Blocks above their type's limit are run through the compression engine",
    )

    model_config = {"extra": "forbid"}


class SearchConfig(BaseModel):
    min_relevance_score: float = Field(default=0.1, ge=0, le=1)
    min_query_length: int = Field(default=2, ge=1)
    default_limit: int = Field(default=10, ge=1)

    model_config = {"extra": "forbid"}


class Settings(BaseModel):
    """Everything a ``MemoryManager`` needs, in one place."""

    data_path: str = DEFAULT_DATA_PATH
    embedding_model: str = "all-MiniLM-L6-v2"
    dimensions: int = Field(default=384, ge=1)
    log_level: str = "WARNING"
    chunk_size: int = Field(default=1500, ge=100, description="Characters per indexed file chunk")
    auto_compress: bool = Field(default=True, description="Check compression thresholds after every create")
    cache: CacheConfig = Field(default_factory=lambda: CacheConfig(max_size=100))
    compression: CompressionConfig = Field(default_factory=CompressionConfig)
    limits: MemoryLimits = Field(default_factory=MemoryLimits)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    ranking: RankingConfig = Field(default_factory=RankingConfig)
    optimizer: OptimizerConfig = Field(default_factory=OptimizerConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)

    model_config = {"extra": "forbid"}

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Settings":
        """Build settings from ``CONTEXT_FOR_CLANKERS_*`` variables."""
        env = os.environ if environ is None else environ

        def _get(name: str) -> str | None:
            return env.get(ENV_PREFIX + name)

        kwargs: dict = {}
        if _get("DATA_PATH"):
            kwargs["data_path"] = _get("DATA_PATH")
        if _get("MODEL"):
            kwargs["embedding_model"] = _get("MODEL")
        if _get("DIMENSIONS"):
            kwargs["dimensions"] = int(_get("DIMENSIONS"))
        if _get("LOG_LEVEL"):
            kwargs["log_level"] = _get("LOG_LEVEL").upper()
        if _get("AUTO_COMPRESS"):
            kwargs["auto_compress"] = _get("AUTO_COMPRESS").strip().lower() in ("1", "true", "yes", "on")

        cache_kwargs: dict = {"max_size": 100}
        if _get("CACHE_SIZE"):
            cache_kwargs["max_size"] = int(_get("CACHE_SIZE"))
        if _get("CACHE_TTL"):
            cache_kwargs["ttl_ms"] = int(_get("CACHE_TTL"))
        kwargs["cache"] = CacheConfig(**cache_kwargs)

        return cls(**kwargs)
