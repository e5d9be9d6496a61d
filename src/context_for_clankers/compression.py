"""
Lossy, line-oriented compression of memory content.

Lines judged important (declarations, actionable comments, preserved
keywords and patterns, or references to a declared name) are kept
verbatim. Every other line is normalised and dropped if nothing
meaningful survives. Because important lines are never rewritten,
running the output through the engine again keeps all of them.
"""

from __future__ import annotations

import dataclasses
import logging
import re
import time
from dataclasses import dataclass

from .cache import LRUCache
from .config import CacheConfig, CompressionConfig, MemoryLimits
from .errors import CompressionError
from .intelligence import content_hash, extract_structures
from .models import BatchResult, CompressionResult, CompressionStats, Memory

logger = logging.getLogger(__name__)

ALGORITHM = "intelligent-semantic"

_ACTIONABLE = re.compile(r"(?://|#)\s*(TODO|FIXME|NOTE|WARNING|ERROR|DEBUG)", re.IGNORECASE)
_DECLARATION = re.compile(
    r"^(function|class|interface|type|const|let|var|export|import|def|async\s+def|from)\b",
    re.IGNORECASE,
)
_PUNCTUATION_ONLY = re.compile(r"^[^\w\s]*$")
_DEBUG_CALL = re.compile(r"\b(?:console\.log|print)\([^)]*\);?")
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/")
_LINE_COMMENT = re.compile(r"(?://|#).*$")


class PauseToken:
    """Cooperative pause flag checked by batch operations between items."""

    def __init__(self) -> None:
        self._paused = False

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    @property
    def is_paused(self) -> bool:
        return self._paused


@dataclass
class PreservedElements:
    keywords: list[str]
    patterns: list[str]
    structures: list[str]


class CompressionEngine:
    """
    Compresses memories while keeping their structurally important lines.

    Results are memoised in an ``LRUCache`` keyed by a 64-bit hash of the
    memory's content, type and tags, so compressing the same memory twice
    costs one lookup.
    """

    def __init__(
        self,
        config: CompressionConfig | None = None,
        limits: MemoryLimits | None = None,
    ) -> None:
        self.config = config or CompressionConfig()
        self.limits = limits or MemoryLimits()
        self._keyword_patterns = [
            (kw, re.compile(rf"\b{re.escape(kw)}\b", re.IGNORECASE))
            for kw in self.config.preserved_keywords
        ]
        self._preserved_patterns = [re.compile(p) for p in self.config.preserved_patterns]
        self._cache: LRUCache[CompressionResult] = LRUCache(
            CacheConfig(max_size=self.config.memo_cache_size, ttl_ms=0)
        )

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def should_compress(self, memories: list[Memory]) -> bool:
        """True if any one of the three size/count thresholds is crossed."""
        total_size = sum(m.size for m in memories)
        if total_size > self.limits.compression_threshold:
            return True
        if len(memories) > self.limits.max_memories_per_type:
            return True
        uncompressed = sum(m.size for m in memories if not m.compressed)
        return uncompressed > self.config.min_size_for_compression

    def is_eligible(self, memory: Memory) -> bool:
        return not memory.compressed and memory.size >= self.config.min_size_for_compression

    # ------------------------------------------------------------------
    # Compression
    # ------------------------------------------------------------------

    def compress_memory(self, memory: Memory) -> CompressionResult:
        """
        Compress a single memory.

        Raises ``CompressionError`` if the memory is already compressed or
        smaller than ``min_size_for_compression``. The memory itself is
        never modified; use ``compress_memories`` to get updated copies.
        """
        if memory.compressed:
            raise CompressionError(
                f"Memory {memory.id} is already compressed",
                context={"id": memory.id},
            )
        if memory.size < self.config.min_size_for_compression:
            raise CompressionError(
                f"Memory {memory.id} is {memory.size} bytes, below the "
                f"{self.config.min_size_for_compression} byte minimum",
                context={"id": memory.id, "size": memory.size},
            )

        key = self._cache_key(memory)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        started = time.perf_counter()
        preserved = self.extract_preserved_elements(memory.content)
        compressed = self.compress_text(memory.content, preserved.structures)
        original_size = memory.size
        compressed_size = len(compressed.encode("utf-8"))

        result = CompressionResult(
            compressed_content=compressed,
            stats=CompressionStats(
                original_size=original_size,
                compressed_size=compressed_size,
                compression_ratio=compressed_size / original_size if original_size else 1.0,
                time_to_compress=(time.perf_counter() - started) * 1000.0,
                algorithm=ALGORITHM,
            ),
            preserved_keywords=preserved.keywords,
            summary=self.generate_summary(memory.content, compressed),
        )
        self._cache.set(key, result)
        return result

    def compress_memories(
        self,
        memories: list[Memory],
        pause: PauseToken | None = None,
    ) -> tuple[list[Memory], BatchResult]:
        """
        Compress every eligible memory, returning updated copies.

        Ineligible memories pass through unchanged and are reported as
        skipped. A ``CompressionError`` on one memory is recorded and the
        batch moves on. When *pause* is set, the remaining memories are
        returned untouched and ``BatchResult.paused`` is true.
        """
        out: list[Memory] = []
        batch = BatchResult()
        for index, memory in enumerate(memories):
            if pause is not None and pause.is_paused:
                batch.paused = True
                out.extend(memories[index:])
                logger.info("Compression paused after %d of %d memories", index, len(memories))
                break
            if not self.is_eligible(memory):
                batch.skipped.append(memory.id)
                out.append(memory)
                continue
            try:
                result = self.compress_memory(memory)
            except CompressionError as exc:
                logger.warning("Failed to compress memory %s: %s", memory.id, exc)
                batch.failures.append((memory.id, exc.message))
                out.append(memory)
                continue
            out.append(self.apply_result(memory, result))
            batch.succeeded.append(memory.id)
        return out, batch

    @staticmethod
    def apply_result(memory: Memory, result: CompressionResult) -> Memory:
        """Copy of *memory* carrying the compressed content and its stats."""
        metadata = dataclasses.replace(
            memory.metadata,
            compressed=True,
            original_size=result.stats.original_size,
            summary=result.summary,
            compression_stats=result.stats,
        )
        return dataclasses.replace(memory, content=result.compressed_content, metadata=metadata)

    def decompress_memory(self, memory: Memory) -> str:
        """Return the stored content. Compression is lossy, nothing is restored."""
        return memory.content

    def get_compression_stats(self, memories: list[Memory]) -> CompressionStats:
        original = sum(
            m.metadata.original_size if m.compressed and m.metadata.original_size else m.size
            for m in memories
        )
        current = sum(m.size for m in memories)
        return CompressionStats(
            original_size=original,
            compressed_size=current,
            compression_ratio=current / original if original else 0.0,
            time_to_compress=0.0,
            algorithm=ALGORITHM,
        )

    # ------------------------------------------------------------------
    # Line classification
    # ------------------------------------------------------------------

    def compress_text(self, content: str, structures: list[str] | None = None) -> str:
        if structures is None:
            structures = extract_structures(content)
        structure_patterns = self._structure_patterns(structures)
        kept: list[str] = []
        for line in content.split("\n"):
            stripped = line.strip()
            if self._is_important(stripped, structure_patterns):
                kept.append(line)
                continue
            normalised = self.compress_line(stripped)
            if normalised:
                kept.append(normalised)
        return "\n".join(kept)

    def is_important_line(self, line: str, structures: list[str] | None = None) -> bool:
        return self._is_important(line.strip(), self._structure_patterns(structures or []))

    def _is_important(self, line: str, structure_patterns: list[re.Pattern[str]]) -> bool:
        if not line:
            return False
        if _ACTIONABLE.search(line):
            return True
        if _DECLARATION.match(line):
            return True
        if any(p.search(line) for _, p in self._keyword_patterns):
            return True
        if any(p.search(line) for p in self._preserved_patterns):
            return True
        return any(p.search(line) for p in structure_patterns)

    @staticmethod
    def _structure_patterns(structures: list[str]) -> list[re.Pattern[str]]:
        # Single-letter names would match nearly everything.
        return [re.compile(rf"\b{re.escape(s)}\b") for s in structures if len(s) > 1]

    @staticmethod
    def compress_line(line: str) -> str | None:
        """Normalise an unimportant line, or return ``None`` to drop it."""
        line = re.sub(r"\s+", " ", line).strip()
        if len(line) < 10:
            return None
        if _PUNCTUATION_ONLY.match(line):
            return None
        line = _DEBUG_CALL.sub("// debug log", line)
        if line.startswith("// debug log"):
            return line
        line = _BLOCK_COMMENT.sub("", line)
        line = _LINE_COMMENT.sub("", line).strip()
        return line or None

    # ------------------------------------------------------------------
    # Summaries and preserved elements
    # ------------------------------------------------------------------

    def extract_preserved_elements(self, content: str) -> PreservedElements:
        keywords: list[str] = []
        for _, pattern in self._keyword_patterns:
            keywords.extend(pattern.findall(content))
        patterns: list[str] = []
        for pattern in self._preserved_patterns:
            patterns.extend(m.group(0) for m in pattern.finditer(content))
        return PreservedElements(keywords, patterns, extract_structures(content))

    def generate_summary(self, original: str, compressed: str) -> str:
        original_lines = len(original.split("\n"))
        compressed_lines = len([line for line in compressed.split("\n") if line.strip()])
        reduction = (len(original) - len(compressed)) / len(original) * 100 if original else 0.0

        summary = f"Compressed from {original_lines} to {compressed_lines} lines ({reduction:.1f}% reduction)."
        structures = extract_structures(original)
        if structures:
            more = "..." if len(structures) > 3 else ""
            summary += f" Contains: {', '.join(structures[:3])}{more}."
        lowered = original.lower()
        concepts = [kw for kw in self.config.preserved_keywords if kw.lower() in lowered]
        if concepts:
            more = "..." if len(concepts) > 5 else ""
            summary += f" Key concepts: {', '.join(concepts[:5])}{more}."
        return summary

    # ------------------------------------------------------------------
    # Memo cache
    # ------------------------------------------------------------------

    @staticmethod
    def _cache_key(memory: Memory) -> str:
        return content_hash(memory.content, memory.metadata.type.value, ",".join(memory.metadata.tags))

    def clear_cache(self) -> None:
        self._cache.clear()

    def get_cache_stats(self) -> dict[str, float]:
        metrics = self._cache.get_metrics()
        return {"size": self._cache.size(), "hit_rate": metrics.hit_rate}
