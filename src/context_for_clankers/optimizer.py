"""
Fits ranked content blocks into a model's token budget.

Only ``floor(max_tokens * safety_margin)`` tokens are usable; the rest is
left for the surrounding prompt. Blocks are ordered by priority and packed
greedily. The first block that does not fit is truncated if enough budget
remains, and packing stops there.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum

from .compression import CompressionEngine
from .config import OptimizerConfig
from .intelligence import content_hash
from .models import CompressionLevel, ContextualScore

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "// ... (content truncated for token limit) ..."

_CODE_INDICATORS = ["{", "}", "(", ")", ";", "function", "class", "import", "export"]
_HEADER_LINE = re.compile(r"^File: .+?(?: \(Lines \d+-\d+\))?$", re.MULTILINE)
_RELEVANCE_LINE = re.compile(r"^Relevance: .*$", re.MULTILINE)
_ACTIONABLE = re.compile(r"TODO|FIXME|NOTE")
_EMPTY_COMMENT = re.compile(r"^[ \t]*(?://|#)[ \t]*$", re.MULTILINE)
_COMMENT_LINE = re.compile(r"^[ \t]*(?://|#(?!!)).*$")
_DEBUG_LINE = re.compile(r"^[ \t]*(?:console\.log|print)\(.*$")


class ContentType(str, Enum):
    ACTIVE_FILE = "active_file"
    IMPORTS = "imports"
    RELATED_FILES = "related_files"
    RECENT_FILES = "recent_files"
    DEPENDENCIES = "dependencies"
    DOCUMENTATION = "documentation"


@dataclass
class ContentBlock:
    path: str
    content: str
    content_type: ContentType | None = None
    start_line: int | None = None
    end_line: int | None = None
    scores: ContextualScore | None = None
    function_name: str | None = None
    class_name: str | None = None


@dataclass
class OptimizedContext:
    content: str
    total_tokens: int
    compression_ratio: float
    included_files: list[str] = field(default_factory=list)
    excluded_files: list[str] = field(default_factory=list)
    truncated_files: list[str] = field(default_factory=list)
    error: str | None = None


def _pct(value: float) -> str:
    return f"{round(value * 100)}%"


def format_block(block: ContentBlock) -> str:
    """Render *block* in the context string format consumed by the LLM client."""
    start = block.start_line or 1
    end = block.end_line or start + max(block.content.count("\n"), 0)
    lines = [f"File: {block.path} (Lines {start}-{end})"]
    if block.scores is not None:
        s = block.scores
        lines.append(
            f"Relevance: {_pct(s.final_score)} "
            f"[S:{_pct(s.semantic)} T:{_pct(s.temporal)} P:{_pct(s.spatial)} C:{_pct(s.structural)}]"
        )
    if block.function_name:
        lines.append(f"Function: {block.function_name}")
    if block.class_name:
        lines.append(f"Class: {block.class_name}")
    lines.append(block.content)
    return "\n".join(lines)


class ContextOptimizer:
    """
    Parameters
    ----------
    config:
        Token estimation and budgeting knobs.
    compressor:
        Optional ``CompressionEngine``. When set, blocks above their content
        type's token limit are compressed before packing.
    """

    def __init__(
        self,
        config: OptimizerConfig | None = None,
        compressor: CompressionEngine | None = None,
    ) -> None:
        self.config = config or OptimizerConfig()
        self.compressor = compressor

    # ------------------------------------------------------------------
    # Token estimation
    # ------------------------------------------------------------------

    def estimate_token_count(self, text: str) -> int:
        """
        Characters-to-tokens estimate, scaled up (at most 1.5x) by how
        dense the text is in code punctuation and keywords.
        """
        if not text:
            return 0
        base = math.ceil(len(text) * self.config.chars_per_token)
        indicators = sum(text.count(ind) for ind in _CODE_INDICATORS)
        multiplier = min(self.config.max_code_multiplier, 1 + (indicators / len(text)) * 2)
        return math.ceil(base * multiplier)

    # ------------------------------------------------------------------
    # Prioritisation
    # ------------------------------------------------------------------

    def detect_content_type(self, block: ContentBlock) -> ContentType:
        if block.content_type is not None:
            return ContentType(block.content_type)
        path = block.path.lower()
        if path.endswith(("package.json", "requirements.txt", "pyproject.toml", "cargo.toml")):
            return ContentType.DEPENDENCIES
        if path.endswith((".md", ".rst", ".txt")):
            return ContentType.DOCUMENTATION
        lines = [line.strip() for line in block.content.split("\n") if line.strip()]
        imports = [line for line in lines if line.startswith(("import ", "from ")) or "require(" in line]
        if lines and len(imports) * 2 >= len(lines):
            return ContentType.IMPORTS
        return ContentType.RELATED_FILES

    def score_block(self, block: ContentBlock, priorities: dict[str, float] | None = None) -> float:
        priorities = priorities or self.config.type_priorities
        content_type = self.detect_content_type(block)
        score = priorities.get(content_type.value, self.config.default_priority)
        text = block.content
        if block.start_line == 1:
            score += 0.1
        if "export" in text or "public" in text:
            score += 0.15
        if "function" in text or "class" in text or "def " in text:
            score += 0.1
        if "TODO" in text or "FIXME" in text:
            score += 0.05
        return min(1.0, score)

    def prioritize_content(
        self,
        blocks: list[ContentBlock],
        priorities: dict[str, float] | None = None,
    ) -> list[ContentBlock]:
        """Blocks ordered by priority score, highest first (stable)."""
        return sorted(blocks, key=lambda b: self.score_block(b, priorities), reverse=True)

    # ------------------------------------------------------------------
    # Packing
    # ------------------------------------------------------------------

    def optimize_for_token_limit(
        self,
        blocks: list[ContentBlock],
        max_tokens: int,
        priorities: dict[str, float] | None = None,
    ) -> OptimizedContext:
        available = math.floor(max_tokens * self.config.safety_margin)
        used = 0
        parts: list[str] = []
        included: list[str] = []
        excluded: list[str] = []
        truncated: list[str] = []

        original_tokens = sum(self.estimate_token_count(format_block(b)) for b in blocks)
        ordered = self.prioritize_content(self.compress_oversized(blocks), priorities)
        stopped_at: int | None = None

        for index, block in enumerate(ordered):
            text = format_block(block)
            tokens = self.estimate_token_count(text)
            if stopped_at is not None:
                excluded.append(block.path)
                continue

            if used + tokens <= available:
                parts.append(text)
                included.append(block.path)
                used += tokens
                continue

            remaining = available - used
            if remaining > self.config.min_viable_tokens:
                cut = self.truncate_content(text, remaining)
                if cut is not None:
                    parts.append(cut)
                    truncated.append(block.path)
                    used += self.estimate_token_count(cut)
                    stopped_at = index
                    continue
            excluded.append(block.path)

        if stopped_at is not None:
            logger.debug("Token budget exhausted after %d blocks", stopped_at + 1)

        return OptimizedContext(
            content="\n\n".join(parts),
            total_tokens=used,
            compression_ratio=used / original_tokens if original_tokens else 1.0,
            included_files=included,
            excluded_files=excluded,
            truncated_files=truncated,
        )

    def compress_oversized(self, blocks: list[ContentBlock]) -> list[ContentBlock]:
        """Run blocks that exceed their type's token limit through the compressor."""
        if self.compressor is None:
            return list(blocks)
        min_size = self.compressor.config.min_size_for_compression
        out: list[ContentBlock] = []
        for block in blocks:
            limit = self.config.type_token_limits.get(self.detect_content_type(block).value)
            too_big = limit is not None and self.estimate_token_count(block.content) > limit
            if too_big and len(block.content.encode("utf-8")) >= min_size:
                block = dataclasses.replace(block, content=self.compressor.compress_text(block.content))
            out.append(block)
        return out

    def truncate_content(self, text: str, max_tokens: int) -> str | None:
        """
        Keep the header lines, then as many body lines as fit while leaving
        room for the truncation marker. ``None`` if too little survives.
        """
        lines = text.split("\n")
        header_count = self.config.header_lines
        limit = max_tokens - self.config.truncation_reserve_tokens
        kept = list(lines[:header_count])
        if self.estimate_token_count("\n".join(kept + [TRUNCATION_MARKER])) > limit:
            return None

        for line in lines[header_count:]:
            candidate = "\n".join(kept + [line, TRUNCATION_MARKER])
            if self.estimate_token_count(candidate) > limit:
                break
            kept.append(line)

        result = "\n".join(kept + [TRUNCATION_MARKER])
        if self.estimate_token_count(result) <= self.config.min_viable_tokens:
            return None
        return result

    # ------------------------------------------------------------------
    # Deduplication and compression levels
    # ------------------------------------------------------------------

    @staticmethod
    def dedup_key(text: str) -> str:
        normalized = _HEADER_LINE.sub("", text)
        normalized = _RELEVANCE_LINE.sub("", normalized)
        normalized = re.sub(r"\s+", " ", normalized).strip()
        return content_hash(normalized[:100])

    def compress_context(self, blocks: list[ContentBlock]) -> list[ContentBlock]:
        """Drop blocks whose normalised content repeats an earlier block."""
        seen: set[str] = set()
        unique: list[ContentBlock] = []
        for block in blocks:
            key = self.dedup_key(format_block(block))
            if key in seen:
                logger.debug("Dropping duplicate block from %s", block.path)
                continue
            seen.add(key)
            unique.append(block)
        return unique

    def apply_smart_compression(
        self,
        blocks: list[ContentBlock],
        level: CompressionLevel | str,
    ) -> list[ContentBlock]:
        level = CompressionLevel(level)
        if level is CompressionLevel.NONE:
            return list(blocks)
        compress = {
            CompressionLevel.LIGHT: self.light_compression,
            CompressionLevel.MODERATE: self.moderate_compression,
            CompressionLevel.AGGRESSIVE: self.aggressive_compression,
        }[level]
        return [dataclasses.replace(b, content=compress(b.content)) for b in blocks]

    @staticmethod
    def light_compression(content: str) -> str:
        content = re.sub(r"\n\s*\n\s*\n", "\n\n", content)
        return re.sub(r"[ \t]+$", "", content, flags=re.MULTILINE)

    def moderate_compression(self, content: str) -> str:
        content = _EMPTY_COMMENT.sub("", self.light_compression(content))
        return re.sub(r"\n{3,}", "\n\n", content)

    def aggressive_compression(self, content: str) -> str:
        kept = []
        for line in self.moderate_compression(content).split("\n"):
            if _ACTIONABLE.search(line):
                kept.append(line)
                continue
            if _COMMENT_LINE.match(line) or _DEBUG_LINE.match(line):
                continue
            if line.strip():
                kept.append(line)
        return "\n".join(kept)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_optimization_stats(self, blocks: list[ContentBlock], optimized: OptimizedContext) -> dict:
        original = sum(self.estimate_token_count(format_block(b)) for b in blocks)
        return {
            "original_files": len(blocks),
            "included_files": len(optimized.included_files),
            "excluded_files": len(optimized.excluded_files),
            "truncated_files": len(optimized.truncated_files),
            "original_tokens": original,
            "optimized_tokens": optimized.total_tokens,
            "compression_ratio": optimized.compression_ratio,
            "space_saved": original - optimized.total_tokens,
        }
