"""
Intelligent logic layer: validation, structure extraction, hashing and
file chunking.

These utilities sit underneath the engine components to provide:
  - Memory validation and tag normalisation before anything is stored
  - Harvesting of function/class/interface/type names from source text
  - Stable 64-bit content hashes for cache keys and deduplication
  - Line-aware chunking of workspace files for indexing
"""

from __future__ import annotations

import hashlib
import re
import uuid
from dataclasses import dataclass

from .config import ValidationConfig
from .errors import ValidationError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Maximum number of characters per chunk when indexing workspace files.
DEFAULT_CHUNK_SIZE: int = 1500

_STRUCTURE_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("function", re.compile(r"(?:function|const|let|var)\s+(\w+)\s*[=(]")),
    ("function", re.compile(r"^\s*(?:async\s+)?def\s+(\w+)\s*\(", re.MULTILINE)),
    ("class", re.compile(r"\bclass\s+(\w+)")),
    ("interface", re.compile(r"\binterface\s+(\w+)")),
    ("type", re.compile(r"\btype\s+(\w+)\s*=")),
]

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def sanitize_tags(tags: list[str] | None, config: ValidationConfig | None = None) -> list[str]:
    """
    Normalise *tags*: strip, lower-case and deduplicate keeping first-seen
    order, then check each against the allowed character set and limits.

    ``["  Tag1  ", "tag2", "TAG1", "tag2"]`` becomes ``["tag1", "tag2"]``.

    Raises ``ValidationError`` for a reserved, overlong or malformed tag, or
    when there are too many tags.
    """
    config = config or ValidationConfig()
    allowed = re.compile(config.allowed_tag_pattern)
    reserved = {t.lower() for t in config.reserved_tags}

    cleaned: list[str] = []
    for raw in tags or []:
        tag = raw.strip().lower()
        if not tag or tag in cleaned:
            continue
        if tag in reserved:
            raise ValidationError(f"Tag '{tag}' is reserved", context={"tag": tag})
        if len(tag) > config.max_tag_length:
            raise ValidationError(
                f"Tag '{tag}' exceeds {config.max_tag_length} characters",
                context={"tag": tag},
            )
        if not allowed.match(tag):
            raise ValidationError(
                f"Tag '{tag}' contains characters outside {config.allowed_tag_pattern}",
                context={"tag": tag},
            )
        cleaned.append(tag)

    if len(cleaned) > config.max_tags_count:
        raise ValidationError(
            f"Too many tags: {len(cleaned)} (max {config.max_tags_count})",
            context={"count": len(cleaned)},
        )
    return cleaned


def validate_content(content: str, config: ValidationConfig | None = None) -> str:
    """Raise ``ValidationError`` unless *content* length is within limits."""
    config = config or ValidationConfig()
    if not isinstance(content, str):
        raise ValidationError("Memory content must be a string")
    length = len(content.strip())
    if length < config.min_content_length:
        raise ValidationError(
            f"Content is too short: {length} characters (min {config.min_content_length})",
            context={"length": length},
        )
    if len(content) > config.max_content_length:
        raise ValidationError(
            f"Content is too long: {len(content)} characters (max {config.max_content_length})",
            context={"length": len(content)},
        )
    return content


# ---------------------------------------------------------------------------
# Structure extraction
# ---------------------------------------------------------------------------


def extract_structures(content: str) -> list[str]:
    """Return declared function/class/interface/type names, in order, unique."""
    found: list[tuple[int, str]] = []
    for _, pattern in _STRUCTURE_PATTERNS:
        for match in pattern.finditer(content):
            found.append((match.start(1), match.group(1)))
    found.sort()

    names: list[str] = []
    for _, name in found:
        if name not in names:
            names.append(name)
    return names


def extract_named_structures(content: str) -> tuple[str | None, str | None]:
    """Return the first ``(function_name, class_name)`` declared in *content*."""
    function_name: str | None = None
    class_name: str | None = None
    for kind, pattern in _STRUCTURE_PATTERNS:
        match = pattern.search(content)
        if not match:
            continue
        if kind == "class" and class_name is None:
            class_name = match.group(1)
        elif kind == "function" and function_name is None:
            function_name = match.group(1)
    return function_name, class_name


def extract_identifiers(text: str) -> set[str]:
    """All identifier-like tokens in *text*, as written."""
    return set(_IDENTIFIER.findall(text))


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def content_hash(*parts: str) -> str:
    """64-bit BLAKE2b hex digest of *parts* joined with ``:``."""
    data = ":".join(parts).encode("utf-8")
    return hashlib.blake2b(data, digest_size=8).hexdigest()


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------


@dataclass
class TextChunk:
    content: str
    start_line: int
    end_line: int


def chunk_text(text: str, max_chunk_size: int = DEFAULT_CHUNK_SIZE) -> list[TextChunk]:
    """
    Split *text* into line-aligned chunks of at most *max_chunk_size*
    characters, remembering the 1-based line range of each chunk.

    Strategy:
      1. Walk the file line by line.
      2. Close the current chunk at a blank line once it is at least half
         full, so chunks tend to end on block boundaries.
      3. Close it unconditionally when the next line would overflow.

    A single line longer than the limit becomes its own chunk.
    Blank-only chunks are dropped.
    """
    lines = text.split("\n")
    chunks: list[TextChunk] = []
    buf: list[str] = []
    size = 0
    start = 1

    def _flush(end_line: int) -> None:
        nonlocal buf, size
        body = "\n".join(buf)
        if body.strip():
            chunks.append(TextChunk(body, start, end_line))
        buf, size = [], 0

    for lineno, line in enumerate(lines, 1):
        if buf and size + len(line) + 1 > max_chunk_size:
            _flush(lineno - 1)
            start = lineno
        if not buf:
            start = lineno
        buf.append(line)
        size += len(line) + 1
        if not line.strip() and size >= max_chunk_size // 2:
            _flush(lineno)

    if buf:
        _flush(len(lines))
    return chunks


# ---------------------------------------------------------------------------
# Importance scoring
# ---------------------------------------------------------------------------


def compute_importance(text: str) -> float:
    """
    Estimate the importance of *text* on the conventional 0-3 scale.

    Heuristics used:
      - Vocabulary richness: unique_tokens / total_tokens
      - Length contribution: capped at 100 words
      - Structure bonus: declarations or list markers
      - Actionable bonus: TODO/FIXME/NOTE markers
    """
    words = text.lower().split()
    if not words:
        return 0.0

    unique_ratio = len(set(words)) / len(words)
    length_score = min(len(words) / 100.0, 1.0)

    structure_bonus = 0.5 if extract_structures(text) or re.search(r"^\s*[-*\d]\.?\s", text, re.MULTILINE) else 0.0
    actionable_bonus = 0.5 if re.search(r"\b(?:TODO|FIXME|NOTE)\b", text) else 0.0

    score = unique_ratio + length_score + structure_bonus + actionable_bonus
    return round(min(score, 3.0), 3)


# ---------------------------------------------------------------------------
# ID generation
# ---------------------------------------------------------------------------


def generate_id() -> str:
    """Return a new unique memory ID."""
    return str(uuid.uuid4())
