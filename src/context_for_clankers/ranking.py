"""
Contextual ranking: vector similarity blended with where the user is
working and what they touched recently.

Each candidate gets four component scores in [0, 1]:

    semantic    cosine similarity from the vector store
    temporal    recency of the candidate's source file
    spatial     same file / same directory as the active file
    structural  candidate's function or class name is referenced

and a final score ``w_s*semantic + w_t*temporal + w_p*spatial +
w_c*structural`` using the configured weights.
"""

from __future__ import annotations

import json
import logging
import math
import posixpath
import time
from datetime import datetime
from typing import Callable

from .config import RankingConfig
from .embeddings import EmbeddingPort
from .errors import RetrievalError, StorageError
from .intelligence import extract_identifiers, extract_named_structures
from .models import ContextualScore, RankedResult, SearchOptions, StoredMemory
from .storage import StorageBackend
from .store import VectorStore

logger = logging.getLogger(__name__)

TIMESTAMPS_PATH = "temporal/timestamps.json"


def _now_ms() -> float:
    return time.time() * 1000.0


def normalize_path(path: str) -> str:
    return posixpath.normpath(path.replace("\\", "/"))


def is_file_path(source: str) -> bool:
    """Sources such as "user" or "assistant" name an author, not a file."""
    source = source.replace("\\", "/")
    return "/" in source or bool(posixpath.splitext(source)[1])


# ---------------------------------------------------------------------------
# Temporal tracking
# ---------------------------------------------------------------------------


class FileActivityTracker:
    """
    Remembers when each workspace file was last modified.

    Timestamps are recorded explicitly through ``touch`` rather than read
    from the filesystem, and persisted to ``temporal/timestamps.json``.
    """

    def __init__(
        self,
        backend: StorageBackend,
        path: str = TIMESTAMPS_PATH,
        clock: Callable[[], float] = _now_ms,
    ) -> None:
        self.backend = backend
        self.path = path
        self._clock = clock
        self._timestamps: dict[str, float] = {}
        self._loaded = False

    async def load(self) -> None:
        if self._loaded:
            return
        try:
            raw = await self.backend.read(self.path)
            data = json.loads(raw.decode("utf-8")) if raw else {}
            self._timestamps = {str(k): float(v) for k, v in data.items()}
        except FileNotFoundError:
            self._timestamps = {}
        except (ValueError, AttributeError, TypeError) as exc:
            logger.warning("Corrupt timestamp file %s, starting empty: %s", self.path, exc)
            self._timestamps = {}
        self._loaded = True

    async def touch(self, path: str, when_ms: float | None = None) -> None:
        await self.load()
        self._timestamps[normalize_path(path)] = self._clock() if when_ms is None else when_ms
        await self.backend.write(self.path, json.dumps(self._timestamps).encode("utf-8"))

    def last_modified(self, path: str) -> float | None:
        return self._timestamps.get(normalize_path(path))

    def recent_files(self, max_age_ms: float) -> list[str]:
        """Files touched within *max_age_ms*, most recent first."""
        cutoff = self._clock() - max_age_ms
        recent = [(ts, p) for p, ts in self._timestamps.items() if ts >= cutoff]
        recent.sort(key=lambda item: item[0], reverse=True)
        return [p for _, p in recent]

    def known_files(self) -> list[str]:
        return list(self._timestamps)

    def now(self) -> float:
        return self._clock()

    def stats(self) -> dict:
        return {
            "tracked_files": len(self._timestamps),
            "most_recent": max(self._timestamps.values(), default=None),
        }


# ---------------------------------------------------------------------------
# Ranker
# ---------------------------------------------------------------------------


class ContextualRanker:
    """
    Multi-signal search over a ``VectorStore``.

    Embedding failures surface as ``RetrievalError``; callers are expected
    to fall back to ``basic_search``.
    """

    def __init__(
        self,
        store: VectorStore,
        embeddings: EmbeddingPort,
        config: RankingConfig | None = None,
        tracker: FileActivityTracker | None = None,
    ) -> None:
        self.store = store
        self.embeddings = embeddings
        self.config = config or RankingConfig()
        self.tracker = tracker or FileActivityTracker(store.backend)
        self._searches = 0
        self._total_search_ms = 0.0
        self._fallbacks = 0

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self,
        query: str,
        active_file_path: str | None = None,
        active_symbols: list[str] | None = None,
    ) -> list[RankedResult]:
        """Return candidates ordered by final score, then semantic score."""
        if not query.strip():
            return []
        started = time.perf_counter()
        await self.tracker.load()

        vector = await self._embed(query)
        limit = self.config.max_results * self.config.candidate_multiplier
        try:
            entries = await self.store.search_with_filters(
                vector,
                SearchOptions(limit=limit, threshold=self.config.min_semantic_threshold),
            )
            memories = [await self.store.get_memory(e.id) for e in entries]
        except StorageError as exc:
            raise RetrievalError("Vector store failed during search", original_error=exc) from exc

        names = {n.lower() for n in extract_identifiers(query)}
        names.update(s.lower() for s in active_symbols or [])

        scored: list[tuple[int, RankedResult]] = []
        for position, (entry, memory) in enumerate(zip(entries, memories)):
            if memory is None:
                continue
            scores = self.score_candidate(memory, entry.similarity or 0.0, active_file_path, names)
            scored.append((position, RankedResult(memory=memory, scores=scores)))

        scored.sort(key=lambda item: (-item[1].scores.final_score, -item[1].scores.semantic, item[0]))
        results = [result for _, result in scored[: self.config.max_results]]
        for rank, result in enumerate(results, 1):
            result.rank = rank

        self._searches += 1
        self._total_search_ms += (time.perf_counter() - started) * 1000.0
        return results

    async def basic_search(self, query: str, limit: int = 10) -> list[RankedResult]:
        """Similarity-only search, used when contextual ranking fails."""
        self._fallbacks += 1
        vector = await self._embed(query)
        try:
            entries = await self.store.search(vector, limit)
            memories = [await self.store.get_memory(e.id) for e in entries]
        except StorageError as exc:
            raise RetrievalError("Vector store failed during search", original_error=exc) from exc

        results: list[RankedResult] = []
        for entry, memory in zip(entries, memories):
            if memory is None:
                continue
            similarity = entry.similarity or 0.0
            scores = ContextualScore(semantic=similarity, final_score=similarity)
            results.append(RankedResult(memory=memory, scores=scores, rank=len(results) + 1))
        return results

    async def _embed(self, query: str) -> list[float]:
        try:
            return await self.embeddings.embed(query)
        except RetrievalError:
            raise
        except Exception as exc:
            raise RetrievalError("Failed to embed query", context={"query": query}, original_error=exc) from exc

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def score_candidate(
        self,
        memory: StoredMemory,
        semantic: float,
        active_file_path: str | None,
        referenced_names: set[str],
    ) -> ContextualScore:
        semantic = min(max(semantic, 0.0), 1.0)
        temporal = self.temporal_score(memory.metadata.source, memory.updated)
        spatial = self.spatial_score(memory.metadata.source, active_file_path)
        structural = self.structural_score(memory, referenced_names)
        return ContextualScore(
            semantic=semantic,
            temporal=temporal,
            spatial=spatial,
            structural=structural,
            final_score=self.combine_scores(semantic, temporal, spatial, structural),
        )

    def combine_scores(self, semantic: float, temporal: float, spatial: float, structural: float) -> float:
        w = self.config.weights
        return (
            w.semantic * semantic
            + w.temporal * temporal
            + w.spatial * spatial
            + w.structural * structural
        )

    def temporal_score(self, source: str | None, fallback: datetime | None = None) -> float:
        """
        1.0 inside the recent-modification window, exponential decay after
        it, never below ``temporal_floor``.
        """
        ts = self.tracker.last_modified(source) if source else None
        if ts is None:
            if fallback is None:
                return self.config.temporal_floor
            ts = fallback.timestamp() * 1000.0

        age = max(self.tracker.now() - ts, 0.0)
        if age <= self.config.recent_modification_window_ms:
            return 1.0
        if age > self.config.max_temporal_age_ms:
            return self.config.temporal_floor
        decay = math.exp(-self.config.temporal_decay_factor * age / self.config.max_temporal_age_ms)
        return max(self.config.temporal_floor, decay)

    def spatial_score(self, source: str | None, active_file_path: str | None) -> float:
        if not source or not active_file_path or not is_file_path(source):
            return 0.0
        candidate = normalize_path(source)
        active = normalize_path(active_file_path)
        if candidate == active:
            return self.config.same_file_bonus
        if posixpath.dirname(candidate) == posixpath.dirname(active):
            return self.config.same_directory_bonus
        return 0.0

    def structural_score(self, memory: StoredMemory, referenced_names: set[str]) -> float:
        if not referenced_names:
            return 0.0
        function_name = memory.metadata.function_name
        class_name = memory.metadata.class_name
        if function_name is None and class_name is None:
            function_name, class_name = extract_named_structures(memory.content)
        for name in (function_name, class_name):
            if name and name.lower() in referenced_names:
                return min(self.config.structural_match_bonus, 1.0)
        return 0.0

    # ------------------------------------------------------------------
    # Explanation
    # ------------------------------------------------------------------

    async def explain_ranking(self, query: str, active_file_path: str | None = None) -> list[str]:
        """Human-readable score breakdown of the top five results."""
        try:
            results = await self.search(query, active_file_path)
        except RetrievalError as exc:
            return [f"Failed to explain ranking: {exc.message}"]

        w = self.config.weights
        lines = [
            f'Contextual Search Explanation for: "{query}"',
            f"Active File: {active_file_path or 'None'}",
            f"Configuration: Semantic({w.semantic}) + Temporal({w.temporal}) + "
            f"Spatial({w.spatial}) + Structural({w.structural})",
            "",
        ]
        for result in results[:5]:
            lines.append(f"--- Result #{result.rank} ---")
            lines.append(self.explain_scoring(result))
            lines.append("")
        return lines

    def explain_scoring(self, result: RankedResult) -> str:
        s = result.scores
        w = self.config.weights
        meta = result.memory.metadata
        location = meta.source if meta.start_line is None else f"{meta.source}:{meta.start_line}"
        return "\n".join(
            [
                f"Scoring breakdown for: {location}",
                "",
                "Component Scores:",
                f"  Semantic:    {s.semantic:.3f} (weight: {w.semantic})",
                f"  Temporal:    {s.temporal:.3f} (weight: {w.temporal})",
                f"  Spatial:     {s.spatial:.3f} (weight: {w.spatial})",
                f"  Structural:  {s.structural:.3f} (weight: {w.structural})",
                "",
                "Weighted Contributions:",
                f"  Semantic:    {s.semantic * w.semantic:.3f}",
                f"  Temporal:    {s.temporal * w.temporal:.3f}",
                f"  Spatial:     {s.spatial * w.spatial:.3f}",
                f"  Structural:  {s.structural * w.structural:.3f}",
                "",
                f"Final Score: {s.final_score:.3f}",
                f"Rank: {result.rank}",
            ]
        )

    # ------------------------------------------------------------------
    # Workspace activity
    # ------------------------------------------------------------------

    async def update_file_modification_time(self, file_path: str) -> None:
        await self.tracker.touch(file_path)

    async def get_recently_modified_files(self, max_age_ms: float = 60 * 60 * 1000) -> list[str]:
        await self.tracker.load()
        return self.tracker.recent_files(max_age_ms)

    async def get_nearby_files(self, file_path: str, limit: int = 10) -> list[tuple[str, float]]:
        """
        Known files ranked by proximity to *file_path*: same directory
        first, then by how much of the directory path they share.
        """
        await self.tracker.load()
        active = normalize_path(file_path)
        known = set(self.tracker.known_files())
        for memory in await self.store.all_memories():
            if memory.metadata.source and is_file_path(memory.metadata.source):
                known.add(normalize_path(memory.metadata.source))
        known.discard(active)

        active_dir = posixpath.dirname(active).split("/")
        scored: list[tuple[str, float]] = []
        for path in sorted(known):
            if posixpath.dirname(path) == posixpath.dirname(active):
                score = self.config.same_directory_bonus
            else:
                parts = posixpath.dirname(path).split("/")
                common = 0
                for a, b in zip(active_dir, parts):
                    if a != b:
                        break
                    common += 1
                depth = max(len(active_dir), len(parts))
                score = self.config.same_directory_bonus * common / (depth + 1)
            if score > 0:
                scored.append((path, round(score, 4)))
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[:limit]

    def get_search_stats(self) -> dict:
        return {
            "searches": self._searches,
            "fallbacks": self._fallbacks,
            "average_search_time": self._total_search_ms / self._searches if self._searches else 0.0,
            "temporal": self.tracker.stats(),
            "weights": self.config.weights.model_dump(),
        }
