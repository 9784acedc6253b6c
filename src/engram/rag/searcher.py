"""Hybrid searcher: dense (sqlite-vec) + BM25 (FTS5), fused by weighted score.

  vector score  = clamp(1 - cosine_distance, 0, 1)
  text score    = -bm25, min-max normalised within the candidate pool
  fused         = 0.7 * vector + 0.3 * text      (a missing side counts as 0)

When the vector channel is unavailable (non-semantic provider, or the query
could not be embedded) the fused score is the text score alone. When the vec
table is missing or sized for another dimension, the vector pool comes from a
linear cosine scan over stored chunk embeddings instead.

Read-only with respect to index rows: every call opens its own connection and
reads both candidate pools inside one read transaction, so a concurrent
re-index is seen either entirely or not at all.
"""

from __future__ import annotations

import heapq
import json
import logging
import math
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from pathlib import PurePosixPath

from engram.config import SearchConfig
from engram.db.connection import Database
from engram.db.models import Chunk, SearchResult
from engram.db.repository import Repository
from engram.db.vectors import verify_vec_table
from engram.errors import CorruptChunkError, QueryParseError, SchemaMismatchError, TransientProviderError
from engram.ingest.embeddings import EmbeddingCache, EmbeddingProvider, fingerprint_of
from engram.store.files import SOURCE_DAILY, MemoryFileStore

logger = logging.getLogger(__name__)


@dataclass
class _Candidate:
    chunk: Chunk
    vector_score: float = 0.0
    text_score: float = 0.0


class HybridSearcher:
    """Ranks indexed chunks for a query by fusing vector and lexical relevance."""

    def __init__(
        self,
        db: Database,
        provider: EmbeddingProvider,
        files: MemoryFileStore,
        config: SearchConfig | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._db = db
        self._provider = provider
        self._files = files
        self.config = config or SearchConfig()
        self._today = today

    def search(
        self,
        query: str,
        max_results: int | None = None,
        min_score: float | None = None,
    ) -> list[SearchResult]:
        """Return at most *max_results* hits scoring at least *min_score*, best first."""
        max_results = self.config.max_results if max_results is None else max_results
        min_score = self.config.min_score if min_score is None else min_score
        if not query or not query.strip() or max_results <= 0:
            return []

        pool_size = max_results * max(1, self.config.candidate_multiplier)
        conn = self._db.connect()
        try:
            repo = Repository(conn)
            # Embedding may commit a cache row, so it runs before the snapshot.
            query_vec = self._embed_query(repo, query)
            conn.execute("BEGIN")
            try:
                vector_pool = None
                if query_vec is not None:
                    vector_pool = self._vector_pool(repo, query_vec, pool_size)
                text_pool = self._text_pool(repo, query, pool_size)
            finally:
                conn.rollback()
        finally:
            conn.close()

        results = self._fuse(vector_pool, text_pool)
        results = [r for r in results if r.score >= min_score]
        results.sort(key=lambda r: (-r.score, r.path, r.start_line))
        return results[:max_results]

    def get_range(self, path: str, from_line: int = 1, line_count: int | None = None) -> str:
        """Return a 1-based line window of a workspace file.

        Raises:
            ValueError: If *path* escapes the workspace.
            FileNotFoundError: If the file does not exist.
        """
        return self._files.read_range(path, from_line, line_count)

    # ------------------------------------------------------------------
    # Vector channel
    # ------------------------------------------------------------------

    def _embed_query(self, repo: Repository, query: str) -> list[float] | None:
        """Query vector, or None when the vector channel is unavailable."""
        if not self._provider.is_semantic:
            return None
        try:
            return EmbeddingCache(repo, self._provider).embed(query)
        except TransientProviderError as exc:
            logger.warning("Query embedding failed, falling back to lexical search: %s", exc)
            return None

    def _vector_pool(
        self, repo: Repository, query_vec: list[float], limit: int
    ) -> dict[str, tuple[Chunk, float]]:
        """Return {chunk_id: (chunk, score)} for the nearest stored chunks."""
        fingerprint = fingerprint_of(self._provider)
        if repo.get_fingerprint() == fingerprint:
            try:
                verify_vec_table(repo.conn, fingerprint.dims)
                hits = repo.search_vec(query_vec, limit=limit)
                return {c.id: (c, _clamp(1.0 - distance)) for c, distance in hits}
            except SchemaMismatchError as exc:
                logger.info("Vector table unusable (%s); using linear scan", exc)
            except sqlite3.OperationalError as exc:
                logger.warning("Vector search failed (%s); using linear scan", exc)

        return self._linear_scan(repo, query_vec, fingerprint.label, limit)

    def _linear_scan(
        self, repo: Repository, query_vec: list[float], model_label: str, limit: int
    ) -> dict[str, tuple[Chunk, float]]:
        """Cosine scan over stored embeddings produced by the active provider."""
        dims = len(query_vec)
        scored: list[tuple[float, str, Chunk]] = []
        for chunk, raw in repo.iter_chunk_embeddings():
            if chunk.model != model_label:
                continue
            try:
                vector = _decode_embedding(chunk.id, raw)
            except CorruptChunkError as exc:
                logger.warning("Skipping chunk during scan: %s", exc)
                continue
            if len(vector) != dims:
                continue
            scored.append((_clamp(cosine_similarity(query_vec, vector)), chunk.id, chunk))

        best = heapq.nlargest(limit, scored, key=lambda item: item[0])
        return {chunk_id: (chunk, score) for score, chunk_id, chunk in best}

    # ------------------------------------------------------------------
    # Lexical channel
    # ------------------------------------------------------------------

    def _text_pool(self, repo: Repository, query: str, limit: int) -> dict[str, tuple[Chunk, float]]:
        try:
            hits = repo.search_fts(query, limit=limit)
        except QueryParseError as exc:
            logger.debug("Lexical query rejected, vector results only: %s", exc)
            return {}
        scores = normalize_text_scores([rank for _, rank in hits])
        return {chunk.id: (chunk, score) for (chunk, _), score in zip(hits, scores)}

    # ------------------------------------------------------------------
    # Fusion
    # ------------------------------------------------------------------

    def _fuse(
        self,
        vector_pool: dict[str, tuple[Chunk, float]] | None,
        text_pool: dict[str, tuple[Chunk, float]],
    ) -> list[SearchResult]:
        candidates: dict[str, _Candidate] = {}
        for chunk_id, (chunk, score) in (vector_pool or {}).items():
            candidates[chunk_id] = _Candidate(chunk=chunk, vector_score=score)
        for chunk_id, (chunk, score) in text_pool.items():
            candidates.setdefault(chunk_id, _Candidate(chunk=chunk)).text_score = score

        results: list[SearchResult] = []
        for chunk_id, cand in candidates.items():
            if vector_pool is None:
                fused = cand.text_score
            else:
                fused = (
                    self.config.vector_weight * cand.vector_score
                    + self.config.text_weight * cand.text_score
                )
            fused = _clamp(fused * self._decay_factor(cand.chunk))
            results.append(
                SearchResult(
                    chunk_id=chunk_id,
                    path=cand.chunk.path,
                    source=cand.chunk.source,
                    start_line=cand.chunk.start_line,
                    end_line=cand.chunk.end_line,
                    score=fused,
                    snippet=cand.chunk.text[: self.config.snippet_chars],
                    vector_score=cand.vector_score,
                    text_score=cand.text_score,
                )
            )
        return results

    def _decay_factor(self, chunk: Chunk) -> float:
        """exp(-ln2 * age / half_life) for dated daily notes; 1.0 otherwise."""
        half_life = self.config.half_life_days
        if not half_life or chunk.source != SOURCE_DAILY:
            return 1.0
        try:
            day = date.fromisoformat(PurePosixPath(chunk.path).stem)
        except ValueError:
            return 1.0
        age_days = max(0, (self._today() - day).days)
        return math.exp(-math.log(2) * age_days / half_life)


# ------------------------------------------------------------------
# Scoring helpers
# ------------------------------------------------------------------


def normalize_text_scores(ranks: list[float]) -> list[float]:
    """Map raw bm25 ranks (lower = better) to [0, 1] by min-max over -rank.

    A pool whose relevances are all equal scores 1.0 throughout.
    """
    if not ranks:
        return []
    relevances = [-r for r in ranks]
    lo, hi = min(relevances), max(relevances)
    if hi - lo <= 1e-12:
        return [1.0] * len(relevances)
    return [(r - lo) / (hi - lo) for r in relevances]


def cosine_similarity(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


def _decode_embedding(chunk_id: str, raw: str) -> list[float]:
    try:
        data = json.loads(raw)
        if not isinstance(data, list):
            raise TypeError(f"expected a JSON array, got {type(data).__name__}")
        vector = [float(x) for x in data]
    except (ValueError, TypeError) as exc:
        raise CorruptChunkError(chunk_id, str(exc)) from exc
    if not all(math.isfinite(x) for x in vector):
        raise CorruptChunkError(chunk_id, "non-finite component")
    return vector
