"""
Hybrid Search Coordinator — full-text and vector rankings fused into one.

search() runs two independent sub-searches on a thread pool of its own:

    fts      store.full_text_search(query, k * limit, filters)
    vector   provider.embed(query) -> store.vector_search(vec, k * limit, filters)

and joins both with an explicit deadline.  The pool is shut down without
waiting, so a sub-search abandoned at the deadline never holds a worker
that a later search needs.  Each ranking is min-max
normalized on its own, then fused per memory id:

    in both lists    fts_weight * fts + vector_weight * vector
    in one list      that list's normalized score * its weight

A sub-search that fails or misses the deadline is dropped and the
response is marked degraded.  When the embedding provider fails, the
response carries full-text results only, each tagged ``fts``.

Fused results go through near-duplicate suppression and then a context
budget on the summed snippet length before the limit is applied.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Tuple

from synmem.config import SearchConfig, ValidationError
from synmem.embedding import EmbeddingProvider
from synmem.errors import EmbeddingError, InvalidQuery, SearchError, SearchTimeout
from synmem.similarity import jaccard, min_max_normalize
from synmem.store import StorageEngine
from synmem.types import Memory, SearchFilter, SearchResponse, SearchResult

logger = logging.getLogger(__name__)

_TIMED_OUT = "timed out"


def normalize_results(
    results: Sequence[SearchResult],
) -> List[Tuple[SearchResult, float]]:
    """Pair each result with its min-max normalized score.

    Duplicate ids keep their higher normalized score; order follows
    descending normalized score, then recency.
    """
    norm = min_max_normalize([r.score for r in results])
    best: Dict[str, Tuple[SearchResult, float]] = {}
    for r, s in zip(results, norm):
        prev = best.get(r.memory_id)
        if prev is None or s > prev[1]:
            best[r.memory_id] = (r, s)
    return sorted(best.values(), key=lambda p: (-p[1], -p[0].sequence))


def fuse(
    fts: Sequence[SearchResult],
    vector: Sequence[SearchResult],
    fts_weight: float = 0.4,
    vector_weight: float = 0.6,
) -> List[SearchResult]:
    """Weighted fusion of two raw rankings, sorted best first.

    Returned scores are in [0, 1] when the weights sum to at most 1.
    """
    fused: Dict[str, SearchResult] = {}
    for rank, (r, s) in enumerate(normalize_results(fts), start=1):
        fused[r.memory_id] = replace(
            r, score=fts_weight * s, signal="fts",
            fts_score=s, fts_rank=rank, vector_score=None, vector_rank=None,
        )
    for rank, (r, s) in enumerate(normalize_results(vector), start=1):
        prev = fused.get(r.memory_id)
        if prev is None:
            fused[r.memory_id] = replace(
                r, score=vector_weight * s, signal="vector",
                vector_score=s, vector_rank=rank, fts_score=None, fts_rank=None,
            )
        else:
            fused[r.memory_id] = replace(
                prev,
                score=fts_weight * prev.fts_score + vector_weight * s,
                signal="hybrid",
                vector_score=s, vector_rank=rank,
                sequence=max(prev.sequence, r.sequence),
            )
    return sorted(fused.values(), key=SearchResult.sort_key)


def _single_signal(
    results: Sequence[SearchResult], signal: str,
) -> List[SearchResult]:
    """Normalize one ranking without weighting, tagged with its signal."""
    out = []
    for rank, (r, s) in enumerate(normalize_results(results), start=1):
        if signal == "fts":
            out.append(replace(r, score=s, signal="fts", fts_score=s, fts_rank=rank))
        else:
            out.append(replace(r, score=s, signal="vector", vector_score=s, vector_rank=rank))
    return out


def suppress_near_duplicates(
    results: Sequence[SearchResult], threshold: float,
) -> List[SearchResult]:
    """Drop results whose snippet is a near-copy of a better-ranked one."""
    kept: List[SearchResult] = []
    for r in results:
        if any(jaccard(r.snippet, k.snippet) >= threshold for k in kept):
            logger.debug(f"[search] dropped near-duplicate {r.memory_id}")
            continue
        kept.append(r)
    return kept



def fit_context(
    results: Sequence[SearchResult], max_chars: int,
) -> List[SearchResult]:
    """Keep results while their snippets fit in ``max_chars`` in total.

    The first result that overflows is cut to the remaining room (with
    ``...``) when more than 100 characters remain, and ends the list.
    """
    kept: List[SearchResult] = []
    total = 0
    for r in results:
        size = len(r.snippet)
        if total + size <= max_chars:
            kept.append(r)
            total += size
            continue
        remaining = max_chars - total - 3
        if remaining > 100:
            kept.append(replace(r, snippet=r.snippet[:remaining] + "..."))
        logger.debug(
            f"[search] context budget {max_chars} reached after {len(kept)} results"
        )
        break
    return kept


class HybridSearchCoordinator:
    """Fan-out/fan-in over the storage engine's two ranking primitives."""

    def __init__(
        self,
        store: StorageEngine,
        provider: EmbeddingProvider,
        config: Optional[SearchConfig] = None,
    ):
        self._store = store
        self._provider = provider
        self._config = config or SearchConfig()
        errors = self._config.validate()
        if errors:
            raise ValidationError(f"Invalid search config: {'; '.join(errors)}")
        self._closed = False

    @property
    def config(self) -> SearchConfig:
        return self._config

    @property
    def store(self) -> StorageEngine:
        return self._store

    @property
    def provider(self) -> EmbeddingProvider:
        return self._provider

    def close(self) -> None:
        """Stop accepting searches; in-flight sub-searches finish in background."""
        self._closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # -- Validation ------------------------------------------------------

    def _check(self, query: str, limit: Optional[int]) -> int:
        if self._closed:
            raise SearchError("search coordinator is closed")
        if not isinstance(query, str) or not query.strip():
            raise InvalidQuery("query must be non-empty")
        if limit is None:
            limit = self._config.default_limit
        limit = min(int(limit), self._config.max_limit)
        if limit <= 0:
            raise InvalidQuery(f"limit must be positive, got {limit}")
        return limit

    # -- Hybrid ----------------------------------------------------------

    def _embed_and_search(
        self, query: str, n: int, filters: Optional[SearchFilter],
    ) -> List[SearchResult]:
        embedding = self._provider.embed(query)
        return self._store.vector_search(embedding, n, filters=filters)

    @staticmethod
    def _outcome(future: Future, done) -> Tuple[Optional[list], object]:
        """(results, None) on success, else (None, exception or _TIMED_OUT)."""
        if future not in done:
            future.cancel()
            return None, _TIMED_OUT
        exc = future.exception()
        if exc is not None:
            return None, exc
        return future.result(), None

    def search(
        self, query: str, limit: Optional[int] = None,
        timeout: Optional[float] = None,
        filters: Optional[SearchFilter] = None,
    ) -> SearchResponse:
        """Hybrid search.

        Args:
            query: Free text.
            limit: Maximum results (clamped to max_limit).
            timeout: Seconds to wait for the sub-searches; defaults to
                ``config.timeout_s`` (None waits for both).
            filters: Tag and creation-date restrictions, applied by both
                sub-searches before ranking.

        Raises:
            InvalidQuery: Empty query, or limit <= 0.
            SearchTimeout: Neither sub-search completed in time.
            SearchError: The coordinator is closed.
        """
        limit = self._check(query, limit)
        if timeout is None:
            timeout = self._config.timeout_s
        n = limit * self._config.overfetch

        executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="synmem-search")
        try:
            fts_future = executor.submit(
                self._store.full_text_search, query, n, filters=filters,
            )
            vec_future = executor.submit(self._embed_and_search, query, n, filters)
            done, _ = wait([fts_future, vec_future], timeout=timeout)
        finally:
            executor.shutdown(wait=False)

        fts, fts_err = self._outcome(fts_future, done)
        vec, vec_err = self._outcome(vec_future, done)

        if fts is None and vec is None:
            if fts_err is _TIMED_OUT or vec_err is _TIMED_OUT:
                if isinstance(fts_err, BaseException):
                    raise fts_err
                logger.warning(f"[search] no sub-search finished within {timeout}s")
                raise SearchTimeout(timeout)
            raise fts_err

        degraded_reason = None
        if vec is None:
            degraded_reason = self._reason("vector", vec_err)
            results = _single_signal(fts, "fts")
            signals = ["fts"]
        elif fts is None:
            degraded_reason = self._reason("fts", fts_err)
            results = _single_signal(vec, "vector")
            signals = ["vector"]
        else:
            results = fuse(
                fts, vec, self._config.fts_weight, self._config.vector_weight,
            )
            signals = ["fts", "vector"]

        if degraded_reason:
            logger.warning(f"[search] degraded: {degraded_reason}")
        results = self._finish(results, limit)
        logger.debug(
            f"[search] {query!r} limit={limit} → {len(results)} results "
            f"(fts={'-' if fts is None else len(fts)}, "
            f"vector={'-' if vec is None else len(vec)})"
        )
        return SearchResponse(
            results=results,
            degraded=degraded_reason is not None,
            degraded_reason=degraded_reason,
            signals=signals,
        )

    @staticmethod
    def _reason(side: str, err: object) -> str:
        if err is _TIMED_OUT:
            return f"{side} search timed out"
        if isinstance(err, EmbeddingError):
            return f"embedding unavailable: {err}"
        return f"{side} search failed: {err}"

    def _finish(self, results: List[SearchResult], limit: int) -> List[SearchResult]:
        if self._config.dedup_threshold is not None:
            results = suppress_near_duplicates(results, self._config.dedup_threshold)
        results = results[:limit]
        if self._config.max_context_chars is not None:
            results = fit_context(results, self._config.max_context_chars)
        return results

    # -- Single signal ---------------------------------------------------

    def search_fts(
        self, query: str, limit: Optional[int] = None,
        filters: Optional[SearchFilter] = None,
    ) -> SearchResponse:
        """Full-text ranking only, normalized to [0, 1]."""
        limit = self._check(query, limit)
        raw = self._store.full_text_search(
            query, limit * self._config.overfetch, filters=filters,
        )
        return SearchResponse(
            results=self._finish(_single_signal(raw, "fts"), limit),
            signals=["fts"],
        )

    def search_vector(
        self, query: str, limit: Optional[int] = None,
        filters: Optional[SearchFilter] = None,
    ) -> SearchResponse:
        """Vector ranking only, normalized to [0, 1].

        An embedding failure yields an empty degraded response.
        """
        limit = self._check(query, limit)
        try:
            embedding = self._provider.embed(query)
        except EmbeddingError as exc:
            reason = f"embedding unavailable: {exc}"
            logger.warning(f"[search] degraded: {reason}")
            return SearchResponse(degraded=True, degraded_reason=reason, signals=[])
        raw = self._store.vector_search(
            embedding, limit * self._config.overfetch, filters=filters,
        )
        return SearchResponse(
            results=self._finish(_single_signal(raw, "vector"), limit),
            signals=["vector"],
        )

    def get_recent(self, limit: Optional[int] = None) -> List[Memory]:
        """Most recently stored memories; not a ranking."""
        if limit is None:
            limit = self._config.default_limit
        return self._store.get_recent(min(int(limit), self._config.max_limit))
