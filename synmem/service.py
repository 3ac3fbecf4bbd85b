"""
Memory Query Service — the inbound surface.

A thin validating facade over the coordinator and the store: limits are
clamped to [1, max_limit], empty queries and malformed filters are
rejected before any work is done, and stray internal failures are translated into the SynMemError
taxonomy.  The service holds no state beyond its collaborators.
"""

from __future__ import annotations

import functools
import logging
import sqlite3
from typing import Any, Dict, List, Optional, Sequence

from synmem.config import SynMemConfig
from synmem.embedding import EmbeddingProvider, build_provider
from synmem.errors import EmptyInput, InvalidQuery, IoFailure, NotFound, SynMemError
from synmem.search import HybridSearchCoordinator
from synmem.store import MemoryStore, StorageEngine
from synmem.types import DateLike, Memory, SearchFilter, SearchResponse, SearchResult

logger = logging.getLogger(__name__)


def _translate_errors(fn):
    """Map internal failures onto the caller-facing error kinds."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except SynMemError:
            raise
        except sqlite3.Error as exc:
            logger.error(f"{fn.__name__}: database error: {exc}")
            raise IoFailure(f"{fn.__name__}: {exc}") from exc
        except ValueError as exc:
            raise InvalidQuery(str(exc)) from exc

    return wrapper


class MemoryQueryService:
    """Validating facade used by the CLI and external collaborators."""

    def __init__(
        self,
        coordinator: HybridSearchCoordinator,
        store: Optional[StorageEngine] = None,
        provider: Optional[EmbeddingProvider] = None,
    ):
        self._coordinator = coordinator
        self._store = store or coordinator.store
        self._provider = provider or coordinator.provider
        self._config = coordinator.config

    @property
    def store(self) -> StorageEngine:
        return self._store

    @property
    def provider(self) -> EmbeddingProvider:
        return self._provider

    # -- Parameter handling ----------------------------------------------

    def clamp_limit(self, limit: Optional[int]) -> int:
        """None -> default_limit; otherwise clamp into [1, max_limit]."""
        if limit is None:
            return self._config.default_limit
        try:
            limit = int(limit)
        except (TypeError, ValueError) as exc:
            raise InvalidQuery(f"limit must be an integer, got {limit!r}") from exc
        return max(1, min(limit, self._config.max_limit))

    @staticmethod
    def _require_query(query: str) -> str:
        if not isinstance(query, str) or not query.strip():
            raise InvalidQuery("query must be non-empty")
        return query

    # -- Queries ---------------------------------------------------------

    @_translate_errors
    def search(
        self, query: str, limit: Optional[int] = None,
        timeout: Optional[float] = None,
        tags: Optional[Sequence[str]] = None,
        from_date: Optional[DateLike] = None,
        to_date: Optional[DateLike] = None,
    ) -> SearchResponse:
        """Hybrid search (full-text + vector, fused).

        ``tags`` keeps memories carrying every listed tag; ``from_date``
        and ``to_date`` bound created_at inclusively (ISO-8601 strings or
        datetimes, naive values read as UTC).

        Raises:
            InvalidQuery: Empty query, unparseable date, from_date > to_date.
        """
        query = self._require_query(query)
        filters = SearchFilter.build(tags, from_date, to_date)
        return self._coordinator.search(
            query, self.clamp_limit(limit), timeout=timeout, filters=filters,
        )

    @_translate_errors
    def search_fts(
        self, query: str, limit: Optional[int] = None,
        tags: Optional[Sequence[str]] = None,
        from_date: Optional[DateLike] = None,
        to_date: Optional[DateLike] = None,
    ) -> SearchResponse:
        query = self._require_query(query)
        return self._coordinator.search_fts(
            query, self.clamp_limit(limit),
            filters=SearchFilter.build(tags, from_date, to_date),
        )

    @_translate_errors
    def search_vector(
        self, query: str, limit: Optional[int] = None,
        tags: Optional[Sequence[str]] = None,
        from_date: Optional[DateLike] = None,
        to_date: Optional[DateLike] = None,
    ) -> SearchResponse:
        query = self._require_query(query)
        return self._coordinator.search_vector(
            query, self.clamp_limit(limit),
            filters=SearchFilter.build(tags, from_date, to_date),
        )

    @_translate_errors
    def get_recent(self, limit: Optional[int] = None) -> SearchResponse:
        """Most recently stored first, shaped like a search response.

        Scores fall linearly with position: ``1 - rank / limit``.
        """
        limit = self.clamp_limit(limit)
        memories = self._coordinator.get_recent(limit)
        results = [
            SearchResult(
                memory_id=m.id,
                snippet=m.snippet(self._config.snippet_chars),
                score=1.0 - rank / limit,
                signal="recent",
                title=m.title,
                source=m.source,
                timestamp=m.updated_at,
                sequence=len(memories) - rank,
            )
            for rank, m in enumerate(memories)
        ]
        return SearchResponse(results=results, signals=["recent"])

    @_translate_errors
    def get_memory(self, memory_id: str) -> Memory:
        """Point lookup.

        Raises:
            NotFound: No memory under ``memory_id``.
        """
        memory = self._store.get_memory(memory_id)
        if memory is None:
            raise NotFound(memory_id)
        return memory

    # -- Mutations -------------------------------------------------------

    @_translate_errors
    def store_memory(
        self,
        content: str,
        source: str = "",
        memory_id: Optional[str] = None,
        title: str = "",
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Memory:
        """Embed then store a memory.

        The embedding is computed before the store's write lock is taken.
        An embedding failure is fatal: a memory is never stored without
        its vector.

        Raises:
            EmbeddingError: The provider rejected the text or is down.
            InvalidQuery: Non-JSON metadata.
            StorageError: The write failed (nothing was persisted).
        """
        if not isinstance(content, str) or not content.strip():
            raise EmptyInput("memory content must be non-empty")
        kwargs: Dict[str, Any] = {
            "content": content,
            "source": source,
            "title": title,
            "tags": list(tags or []),
            "metadata": dict(metadata or {}),
        }
        if memory_id is not None:
            kwargs["id"] = memory_id
        memory = Memory(**kwargs)
        embedding = self._provider.embed(memory.content)
        stored = self._store.store_memory(memory, embedding)
        logger.debug(f"Stored memory {stored.id} ({len(stored.content)} chars)")
        return stored

    @_translate_errors
    def delete_memory(self, memory_id: str) -> bool:
        """Remove a memory from both indices. False if it did not exist."""
        return self._store.delete_memory(memory_id)

    @_translate_errors
    def stats(self) -> Dict[str, Any]:
        info = dict(self._store.stats())
        info["provider"] = self._provider.model_name
        info["search"] = {
            "fts_weight": self._config.fts_weight,
            "vector_weight": self._config.vector_weight,
            "overfetch": self._config.overfetch,
            "max_limit": self._config.max_limit,
            "dedup_threshold": self._config.dedup_threshold,
            "max_context_chars": self._config.max_context_chars,
        }
        return info

    def close(self) -> None:
        self._coordinator.close()
        self._store.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def open_service(
    config: Optional[SynMemConfig] = None,
    provider: Optional[EmbeddingProvider] = None,
) -> MemoryQueryService:
    """Wire store, provider and coordinator from configuration.

    The store's dimension follows the provider's, so a persisted store
    built with another dimension fails to open with DimensionMismatch.
    """
    config = config or SynMemConfig()
    provider = provider or build_provider(config.embedding)
    store = MemoryStore(
        db_path=config.store.db_path,
        dimension=provider.dimension,
        model_name=provider.model_name,
        wal_mode=config.store.wal_mode,
        fts_tokenizer=config.store.fts_tokenizer,
        busy_timeout_ms=config.store.busy_timeout_ms,
        io_retries=config.store.io_retries,
        io_backoff_ms=config.store.io_backoff_ms,
        snippet_chars=config.search.snippet_chars,
        max_readers=config.store.max_readers,
    )
    try:
        coordinator = HybridSearchCoordinator(store, provider, config.search)
    except Exception:
        store.close()
        raise
    return MemoryQueryService(coordinator, store, provider)
