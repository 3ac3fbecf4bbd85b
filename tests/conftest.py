"""
Shared fixtures and test doubles for synmem tests.
"""

import threading
import time

import pytest

from synmem.config import SearchConfig
from synmem.embedding import EmbeddingProvider
from synmem.errors import ProviderUnavailable
from synmem.search import HybridSearchCoordinator
from synmem.service import MemoryQueryService
from synmem.store import MemoryStore
from synmem.types import Memory


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class StaticEmbeddingProvider(EmbeddingProvider):
    """Looks vectors up in a fixed table; unknown text is unavailable."""

    def __init__(self, table, dimension=3, delay=0.0):
        self.table = {k: list(v) for k, v in table.items()}
        self._dimension = dimension
        self.model_name = "static-test"
        self.delay = delay
        self.calls = 0
        self._calls_lock = threading.Lock()

    @property
    def dimension(self):
        return self._dimension

    def _embed_many(self, texts):
        with self._calls_lock:
            self.calls += len(texts)
        if self.delay:
            time.sleep(self.delay)
        out = []
        for t in texts:
            if t not in self.table:
                raise ProviderUnavailable(f"no vector for {t!r}")
            out.append(list(self.table[t]))
        return out


class FailingEmbeddingProvider(EmbeddingProvider):
    """Every call fails as if the model service were down."""

    model_name = "failing-test"

    def __init__(self, dimension=3):
        self._dimension = dimension

    @property
    def dimension(self):
        return self._dimension

    def _embed_many(self, texts):
        raise ProviderUnavailable("model service unreachable")


class SlowStore:
    """Delegating store wrapper that delays one or both ranking primitives."""

    def __init__(self, inner, fts_delay=0.0, vector_delay=0.0):
        self.inner = inner
        self.fts_delay = fts_delay
        self.vector_delay = vector_delay

    def full_text_search(self, query, limit, filters=None):
        time.sleep(self.fts_delay)
        return self.inner.full_text_search(query, limit, filters)

    def vector_search(self, embedding, limit, filters=None):
        time.sleep(self.vector_delay)
        return self.inner.vector_search(embedding, limit, filters)

    def __getattr__(self, name):
        return getattr(self.inner, name)


# ---------------------------------------------------------------------------
# Scenario data: A and B close in vector space, C far away
# ---------------------------------------------------------------------------

SCENARIO = {
    "A": ("alpha widget", [1.0, 0.1, 0.0]),
    "B": ("beta widget", [0.9, 0.3, 0.0]),
    "C": ("completely unrelated gamma text", [0.0, 0.0, 1.0]),
}

QUERY_VECTORS = {
    "alpha": [1.0, 0.0, 0.0],
    "widget": [0.95, 0.2, 0.0],
    "gamma": [0.0, 0.0, 1.0],
    "nothing matches this": [0.0, 1.0, 0.0],
}


def _table():
    table = {content: vec for content, vec in SCENARIO.values()}
    table.update(QUERY_VECTORS)
    return table


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def provider():
    return StaticEmbeddingProvider(_table())


@pytest.fixture
def make_provider():
    """Factory: static provider with optional delay and extra vectors."""
    def _make(delay=0.0, extra=None, dimension=3):
        table = _table()
        table.update(extra or {})
        return StaticEmbeddingProvider(table, dimension=dimension, delay=delay)
    return _make


@pytest.fixture
def failing_provider():
    return FailingEmbeddingProvider()


@pytest.fixture
def store():
    """In-memory store with a fixed 3-dimension embedding space."""
    s = MemoryStore(":memory:", dimension=3, model_name="static-test")
    yield s
    s.close()


@pytest.fixture
def disk_store(tmp_path):
    """Disk-backed (WAL) store."""
    s = MemoryStore(str(tmp_path / "mem.db"), dimension=3, model_name="static-test")
    yield s
    s.close()


def _populate(s):
    for memory_id, (content, vec) in SCENARIO.items():
        s.store_memory(
            Memory(id=memory_id, content=content, source=f"https://example.com/{memory_id}"),
            vec,
        )
    return s


@pytest.fixture
def scenario_store(store):
    """Store holding A, B, C in that order."""
    return _populate(store)


@pytest.fixture
def scenario_disk_store(disk_store):
    return _populate(disk_store)


@pytest.fixture
def make_slow_store(scenario_store):
    """Factory: scenario store whose ranking primitives sleep first."""
    def _make(fts_delay=0.0, vector_delay=0.0):
        return SlowStore(scenario_store, fts_delay=fts_delay, vector_delay=vector_delay)
    return _make


@pytest.fixture
def coordinator(scenario_store, provider):
    c = HybridSearchCoordinator(scenario_store, provider, SearchConfig())
    yield c
    c.close()


@pytest.fixture
def service(scenario_store, provider):
    c = HybridSearchCoordinator(scenario_store, provider, SearchConfig())
    svc = MemoryQueryService(c, scenario_store, provider)
    yield svc
    c.close()
