"""
Tests for synmem.search — normalization, weighted fusion, degraded mode,
deadlines, near-duplicate suppression.
"""

import time

import pytest

from synmem.config import SearchConfig, ValidationError
from synmem.errors import InvalidQuery, IoFailure, SearchError, SearchTimeout
from synmem.search import (
    HybridSearchCoordinator,
    fit_context,
    fuse,
    normalize_results,
    suppress_near_duplicates,
)
from synmem.types import Memory, SearchFilter, SearchResult


def _r(memory_id, score, seq=0, snippet=None):
    return SearchResult(
        memory_id=memory_id, snippet=snippet or memory_id, score=score, sequence=seq,
    )


class BrokenFtsStore:
    """Store wrapper whose full-text primitive always fails."""

    def __init__(self, inner):
        self.inner = inner

    def full_text_search(self, query, limit, filters=None):
        raise IoFailure("disk unplugged")

    def __getattr__(self, name):
        return getattr(self.inner, name)


# ---------------------------------------------------------------------------
# normalize_results / fuse
# ---------------------------------------------------------------------------


class TestNormalizeResults:
    def test_min_max(self):
        pairs = normalize_results([_r("a", 10.0), _r("b", 5.0), _r("c", 0.0)])
        assert [(r.memory_id, s) for r, s in pairs] == [("a", 1.0), ("b", 0.5), ("c", 0.0)]

    def test_single_result_is_one(self):
        assert normalize_results([_r("a", 0.001)])[0][1] == 1.0

    def test_duplicate_ids_keep_best(self):
        pairs = normalize_results([_r("a", 1.0), _r("b", 3.0), _r("a", 5.0)])
        assert [(r.memory_id, s) for r, s in pairs] == [("a", 1.0), ("b", 0.5)]

    def test_ties_prefer_recent(self):
        pairs = normalize_results([_r("old", 2.0, seq=1), _r("new", 2.0, seq=2)])
        assert [r.memory_id for r, _ in pairs] == ["new", "old"]


class TestFuse:
    def test_both_lists(self):
        out = fuse([_r("x", 4.0), _r("y", 2.0)], [_r("x", 0.2), _r("y", 0.9)])
        by_id = {r.memory_id: r for r in out}
        assert by_id["x"].score == pytest.approx(0.4 * 1.0 + 0.6 * 0.0)
        assert by_id["y"].score == pytest.approx(0.4 * 0.0 + 0.6 * 1.0)
        assert [r.memory_id for r in out] == ["y", "x"]
        assert all(r.signal == "hybrid" for r in out)

    def test_single_list_weighted(self):
        out = fuse([_r("x", 3.0)], [_r("v", 0.5)])
        by_id = {r.memory_id: r for r in out}
        assert by_id["x"].score == pytest.approx(0.4)
        assert by_id["x"].signal == "fts"
        assert by_id["v"].score == pytest.approx(0.6)
        assert by_id["v"].signal == "vector"

    def test_component_scores_and_ranks(self):
        out = fuse([_r("x", 4.0), _r("y", 2.0)], [_r("y", 0.9), _r("x", 0.1)])
        x = next(r for r in out if r.memory_id == "x")
        assert x.fts_score == 1.0
        assert x.fts_rank == 1
        assert x.vector_score == 0.0
        assert x.vector_rank == 2

    def test_dominance(self):
        # Top of both lists beats anything present in only one of them.
        fts = [_r("both", 9.0), _r("fts-only", 8.0), _r("low", 1.0)]
        vec = [_r("both", 0.95), _r("vec-only", 0.9), _r("low", 0.1)]
        out = fuse(fts, vec)
        assert out[0].memory_id == "both"
        assert out[0].score == pytest.approx(1.0)

    def test_scores_bounded(self):
        fts = [_r(f"f{i}", float(i * 3 - 7)) for i in range(6)]
        vec = [_r(f"f{i}", (i - 3) / 4.0) for i in range(0, 6, 2)] + [_r("v", -0.9)]
        out = fuse(fts, vec)
        assert all(0.0 <= r.score <= 1.0 for r in out)

    def test_custom_weights(self):
        out = fuse([_r("x", 1.0)], [_r("x", 1.0)], fts_weight=0.5, vector_weight=0.5)
        assert out[0].score == pytest.approx(1.0)

    def test_empty(self):
        assert fuse([], []) == []

    def test_inputs_untouched(self):
        fts = [_r("x", 4.0)]
        fuse(fts, [_r("x", 0.3)])
        assert fts[0].score == 4.0
        assert fts[0].signal == "fts"


class TestSuppressNearDuplicates:
    def test_drops_near_copy(self):
        results = [
            _r("a", 0.9, snippet="release notes for version two"),
            _r("b", 0.8, snippet="Release notes for version two!"),
            _r("c", 0.7, snippet="meeting agenda"),
        ]
        kept = suppress_near_duplicates(results, 0.8)
        assert [r.memory_id for r in kept] == ["a", "c"]

    def test_threshold_above_similarity_keeps_all(self):
        results = [_r("a", 0.9, snippet="alpha widget"), _r("b", 0.8, snippet="beta widget")]
        assert len(suppress_near_duplicates(results, 0.5)) == 2


class TestFitContext:
    def test_all_fit(self):
        results = [_r(c, 1.0, snippet=c * 50) for c in "abc"]
        assert fit_context(results, 150) == results

    def test_small_remainder_dropped(self):
        results = [_r(c, 1.0, snippet=c * 50) for c in "abc"]
        kept = fit_context(results, 120)
        assert [r.memory_id for r in kept] == ["a", "b"]

    def test_overflow_truncated_and_ends_list(self):
        results = [_r(c, 1.0, snippet=c * 300) for c in "abc"]
        kept = fit_context(results, 500)
        assert [r.memory_id for r in kept] == ["a", "b"]
        assert kept[1].snippet == "b" * 197 + "..."
        assert sum(len(r.snippet) for r in kept) == 500

    def test_inputs_untouched(self):
        results = [_r("a", 1.0, snippet="a" * 300), _r("b", 1.0, snippet="b" * 300)]
        fit_context(results, 500)
        assert results[1].snippet == "b" * 300


# ---------------------------------------------------------------------------
# Coordinator: scenario
# ---------------------------------------------------------------------------


class TestHybridSearch:
    def test_alpha_ranks_a_then_b(self, coordinator):
        resp = coordinator.search("alpha", 2)
        assert resp.ids == ["A", "B"]
        assert resp[0].score >= resp[1].score
        assert resp[0].signal == "hybrid"
        assert resp[1].signal == "vector"
        assert not resp.degraded
        assert resp.signals == ["fts", "vector"]

    def test_match_in_both_scores_one(self, coordinator):
        resp = coordinator.search("alpha", 3)
        assert resp[0].score == pytest.approx(1.0)

    def test_gamma(self, coordinator):
        assert coordinator.search("gamma", 1).ids == ["C"]

    def test_vector_only_match(self, coordinator):
        resp = coordinator.search("nothing matches this", 3)
        assert resp.ids == ["B", "A", "C"]
        assert all(r.signal == "vector" for r in resp)
        assert resp[0].score == pytest.approx(0.6)
        assert not resp.degraded

    def test_results_bounded(self, coordinator):
        for query in ("alpha", "widget", "gamma", "nothing matches this"):
            resp = coordinator.search(query, 10)
            assert len(resp) <= 10
            assert len(set(resp.ids)) == len(resp)
            assert all(0.0 <= r.score <= 1.0 for r in resp)
            scores = [r.score for r in resp]
            assert scores == sorted(scores, reverse=True)

    def test_limit(self, coordinator):
        assert len(coordinator.search("widget", 1)) == 1

    def test_limit_clamped_to_max(self, scenario_store, provider):
        with HybridSearchCoordinator(
            scenario_store, provider, SearchConfig(max_limit=2, default_limit=2),
        ) as c:
            assert len(c.search("widget", 50)) == 2

    def test_default_limit(self, scenario_store, provider):
        with HybridSearchCoordinator(
            scenario_store, provider, SearchConfig(default_limit=1),
        ) as c:
            assert len(c.search("widget")) == 1

    def test_overfetch(self, scenario_store, provider):
        calls = []

        class Recording:
            def full_text_search(self, query, limit, filters=None):
                calls.append(("fts", limit, filters))
                return scenario_store.full_text_search(query, limit, filters)

            def vector_search(self, embedding, limit, filters=None):
                calls.append(("vector", limit, filters))
                return scenario_store.vector_search(embedding, limit, filters)

        with HybridSearchCoordinator(Recording(), provider, SearchConfig(overfetch=4)) as c:
            c.search("alpha", 2)
        assert sorted(calls) == [("fts", 8, None), ("vector", 8, None)]

    def test_filters_reach_both_rankings(self, scenario_store, provider):
        calls = []

        class Recording:
            def full_text_search(self, query, limit, filters=None):
                calls.append(("fts", filters))
                return scenario_store.full_text_search(query, limit, filters)

            def vector_search(self, embedding, limit, filters=None):
                calls.append(("vector", filters))
                return scenario_store.vector_search(embedding, limit, filters)

        wanted = SearchFilter.build(tags=["greek"])
        with HybridSearchCoordinator(Recording(), provider) as c:
            resp = c.search("alpha", 3, filters=wanted)
        assert sorted(calls) == [("fts", wanted), ("vector", wanted)]
        assert resp.ids == []

    @pytest.mark.parametrize("query", ["", "   ", None])
    def test_empty_query(self, coordinator, query):
        with pytest.raises(InvalidQuery):
            coordinator.search(query, 5)

    def test_zero_limit(self, coordinator):
        with pytest.raises(InvalidQuery):
            coordinator.search("alpha", 0)

    def test_invalid_config(self, scenario_store, provider):
        with pytest.raises(ValidationError):
            HybridSearchCoordinator(scenario_store, provider, SearchConfig(overfetch=1))

    def test_dedup_configured(self, store, provider):
        store.store_memory(Memory(id="A", content="alpha widget"), [1.0, 0.1, 0.0])
        store.store_memory(Memory(id="A2", content="alpha widget!"), [1.0, 0.1, 0.0])
        with HybridSearchCoordinator(
            store, provider, SearchConfig(dedup_threshold=0.9),
        ) as c:
            assert len(c.search("alpha", 5)) == 1
        with HybridSearchCoordinator(
            store, provider, SearchConfig(dedup_threshold=None),
        ) as c:
            assert len(c.search("alpha", 5)) == 2

    def test_dedup_on_by_default(self, store, provider):
        store.store_memory(Memory(id="A", content="alpha widget"), [1.0, 0.1, 0.0])
        store.store_memory(Memory(id="A2", content="Alpha widget!"), [1.0, 0.1, 0.0])
        with HybridSearchCoordinator(store, provider) as c:
            assert len(c.search("alpha", 5)) == 1
            assert len(c.search_fts("alpha", 5)) == 1

    def test_search_after_close(self, scenario_store, provider):
        c = HybridSearchCoordinator(scenario_store, provider)
        c.close()
        with pytest.raises(SearchError):
            c.search("alpha", 2)


# ---------------------------------------------------------------------------
# Coordinator: degraded mode
# ---------------------------------------------------------------------------


class TestDegradedMode:
    def test_embedding_failure_falls_back_to_fts(self, scenario_store, failing_provider):
        with HybridSearchCoordinator(scenario_store, failing_provider) as c:
            resp = c.search("alpha widget", 5)
        assert resp.degraded
        assert "embedding unavailable" in resp.degraded_reason
        assert resp.signals == ["fts"]
        assert resp.ids[0] == "A"
        assert set(resp.ids) == {"A", "B"}
        assert all(r.signal == "fts" for r in resp)
        assert resp[0].score == pytest.approx(1.0)

    def test_unknown_text_degrades(self, coordinator):
        # Provider has no vector for this text
        resp = coordinator.search("beta", 5)
        assert resp.degraded
        assert resp.ids == ["B"]

    def test_fts_failure_falls_back_to_vector(self, scenario_store, provider):
        with HybridSearchCoordinator(BrokenFtsStore(scenario_store), provider) as c:
            resp = c.search("alpha", 3)
        assert resp.degraded
        assert "fts search failed" in resp.degraded_reason
        assert resp.ids == ["A", "B", "C"]
        assert all(r.signal == "vector" for r in resp)

    def test_both_fail_raises_fts_error(self, scenario_store, failing_provider):
        with HybridSearchCoordinator(BrokenFtsStore(scenario_store), failing_provider) as c:
            with pytest.raises(IoFailure):
                c.search("alpha", 3)

    def test_search_vector_embedding_failure(self, scenario_store, failing_provider):
        with HybridSearchCoordinator(scenario_store, failing_provider) as c:
            resp = c.search_vector("alpha", 3)
        assert resp.degraded
        assert len(resp) == 0


# ---------------------------------------------------------------------------
# Coordinator: deadlines
# ---------------------------------------------------------------------------


class TestDeadline:
    def test_slow_vector_degrades_to_fts(self, make_slow_store, provider):
        with HybridSearchCoordinator(make_slow_store(vector_delay=2.0), provider) as c:
            start = time.monotonic()
            resp = c.search("alpha", 3, timeout=0.3)
            elapsed = time.monotonic() - start
        assert elapsed < 1.5
        assert resp.degraded
        assert resp.degraded_reason == "vector search timed out"
        assert resp.ids == ["A"]

    def test_slow_embedding_degrades_to_fts(self, scenario_store, make_provider):
        slow = make_provider(delay=2.0)
        with HybridSearchCoordinator(scenario_store, slow) as c:
            resp = c.search("alpha", 3, timeout=0.3)
        assert resp.degraded
        assert resp.ids == ["A"]

    def test_slow_fts_degrades_to_vector(self, make_slow_store, provider):
        with HybridSearchCoordinator(make_slow_store(fts_delay=2.0), provider) as c:
            resp = c.search("alpha", 3, timeout=0.3)
        assert resp.degraded
        assert resp.degraded_reason == "fts search timed out"
        assert resp.signals == ["vector"]
        assert resp.ids[0] == "A"

    def test_both_slow_times_out(self, make_slow_store, provider):
        with HybridSearchCoordinator(
            make_slow_store(fts_delay=2.0, vector_delay=2.0), provider,
        ) as c:
            with pytest.raises(SearchTimeout):
                c.search("alpha", 3, timeout=0.2)

    def test_config_timeout(self, make_slow_store, provider):
        with HybridSearchCoordinator(
            make_slow_store(vector_delay=2.0), provider, SearchConfig(timeout_s=0.3),
        ) as c:
            assert c.search("alpha", 3).degraded

    def test_abandoned_sub_searches_do_not_starve_later_ones(self, make_slow_store, provider):
        with HybridSearchCoordinator(make_slow_store(fts_delay=3.0), provider) as c:
            start = time.monotonic()
            responses = [c.search("alpha", 2, timeout=0.3) for _ in range(5)]
            elapsed = time.monotonic() - start
        assert elapsed < 2.5
        for resp in responses:
            assert resp.degraded
            assert resp.degraded_reason == "fts search timed out"
            assert resp.ids == ["A", "B"]

    def test_fast_enough_not_degraded(self, make_slow_store, provider):
        with HybridSearchCoordinator(make_slow_store(vector_delay=0.05), provider) as c:
            resp = c.search("alpha", 2, timeout=5.0)
        assert not resp.degraded
        assert resp.ids == ["A", "B"]


# ---------------------------------------------------------------------------
# Coordinator: single-signal and recent
# ---------------------------------------------------------------------------


class TestContextBudget:
    def _store_long(self, store, n=4):
        for i in range(n):
            words = " ".join(f"w{i}x{j}" for j in range(60))
            store.store_memory(Memory(id=f"L{i}", content=f"widget {words}"), [1.0, 0.0, 0.0])

    def test_budget_caps_response(self, store, provider):
        self._store_long(store)
        with HybridSearchCoordinator(
            store, provider, SearchConfig(max_context_chars=450),
        ) as c:
            resp = c.search_fts("widget", 4)
        assert len(resp) == 2
        assert sum(len(r.snippet) for r in resp) <= 450

    def test_budget_disabled(self, store, provider):
        self._store_long(store)
        with HybridSearchCoordinator(
            store, provider, SearchConfig(max_context_chars=None),
        ) as c:
            assert len(c.search_fts("widget", 4)) == 4

    def test_default_budget_leaves_small_responses_alone(self, coordinator):
        assert coordinator.search("alpha", 3).ids == ["A", "B", "C"]


class TestSingleSignal:
    def test_search_fts(self, coordinator):
        resp = coordinator.search_fts("widget", 5)
        assert set(resp.ids) == {"A", "B"}
        assert all(r.signal == "fts" for r in resp)
        assert resp.signals == ["fts"]
        assert max(r.score for r in resp) == 1.0

    def test_search_vector(self, coordinator):
        resp = coordinator.search_vector("alpha", 5)
        assert resp.ids == ["A", "B", "C"]
        assert [r.score for r in resp] == pytest.approx([1.0, 0.953, 0.0], abs=1e-3)

    def test_get_recent(self, coordinator):
        assert [m.id for m in coordinator.get_recent(2)] == ["C", "B"]

    def test_get_recent_clamped(self, scenario_store, provider):
        with HybridSearchCoordinator(
            scenario_store, provider, SearchConfig(max_limit=1, default_limit=1),
        ) as c:
            assert len(c.get_recent(10)) == 1
