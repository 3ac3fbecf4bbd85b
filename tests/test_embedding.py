"""
Tests for synmem.embedding — provider contract, hash provider, factory,
and the sentence-transformers provider with an injected model.
"""

import threading

import numpy as np
import pytest

from synmem.config import EmbeddingConfig
from synmem.embedding import (
    HashEmbeddingProvider,
    SentenceTransformerProvider,
    build_provider,
)
from synmem.errors import EmptyInput, InputTooLong, ProviderUnavailable
from synmem.similarity import cosine_similarity


# ---------------------------------------------------------------------------
# Hash provider
# ---------------------------------------------------------------------------


class TestHashProvider:
    def test_dimension(self):
        p = HashEmbeddingProvider(dimension=64)
        assert len(p.embed("alpha widget")) == 64
        assert p.dimension == 64

    def test_default_dimension(self):
        assert HashEmbeddingProvider().dimension == 384

    def test_deterministic(self):
        p = HashEmbeddingProvider()
        assert p.embed("alpha widget") == p.embed("alpha widget")

    def test_deterministic_across_instances(self):
        assert HashEmbeddingProvider().embed("beta") == HashEmbeddingProvider().embed("beta")

    def test_unit_norm(self):
        vec = HashEmbeddingProvider().embed("completely unrelated gamma text")
        assert np.linalg.norm(vec) == pytest.approx(1.0)

    def test_shared_words_are_closer(self):
        p = HashEmbeddingProvider()
        a = p.embed("alpha widget")
        b = p.embed("beta widget")
        c = p.embed("completely unrelated gamma text")
        assert cosine_similarity(a, b) > cosine_similarity(a, c)

    def test_case_insensitive(self):
        p = HashEmbeddingProvider()
        assert p.embed("Alpha Widget") == p.embed("alpha widget")

    def test_punctuation_only_text(self):
        vec = HashEmbeddingProvider().embed("!!!")
        assert np.linalg.norm(vec) == pytest.approx(1.0)

    def test_invalid_dimension(self):
        with pytest.raises(ValueError):
            HashEmbeddingProvider(dimension=0)

    def test_model_info(self):
        info = HashEmbeddingProvider(dimension=32, max_input_length=100).model_info()
        assert info == {"name": "hash-32", "dimensions": 32, "max_input_length": 100}


class TestProviderValidation:
    def test_empty_input(self):
        with pytest.raises(EmptyInput):
            HashEmbeddingProvider().embed("")

    def test_whitespace_input(self):
        with pytest.raises(EmptyInput):
            HashEmbeddingProvider().embed("   \n")

    def test_input_too_long(self):
        p = HashEmbeddingProvider(max_input_length=10)
        with pytest.raises(InputTooLong) as exc_info:
            p.embed("x" * 11)
        assert exc_info.value.max_length == 10
        assert exc_info.value.actual == 11

    def test_input_at_limit_ok(self):
        p = HashEmbeddingProvider(max_input_length=10)
        assert len(p.embed("x" * 10)) == p.dimension

    def test_batch_empty(self):
        assert HashEmbeddingProvider().embed_batch([]) == []

    def test_batch_preserves_order(self):
        p = HashEmbeddingProvider()
        texts = ["alpha", "beta", "gamma"]
        assert p.embed_batch(texts) == [p.embed(t) for t in texts]

    def test_batch_validates_every_text(self):
        with pytest.raises(EmptyInput):
            HashEmbeddingProvider().embed_batch(["alpha", ""])

    def test_concurrent_calls_agree(self):
        p = HashEmbeddingProvider()
        expected = p.embed("shared text")
        results = []

        def worker():
            results.append(p.embed("shared text"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert all(r == expected for r in results)


# ---------------------------------------------------------------------------
# sentence-transformers provider (model injected, no download)
# ---------------------------------------------------------------------------


class FakeModel:
    def __init__(self, dim=4):
        self.dim = dim
        self.encoded = []

    def get_sentence_embedding_dimension(self):
        return self.dim

    def encode(self, texts, **kwargs):
        self.encoded.extend(texts)
        return np.array([[float(len(t))] * self.dim for t in texts], dtype=np.float32)


class BrokenModel(FakeModel):
    def encode(self, texts, **kwargs):
        raise RuntimeError("CUDA out of memory")


class TestSentenceTransformerProvider:
    def test_injected_model(self):
        p = SentenceTransformerProvider(model=FakeModel(dim=4))
        assert p.dimension == 4
        assert p.embed("abc") == [3.0, 3.0, 3.0, 3.0]

    def test_batch(self):
        p = SentenceTransformerProvider(model=FakeModel(dim=2))
        assert p.embed_batch(["a", "bb"]) == [[1.0, 1.0], [2.0, 2.0]]

    def test_inference_failure_is_unavailable(self):
        p = SentenceTransformerProvider(model=BrokenModel())
        with pytest.raises(ProviderUnavailable):
            p.embed("alpha")

    def test_validation_happens_before_model(self):
        model = FakeModel()
        p = SentenceTransformerProvider(model=model, max_input_length=5)
        with pytest.raises(InputTooLong):
            p.embed("toolongtext")
        assert model.encoded == []

    def test_load_failure_is_unavailable(self, monkeypatch):
        p = SentenceTransformerProvider(model_name="no/such-model")

        def boom():
            raise ProviderUnavailable("cannot load model no/such-model")

        monkeypatch.setattr(p, "_load", boom)
        with pytest.raises(ProviderUnavailable):
            p.embed("alpha")

    def test_model_loaded_once(self, monkeypatch):
        p = SentenceTransformerProvider()
        loads = []

        def load():
            loads.append(1)
            return FakeModel()

        monkeypatch.setattr(p, "_load", load)
        p.embed("a")
        p.embed("b")
        assert loads == [1]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class TestBuildProvider:
    def test_default_is_hash(self):
        p = build_provider()
        assert isinstance(p, HashEmbeddingProvider)
        assert p.dimension == 384

    def test_hash_dimension_from_config(self):
        p = build_provider(EmbeddingConfig(provider="hash", dimension=16))
        assert p.dimension == 16

    def test_sentence_transformers_is_lazy(self):
        p = build_provider(EmbeddingConfig(provider="sentence-transformers"))
        assert isinstance(p, SentenceTransformerProvider)
        assert p._model is None
        assert p.model_name == "all-MiniLM-L6-v2"

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            build_provider(EmbeddingConfig(provider="bogus"))
