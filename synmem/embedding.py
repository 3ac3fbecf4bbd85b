"""
Embedding providers: text in, fixed-length float vector out.

Two variants behind one abstract interface:

    HashEmbeddingProvider          deterministic feature hashing (numpy);
                                   no model download, used by tests and
                                   as the default offline provider
    SentenceTransformerProvider    sentence-transformers model, loaded
                                   lazily on first use

The variant is chosen once, from explicit configuration, by
build_provider().  Providers hold no mutable per-call state, so one
instance can serve concurrent embed() calls.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import numpy as np

from synmem.config import EmbeddingConfig
from synmem.errors import EmptyInput, InputTooLong, ProviderUnavailable
from synmem.similarity import normalize, tokenize

logger = logging.getLogger(__name__)

DEFAULT_DIMENSION = 384
DEFAULT_MODEL = "all-MiniLM-L6-v2"
DEFAULT_MAX_INPUT = 8192


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class EmbeddingProvider(ABC):
    """Abstract interface for embedding providers."""

    model_name: str = ""
    max_input_length: int = DEFAULT_MAX_INPUT

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Length of every vector this provider returns."""

    @abstractmethod
    def _embed_many(self, texts: List[str]) -> List[List[float]]:
        """Embed already-validated texts."""

    def _validate(self, text: str) -> None:
        if not isinstance(text, str) or not text.strip():
            raise EmptyInput("cannot embed empty text")
        if len(text) > self.max_input_length:
            raise InputTooLong(self.max_input_length, len(text))

    def embed(self, text: str) -> List[float]:
        """Embed one text.

        Raises:
            EmptyInput: text is empty or whitespace only.
            InputTooLong: text exceeds max_input_length characters.
            ProviderUnavailable: the model cannot be reached.
        """
        self._validate(text)
        return self._embed_many([text])[0]

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed several texts, preserving order.  Empty in, empty out."""
        if not texts:
            return []
        for t in texts:
            self._validate(t)
        return self._embed_many(list(texts))

    def model_info(self) -> Dict[str, Any]:
        return {
            "name": self.model_name,
            "dimensions": self.dimension,
            "max_input_length": self.max_input_length,
        }


# ---------------------------------------------------------------------------
# Deterministic hash provider
# ---------------------------------------------------------------------------


def _bucket(feature: str, dimension: int):
    """Map a feature string to (index, sign) with blake2b."""
    digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
    value = int.from_bytes(digest, "little")
    sign = 1.0 if (value >> 63) & 1 == 0 else -1.0
    return value % dimension, sign


class HashEmbeddingProvider(EmbeddingProvider):
    """Deterministic embeddings by feature hashing.

    Each normalized word contributes weight 1.0 and each of its character
    trigrams weight 0.5 to a signed bucket; the result is L2-normalized.
    Texts sharing words land close together, unrelated texts are nearly
    orthogonal.  The output depends only on the input text and dimension.
    """

    TRIGRAM_WEIGHT = 0.5

    def __init__(
        self,
        dimension: int = DEFAULT_DIMENSION,
        max_input_length: int = DEFAULT_MAX_INPUT,
    ):
        if dimension <= 0:
            raise ValueError(f"dimension must be positive, got {dimension}")
        self._dimension = dimension
        self.max_input_length = max_input_length
        self.model_name = f"hash-{dimension}"

    @property
    def dimension(self) -> int:
        return self._dimension

    def _vector(self, text: str) -> np.ndarray:
        vec = np.zeros(self._dimension, dtype=np.float64)
        tokens = tokenize(normalize(text))
        if not tokens:
            # Punctuation-only text still gets a stable vector
            tokens = [text.strip()]
        for tok in tokens:
            idx, sign = _bucket("w:" + tok, self._dimension)
            vec[idx] += sign
            padded = f"#{tok}#"
            for i in range(len(padded) - 2):
                idx, sign = _bucket("c:" + padded[i:i + 3], self._dimension)
                vec[idx] += sign * self.TRIGRAM_WEIGHT
        norm = float(np.linalg.norm(vec))
        if norm > 0.0:
            vec /= norm
        return vec

    def _embed_many(self, texts: List[str]) -> List[List[float]]:
        return [self._vector(t).tolist() for t in texts]


# ---------------------------------------------------------------------------
# sentence-transformers provider
# ---------------------------------------------------------------------------


class SentenceTransformerProvider(EmbeddingProvider):
    """Embeddings from a sentence-transformers model.

    The model is imported and loaded on first use, once, under a lock.
    Any load or inference failure surfaces as ProviderUnavailable.
    A preloaded ``model`` object (anything with ``encode`` and
    ``get_sentence_embedding_dimension``) may be injected.
    """

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        device: Optional[str] = None,
        max_input_length: int = DEFAULT_MAX_INPUT,
        model: Any = None,
    ):
        self.model_name = model_name
        self.device = device
        self.max_input_length = max_input_length
        self._model = model
        self._dimension: Optional[int] = None
        self._init_lock = threading.Lock()

    @property
    def model(self):
        if self._model is None:
            with self._init_lock:
                if self._model is None:
                    self._model = self._load()
        return self._model

    def _load(self):
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as exc:
            raise ProviderUnavailable(
                "sentence-transformers is not installed; "
                "install with: pip install synmem[models]"
            ) from exc
        logger.info("Loading embedding model %s", self.model_name)
        try:
            return SentenceTransformer(self.model_name, device=self.device)
        except Exception as exc:
            raise ProviderUnavailable(
                f"cannot load model {self.model_name}: {exc}"
            ) from exc

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            dim = self.model.get_sentence_embedding_dimension()
            if not dim:
                dim = len(self._embed_many(["dimension probe"])[0])
            self._dimension = int(dim)
        return self._dimension

    def _embed_many(self, texts: List[str]) -> List[List[float]]:
        model = self.model
        try:
            arr = model.encode(texts, convert_to_numpy=True, show_progress_bar=False)
        except Exception as exc:
            raise ProviderUnavailable(f"embedding failed: {exc}") from exc
        arr = np.asarray(arr, dtype=np.float32)
        if arr.ndim == 1:
            arr = arr.reshape(1, -1)
        return [row.astype(float).tolist() for row in arr]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_provider(config: Optional[EmbeddingConfig] = None) -> EmbeddingProvider:
    """Construct the provider named by ``config.provider``.

    Raises:
        ValueError: Unknown provider name.
    """
    config = config or EmbeddingConfig()
    if config.provider == "hash":
        return HashEmbeddingProvider(
            dimension=config.dimension,
            max_input_length=config.max_input_length,
        )
    if config.provider == "sentence-transformers":
        return SentenceTransformerProvider(
            model_name=config.model_name,
            device=config.device,
            max_input_length=config.max_input_length,
        )
    raise ValueError(
        f"Unknown embedding provider {config.provider!r}; "
        "expected 'hash' or 'sentence-transformers'"
    )
