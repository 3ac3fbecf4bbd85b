"""
Text and vector similarity primitives for synmem.

Provides the measures used by the search coordinator:
- **Token Jaccard**: set-overlap of word tokens (order-insensitive),
  used for optional near-duplicate suppression.
- **Cosine similarity**: angle between embedding vectors (numpy).
- **Min-max normalization**: rescales a ranking's raw scores into [0, 1]
  so that FTS and vector scores can be fused.
"""

from __future__ import annotations

import math
import re
import string
from typing import List, Sequence

import numpy as np

# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

# Precompiled translation table: strip all punctuation
_PUNCT_TABLE = str.maketrans("", "", string.punctuation)

# Collapse runs of whitespace
_WS_RE = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Normalize text for similarity comparison.

    Steps:
      1. Lowercase
      2. Strip punctuation
      3. Collapse whitespace
      4. Strip leading/trailing whitespace

    Returns empty string for empty/whitespace-only input.
    """
    text = text.lower()
    text = text.translate(_PUNCT_TABLE)
    text = _WS_RE.sub(" ", text)
    return text.strip()


def tokenize(text: str) -> list[str]:
    """Split normalized text into word tokens.

    Operates on already-normalized text (lowercase, no punctuation).
    Returns empty list for empty input.
    """
    if not text:
        return []
    return text.split()


# ---------------------------------------------------------------------------
# Similarity measures
# ---------------------------------------------------------------------------


def jaccard(a: str, b: str) -> float:
    """Token-level Jaccard similarity between two texts.

    J(A, B) = |A ∩ B| / |A ∪ B|

    Inputs are normalized internally. Returns 1.0 if both are empty
    (vacuous similarity), 0.0 if one is empty and the other is not.
    """
    tokens_a = set(tokenize(normalize(a)))
    tokens_b = set(tokenize(normalize(b)))

    if not tokens_a and not tokens_b:
        return 1.0
    if not tokens_a or not tokens_b:
        return 0.0

    intersection = tokens_a & tokens_b
    union = tokens_a | tokens_b
    return len(intersection) / len(union)


def cosine_similarity(a, b) -> float:
    """Cosine similarity between two vectors.

    Returns 0.0 when either vector has zero norm.

    Raises:
        ValueError: If the vectors have different lengths.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(
            f"Vector shapes differ: {va.shape} vs {vb.shape}"
        )
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


def cosine_scores(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity of each row of ``matrix`` against ``query``.

    Rows with zero norm (and a zero-norm query) score 0.0.
    """
    if matrix.size == 0:
        return np.zeros(matrix.shape[0], dtype=np.float64)
    matrix = matrix.astype(np.float64, copy=False)
    query = query.astype(np.float64, copy=False)
    row_norms = np.linalg.norm(matrix, axis=1)
    q_norm = float(np.linalg.norm(query))
    if q_norm == 0.0:
        return np.zeros(matrix.shape[0], dtype=np.float64)
    dots = matrix @ query
    denom = row_norms * q_norm
    out = np.zeros_like(dots)
    np.divide(dots, denom, out=out, where=denom > 0)
    return out


# ---------------------------------------------------------------------------
# Score normalization
# ---------------------------------------------------------------------------


def min_max_normalize(scores: Sequence[float]) -> List[float]:
    """Rescale scores to [0, 1] with min-max normalization.

    A single score, or a set of identical scores, maps to 1.0 each.
    Non-finite values are treated as the minimum.

    Examples:
        >>> min_max_normalize([10.0, 5.0, 0.0])
        [1.0, 0.5, 0.0]
        >>> min_max_normalize([3.0])
        [1.0]
    """
    if not scores:
        return []
    finite = [s for s in scores if math.isfinite(s)]
    if not finite:
        return [1.0] * len(scores)
    lo = min(finite)
    hi = max(finite)
    span = hi - lo
    if span <= 0.0:
        return [1.0 if math.isfinite(s) else 0.0 for s in scores]
    out = []
    for s in scores:
        if not math.isfinite(s):
            out.append(0.0)
        else:
            out.append(min(1.0, max(0.0, (s - lo) / span)))
    return out
