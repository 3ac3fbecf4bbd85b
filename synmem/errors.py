"""
Error Taxonomy — Caller-Facing Failure Kinds

Three families, one per component boundary:

    EmbeddingError   EmptyInput | InputTooLong | ProviderUnavailable
    StorageError     NotFound | Inconsistent | IoFailure | DimensionMismatch
    SearchError      InvalidQuery | SearchTimeout

Every class carries a stable ``kind`` code so adapters (CLI, protocol
tools) can map failures without matching on class names.

Propagation rules:
    IoFailure          retried by the store with bounded backoff first
    Inconsistent       never retried; the dual-index write was rolled back
                       (or the rollback itself failed, see ``rolled_back``)
    EmbeddingError     degrades hybrid search; fatal to store_memory
"""

from __future__ import annotations

from typing import Optional


class SynMemError(Exception):
    """Base class for every synmem failure."""

    kind = "error"

    def to_dict(self) -> dict:
        """Serialize for JSON responses."""
        return {"error": self.kind, "message": str(self)}


# ---------------------------------------------------------------------------
# Embedding
# ---------------------------------------------------------------------------


class EmbeddingError(SynMemError):
    """The embedding provider could not produce a vector."""

    kind = "embedding_error"


class EmptyInput(EmbeddingError):
    """Text to embed is empty or whitespace only."""

    kind = "empty_input"


class InputTooLong(EmbeddingError):
    """Text exceeds the provider's maximum input length."""

    kind = "input_too_long"

    def __init__(self, max_length: int, actual: int):
        self.max_length = max_length
        self.actual = actual
        super().__init__(
            f"input too long: max {max_length} characters, got {actual}"
        )


class ProviderUnavailable(EmbeddingError):
    """The model or embedding service cannot be reached."""

    kind = "provider_unavailable"


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class StorageError(SynMemError):
    """The storage engine failed."""

    kind = "storage_error"


class NotFound(StorageError):
    """No memory exists under the requested id."""

    kind = "not_found"

    def __init__(self, memory_id: str):
        self.memory_id = memory_id
        super().__init__(f"memory not found: {memory_id}")


class Inconsistent(StorageError):
    """A dual-index write or delete failed part-way.

    ``rolled_back`` is True when the transaction was undone and no partial
    state is visible; False means the rollback itself failed.
    """

    kind = "inconsistent"

    def __init__(self, message: str, rolled_back: bool = True):
        self.rolled_back = rolled_back
        super().__init__(message)


class IoFailure(StorageError):
    """The database could not be read or written (after retries)."""

    kind = "io_failure"


class DimensionMismatch(StorageError):
    """A vector's dimension differs from the store's fixed dimension."""

    kind = "dimension_mismatch"

    def __init__(self, expected: Optional[int], actual: int, message: str = ""):
        self.expected = expected
        self.actual = actual
        super().__init__(
            message or f"embedding dimension {actual} does not match "
            f"store dimension {expected}"
        )


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


class SearchError(SynMemError):
    """A query could not be answered."""

    kind = "search_error"


class InvalidQuery(SearchError, ValueError):
    """Query text or limit is not acceptable."""

    kind = "invalid_query"


class SearchTimeout(SearchError):
    """No sub-search completed before the caller's deadline."""

    kind = "timeout"

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"no sub-search completed within {timeout:.3f}s")
