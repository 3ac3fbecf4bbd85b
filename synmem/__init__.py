"""
synmem — synthetic memory store for browser agents.

Stores extracted web content with its embedding in one SQLite database
(FTS5 text index + float32 vector table, kept in lockstep) and answers
queries by fusing full-text and vector-similarity rankings.
"""

__version__ = "0.1.0"

from synmem.types import Memory, MemoryEvent, SearchFilter, SearchResponse, SearchResult
from synmem.errors import (
    DimensionMismatch,
    EmbeddingError,
    EmptyInput,
    Inconsistent,
    InputTooLong,
    InvalidQuery,
    IoFailure,
    NotFound,
    ProviderUnavailable,
    SearchError,
    SearchTimeout,
    StorageError,
    SynMemError,
)
from synmem.config import SynMemConfig, load_config
from synmem.embedding import (
    EmbeddingProvider,
    HashEmbeddingProvider,
    SentenceTransformerProvider,
    build_provider,
)
from synmem.store import MemoryStore, StorageEngine, SCHEMA_VERSION
from synmem.search import HybridSearchCoordinator
from synmem.service import MemoryQueryService, open_service

__all__ = [
    "__version__",
    "Memory",
    "MemoryEvent",
    "SearchResult",
    "SearchResponse",
    "SearchFilter",
    "SynMemError",
    "EmbeddingError",
    "EmptyInput",
    "InputTooLong",
    "ProviderUnavailable",
    "StorageError",
    "NotFound",
    "Inconsistent",
    "IoFailure",
    "DimensionMismatch",
    "SearchError",
    "InvalidQuery",
    "SearchTimeout",
    "SynMemConfig",
    "load_config",
    "EmbeddingProvider",
    "HashEmbeddingProvider",
    "SentenceTransformerProvider",
    "build_provider",
    "StorageEngine",
    "MemoryStore",
    "SCHEMA_VERSION",
    "HybridSearchCoordinator",
    "MemoryQueryService",
    "open_service",
]
