"""
SynMem Configuration

Configuration dataclasses for the store, the embedding provider and the
hybrid search coordinator.  Includes load_config() for reading a JSON
config file with silent fallback to compiled defaults.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ValueError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        names = "|".join(t.__name__ for t in typ) if isinstance(typ, tuple) else typ.__name__
        errors.append(f"{name}: expected {names}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


ProviderKind = Literal["hash", "sentence-transformers"]
VALID_PROVIDERS: set = {"hash", "sentence-transformers"}


@dataclass
class StoreConfig:
    """SQLite store configuration."""
    db_path: str = ".synmem/memory.db"
    wal_mode: bool = True
    fts_tokenizer: str = "porter unicode61 remove_diacritics 2"
    busy_timeout_ms: int = 5000
    io_retries: int = 3
    io_backoff_ms: int = 50
    max_readers: int = 8

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "store.busy_timeout_ms",
                     self.busy_timeout_ms, 0, 600000, int)
        _check_range(errors, "store.io_retries", self.io_retries, 1, 10, int)
        _check_range(errors, "store.io_backoff_ms",
                     self.io_backoff_ms, 0, 10000, int)
        _check_range(errors, "store.max_readers", self.max_readers, 1, 64, int)
        return errors


@dataclass
class EmbeddingConfig:
    """Embedding provider selection.

    ``provider`` picks the implementation once, at construction.
    ``dimension`` applies to the hash provider; sentence-transformers
    models report their own.
    """
    provider: ProviderKind = "hash"
    model_name: str = "all-MiniLM-L6-v2"
    dimension: int = 384
    max_input_length: int = 8192
    device: Optional[str] = None

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if self.provider not in VALID_PROVIDERS:
            errors.append(
                f"embedding.provider: {self.provider!r} not in "
                f"{sorted(VALID_PROVIDERS)}"
            )
        _check_range(errors, "embedding.dimension", self.dimension, 8, 8192, int)
        _check_range(errors, "embedding.max_input_length",
                     self.max_input_length, 1, 1000000, int)
        return errors


@dataclass
class SearchConfig:
    """Hybrid search and fusion parameters.

    ``dedup_threshold`` drops a result whose snippet has token Jaccard
    similarity at or above it with a better-ranked one (None disables).
    ``max_context_chars`` caps the summed snippet length of a response;
    the last result that overflows is cut (None disables).
    """
    fts_weight: float = 0.4
    vector_weight: float = 0.6
    overfetch: int = 3
    max_limit: int = 100
    default_limit: int = 10
    timeout_s: Optional[float] = None
    snippet_chars: int = 200
    dedup_threshold: Optional[float] = 0.85
    max_context_chars: Optional[int] = 8000

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "search.fts_weight", self.fts_weight, 0.0, 1.0, (int, float))
        _check_range(errors, "search.vector_weight",
                     self.vector_weight, 0.0, 1.0, (int, float))
        if not errors and self.fts_weight + self.vector_weight == 0:
            errors.append("search: fts_weight and vector_weight are both zero")
        _check_range(errors, "search.overfetch", self.overfetch, 2, 50, int)
        _check_range(errors, "search.max_limit", self.max_limit, 1, 10000, int)
        _check_range(errors, "search.default_limit",
                     self.default_limit, 1, 10000, int)
        if isinstance(self.default_limit, int) and isinstance(self.max_limit, int):
            if self.default_limit > self.max_limit:
                errors.append(
                    f"search.default_limit: {self.default_limit} exceeds "
                    f"max_limit {self.max_limit}"
                )
        if self.timeout_s is not None:
            _check_range(errors, "search.timeout_s",
                         self.timeout_s, 0.001, 3600.0, (int, float))
        _check_range(errors, "search.snippet_chars",
                     self.snippet_chars, 20, 10000, int)
        if self.dedup_threshold is not None:
            _check_range(errors, "search.dedup_threshold",
                         self.dedup_threshold, 0.0, 1.0, (int, float))
        if self.max_context_chars is not None:
            _check_range(errors, "search.max_context_chars",
                         self.max_context_chars, 100, 10000000, int)
            if (isinstance(self.max_context_chars, int)
                    and isinstance(self.snippet_chars, int)
                    and self.max_context_chars < self.snippet_chars):
                errors.append(
                    f"search.max_context_chars: {self.max_context_chars} is "
                    f"below snippet_chars {self.snippet_chars}"
                )
        return errors


@dataclass
class SynMemConfig:
    """Top-level synmem configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    search: SearchConfig = field(default_factory=SearchConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SynMemConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "embedding" in d:
            kwargs["embedding"] = EmbeddingConfig(**d["embedding"])
        if "search" in d:
            kwargs["search"] = SearchConfig(**d["search"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.embedding.validate())
        errors.extend(self.search.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> SynMemConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        SynMemConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = SynMemConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = SynMemConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = SynMemConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
