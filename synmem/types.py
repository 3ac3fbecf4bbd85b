"""
Memory Data Model — Records and Ranked Results

Defines the stored memory record, the search result value type, the
response envelope returned by query operations, and audit events.
A memory's id never changes once assigned; storing the same id again
updates the record in place.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Literal, Optional, Sequence, Union

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

Signal = Literal["fts", "vector", "hybrid", "recent"]

SNIPPET_CHARS = 200


def _now_iso() -> str:
    """Current UTC time as fixed-width ISO-8601 string (sortable as text)."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _generate_id() -> str:
    """Generate a unique memory ID."""
    return uuid.uuid4().hex


def content_hash(text: str) -> str:
    """SHA-256 content hash with prefix."""
    h = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return f"sha256:{h}"


def make_snippet(text: str, max_chars: int = SNIPPET_CHARS) -> str:
    """Collapse whitespace and cut to ``max_chars`` (with ``...`` suffix)."""
    flat = " ".join(text.split())
    if len(flat) <= max_chars:
        return flat
    return flat[: max(0, max_chars - 3)].rstrip() + "..."


# ---------------------------------------------------------------------------
# Memory (canonical record)
# ---------------------------------------------------------------------------

@dataclass
class Memory:
    """
    A stored unit of extracted content.

    Rules:
    - content is non-empty.
    - id is immutable once assigned.
    - metadata is open-ended but must be JSON-serializable.
    """

    content: str
    source: str = ""
    id: str = field(default_factory=_generate_id)
    title: str = ""
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def __post_init__(self):
        """Reject empty content and ids."""
        if not isinstance(self.content, str) or not self.content.strip():
            raise ValueError("Memory content must be a non-empty string")
        if not self.id or not str(self.id).strip():
            raise ValueError("Memory id must be non-empty")

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "id" and "id" in self.__dict__:
            raise AttributeError("Memory id is immutable once assigned")
        super().__setattr__(name, value)

    @property
    def content_hash(self) -> str:
        """Hash of the canonical content."""
        return content_hash(self.content)

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags

    def snippet(self, max_chars: int = SNIPPET_CHARS) -> str:
        return make_snippet(self.content, max_chars)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Memory:
        """Deserialize from dict, ignoring unknown keys."""
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in d.items() if k in known})

    def to_json(self) -> str:
        """Serialize to indented JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)


# ---------------------------------------------------------------------------
# Search Result
# ---------------------------------------------------------------------------

@dataclass
class SearchResult:
    """One ranked hit.

    ``score`` is in [0, 1] once a result leaves the coordinator; the
    storage engine's raw primitives return unnormalized scores in the same
    field.  ``signal`` names the ranking(s) that produced the hit.
    """

    memory_id: str
    snippet: str
    score: float
    signal: Signal = "fts"
    title: str = ""
    source: str = ""
    timestamp: str = ""
    sequence: int = 0
    fts_score: Optional[float] = None
    vector_score: Optional[float] = None
    fts_rank: Optional[int] = None
    vector_rank: Optional[int] = None

    def sort_key(self):
        """Descending score, then most recent first."""
        return (-self.score, -self.sequence)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Search Filter
# ---------------------------------------------------------------------------

DateLike = Union[str, datetime]


def to_utc_iso(value: DateLike) -> str:
    """Normalize a datetime or ISO-8601 string to the stored timestamp form.

    Naive values are taken as UTC; a bare date means midnight.  Raises
    ValueError on unparseable input.
    """
    if isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        value = datetime.fromisoformat(text)
    if not isinstance(value, datetime):
        raise ValueError(f"not a date: {value!r}")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


@dataclass(frozen=True)
class SearchFilter:
    """Restrict a search to memories carrying all ``tags`` and created
    within [``from_date``, ``to_date``] (both bounds inclusive)."""

    tags: tuple = ()
    from_date: Optional[str] = None
    to_date: Optional[str] = None

    @classmethod
    def build(
        cls,
        tags: Optional[Sequence[str]] = None,
        from_date: Optional[DateLike] = None,
        to_date: Optional[DateLike] = None,
    ) -> Optional[SearchFilter]:
        """Normalized filter, or None when nothing restricts the search."""
        if isinstance(tags, str):
            tags = [tags]
        clean = tuple(dict.fromkeys(t.strip() for t in (tags or ()) if t and t.strip()))
        lo = to_utc_iso(from_date) if from_date is not None else None
        hi = to_utc_iso(to_date) if to_date is not None else None
        if lo is not None and hi is not None and lo > hi:
            raise ValueError(f"from_date {lo} is after to_date {hi}")
        if not clean and lo is None and hi is None:
            return None
        return cls(tags=clean, from_date=lo, to_date=hi)


# ---------------------------------------------------------------------------
# Search Response
# ---------------------------------------------------------------------------

@dataclass
class SearchResponse:
    """Ranked results plus the degraded-mode indicator.

    Behaves like the result list for iteration, ``len()`` and indexing.
    """

    results: List[SearchResult] = field(default_factory=list)
    degraded: bool = False
    degraded_reason: Optional[str] = None
    signals: List[str] = field(default_factory=list)

    def __iter__(self) -> Iterator[SearchResult]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def __getitem__(self, index):
        return self.results[index]

    @property
    def ids(self) -> List[str]:
        return [r.memory_id for r in self.results]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for CLI and adapter output."""
        return {
            "results": [r.to_dict() for r in self.results],
            "degraded": self.degraded,
            "degraded_reason": self.degraded_reason,
            "signals": list(self.signals),
        }


# ---------------------------------------------------------------------------
# Memory Event (audit log entry)
# ---------------------------------------------------------------------------

@dataclass
class MemoryEvent:
    """Audit log entry for a store mutation."""

    id: str = field(default_factory=_generate_id)
    action: str = ""  # "store", "delete", "reembed"
    memory_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    content_hash: str = ""
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
