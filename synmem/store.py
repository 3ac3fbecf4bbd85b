"""
Memory Store — SQLite Dual-Index Backend

Tables:
    memories            - Canonical memory records (current state)
    memories_fts        - FTS5 external-content index over memories
    memory_embeddings   - One float32 vector per memory
    memory_events       - Audit log (append-only)
    schema_meta         - Schema version, embedding dimension/model, tokenizer

A memory exists in both indices or in neither: the text row (FTS follows
through triggers) and the vector row are written and deleted inside one
BEGIN IMMEDIATE transaction.

Thread safety: disk stores keep one writer connection behind a lock and a
bounded pool of read-only connections (WAL mode), so readers only ever
see committed transactions.  A reader borrows a pooled connection for one
statement and hands it back.  ":memory:" stores share a single connection
behind the lock.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import math
import queue
import re
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from synmem.errors import (
    DimensionMismatch,
    Inconsistent,
    InvalidQuery,
    IoFailure,
)
from synmem.query import build_match_expression, fts_terms
from synmem.similarity import cosine_scores
from synmem.types import (
    SNIPPET_CHARS,
    Memory,
    MemoryEvent,
    SearchFilter,
    SearchResult,
    _generate_id,
    _now_iso,
    make_snippet,
    to_utc_iso,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS memories (
    id            TEXT PRIMARY KEY,
    content       TEXT NOT NULL,
    title         TEXT NOT NULL DEFAULT '',
    source        TEXT NOT NULL DEFAULT '',
    tags          TEXT NOT NULL DEFAULT '[]',       -- JSON array
    metadata      TEXT NOT NULL DEFAULT '{}',       -- JSON object
    content_hash  TEXT NOT NULL DEFAULT '',
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL,
    seq           INTEGER NOT NULL                  -- write sequence (recency)
);

CREATE TABLE IF NOT EXISTS memory_embeddings (
    memory_id  TEXT PRIMARY KEY,
    model_name TEXT NOT NULL,
    dimension  INTEGER NOT NULL,
    vector     BLOB NOT NULL,      -- float32 packed bytes
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS memory_events (
    id            TEXT PRIMARY KEY,
    action        TEXT NOT NULL,
    memory_id     TEXT,
    details_json  TEXT NOT NULL DEFAULT '{}',
    content_hash  TEXT NOT NULL DEFAULT '',
    timestamp     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_memories_seq ON memories(seq);
CREATE INDEX IF NOT EXISTS idx_events_action ON memory_events(action);
CREATE INDEX IF NOT EXISTS idx_events_memory ON memory_events(memory_id);
"""

# ---------------------------------------------------------------------------
# FTS5 Schema (separate — requires SQLite FTS5 extension)
# ---------------------------------------------------------------------------
# External-content mode: the FTS index mirrors memories but stores no
# duplicate text.  Triggers keep the index in sync with the main table.
# An upsert on memories fires the UPDATE pair (bu + au).
# ---------------------------------------------------------------------------

# Conservative whitelist for FTS5 tokenizer strings: only alphanumeric, space,
# underscore, dot and hyphen.  Rejects quotes, semicolons, parentheses.
_FTS_TOKENIZER_PATTERN = re.compile(r"^[a-zA-Z0-9_ .\-]+$")

FTS_TOKENIZER_PRESETS = {
    "fr": "unicode61 remove_diacritics 2",
    "en": "porter unicode61 remove_diacritics 2",
    "raw": "unicode61",
}

DEFAULT_FTS_TOKENIZER = FTS_TOKENIZER_PRESETS["en"]


def _validate_fts_tokenizer(tokenizer: str) -> str:
    """Validate and return a safe FTS5 tokenizer string."""
    tokenizer = tokenizer.strip()
    if not tokenizer:
        raise ValueError("FTS5 tokenizer string cannot be empty")
    if not _FTS_TOKENIZER_PATTERN.match(tokenizer):
        raise ValueError(
            f"Unsafe FTS5 tokenizer string: {tokenizer!r} — "
            "only [a-zA-Z0-9_ .-] characters allowed"
        )
    return tokenizer


def _fts5_schema_sql(tokenizer: str) -> str:
    """Generate FTS5 schema SQL with a validated tokenizer string."""
    safe = _validate_fts_tokenizer(tokenizer)
    return f"""
CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts USING fts5(
    content, title, source, tags,
    content='memories',
    content_rowid='rowid',
    tokenize='{safe}'
);

CREATE TRIGGER IF NOT EXISTS memories_fts_ai
AFTER INSERT ON memories BEGIN
    INSERT INTO memories_fts(rowid, content, title, source, tags)
    VALUES (new.rowid, new.content, new.title, new.source, new.tags);
END;

-- BEFORE DELETE so the old rowid is still accessible
CREATE TRIGGER IF NOT EXISTS memories_fts_bd
BEFORE DELETE ON memories BEGIN
    INSERT INTO memories_fts(memories_fts, rowid, content, title, source, tags)
    VALUES ('delete', old.rowid, old.content, old.title, old.source, old.tags);
END;

CREATE TRIGGER IF NOT EXISTS memories_fts_bu
BEFORE UPDATE ON memories BEGIN
    INSERT INTO memories_fts(memories_fts, rowid, content, title, source, tags)
    VALUES ('delete', old.rowid, old.content, old.title, old.source, old.tags);
END;

CREATE TRIGGER IF NOT EXISTS memories_fts_au
AFTER UPDATE ON memories BEGIN
    INSERT INTO memories_fts(rowid, content, title, source, tags)
    VALUES (new.rowid, new.content, new.title, new.source, new.tags);
END;
"""


# ---------------------------------------------------------------------------
# Vector packing helpers
# ---------------------------------------------------------------------------

def _pack_vector(vec: np.ndarray) -> bytes:
    """Pack a vector to little-endian float32 bytes."""
    return np.asarray(vec, dtype="<f4").tobytes()


def _unpack_vector(data: bytes, dim: int) -> np.ndarray:
    """Unpack float32 bytes to a vector of length ``dim``."""
    vec = np.frombuffer(data, dtype="<f4")
    if vec.size != dim:
        raise ValueError(f"stored vector has {vec.size} values, expected {dim}")
    return vec


def _as_vector(embedding: Sequence[float]) -> np.ndarray:
    """Coerce an embedding to a 1-D float64 array, rejecting junk.

    Raises:
        ValueError: Empty, multi-dimensional, or non-finite input.
    """
    try:
        vec = np.asarray(embedding, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"embedding is not a numeric vector: {exc}") from exc
    if vec.ndim != 1 or vec.size == 0:
        raise ValueError(f"embedding must be a non-empty 1-D vector, got shape {vec.shape}")
    if not np.all(np.isfinite(vec)):
        raise ValueError("embedding contains NaN or infinite values")
    return vec


def _is_transient(exc: BaseException) -> bool:
    """True for SQLite lock contention worth retrying."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


def _filter_sql(filters: Optional[SearchFilter]) -> Tuple[str, List[Any]]:
    """SQL conditions (each prefixed with AND) over ``memories m``."""
    if filters is None:
        return "", []
    clauses = []
    params: List[Any] = []
    for tag in filters.tags:
        clauses.append("EXISTS (SELECT 1 FROM json_each(m.tags) WHERE json_each.value = ?)")
        params.append(tag)
    if filters.from_date is not None:
        clauses.append("m.created_at >= ?")
        params.append(filters.from_date)
    if filters.to_date is not None:
        clauses.append("m.created_at <= ?")
        params.append(filters.to_date)
    return "".join(" AND " + c for c in clauses), params


# ---------------------------------------------------------------------------
# StorageEngine (capability set)
# ---------------------------------------------------------------------------

class StorageEngine(ABC):
    """Dual-index storage: a textual index and a vector index per memory."""

    @abstractmethod
    def store_memory(self, memory: Memory, embedding: Sequence[float]) -> Memory:
        """Write text and vector as one atomic unit keyed by memory.id."""

    @abstractmethod
    def full_text_search(
        self, query: str, limit: int, filters: Optional[SearchFilter] = None,
    ) -> List[SearchResult]:
        """Relevance-ranked text matches with raw (unnormalized) scores."""

    @abstractmethod
    def vector_search(
        self, embedding: Sequence[float], limit: int,
        filters: Optional[SearchFilter] = None,
    ) -> List[SearchResult]:
        """Cosine-ranked matches with raw scores in [-1, 1]."""

    @abstractmethod
    def stats(self) -> Dict[str, Any]:
        """Counts and index settings, JSON-safe."""

    @abstractmethod
    def get_memory(self, memory_id: str) -> Optional[Memory]:
        ...

    @abstractmethod
    def get_recent(self, limit: int) -> List[Memory]:
        ...

    @abstractmethod
    def delete_memory(self, memory_id: str) -> bool:
        """Remove from both indices. Returns whether the record existed."""

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------

class MemoryStore(StorageEngine):
    """
    SQLite-backed dual-index store.

    Every mutation is one transaction and writes an audit event in it.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        dimension: Optional[int] = None,
        model_name: Optional[str] = None,
        wal_mode: bool = True,
        fts_tokenizer: Optional[str] = None,
        busy_timeout_ms: int = 5000,
        io_retries: int = 3,
        io_backoff_ms: int = 50,
        snippet_chars: int = SNIPPET_CHARS,
        max_readers: int = 8,
    ):
        """Open (or create) a store.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            dimension: Expected embedding dimension.  None lets the first
                write fix it.  Must agree with embeddings already on disk.
            model_name: Embedding model recorded with each vector.
            wal_mode: Enable WAL journal mode for concurrent readers.
            fts_tokenizer: FTS5 tokenizer string.  Defaults to Porter
                stemming over ``unicode61 remove_diacritics 2``.  Must
                match ``[a-zA-Z0-9_ .-]+``.
            busy_timeout_ms: SQLite busy timeout per connection.
            io_retries: Attempts for lock-contended operations.
            io_backoff_ms: Initial backoff, doubled per attempt.
            snippet_chars: Maximum snippet length in search results.
            max_readers: Upper bound on pooled read-only connections
                (disk stores).  Readers beyond it wait for a free one.

        Raises:
            DimensionMismatch: Stored embeddings disagree with ``dimension``.
        """
        self._db_path = db_path
        self._memory_db = db_path == ":memory:"
        self._lock = threading.Lock()
        self._readers_lock = threading.Lock()
        self._readers: List[sqlite3.Connection] = []
        self._pool: "queue.Queue[sqlite3.Connection]" = queue.Queue()
        self._max_readers = max(1, max_readers)
        self._closed = False
        self._fts5_available: bool = False
        self._fts_tokenizer = _validate_fts_tokenizer(
            fts_tokenizer or DEFAULT_FTS_TOKENIZER
        )
        self._timeout = busy_timeout_ms / 1000.0
        self._pool_wait = max(self._timeout, 1.0)
        self._io_retries = max(1, io_retries)
        self._io_backoff = io_backoff_ms / 1000.0
        self._snippet_chars = snippet_chars
        self._model_name = model_name or "unknown"
        if not self._memory_db:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = self._connect()
        if wal_mode and not self._memory_db:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA_SQL)
        for key, value in (
            ("schema_version", str(SCHEMA_VERSION)),
            ("created_by", "synmem"),
        ):
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES (?, ?)",
                (key, value),
            )
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) "
            "VALUES ('created_at', datetime('now'))",
        )
        self._init_fts5()
        try:
            self._dimension = self._check_dimension_lock(dimension, model_name)
        except DimensionMismatch:
            self._conn.close()
            self._closed = True
            raise
        logger.info(
            f"MemoryStore initialized: {db_path} "
            f"(fts5={'yes' if self._fts5_available else 'no'}, "
            f"dimension={self._dimension})"
        )

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._db_path, check_same_thread=False,
            isolation_level=None, timeout=self._timeout,
        )
        conn.row_factory = sqlite3.Row
        return conn

    def _init_fts5(self) -> None:
        """
        Create the FTS5 virtual table and sync triggers.

        If the SQLite build does not include FTS5, this sets
        ``_fts5_available = False`` and full-text queries fall back to
        LIKE matching with TF-IDF scoring.
        """
        try:
            fts_existed = self._conn.execute(
                "SELECT 1 FROM sqlite_master "
                "WHERE type='table' AND name='memories_fts'"
            ).fetchone() is not None
            self._check_fts_tokenizer_mismatch()
            self._conn.executescript(_fts5_schema_sql(self._fts_tokenizer))
            self._fts5_available = True
            if not fts_existed:
                self._conn.execute(
                    "INSERT OR REPLACE INTO schema_meta (key, value) "
                    "VALUES ('fts_tokenizer', ?)",
                    (self._fts_tokenizer,),
                )
            logger.debug(
                f"FTS5 virtual table initialized (tokenizer={self._fts_tokenizer})"
            )
        except sqlite3.OperationalError as exc:
            # Typical message: "no such module: fts5"
            self._fts5_available = False
            logger.info(f"FTS5 not available, falling back to LIKE search: {exc}")

    def _check_fts_tokenizer_mismatch(self) -> None:
        """Warn if the existing FTS table uses a different tokenizer."""
        row = self._conn.execute(
            "SELECT sql FROM sqlite_master "
            "WHERE type='table' AND name='memories_fts'"
        ).fetchone()
        if row is None:
            return
        match = re.search(r"tokenize='([^']*)'", row[0] or "")
        existing = match.group(1).strip() if match else "unicode61"
        if existing != self._fts_tokenizer:
            logger.warning(
                f"FTS tokenizer mismatch: existing='{existing}', "
                f"configured='{self._fts_tokenizer}'. The existing index "
                f"keeps its tokenizer."
            )
            self._fts_tokenizer = existing

    def _check_dimension_lock(
        self, dimension: Optional[int], model_name: Optional[str],
    ) -> Optional[int]:
        """Return the store dimension, refusing to reinterpret stored vectors."""
        row = self._conn.execute(
            "SELECT dimension, model_name FROM memory_embeddings LIMIT 1"
        ).fetchone()
        if row is None:
            return dimension
        persisted = row["dimension"]
        if dimension is not None and dimension != persisted:
            raise DimensionMismatch(
                persisted, dimension,
                f"{self._db_path} holds {persisted}-dimension embeddings "
                f"but {dimension} was configured; run reembed to migrate",
            )
        if model_name and row["model_name"] != model_name:
            logger.warning(
                f"Embedding model changed: stored='{row['model_name']}', "
                f"configured='{model_name}'. Scores may drift until reembed."
            )
        return persisted

    # -- Properties --------------------------------------------------------

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def dimension(self) -> Optional[int]:
        """Fixed embedding dimension, or None before the first write."""
        return self._dimension

    @property
    def fts5_available(self) -> bool:
        return self._fts5_available

    # -- Connection plumbing -----------------------------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise IoFailure(f"store {self._db_path} is closed")

    def _checkout(self) -> sqlite3.Connection:
        """Borrow a read-only connection, opening one while under the cap."""
        try:
            return self._pool.get_nowait()
        except queue.Empty:
            pass
        with self._readers_lock:
            if len(self._readers) < self._max_readers:
                conn = self._connect()
                conn.execute("PRAGMA query_only=ON")
                self._readers.append(conn)
                return conn
        try:
            return self._pool.get(timeout=self._pool_wait)
        except queue.Empty:
            raise IoFailure(
                f"no read connection free after {self._pool_wait:.1f}s "
                f"({self._max_readers} in use)"
            ) from None

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection that sees only committed state."""
        if self._memory_db:
            with self._lock:
                self._check_open()
                yield self._conn
        else:
            self._check_open()
            conn = self._checkout()
            try:
                yield conn
            finally:
                self._pool.put(conn)

    def _with_retry(self, fn: Callable[[], Any], operation: str) -> Any:
        """Run fn, retrying lock contention with exponential backoff."""
        delay = self._io_backoff
        for attempt in range(1, self._io_retries + 1):
            try:
                return fn()
            except sqlite3.OperationalError as exc:
                if not _is_transient(exc):
                    raise
                if attempt == self._io_retries:
                    raise IoFailure(
                        f"{operation} failed after {attempt} attempts: {exc}"
                    ) from exc
                logger.warning(
                    f"{operation}: {exc} (attempt {attempt}/{self._io_retries}), "
                    f"retrying in {delay:.3f}s"
                )
                time.sleep(delay)
                delay *= 2

    def _read(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        def run():
            with self._reading() as conn:
                return conn.execute(sql, params).fetchall()
        return self._with_retry(run, "read")

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT on the writer (caller holds the lock).

        Any exception rolls back.  A failed rollback raises Inconsistent
        with ``rolled_back=False``.
        """
        conn = self._conn
        self._with_retry(lambda: conn.execute("BEGIN IMMEDIATE"), operation)
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException as exc:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error as rb_exc:
                logger.critical(
                    f"{operation}: rollback failed after {exc!r}: {rb_exc}"
                )
                raise Inconsistent(
                    f"{operation} failed and rollback failed: {rb_exc}",
                    rolled_back=False,
                ) from exc
            raise

    def close(self) -> None:
        """Close the writer and every reader connection."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()
        with self._readers_lock:
            for conn in self._readers:
                conn.close()
            self._readers.clear()

    # -- Write operations --------------------------------------------------

    def store_memory(self, memory: Memory, embedding: Sequence[float]) -> Memory:
        """
        Insert or replace a memory and its embedding atomically.

        Re-storing an existing id replaces both entries, keeps the original
        created_at, and moves the record to the front of the recency order.
        The caller's ``memory`` is left untouched; the returned copy carries
        the persisted timestamps.

        Raises:
            ValueError: Non-finite or empty embedding, non-JSON metadata.
            DimensionMismatch: Embedding length differs from the store's.
            Inconsistent: A sub-write failed; nothing was persisted.
            IoFailure: The write lock could not be acquired after retries.
        """
        vec = _as_vector(embedding)
        try:
            json.dumps(memory.metadata)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"metadata is not JSON-serializable: {exc}") from exc
        try:
            created_at = to_utc_iso(memory.created_at)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"created_at is not an ISO-8601 timestamp: {exc}") from exc
        stored = dataclasses.replace(
            memory, tags=list(memory.tags), metadata=dict(memory.metadata),
            created_at=created_at,
        )

        with self._lock:
            self._check_open()
            if self._dimension is not None and vec.size != self._dimension:
                raise DimensionMismatch(self._dimension, int(vec.size))
            fixes_dimension = self._dimension is None
            try:
                with self._transaction("store_memory") as conn:
                    self._write_text(conn, stored)
                    self._write_vector(conn, stored.id, vec)
                    if fixes_dimension:
                        self._set_meta(conn, "embedding_dimension", str(vec.size))
                        self._set_meta(conn, "embedding_model", self._model_name)
                    self._log_event(
                        conn, "store", stored.id,
                        {"source": stored.source}, stored.content_hash,
                    )
            except (Inconsistent, IoFailure):
                raise
            except Exception as exc:
                logger.error(f"store_memory({memory.id}) rolled back: {exc}")
                raise Inconsistent(
                    f"store_memory({memory.id}) rolled back: {exc}"
                ) from exc
            if fixes_dimension:
                self._dimension = int(vec.size)
                logger.info(f"Embedding dimension fixed at {self._dimension}")
        return stored

    def _write_text(self, conn: sqlite3.Connection, memory: Memory) -> None:
        """Upsert the canonical row (FTS follows through triggers).

        Sets the persisted timestamps on ``memory``, which is the store's
        own copy.
        """
        row = conn.execute(
            "SELECT created_at FROM memories WHERE id=?", (memory.id,)
        ).fetchone()
        if row is not None:
            memory.created_at = row["created_at"]
        memory.updated_at = _now_iso()
        conn.execute(
            """INSERT INTO memories
               (id, content, title, source, tags, metadata, content_hash,
                created_at, updated_at, seq)
               VALUES (?,?,?,?,?,?,?,?,?,?)
               ON CONFLICT(id) DO UPDATE SET
                   content=excluded.content, title=excluded.title,
                   source=excluded.source, tags=excluded.tags,
                   metadata=excluded.metadata,
                   content_hash=excluded.content_hash,
                   updated_at=excluded.updated_at, seq=excluded.seq""",
            (
                memory.id, memory.content, memory.title, memory.source,
                json.dumps(memory.tags, ensure_ascii=False),
                json.dumps(memory.metadata, ensure_ascii=False),
                memory.content_hash, memory.created_at, memory.updated_at,
                self._next_seq(conn),
            ),
        )

    def _write_vector(
        self, conn: sqlite3.Connection, memory_id: str, vec: np.ndarray,
    ) -> None:
        conn.execute(
            """INSERT OR REPLACE INTO memory_embeddings
               (memory_id, model_name, dimension, vector, created_at)
               VALUES (?,?,?,?,?)""",
            (memory_id, self._model_name, int(vec.size), _pack_vector(vec), _now_iso()),
        )

    def delete_memory(self, memory_id: str) -> bool:
        """Remove a memory from both indices in one transaction.

        Idempotent: returns False when nothing was stored under the id.
        """
        with self._lock:
            self._check_open()
            try:
                with self._transaction("delete_memory") as conn:
                    n_text = conn.execute(
                        "DELETE FROM memories WHERE id=?", (memory_id,)
                    ).rowcount
                    n_vec = conn.execute(
                        "DELETE FROM memory_embeddings WHERE memory_id=?",
                        (memory_id,),
                    ).rowcount
                    existed = n_text > 0 or n_vec > 0
                    if existed:
                        self._log_event(conn, "delete", memory_id, {}, "")
            except (Inconsistent, IoFailure):
                raise
            except Exception as exc:
                logger.error(f"delete_memory({memory_id}) rolled back: {exc}")
                raise Inconsistent(
                    f"delete_memory({memory_id}) rolled back: {exc}"
                ) from exc
        return existed

    def reembed(self, provider, batch_size: int = 64) -> int:
        """Re-embed every memory with ``provider`` as a new generation.

        Embedding runs outside the write lock.  The swap is one transaction;
        if records changed meanwhile the pass is repeated (up to io_retries
        times).  Afterwards the store's dimension and model follow the
        provider.

        Returns:
            Number of memories re-embedded.
        """
        for attempt in range(1, self._io_retries + 1):
            rows = self._read("SELECT id, content, content_hash FROM memories ORDER BY seq")
            snapshot = {r["id"]: r["content_hash"] for r in rows}
            vectors: Dict[str, np.ndarray] = {}
            for start in range(0, len(rows), batch_size):
                batch = rows[start:start + batch_size]
                embedded = provider.embed_batch([r["content"] for r in batch])
                for r, v in zip(batch, embedded):
                    vectors[r["id"]] = _as_vector(v)
            dims = {v.size for v in vectors.values()}
            if len(dims) > 1:
                raise DimensionMismatch(None, max(dims), f"provider returned mixed dimensions {sorted(dims)}")
            new_dim = dims.pop() if dims else provider.dimension

            with self._lock:
                self._check_open()
                current = {
                    r["id"]: r["content_hash"]
                    for r in self._conn.execute(
                        "SELECT id, content_hash FROM memories"
                    ).fetchall()
                }
                if current != snapshot:
                    logger.warning(
                        f"reembed: store changed during pass "
                        f"(attempt {attempt}/{self._io_retries})"
                    )
                    continue
                old_model = self._model_name
                self._model_name = provider.model_name
                try:
                    with self._transaction("reembed") as conn:
                        conn.execute("DELETE FROM memory_embeddings")
                        for memory_id, vec in vectors.items():
                            self._write_vector(conn, memory_id, vec)
                        self._set_meta(conn, "embedding_dimension", str(new_dim))
                        self._set_meta(conn, "embedding_model", provider.model_name)
                        self._log_event(conn, "reembed", None, {
                            "count": len(vectors),
                            "dimension": new_dim,
                            "model": provider.model_name,
                        }, "")
                except (Inconsistent, IoFailure):
                    self._model_name = old_model
                    raise
                except Exception as exc:
                    self._model_name = old_model
                    raise Inconsistent(f"reembed rolled back: {exc}") from exc
                self._dimension = new_dim
            logger.info(
                f"Re-embedded {len(vectors)} memories "
                f"(model={provider.model_name}, dimension={new_dim})"
            )
            return len(vectors)
        raise Inconsistent(
            f"reembed gave up: store kept changing after {self._io_retries} passes"
        )

    # -- Query operations --------------------------------------------------

    def get_memory(self, memory_id: str) -> Optional[Memory]:
        """Point lookup. Read-only."""
        rows = self._read("SELECT * FROM memories WHERE id=?", (memory_id,))
        return self._row_to_memory(rows[0]) if rows else None

    def get_recent(self, limit: int) -> List[Memory]:
        """Most recently stored first. Read-only."""
        if limit <= 0:
            return []
        rows = self._read(
            "SELECT * FROM memories ORDER BY seq DESC LIMIT ?", (limit,)
        )
        return [self._row_to_memory(r) for r in rows]

    def get_embedding(self, memory_id: str) -> Optional[List[float]]:
        rows = self._read(
            "SELECT vector, dimension FROM memory_embeddings WHERE memory_id=?",
            (memory_id,),
        )
        if not rows:
            return None
        return _unpack_vector(rows[0]["vector"], rows[0]["dimension"]).astype(float).tolist()

    def full_text_search(
        self, query: str, limit: int, filters: Optional[SearchFilter] = None,
    ) -> List[SearchResult]:
        """
        Full-text search, BM25-ranked, with LIKE fallback.

        Terms are extracted with stop words stripped, quoted, and OR-ed.
        Scores are ``-bm25`` (higher is better) and are not normalized.
        ``filters`` are applied in SQL, before the limit.

        Raises:
            InvalidQuery: Empty or whitespace-only query.
        """
        if not isinstance(query, str) or not query.strip():
            raise InvalidQuery("query text must be non-empty")
        if limit <= 0:
            return []
        terms = fts_terms(query)
        if not terms:
            return []
        if self._fts5_available:
            try:
                return self._search_fts5(terms, limit, filters)
            except sqlite3.OperationalError as exc:
                logger.warning(f"FTS5 query failed, falling back to LIKE: {exc}")
        return self._search_like(terms, limit, filters)

    def _search_fts5(
        self, terms: List[str], limit: int, filters: Optional[SearchFilter],
    ) -> List[SearchResult]:
        extra, params = _filter_sql(filters)
        rows = self._read(
            "SELECT m.id, m.content, m.title, m.source, m.updated_at, m.seq, "
            "-bm25(memories_fts) AS score "
            "FROM memories_fts JOIN memories m ON m.rowid = memories_fts.rowid "
            f"WHERE memories_fts MATCH ?{extra} "
            "ORDER BY score DESC, m.seq DESC LIMIT ?",
            [build_match_expression(terms), *params, limit],
        )
        return [self._row_to_result(r, float(r["score"]), "fts") for r in rows]

    def _search_like(
        self, terms: List[str], limit: int, filters: Optional[SearchFilter],
    ) -> List[SearchResult]:
        """
        LIKE-based fallback search with TF-IDF scoring in Python.

        A record matches when any term appears in content, title, source
        or tags.
        """
        conditions = []
        params: list = []
        for term in terms:
            like = "%" + term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
            conditions.append(
                "(content LIKE ? ESCAPE '\\' OR title LIKE ? ESCAPE '\\' "
                "OR source LIKE ? ESCAPE '\\' OR tags LIKE ? ESCAPE '\\')"
            )
            params.extend([like, like, like, like])
        extra, extra_params = _filter_sql(filters)
        rows = self._read(
            "SELECT m.id, m.content, m.title, m.source, m.tags, m.updated_at, m.seq "
            f"FROM memories m WHERE ({' OR '.join(conditions)}){extra}",
            params + extra_params,
        )
        if not rows:
            return []
        total = self.count()
        lower_terms = [t.lower() for t in terms]
        texts = [
            " ".join((r["content"], r["title"], r["source"], r["tags"])).lower()
            for r in rows
        ]
        df = {t: sum(1 for text in texts if t in text) for t in lower_terms}
        scored = []
        for r, text in zip(rows, texts):
            score = 0.0
            for t in lower_terms:
                tf = text.count(t)
                if tf:
                    score += (1.0 + math.log(tf)) * math.log(1.0 + total / df[t])
            scored.append((score, r))
        scored.sort(key=lambda x: (-x[0], -x[1]["seq"]))
        return [self._row_to_result(r, s, "fts") for s, r in scored[:limit]]

    def vector_search(
        self, embedding: Sequence[float], limit: int,
        filters: Optional[SearchFilter] = None,
    ) -> List[SearchResult]:
        """
        Exact cosine search over every stored embedding that passes
        ``filters``.

        Raises:
            DimensionMismatch: Query length differs from the stored dimension.
            ValueError: Query vector is empty or non-finite.
        """
        query = _as_vector(embedding)
        if self._dimension is not None and query.size != self._dimension:
            raise DimensionMismatch(self._dimension, int(query.size))
        if limit <= 0:
            return []
        extra, params = _filter_sql(filters)
        rows = self._read(
            "SELECT e.vector, e.dimension, m.id, m.content, m.title, m.source, "
            "m.updated_at, m.seq "
            "FROM memory_embeddings e JOIN memories m ON m.id = e.memory_id "
            f"WHERE 1=1{extra}",
            params,
        )
        if not rows:
            return []
        for r in rows:
            if r["dimension"] != query.size:
                raise DimensionMismatch(r["dimension"], int(query.size))
        matrix = np.vstack([_unpack_vector(r["vector"], r["dimension"]) for r in rows])
        scores = cosine_scores(matrix, query)
        order = sorted(
            range(len(rows)), key=lambda i: (-scores[i], -rows[i]["seq"]),
        )[:limit]
        return [
            self._row_to_result(rows[i], float(np.clip(scores[i], -1.0, 1.0)), "vector")
            for i in order
        ]

    def count(self) -> int:
        """Number of stored memories."""
        return self._read("SELECT COUNT(*) AS cnt FROM memories")[0]["cnt"]

    # -- Events (audit log) ------------------------------------------------

    def read_events(
        self,
        memory_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[MemoryEvent]:
        """Query audit events, newest first."""
        conditions = []
        params: list = []
        if memory_id:
            conditions.append("memory_id=?")
            params.append(memory_id)
        if action:
            conditions.append("action=?")
            params.append(action)
        where = " AND ".join(conditions) if conditions else "1=1"
        rows = self._read(
            f"SELECT * FROM memory_events WHERE {where} "
            "ORDER BY timestamp DESC, rowid DESC LIMIT ?",
            params + [limit],
        )
        return [
            MemoryEvent(
                id=r["id"], action=r["action"], memory_id=r["memory_id"],
                details=json.loads(r["details_json"]),
                content_hash=r["content_hash"], timestamp=r["timestamp"],
            )
            for r in rows
        ]

    # -- Stats and integrity -----------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Summary statistics for the store."""
        def scalar(sql: str) -> int:
            return self._read(sql)[0][0]

        meta = {r["key"]: r["value"] for r in self._read("SELECT key, value FROM schema_meta")}
        return {
            "db_path": self._db_path,
            "total_memories": scalar("SELECT COUNT(*) FROM memories"),
            "embeddings_count": scalar("SELECT COUNT(*) FROM memory_embeddings"),
            "events_count": scalar("SELECT COUNT(*) FROM memory_events"),
            "dimension": self._dimension,
            "embedding_model": meta.get("embedding_model", self._model_name),
            "fts5_available": self._fts5_available,
            "fts_tokenizer": self._fts_tokenizer if self._fts5_available else None,
            "schema_version": int(meta.get("schema_version", SCHEMA_VERSION)),
        }

    def verify_integrity(self) -> Dict[str, Any]:
        """Check that every id is present in both indices.

        Returns:
            Dict with ``text_only`` and ``vector_only`` id lists, the FTS5
            integrity-check outcome, and an overall ``ok`` flag.
        """
        text_only = [r[0] for r in self._read(
            "SELECT id FROM memories WHERE id NOT IN "
            "(SELECT memory_id FROM memory_embeddings)"
        )]
        vector_only = [r[0] for r in self._read(
            "SELECT memory_id FROM memory_embeddings WHERE memory_id NOT IN "
            "(SELECT id FROM memories)"
        )]
        fts_ok: Optional[bool] = None
        fts_error = None
        if self._fts5_available:
            with self._lock:
                self._check_open()
                try:
                    self._conn.execute(
                        "INSERT INTO memories_fts(memories_fts) VALUES ('integrity-check')"
                    )
                    fts_ok = True
                except sqlite3.DatabaseError as exc:
                    fts_ok = False
                    fts_error = str(exc)
        return {
            "ok": not text_only and not vector_only and fts_ok is not False,
            "text_only": text_only,
            "vector_only": vector_only,
            "fts_ok": fts_ok,
            "fts_error": fts_error,
        }

    # -- Internal helpers --------------------------------------------------

    def _row_to_memory(self, row: sqlite3.Row) -> Memory:
        return Memory(
            id=row["id"],
            content=row["content"],
            source=row["source"],
            title=row["title"],
            tags=json.loads(row["tags"]),
            metadata=json.loads(row["metadata"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_result(self, row: sqlite3.Row, score: float, signal: str) -> SearchResult:
        return SearchResult(
            memory_id=row["id"],
            snippet=make_snippet(row["content"], self._snippet_chars),
            score=score,
            signal=signal,
            title=row["title"],
            source=row["source"],
            timestamp=row["updated_at"],
            sequence=row["seq"],
        )

    @staticmethod
    def _next_seq(conn: sqlite3.Connection) -> int:
        """Next write sequence number (must be called inside a transaction)."""
        row = conn.execute(
            "SELECT value FROM schema_meta WHERE key='last_seq'"
        ).fetchone()
        seq = (int(row[0]) if row else 0) + 1
        conn.execute(
            "INSERT OR REPLACE INTO schema_meta (key, value) VALUES ('last_seq', ?)",
            (str(seq),),
        )
        return seq

    @staticmethod
    def _set_meta(conn: sqlite3.Connection, key: str, value: str) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO schema_meta (key, value) VALUES (?, ?)",
            (key, value),
        )

    @staticmethod
    def _log_event(
        conn: sqlite3.Connection, action: str, memory_id: Optional[str],
        details: Dict[str, Any], ch: str,
    ) -> None:
        """Write an audit event (must be called inside a transaction)."""
        conn.execute(
            """INSERT INTO memory_events
               (id, action, memory_id, details_json, content_hash, timestamp)
               VALUES (?,?,?,?,?,?)""",
            (
                _generate_id(), action, memory_id,
                json.dumps(details), ch, _now_iso(),
            ),
        )
