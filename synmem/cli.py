"""
synmem CLI — Memory Store Commands

Commands:
    synmem store  "content" [--source URL] [--title T] [--tags a,b]
    synmem search "query" [-k N] [--timeout S]   — hybrid (fts + vector)
    synmem fts    "query" [-k N]                 — full-text ranking only
    synmem vector "query" [-k N]                 — vector ranking only
        (all three take [--tags a,b] [--from-date ISO] [--to-date ISO])
    synmem recent [-k N]                         — most recently stored
    synmem show   <id>                           — display one memory
    synmem delete <id>                           — remove from both indices
    synmem stats                                 — store metrics
    synmem reembed                               — re-embed with current provider

Environment variables:
    SYNMEM_DB        Path to SQLite database (default: .synmem/memory.db)
    SYNMEM_CONFIG    Path to a JSON config file
    SYNMEM_EMBEDDER  Embedding provider: hash|sentence-transformers
    SYNMEM_MODEL     sentence-transformers model name
    SYNMEM_DIM       Hash provider dimension

Precedence (invariant):
    CLI --flag  >  SYNMEM_* env var  >  config file  >  compiled default

Exit codes:
    0  Success (including idempotent no-op)
    1  Operational error (bad args, empty input, not found)
    2  Internal failure (unexpected exception)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Dict, List, Optional

from synmem.config import SynMemConfig, ValidationError, load_config
from synmem.errors import SynMemError
from synmem.types import SearchResponse

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Defensive env parsing (never crash on bad export)
# ---------------------------------------------------------------------------


def _env_int(name: str, default: int) -> int:
    """Parse integer env var with fallback. Never raises on bad input."""
    v = os.environ.get(name)
    if not v:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    """Parse string env var with fallback."""
    return os.environ.get(name) or default


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _resolve_config(args: argparse.Namespace) -> SynMemConfig:
    """Build the effective config: flag > env > config file > default."""
    path = getattr(args, "config", None) or _env_str("SYNMEM_CONFIG", "") or None
    cfg = load_config(path, strict=path is not None)

    cfg.store.db_path = getattr(args, "db", None) or _env_str(
        "SYNMEM_DB", cfg.store.db_path,
    )
    cfg.embedding.provider = getattr(args, "embedder", None) or _env_str(
        "SYNMEM_EMBEDDER", cfg.embedding.provider,
    )
    cfg.embedding.model_name = getattr(args, "model", None) or _env_str(
        "SYNMEM_MODEL", cfg.embedding.model_name,
    )
    dim = getattr(args, "dim", None)
    cfg.embedding.dimension = dim if dim is not None else _env_int(
        "SYNMEM_DIM", cfg.embedding.dimension,
    )

    errors = cfg.validate()
    if errors:
        raise ValidationError(f"Invalid configuration: {'; '.join(errors)}")
    return cfg


def _open_service(args: argparse.Namespace):
    """Open the query service for the resolved config."""
    from synmem.service import open_service
    return open_service(_resolve_config(args))


def _parse_tags(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [t.strip() for t in value.split(",") if t.strip()]


def _filter_kwargs(args: argparse.Namespace) -> Dict[str, object]:
    return {
        "tags": _parse_tags(args.tags),
        "from_date": args.from_date,
        "to_date": args.to_date,
    }


def _parse_meta(pairs: Optional[List[str]]) -> Dict[str, str]:
    meta: Dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"--meta expects KEY=VALUE, got {pair!r}")
        meta[key.strip()] = value
    return meta


# ---------------------------------------------------------------------------
# Stderr helpers (respect --quiet)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


def _print_response(args: argparse.Namespace, response: SearchResponse) -> None:
    if getattr(args, "json", False):
        print(json.dumps(response.to_dict(), indent=2, ensure_ascii=False))
        return
    if response.degraded:
        _warn(f"[degraded] {response.degraded_reason}")
    if not response.results:
        _info("No results.")
        return
    for r in response:
        label = f" {r.title}" if r.title else ""
        print(f"{r.score:.3f}  {r.memory_id}  [{r.signal}]{label}")
        print(f"       {r.snippet}")


# ===========================================================================
# Command: store
# ===========================================================================


def cmd_store(args: argparse.Namespace) -> None:
    """Embed and store one memory (content from argument or stdin)."""
    content = args.content
    if content is None or content == "-":
        content = sys.stdin.read()
    if not content.strip():
        _warn("Nothing to store: content is empty.")
        sys.exit(1)

    with _open_service(args) as service:
        memory = service.store_memory(
            content,
            source=args.source or "",
            memory_id=args.id,
            title=args.title or "",
            tags=_parse_tags(args.tags),
            metadata=_parse_meta(args.meta),
        )

    if getattr(args, "json", False):
        print(json.dumps(memory.to_dict(), indent=2, ensure_ascii=False))
    else:
        _info(f"Stored {memory.id} ({len(memory.content)} chars)")
        print(memory.id)


# ===========================================================================
# Commands: search / fts / vector / recent
# ===========================================================================


def cmd_search(args: argparse.Namespace) -> None:
    """Hybrid search."""
    with _open_service(args) as service:
        response = service.search(
            args.query, args.k, timeout=args.timeout, **_filter_kwargs(args),
        )
    _print_response(args, response)


def cmd_fts(args: argparse.Namespace) -> None:
    """Full-text ranking only."""
    with _open_service(args) as service:
        response = service.search_fts(args.query, args.k, **_filter_kwargs(args))
    _print_response(args, response)


def cmd_vector(args: argparse.Namespace) -> None:
    """Vector ranking only."""
    with _open_service(args) as service:
        response = service.search_vector(args.query, args.k, **_filter_kwargs(args))
    _print_response(args, response)


def cmd_recent(args: argparse.Namespace) -> None:
    """Most recently stored memories first."""
    with _open_service(args) as service:
        response = service.get_recent(args.k)
    _print_response(args, response)


# ===========================================================================
# Command: show / delete
# ===========================================================================


def cmd_show(args: argparse.Namespace) -> None:
    """Display a single memory."""
    with _open_service(args) as service:
        memory = service.get_memory(args.id)

    if getattr(args, "json", False):
        print(json.dumps(memory.to_dict(), indent=2, ensure_ascii=False))
        return
    print(f"ID:         {memory.id}")
    print(f"Title:      {memory.title or '(none)'}")
    print(f"Source:     {memory.source or '(none)'}")
    print(f"Tags:       {', '.join(memory.tags) if memory.tags else '(none)'}")
    print(f"Created:    {memory.created_at}")
    print(f"Updated:    {memory.updated_at}")
    for key, value in sorted(memory.metadata.items()):
        print(f"Meta:       {key}={value}")
    print(f"\n--- Content ---\n{memory.content}")


def cmd_delete(args: argparse.Namespace) -> None:
    """Delete a memory. Deleting a missing id is a no-op (exit 0)."""
    with _open_service(args) as service:
        existed = service.delete_memory(args.id)

    if getattr(args, "json", False):
        print(json.dumps({"id": args.id, "deleted": existed}))
    elif existed:
        _info(f"Deleted {args.id}")
    else:
        _info(f"No memory {args.id} (nothing to delete)")


# ===========================================================================
# Command: stats
# ===========================================================================


def cmd_stats(args: argparse.Namespace) -> None:
    """Show memory store statistics."""
    with _open_service(args) as service:
        stats = service.stats()

    if getattr(args, "json", False):
        stats["status"] = "ok"
        print(json.dumps(stats, indent=2, ensure_ascii=False))
        return
    print("Memory Store Statistics")
    print("=" * 40)
    print(f"  Database:     {stats['db_path']}")
    print(f"  Memories:     {stats['total_memories']}")
    print(f"  Embeddings:   {stats['embeddings_count']}")
    print(f"  Dimension:    {stats['dimension']}")
    print(f"  Provider:     {stats['provider']}")
    print(f"  FTS5:         {'available' if stats['fts5_available'] else 'unavailable'}")
    if stats.get("fts_tokenizer"):
        print(f"  Tokenizer:    {stats['fts_tokenizer']}")
    print(f"  Audit events: {stats['events_count']}")


# ===========================================================================
# Command: reembed
# ===========================================================================


def cmd_reembed(args: argparse.Namespace) -> None:
    """Re-embed every memory with the configured provider."""
    from synmem.embedding import build_provider
    from synmem.store import MemoryStore

    cfg = _resolve_config(args)
    provider = build_provider(cfg.embedding)
    # Opened without a dimension so the old generation is readable
    with MemoryStore(
        db_path=cfg.store.db_path,
        model_name=provider.model_name,
        wal_mode=cfg.store.wal_mode,
        fts_tokenizer=cfg.store.fts_tokenizer,
        busy_timeout_ms=cfg.store.busy_timeout_ms,
        io_retries=cfg.store.io_retries,
        io_backoff_ms=cfg.store.io_backoff_ms,
        snippet_chars=cfg.search.snippet_chars,
        max_readers=cfg.store.max_readers,
    ) as store:
        before = store.dimension
        count = store.reembed(provider, batch_size=args.batch_size)
        after = store.dimension

    if getattr(args, "json", False):
        print(json.dumps({
            "status": "ok", "reembedded": count,
            "dimension_before": before, "dimension_after": after,
            "model": provider.model_name,
        }, indent=2))
    else:
        print(f"Re-embedded {count} memories ({before} → {after} dims, {provider.model_name})")


# ===========================================================================
# Entry point
# ===========================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser (shared flags on every subcommand)."""
    # SUPPRESS defaults prevent subparser defaults from overriding values
    # parsed at the main-parser level (argparse parents quirk).
    _db_default = _env_str("SYNMEM_DB", ".synmem/memory.db")
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--db", default=argparse.SUPPRESS,
        help=f"Path to SQLite database (default: {_db_default})",
    )
    _common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="JSON config file (default: SYNMEM_CONFIG)",
    )
    _common.add_argument(
        "--embedder", choices=["hash", "sentence-transformers"],
        default=argparse.SUPPRESS,
        help="Embedding provider (default: SYNMEM_EMBEDDER or hash)",
    )
    _common.add_argument(
        "--model", default=argparse.SUPPRESS,
        help="sentence-transformers model (default: SYNMEM_MODEL or all-MiniLM-L6-v2)",
    )
    _common.add_argument(
        "--dim", type=int, default=argparse.SUPPRESS,
        help="Hash provider dimension (default: SYNMEM_DIM or 384)",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="synmem",
        description="synmem — hybrid full-text + vector memory store",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # -- store -------------------------------------------------------------
    p_store = sub.add_parser("store", parents=[_common], help="Store a memory")
    p_store.add_argument(
        "content", nargs="?", default=None,
        help="Memory content (omit or '-' to read stdin)",
    )
    p_store.add_argument("--source", default=None, help="Origin URL or reference")
    p_store.add_argument("--title", default=None, help="Title")
    p_store.add_argument("--tags", default=None, help="Comma-separated tags")
    p_store.add_argument("--id", default=None, help="Memory id (re-storing updates in place)")
    p_store.add_argument(
        "--meta", action="append", default=None, metavar="KEY=VALUE",
        help="Metadata entry (repeatable)",
    )
    p_store.set_defaults(func=cmd_store)

    # -- search / fts / vector --------------------------------------------
    for name, func, help_text in (
        ("search", cmd_search, "Hybrid search (full-text + vector)"),
        ("fts", cmd_fts, "Full-text search only"),
        ("vector", cmd_vector, "Vector search only"),
    ):
        p = sub.add_parser(name, parents=[_common], help=help_text)
        p.add_argument("query", help="Search query")
        p.add_argument("-k", type=int, default=None, help="Max results (default: 10)")
        if name == "search":
            p.add_argument(
                "--timeout", type=float, default=None,
                help="Deadline in seconds for the sub-searches",
            )
        p.add_argument(
            "--tags", default=None,
            help="Comma-separated tags; results must carry all of them",
        )
        p.add_argument(
            "--from-date", default=None,
            help="Earliest creation time, ISO-8601 (inclusive, naive = UTC)",
        )
        p.add_argument(
            "--to-date", default=None,
            help="Latest creation time, ISO-8601 (inclusive, naive = UTC)",
        )
        p.set_defaults(func=func)

    # -- recent ------------------------------------------------------------
    p_recent = sub.add_parser("recent", parents=[_common], help="Most recent memories")
    p_recent.add_argument("-k", type=int, default=None, help="Max results (default: 10)")
    p_recent.set_defaults(func=cmd_recent)

    # -- show / delete -----------------------------------------------------
    p_show = sub.add_parser("show", parents=[_common], help="Show a memory")
    p_show.add_argument("id", help="Memory id")
    p_show.set_defaults(func=cmd_show)

    p_delete = sub.add_parser("delete", parents=[_common], help="Delete a memory")
    p_delete.add_argument("id", help="Memory id")
    p_delete.set_defaults(func=cmd_delete)

    # -- stats -------------------------------------------------------------
    p_stats = sub.add_parser("stats", parents=[_common], help="Store statistics")
    p_stats.set_defaults(func=cmd_stats)

    # -- reembed -----------------------------------------------------------
    p_reembed = sub.add_parser(
        "reembed", parents=[_common],
        help="Re-embed all memories with the configured provider",
    )
    p_reembed.add_argument(
        "--batch-size", type=int, default=64, help="Texts per embedding batch",
    )
    p_reembed.set_defaults(func=cmd_reembed)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point: synmem <command> [args]."""
    global _quiet

    parser = build_parser()
    args = parser.parse_args(argv)

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except BrokenPipeError:
        # Handle broken pipe gracefully (e.g. synmem search | head)
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except (SynMemError, ValidationError, ValueError) as e:
        _warn(f"Error: {e}")
        sys.exit(1)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
