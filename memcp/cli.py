"""
memcp CLI — Memory Commands for Operators and Scripts

Commands:
    memcp store "content" [--key K] [--tags a,b] [--project P]
    memcp retrieve "query" [--project P|*] [--tags a,b] [-k N]
    memcp list [--project P|*] [--tags a,b]
    memcp delete <id> [--project P]
    memcp rename <old> <new>
    memcp backfill [--batch-size N]      — embed rows that predate embeddings
    memcp stats
    memcp serve                          — start MCP server (foreground)

Environment variables:
    MEMCP_STORAGE_DIR   Data directory (default: ~/.agent-memcp)
    MEMCP_SQLITE_PATH   Path to SQLite database (default: <storage>/memories.db)
    MEMCP_MODEL         sentence-transformers model name
    MEMCP_DEVICE        Torch device for the embedding model

Precedence (invariant):
    CLI --flag  >  MEMCP_* env var  >  config.json  >  compiled default

Exit codes:
    0  Success
    1  Operational error (bad args, not found, conflict, model unavailable)
    2  Internal failure (unexpected exception)

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import List, Optional

from memcp.config import ValidationError
from memcp.errors import MemcpError

logger = logging.getLogger(__name__)


class CommandFailed(Exception):
    """Operational failure reported to the user with exit code 1."""

    pass


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _split_tags(value: Optional[str]) -> List[str]:
    """Parse comma-separated tags."""
    if not value:
        return []
    return [t.strip() for t in value.split(",") if t.strip()]


def _open_service(args: argparse.Namespace):
    """Build a MemoryService from config + CLI overrides."""
    from memcp.config import load_config
    from memcp.mcp.server import open_service

    config = load_config(getattr(args, "storage_dir", None), strict=True)
    if getattr(args, "db", None):
        config.store.db_path = args.db
    return open_service(config)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


# ===========================================================================
# Commands
# ===========================================================================


async def cmd_store(args: argparse.Namespace, service) -> None:
    """Store (or upsert by key) one memory."""
    from memcp.mcp.formatting import format_stored

    entry = await service.store(
        args.project, args.content,
        key=args.key, tags=_split_tags(args.tags), entry_id=args.id,
    )
    if args.json:
        _print_json(entry.to_dict())
    else:
        print(format_stored(entry, args.project))


async def cmd_retrieve(args: argparse.Namespace, service) -> None:
    """Semantic search."""
    from memcp.mcp.formatting import entry_summary, format_retrieval

    results = await service.retrieve_scored(
        args.query, scope=args.project, tags=_split_tags(args.tags), limit=args.k,
    )
    if args.json:
        _print_json([entry_summary(e, s) for e, s in results])
    else:
        print(format_retrieval(results, args.query, args.project))


async def cmd_list(args: argparse.Namespace, service) -> None:
    """List a scope."""
    from memcp.mcp.formatting import format_list

    tags = _split_tags(args.tags)
    entries = await service.list(args.project, tags)
    if args.json:
        _print_json([e.to_dict() for e in entries])
    else:
        print(format_list(entries, args.project, tags))


async def cmd_delete(args: argparse.Namespace, service) -> None:
    """Delete one memory by id."""
    from memcp.mcp.formatting import scope_label

    if not await service.delete(args.project, args.id):
        raise CommandFailed(
            f'Memory with ID "{args.id}" not found in {scope_label(args.project)}.'
        )
    if args.json:
        _print_json({"status": "ok", "id": args.id})
    else:
        print(f'Memory "{args.id}" deleted from {scope_label(args.project)}.')


async def cmd_rename(args: argparse.Namespace, service) -> None:
    """Rename a project."""
    await service.rename_project(args.old_name, args.new_name)
    if args.json:
        _print_json({"status": "ok", "old_name": args.old_name, "new_name": args.new_name})
    else:
        print(f'Project "{args.old_name}" renamed to "{args.new_name}".')


async def cmd_backfill(args: argparse.Namespace, service) -> None:
    """Embed entries written before semantic search existed."""
    count = await service.backfill_embeddings(batch_size=args.batch_size)
    if args.json:
        _print_json({"status": "ok", "embedded": count})
    else:
        print(f"Embedded {count} entr{'y' if count == 1 else 'ies'}.")


async def cmd_stats(args: argparse.Namespace, service) -> None:
    """Show store statistics."""
    stats = service.stats()
    if args.json:
        _print_json(stats)
        return
    print("Memory Store Statistics")
    print("=" * 40)
    print(f"  Database:     {stats['db_path']}")
    print(f"  Schema:       v{stats['schema_version']}")
    print(f"  Total:        {stats['total_entries']}")
    print(f"  Embedded:     {stats['embedded_entries']} ({stats['embedding_dim']}-dim)")
    print(f"  Missing:      {stats['missing_embeddings']}")
    print(f"  Model:        {stats['model_name']}")
    print("  By scope:")
    for scope, count in stats["by_scope"].items():
        print(f"    {scope:20s} {count}")


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the memcp MCP server in foreground."""
    from memcp.mcp.server import build_parser as mcp_parser, create_server

    server_argv = []
    if getattr(args, "storage_dir", None):
        server_argv.extend(["--storage-dir", args.storage_dir])
    if getattr(args, "db", None):
        server_argv.extend(["--db", args.db])
    if args.verbose:
        server_argv.append("--verbose")
    server_args = mcp_parser().parse_args(server_argv)

    mcp, _service = create_server(server_args)
    _warn("memcp MCP server on stdio. Press Ctrl+C to stop.")
    mcp.run()


async def _dispatch(args: argparse.Namespace) -> None:
    service = _open_service(args)
    try:
        await args.func(args, service)
    finally:
        service.memory_store.close()


# ===========================================================================
# Entry point
# ===========================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the memcp argument parser."""
    # SUPPRESS defaults keep subparser defaults from overriding values
    # parsed at the main-parser level (argparse parents quirk).
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--storage-dir", default=argparse.SUPPRESS,
        help="Data directory (default: $MEMCP_STORAGE_DIR or ~/.agent-memcp)",
    )
    _common.add_argument(
        "--db", default=argparse.SUPPRESS,
        help="Path to SQLite database (default: <storage-dir>/memories.db)",
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
        prog="memcp",
        description="memcp — persistent semantic memory for AI agents",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    p = sub.add_parser("store", parents=[_common], help="Store a memory")
    p.add_argument("content", help="Memory text")
    p.add_argument("--key", default=None, help="Upsert key within the scope")
    p.add_argument("--tags", default=None, help="Comma-separated tags")
    p.add_argument("--project", default=None, help="Project scope (default: global)")
    p.add_argument("--id", default=None, help="Explicit memory id (default: generated)")
    p.set_defaults(func=cmd_store)

    p = sub.add_parser("retrieve", parents=[_common], help="Semantic search")
    p.add_argument("query", help="Natural-language query")
    p.add_argument("--project", default=None, help="Project scope, or '*' for all")
    p.add_argument("--tags", default=None, help="Comma-separated tags (all required)")
    p.add_argument("-k", type=int, default=None, help="Max results (default: 20, max 100)")
    p.set_defaults(func=cmd_retrieve)

    p = sub.add_parser("list", parents=[_common], help="List memories")
    p.add_argument("--project", default=None, help="Project scope, or '*' for all")
    p.add_argument("--tags", default=None, help="Comma-separated tags (all required)")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("delete", parents=[_common], help="Delete a memory by id")
    p.add_argument("id", help="Memory id")
    p.add_argument("--project", default=None, help="Project scope (default: global)")
    p.set_defaults(func=cmd_delete)

    p = sub.add_parser("rename", parents=[_common], help="Rename a project")
    p.add_argument("old_name", help="Current project name")
    p.add_argument("new_name", help="New project name")
    p.set_defaults(func=cmd_rename)

    p = sub.add_parser("backfill", parents=[_common], help="Embed legacy entries")
    p.add_argument("--batch-size", type=int, default=None, help="Texts per model call")
    p.set_defaults(func=cmd_backfill)

    p = sub.add_parser("stats", parents=[_common], help="Store statistics")
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser("serve", parents=[_common], help="Start MCP server")
    p.set_defaults(func=None)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point: memcp <command> [args]."""
    parser = build_parser()
    args = parser.parse_args(argv)

    for name, default in (("storage_dir", None), ("db", None),
                          ("json", False), ("verbose", False)):
        if not hasattr(args, name):
            setattr(args, name, default)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(name)s %(levelname)s %(message)s",
    )

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        if args.command == "serve":
            cmd_serve(args)
        else:
            asyncio.run(_dispatch(args))
    except (MemcpError, CommandFailed, ValidationError) as e:
        _warn(str(e))
        sys.exit(1)
    except BrokenPipeError:
        # Handle broken pipe gracefully (e.g. memcp list | head)
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
