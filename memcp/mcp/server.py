"""
memcp MCP Server — Semantic Memory for AI Agents

Standalone MCP server exposing the memory operations over stdio. Works with
Claude Desktop, VS Code and any MCP-compatible client.

Architecture: thin MCP layer delegating to MemoryService. stdout carries the
JSON-RPC stream, so all logging goes to stderr.

The embedding model is warmed up in the background once the server is
running, so the first store_memory / retrieve_memories call does not
cold-start while the handshake is never blocked.

Usage:
    python -m memcp.mcp.server
    python -m memcp.mcp.server --storage-dir ~/.agent-memcp --device cpu

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import argparse
import logging
import os
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

# Instructions embedded in FastMCP — always visible to any MCP client.
_MCP_INSTRUCTIONS = (
    "Agent context memory: store, search and retrieve bits of information "
    "worth remembering across sessions (5 tools).\n"
    "\n"
    "STORE:    store_memory (use 'key' to update a memory instead of duplicating).\n"
    "SEARCH:   retrieve_memories — semantic similarity, not keyword match.\n"
    "BROWSE:   list_memories, optionally filtered by tags (AND).\n"
    "MAINTAIN: delete_memory, rename_project.\n"
    "\n"
    "Scopes: omit 'project' for the global scope, give a project name for\n"
    "project memories, or use project='*' to read across all scopes.\n"
)

# Third-party loggers that are chatty at INFO while loading models
_QUIET_LOGGERS = ("sentence_transformers", "transformers", "huggingface_hub", "httpx")


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser for the memory MCP server."""
    p = argparse.ArgumentParser(
        prog="memcp-mcp",
        description="memcp MCP Server — semantic memory for AI agents",
    )
    p.add_argument(
        "--storage-dir",
        default=os.environ.get("MEMCP_STORAGE_DIR"),
        help="Data directory (default: ~/.agent-memcp or $MEMCP_STORAGE_DIR)",
    )
    p.add_argument(
        "--db",
        default=None,
        help="SQLite database path (default: <storage-dir>/memories.db or $MEMCP_SQLITE_PATH)",
    )
    p.add_argument(
        "--model",
        default=None,
        help="sentence-transformers model (default: all-MiniLM-L6-v2 or $MEMCP_MODEL)",
    )
    p.add_argument(
        "--device",
        default=None,
        help="Torch device for the embedding model (default: cpu or $MEMCP_DEVICE)",
    )
    p.add_argument(
        "--no-warmup",
        action="store_true",
        help="Load the embedding model on first use instead of at startup",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return p


def open_service(config):
    """Create the store, embedding provider and service for a MemoryConfig."""
    from memcp.config import ensure_storage_dirs
    from memcp.embedding import EmbeddingProvider
    from memcp.service import MemoryService
    from memcp.store import MemoryStore

    ensure_storage_dirs(config)
    store = MemoryStore(
        db_path=config.store.db_path,
        wal_mode=config.store.wal_mode,
        dimension=config.embedding.dimension,
    )
    embedder = EmbeddingProvider(
        config.embedding.model_name,
        config.embedding.dimension,
        device=config.embedding.device,
        cache_dir=config.embedding.cache_dir,
        batch_size=config.embedding.batch_size,
    )
    return MemoryService(
        store, embedder,
        default_limit=config.retrieval.default_limit,
        max_limit=config.retrieval.max_limit,
    )


def create_server(args=None, service=None):
    """
    Create and configure the FastMCP server with memory tools.

    Args:
        args: Parsed argparse.Namespace, or None to parse from sys.argv.
        service: Pre-built MemoryService (tests); built from config if None.

    Returns:
        (mcp_server, service) tuple.
    """
    from mcp.server.fastmcp import FastMCP

    from memcp.config import load_config
    from memcp.mcp.tools import register_memory_tools

    if args is None:
        args = build_parser().parse_args()

    if service is None:
        config = load_config(args.storage_dir, strict=True)
        if args.db:
            config.store.db_path = args.db
        if args.model:
            config.embedding.model_name = args.model
        if args.device:
            config.embedding.device = args.device
        service = open_service(config)

    warmup = not args.no_warmup

    @asynccontextmanager
    async def lifespan(server):
        if warmup:
            service.embedder.warm_up()
        try:
            yield {}
        finally:
            service.memory_store.close()

    mcp = FastMCP(
        name="agent-memcp",
        instructions=_MCP_INSTRUCTIONS,
        lifespan=lifespan,
    )

    register_memory_tools(mcp, service)

    logger.info(
        "memcp MCP server ready: db=%s, model=%s, warmup=%s",
        service.memory_store.db_path, service.embedder.model_name,
        "on" if warmup else "off",
    )

    return mcp, service


def main():
    """CLI entry point — parse args, create server, run on stdio."""
    parser = build_parser()
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    mcp, _service = create_server(args)
    mcp.run()


if __name__ == "__main__":
    main()
