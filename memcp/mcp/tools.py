"""
memcp MCP Tools — 5 memory tools for MCP integration.

Thin async wrappers around MemoryService. Each tool returns a dict:

    status   "ok" or "error"
    text     human-readable rendering (memcp.mcp.formatting)
    ...      structured payload (entries, ids, counts)

Failures never escape as exceptions: known errors are reported with their
kind (not_found, conflict, invalid_argument, model_unavailable,
storage_unavailable); unexpected ones are logged and reported as "internal".

Tools:
    store_memory       — store or upsert-by-key
    retrieve_memories  — semantic (vector) search
    list_memories      — list a scope, optional tag filter
    delete_memory      — delete by id within a scope
    rename_project     — move a project's memories to a new name

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from memcp.errors import MemcpError
from memcp.mcp.formatting import (
    entry_summary,
    format_list,
    format_retrieval,
    format_stored,
    scope_label,
)
from memcp.service import MemoryService

logger = logging.getLogger(__name__)


def _error(action: str, exc: Exception) -> Dict[str, Any]:
    if isinstance(exc, MemcpError):
        kind = exc.kind
    else:
        kind = "internal"
        logger.exception("%s failed", action)
    return {
        "status": "error",
        "error": kind,
        "text": f"Failed to {action}: {exc}",
    }


def register_memory_tools(mcp, service: MemoryService) -> None:
    """
    Register the memory MCP tools on a FastMCP server instance.

    Args:
        mcp: FastMCP server instance (anything with a ``tool()`` decorator).
        service: MemoryService backing the tools.
    """

    @mcp.tool()
    async def store_memory(
        content: str,
        key: Optional[str] = None,
        tags: Optional[List[str]] = None,
        project: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Store a piece of information as a memory.

        Memories can be project-specific or global. If you provide a 'key'
        and a memory with that key already exists in the same scope, it is
        updated instead of creating a duplicate.

        Args:
            content: The text content of the memory to store.
            key: Optional short name; same key in the same scope = update.
            tags: Optional list of tags to categorise the memory.
            project: Project name to scope this memory to. Omit for global.
        """
        try:
            entry = await service.store(project, content, key=key, tags=tags)
        except Exception as e:
            return _error("store memory", e)
        return {
            "status": "ok",
            "text": format_stored(entry, project),
            "entry": entry_summary(entry),
        }

    @mcp.tool()
    async def retrieve_memories(
        query: str,
        project: Optional[str] = None,
        tags: Optional[List[str]] = None,
        limit: int = 20,
    ) -> Dict[str, Any]:
        """Search for memories using semantic (vector) similarity.

        The query is embedded and compared against stored memory vectors;
        results are ordered by semantic relevance, not keyword match.

        Args:
            query: Natural-language phrase to search for.
            project: Scope to search. Omit for global only, '*' for all scopes.
            tags: Only memories that have ALL of these tags.
            limit: Maximum number of results (default 20, max 100).
        """
        tags = tags or []
        try:
            results = await service.retrieve_scored(
                query, scope=project, tags=tags, limit=limit,
            )
        except Exception as e:
            return _error("retrieve memories", e)
        return {
            "status": "ok",
            "text": format_retrieval(results, query, project),
            "count": len(results),
            "scope": scope_label(project),
            "items": [entry_summary(entry, score) for entry, score in results],
        }

    @mcp.tool()
    async def list_memories(
        project: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """List stored memories, optionally filtered by project and/or tags.

        Args:
            project: Scope to list. Omit for global only, '*' for all scopes.
            tags: Only memories that have ALL of these tags.
        """
        tags = tags or []
        try:
            entries = await service.list(project, tags)
        except Exception as e:
            return _error("list memories", e)
        return {
            "status": "ok",
            "text": format_list(entries, project, tags),
            "count": len(entries),
            "scope": scope_label(project),
            "items": [entry_summary(entry) for entry in entries],
        }

    @mcp.tool()
    async def delete_memory(
        id: str,
        project: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Delete a specific memory by its ID.

        The project must match the scope the memory was stored in.
        Omit 'project' to delete from the global scope.

        Args:
            id: The ID of the memory to delete.
            project: Project scope the memory belongs to. Omit for global.
        """
        try:
            deleted = await service.delete(project, id)
        except Exception as e:
            return _error("delete memory", e)
        scope = scope_label(project)
        if not deleted:
            return {
                "status": "error",
                "error": "not_found",
                "text": f'Memory with ID "{id}" not found in {scope}.',
            }
        return {
            "status": "ok",
            "text": f'Memory "{id}" successfully deleted from {scope}.',
            "id": id,
        }

    @mcp.tool()
    async def rename_project(old_name: str, new_name: str) -> Dict[str, Any]:
        """Rename a project scope.

        All memories of the project move to the new name. Fails if the
        project does not exist or the new name is already in use.

        Args:
            old_name: The current name of the project.
            new_name: The new name for the project.
        """
        try:
            await service.rename_project(old_name, new_name)
        except Exception as e:
            return _error("rename project", e)
        return {
            "status": "ok",
            "text": f'Project "{old_name}" successfully renamed to "{new_name}".',
        }
