"""
Memory Service — composition root.

Validates cross-cutting invariants (non-empty content, wildcard never written,
limit bounds) and orchestrates the embedding provider, scope resolver and
store into the public operations:

    store, retrieve, list, delete, rename_project

plus ``backfill_embeddings`` for rows written before semantic search existed.
The service keeps no state of its own.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from memcp.embedding import EmbeddingProvider
from memcp.errors import InvalidArgument
from memcp.scope import resolve_scope, resolve_write_scope, validate_project_name
from memcp.store import MemoryStore
from memcp.types import MemoryEntry, _generate_id, normalize_tags

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 20
MAX_LIMIT = 100


def _require_text(value, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(f"{name} must be a non-empty string")
    return value


def _check_tags(tags) -> List[str]:
    if tags is None:
        return []
    if isinstance(tags, str) or not isinstance(tags, (list, tuple)):
        raise InvalidArgument("tags must be a list of strings")
    return normalize_tags(tags)


class MemoryService:
    """
    Public memory operations over a store and an embedding provider.

    Args:
        store: Open MemoryStore.
        embedder: EmbeddingProvider whose dimension matches the store's.
        default_limit: Retrieval limit when the caller gives none.
        max_limit: Hard cap; larger limits are clamped.
    """

    def __init__(
        self,
        store: MemoryStore,
        embedder: EmbeddingProvider,
        *,
        default_limit: int = DEFAULT_LIMIT,
        max_limit: int = MAX_LIMIT,
    ):
        if embedder.dimension != store.dimension:
            raise InvalidArgument(
                f"Embedding provider dimension {embedder.dimension} does not "
                f"match store dimension {store.dimension}"
            )
        self.memory_store = store
        self.embedder = embedder
        self.default_limit = default_limit
        self.max_limit = max_limit

    def _resolve_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.default_limit
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise InvalidArgument("limit must be an integer")
        if limit < 1:
            raise InvalidArgument(f"limit must be positive, got {limit}")
        if limit > self.max_limit:
            logger.debug("Clamping limit %d to %d", limit, self.max_limit)
            return self.max_limit
        return limit

    # -- Operations --------------------------------------------------------

    async def store(
        self,
        scope: Optional[str],
        content: str,
        *,
        key: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
        entry_id: Optional[str] = None,
    ) -> MemoryEntry:
        """Store a memory, or update the one sharing ``key`` in the same scope.

        The content is embedded before anything is written, so a model
        failure leaves the database untouched.

        Raises:
            InvalidArgument: Wildcard scope, empty content, malformed tags.
            ModelUnavailable: The embedding model failed.
            Conflict: ``entry_id`` is already taken.
        """
        scope_str = resolve_write_scope(scope)
        _require_text(content, "content")
        tag_list = _check_tags(tags)
        if key is not None and not isinstance(key, str):
            raise InvalidArgument("key must be a string")
        key = key.strip() if key else None
        if entry_id is None:
            entry_id = _generate_id("MEM")
        else:
            _require_text(entry_id, "id")

        vector = await self.embedder.embed(content)
        entry = MemoryEntry(
            id=entry_id, content=content, scope=scope_str,
            key=key or None, tags=tag_list,
        )
        stored = self.memory_store.upsert(scope_str, entry, vector)
        logger.info("Stored memory %s in %s", stored.id, scope_str)
        return stored

    async def retrieve_scored(
        self,
        query: str,
        *,
        scope: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Tuple[MemoryEntry, float]]:
        """Semantic search returning ``(entry, cosine score)`` pairs, best first."""
        _require_text(query, "query")
        scope_query = resolve_scope(scope)
        tag_list = _check_tags(tags)
        n = self._resolve_limit(limit)

        query_vector = await self.embedder.embed(query)
        results = self.memory_store.rank(scope_query, query_vector, tag_list, limit=n)
        logger.debug("Retrieve %r in %s: %d result(s)",
                     query, scope_query.label(), len(results))
        return results

    async def retrieve(
        self,
        query: str,
        *,
        scope: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[MemoryEntry]:
        """Semantic search: entries ordered by descending similarity to ``query``.

        Entries without an embedding never appear. Equal scores are ordered
        most recently updated first.
        """
        scored = await self.retrieve_scored(query, scope=scope, tags=tags, limit=limit)
        return [entry for entry, _score in scored]

    async def list(
        self,
        scope: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
    ) -> List[MemoryEntry]:
        """All entries of a scope having every tag, most recently updated first."""
        return self.memory_store.list_entries(resolve_scope(scope), _check_tags(tags))

    async def delete(self, scope: Optional[str], entry_id: str) -> bool:
        """Delete an entry. Returns False when no entry matches scope and id."""
        scope_str = resolve_write_scope(scope)
        _require_text(entry_id, "id")
        return self.memory_store.delete(scope_str, entry_id)

    async def rename_project(self, old_name: str, new_name: str) -> bool:
        """Move every entry of ``old_name`` to ``new_name``.

        Raises:
            InvalidArgument: Empty, wildcard, reserved or identical names.
            NotFound: ``old_name`` has no entries.
            Conflict: ``new_name`` already has entries; nothing is changed.
        """
        old = validate_project_name(old_name, "source project")
        new = validate_project_name(new_name, "target project")
        if old == new:
            raise InvalidArgument(f'Project "{old}" cannot be renamed to itself')
        self.memory_store.rename_scope(old, new)
        return True

    # -- Maintenance -------------------------------------------------------

    async def backfill_embeddings(self, batch_size: Optional[int] = None) -> int:
        """Embed entries written before semantic search existed.

        Returns:
            Number of entries that received an embedding.
        """
        size = batch_size or self.embedder.batch_size
        if size < 1:
            raise InvalidArgument(f"batch_size must be positive, got {size}")
        done = 0
        while True:
            pending = self.memory_store.missing_embeddings(limit=size)
            if not pending:
                break
            vectors = await self.embedder.embed_batch([e.content for e in pending])
            updated = self.memory_store.write_embeddings(
                [(e.id, vec) for e, vec in zip(pending, vectors)]
            )
            if updated == 0:
                break
            done += updated
            logger.info("Backfilled %d embedding(s)", done)
        return done

    def stats(self) -> Dict[str, Any]:
        """Store metrics plus embedding model status."""
        stats = self.memory_store.stats()
        stats["model_name"] = self.embedder.model_name
        stats["model_ready"] = self.embedder.is_ready
        return stats
