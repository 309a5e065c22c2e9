"""
memcp — Persistent semantic memory for AI agent sessions.

Short text notes with optional keys and tags, scoped globally or per
project, stored in a single SQLite database and retrieved by listing or by
embedding similarity (all-MiniLM-L6-v2, 384-dim).

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

__version__ = "0.2.0"

from memcp.errors import (
    MemcpError,
    ModelUnavailable,
    NotFound,
    Conflict,
    InvalidArgument,
    StorageUnavailable,
)
from memcp.types import MemoryEntry
from memcp.scope import GLOBAL_SCOPE, ALL_SCOPES, ScopeQuery, resolve_scope
from memcp.similarity import cosine_similarity
from memcp.embedding import EmbeddingProvider, EMBEDDING_DIM
from memcp.store import MemoryStore, SCHEMA_VERSION
from memcp.service import MemoryService
from memcp.config import MemoryConfig, load_config

__all__ = [
    "__version__",
    "MemcpError",
    "ModelUnavailable",
    "NotFound",
    "Conflict",
    "InvalidArgument",
    "StorageUnavailable",
    "MemoryEntry",
    "GLOBAL_SCOPE",
    "ALL_SCOPES",
    "ScopeQuery",
    "resolve_scope",
    "cosine_similarity",
    "EmbeddingProvider",
    "EMBEDDING_DIM",
    "MemoryStore",
    "SCHEMA_VERSION",
    "MemoryService",
    "MemoryConfig",
    "load_config",
]
