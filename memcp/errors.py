"""
Error taxonomy for memcp.

Every failure raised by the store, the embedding provider or the service is a
subclass of ``MemcpError`` so callers (MCP tools, CLI) can tell the kinds apart
without parsing messages.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations


class MemcpError(Exception):
    """Base class for all memcp failures."""

    kind = "error"


class ModelUnavailable(MemcpError):
    """The embedding model could not be loaded or failed to run."""

    kind = "model_unavailable"


class NotFound(MemcpError):
    """Delete target or rename source does not exist."""

    kind = "not_found"


class Conflict(MemcpError):
    """Rename target already holds entries, or an id is already taken."""

    kind = "conflict"


class InvalidArgument(MemcpError, ValueError):
    """Malformed scope or missing required field, rejected before store access."""

    kind = "invalid_argument"


class StorageUnavailable(MemcpError):
    """The SQLite database cannot be opened, read or written."""

    kind = "storage_unavailable"
