"""
Scope resolution.

Three scope modes reach the store:

    None / ""   -> the "global" bucket
    "*"         -> every scope (read operations only)
    any string  -> exact, case-sensitive project name

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from memcp.errors import InvalidArgument

GLOBAL_SCOPE = "global"
ALL_SCOPES = "*"


@dataclass(frozen=True)
class ScopeQuery:
    """Resolved read plan. ``scope is None`` means no scope filter."""

    scope: Optional[str]

    @property
    def is_wildcard(self) -> bool:
        return self.scope is None

    def label(self) -> str:
        """Human-readable name used in tool responses."""
        if self.scope is None:
            return "all scopes"
        if self.scope == GLOBAL_SCOPE:
            return "global scope"
        return f'project "{self.scope}"'


def _check_type(scope) -> None:
    if scope is not None and not isinstance(scope, str):
        raise InvalidArgument(
            f"scope must be a string, got {type(scope).__name__}"
        )


def resolve_scope(scope: Optional[str]) -> ScopeQuery:
    """Map a caller-supplied scope to a read plan."""
    _check_type(scope)
    if not scope:
        return ScopeQuery(GLOBAL_SCOPE)
    if scope == ALL_SCOPES:
        return ScopeQuery(None)
    return ScopeQuery(scope)


def resolve_write_scope(scope: Optional[str]) -> str:
    """Canonical scope for a write. The wildcard is never a write target."""
    _check_type(scope)
    if scope == ALL_SCOPES:
        raise InvalidArgument(
            f"{ALL_SCOPES!r} selects all scopes and cannot be written to"
        )
    return scope or GLOBAL_SCOPE


def validate_project_name(name: Optional[str], role: str = "project") -> str:
    """Check a rename source or target.

    Neither the wildcard nor the reserved global bucket can be renamed.
    """
    _check_type(name)
    if not name:
        raise InvalidArgument(f"{role} name must not be empty")
    if name == ALL_SCOPES:
        raise InvalidArgument(f"{role} name cannot be the wildcard {ALL_SCOPES!r}")
    if name == GLOBAL_SCOPE:
        raise InvalidArgument(
            f"{role} name cannot be the reserved {GLOBAL_SCOPE!r} scope"
        )
    return name
