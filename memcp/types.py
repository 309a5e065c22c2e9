"""
Memory Data Model

Defines ``MemoryEntry``, the unit of storage, and the small helpers shared by
the store and the service (timestamps, id generation, tag normalization).

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

import numpy as np

from memcp.scope import GLOBAL_SCOPE


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _after_iso(previous: str) -> str:
    """Current UTC time, forced strictly later than ``previous``."""
    now = datetime.now(timezone.utc)
    try:
        prev = datetime.fromisoformat(previous)
    except ValueError:
        return now.isoformat(timespec="microseconds")
    if prev.tzinfo is None:
        prev = prev.replace(tzinfo=timezone.utc)
    if now <= prev:
        now = prev + timedelta(microseconds=1)
    return now.isoformat(timespec="microseconds")


def _generate_id(prefix: str = "MEM") -> str:
    """Generate a unique memory ID with prefix."""
    short = uuid.uuid4().hex[:12]
    return f"{prefix}-{short}"


def normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """Strip, drop blanks and collapse case-insensitive duplicates.

    The first spelling of a tag wins and insertion order is preserved.
    """
    if not tags:
        return []
    seen = set()
    result: List[str] = []
    for tag in tags:
        tag = str(tag).strip()
        if not tag:
            continue
        folded = tag.lower()
        if folded in seen:
            continue
        seen.add(folded)
        result.append(tag)
    return result


def has_all_tags(entry_tags: Iterable[str], wanted: Iterable[str]) -> bool:
    """AND tag filter, case-insensitive. An empty filter matches everything."""
    present = {t.lower() for t in entry_tags}
    return all(t.lower() in present for t in wanted)


# ---------------------------------------------------------------------------
# Memory Entry
# ---------------------------------------------------------------------------

@dataclass
class MemoryEntry:
    """
    A stored memory note.

    ``embedding`` is ``None`` for rows written before semantic search existed;
    such entries are listed but never ranked.
    """

    id: str = field(default_factory=_generate_id)
    content: str = ""
    scope: str = GLOBAL_SCOPE
    key: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    embedding: Optional[np.ndarray] = field(default=None, repr=False, compare=False)

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe). The vector itself is omitted."""
        return {
            "id": self.id,
            "scope": self.scope,
            "key": self.key,
            "content": self.content,
            "tags": list(self.tags),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "has_embedding": self.has_embedding,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MemoryEntry:
        """Deserialize from dict, ignoring unknown fields."""
        known = set(cls.__dataclass_fields__.keys()) - {"embedding"}
        return cls(**{k: v for k, v in d.items() if k in known})

    def to_json(self) -> str:
        """Serialize to indented JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)
