"""
Tool Response Formatting

Renders memory entries into the text blocks returned by the MCP tools and the
CLI. All user-facing wording lives here.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

from memcp.scope import resolve_scope
from memcp.types import MemoryEntry

LIST_SNIPPET_LENGTH = 120


def scope_label(project: Optional[str]) -> str:
    """'global scope', 'project "x"' or 'all scopes'."""
    return resolve_scope(project).label()


def plural_memories(n: int) -> str:
    return f"{n} memor{'y' if n == 1 else 'ies'}"


def snippet(text: str, length: int = LIST_SNIPPET_LENGTH) -> str:
    """Truncate ``text`` to ``length`` characters with an ellipsis."""
    if len(text) <= length:
        return text
    return text[:length] + "…"


def format_list_row(entry: MemoryEntry) -> str:
    """One bullet per entry: id, key, tags, snippet, update time."""
    key = f" [{entry.key}]" if entry.key else ""
    tags = f" ({', '.join(entry.tags)})" if entry.tags else ""
    return (
        f"• {entry.id}{key}{tags}\n"
        f"  {snippet(entry.content)}\n"
        f"  Updated: {entry.updated_at}"
    )


def format_list(
    entries: Sequence[MemoryEntry],
    project: Optional[str] = None,
    tags: Sequence[str] = (),
) -> str:
    """Render list_memories output."""
    scope = scope_label(project)
    if not entries:
        tag_info = f" with tags [{', '.join(tags)}]" if tags else ""
        return f"No memories found in {scope}{tag_info}."
    tag_info = f" (filtered by tags: {', '.join(tags)})" if tags else ""
    header = f"{plural_memories(len(entries))} in {scope}{tag_info}:\n\n"
    return header + "\n\n".join(format_list_row(e) for e in entries)


def format_entry(entry: MemoryEntry, score: Optional[float] = None) -> str:
    """Full entry block used by retrieval results."""
    lines: List[str] = [f"ID: {entry.id}"]
    if entry.key:
        lines.append(f"Key: {entry.key}")
    if entry.scope:
        lines.append(f"Scope: {entry.scope}")
    if entry.tags:
        lines.append(f"Tags: {', '.join(entry.tags)}")
    if score is not None:
        lines.append(f"Score: {score:.4f}")
    lines.append(f"Content: {entry.content}")
    lines.append(f"Updated: {entry.updated_at}")
    return "\n".join(lines)


def format_retrieval(
    results: Sequence[Tuple[MemoryEntry, float]],
    query: str,
    project: Optional[str] = None,
) -> str:
    """Render retrieve_memories output, best match first."""
    scope = scope_label(project)
    if not results:
        return f'No memories found matching "{query}" in {scope}.'
    header = (
        f'Found {plural_memories(len(results))} matching "{query}" in {scope}:\n'
    )
    body = "\n\n".join(
        f"--- [{i}] ---\n{format_entry(entry, score)}"
        for i, (entry, score) in enumerate(results, start=1)
    )
    return header + body


def format_stored(entry: MemoryEntry, project: Optional[str] = None) -> str:
    """Confirmation text for store_memory."""
    scope = f'project "{project}"' if project else "global"
    key_info = f' (key: "{entry.key}")' if entry.key else ""
    tags = ", ".join(entry.tags) if entry.tags else "none"
    return (
        f"Memory stored successfully in {scope} scope.\n"
        f"ID: {entry.id}{key_info}\n"
        f"Tags: {tags}"
    )


def entry_summary(entry: MemoryEntry, score: Optional[float] = None) -> Dict[str, Any]:
    """Structured form of an entry for tool results."""
    d = entry.to_dict()
    if score is not None:
        d["score"] = round(score, 6)
    return d
