"""
Memory Store — SQLite Persistent Backend

Tables:
    memories     - One row per memory entry (scope, key, content, tags,
                   embedding BLOB, timestamps)
    schema_meta  - Schema version and embedding dimensionality

Schema changes are versioned explicitly through ``schema_meta``:

    v1  first release, no embedding column
    v2  ``embedding BLOB`` added (NULL for rows that predate it)

Thread safety: one sqlite3 connection with check_same_thread=False, all
access serialized by a lock. Every sqlite3 failure surfaces as
``StorageUnavailable``; failed writes are rolled back.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from memcp.embedding import EMBEDDING_DIM
from memcp.errors import Conflict, InvalidArgument, NotFound, StorageUnavailable
from memcp.scope import ScopeQuery
from memcp.similarity import rank_by_similarity
from memcp.types import MemoryEntry, _after_iso, _now_iso, has_all_tags, normalize_tags

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS memories (
    id         TEXT PRIMARY KEY,
    scope      TEXT NOT NULL DEFAULT 'global',
    key        TEXT,
    content    TEXT NOT NULL,
    tags       TEXT NOT NULL DEFAULT '[]',      -- JSON array, insertion order
    embedding  BLOB,                            -- little-endian float32
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_memories_scope ON memories(scope);
CREATE INDEX IF NOT EXISTS idx_memories_key   ON memories(scope, key);

CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

# Statements that bring a database from version N-1 to N.
_MIGRATIONS: Dict[int, Tuple[str, ...]] = {
    2: ("ALTER TABLE memories ADD COLUMN embedding BLOB",),
}


def _fold_key(key: Optional[str]) -> Optional[str]:
    """Unicode case fold for key matching (SQLite's lower() is ASCII-only)."""
    return key.lower() if key is not None else None


_COLUMNS = "id, scope, key, content, tags, embedding, created_at, updated_at"
_ORDER = "ORDER BY updated_at DESC, rowid DESC"


# ---------------------------------------------------------------------------
# Vector packing helpers
# ---------------------------------------------------------------------------

_VECTOR_DTYPE = np.dtype("<f4")


def pack_vector(vec) -> bytes:
    """Pack a vector to bytes (little-endian float32)."""
    return np.asarray(vec, dtype=_VECTOR_DTYPE).tobytes()


def unpack_vector(data: bytes, dim: int) -> np.ndarray:
    """Unpack one ``dim``-float vector from little-endian float32 bytes.

    Raises:
        ValueError: If the buffer length is not a positive multiple of the
            vector size, or holds more than one vector.
    """
    size = dim * _VECTOR_DTYPE.itemsize
    if not data or len(data) % size:
        raise ValueError(
            f"Embedding blob of {len(data or b'')} bytes is not a multiple "
            f"of {size} ({dim} float32)"
        )
    vectors = np.frombuffer(data, dtype=_VECTOR_DTYPE).reshape(-1, dim)
    if len(vectors) != 1:
        raise ValueError(f"Expected one {dim}-dim vector, got {len(vectors)}")
    return vectors[0].astype(np.float32)


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------

class MemoryStore:
    """
    SQLite-backed persistent store for memory entries.

    The store never calls the embedding model: writers hand it the vector
    computed beforehand, so a failed embedding never leaves a partial row.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        wal_mode: bool = True,
        dimension: int = EMBEDDING_DIM,
    ):
        """Open (or create) the database and bring its schema up to date.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for disk databases.
            dimension: Embedding dimensionality this database holds.

        Raises:
            StorageUnavailable: If the database cannot be opened or migrated,
                or was built for a different embedding dimensionality.
        """
        self._db_path = db_path
        self._dimension = dimension
        self._lock = threading.Lock()
        try:
            # Auto-create parent directory for disk-backed databases.
            if db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.create_function("fold_key", 1, _fold_key, deterministic=True)
            if wal_mode and db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._init_schema()
        except (OSError, sqlite3.Error) as exc:
            raise StorageUnavailable(
                f"Cannot open memory database {db_path}: {exc}"
            ) from exc
        self._check_dimension()
        logger.info(
            "MemoryStore initialized: %s (schema v%d, %d-dim embeddings)",
            db_path, SCHEMA_VERSION, dimension,
        )

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def db_path(self) -> str:
        return self._db_path

    # -- Schema ------------------------------------------------------------

    def _init_schema(self) -> None:
        preexisting = self._conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name='memories'"
        ).fetchone() is not None
        self._conn.executescript(_SCHEMA_SQL)

        version = self.schema_version()
        if version is None:
            # Un-stamped tables come from before versioning (v1).
            version = 1 if preexisting else SCHEMA_VERSION
        self._migrate(version)
        self._conn.execute(
            "INSERT OR REPLACE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
            (str(SCHEMA_VERSION),),
        )
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_by', 'memcp')",
        )
        self._conn.commit()

    def _migrate(self, from_version: int) -> None:
        """Apply every migration newer than ``from_version``."""
        for version in range(from_version + 1, SCHEMA_VERSION + 1):
            logger.warning("Migrating memory database to schema v%d", version)
            for stmt in _MIGRATIONS.get(version, ()):
                try:
                    self._conn.execute(stmt)
                except sqlite3.OperationalError as exc:
                    if "duplicate column" not in str(exc):
                        raise
                    logger.debug("Migration v%d already applied: %s", version, exc)

    def schema_version(self) -> Optional[int]:
        """Version stamped in ``schema_meta``, or None for un-stamped databases."""
        row = self._conn.execute(
            "SELECT value FROM schema_meta WHERE key='schema_version'"
        ).fetchone()
        return int(row["value"]) if row is not None else None

    def _check_dimension(self) -> None:
        with self._write() as conn:
            row = conn.execute(
                "SELECT value FROM schema_meta WHERE key='embedding_dim'"
            ).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO schema_meta (key, value) VALUES ('embedding_dim', ?)",
                    (str(self._dimension),),
                )
                return
        if int(row["value"]) != self._dimension:
            self._conn.close()
            raise StorageUnavailable(
                f"Memory database {self._db_path} holds {row['value']}-dim "
                f"embeddings, not {self._dimension}"
            )

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()

    # -- Connection helpers ------------------------------------------------

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        """Serialized write transaction: commit on success, roll back on error."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StorageUnavailable(f"Memory database write failed: {exc}") from exc
            except BaseException:
                self._conn.rollback()
                raise

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except sqlite3.Error as exc:
                raise StorageUnavailable(f"Memory database read failed: {exc}") from exc

    def _select(self, query: ScopeQuery) -> List[sqlite3.Row]:
        with self._read() as conn:
            if query.is_wildcard:
                return conn.execute(
                    f"SELECT {_COLUMNS} FROM memories {_ORDER}"
                ).fetchall()
            return conn.execute(
                f"SELECT {_COLUMNS} FROM memories WHERE scope=? {_ORDER}",
                (query.scope,),
            ).fetchall()

    # -- Write operations --------------------------------------------------

    def upsert(
        self,
        scope: str,
        entry: MemoryEntry,
        embedding: Optional[Sequence[float]],
    ) -> MemoryEntry:
        """
        Insert a new entry, or update the entry holding the same key.

        When ``entry.key`` matches an existing row of ``scope`` (case-insensitive)
        that row's key spelling, content, tags, embedding and updated_at are
        replaced; its id and created_at are kept. Otherwise a row is inserted
        with ``entry.id`` and created_at == updated_at == now.

        Raises:
            InvalidArgument: Embedding of the wrong dimensionality.
            Conflict: ``entry.id`` is already used by another row.
        """
        blob = None
        vector = None
        if embedding is not None:
            vector = np.asarray(embedding, dtype=np.float32)
            if vector.shape != (self._dimension,):
                raise InvalidArgument(
                    f"Embedding has shape {vector.shape}, expected ({self._dimension},)"
                )
            blob = pack_vector(vector)
        tags = normalize_tags(entry.tags)
        tags_json = json.dumps(tags, ensure_ascii=False)

        with self._write() as conn:
            if entry.key:
                row = conn.execute(
                    f"""SELECT {_COLUMNS} FROM memories
                        WHERE scope=? AND fold_key(key)=fold_key(?) {_ORDER} LIMIT 1""",
                    (scope, entry.key),
                ).fetchone()
                if row is not None:
                    now = _after_iso(row["updated_at"])
                    conn.execute(
                        """UPDATE memories
                           SET key=?, content=?, tags=?, embedding=?, updated_at=?
                           WHERE id=?""",
                        (entry.key, entry.content, tags_json, blob, now, row["id"]),
                    )
                    logger.debug("Updated memory %s in scope %s (key=%s)",
                                 row["id"], scope, entry.key)
                    return replace(
                        self._row_to_entry(row),
                        key=entry.key,
                        content=entry.content,
                        tags=tags,
                        embedding=vector,
                        updated_at=now,
                    )

            now = _now_iso()
            try:
                conn.execute(
                    f"INSERT INTO memories ({_COLUMNS}) VALUES (?,?,?,?,?,?,?,?)",
                    (entry.id, scope, entry.key or None, entry.content,
                     tags_json, blob, now, now),
                )
            except sqlite3.IntegrityError as exc:
                raise Conflict(f"Memory id {entry.id!r} already exists") from exc
            logger.debug("Inserted memory %s in scope %s", entry.id, scope)
        return MemoryEntry(
            id=entry.id,
            content=entry.content,
            scope=scope,
            key=entry.key or None,
            tags=tags,
            created_at=now,
            updated_at=now,
            embedding=vector,
        )

    def delete(self, scope: str, entry_id: str) -> bool:
        """Remove the entry only if both scope and id match."""
        with self._write() as conn:
            cur = conn.execute(
                "DELETE FROM memories WHERE scope=? AND id=?", (scope, entry_id)
            )
            deleted = cur.rowcount > 0
        logger.debug("Delete %s from scope %s: %s", entry_id, scope,
                     "ok" if deleted else "not found")
        return deleted

    def rename_scope(self, old: str, new: str) -> int:
        """Move every entry of scope ``old`` to scope ``new`` in one transaction.

        Returns:
            Number of entries moved.

        Raises:
            NotFound: ``old`` holds no entries.
            Conflict: ``new`` already holds entries (scopes are never merged).
        """
        with self._write() as conn:
            existing = conn.execute(
                "SELECT COUNT(*) AS cnt FROM memories WHERE scope=?", (old,)
            ).fetchone()["cnt"]
            if existing == 0:
                raise NotFound(f'Project "{old}" not found')
            taken = conn.execute(
                "SELECT COUNT(*) AS cnt FROM memories WHERE scope=?", (new,)
            ).fetchone()["cnt"]
            if taken > 0:
                raise Conflict(f'Project "{new}" already exists')
            cur = conn.execute(
                "UPDATE memories SET scope=? WHERE scope=?", (new, old)
            )
            moved = cur.rowcount
        logger.info("Renamed project %r to %r (%d entries)", old, new, moved)
        return moved

    def write_embeddings(self, pairs: Sequence[Tuple[str, Sequence[float]]]) -> int:
        """Attach embeddings to existing entries. Returns rows updated."""
        rows = []
        for entry_id, vec in pairs:
            vector = np.asarray(vec, dtype=np.float32)
            if vector.shape != (self._dimension,):
                raise InvalidArgument(
                    f"Embedding for {entry_id} has shape {vector.shape}, "
                    f"expected ({self._dimension},)"
                )
            rows.append((pack_vector(vector), entry_id))
        if not rows:
            return 0
        with self._write() as conn:
            cur = conn.executemany(
                "UPDATE memories SET embedding=? WHERE id=?", rows
            )
            return cur.rowcount

    # -- Query operations --------------------------------------------------

    def read_entry(self, entry_id: str) -> Optional[MemoryEntry]:
        """Read a single entry by id, in any scope."""
        with self._read() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM memories WHERE id=?", (entry_id,)
            ).fetchone()
        return self._row_to_entry(row) if row is not None else None

    def list_entries(
        self, query: ScopeQuery, tags: Sequence[str] = (),
    ) -> List[MemoryEntry]:
        """Entries of the scope having all ``tags``, most recently updated first."""
        wanted = normalize_tags(tags)
        results = []
        for row in self._select(query):
            if wanted and not has_all_tags(json.loads(row["tags"]), wanted):
                continue
            results.append(self._row_to_entry(row))
        return results

    def rank(
        self,
        query: ScopeQuery,
        query_vector: Sequence[float],
        tags: Sequence[str] = (),
        limit: int = 20,
    ) -> List[Tuple[MemoryEntry, float]]:
        """
        Rank the scope's entries by cosine similarity to ``query_vector``.

        Full linear scan: tag filter (AND, case-insensitive), rows without an
        embedding skipped, scored, sorted descending. Equal scores keep the
        scan order, i.e. most recently updated (then inserted) first.
        """
        qv = np.asarray(query_vector, dtype=np.float32)
        if qv.shape != (self._dimension,):
            raise InvalidArgument(
                f"Query vector has shape {qv.shape}, expected ({self._dimension},)"
            )
        wanted = normalize_tags(tags)
        candidates = []
        for row in self._select(query):
            if wanted and not has_all_tags(json.loads(row["tags"]), wanted):
                continue
            if row["embedding"] is None:
                # Entry predates semantic search
                continue
            entry = self._row_to_entry(row)
            candidates.append((entry, entry.embedding))
        return rank_by_similarity(qv, candidates, limit=limit)

    def missing_embeddings(self, limit: Optional[int] = None) -> List[MemoryEntry]:
        """Entries written before embeddings existed, oldest first."""
        sql = (
            f"SELECT {_COLUMNS} FROM memories WHERE embedding IS NULL "
            "ORDER BY created_at, rowid"
        )
        params: list = []
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def count_entries(self, query: Optional[ScopeQuery] = None) -> int:
        """Count entries, optionally restricted to one scope."""
        with self._read() as conn:
            if query is None or query.is_wildcard:
                row = conn.execute("SELECT COUNT(*) AS cnt FROM memories").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS cnt FROM memories WHERE scope=?",
                    (query.scope,),
                ).fetchone()
        return row["cnt"]

    def stats(self) -> Dict[str, Any]:
        """Store metrics: totals, per-scope counts, embedding coverage."""
        with self._read() as conn:
            total = conn.execute("SELECT COUNT(*) AS cnt FROM memories").fetchone()["cnt"]
            embedded = conn.execute(
                "SELECT COUNT(*) AS cnt FROM memories WHERE embedding IS NOT NULL"
            ).fetchone()["cnt"]
            by_scope = {
                row["scope"]: row["cnt"]
                for row in conn.execute(
                    "SELECT scope, COUNT(*) AS cnt FROM memories GROUP BY scope ORDER BY scope"
                ).fetchall()
            }
        return {
            "db_path": self._db_path,
            "schema_version": SCHEMA_VERSION,
            "embedding_dim": self._dimension,
            "total_entries": total,
            "embedded_entries": embedded,
            "missing_embeddings": total - embedded,
            "by_scope": by_scope,
        }

    # -- Internal helpers --------------------------------------------------

    def _row_to_entry(self, row: sqlite3.Row) -> MemoryEntry:
        """Convert a SQLite Row to MemoryEntry."""
        blob = row["embedding"]
        vector = None
        if blob is not None:
            try:
                vector = unpack_vector(blob, self._dimension)
            except ValueError as exc:
                raise StorageUnavailable(
                    f"Corrupt embedding for memory {row['id']}: {exc}"
                ) from exc
        return MemoryEntry(
            id=row["id"],
            content=row["content"],
            scope=row["scope"],
            key=row["key"],
            tags=json.loads(row["tags"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            embedding=vector,
        )
