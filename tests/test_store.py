"""
Tests for memcp.store — SQLite schema, migrations, upsert, rename, ranking.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import sqlite3

import numpy as np
import pytest

from memcp.embedding import EMBEDDING_DIM
from memcp.errors import Conflict, InvalidArgument, NotFound, StorageUnavailable
from memcp.scope import ScopeQuery
from memcp.store import SCHEMA_VERSION, MemoryStore, pack_vector, unpack_vector
from memcp.types import MemoryEntry

GLOBAL = ScopeQuery("global")
EVERYWHERE = ScopeQuery(None)


def _vec(*values):
    """A store-sized vector whose first components are ``values``."""
    v = np.zeros(EMBEDDING_DIM, dtype=np.float32)
    v[: len(values)] = values
    return v


def _put(store, content, scope="global", key=None, tags=None, vec=None, entry_id=None):
    entry = MemoryEntry(content=content, key=key, tags=tags or [])
    if entry_id is not None:
        entry.id = entry_id
    return store.upsert(scope, entry, _vec(1.0) if vec is None else vec)


_V1_TABLE = """
CREATE TABLE memories (
    id TEXT PRIMARY KEY,
    scope TEXT NOT NULL DEFAULT 'global',
    key TEXT,
    content TEXT NOT NULL,
    tags TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""


# ---------------------------------------------------------------------------
# Vector packing
# ---------------------------------------------------------------------------


class TestVectorPacking:
    def test_little_endian_float32(self):
        assert pack_vector([1.0]) == b"\x00\x00\x80\x3f"

    def test_roundtrip(self):
        v = np.arange(EMBEDDING_DIM, dtype=np.float32) / 7.0
        out = unpack_vector(pack_vector(v), EMBEDDING_DIM)
        assert np.array_equal(out, v)
        assert len(pack_vector(v)) == 4 * EMBEDDING_DIM

    def test_rejects_truncated(self):
        with pytest.raises(ValueError):
            unpack_vector(b"\x00" * (4 * EMBEDDING_DIM - 1), EMBEDDING_DIM)

    def test_rejects_empty(self):
        with pytest.raises(ValueError):
            unpack_vector(b"", EMBEDDING_DIM)

    def test_rejects_two_vectors(self):
        with pytest.raises(ValueError):
            unpack_vector(b"\x00" * (8 * EMBEDDING_DIM), EMBEDDING_DIM)


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestSchema:
    def test_fresh_database_is_current(self, store):
        assert store.schema_version() == SCHEMA_VERSION

    def test_tables_exist(self, store):
        names = {
            r[0] for r in store._conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        assert {"memories", "schema_meta"} <= names

    def test_embedding_dim_recorded(self, store):
        row = store._conn.execute(
            "SELECT value FROM schema_meta WHERE key='embedding_dim'"
        ).fetchone()
        assert int(row[0]) == EMBEDDING_DIM

    def test_reopen_keeps_data(self, tmp_path):
        db = str(tmp_path / "sub" / "memories.db")
        s = MemoryStore(db)
        _put(s, "persisted")
        s.close()
        s2 = MemoryStore(db)
        assert [e.content for e in s2.list_entries(GLOBAL)] == ["persisted"]
        s2.close()

    def test_dimension_mismatch_rejected(self, tmp_path):
        db = str(tmp_path / "memories.db")
        MemoryStore(db).close()
        with pytest.raises(StorageUnavailable, match="384"):
            MemoryStore(db, dimension=128)

    def test_unopenable_path(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises(StorageUnavailable):
            MemoryStore(str(blocker / "memories.db"))


class TestLegacyMigration:
    @pytest.fixture
    def legacy_db(self, tmp_path):
        db = str(tmp_path / "legacy.db")
        conn = sqlite3.connect(db)
        conn.execute(_V1_TABLE)
        conn.execute(
            "INSERT INTO memories VALUES (?,?,?,?,?,?,?)",
            ("old-1", "global", "style", "legacy note", '["old"]',
             "2024-01-01T00:00:00+00:00", "2024-01-01T00:00:00+00:00"),
        )
        conn.commit()
        conn.close()
        return db

    def test_adds_embedding_column(self, legacy_db):
        s = MemoryStore(legacy_db)
        cols = {r[1] for r in s._conn.execute("PRAGMA table_info(memories)")}
        assert "embedding" in cols
        assert s.schema_version() == SCHEMA_VERSION
        s.close()

    def test_legacy_rows_listed_not_ranked(self, legacy_db):
        s = MemoryStore(legacy_db)
        listed = s.list_entries(GLOBAL)
        assert [e.id for e in listed] == ["old-1"]
        assert not listed[0].has_embedding
        assert s.rank(GLOBAL, _vec(1.0)) == []
        s.close()

    def test_missing_embeddings(self, legacy_db):
        s = MemoryStore(legacy_db)
        assert [e.id for e in s.missing_embeddings()] == ["old-1"]
        assert s.write_embeddings([("old-1", _vec(1.0))]) == 1
        assert s.missing_embeddings() == []
        assert [e.id for e, _ in s.rank(GLOBAL, _vec(1.0))] == ["old-1"]
        s.close()

    def test_unstamped_table_with_embedding_column(self, tmp_path):
        db = str(tmp_path / "unstamped.db")
        conn = sqlite3.connect(db)
        conn.execute(_V1_TABLE)
        conn.execute("ALTER TABLE memories ADD COLUMN embedding BLOB")
        conn.commit()
        conn.close()
        s = MemoryStore(db)
        assert s.schema_version() == SCHEMA_VERSION
        s.close()


# ---------------------------------------------------------------------------
# Upsert
# ---------------------------------------------------------------------------


class TestUpsert:
    def test_insert_sets_timestamps(self, store):
        e = _put(store, "hello")
        assert e.created_at == e.updated_at
        assert e.scope == "global"
        assert e.has_embedding

    def test_without_key_always_inserts(self, store):
        _put(store, "same")
        _put(store, "same")
        assert store.count_entries(GLOBAL) == 2

    def test_same_key_updates_in_place(self, store):
        first = _put(store, "v1", key="style", tags=["a"])
        second = _put(store, "v2", key="style", tags=["b"], vec=_vec(0.0, 1.0))
        assert second.id == first.id
        assert second.created_at == first.created_at
        assert second.updated_at > first.updated_at
        rows = store.list_entries(GLOBAL)
        assert len(rows) == 1
        assert rows[0].content == "v2"
        assert rows[0].tags == ["b"]
        assert np.allclose(rows[0].embedding, _vec(0.0, 1.0))

    def test_key_match_is_case_insensitive(self, store):
        first = _put(store, "v1", key="Style")
        second = _put(store, "v2", key="STYLE")
        assert second.id == first.id
        assert store.read_entry(first.id).key == "STYLE"

    def test_key_match_folds_unicode(self, store):
        first = _put(store, "v1", key="Émile")
        second = _put(store, "v2", key="émile")
        assert second.id == first.id
        assert store.count_entries(GLOBAL) == 1

    def test_key_is_per_scope(self, store):
        a = _put(store, "global", key="k")
        b = _put(store, "project", scope="app", key="k")
        assert a.id != b.id
        assert store.count_entries(EVERYWHERE) == 2

    def test_repeated_upsert_is_idempotent(self, store):
        for _ in range(3):
            _put(store, "same", key="k", tags=["t"])
        rows = store.list_entries(GLOBAL)
        assert len(rows) == 1
        assert rows[0].content == "same"

    def test_tags_normalized(self, store):
        e = _put(store, "x", tags=["API", "api", " db "])
        assert e.tags == ["API", "db"]
        assert store.read_entry(e.id).tags == ["API", "db"]

    def test_wrong_dimension(self, store):
        with pytest.raises(InvalidArgument):
            store.upsert("global", MemoryEntry(content="x"), np.ones(10))
        assert store.count_entries() == 0

    def test_id_conflict(self, store):
        _put(store, "first", entry_id="MEM-fixed")
        with pytest.raises(Conflict):
            _put(store, "second", scope="app", entry_id="MEM-fixed")
        assert store.read_entry("MEM-fixed").content == "first"

    def test_store_without_embedding(self, store):
        e = store.upsert("global", MemoryEntry(content="plain"), None)
        assert not e.has_embedding
        assert store.stats()["missing_embeddings"] == 1


# ---------------------------------------------------------------------------
# Listing and tag filters
# ---------------------------------------------------------------------------


class TestList:
    def test_most_recent_first(self, store):
        for name in ("a", "b", "c"):
            _put(store, name)
        assert [e.content for e in store.list_entries(GLOBAL)] == ["c", "b", "a"]

    def test_update_moves_to_front(self, store):
        _put(store, "a", key="ka")
        _put(store, "b")
        _put(store, "a2", key="ka")
        assert store.list_entries(GLOBAL)[0].content == "a2"

    def test_scope_isolation(self, store):
        _put(store, "g")
        _put(store, "p", scope="app")
        assert [e.content for e in store.list_entries(GLOBAL)] == ["g"]
        assert [e.content for e in store.list_entries(ScopeQuery("app"))] == ["p"]
        assert [e.content for e in store.list_entries(ScopeQuery("App"))] == []
        assert {e.content for e in store.list_entries(EVERYWHERE)} == {"g", "p"}

    def test_tag_and_semantics(self, store):
        _put(store, "x-only", tags=["x"])
        _put(store, "x-and-y", tags=["x", "y"])
        assert [e.content for e in store.list_entries(GLOBAL, ["x"])] == ["x-and-y", "x-only"]
        assert [e.content for e in store.list_entries(GLOBAL, ["x", "y"])] == ["x-and-y"]
        assert store.list_entries(GLOBAL, ["z"]) == []

    def test_tag_filter_case_insensitive(self, store):
        _put(store, "n", tags=["Conventions"])
        assert len(store.list_entries(GLOBAL, ["conventions"])) == 1


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------


class TestRank:
    def test_descending_similarity(self, store):
        _put(store, "opposite", vec=_vec(-1.0, 0.0))
        _put(store, "close", vec=_vec(1.0, 0.1))
        _put(store, "orthogonal", vec=_vec(0.0, 1.0))
        _put(store, "middle", vec=_vec(1.0, 1.0))
        ranked = store.rank(GLOBAL, _vec(1.0, 0.0))
        assert [e.content for e, _ in ranked] == ["close", "middle", "orthogonal", "opposite"]
        scores = [s for _, s in ranked]
        assert scores == sorted(scores, reverse=True)

    def test_limit(self, store):
        for i in range(5):
            _put(store, f"m{i}", vec=_vec(1.0, float(i)))
        assert len(store.rank(GLOBAL, _vec(1.0), limit=2)) == 2

    def test_ties_most_recent_first(self, store):
        _put(store, "older", vec=_vec(1.0))
        _put(store, "newer", vec=_vec(2.0))
        ranked = store.rank(GLOBAL, _vec(1.0))
        assert [e.content for e, _ in ranked] == ["newer", "older"]

    def test_scope_and_tags(self, store):
        _put(store, "global hit", tags=["x"])
        _put(store, "project hit", scope="app", tags=["x"])
        _put(store, "project miss", scope="app", tags=["y"])
        assert [e.content for e, _ in store.rank(ScopeQuery("app"), _vec(1.0), ["x"])] == ["project hit"]
        assert len(store.rank(EVERYWHERE, _vec(1.0), ["x"])) == 2

    def test_query_dimension_checked(self, store):
        with pytest.raises(InvalidArgument):
            store.rank(GLOBAL, np.ones(3))

    def test_corrupt_blob(self, store):
        e = _put(store, "x")
        store._conn.execute("UPDATE memories SET embedding=? WHERE id=?", (b"\x00\x01", e.id))
        store._conn.commit()
        with pytest.raises(StorageUnavailable):
            store.rank(GLOBAL, _vec(1.0))


# ---------------------------------------------------------------------------
# Delete and rename
# ---------------------------------------------------------------------------


class TestDelete:
    def test_delete(self, store):
        e = _put(store, "x")
        assert store.delete("global", e.id) is True
        assert store.read_entry(e.id) is None

    def test_scope_must_match(self, store):
        e = _put(store, "x", scope="app")
        assert store.delete("global", e.id) is False
        assert store.delete("other", e.id) is False
        assert store.read_entry(e.id) is not None
        assert store.delete("app", e.id) is True

    def test_unknown_id(self, store):
        assert store.delete("global", "MEM-nope") is False


class TestRenameScope:
    def test_moves_all_entries(self, store):
        ids = {_put(store, f"m{i}", scope="old").id for i in range(3)}
        _put(store, "unrelated", scope="other")
        assert store.rename_scope("old", "new") == 3
        assert {e.id for e in store.list_entries(ScopeQuery("new"))} == ids
        assert store.count_entries(ScopeQuery("old")) == 0
        assert store.count_entries(ScopeQuery("other")) == 1

    def test_preserves_fields(self, store):
        e = _put(store, "x", scope="old", key="k", tags=["t"])
        store.rename_scope("old", "new")
        moved = store.read_entry(e.id)
        assert moved.scope == "new"
        assert (moved.key, moved.tags, moved.created_at, moved.updated_at) == (
            e.key, e.tags, e.created_at, e.updated_at,
        )

    def test_missing_source(self, store):
        with pytest.raises(NotFound):
            store.rename_scope("ghost", "new")

    def test_target_taken(self, store):
        _put(store, "a", scope="old")
        _put(store, "b", scope="new")
        with pytest.raises(Conflict):
            store.rename_scope("old", "new")
        assert store.count_entries(ScopeQuery("old")) == 1
        assert store.count_entries(ScopeQuery("new")) == 1


class TestStats:
    def test_counts(self, store):
        _put(store, "a")
        _put(store, "b", scope="app")
        store.upsert("app", MemoryEntry(content="c"), None)
        stats = store.stats()
        assert stats["total_entries"] == 3
        assert stats["embedded_entries"] == 2
        assert stats["missing_embeddings"] == 1
        assert stats["by_scope"] == {"app": 2, "global": 1}
        assert stats["schema_version"] == SCHEMA_VERSION
