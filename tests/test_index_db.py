"""Tests for the SQLite index (mdmd.index_db)."""

import sqlite3
from pathlib import Path

import pytest

from mdmd.errors import ValidationError
from mdmd.index_db import IndexDB, dump_frontmatter_json, is_inside, to_collection_relative_path
from mdmd.models import IndexNote


def _note(path: str, mdmd_id: str | None = None, mtime: int = 100, size: int = 10) -> IndexNote:
    return IndexNote(
        path_in_collection=path,
        mdmd_id=mdmd_id,
        mtime=mtime,
        size=size,
        frontmatter_json='{"title": "T"}',
    )


class TestCollections:
    def test_collection_id_is_stable(self, db: IndexDB, tmp_path: Path):
        first = db.collection_id(tmp_path / "a")
        again = db.collection_id(tmp_path / "a")
        other = db.collection_id(tmp_path / "b")

        assert first == again
        assert first != other
        assert set(db.list_collections()) == {
            str((tmp_path / "a").resolve()),
            str((tmp_path / "b").resolve()),
        }

    def test_lookup_does_not_register(self, db: IndexDB, tmp_path: Path):
        assert db.find_collection_id(tmp_path / "a") is None
        assert db.list_collections() == {}

        registered = db.collection_id(tmp_path / "a")

        assert db.find_collection_id(tmp_path / "a") == registered

    def test_rows_are_scoped_per_collection(self, db: IndexDB, tmp_path: Path):
        a = db.collection_id(tmp_path / "a")
        b = db.collection_id(tmp_path / "b")

        db.upsert_note(a, _note("inbox/x.md", "id-1"))
        db.upsert_note(b, _note("inbox/x.md", "id-1"))

        assert db.get_note(a, "inbox/x.md") is not None
        assert db.get_note(b, "inbox/x.md") is not None
        db.delete_note(a, "inbox/x.md")
        assert db.get_note(a, "inbox/x.md") is None
        assert db.get_note(b, "inbox/x.md") is not None


class TestNotes:
    def test_upsert_replaces_existing_row(self, db: IndexDB, tmp_path: Path):
        cid = db.collection_id(tmp_path)
        db.upsert_note(cid, _note("a.md", "id-1", mtime=1, size=1))
        db.upsert_note(cid, _note("a.md", "id-1", mtime=2, size=5))

        assert db.list_file_stats(cid) == {"a.md": (2, 5)}

    def test_list_notes_is_sorted_and_filterable(self, db: IndexDB, tmp_path: Path):
        cid = db.collection_id(tmp_path)
        db.upsert_notes(cid, [_note("b.md", "id-b"), _note("a.md"), _note("c.md", "id-c")])

        assert [n.path_in_collection for n in db.list_notes(cid)] == ["a.md", "b.md", "c.md"]
        assert [n.path_in_collection for n in db.list_notes(cid, managed_only=True)] == [
            "b.md",
            "c.md",
        ]

    def test_find_path_by_id(self, db: IndexDB, tmp_path: Path):
        cid = db.collection_id(tmp_path)
        db.upsert_note(cid, _note("inbox/a.md", "id-a"))

        assert db.find_path_by_id(cid, "id-a") == "inbox/a.md"
        assert db.find_path_by_id(cid, "missing") is None

    def test_duplicate_id_in_collection_is_rejected(self, db: IndexDB, tmp_path: Path):
        cid = db.collection_id(tmp_path)
        db.upsert_note(cid, _note("a.md", "same"))

        with pytest.raises(sqlite3.IntegrityError):
            db.upsert_note(cid, _note("b.md", "same"))

    def test_unmanaged_rows_may_share_null_id(self, db: IndexDB, tmp_path: Path):
        cid = db.collection_id(tmp_path)
        db.upsert_notes(cid, [_note("a.md"), _note("b.md")])

        assert len(db.list_notes(cid)) == 2

    def test_transaction_rolls_back_on_error(self, db: IndexDB, tmp_path: Path):
        cid = db.collection_id(tmp_path)
        db.upsert_note(cid, _note("keep.md", "id-keep"))

        with pytest.raises(RuntimeError):
            with db.transaction():
                db.delete_note(cid, "keep.md")
                db.upsert_note(cid, _note("new.md", "id-new"))
                raise RuntimeError("boom")

        assert [n.path_in_collection for n in db.list_notes(cid)] == ["keep.md"]

    def test_nested_transaction_joins_outer(self, db: IndexDB, tmp_path: Path):
        cid = db.collection_id(tmp_path)

        with pytest.raises(RuntimeError):
            with db.transaction():
                with db.transaction():
                    db.upsert_note(cid, _note("a.md", "id-a"))
                raise RuntimeError("boom")

        assert db.list_notes(cid) == []


class TestSchemaMigration:
    def test_unscoped_table_is_adopted_by_legacy_root(self, tmp_path: Path):
        db_path = tmp_path / "old.db"
        conn = sqlite3.connect(db_path)
        conn.execute(
            """
            CREATE TABLE index_notes (
                path_in_collection TEXT PRIMARY KEY,
                mdmd_id TEXT,
                mtime INTEGER NOT NULL,
                size INTEGER NOT NULL,
                frontmatter TEXT
            )
            """
        )
        conn.execute(
            "INSERT INTO index_notes VALUES (?, ?, ?, ?, ?)",
            ("inbox/old.md", "id-old", 5, 7, '{"mdmd_id": "id-old"}'),
        )
        conn.commit()
        conn.close()

        root = tmp_path / "vault"
        with IndexDB(path=db_path, legacy_root=root) as db:
            cid = db.collection_id(root)
            notes = db.list_notes(cid)

        assert [(n.path_in_collection, n.mdmd_id, n.mtime, n.size) for n in notes] == [
            ("inbox/old.md", "id-old", 5, 7)
        ]

    def test_reopening_keeps_rows(self, tmp_path: Path):
        db_path = tmp_path / "index.db"
        with IndexDB(path=db_path) as db:
            db.upsert_note(db.collection_id(tmp_path), _note("a.md", "id-a"))

        with IndexDB(path=db_path) as db:
            assert db.find_path_by_id(db.collection_id(tmp_path), "id-a") == "a.md"

    def test_closed_handle_refuses_queries(self, tmp_path: Path):
        db = IndexDB(path=tmp_path / "index.db")

        with pytest.raises(RuntimeError, match="not open"):
            db.list_collections()


class TestPathHelpers:
    def test_relative_paths_use_forward_slashes(self, tmp_path: Path):
        assert to_collection_relative_path(tmp_path, tmp_path / "a" / "b.md") == "a/b.md"

    def test_paths_outside_collection_are_rejected(self, tmp_path: Path):
        with pytest.raises(ValidationError):
            to_collection_relative_path(tmp_path / "vault", tmp_path / "elsewhere.md")

    def test_is_inside_is_lexical(self, tmp_path: Path):
        assert is_inside(tmp_path, tmp_path / "x" / "y.md")
        assert not is_inside(tmp_path / "x", tmp_path / "xy" / "z.md")
        assert not is_inside(tmp_path / "x", tmp_path)

    def test_frontmatter_json_accepts_non_string_keys(self):
        dumped = dump_frontmatter_json({2024: "recap", "title": "A"})

        assert dumped == '{"2024": "recap", "title": "A"}'
        assert dump_frontmatter_json(None) is None
