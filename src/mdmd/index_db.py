"""SQLite index of note metadata, scoped per collection root.

The index is a derived cache: every row can be rebuilt from the notes on disk
by the refresh engine. Location: ``config.get_index_db_path()``.

Schema::

    collections(collection_id INTEGER PRIMARY KEY, root TEXT UNIQUE)
    index_notes(collection_id, path_in_collection, mdmd_id, mtime, size, frontmatter)
        PRIMARY KEY (collection_id, path_in_collection)
        UNIQUE (collection_id, mdmd_id) WHERE mdmd_id IS NOT NULL

``IndexDB`` is an explicit handle: open it with ``with IndexDB() as db:`` at
the start of a command and pass it to every operation that needs it.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .config import get_index_db_path
from .errors import ValidationError
from .models import IndexNote

log = logging.getLogger(__name__)

# Rows from an index_notes table that predates collection scoping are
# attached to this root when no real root is known at migration time.
LEGACY_COLLECTION_ROOT = "/__mdmd_legacy_collection__"

_INDEX_NOTES_DDL = """
    CREATE TABLE IF NOT EXISTS {table} (
        collection_id INTEGER NOT NULL,
        path_in_collection TEXT NOT NULL,
        mdmd_id TEXT,
        mtime INTEGER NOT NULL,
        size INTEGER NOT NULL,
        frontmatter TEXT,
        PRIMARY KEY (collection_id, path_in_collection),
        FOREIGN KEY (collection_id) REFERENCES collections(collection_id) ON DELETE CASCADE
    )
"""

_UPSERT_SQL = """
    INSERT INTO index_notes (collection_id, path_in_collection, mdmd_id, mtime, size, frontmatter)
    VALUES (?, ?, ?, ?, ?, ?)
    ON CONFLICT(collection_id, path_in_collection) DO UPDATE SET
        mdmd_id = excluded.mdmd_id,
        mtime = excluded.mtime,
        size = excluded.size,
        frontmatter = excluded.frontmatter
"""


def dump_frontmatter_json(fields: dict[str, Any] | None) -> str | None:
    if fields is None:
        return None
    # json handles str, int, float, bool and None keys itself.
    keyed = {
        key if key is None or isinstance(key, (str, int, float, bool)) else str(key): value
        for key, value in fields.items()
    }
    return json.dumps(keyed, default=str, ensure_ascii=False)


def to_collection_relative_path(collection_root: Path, absolute_path: Path) -> str:
    """Forward-slash path of ``absolute_path`` relative to the collection root."""
    relative = os.path.relpath(absolute_path, collection_root)
    if relative == os.pardir or relative.startswith(os.pardir + os.sep) or os.path.isabs(relative):
        raise ValidationError(
            str(absolute_path),
            "inside_collection",
            f"Cannot index path outside collection: {absolute_path}",
        )
    return Path(relative).as_posix()


def is_inside(directory: Path, candidate: Path) -> bool:
    """Lexical containment check (no symlink resolution)."""
    relative = os.path.relpath(candidate, directory)
    return not (
        relative == os.pardir or relative.startswith(os.pardir + os.sep) or os.path.isabs(relative)
    )


class IndexDB:
    """Handle on the SQLite index database."""

    def __init__(self, path: Path | None = None, legacy_root: Path | None = None) -> None:
        self._path = path or get_index_db_path()
        self._legacy_root = legacy_root
        self._conn: sqlite3.Connection | None = None
        self._in_transaction = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("IndexDB is not open")
        return self._conn

    def __enter__(self) -> IndexDB:
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def open(self) -> None:
        if self._conn is not None:
            return
        self._conn = self._connect()

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _connect(self) -> sqlite3.Connection:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode: multi-statement writes go through transaction().
        conn = sqlite3.connect(str(self._path), isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA busy_timeout=5000;")
        conn.execute("PRAGMA foreign_keys=ON;")
        self._ensure_schema(conn)
        return conn

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS collections (
                collection_id INTEGER PRIMARY KEY,
                root TEXT NOT NULL UNIQUE
            )
            """
        )
        columns = [row["name"] for row in conn.execute("PRAGMA table_info(index_notes)")]
        if not columns:
            conn.execute(_INDEX_NOTES_DDL.format(table="index_notes"))
        elif "collection_id" not in columns:
            self._migrate_unscoped_table(conn)

        conn.execute("DROP INDEX IF EXISTS idx_notes_mdmd_id")
        conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_notes_collection_mdmd_id
            ON index_notes(collection_id, mdmd_id)
            WHERE mdmd_id IS NOT NULL
            """
        )

    def _migrate_unscoped_table(self, conn: sqlite3.Connection) -> None:
        root = str(self._legacy_root.resolve()) if self._legacy_root else LEGACY_COLLECTION_ROOT
        log.info("Migrating unscoped index_notes table into collection %s", root)
        conn.execute("BEGIN IMMEDIATE")
        try:
            collection_id = self._collection_id(conn, root)
            conn.execute(_INDEX_NOTES_DDL.format(table="index_notes_next"))
            conn.execute(
                """
                INSERT INTO index_notes_next
                    (collection_id, path_in_collection, mdmd_id, mtime, size, frontmatter)
                SELECT ?, path_in_collection, mdmd_id, mtime, size, frontmatter
                FROM index_notes
                """,
                (collection_id,),
            )
            conn.execute("DROP TABLE index_notes")
            conn.execute("ALTER TABLE index_notes_next RENAME TO index_notes")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed writes as one all-or-nothing transaction.

        Nested use joins the outer transaction.
        """
        conn = self.conn
        if self._in_transaction:
            yield conn
            return
        conn.execute("BEGIN IMMEDIATE")
        self._in_transaction = True
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")
        finally:
            self._in_transaction = False

    # ─────────────────────────────────────────────────────────────────────
    # Collections
    # ─────────────────────────────────────────────────────────────────────

    @staticmethod
    def _collection_id(conn: sqlite3.Connection, root: str) -> int:
        conn.execute(
            "INSERT INTO collections (root) VALUES (?) ON CONFLICT(root) DO NOTHING",
            (root,),
        )
        row = conn.execute(
            "SELECT collection_id FROM collections WHERE root = ?", (root,)
        ).fetchone()
        return int(row["collection_id"])

    def collection_id(self, collection_root: Path) -> int:
        """Scope id for a collection root, registering the root on first use."""
        return self._collection_id(self.conn, str(Path(collection_root).resolve()))

    def find_collection_id(self, collection_root: Path) -> int | None:
        """Scope id for a collection root, or None if it was never registered."""
        row = self.conn.execute(
            "SELECT collection_id FROM collections WHERE root = ?",
            (str(Path(collection_root).resolve()),),
        ).fetchone()
        return int(row["collection_id"]) if row else None

    def list_collections(self) -> dict[str, int]:
        rows = self.conn.execute("SELECT root, collection_id FROM collections ORDER BY root")
        return {row["root"]: int(row["collection_id"]) for row in rows}

    # ─────────────────────────────────────────────────────────────────────
    # Notes
    # ─────────────────────────────────────────────────────────────────────

    @staticmethod
    def _row_params(collection_id: int, note: IndexNote) -> tuple:
        return (
            collection_id,
            note.path_in_collection,
            note.mdmd_id,
            note.mtime,
            note.size,
            note.frontmatter_json,
        )

    @staticmethod
    def _to_note(row: sqlite3.Row) -> IndexNote:
        return IndexNote(
            path_in_collection=row["path_in_collection"],
            mdmd_id=row["mdmd_id"],
            mtime=int(row["mtime"]),
            size=int(row["size"]),
            frontmatter_json=row["frontmatter"],
        )

    def upsert_note(self, collection_id: int, note: IndexNote) -> None:
        self.conn.execute(_UPSERT_SQL, self._row_params(collection_id, note))

    def upsert_notes(self, collection_id: int, notes: Iterable[IndexNote]) -> None:
        self.conn.executemany(_UPSERT_SQL, [self._row_params(collection_id, n) for n in notes])

    def delete_note(self, collection_id: int, path_in_collection: str) -> None:
        self.conn.execute(
            "DELETE FROM index_notes WHERE collection_id = ? AND path_in_collection = ?",
            (collection_id, path_in_collection),
        )

    def delete_notes(self, collection_id: int, paths: Iterable[str]) -> None:
        self.conn.executemany(
            "DELETE FROM index_notes WHERE collection_id = ? AND path_in_collection = ?",
            [(collection_id, p) for p in paths],
        )

    def list_file_stats(self, collection_id: int) -> dict[str, tuple[int, int]]:
        """Cached (mtime, size) fingerprint per collection-relative path."""
        rows = self.conn.execute(
            "SELECT path_in_collection, mtime, size FROM index_notes WHERE collection_id = ?",
            (collection_id,),
        )
        return {row["path_in_collection"]: (int(row["mtime"]), int(row["size"])) for row in rows}

    def list_notes(self, collection_id: int, managed_only: bool = False) -> list[IndexNote]:
        query = "SELECT * FROM index_notes WHERE collection_id = ?"
        if managed_only:
            query += " AND mdmd_id IS NOT NULL"
        query += " ORDER BY path_in_collection"
        return [self._to_note(row) for row in self.conn.execute(query, (collection_id,))]

    def get_note(self, collection_id: int, path_in_collection: str) -> IndexNote | None:
        row = self.conn.execute(
            "SELECT * FROM index_notes WHERE collection_id = ? AND path_in_collection = ?",
            (collection_id, path_in_collection),
        ).fetchone()
        return self._to_note(row) if row else None

    def find_path_by_id(self, collection_id: int, mdmd_id: str) -> str | None:
        row = self.conn.execute(
            "SELECT path_in_collection FROM index_notes WHERE collection_id = ? AND mdmd_id = ?",
            (collection_id, mdmd_id),
        ).fetchone()
        return row["path_in_collection"] if row else None
