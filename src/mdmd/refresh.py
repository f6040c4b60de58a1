"""Refresh engine: bring the index in line with the notes on disk.

Each note is fingerprinted by ``(mtime in whole seconds, size in bytes)``.
Only notes that are new or whose fingerprint changed are re-read and
re-parsed; everything else is left untouched. A note rewritten with the
same size inside the same second is not noticed until its fingerprint
changes.

``plan_refresh`` is read-only. ``apply_refresh`` writes the whole batch in a
single transaction, so a failure leaves the index exactly as it was.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigurationError, CorruptionError, DuplicateNoteIdError, ErrorCode, ParseError
from .frontmatter import note_id
from .index_db import IndexDB, dump_frontmatter_json, to_collection_relative_path
from .models import IndexNote, RefreshResult
from .parser import parse_note

log = logging.getLogger(__name__)

NOTE_SUFFIX = ".md"

# Parsing is read-only I/O, so a small pool is enough to overlap reads.
_MAX_PARSE_WORKERS = min(8, (os.cpu_count() or 1) + 4)


@dataclass(frozen=True)
class FileSnapshot:
    """A note seen on disk during a scan."""

    path_in_collection: str
    absolute_path: Path
    mtime: int
    size: int

    @property
    def fingerprint(self) -> tuple[int, int]:
        return (self.mtime, self.size)


@dataclass
class RefreshPlan:
    """Changes needed to make the index match the filesystem."""

    collection_root: Path
    collection_id: int | None
    scanned: int
    to_delete: list[str] = field(default_factory=list)
    to_upsert: list[IndexNote] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    parse_failures: dict[str, str] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.to_delete and not self.to_upsert

    def result(self) -> RefreshResult:
        return RefreshResult(
            scanned=self.scanned,
            refreshed=len(self.to_upsert),
            deleted=len(self.to_delete),
            unchanged=len(self.unchanged),
        )


def is_note_file(name: str) -> bool:
    return name.lower().endswith(NOTE_SUFFIX)


def snapshot_file(collection_root: Path, absolute_path: Path) -> FileSnapshot:
    stat = absolute_path.stat()
    return FileSnapshot(
        path_in_collection=to_collection_relative_path(collection_root, absolute_path),
        absolute_path=absolute_path,
        mtime=int(stat.st_mtime),
        size=stat.st_size,
    )


def scan_collection(collection_root: Path) -> list[FileSnapshot]:
    """Every regular ``.md`` file under the root, sorted by relative path.

    Hidden directories (``.git``, ``.obsidian``, ``.trash``) are skipped and
    symlinks are never followed.
    """
    if not collection_root.is_dir():
        raise ConfigurationError(
            f"Collection path does not exist: {collection_root}",
            code=ErrorCode.COLLECTION_NOT_FOUND,
        )

    snapshots: list[FileSnapshot] = []
    for dirpath, dirnames, filenames in os.walk(collection_root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for filename in filenames:
            if not is_note_file(filename):
                continue
            absolute = Path(dirpath) / filename
            if absolute.is_symlink() or not absolute.is_file():
                continue
            snapshots.append(snapshot_file(collection_root, absolute))

    snapshots.sort(key=lambda s: s.path_in_collection)
    return snapshots


def read_index_note(snapshot: FileSnapshot) -> tuple[IndexNote, str | None]:
    """Parse one note into an index row.

    A note whose frontmatter cannot be parsed is still indexed, with no id
    and no frontmatter. The parse error message is returned alongside.
    """
    try:
        fields, _ = parse_note(snapshot.absolute_path)
    except ParseError as e:
        return (
            IndexNote(
                path_in_collection=snapshot.path_in_collection,
                mdmd_id=None,
                mtime=snapshot.mtime,
                size=snapshot.size,
                frontmatter_json=None,
            ),
            e.message,
        )

    return (
        IndexNote(
            path_in_collection=snapshot.path_in_collection,
            mdmd_id=note_id(fields),
            mtime=snapshot.mtime,
            size=snapshot.size,
            frontmatter_json=dump_frontmatter_json(fields),
        ),
        None,
    )


def plan_refresh(db: IndexDB, collection_root: Path) -> RefreshPlan:
    """Compare the filesystem with the cached fingerprints. Writes nothing."""
    collection_root = collection_root.resolve()
    snapshots = scan_collection(collection_root)
    collection_id = db.find_collection_id(collection_root)
    cached = db.list_file_stats(collection_id) if collection_id is not None else {}

    on_disk = {s.path_in_collection for s in snapshots}
    plan = RefreshPlan(
        collection_root=collection_root, collection_id=collection_id, scanned=len(snapshots)
    )
    plan.to_delete = sorted(p for p in cached if p not in on_disk)

    changed: list[FileSnapshot] = []
    for snapshot in snapshots:
        if cached.get(snapshot.path_in_collection) == snapshot.fingerprint:
            plan.unchanged.append(snapshot.path_in_collection)
        else:
            changed.append(snapshot)

    if changed:
        with ThreadPoolExecutor(max_workers=_MAX_PARSE_WORKERS) as executor:
            for note, error in executor.map(read_index_note, changed):
                plan.to_upsert.append(note)
                if error is not None:
                    plan.parse_failures[note.path_in_collection] = error
                    log.warning("Indexed %s without metadata: %s", note.path_in_collection, error)

    log.debug(
        "Refresh plan for %s: %d changed, %d deleted, %d unchanged",
        collection_root,
        len(plan.to_upsert),
        len(plan.to_delete),
        len(plan.unchanged),
    )
    return plan


def find_duplicate_ids(db: IndexDB, plan: RefreshPlan) -> dict[str, list[str]]:
    """Ids that would be held by more than one note once ``plan`` is applied."""
    replaced = set(plan.to_delete) | {n.path_in_collection for n in plan.to_upsert}
    owners: dict[str, list[str]] = defaultdict(list)
    cached: list[IndexNote] = []
    if plan.collection_id is not None:
        cached = db.list_notes(plan.collection_id, managed_only=True)
    for note in cached:
        if note.path_in_collection not in replaced and note.mdmd_id:
            owners[note.mdmd_id].append(note.path_in_collection)
    for note in plan.to_upsert:
        if note.mdmd_id:
            owners[note.mdmd_id].append(note.path_in_collection)
    return {mdmd_id: sorted(paths) for mdmd_id, paths in owners.items() if len(paths) > 1}


def apply_refresh(db: IndexDB, plan: RefreshPlan) -> RefreshResult:
    """Apply a refresh plan atomically: deletes first, then upserts.

    Raises:
        DuplicateNoteIdError: If two notes would share an mdmd_id. Nothing
            is written in that case.
    """
    if plan.is_empty:
        return plan.result()

    duplicates = find_duplicate_ids(db, plan)
    if duplicates:
        mdmd_id, paths = next(iter(sorted(duplicates.items())))
        raise DuplicateNoteIdError(mdmd_id, paths)

    # Changed rows are cleared along with deleted ones so ids can move
    # between paths within one batch without tripping the unique index.
    cleared = [*plan.to_delete, *(n.path_in_collection for n in plan.to_upsert)]
    try:
        with db.transaction():
            collection_id = db.collection_id(plan.collection_root)
            db.delete_notes(collection_id, cleared)
            db.upsert_notes(collection_id, plan.to_upsert)
    except sqlite3.IntegrityError as e:
        raise CorruptionError(f"Index refresh rolled back: {e}") from e

    return plan.result()


def refresh_index(db: IndexDB, collection_root: Path) -> RefreshResult:
    """Plan and apply a refresh for one collection."""
    result = apply_refresh(db, plan_refresh(db, collection_root))
    if result.refreshed or result.deleted:
        log.info(
            "Refreshed index: scanned=%d refreshed=%d deleted=%d",
            result.scanned,
            result.refreshed,
            result.deleted,
        )
    return result
