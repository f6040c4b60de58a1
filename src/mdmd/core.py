"""Core operations for mdmd.

This module contains the logic behind every CLI command.

Design principles:
- All public functions are async for consistency
- Every operation refreshes the index before deciding anything
- A note is always written before its index row, so an interruption leaves
  the index stale but never pointing at data that does not exist
- Batch disassociation validates every argument before mutating anything
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Literal

from .config import read_config, require_collection_root, resolve_ingest_dest, resolve_symlink_dir
from .errors import BatchValidationError, MdmdError, NonSymlinkEntryError, ParseError, ValidationError
from .frontmatter import (
    CREATED_AT_FIELD,
    GIT_SHA_FIELD,
    MDMD_ID_FIELD,
    is_valid_note_id,
    new_note_id,
    note_id,
    note_paths,
    stamp_once,
    utc_timestamp,
    with_association,
    with_note_id,
    without_associations,
)
from .git import ensure_git_exclude_entry, resolve_git_head_sha
from .index_db import IndexDB, dump_frontmatter_json, is_inside, to_collection_relative_path
from .models import (
    DesiredSymlink,
    Disassociation,
    DisassociateResult,
    IndexNote,
    IngestResult,
    LinkResult,
    ListedNote,
    RefreshResult,
    SyncResult,
)
from .parser import parse_note, write_note
from .refresh import is_note_file, refresh_index
from .symlinks import (
    build_desired_symlinks,
    collection_path,
    desired_symlinks_for_directory,
    ensure_symlink,
    managed_paths_for_directory,
    points_to,
    read_link_target,
    reconcile_symlinks,
)

log = logging.getLogger(__name__)

ConfirmCallback = Callable[[Disassociation], bool]


@dataclass(frozen=True)
class Workspace:
    """Where one invocation operates: the collection and the working directory."""

    collection_root: Path
    cwd: Path
    symlink_dir_name: str
    ingest_dest: str

    @property
    def symlink_dir(self) -> Path:
        return self.cwd / self.symlink_dir_name

    @property
    def exclude_entry(self) -> str:
        return f"{self.symlink_dir_name}/"

    def symlink_dir_for(self, directory: str | Path) -> Path:
        return Path(directory) / self.symlink_dir_name


def resolve_workspace(collection: str | Path | None = None, cwd: str | Path | None = None) -> Workspace:
    """Resolve collection root, working directory, and folder names.

    Raises:
        ConfigurationError: If the collection cannot be resolved or is missing.
    """
    config = read_config()
    return Workspace(
        collection_root=require_collection_root(collection),
        cwd=Path(cwd or Path.cwd()).resolve(),
        symlink_dir_name=resolve_symlink_dir(config),
        ingest_dest=resolve_ingest_dest(config),
    )


@contextmanager
def _index(db: IndexDB | None, workspace: Workspace) -> Iterator[IndexDB]:
    """Use the caller's open handle, or open one for the duration."""
    if db is not None:
        yield db
        return
    with IndexDB(legacy_root=workspace.collection_root) as opened:
        yield opened


def _write_and_index(
    db: IndexDB,
    collection_id: int,
    workspace: Workspace,
    absolute_path: Path,
    fields: dict[str, Any],
    body: str,
) -> IndexNote:
    """Write a note, then upsert its index row from the written file."""
    write_note(absolute_path, fields, body)
    stat = absolute_path.stat()
    note = IndexNote(
        path_in_collection=to_collection_relative_path(workspace.collection_root, absolute_path),
        mdmd_id=note_id(fields),
        mtime=int(stat.st_mtime),
        size=stat.st_size,
        frontmatter_json=dump_frontmatter_json(fields),
    )
    db.upsert_note(collection_id, note)
    return note


def _ensure_exclude(workspace: Workspace, directory: Path, warnings: list[str]) -> None:
    try:
        ensure_git_exclude_entry(directory, workspace.exclude_entry)
    except OSError as e:
        msg = f"Could not add {workspace.exclude_entry} to git exclude in {directory}: {e}"
        log.warning(msg)
        warnings.append(msg)


def _projection_for(
    db: IndexDB, collection_id: int, workspace: Workspace, path_in_collection: str
) -> tuple[list[DesiredSymlink], DesiredSymlink]:
    """The cwd projection once the note is associated, and the note's entry in it.

    Uses the same rules as ``sync`` so both always agree.

    Raises:
        SymlinkCollisionError: If a note cannot be given a symlink name.
        NonSymlinkEntryError: If a regular file occupies one of the names.
    """
    paths = managed_paths_for_directory(db, collection_id, workspace.cwd)
    if path_in_collection not in paths:
        paths = sorted([*paths, path_in_collection])
    desired = build_desired_symlinks(workspace.collection_root, paths)
    for wanted in desired:
        _check_symlink_slot(workspace.symlink_dir / wanted.name)
    return desired, next(d for d in desired if d.path_in_collection == path_in_collection)


def _apply_projection(workspace: Workspace, desired: list[DesiredSymlink]) -> None:
    # A new note can take a basename another note held, which then moves
    # to its disambiguated name.
    for wanted in desired:
        ensure_symlink(workspace.symlink_dir / wanted.name, wanted.target)


def _check_symlink_slot(symlink_path: Path) -> None:
    if symlink_path.exists() and not symlink_path.is_symlink():
        raise NonSymlinkEntryError(
            f"Cannot create symlink because a non-symlink exists at {symlink_path}",
            details={"path": str(symlink_path)},
        )


# ─────────────────────────────────────────────────────────────────────────────
# Ingest
# ─────────────────────────────────────────────────────────────────────────────


def _available_name(directory: Path, filename: str) -> str:
    candidate = filename
    stem, suffix = os.path.splitext(filename)
    index = 2
    while (directory / candidate).exists() or (directory / candidate).is_symlink():
        candidate = f"{stem}_{index}{suffix}"
        index += 1
    return candidate


def _validate_ingest_source(workspace: Workspace, file: str | Path) -> Path:
    source = Path(os.path.abspath(workspace.cwd / file))
    argument = str(file)
    if not is_note_file(source.name):
        raise ValidationError(argument, "markdown_file", f"Not a markdown file: {source}")
    if not source.exists() and not source.is_symlink():
        raise ValidationError(argument, "exists", f"File not found: {source}")
    if source.is_symlink() or not source.is_file():
        raise ValidationError(argument, "regular_file", f"Source is not a regular file: {source}")
    if is_inside(workspace.collection_root, source):
        raise ValidationError(
            argument,
            "outside_collection",
            f"File is already in the collection ({source}). Use `mdmd link` instead.",
        )
    return source


async def ingest_file(
    file: str | Path,
    collection: str | Path | None = None,
    cwd: str | Path | None = None,
    db: IndexDB | None = None,
) -> IngestResult:
    """Move an external markdown file into the collection and link it here.

    The note lands in ``<collection>/<ingest-dest>/`` under its own name, or
    ``name_2.md``, ``name_3.md``... if that is taken. It is given an mdmd_id
    (an existing one must be a UUID4 not already in the index), associated
    with the working directory, and stamped with ``created_at`` and
    ``git_sha`` when those are absent.

    Raises:
        ValidationError: If the source is not an external regular .md file
            or its mdmd_id is invalid or already managed.
        ConfigurationError: If the collection cannot be resolved.
    """
    workspace = resolve_workspace(collection, cwd)
    source = _validate_ingest_source(workspace, file)
    fields, body = parse_note(source)

    raw_id = fields.get(MDMD_ID_FIELD)
    if raw_id is None or raw_id == "":
        mdmd_id = new_note_id()
    elif is_valid_note_id(raw_id):
        mdmd_id = str(raw_id).strip()
    else:
        raise ValidationError(
            str(file), "mdmd_id", f"Invalid frontmatter mdmd_id in {source}: expected UUID v4"
        )

    warnings: list[str] = []
    with _index(db, workspace) as index:
        refresh_index(index, workspace.collection_root)
        collection_id = index.collection_id(workspace.collection_root)

        existing = index.find_path_by_id(collection_id, mdmd_id)
        if existing:
            raise ValidationError(
                str(file),
                "unmanaged",
                f"File already has a managed mdmd_id ({mdmd_id}) at {existing}. "
                f"Use `mdmd link {existing}` instead.",
            )

        dest_dir = workspace.collection_root.joinpath(*PurePosixPath(workspace.ingest_dest).parts)
        dest_dir.mkdir(parents=True, exist_ok=True)
        destination = dest_dir / _available_name(dest_dir, source.name)
        path_in_collection = to_collection_relative_path(workspace.collection_root, destination)

        desired, link = _projection_for(index, collection_id, workspace, path_in_collection)
        symlink_path = workspace.symlink_dir / link.name

        fields = with_note_id(fields, mdmd_id)
        fields, _ = with_association(fields, str(workspace.cwd))
        fields = stamp_once(fields, CREATED_AT_FIELD, utc_timestamp())
        git_sha = resolve_git_head_sha(workspace.cwd)
        if git_sha:
            fields = stamp_once(fields, GIT_SHA_FIELD, git_sha)

        _write_and_index(index, collection_id, workspace, destination, fields, body)
        source.unlink()

        _apply_projection(workspace, desired)
        _ensure_exclude(workspace, workspace.cwd, warnings)

    log.info("Ingested %s -> %s", source, destination)
    return IngestResult(
        source=str(source),
        destination=str(destination),
        path_in_collection=path_in_collection,
        mdmd_id=mdmd_id,
        symlink=str(symlink_path),
        warnings=warnings,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Link
# ─────────────────────────────────────────────────────────────────────────────


def _resolve_note_argument(workspace: Workspace, note_path: str) -> tuple[Path, str]:
    candidate = Path(note_path)
    if candidate.is_absolute():
        absolute = Path(os.path.normpath(candidate))
    else:
        absolute = Path(os.path.normpath(collection_path(workspace.collection_root, note_path)))
    if not is_inside(workspace.collection_root, absolute) or absolute == workspace.collection_root:
        raise ValidationError(note_path, "inside_collection", f"Note is outside collection: {note_path}")
    if absolute.is_symlink() or not absolute.is_file():
        raise ValidationError(note_path, "exists", f"Collection file not found: {note_path}")
    if not is_note_file(absolute.name):
        raise ValidationError(note_path, "markdown_file", f"Not a markdown file: {note_path}")
    return absolute, to_collection_relative_path(workspace.collection_root, absolute)


async def link_note(
    note_path: str,
    collection: str | Path | None = None,
    cwd: str | Path | None = None,
    db: IndexDB | None = None,
) -> LinkResult:
    """Associate a collection note with the working directory.

    Assigns an mdmd_id if the note has none, appends the directory to
    ``paths`` (a no-op if it is already there), stamps ``created_at`` if
    absent, and ensures the projection symlink and git exclude entry.

    Raises:
        ValidationError: If the note does not exist in the collection.
        SymlinkCollisionError: If the note cannot be given a symlink name.
        NonSymlinkEntryError: If a regular file occupies the symlink's place.
    """
    workspace = resolve_workspace(collection, cwd)
    warnings: list[str] = []

    with _index(db, workspace) as index:
        refresh_index(index, workspace.collection_root)
        collection_id = index.collection_id(workspace.collection_root)

        absolute, path_in_collection = _resolve_note_argument(workspace, note_path)
        fields, body = parse_note(absolute)

        desired, link = _projection_for(index, collection_id, workspace, path_in_collection)
        symlink_path = workspace.symlink_dir / link.name

        mdmd_id = note_id(fields) or new_note_id()
        updated = with_note_id(fields, mdmd_id)
        updated, added = with_association(updated, str(workspace.cwd))
        updated = stamp_once(updated, CREATED_AT_FIELD, utc_timestamp())

        if updated != fields:
            _write_and_index(index, collection_id, workspace, absolute, updated, body)

        _apply_projection(workspace, desired)
        _ensure_exclude(workspace, workspace.cwd, warnings)

    log.info("Linked %s -> %s", symlink_path, absolute)
    return LinkResult(
        path_in_collection=path_in_collection,
        mdmd_id=mdmd_id,
        symlink=str(symlink_path),
        already_linked=not added,
        warnings=warnings,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Unlink / remove
# ─────────────────────────────────────────────────────────────────────────────

DisassociateMode = Literal["unlink", "remove"]


def _validate_disassociation(
    workspace: Workspace,
    argument: str,
    mode: DisassociateMode,
    all_dirs: bool,
    preserve: bool,
    warnings: list[str],
) -> Disassociation:
    """Check one unlink/remove argument without touching anything.

    Raises:
        ValidationError: Naming the argument and the rule it failed.
    """
    symlink_path = Path(os.path.abspath(workspace.cwd / argument))
    dir_label = workspace.exclude_entry

    if not is_inside(workspace.symlink_dir, symlink_path) or symlink_path == workspace.symlink_dir:
        raise ValidationError(argument, "location", f"Symlink must be in {dir_label}: {argument}")
    if not symlink_path.is_symlink():
        if symlink_path.exists():
            raise ValidationError(
                argument, "symlink", f"Expected symlink but found non-symlink: {argument}"
            )
        raise ValidationError(argument, "exists", f"Symlink does not exist: {argument}")

    target = read_link_target(symlink_path)
    if not target.exists():
        raise ValidationError(argument, "target_exists", f"Symlink target not found: {target}")
    if not target.is_file():
        raise ValidationError(argument, "target_file", f"Symlink target is not a file: {target}")
    if not is_inside(workspace.collection_root, target):
        raise ValidationError(argument, "inside_collection", f"Target is outside collection: {target}")

    try:
        fields, _ = parse_note(target)
    except ParseError as e:
        raise ValidationError(argument, "frontmatter", e.message) from e

    mdmd_id = note_id(fields)
    if mdmd_id is None:
        raise ValidationError(argument, "managed", f"Note is not managed (no mdmd_id): {target}")

    cwd = str(workspace.cwd)
    paths = note_paths(fields)
    other_paths = [p for p in paths if p != cwd]

    if mode == "unlink":
        if cwd not in paths:
            msg = f"cwd {cwd} was not in note's paths; removing orphan symlink anyway ({argument})"
            log.warning(msg)
            warnings.append(msg)
        remaining = other_paths
    else:
        if not paths:
            raise ValidationError(
                argument, "associated", f"Note has no paths property in frontmatter: {target}"
            )
        if cwd not in paths:
            raise ValidationError(
                argument,
                "associated",
                f"metadata mismatch: note is not associated with {cwd} (paths: {', '.join(paths)})",
            )
        remaining = [] if all_dirs else other_paths

    return Disassociation(
        argument=argument,
        symlink_path=str(symlink_path),
        target_path=str(target),
        path_in_collection=to_collection_relative_path(workspace.collection_root, target),
        mdmd_id=mdmd_id,
        paths=paths,
        remaining_paths=remaining,
        other_paths=other_paths,
        delete_document=mode == "remove" and not remaining and not preserve,
    )


def _validate_batch(
    workspace: Workspace,
    arguments: list[str],
    mode: DisassociateMode,
    all_dirs: bool,
    preserve: bool,
    warnings: list[str],
) -> list[Disassociation]:
    """Phase 1: validate every argument, collecting all failures.

    Raises:
        BatchValidationError: If any argument failed. Nothing is mutated.
    """
    entries: list[Disassociation] = []
    failures: list[ValidationError] = []
    seen_targets: dict[str, str] = {}

    for argument in arguments:
        try:
            entry = _validate_disassociation(workspace, argument, mode, all_dirs, preserve, warnings)
        except ValidationError as e:
            failures.append(e)
            continue
        if entry.target_path in seen_targets:
            failures.append(
                ValidationError(
                    argument,
                    "unique",
                    f"{argument} points to the same note as {seen_targets[entry.target_path]}",
                )
            )
            continue
        seen_targets[entry.target_path] = argument
        entries.append(entry)

    if failures:
        raise BatchValidationError(failures)
    return entries


def _remove_foreign_symlinks(
    workspace: Workspace, entry: Disassociation, warnings: list[str]
) -> None:
    """Best-effort removal of the note's symlinks in other directories."""
    for directory in entry.other_paths:
        symlink_dir = workspace.symlink_dir_for(directory)
        try:
            if not symlink_dir.is_dir():
                continue
            for link in symlink_dir.iterdir():
                if link.is_symlink() and points_to(link, entry.target_path):
                    link.unlink()
                    log.debug("Removed %s", link)
        except OSError as e:
            msg = f"Could not remove symlink for {entry.path_in_collection} in {symlink_dir}: {e}"
            log.warning(msg)
            warnings.append(msg)


def _apply_disassociation(
    db: IndexDB,
    collection_id: int,
    workspace: Workspace,
    entry: Disassociation,
    all_dirs: bool,
    warnings: list[str],
) -> None:
    """Phase 2 for one validated entry: document, then index, then symlinks."""
    target = Path(entry.target_path)

    if entry.delete_document:
        target.unlink()
        db.delete_note(collection_id, entry.path_in_collection)
        entry.action = "deleted"
    else:
        fields, body = parse_note(target)
        dropped = [p for p in entry.paths if p not in entry.remaining_paths]
        updated = without_associations(fields, dropped)
        if updated != fields:
            _write_and_index(db, collection_id, workspace, target, updated, body)
        entry.action = "updated"

    Path(entry.symlink_path).unlink(missing_ok=True)
    if all_dirs:
        _remove_foreign_symlinks(workspace, entry, warnings)


async def _disassociate(
    arguments: list[str],
    mode: DisassociateMode,
    collection: str | Path | None,
    cwd: str | Path | None,
    all_dirs: bool = False,
    preserve: bool = False,
    dry_run: bool = False,
    confirm: ConfirmCallback | None = None,
    db: IndexDB | None = None,
) -> DisassociateResult:
    if not arguments:
        raise MdmdError("At least one symlink argument is required")

    workspace = resolve_workspace(collection, cwd)
    result = DisassociateResult(dry_run=dry_run)

    with _index(db, workspace) as index:
        refresh_index(index, workspace.collection_root)
        collection_id = index.collection_id(workspace.collection_root)

        entries = _validate_batch(
            workspace, arguments, mode, all_dirs, preserve, result.warnings
        )
        result.entries = entries
        if dry_run:
            return result

        for entry in entries:
            if confirm is not None and not confirm(entry):
                entry.action = "skipped"
                continue
            _apply_disassociation(index, collection_id, workspace, entry, all_dirs, result.warnings)
            log.info("%s %s (%s)", mode, entry.path_in_collection, entry.action)

    return result


async def unlink_notes(
    arguments: list[str],
    collection: str | Path | None = None,
    cwd: str | Path | None = None,
    confirm: ConfirmCallback | None = None,
    db: IndexDB | None = None,
) -> DisassociateResult:
    """Detach notes from the working directory without deleting them.

    Each argument is a symlink inside the working directory's symlink
    folder. A note whose ``paths`` does not list the directory only produces
    a warning; its orphan symlink is still removed.

    Raises:
        BatchValidationError: If any argument fails validation. Nothing is
            changed in that case.
    """
    return await _disassociate(arguments, "unlink", collection, cwd, confirm=confirm, db=db)


async def remove_notes(
    arguments: list[str],
    collection: str | Path | None = None,
    cwd: str | Path | None = None,
    all_dirs: bool = False,
    preserve: bool = False,
    dry_run: bool = False,
    confirm: ConfirmCallback | None = None,
    db: IndexDB | None = None,
) -> DisassociateResult:
    """Remove notes from the working directory, deleting them when unused.

    The working directory is dropped from each note's ``paths`` (every
    directory with ``all_dirs``). A note left with no associations is
    deleted along with its index row unless ``preserve`` is set. With
    ``all_dirs`` the note's symlinks in other directories are removed too,
    best-effort.

    Raises:
        BatchValidationError: If any argument fails validation, including a
            note that is not associated with the working directory. Nothing
            is changed in that case.
    """
    return await _disassociate(
        arguments,
        "remove",
        collection,
        cwd,
        all_dirs=all_dirs,
        preserve=preserve,
        dry_run=dry_run,
        confirm=confirm,
        db=db,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Sync / list / refresh
# ─────────────────────────────────────────────────────────────────────────────


async def sync_directory(
    collection: str | Path | None = None,
    cwd: str | Path | None = None,
    db: IndexDB | None = None,
) -> SyncResult:
    """Make the working directory's symlink folder match the index.

    Raises:
        NonSymlinkEntryError: If the folder holds anything but symlinks.
        SymlinkCollisionError: If two notes cannot be given distinct names.
    """
    workspace = resolve_workspace(collection, cwd)
    warnings: list[str] = []

    with _index(db, workspace) as index:
        refreshed = refresh_index(index, workspace.collection_root)
        collection_id = index.collection_id(workspace.collection_root)
        desired = desired_symlinks_for_directory(
            index, collection_id, workspace.collection_root, workspace.cwd
        )

    reconciled = reconcile_symlinks(workspace.symlink_dir, desired, strict=True)
    _ensure_exclude(workspace, workspace.cwd, warnings)

    return SyncResult(
        symlink_dir=workspace.symlink_dir_name,
        notes=len(desired),
        reconcile=reconciled,
        refresh=refreshed,
        warnings=warnings,
    )


async def list_notes(
    collection_wide: bool = False,
    collection: str | Path | None = None,
    cwd: str | Path | None = None,
    db: IndexDB | None = None,
) -> list[ListedNote]:
    """Managed notes linked to the working directory (or all of them)."""
    workspace = resolve_workspace(collection, cwd)

    with _index(db, workspace) as index:
        refresh_index(index, workspace.collection_root)
        collection_id = index.collection_id(workspace.collection_root)
        rows = index.list_notes(collection_id, managed_only=True)

        names: dict[str, str] = {}
        if not collection_wide:
            desired = desired_symlinks_for_directory(
                index, collection_id, workspace.collection_root, workspace.cwd
            )
            names = {d.path_in_collection: d.name for d in desired}

    listed: list[ListedNote] = []
    for row in rows:
        if not collection_wide and row.path_in_collection not in names:
            continue
        fields = row.metadata()
        listed.append(
            ListedNote(
                mdmd_id=row.mdmd_id or "",
                path_in_collection=row.path_in_collection,
                name=names.get(row.path_in_collection, PurePosixPath(row.path_in_collection).name),
                paths=note_paths(fields),
                frontmatter=fields,
            )
        )
    return listed


async def refresh_collection(
    collection: str | Path | None = None,
    db: IndexDB | None = None,
) -> RefreshResult:
    """Refresh the index for the collection and report the counts."""
    workspace = resolve_workspace(collection)
    with _index(db, workspace) as index:
        return refresh_index(index, workspace.collection_root)
