"""Health checks for the collection, the index, and the cwd projection.

Checks are read-only and grouped by scope:

* config: collection root reachable, git exclude entry present
* index: cache rows agree with the files on disk, managed metadata is sane
* symlinks: the cwd symlink folder matches the desired set

``--fix`` applies only the non-destructive repairs other commands already
perform: refresh the index, reconcile symlinks, add the git exclude entry,
and (opt-in) drop ``paths`` entries for directories that no longer exist.
It never deletes a note. Duplicate ids and malformed metadata are reported
and left for a human to resolve.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from .config import read_config, resolve_collection_root, resolve_symlink_dir
from .errors import CorruptionError, MdmdError
from .frontmatter import (
    CREATED_AT_FIELD,
    LEGACY_PATH_FIELD,
    MDMD_ID_FIELD,
    PATHS_FIELD,
    is_valid_timestamp,
    note_paths,
    without_associations,
)
from .git import ensure_git_exclude_entry, has_git_exclude_entry, resolve_git_dir
from .index_db import IndexDB, dump_frontmatter_json
from .models import DoctorIssue, DoctorReport, IndexNote, Scope, Severity
from .parser import parse_note, write_note
from .refresh import find_duplicate_ids, plan_refresh, refresh_index
from .symlinks import (
    apply_reconcile,
    collection_path,
    desired_symlinks_for_directory,
    plan_reconcile,
)

log = logging.getLogger(__name__)

ALL_SCOPES: tuple[Scope, ...] = ("config", "index", "symlinks")


def resolve_scopes(scope: str) -> tuple[Scope, ...]:
    if scope == "all":
        return ALL_SCOPES
    if scope not in ALL_SCOPES:
        raise MdmdError(f"Unknown doctor scope: {scope}")
    return (scope,)  # type: ignore[return-value]


def _issue(
    severity: Severity, scope: Scope, code: str, message: str, path: str | Path | None = None
) -> DoctorIssue:
    return DoctorIssue(
        severity=severity,
        scope=scope,
        code=code,
        path=str(path) if path is not None else None,
        message=message,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Checks
# ─────────────────────────────────────────────────────────────────────────────


def check_config(collection_root: Path, cwd: Path, symlink_dir_name: str) -> list[DoctorIssue]:
    issues: list[DoctorIssue] = []
    if not collection_root.is_dir():
        issues.append(
            _issue(
                "error",
                "config",
                "config.collection_missing",
                "Collection path does not exist or is inaccessible",
                collection_root,
            )
        )

    entry = f"{symlink_dir_name}/"
    if has_git_exclude_entry(cwd, entry) is False:
        git_dir = resolve_git_dir(cwd)
        issues.append(
            _issue(
                "warning",
                "config",
                "config.git_exclude_missing",
                f"Missing {entry} entry in .git/info/exclude",
                (git_dir / "info" / "exclude") if git_dir else None,
            )
        )
    return issues


def _check_managed_metadata(row: IndexNote, fields: dict[str, Any]) -> list[DoctorIssue]:
    issues: list[DoctorIssue] = []
    path = row.path_in_collection

    if fields.get(MDMD_ID_FIELD) != row.mdmd_id:
        issues.append(
            _issue(
                "error",
                "index",
                "index.invalid_mdmd_id",
                "Managed note has missing or mismatched frontmatter mdmd_id",
                path,
            )
        )

    raw_paths = fields.get(PATHS_FIELD)
    if PATHS_FIELD in fields:
        valid_paths = isinstance(raw_paths, list) and all(
            isinstance(p, str) and p.strip() for p in raw_paths
        )
    else:
        valid_paths = isinstance(fields.get(LEGACY_PATH_FIELD), str)
    if not valid_paths:
        issues.append(
            _issue(
                "error",
                "index",
                "index.invalid_paths",
                "Managed note has a missing or malformed frontmatter paths list",
                path,
            )
        )

    if not is_valid_timestamp(fields.get(CREATED_AT_FIELD)):
        issues.append(
            _issue(
                "warning",
                "index",
                "index.invalid_created_at",
                "Managed note has missing or invalid frontmatter created_at",
                path,
            )
        )

    for directory in note_paths(fields):
        if not Path(directory).is_dir():
            issues.append(
                _issue(
                    "warning",
                    "index",
                    "index.missing_directory",
                    f"Associated directory does not exist: {directory}",
                    path,
                )
            )
    return issues


def check_index(db: IndexDB, collection_root: Path) -> list[DoctorIssue]:
    issues: list[DoctorIssue] = []
    plan = plan_refresh(db, collection_root)
    rows = db.list_notes(plan.collection_id) if plan.collection_id is not None else []
    cached = {row.path_in_collection for row in rows}

    for note in plan.to_upsert:
        if note.path_in_collection in cached:
            issues.append(
                _issue(
                    "warning",
                    "index",
                    "index.outdated_row",
                    "Index row fingerprint differs from the file on disk",
                    note.path_in_collection,
                )
            )
        else:
            issues.append(
                _issue(
                    "error",
                    "index",
                    "index.missing_row",
                    "Collection file is missing from index",
                    note.path_in_collection,
                )
            )

    for path in plan.to_delete:
        issues.append(
            _issue(
                "error",
                "index",
                "index.stale_row",
                "Index row points to a file not found in collection",
                path,
            )
        )

    for mdmd_id, paths in sorted(find_duplicate_ids(db, plan).items()):
        issues.append(
            _issue(
                "error",
                "index",
                "index.duplicate_mdmd_id",
                f"Duplicate mdmd_id {mdmd_id} found in collection",
                ", ".join(paths),
            )
        )

    for path, error in sorted(plan.parse_failures.items()):
        issues.append(
            _issue("error", "index", "index.invalid_frontmatter", f"Frontmatter cannot be parsed: {error}", path)
        )

    stale = set(plan.to_delete) | set(plan.parse_failures)
    for row in rows:
        if row.path_in_collection in stale:
            continue
        if row.mdmd_id is None:
            if row.frontmatter_json is None:
                issues.append(
                    _issue(
                        "error",
                        "index",
                        "index.invalid_frontmatter",
                        "Note was indexed without metadata because its frontmatter cannot be parsed",
                        row.path_in_collection,
                    )
                )
            continue
        try:
            fields = row.metadata()
        except CorruptionError:
            issues.append(
                _issue(
                    "error",
                    "index",
                    "index.invalid_frontmatter_json",
                    "Managed note has invalid frontmatter JSON in index",
                    row.path_in_collection,
                )
            )
            continue
        issues.extend(_check_managed_metadata(row, fields))

    return issues


def check_symlinks(
    db: IndexDB, collection_root: Path, cwd: Path, symlink_dir_name: str
) -> list[DoctorIssue]:
    issues: list[DoctorIssue] = []
    symlink_dir = cwd / symlink_dir_name
    collection_id = db.find_collection_id(collection_root)

    try:
        desired = (
            desired_symlinks_for_directory(db, collection_id, collection_root, cwd)
            if collection_id is not None
            else []
        )
    except MdmdError as e:
        return [_issue("error", "symlinks", "symlinks.collision", e.message, symlink_dir)]

    try:
        plan = plan_reconcile(symlink_dir, desired)
    except MdmdError as e:
        return [_issue("error", "symlinks", "symlinks.non_symlink_entry", e.message, symlink_dir)]

    if plan.directory_missing:
        if desired:
            issues.append(
                _issue(
                    "error",
                    "symlinks",
                    "symlinks.directory_missing",
                    f"Expected {symlink_dir_name}/ directory is missing",
                    symlink_dir,
                )
            )
        return issues

    for name in plan.blocked:
        issues.append(
            _issue(
                "warning",
                "symlinks",
                "symlinks.non_symlink_entry",
                f"Found non-symlink entry inside {symlink_dir_name}/",
                symlink_dir / name,
            )
        )
    for name in plan.remove:
        issues.append(
            _issue(
                "warning",
                "symlinks",
                "symlinks.orphan",
                "Symlink is not part of the desired managed-note set",
                symlink_dir / name,
            )
        )
    for wanted in plan.replace:
        issues.append(
            _issue(
                "error",
                "symlinks",
                "symlinks.stale_target",
                f"Symlink points to stale or incorrect target (expected {wanted.target})",
                symlink_dir / wanted.name,
            )
        )
    for name in plan.broken:
        issues.append(
            _issue(
                "error",
                "symlinks",
                "symlinks.broken",
                "Symlink target does not exist",
                symlink_dir / name,
            )
        )
    for wanted in plan.create:
        issues.append(
            _issue(
                "error",
                "symlinks",
                "symlinks.missing",
                f"Expected symlink is missing (target {wanted.target})",
                symlink_dir / wanted.name,
            )
        )
    return issues


def collect_doctor_issues(
    db: IndexDB,
    collection_root: Path,
    cwd: Path,
    symlink_dir_name: str,
    scopes: tuple[Scope, ...] = ALL_SCOPES,
) -> list[DoctorIssue]:
    """Run the checks for the requested scopes. Read-only."""
    issues: list[DoctorIssue] = []
    if "config" in scopes:
        issues.extend(check_config(collection_root, cwd, symlink_dir_name))
    if not collection_root.is_dir():
        return issues
    if "index" in scopes:
        issues.extend(check_index(db, collection_root))
    if "symlinks" in scopes:
        issues.extend(check_symlinks(db, collection_root, cwd, symlink_dir_name))
    return issues


# ─────────────────────────────────────────────────────────────────────────────
# Fixes
# ─────────────────────────────────────────────────────────────────────────────


def prune_missing_directories(db: IndexDB, collection_root: Path) -> tuple[int, int]:
    """Drop ``paths`` entries naming directories that do not exist.

    Returns (entries pruned, notes rewritten). Notes are rewritten, never
    deleted, even if no association remains.
    """
    collection_id = db.collection_id(collection_root)
    pruned = 0
    rewritten = 0
    for row in db.list_notes(collection_id, managed_only=True):
        try:
            cached = row.metadata()
        except CorruptionError:
            continue
        missing = [p for p in note_paths(cached) if not Path(p).is_dir()]
        if not missing:
            continue

        absolute = collection_path(collection_root, row.path_in_collection)
        fields, body = parse_note(absolute)
        missing = [p for p in note_paths(fields) if not Path(p).is_dir()]
        if not missing:
            continue
        updated = without_associations(fields, missing)
        write_note(absolute, updated, body)
        stat = absolute.stat()
        db.upsert_note(
            collection_id,
            row.model_copy(
                update={
                    "mtime": int(stat.st_mtime),
                    "size": stat.st_size,
                    "frontmatter_json": dump_frontmatter_json(updated),
                }
            ),
        )
        pruned += len(missing)
        rewritten += 1
        log.info("Pruned %d missing director(ies) from %s", len(missing), row.path_in_collection)
    return pruned, rewritten


def apply_doctor_fixes(
    db: IndexDB,
    collection_root: Path,
    cwd: Path,
    symlink_dir_name: str,
    scopes: tuple[Scope, ...],
    issues: list[DoctorIssue],
    prune_missing: bool = False,
) -> list[str]:
    """Apply the safe repairs. Returns one line per step taken."""
    fixes: list[str] = []
    collection_ok = collection_root.is_dir()

    if collection_ok and "index" in scopes and any(i.scope == "index" for i in issues):
        try:
            result = refresh_index(db, collection_root)
            fixes.append(
                f"refresh_index: refreshed={result.refreshed}, deleted={result.deleted}, "
                f"unchanged={result.unchanged}"
            )
        except MdmdError as e:
            log.warning("Index refresh failed during doctor --fix: %s", e.message)
            fixes.append(f"refresh_index: failed ({e.message})")

    if collection_ok and "index" in scopes and prune_missing:
        pruned, rewritten = prune_missing_directories(db, collection_root)
        fixes.append(f"prune_missing_paths: pruned={pruned}, notes={rewritten}")

    if collection_ok and "symlinks" in scopes:
        symlink_dir = cwd / symlink_dir_name
        try:
            collection_id = db.collection_id(collection_root)
            desired = desired_symlinks_for_directory(db, collection_id, collection_root, cwd)
            plan = plan_reconcile(symlink_dir, desired)
            if plan.directory_missing and not desired:
                reconciled = None
            else:
                reconciled = apply_reconcile(plan, strict=False)
        except MdmdError as e:
            log.warning("Symlink reconcile failed during doctor --fix: %s", e.message)
            fixes.append(f"reconcile_symlinks: failed ({e.message})")
        else:
            if reconciled is not None:
                ensured = len(reconciled.created) + len(reconciled.replaced) + len(reconciled.unchanged)
                fixes.append(
                    f"reconcile_symlinks: removed={len(reconciled.removed)}, ensured={ensured}"
                )

    if "config" in scopes or "symlinks" in scopes:
        entry = f"{symlink_dir_name}/"
        if has_git_exclude_entry(cwd, entry) is False:
            ensure_git_exclude_entry(cwd, entry)
            fixes.append(f"ensure_git_exclude: added {entry}")

    return fixes


async def run_doctor(
    collection: str | Path | None = None,
    cwd: str | Path | None = None,
    scope: str = "all",
    fix: bool = False,
    prune_missing: bool = False,
    db: IndexDB | None = None,
) -> DoctorReport:
    """Audit (and optionally repair) the collection and the cwd projection.

    A missing collection root is reported as an issue rather than raised;
    an unresolvable one raises ConfigurationError.
    """
    scopes = resolve_scopes(scope)
    collection_root = resolve_collection_root(collection)
    symlink_dir_name = resolve_symlink_dir(read_config())
    work_dir = Path(cwd or Path.cwd()).resolve()

    handle = db or IndexDB(legacy_root=collection_root)
    owns_handle = db is None
    if owns_handle:
        handle.open()
    try:
        issues = collect_doctor_issues(handle, collection_root, work_dir, symlink_dir_name, scopes)
        fixes: list[str] = []
        if fix:
            fixes = apply_doctor_fixes(
                handle, collection_root, work_dir, symlink_dir_name, scopes, issues, prune_missing
            )
            issues = collect_doctor_issues(handle, collection_root, work_dir, symlink_dir_name, scopes)
    finally:
        if owns_handle:
            handle.close()

    return DoctorReport(healthy=not issues, issues=issues, fixes_applied=fixes)
