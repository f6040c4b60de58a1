"""Projection reconciler: make a symlink folder match its desired set.

A working directory's projection is the folder ``<cwd>/<symlink-dir>/``
holding one symlink per managed note whose ``paths`` contains ``<cwd>``.
``reconcile_symlinks`` is the only code that creates, repairs, or removes
projections in bulk; ``sync`` and ``doctor --fix`` both go through it, and
``ensure_symlink`` is its single-entry form used by ingest and link.

Running the reconciler twice with the same desired set performs no
filesystem operations the second time.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from .errors import CorruptionError, NonSymlinkEntryError, SymlinkCollisionError
from .frontmatter import note_paths
from .index_db import IndexDB
from .models import DesiredSymlink, ReconcileResult

log = logging.getLogger(__name__)


def collection_path(collection_root: Path, path_in_collection: str) -> Path:
    return collection_root.joinpath(*PurePosixPath(path_in_collection).parts)


def _symlink_name(path_in_collection: str, used: set[str]) -> str:
    relative = PurePosixPath(path_in_collection)
    if not relative.name:
        raise SymlinkCollisionError(f"Invalid path_in_collection: {path_in_collection}")
    if relative.name not in used:
        return relative.name

    parent_name = relative.parent.name
    if not parent_name:
        raise SymlinkCollisionError(
            f"Cannot disambiguate colliding symlink name for {path_in_collection}",
            details={"path_in_collection": path_in_collection, "name": relative.name},
        )

    disambiguated = f"{relative.stem}__{parent_name}{relative.suffix}"
    if disambiguated in used:
        raise SymlinkCollisionError(
            f"Symlink collision cannot be resolved for {path_in_collection}",
            details={"path_in_collection": path_in_collection, "name": disambiguated},
        )
    return disambiguated


def build_desired_symlinks(
    collection_root: Path, paths_in_collection: list[str]
) -> list[DesiredSymlink]:
    """Assign a symlink name to each note, in priority order.

    The first note with a given basename keeps it. Later ones get
    ``<stem>__<parent><suffix>``.

    Raises:
        SymlinkCollisionError: If a name is still taken after disambiguation,
            or a colliding note has no parent folder to disambiguate with.
    """
    used: set[str] = set()
    desired: list[DesiredSymlink] = []
    for path_in_collection in paths_in_collection:
        name = _symlink_name(path_in_collection, used)
        used.add(name)
        desired.append(
            DesiredSymlink(
                name=name,
                path_in_collection=path_in_collection,
                target=str(collection_path(collection_root, path_in_collection)),
            )
        )
    return desired


def managed_paths_for_directory(db: IndexDB, collection_id: int, directory: Path) -> list[str]:
    """Collection paths of managed notes associated with ``directory``, sorted."""
    wanted = str(directory)
    selected: list[str] = []
    for note in db.list_notes(collection_id, managed_only=True):
        try:
            fields = note.metadata()
        except CorruptionError as e:
            log.warning("Skipping %s: %s", note.path_in_collection, e.message)
            continue
        if wanted in note_paths(fields):
            selected.append(note.path_in_collection)
    return selected


def desired_symlinks_for_directory(
    db: IndexDB, collection_id: int, collection_root: Path, directory: Path
) -> list[DesiredSymlink]:
    return build_desired_symlinks(
        collection_root, managed_paths_for_directory(db, collection_id, directory)
    )


def read_link_target(symlink_path: Path) -> Path:
    """Where a symlink points, resolved lexically against its folder."""
    return Path(os.path.normpath(os.path.join(symlink_path.parent, os.readlink(symlink_path))))


def points_to(symlink_path: Path, target: str | Path) -> bool:
    return read_link_target(symlink_path) == Path(os.path.normpath(target))


@dataclass
class ReconcilePlan:
    """Operations that would make ``symlink_dir`` match the desired set."""

    symlink_dir: Path
    directory_missing: bool = False
    create: list[DesiredSymlink] = field(default_factory=list)
    replace: list[DesiredSymlink] = field(default_factory=list)
    remove: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    broken: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not (self.directory_missing or self.create or self.replace or self.remove)


def plan_reconcile(symlink_dir: Path, desired: list[DesiredSymlink]) -> ReconcilePlan:
    """Compare a symlink folder with the desired set. Touches nothing.

    ``broken`` lists existing symlinks whose target does not exist; they
    also appear under ``remove`` or ``replace`` unless a desired entry with
    the same target keeps them.
    """
    plan = ReconcilePlan(symlink_dir=symlink_dir)
    desired_by_name = {d.name: d for d in desired}

    if not symlink_dir.is_dir():
        if symlink_dir.exists() or symlink_dir.is_symlink():
            raise NonSymlinkEntryError(
                f"Expected a directory at {symlink_dir}",
                details={"path": str(symlink_dir)},
            )
        plan.directory_missing = True
        plan.create = list(desired)
        return plan

    existing = sorted(os.listdir(symlink_dir))
    for name in existing:
        entry = symlink_dir / name
        if not entry.is_symlink():
            plan.blocked.append(name)
            continue
        if not entry.exists():
            plan.broken.append(name)
        wanted = desired_by_name.get(name)
        if wanted is None:
            plan.remove.append(name)
        elif points_to(entry, wanted.target):
            plan.unchanged.append(name)
        else:
            plan.replace.append(wanted)

    present = set(existing)
    plan.create = [d for d in desired if d.name not in present]
    return plan


def apply_reconcile(plan: ReconcilePlan, strict: bool = True) -> ReconcileResult:
    """Carry out a reconcile plan.

    In strict mode any non-symlink entry in the folder aborts before anything
    is touched. Otherwise such entries are left alone and reported as skipped.

    Raises:
        NonSymlinkEntryError: In strict mode, if the folder holds non-symlinks.
    """
    if strict and plan.blocked:
        names = ", ".join(plan.blocked)
        raise NonSymlinkEntryError(
            f"Expected only symlinks in {plan.symlink_dir} but found: {names}",
            details={"symlink_dir": str(plan.symlink_dir), "entries": plan.blocked},
        )

    result = ReconcileResult(unchanged=list(plan.unchanged), skipped=list(plan.blocked))
    symlink_dir = plan.symlink_dir

    if plan.directory_missing:
        symlink_dir.mkdir(parents=True, exist_ok=True)
        result.directory_created = True

    for name in plan.remove:
        (symlink_dir / name).unlink()
        result.removed.append(name)
        log.debug("Removed stale symlink %s", symlink_dir / name)

    for wanted in plan.replace:
        link = symlink_dir / wanted.name
        link.unlink()
        link.symlink_to(wanted.target)
        result.replaced.append(wanted.name)
        log.debug("Repointed %s -> %s", link, wanted.target)

    for wanted in plan.create:
        link = symlink_dir / wanted.name
        link.symlink_to(wanted.target)
        result.created.append(wanted.name)
        log.debug("Created %s -> %s", link, wanted.target)

    return result


def reconcile_symlinks(
    symlink_dir: Path, desired: list[DesiredSymlink], strict: bool = True
) -> ReconcileResult:
    """Make ``symlink_dir`` contain exactly the desired symlinks."""
    return apply_reconcile(plan_reconcile(symlink_dir, desired), strict=strict)


def ensure_symlink(symlink_path: Path, target: str | Path) -> bool:
    """Make ``symlink_path`` a symlink to ``target``.

    Returns True if anything changed.

    Raises:
        NonSymlinkEntryError: If a regular file or folder is in the way.
    """
    if symlink_path.is_symlink():
        if points_to(symlink_path, target):
            return False
        symlink_path.unlink()
    elif symlink_path.exists():
        raise NonSymlinkEntryError(
            f"Cannot create symlink because a non-symlink exists at {symlink_path}",
            details={"path": str(symlink_path)},
        )
    symlink_path.parent.mkdir(parents=True, exist_ok=True)
    symlink_path.symlink_to(target)
    return True
