"""Pydantic models for index rows and command results."""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, Field

from .errors import CorruptionError


class IndexNote(BaseModel):
    """One cached row of the index: a note's metadata snapshot."""

    path_in_collection: str  # Forward-slash path relative to the collection root
    mdmd_id: str | None = None
    mtime: int  # Seconds, floored
    size: int  # Bytes
    frontmatter_json: str | None = None  # Full frontmatter as JSON text

    def metadata(self) -> dict[str, Any]:
        """Decode the cached frontmatter.

        Raises:
            CorruptionError: If the stored JSON is not an object.
        """
        if self.frontmatter_json is None:
            return {}
        try:
            parsed = json.loads(self.frontmatter_json)
        except json.JSONDecodeError as e:
            raise CorruptionError(
                f"Invalid frontmatter JSON cached for {self.path_in_collection}: {e}"
            ) from e
        if not isinstance(parsed, dict):
            raise CorruptionError(
                f"Invalid frontmatter JSON cached for {self.path_in_collection}: expected an object"
            )
        return parsed


class RefreshResult(BaseModel):
    """Counts from one refresh pass."""

    scanned: int = 0
    refreshed: int = 0
    deleted: int = 0
    unchanged: int = 0


class DesiredSymlink(BaseModel):
    """A symlink that should exist in a working directory's symlink folder."""

    name: str  # File name inside the symlink folder
    path_in_collection: str
    target: str  # Absolute path of the note


class ReconcileResult(BaseModel):
    """Filesystem operations performed by one reconcile pass."""

    created: list[str] = Field(default_factory=list)
    replaced: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    unchanged: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)  # Non-symlink entries left alone
    directory_created: bool = False

    @property
    def operations(self) -> int:
        return (
            len(self.created)
            + len(self.replaced)
            + len(self.removed)
            + (1 if self.directory_created else 0)
        )


class IngestResult(BaseModel):
    """Result of moving an external file into the collection."""

    source: str
    destination: str
    path_in_collection: str
    mdmd_id: str
    symlink: str
    warnings: list[str] = Field(default_factory=list)


class LinkResult(BaseModel):
    """Result of associating a collection note with a directory."""

    path_in_collection: str
    mdmd_id: str
    symlink: str
    already_linked: bool = False
    warnings: list[str] = Field(default_factory=list)


class Disassociation(BaseModel):
    """A validated unlink/remove argument and what will happen to it."""

    argument: str
    symlink_path: str
    target_path: str
    path_in_collection: str
    mdmd_id: str
    paths: list[str]  # Associations before the change
    remaining_paths: list[str]  # Associations after the change
    other_paths: list[str] = Field(default_factory=list)  # Associations besides the requesting directory
    delete_document: bool = False
    action: Literal["pending", "deleted", "updated", "skipped"] = "pending"


class DisassociateResult(BaseModel):
    """Result of an unlink or remove batch."""

    entries: list[Disassociation] = Field(default_factory=list)
    dry_run: bool = False
    warnings: list[str] = Field(default_factory=list)


class ListedNote(BaseModel):
    """A managed note as shown by ``mdmd list``."""

    mdmd_id: str
    path_in_collection: str
    name: str  # Symlink name in this directory, or the basename collection-wide
    paths: list[str] = Field(default_factory=list)
    frontmatter: dict[str, Any] = Field(default_factory=dict)


class SyncResult(BaseModel):
    """Result of reconciling a working directory against the index."""

    symlink_dir: str
    notes: int
    reconcile: ReconcileResult
    refresh: RefreshResult
    warnings: list[str] = Field(default_factory=list)


Severity = Literal["error", "warning"]
Scope = Literal["config", "index", "symlinks"]


class DoctorIssue(BaseModel):
    """One finding of the health check."""

    severity: Severity
    scope: Scope
    code: str  # e.g. "index.missing_row"
    path: str | None = None
    message: str


class DoctorReport(BaseModel):
    """Health check outcome, after any fixes."""

    healthy: bool
    issues: list[DoctorIssue] = Field(default_factory=list)
    fixes_applied: list[str] = Field(default_factory=list)
