"""Field ownership rules for note frontmatter.

Frontmatter is a plain ordered ``dict`` of whatever the YAML contained. Only
a handful of keys belong to mdmd:

* maintained: ``mdmd_id`` and ``paths``, rewritten whenever association state
  changes. The legacy scalar ``path`` is read as a one-element ``paths`` and
  dropped whenever ``paths`` is written.
* stamped: ``created_at`` and ``git_sha``, written once when absent and never
  overwritten.

Every other key is user-owned. The helpers here return new dicts and never
touch, reorder, or drop user keys.
"""

from __future__ import annotations

import re
import uuid
from datetime import UTC, datetime
from typing import Any

MDMD_ID_FIELD = "mdmd_id"
PATHS_FIELD = "paths"
LEGACY_PATH_FIELD = "path"
CREATED_AT_FIELD = "created_at"
GIT_SHA_FIELD = "git_sha"

MAINTAINED_FIELDS = frozenset({MDMD_ID_FIELD, PATHS_FIELD, LEGACY_PATH_FIELD})
STAMPED_FIELDS = frozenset({CREATED_AT_FIELD, GIT_SHA_FIELD})

_UUID_V4_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def new_note_id() -> str:
    return str(uuid.uuid4())


def utc_timestamp() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def is_valid_note_id(value: object) -> bool:
    """True for a UUID4 string, the only form mdmd ever mints."""
    return isinstance(value, str) and bool(_UUID_V4_PATTERN.match(value.strip()))


def note_id(fields: dict[str, Any]) -> str | None:
    """The note's mdmd_id, or None when the note is unmanaged."""
    value = fields.get(MDMD_ID_FIELD)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def is_managed(fields: dict[str, Any]) -> bool:
    return note_id(fields) is not None


def note_paths(fields: dict[str, Any]) -> list[str]:
    """Directories the note is associated with, oldest first.

    Reads ``paths`` when it is a list, falling back to the legacy scalar
    ``path``. Non-string and blank entries are ignored.
    """
    raw = fields.get(PATHS_FIELD)
    if isinstance(raw, list):
        return [p for p in raw if isinstance(p, str) and p.strip()]
    legacy = fields.get(LEGACY_PATH_FIELD)
    if isinstance(legacy, str) and legacy.strip():
        return [legacy]
    return []


def has_paths_field(fields: dict[str, Any]) -> bool:
    return PATHS_FIELD in fields or isinstance(fields.get(LEGACY_PATH_FIELD), str)


def with_paths(fields: dict[str, Any], paths: list[str]) -> dict[str, Any]:
    """Return a copy with ``paths`` replaced and the legacy ``path`` dropped."""
    updated = dict(fields)
    updated.pop(LEGACY_PATH_FIELD, None)
    updated[PATHS_FIELD] = list(paths)
    return updated


def with_association(fields: dict[str, Any], directory: str) -> tuple[dict[str, Any], bool]:
    """Append ``directory`` to the association list.

    Returns the updated fields and whether the directory was newly added.
    Re-associating an already associated directory is a no-op.
    """
    current = note_paths(fields)
    if directory in current:
        if PATHS_FIELD in fields and LEGACY_PATH_FIELD not in fields:
            return dict(fields), False
        return with_paths(fields, current), False
    return with_paths(fields, [*current, directory]), True


def without_associations(fields: dict[str, Any], directories: list[str]) -> dict[str, Any]:
    drop = set(directories)
    return with_paths(fields, [p for p in note_paths(fields) if p not in drop])


def with_note_id(fields: dict[str, Any], mdmd_id: str) -> dict[str, Any]:
    updated = dict(fields)
    updated[MDMD_ID_FIELD] = mdmd_id
    return updated


def stamp_once(fields: dict[str, Any], key: str, value: Any) -> dict[str, Any]:
    """Set a stamped field only when it is absent or blank."""
    if key not in STAMPED_FIELDS:
        raise ValueError(f"{key} is not a stamped field")
    current = fields.get(key)
    if current is not None and not (isinstance(current, str) and not current.strip()):
        return fields
    updated = dict(fields)
    updated[key] = value
    return updated


def is_valid_timestamp(value: object) -> bool:
    if isinstance(value, datetime):
        return True
    if not isinstance(value, str) or not value.strip():
        return False
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        datetime.fromisoformat(text)
    except ValueError:
        return False
    return True
