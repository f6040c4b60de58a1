"""Structured errors for mdmd.

Every failure the CLI reports deliberately is an ``MdmdError`` carrying a
stable ``ErrorCode``. Anything else escaping a command is treated as an
unexpected runtime error (exit code 2).
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes emitted with ``--json-errors``."""

    # Configuration
    COLLECTION_UNRESOLVED = "COLLECTION_UNRESOLVED"
    COLLECTION_NOT_FOUND = "COLLECTION_NOT_FOUND"
    INVALID_CONFIG = "INVALID_CONFIG"

    # Validation
    VALIDATION_FAILED = "VALIDATION_FAILED"
    BATCH_VALIDATION_FAILED = "BATCH_VALIDATION_FAILED"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    PARSE_ERROR = "PARSE_ERROR"

    # Projection
    SYMLINK_COLLISION = "SYMLINK_COLLISION"
    NON_SYMLINK_ENTRY = "NON_SYMLINK_ENTRY"

    # Corruption
    DUPLICATE_MDMD_ID = "DUPLICATE_MDMD_ID"
    INDEX_CORRUPT = "INDEX_CORRUPT"

    # Anything not raised deliberately
    INTERNAL_ERROR = "INTERNAL_ERROR"


class MdmdError(Exception):
    """Base class for errors mdmd reports to the user."""

    default_code = ErrorCode.VALIDATION_FAILED

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data

    def to_json(self) -> str:
        return json.dumps({"error": self.to_dict()}, default=str)


class ConfigurationError(MdmdError):
    """Collection root unresolved or inaccessible, or a bad config value."""

    default_code = ErrorCode.COLLECTION_UNRESOLVED


class ValidationError(MdmdError):
    """A single argument failed a pre-flight rule."""

    def __init__(self, argument: str, rule: str, message: str) -> None:
        super().__init__(message, details={"argument": argument, "rule": rule})
        self.argument = argument
        self.rule = rule


class BatchValidationError(MdmdError):
    """One or more arguments of a batch failed validation; nothing was mutated."""

    default_code = ErrorCode.BATCH_VALIDATION_FAILED

    def __init__(self, failures: list[ValidationError]) -> None:
        self.failures = failures
        lines = [f"{failure.argument}: {failure.message}" for failure in failures]
        if len(failures) == 1:
            message = lines[0]
        else:
            message = f"{len(failures)} arguments failed validation:\n  " + "\n  ".join(lines)
        super().__init__(
            message,
            details={
                "failures": [
                    {"argument": f.argument, "rule": f.rule, "message": f.message}
                    for f in failures
                ]
            },
        )


class ParseError(MdmdError):
    """Raised when a note's frontmatter cannot be parsed."""

    default_code = ErrorCode.PARSE_ERROR

    def __init__(self, path: Path | str | None, message: str) -> None:
        self.path = path
        text = f"{path}: {message}" if path is not None else message
        super().__init__(text, details={"path": str(path)} if path is not None else None)


class SymlinkCollisionError(MdmdError):
    """Two desired projections cannot be given distinct names."""

    default_code = ErrorCode.SYMLINK_COLLISION


class NonSymlinkEntryError(MdmdError):
    """A regular file or directory occupies a place only symlinks may live."""

    default_code = ErrorCode.NON_SYMLINK_ENTRY


class CorruptionError(MdmdError):
    """The collection or its index is in a state that needs human judgment."""

    default_code = ErrorCode.INDEX_CORRUPT


class DuplicateNoteIdError(CorruptionError):
    """Two documents in one collection carry the same mdmd_id."""

    default_code = ErrorCode.DUPLICATE_MDMD_ID

    def __init__(self, mdmd_id: str, paths: list[str]) -> None:
        self.mdmd_id = mdmd_id
        self.paths = paths
        super().__init__(
            f"Duplicate mdmd_id {mdmd_id} in: {', '.join(paths)}",
            details={"mdmd_id": mdmd_id, "paths": paths},
        )


def format_error_json(code: ErrorCode, message: str, details: dict[str, Any] | None = None) -> str:
    """Format an error that is not an MdmdError the same way MdmdError.to_json does."""
    data: dict[str, Any] = {"code": code.value, "message": message}
    if details:
        data["details"] = details
    return json.dumps({"error": data}, default=str)
