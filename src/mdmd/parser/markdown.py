"""Markdown parsing with YAML frontmatter support.

A note is an optional ``---`` delimited YAML block followed by a body. The
body is returned exactly as it appears after the closing delimiter line, so
``render_note(*parse_note_text(text))`` only rewrites the frontmatter block.

Timestamps are kept as strings on load and dump so values such as
``created_at`` survive a round trip in the form they were written.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import frontmatter
import yaml

from ..errors import ParseError

_FRONTMATTER_PATTERN = re.compile(
    r"\A---[ \t]*\r?\n(?:(?P<block>.*?)\r?\n)?---[ \t]*(?:\r?\n|\Z)",
    re.DOTALL,
)

_TIMESTAMP_TAG = "tag:yaml.org,2002:timestamp"


def _without_timestamp_resolver(resolvers: dict) -> dict:
    return {
        first: [(tag, regexp) for tag, regexp in entries if tag != _TIMESTAMP_TAG]
        for first, entries in resolvers.items()
    }


class _NoteLoader(yaml.SafeLoader):
    pass


class _NoteDumper(yaml.SafeDumper):
    pass


_NoteLoader.yaml_implicit_resolvers = _without_timestamp_resolver(
    yaml.SafeLoader.yaml_implicit_resolvers
)
_NoteDumper.yaml_implicit_resolvers = _without_timestamp_resolver(
    yaml.SafeDumper.yaml_implicit_resolvers
)

_handler = frontmatter.YAMLHandler()


def parse_note_text(text: str, path: Path | str | None = None) -> tuple[dict[str, Any], str]:
    """Split note text into (frontmatter, body).

    Text without a frontmatter block yields an empty mapping and the whole
    text as body.

    Raises:
        ParseError: If the block is not valid YAML or is not a mapping.
    """
    match = _FRONTMATTER_PATTERN.match(text)
    if match is None:
        return {}, text

    block = match.group("block") or ""
    body = text[match.end():]
    if not block.strip():
        return {}, body

    try:
        parsed = _handler.load(block, Loader=_NoteLoader)
    except yaml.YAMLError as e:
        raise ParseError(path, f"Failed to parse frontmatter: {e}") from e

    if parsed is None:
        return {}, body
    if not isinstance(parsed, dict):
        raise ParseError(path, "Invalid frontmatter: expected a YAML mapping")

    return dict(parsed), body


def parse_note(path: Path) -> tuple[dict[str, Any], str]:
    """Read and parse a note file.

    Raises:
        ParseError: If the file cannot be decoded or has invalid frontmatter.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ParseError(path, f"File is not valid UTF-8: {e}") from e
    return parse_note_text(text, path)


def render_note(fields: dict[str, Any], body: str) -> str:
    """Serialize frontmatter and body back into note text."""
    if not fields:
        return f"---\n---\n{body}"
    block = _handler.export(fields, Dumper=_NoteDumper, sort_keys=False)
    return f"---\n{block}\n---\n{body}"


def write_note(path: Path, fields: dict[str, Any], body: str) -> None:
    path.write_text(render_note(fields, body), encoding="utf-8")
