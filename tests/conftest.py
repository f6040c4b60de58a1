"""Shared test fixtures for the mdmd test suite.

Design:
- isolated_env: every test gets its own config file, index database, and
  Obsidian config, so nothing leaks from the developer's machine
- collection: an empty collection root, exported as MDMD_COLLECTION_PATH
- workdir: a working directory outside the collection, made the cwd
- db: an open IndexDB on the isolated database
- runner / cli_invoke: CliRunner helpers
"""

import logging
import shutil
from pathlib import Path
from typing import Any, Generator

import pytest
import yaml
from click.testing import CliRunner

from mdmd.cli import cli
from mdmd.index_db import IndexDB


# ─────────────────────────────────────────────────────────────────────────────
# Markers
# ─────────────────────────────────────────────────────────────────────────────


def _git_available() -> bool:
    return shutil.which("git") is not None


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if _git_available():
        return

    skip_git = pytest.mark.skip(reason="git executable not found")
    for item in items:
        if "git" in item.keywords:
            item.add_marker(skip_git)


# ─────────────────────────────────────────────────────────────────────────────
# Core Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point every mdmd location at a private temp directory."""
    state = tmp_path.resolve() / "state"
    state.mkdir()
    monkeypatch.setenv("MDMD_CONFIG_PATH", str(state / "config.yaml"))
    monkeypatch.setenv("MDMD_INDEX_DB_PATH", str(state / "index.db"))
    monkeypatch.setenv("MDMD_OBSIDIAN_CONFIG_PATH", str(state / "obsidian.json"))
    monkeypatch.delenv("MDMD_COLLECTION_PATH", raising=False)
    monkeypatch.delenv("MDMD_QUIET", raising=False)
    monkeypatch.setenv("HOME", str(state / "home"))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(state / "xdg-config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(state / "xdg-data"))
    return state


@pytest.fixture(autouse=True)
def reset_quiet_mode(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Undo `--quiet` between tests."""
    from mdmd import _logging

    logger = logging.getLogger("mdmd")
    level = logger.level
    monkeypatch.setattr(_logging, "_quiet", False)
    yield
    logger.setLevel(level)


@pytest.fixture
def collection(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Empty collection root, resolved and exported as MDMD_COLLECTION_PATH.

    Usage:
        def test_something(collection):
            create_note(collection, "inbox/a.md", {"title": "A"})
    """
    root = tmp_path.resolve() / "vault"
    root.mkdir()
    monkeypatch.setenv("MDMD_COLLECTION_PATH", str(root))
    return root


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """A project directory outside the collection, used as the cwd."""
    directory = tmp_path.resolve() / "project"
    directory.mkdir()
    monkeypatch.chdir(directory)
    return directory


@pytest.fixture
def other_workdir(tmp_path: Path) -> Path:
    """A second project directory (not the cwd)."""
    directory = tmp_path.resolve() / "other-project"
    directory.mkdir()
    return directory


@pytest.fixture
def db(isolated_env: Path) -> Generator[IndexDB, None, None]:
    """Open IndexDB on the isolated database path."""
    with IndexDB(path=isolated_env / "index.db") as handle:
        yield handle


@pytest.fixture
def runner() -> CliRunner:
    """CLI runner with isolated environment."""
    return CliRunner()


@pytest.fixture
def cli_invoke(runner: CliRunner, collection: Path, workdir: Path):
    """Helper for invoking the CLI from the working directory.

    Usage:
        def test_sync(cli_invoke):
            result = cli_invoke(["sync"])
            assert result.exit_code == 0
    """

    def _invoke(args: list[str], input: str | None = None):
        return runner.invoke(cli, args, input=input, catch_exceptions=False)

    return _invoke


# ─────────────────────────────────────────────────────────────────────────────
# Helper Functions (for test code, not fixtures)
# ─────────────────────────────────────────────────────────────────────────────


def create_note(
    root: Path,
    path: str,
    fields: dict[str, Any] | None = None,
    body: str = "Body text.\n",
) -> Path:
    """Write a markdown note with YAML frontmatter.

    Usage in tests:
        from conftest import create_note
        note = create_note(collection, "inbox/idea.md", {"title": "Idea"})
    """
    note_path = root / path
    note_path.parent.mkdir(parents=True, exist_ok=True)
    if fields is None:
        note_path.write_text(body, encoding="utf-8")
    else:
        block = yaml.safe_dump(fields, sort_keys=False, default_flow_style=False)
        note_path.write_text(f"---\n{block}---\n{body}", encoding="utf-8")
    return note_path


def read_fields(note_path: Path) -> dict[str, Any]:
    """Parse a note's frontmatter back into a dict."""
    from mdmd.parser import parse_note

    fields, _ = parse_note(note_path)
    return fields


def managed_fields(directory: Path, **extra: Any) -> dict[str, Any]:
    """Frontmatter of a note managed by mdmd and linked to ``directory``."""
    import uuid

    fields: dict[str, Any] = {
        "title": extra.pop("title", "Note"),
        "mdmd_id": str(uuid.uuid4()),
        "paths": [str(directory)],
        "created_at": "2024-01-15T10:00:00.000Z",
    }
    fields.update(extra)
    return fields
