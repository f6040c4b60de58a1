"""Git helpers: repository detection, HEAD revision, and info/exclude entries.

Every helper treats "not a repository" and "git is not installed" the same
way: it returns None and does nothing.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

log = logging.getLogger(__name__)

_GIT_TIMEOUT = 5


def _run_git(cwd: Path, *args: str) -> str | None:
    try:
        result = subprocess.run(
            ["git", *args],
            capture_output=True,
            text=True,
            timeout=_GIT_TIMEOUT,
            cwd=cwd,
        )
    except (subprocess.TimeoutExpired, OSError) as e:
        log.debug("git %s failed in %s: %s", " ".join(args), cwd, e)
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def resolve_git_dir(cwd: Path) -> Path | None:
    """The repository's git directory, or None outside a repository."""
    output = _run_git(cwd, "rev-parse", "--git-dir")
    if output is None:
        return None
    git_dir = Path(output)
    return git_dir if git_dir.is_absolute() else (cwd / git_dir).resolve()


def resolve_git_head_sha(cwd: Path) -> str | None:
    return _run_git(cwd, "rev-parse", "HEAD")


def _exclude_path(git_dir: Path) -> Path:
    return git_dir / "info" / "exclude"


def _exclude_lines(content: str) -> list[str]:
    return [line.strip() for line in content.splitlines() if line.strip()]


def has_git_exclude_entry(cwd: Path, entry: str) -> bool | None:
    """Whether ``entry`` is listed in info/exclude. None outside a repository."""
    git_dir = resolve_git_dir(cwd)
    if git_dir is None:
        return None
    try:
        content = _exclude_path(git_dir).read_text(encoding="utf-8")
    except FileNotFoundError:
        return False
    return entry in _exclude_lines(content)


def ensure_git_exclude_entry(cwd: Path, entry: str) -> bool:
    """Append ``entry`` to info/exclude if it is not listed yet.

    Returns True if the file was changed.
    """
    git_dir = resolve_git_dir(cwd)
    if git_dir is None:
        return False

    exclude_path = _exclude_path(git_dir)
    exclude_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        content = exclude_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        content = ""

    if entry in _exclude_lines(content):
        return False

    separator = "" if not content or content.endswith("\n") else "\n"
    exclude_path.write_text(f"{content}{separator}{entry}\n", encoding="utf-8")
    log.debug("Added %s to %s", entry, exclude_path)
    return True
