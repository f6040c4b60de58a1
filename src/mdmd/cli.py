#!/usr/bin/env python3
"""
mdmd: project a markdown note collection into working directories

Usage:
    mdmd ingest notes.md              # Move a file into the collection, link it here
    mdmd link inbox/idea.md           # Link an existing collection note here
    mdmd unlink mdmd_notes/idea.md    # Detach a note from this directory
    mdmd remove mdmd_notes/idea.md    # Detach, deleting the note when unused
    mdmd sync                         # Make mdmd_notes/ match the index
    mdmd list                         # Notes linked to this directory
    mdmd doctor --fix                 # Audit and repair
"""

from __future__ import annotations

import asyncio
import difflib
import json
import os
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any, NoReturn

import click
from click.exceptions import ClickException, UsageError

from . import __version__ as MDMD_VERSION


def run_async(coro):
    """Run async function synchronously."""
    return asyncio.run(coro)


def output(data, as_json: bool = False):
    """Output data as JSON or formatted text."""
    if as_json:
        click.echo(json.dumps(data, indent=2, default=str))
    else:
        click.echo(data)


def _relative(path: str | Path, cwd: Path | None = None) -> str:
    return os.path.relpath(path, cwd or Path.cwd())


def _echo_warnings(ctx: click.Context, warnings: list[str]) -> None:
    quiet = ctx.obj.get("quiet", False) if ctx.obj else False
    if quiet:
        return
    for warning in warnings:
        click.echo(f"Warning: {warning}", err=True)


def _handle_error(
    ctx: click.Context,
    error: Exception,
    fallback_message: str | None = None,
    exit_code: int | None = None,
) -> NoReturn:
    """Report an error and exit.

    ``MdmdError`` exits with 1 (validation, configuration, corruption);
    anything else is unexpected and exits with 2.

    Args:
        ctx: Click context (obj["json_errors"] selects JSON output).
        error: The exception that occurred.
        fallback_message: Prefix for unexpected errors.
        exit_code: Override the exit code.
    """
    from .errors import ErrorCode, MdmdError, format_error_json

    json_errors = ctx.obj.get("json_errors", False) if ctx.obj else False

    if isinstance(error, MdmdError):
        if json_errors:
            click.echo(error.to_json(), err=True)
        else:
            click.echo(f"Error: {error.message}", err=True)
        sys.exit(1 if exit_code is None else exit_code)

    message = f"{fallback_message}: {error}" if fallback_message else str(error)
    if json_errors:
        click.echo(format_error_json(ErrorCode.INTERNAL_ERROR, message), err=True)
    else:
        click.echo(f"Error: {message}", err=True)
    sys.exit(2 if exit_code is None else exit_code)


def format_json_error(code: str, message: str) -> str:
    """Format a click usage error as JSON for --json-errors output."""
    return json.dumps({"error": {"code": code, "message": message}})


def get_error_code_for_exception(exc: Exception) -> str:
    """Map Click exceptions to error codes."""
    # MissingParameter subclasses BadParameter.
    if isinstance(exc, click.MissingParameter):
        return "MISSING_ARGUMENT"
    elif isinstance(exc, click.BadParameter):
        return "INVALID_ARGUMENT"
    elif isinstance(exc, click.NoSuchOption):
        return "UNKNOWN_OPTION"
    elif isinstance(exc, UsageError):
        return "USAGE_ERROR"
    return "CLI_ERROR"


# ─────────────────────────────────────────────────────────────────────────────
# JSON Error Handling
# ─────────────────────────────────────────────────────────────────────────────


class JsonErrorGroup(click.Group):
    """Click group that formats usage errors as JSON when --json-errors is set.

    Also suggests the closest command name for typos.
    """

    def resolve_command(self, ctx, args):
        try:
            return super().resolve_command(ctx, args)
        except UsageError as e:
            cmd_name = args[0] if args else ""
            if cmd_name and "No such command" in str(e):
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=1, cutoff=0.6
                )
                if matches:
                    raise UsageError(
                        f"No such command '{cmd_name}'. Did you mean '{matches[0]}'?", ctx=ctx
                    )
            raise

    def main(
        self,
        args: Sequence[str] | None = None,
        prog_name: str | None = None,
        complete_var: str | None = None,
        standalone_mode: bool = True,
        **extra: Any,
    ) -> Any:
        argv = list(args) if args is not None else list(sys.argv[1:])
        if "--json-errors" not in argv:
            return super().main(argv, prog_name, complete_var, standalone_mode, **extra)

        # Accept --json-errors anywhere on the command line.
        argv = ["--json-errors", *[a for a in argv if a != "--json-errors"]]
        try:
            return super().main(argv, prog_name, complete_var, standalone_mode=False, **extra)
        except ClickException as e:
            click.echo(format_json_error(get_error_code_for_exception(e), e.format_message()), err=True)
            raise SystemExit(2)
        except click.exceptions.Abort:
            raise SystemExit(1)


collection_option = click.option(
    "--collection",
    "-c",
    type=click.Path(file_okay=False, path_type=Path),
    help="Collection root path (overrides MDMD_COLLECTION_PATH and config)",
)
json_option = click.option("--json", "as_json", is_flag=True, help="Output as JSON")


# ─────────────────────────────────────────────────────────────────────────────
# Main CLI Group
# ─────────────────────────────────────────────────────────────────────────────


@click.group(cls=JsonErrorGroup)
@click.version_option(version=MDMD_VERSION, prog_name="mdmd")
@click.option(
    "--json-errors",
    "json_errors",
    is_flag=True,
    help="Output errors as JSON (for programmatic use)",
)
@click.option(
    "--quiet",
    "-q",
    is_flag=True,
    envvar="MDMD_QUIET",
    help="Suppress warnings, show only errors and essential output",
)
@click.pass_context
def cli(ctx: click.Context, json_errors: bool, quiet: bool):
    """mdmd: keep markdown notes in one collection, linked into many directories.

    Each managed note lists the directories it belongs to in its `paths`
    frontmatter. mdmd keeps a symlink to it in `<dir>/mdmd_notes/` and an
    index of all note metadata.

    \b
    Exit codes:
      0  success / healthy
      1  validation or configuration error, or doctor found issues
      2  unexpected error
    """
    from ._logging import set_quiet_mode

    ctx.ensure_object(dict)
    ctx.obj["json_errors"] = json_errors
    ctx.obj["quiet"] = quiet

    if quiet:
        set_quiet_mode(True)


# ─────────────────────────────────────────────────────────────────────────────
# Ingest / Link
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@click.argument("file", type=click.Path(path_type=Path))
@collection_option
@json_option
@click.pass_context
def ingest(ctx: click.Context, file: Path, collection: Path | None, as_json: bool):
    """Move a local markdown FILE into the collection and link it here.

    \b
    Examples:
      mdmd ingest notes.md
      mdmd ingest draft.md --collection ~/vault
    """
    from .core import ingest_file
    from .errors import MdmdError

    try:
        result = run_async(ingest_file(file, collection=collection))
    except MdmdError as e:
        _handle_error(ctx, e)
    except Exception as e:
        _handle_error(ctx, e, fallback_message="Ingest failed")

    if as_json:
        output(result.model_dump(), as_json=True)
        return
    _echo_warnings(ctx, result.warnings)
    click.echo(f"Ingested {result.source} -> {result.destination}")
    click.echo(f"Symlinked {_relative(result.symlink)} -> {result.destination}")


@cli.command()
@click.argument("note_path")
@collection_option
@json_option
@click.pass_context
def link(ctx: click.Context, note_path: str, collection: Path | None, as_json: bool):
    """Link a collection note (NOTE_PATH, relative to the collection) here.

    \b
    Examples:
      mdmd link inbox/idea.md
    """
    from .core import link_note
    from .errors import MdmdError

    try:
        result = run_async(link_note(note_path, collection=collection))
    except MdmdError as e:
        _handle_error(ctx, e)
    except Exception as e:
        _handle_error(ctx, e, fallback_message="Link failed")

    if as_json:
        output(result.model_dump(), as_json=True)
        return
    _echo_warnings(ctx, result.warnings)
    target = result.symlink
    if result.already_linked:
        click.echo(f"Already linked (idempotent): {_relative(target)} -> {result.path_in_collection}")
    else:
        click.echo(f"Linked {_relative(target)} -> {result.path_in_collection}")


# ─────────────────────────────────────────────────────────────────────────────
# Unlink / Remove
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@click.argument("symlinks", nargs=-1, required=True)
@collection_option
@click.option("--interactive", "-i", is_flag=True, help="Confirm each note before unlinking")
@json_option
@click.pass_context
def unlink(
    ctx: click.Context,
    symlinks: tuple[str, ...],
    collection: Path | None,
    interactive: bool,
    as_json: bool,
):
    """Detach notes from this directory without deleting them.

    All SYMLINKS are validated first; if any fails nothing is changed.

    \b
    Examples:
      mdmd unlink mdmd_notes/idea.md
      mdmd unlink -i mdmd_notes/*.md
    """
    from .core import unlink_notes
    from .errors import MdmdError

    cwd = Path.cwd()

    def ask(entry) -> bool:
        return click.confirm(f"Unlink {entry.target_path} from {cwd}?", default=False)

    try:
        result = run_async(
            unlink_notes(list(symlinks), collection=collection, confirm=ask if interactive else None)
        )
    except MdmdError as e:
        _handle_error(ctx, e)
    except Exception as e:
        _handle_error(ctx, e, fallback_message="Unlink failed")

    if as_json:
        output(result.model_dump(), as_json=True)
        return
    _echo_warnings(ctx, result.warnings)
    for entry in result.entries:
        if entry.action == "skipped":
            click.echo(f"Skipped: {entry.target_path}")
        else:
            click.echo(f"Unlinked {entry.argument} from {Path.cwd()}")


@cli.command()
@click.argument("symlinks", nargs=-1, required=True)
@collection_option
@click.option("--all", "all_dirs", is_flag=True, help="Remove every directory association, not just this one")
@click.option("--force", is_flag=True, hidden=True, help="Deprecated alias for --all")
@click.option("--preserve", is_flag=True, help="Keep the note file even when no associations remain")
@click.option("--dry-run", is_flag=True, help="Show what would change without changing anything")
@click.option("--interactive", "-i", is_flag=True, help="Confirm each note before removing")
@json_option
@click.pass_context
def remove(
    ctx: click.Context,
    symlinks: tuple[str, ...],
    collection: Path | None,
    all_dirs: bool,
    force: bool,
    preserve: bool,
    dry_run: bool,
    interactive: bool,
    as_json: bool,
):
    """Remove notes from this directory, deleting them when no longer linked.

    All SYMLINKS are validated first; if any fails nothing is changed.

    \b
    Examples:
      mdmd remove mdmd_notes/idea.md
      mdmd remove --dry-run mdmd_notes/idea.md
      mdmd remove --all mdmd_notes/shared.md
      mdmd remove --preserve mdmd_notes/keep.md
    """
    from .core import remove_notes
    from .errors import MdmdError

    all_dirs = all_dirs or force

    def ask(entry) -> bool:
        verb = "Delete" if entry.delete_document else "Remove"
        return click.confirm(f"{verb} {entry.target_path}?", default=False)

    try:
        result = run_async(
            remove_notes(
                list(symlinks),
                collection=collection,
                all_dirs=all_dirs,
                preserve=preserve,
                dry_run=dry_run,
                confirm=ask if interactive else None,
            )
        )
    except MdmdError as e:
        _handle_error(ctx, e)
    except Exception as e:
        _handle_error(ctx, e, fallback_message="Remove failed")

    if as_json:
        output(result.model_dump(), as_json=True)
        return
    _echo_warnings(ctx, result.warnings)

    for entry in result.entries:
        symlink = _relative(entry.symlink_path)
        if result.dry_run:
            if entry.delete_document:
                click.echo(f"Would delete: {entry.target_path}")
                click.echo(f"Would remove from index: path_in_collection='{entry.path_in_collection}'")
            else:
                remaining = ", ".join(entry.remaining_paths) or "none"
                click.echo(f"Would update: {entry.target_path} (remaining paths: {remaining})")
            click.echo(f"Would remove symlink: {symlink}")
            if entry.other_paths:
                click.echo(f"  Note: also linked from: {', '.join(entry.other_paths)}")
        elif entry.action == "skipped":
            click.echo(f"Skipped: {entry.target_path}")
        elif entry.action == "deleted":
            click.echo(f"Deleted: {entry.target_path}")
            click.echo(f"Removed from index: {entry.path_in_collection}")
            click.echo(f"Removed symlink: {symlink}")
        else:
            remaining = ", ".join(entry.remaining_paths) or "none"
            click.echo(f"Updated: {entry.target_path} (remaining paths: {remaining})")
            click.echo(f"Removed symlink: {symlink}")


# ─────────────────────────────────────────────────────────────────────────────
# Sync / List / Refresh
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@collection_option
@json_option
@click.pass_context
def sync(ctx: click.Context, collection: Path | None, as_json: bool):
    """Make this directory's symlink folder match the collection.

    \b
    Examples:
      mdmd sync
      mdmd sync --collection ~/vault
    """
    from .core import sync_directory
    from .errors import MdmdError

    try:
        result = run_async(sync_directory(collection=collection))
    except MdmdError as e:
        _handle_error(ctx, e)
    except Exception as e:
        _handle_error(ctx, e, fallback_message="Sync failed")

    if as_json:
        output(result.model_dump(), as_json=True)
        return
    _echo_warnings(ctx, result.warnings)
    click.echo(
        f"Synced {result.notes} note(s) to {result.symlink_dir}/ "
        f"(removed {len(result.reconcile.removed)}, refreshed {result.refresh.refreshed}, "
        f"deleted {result.refresh.deleted})"
    )


@cli.command("list")
@collection_option
@click.option("--collection-wide", is_flag=True, help="List every managed note in the collection")
@click.option("--all-fields", is_flag=True, help="Show full frontmatter for each note")
@json_option
@click.pass_context
def list_cmd(
    ctx: click.Context,
    collection: Path | None,
    collection_wide: bool,
    all_fields: bool,
    as_json: bool,
):
    """List managed notes linked to this directory.

    \b
    Examples:
      mdmd list
      mdmd list --collection-wide --json
    """
    from .core import list_notes
    from .errors import MdmdError

    try:
        notes = run_async(list_notes(collection_wide=collection_wide, collection=collection))
    except MdmdError as e:
        _handle_error(ctx, e)
    except Exception as e:
        _handle_error(ctx, e, fallback_message="List failed")

    if as_json:
        output(
            [
                {"mdmd_id": n.mdmd_id, "path_in_collection": n.path_in_collection, **n.frontmatter}
                for n in notes
            ],
            as_json=True,
        )
        return

    if not notes:
        click.echo(
            "No managed notes in collection." if collection_wide else "No notes linked to this directory."
        )
        return

    cwd = str(Path.cwd().resolve())
    for note in notes:
        if all_fields:
            click.echo(f"{note.path_in_collection}  {json.dumps(note.frontmatter, default=str)}")
            continue
        others = [p for p in note.paths if p != cwd]
        if others:
            click.echo(f"{note.name}  (also linked from: {', '.join(others)})")
        else:
            click.echo(note.name)


@cli.command()
@collection_option
@json_option
@click.pass_context
def refresh(ctx: click.Context, collection: Path | None, as_json: bool):
    """Bring the index up to date with the collection."""
    from .core import refresh_collection
    from .errors import MdmdError

    try:
        result = run_async(refresh_collection(collection=collection))
    except MdmdError as e:
        _handle_error(ctx, e)
    except Exception as e:
        _handle_error(ctx, e, fallback_message="Refresh failed")

    if as_json:
        output(result.model_dump(), as_json=True)
        return
    click.echo(
        f"Refreshed index: scanned={result.scanned} refreshed={result.refreshed} "
        f"deleted={result.deleted} unchanged={result.unchanged}"
    )


# ─────────────────────────────────────────────────────────────────────────────
# Doctor
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@collection_option
@click.option(
    "--scope",
    type=click.Choice(["all", "config", "index", "symlinks"]),
    default="all",
    show_default=True,
    help="Which checks to run",
)
@click.option("--fix", is_flag=True, help="Apply safe deterministic fixes")
@click.option(
    "--prune-missing",
    is_flag=True,
    help="With --fix, drop paths entries for directories that no longer exist",
)
@json_option
@click.pass_context
def doctor(
    ctx: click.Context,
    collection: Path | None,
    scope: str,
    fix: bool,
    prune_missing: bool,
    as_json: bool,
):
    """Run health checks for config, index, and symlinks.

    Exits 1 if issues remain, 2 if the checks themselves failed.

    \b
    Examples:
      mdmd doctor
      mdmd doctor --scope symlinks
      mdmd doctor --fix --json
    """
    from .doctor import run_doctor

    try:
        report = run_async(
            run_doctor(collection=collection, scope=scope, fix=fix, prune_missing=prune_missing)
        )
    except Exception as e:
        _handle_error(ctx, e, fallback_message="doctor failed", exit_code=2)

    if as_json:
        output(report.model_dump(), as_json=True)
    else:
        if report.fixes_applied:
            click.echo(f"Applied fixes ({len(report.fixes_applied)}):")
            for fix_line in report.fixes_applied:
                click.echo(f"- {fix_line}")
        if not report.issues:
            click.echo("Doctor found no issues.")
        else:
            click.echo(f"Doctor found {len(report.issues)} issue(s):")
            for issue in report.issues:
                location = f" ({issue.path})" if issue.path else ""
                click.echo(f"- [{issue.severity}] {issue.code}{location}: {issue.message}")

    if report.issues:
        sys.exit(1)


# ─────────────────────────────────────────────────────────────────────────────
# Config
# ─────────────────────────────────────────────────────────────────────────────


@cli.group("config")
def config_group():
    """Read and write mdmd settings (collection, ingest-dest, symlink-dir)."""


@config_group.command("list")
@click.option("--resolved", is_flag=True, help="Also show the effective collection root")
@json_option
@click.pass_context
def config_list(ctx: click.Context, resolved: bool, as_json: bool):
    """Show all supported config keys."""
    from .config import SUPPORTED_CONFIG_KEYS, get_config_value, read_config, resolve_collection_root
    from .errors import MdmdError

    try:
        config = read_config()
    except MdmdError as e:
        _handle_error(ctx, e)

    values: dict[str, str | None] = {key: get_config_value(config, key) for key in SUPPORTED_CONFIG_KEYS}
    if resolved:
        try:
            values["resolvedCollection"] = str(resolve_collection_root())
            values["resolvedError"] = None
        except MdmdError as e:
            values["resolvedCollection"] = None
            values["resolvedError"] = e.message

    if as_json:
        output(values, as_json=True)
        return
    for key, value in values.items():
        click.echo(f"{key}: {value if value is not None else '(not set)'}")


@config_group.command("get")
@click.argument("key")
@click.option("--resolved", is_flag=True, help="For collection, show the effective root")
@click.pass_context
def config_get(ctx: click.Context, key: str, resolved: bool):
    """Print the value of KEY."""
    from .config import SUPPORTED_CONFIG_KEYS, get_config_value, read_config, resolve_collection_root
    from .errors import ConfigurationError, ErrorCode, MdmdError

    try:
        if key not in SUPPORTED_CONFIG_KEYS:
            raise ConfigurationError(
                f"Unsupported config key: {key}. Supported config keys: {', '.join(SUPPORTED_CONFIG_KEYS)}",
                code=ErrorCode.INVALID_CONFIG,
            )
        if resolved and key == "collection":
            value = str(resolve_collection_root())
        else:
            value = get_config_value(read_config(), key)
            if value is None:
                raise ConfigurationError(
                    f"Config key is not set: {key}", code=ErrorCode.INVALID_CONFIG
                )
    except MdmdError as e:
        _handle_error(ctx, e)

    click.echo(value)


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str):
    """Set KEY to VALUE in the config file."""
    from .config import set_config_value
    from .errors import MdmdError

    try:
        path = set_config_value(key, value)
    except MdmdError as e:
        _handle_error(ctx, e)
    click.echo(f"Set {key} = {value} ({path})")


@config_group.command("unset")
@click.argument("key")
@click.pass_context
def config_unset(ctx: click.Context, key: str):
    """Remove KEY from the config file."""
    from .config import unset_config_value
    from .errors import MdmdError

    try:
        path = unset_config_value(key)
    except MdmdError as e:
        _handle_error(ctx, e)
    click.echo(f"Unset {key} ({path})")


def main():
    """Entry point for mdmd CLI."""
    from ._logging import configure_logging

    configure_logging()
    cli()


if __name__ == "__main__":
    main()
