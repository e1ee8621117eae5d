"""
Main CLI entry point for the file organizer.

Each command validates its arguments through the engine, runs one engine
operation and renders the result as a table (or JSON with ``--json``).
"""

import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Coroutine, Dict, List, Optional, Tuple, TypeVar, get_args

import click
from rich.console import Console
from rich.table import Table

from ..config import load_settings
from ..core.errors import FileOrganizerError
from ..core.types import (
    ConflictStrategy,
    RenamePreview,
    RetentionStrategy,
    SecurityMode,
)
from ..engine import FileOrganizerEngine
from ..organization.renamer import CaseConversion, parse_rename_rules
from ..shared.file_utils import format_bytes
from ..shared.logging_utils import setup_logging
from ..version import get_version_string

console = Console()

T = TypeVar("T")

MAX_LISTED_ERRORS = 10
MAX_LISTED_PREVIEWS = 50


class CliState:
    """Options shared by every subcommand."""

    def __init__(self, engine: FileOrganizerEngine, as_json: bool, verbose: bool):
        self.engine = engine
        self.as_json = as_json
        self.verbose = verbose


def _run(state: CliState, coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except FileOrganizerError as e:
        if state.as_json:
            click.echo(json.dumps({"error": e.to_dict()}))
        else:
            console.print(f"[red]✗ {e.message}[/red]")
            if e.suggestion:
                console.print(f"[dim]{e.suggestion}[/dim]")
        if state.verbose:
            console.print_exception()
        sys.exit(1)


def _print_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _print_errors(errors: List[str], title: str = "Errors") -> None:
    if not errors:
        return
    console.print(f"\n[red]{title}:[/red]")
    for error in errors[:MAX_LISTED_ERRORS]:
        console.print(f"  [red]• {error}[/red]")
    if len(errors) > MAX_LISTED_ERRORS:
        console.print(f"  [dim]... and {len(errors) - MAX_LISTED_ERRORS} more[/dim]")


def _print_manifest_error(manifest_error: Optional[str]) -> None:
    if manifest_error:
        console.print(f"\n[red]✗ {manifest_error}[/red]")
        console.print("[dim]See the log for the list of changed files[/dim]")


def _describe_actions(statistics: Dict[str, int]) -> str:
    """E.g. ``3 (2 move, 1 delete)``; kinds with no actions are left out."""
    kinds = ", ".join(
        f"{count} {kind}"
        for kind, count in statistics.items()
        if kind != "total" and count
    )
    return f"{statistics['total']} ({kinds})" if kinds else "0"


@click.group()
@click.version_option(get_version_string(), prog_name="file-organizer")
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON user config file",
)
@click.option(
    "--mode",
    type=click.Choice([m.value for m in SecurityMode], case_sensitive=False),
    help="Security mode (default: strict)",
)
@click.option(
    "-a",
    "--allow",
    "allowed",
    multiple=True,
    type=click.Path(file_okay=False),
    help="Allowed directory (implies sandboxed mode); repeatable",
)
@click.option(
    "--storage-dir",
    type=click.Path(file_okay=False),
    help="Where rollback manifests and backups are kept",
)
@click.option("--json", "as_json", is_flag=True, help="Print results as JSON")
@click.option("--json-logs", is_flag=True, help="Emit structured JSON log records")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose logging")
@click.option("-q", "--quiet", is_flag=True, help="Only log warnings and errors")
@click.pass_context
def cli(
    ctx: click.Context,
    config_file: Optional[str],
    mode: Optional[str],
    allowed: Tuple[str, ...],
    storage_dir: Optional[str],
    as_json: bool,
    json_logs: bool,
    verbose: bool,
    quiet: bool,
) -> None:
    """
    Organize, deduplicate and restore files safely.

    \b
    Examples:
        # Preview how a folder would be organized
        file-organizer organize ~/Downloads --dry-run

        # Find duplicates, keeping the best-named copy
        file-organizer -a ~/Downloads duplicates ~/Downloads --strategy best_name

        # Undo the last operation
        file-organizer undo
    """
    setup_logging(verbose=verbose, quiet=quiet or as_json, json_format=json_logs)

    overrides: Dict[str, Any] = {}
    if allowed:
        overrides["allowed_directories"] = [Path(p) for p in allowed]
        overrides["security_mode"] = SecurityMode.SANDBOXED
    if mode:
        overrides["security_mode"] = SecurityMode(mode.lower())
    if storage_dir:
        overrides["storage_dir"] = Path(storage_dir)

    settings = load_settings(Path(config_file) if config_file else None, **overrides)
    ctx.obj = CliState(FileOrganizerEngine(settings), as_json=as_json, verbose=verbose)


@cli.command()
@click.argument("directory")
@click.option("-r", "--recursive", is_flag=True, help="Scan subdirectories")
@click.option("--max-depth", type=int, help="Depth limit for recursive scans")
@click.pass_obj
def scan(
    state: CliState, directory: str, recursive: bool, max_depth: Optional[int]
) -> None:
    """List files in DIRECTORY with a per-category summary."""
    result = _run(
        state,
        state.engine.scan_directory(
            directory, recursive=recursive, max_depth=max_depth
        ),
    )
    categories = state.engine.categorizer.categorize(result.files)

    if state.as_json:
        _print_json(
            {
                "scan": result.model_dump(mode="json"),
                "categories": {
                    name: stats.model_dump() for name, stats in categories.items()
                },
            }
        )
        return

    title = f"{len(result.files)} files ({format_bytes(result.total_size)})"
    table = Table(title=title)
    table.add_column("Category", style="cyan")
    table.add_column("Files", style="green", justify="right")
    table.add_column("Size", justify="right")
    for name, stats in sorted(categories.items()):
        table.add_row(name, str(stats.count), format_bytes(stats.total_size))
    console.print(table)

    if result.limit_reached:
        console.print("[yellow]⚠ File limit reached; results are partial[/yellow]")
    _print_errors([f"{e.path}: {e.error}" for e in result.errors], "Unreadable")


@cli.command()
@click.argument("directory")
@click.option(
    "-s",
    "--strategy",
    type=click.Choice([s.value for s in RetentionStrategy], case_sensitive=False),
    default=RetentionStrategy.BEST_LOCATION.value,
    help="How to choose the copy to keep",
)
@click.option("--no-recursive", is_flag=True, help="Only scan the top level")
@click.pass_obj
def duplicates(
    state: CliState, directory: str, strategy: str, no_recursive: bool
) -> None:
    """Find duplicate files under DIRECTORY."""
    groups = _run(
        state,
        state.engine.find_duplicates(
            directory, strategy=strategy.lower(), recursive=not no_recursive
        ),
    )

    if state.as_json:
        _print_json([g.model_dump(mode="json") for g in groups])
        return

    if not groups:
        console.print("[green]✓ No duplicates found[/green]")
        return

    table = Table(title=f"{len(groups)} duplicate groups")
    table.add_column("Keep", style="green")
    table.add_column("Delete", style="red")
    table.add_column("Wasted", justify="right")
    for group in groups:
        table.add_row(
            str(group.recommended_keep),
            "\n".join(str(p) for p in group.recommended_delete),
            format_bytes(group.wasted_bytes),
        )
    console.print(table)

    total = sum(g.wasted_bytes for g in groups)
    console.print(f"\nReclaimable: [bold]{format_bytes(total)}[/bold]")


@cli.command()
@click.argument("paths", nargs=-1, required=True)
@click.option(
    "--no-backup",
    is_flag=True,
    help="Delete permanently instead of moving to the backup directory",
)
@click.option(
    "--verify",
    "auto_verify",
    is_flag=True,
    help="Refuse to delete the last copy of a file in its directory",
)
@click.pass_obj
def delete(
    state: CliState, paths: Tuple[str, ...], no_backup: bool, auto_verify: bool
) -> None:
    """Delete duplicate PATHS (reversibly unless --no-backup)."""
    result = _run(
        state,
        state.engine.delete_duplicates(
            list(paths), create_backup=not no_backup, auto_verify=auto_verify
        ),
    )

    if state.as_json:
        _print_json(result.model_dump(mode="json"))
        return

    console.print(f"[green]✓ Deleted {len(result.deleted)} files[/green]")
    if result.manifest_id:
        console.print(
            f"[dim]Undo with: file-organizer undo --id {result.manifest_id}[/dim]"
        )
    _print_errors([f"{f.path}: {f.error}" for f in result.failed], "Failed")
    _print_manifest_error(result.manifest_error)
    if result.failed or result.manifest_error:
        sys.exit(1)


@cli.command()
@click.argument("directory")
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Preview changes without executing",
)
@click.option(
    "--conflict",
    type=click.Choice([c.value for c in ConflictStrategy], case_sensitive=False),
    help="What to do when a destination already exists (default: rename)",
)
@click.pass_obj
def organize(
    state: CliState, directory: str, dry_run: bool, conflict: Optional[str]
) -> None:
    """Sort the files in DIRECTORY into category folders."""
    result = _run(
        state,
        state.engine.organize_directory(
            directory,
            dry_run=dry_run,
            conflict_strategy=conflict.lower() if conflict else None,
        ),
    )

    if state.as_json:
        _print_json(result.model_dump(mode="json"))
        return

    if dry_run:
        console.print("[yellow]⚠ DRY RUN MODE - No files will be modified[/yellow]\n")

    table = Table(title="Results")
    table.add_column("Category", style="cyan")
    table.add_column("Files", style="green", justify="right")
    for category, count in sorted(result.statistics.items()):
        table.add_row(category, str(count))
    table.add_row("Skipped", str(len(result.skipped)), style="dim")
    table.add_row("Failed", str(result.error_count), style="red")
    console.print(table)

    for warning in result.warnings:
        console.print(f"[yellow]⚠ {warning}[/yellow]")
    _print_errors(result.errors)

    if dry_run:
        console.print("Run without --dry-run to execute the organization.")
    elif result.manifest_id:
        console.print(f"\n[dim]Operation ID: {result.manifest_id}[/dim]")
        console.print("[dim]Undo it with: file-organizer undo[/dim]")
    _print_manifest_error(result.manifest_error)
    if result.manifest_error:
        sys.exit(1)


@cli.command()
@click.argument("paths", nargs=-1)
@click.option("--dir", "directory", help="Rename the files directly inside DIR")
@click.option("--find", help="Text to replace in each name")
@click.option("--replace", default="", help="Replacement for --find")
@click.option("--regex", is_flag=True, help="Treat --find as a regular expression")
@click.option("--case-sensitive", is_flag=True, help="Match --find case-sensitively")
@click.option(
    "--case",
    "conversion",
    type=click.Choice(list(get_args(CaseConversion))),
    help="Change the case of each name",
)
@click.option("--prefix", help="Text to add before each name")
@click.option("--suffix", help="Text to add after each name (before the extension)")
@click.option("--number", is_flag=True, help="Append a running number")
@click.option("--start-at", type=int, default=1, help="First number for --number")
@click.option(
    "--number-format",
    default="search_index",
    help="Number template, with %n standing for the number",
)
@click.option("--trim", is_flag=True, help="Strip surrounding whitespace")
@click.option(
    "--rules-file",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON list of rules, applied before the options above",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Preview the new names without renaming",
)
@click.pass_obj
def rename(
    state: CliState,
    paths: Tuple[str, ...],
    directory: Optional[str],
    find: Optional[str],
    replace: str,
    regex: bool,
    case_sensitive: bool,
    conversion: Optional[str],
    prefix: Optional[str],
    suffix: Optional[str],
    number: bool,
    start_at: int,
    number_format: str,
    trim: bool,
    rules_file: Optional[str],
    dry_run: bool,
) -> None:
    """
    Rename PATHS (or the files in --dir) by rules.

    Option rules apply in this order: --trim, --find, --case, --prefix and
    --suffix, then --number.
    """
    raw_rules: List[Dict[str, Any]] = []
    if rules_file:
        try:
            raw_rules.extend(json.loads(Path(rules_file).read_text(encoding="utf-8")))
        except (ValueError, TypeError) as e:
            raise click.UsageError(f"Invalid rules file: {e}") from e
    if trim:
        raw_rules.append({"type": "trim"})
    if find:
        raw_rules.append(
            {
                "type": "find_replace",
                "find": find,
                "replace": replace,
                "use_regex": regex,
                "case_sensitive": case_sensitive,
            }
        )
    if conversion:
        raw_rules.append({"type": "case", "conversion": conversion})
    if prefix:
        raw_rules.append({"type": "add_text", "text": prefix, "position": "start"})
    if suffix:
        raw_rules.append({"type": "add_text", "text": suffix, "position": "end"})
    if number:
        raw_rules.append(
            {"type": "numbering", "start_at": start_at, "format": number_format}
        )

    try:
        rules = parse_rename_rules(raw_rules)
    except ValueError as e:
        raise click.UsageError(str(e)) from e
    if not paths and not directory:
        raise click.UsageError("Give files to rename or --dir")

    files = list(paths) or None
    if dry_run:
        previews = _run(
            state,
            state.engine.preview_rename(rules, files=files, directory=directory),
        )
        if state.as_json:
            _print_json([p.model_dump(mode="json") for p in previews])
            return
        _print_rename_preview(previews)
        return

    result = _run(
        state, state.engine.rename_files(rules, files=files, directory=directory)
    )

    if state.as_json:
        _print_json(result.model_dump(mode="json"))
        return

    console.print(f"[green]✓ Renamed {result.renamed_count} files[/green]")
    if result.skipped:
        console.print(f"[dim]{result.skipped} names unchanged[/dim]")
    if result.manifest_id:
        console.print(
            f"[dim]Undo with: file-organizer undo --id {result.manifest_id}[/dim]"
        )
    _print_errors(result.errors, "Failed")
    _print_manifest_error(result.manifest_error)
    if result.errors or result.manifest_error:
        sys.exit(1)


def _print_rename_preview(previews: List[RenamePreview]) -> None:
    console.print("[yellow]⚠ DRY RUN MODE - No files will be modified[/yellow]\n")
    changes = [p for p in previews if p.will_change or p.error]
    if not changes:
        console.print("[dim]No files will be changed by these rules[/dim]")
        return

    table = Table(title="Rename Preview")
    table.add_column("Original", style="cyan")
    table.add_column("New", style="green")
    table.add_column("Status")
    for preview in changes[:MAX_LISTED_PREVIEWS]:
        if preview.error:
            status = f"[red]{preview.error}[/red]"
        elif preview.conflict:
            status = "[yellow]Conflict[/yellow]"
        else:
            status = "OK"
        table.add_row(preview.original.name, preview.new.name, status)
    console.print(table)
    if len(changes) > MAX_LISTED_PREVIEWS:
        console.print(f"[dim]... and {len(changes) - MAX_LISTED_PREVIEWS} more[/dim]")
    console.print("Run without --dry-run to rename the files.")


@cli.command()
@click.option("--id", "manifest_id", help="Operation to undo instead of the last")
@click.pass_obj
def undo(state: CliState, manifest_id: Optional[str]) -> None:
    """Undo the last operation (or the one given with --id)."""
    if manifest_id:
        result = _run(state, state.engine.undo_operation(manifest_id))
    else:
        result = _run(state, state.engine.undo_last_operation())

    if state.as_json:
        _print_json(result.model_dump(mode="json"))
        return

    console.print(f"[green]✓ Restored {result.restored} files[/green]")
    _print_errors(result.errors)
    if result.failed:
        sys.exit(1)


@cli.command()
@click.pass_obj
def history(state: CliState) -> None:
    """List operations that can be undone, newest first."""
    manifests = _run(state, state.engine.list_operations())

    if state.as_json:
        _print_json(
            [
                {**m.model_dump(mode="json"), "statistics": m.get_statistics()}
                for m in manifests
            ]
        )
        return

    if not manifests:
        console.print("[dim]No operations recorded[/dim]")
        return

    table = Table(title="Operations")
    table.add_column("ID", style="cyan")
    table.add_column("When")
    table.add_column("Description")
    table.add_column("Actions", justify="right")
    for manifest in manifests:
        when = datetime.fromtimestamp(manifest.timestamp / 1000)
        table.add_row(
            manifest.id,
            when.strftime("%Y-%m-%d %H:%M:%S"),
            manifest.description,
            _describe_actions(manifest.get_statistics()),
        )
    console.print(table)


@cli.command()
@click.argument("manifest_id")
@click.pass_obj
def verify(state: CliState, manifest_id: str) -> None:
    """Check that operation MANIFEST_ID has not been tampered with."""
    result = _run(state, state.engine.verify_operation(manifest_id))

    if state.as_json:
        _print_json(result.model_dump(mode="json"))
    elif result.valid:
        console.print("[green]✓ Manifest is intact[/green]")
    else:
        console.print(f"[red]✗ {result.error}[/red]")

    if not result.valid:
        sys.exit(1)


if __name__ == "__main__":
    cli()
