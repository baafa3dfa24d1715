"""CLI entry point for ghost comments."""

import asyncio
import json
import sys
from pathlib import Path
from typing import NamedTuple

import click

from ghost_comments.anchors import capture_context, find_annotation_at_line
from ghost_comments.config import ConfigError, GhostConfig, load_config
from ghost_comments.display import build_listing, format_annotation, sanitize_input
from ghost_comments.document import SourceDocument, TextDocument
from ghost_comments.logging import Logger, init_logger
from ghost_comments.storage import AnnotationStore, AnnotationTooLongError, MalformedStoreError
from ghost_comments.workspace import WorkspaceResolver, find_project_root


class AppContext(NamedTuple):
    """Objects shared by every command of one invocation."""

    workspace: Path
    config: GhostConfig
    store: AnnotationStore
    logger: Logger


def build_store(workspace: Path, logger: Logger) -> tuple[GhostConfig, AnnotationStore]:
    """Load a workspace's configuration and create its store."""
    config = load_config(workspace)
    return config, AnnotationStore(config, WorkspaceResolver([workspace]), logger=logger)


def parse_line_range(line_range: str) -> tuple[int, int]:
    """
    Parse a ``START:END`` range of 1-indexed lines.

    Raises:
        click.BadParameter: If the range is malformed
    """
    parts = line_range.split(":")
    if len(parts) != 2:
        raise click.BadParameter(
            f"Invalid line range format: {line_range}\nExpected format: START:END (e.g., 10:15)"
        )
    try:
        start, end = int(parts[0]), int(parts[1])
    except ValueError:
        raise click.BadParameter(
            f"Invalid line range: {line_range}\nLine numbers must be integers (e.g., -L 10:15)"
        )
    if start < 1 or end < start:
        raise click.BadParameter(f"Invalid line range: {line_range}")
    return start, end


def read_document(path: Path) -> TextDocument:
    """Read a source file, exiting with a user error if it cannot be read."""
    try:
        return TextDocument.from_file(path)
    except (FileNotFoundError, ValueError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def resolve_author(app: AppContext, author: str | None) -> str:
    """Pick the author from the option, the config, or an interactive prompt."""
    name = author or app.config.author
    if not name or not name.strip():
        name = click.prompt("Author name")
    return sanitize_input(name).strip()


def check_line(document: TextDocument, line: int) -> None:
    if line < 1 or line > document.line_count:
        click.echo(
            f"Error: Invalid line: {line} (file has {document.line_count} lines, "
            f"valid range: 1-{document.line_count})",
            err=True,
        )
        sys.exit(1)


def run_store_operation(coro):
    """Run a store coroutine, mapping store failures to exit codes."""
    try:
        return asyncio.run(coro)
    except MalformedStoreError:
        # Already reported by the store
        sys.exit(2)
    except AnnotationTooLongError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except OSError as e:
        click.echo(f"Error writing comments file: {e}", err=True)
        sys.exit(2)


@click.group()
@click.version_option(version="0.1.0", prog_name="ghost")
@click.option(
    "--workspace",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Workspace root (defaults to the git root of the current directory)",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(ctx: click.Context, workspace: Path | None, verbose: bool):
    """Line annotations for source files, stored beside them in a sidecar."""
    logger = init_logger(verbose=verbose)

    if workspace is None:
        try:
            workspace = find_project_root()
        except ValueError:
            workspace = Path.cwd()
            logger.debug("No git repository found, using current directory", workspace=str(workspace))

    try:
        config, store = build_store(workspace.resolve(), logger)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    ctx.obj = AppContext(workspace.resolve(), config, store, logger)


@cli.command()
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("-l", "--line", "line_number", type=int, help="Line to annotate (1-indexed)")
@click.option(
    "-L",
    "--lines",
    "line_range",
    metavar="START:END",
    help="Anchor to a range; its text becomes the context snapshot",
)
@click.option(
    "--match",
    "match_text",
    metavar="TEXT",
    help="Anchor to the line containing TEXT (fails if ambiguous)",
)
@click.option("-a", "--author", help="Author name (defaults to config or prompt)")
@click.argument("text", required=True)
@click.pass_obj
def add(
    app: AppContext,
    file_path: Path,
    line_number: int | None,
    line_range: str | None,
    match_text: str | None,
    author: str | None,
    text: str,
):
    """
    Add or replace the annotation on a line.

    Examples:

        ghost add src/main.py -l 42 "Fix this function"

        ghost add src/main.py -L 10:12 "This block needs a test"

        ghost add PLAN.md --match "linear scaling" "Optimize this"
    """
    chosen = [opt for opt in (line_number, line_range, match_text) if opt is not None]
    if len(chosen) != 1:
        click.echo("Error: Specify exactly one of -l, -L or --match", err=True)
        sys.exit(1)

    if app.store.resolver.workspace_for(file_path) is None:
        click.echo(f"Error: {file_path} is outside the workspace {app.workspace}", err=True)
        sys.exit(1)
    if app.store.resolve_store_location(file_path) is None:
        # Unsafe sidecar filename; the store has already logged the details
        sys.exit(1)

    document = read_document(file_path)
    selection = None

    if line_number is not None:
        check_line(document, line_number)
        target = line_number - 1
    elif line_range is not None:
        try:
            start, end = parse_line_range(line_range)
        except click.BadParameter as e:
            click.echo(f"Error: {e.message}", err=True)
            sys.exit(1)
        check_line(document, end)
        target = start - 1
        selection = document.get_text(start - 1, end - 1)
    else:
        matches = [i for i, line in enumerate(document.lines) if match_text in line]
        if not matches:
            click.echo(f"Error: Text not found: '{match_text}'", err=True)
            sys.exit(1)
        if len(matches) > 1:
            lines = ", ".join(str(i + 1) for i in matches)
            click.echo(
                f"Error: Ambiguous match: text appears {len(matches)} times on lines {lines}",
                err=True,
            )
            sys.exit(1)
        target = matches[0]

    body = sanitize_input(text)
    if not body:
        click.echo("Error: Annotation text is empty (use 'ghost remove' to delete)", err=True)
        sys.exit(1)

    name = resolve_author(app, author)
    context = capture_context(document, target, selection)

    existing = run_store_operation(app.store.annotations_for(file_path))
    found = find_annotation_at_line(document, existing, target, app.config.search_range)
    previous_line = found[0] if found else None

    run_store_operation(
        app.store.save(file_path, target, body, name, context, previous_line=previous_line)
    )

    verb = "Updated" if found else "Added"
    click.echo(f"{verb} annotation on line {target + 1} of {file_path}")


@cli.command()
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("line_number", type=int)
@click.pass_obj
def remove(app: AppContext, file_path: Path, line_number: int):
    """Delete the annotation shown at LINE_NUMBER (1-indexed)."""
    document = read_document(file_path)
    existing = run_store_operation(app.store.annotations_for(file_path))
    found = find_annotation_at_line(document, existing, line_number - 1, app.config.search_range)

    if found is None:
        click.echo(f"Error: No annotation on line {line_number} of {file_path}", err=True)
        sys.exit(1)

    run_store_operation(app.store.delete(file_path, found[0]))
    click.echo(f"Removed annotation from line {line_number} of {file_path}")


@cli.command(name="list")
@click.argument("file_path", type=click.Path(dir_okay=False, path_type=Path), required=False)
@click.option("--filter", "filter_text", default="", help="Filter by path or annotation text")
@click.option(
    "--sort",
    "sort_order",
    type=click.Choice(["alpha", "date"], case_sensitive=False),
    help="Sort files by path or by most recent annotation",
)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def list_annotations(
    app: AppContext,
    file_path: Path | None,
    filter_text: str,
    sort_order: str | None,
    json_output: bool,
):
    """
    List annotations at their current lines.

    Annotations whose code could not be found are flagged as broken.

    Examples:

        ghost list

        ghost list src/main.py --json

        ghost list --filter todo --sort date
    """
    store = run_store_operation(app.store.load(app.workspace))

    if file_path is not None:
        relative_path = app.store.resolver.relative_path(file_path)
        if relative_path is None:
            click.echo(f"Error: {file_path} is outside the workspace {app.workspace}", err=True)
            sys.exit(1)
        store = {relative_path: store[relative_path]} if relative_path in store else {}

    # Locate against current file contents where the file still exists
    documents: dict[str, SourceDocument] = {}
    for relative_path in store:
        source = app.workspace / relative_path
        if source.is_file():
            try:
                documents[relative_path] = TextDocument.from_file(source)
            except (ValueError, OSError) as e:
                app.logger.debug("Skipping unreadable file", path=relative_path, error=str(e))

    listings = build_listing(
        store,
        filter_text=filter_text,
        sort_order=(sort_order or app.config.sort_order).lower(),
        documents=documents,
        search_radius=app.config.search_range,
    )

    if json_output:
        output = [
            {
                "file": listing.path,
                "annotations": [
                    {
                        "line": entry.line + 1,
                        "stored_line": entry.original_line + 1,
                        "broken": not entry.is_match,
                        **entry.annotation.to_json(),
                    }
                    for entry in listing.entries
                ],
            }
            for listing in listings
        ]
        click.echo(json.dumps(output, indent=2, ensure_ascii=False))
        return

    if not listings:
        click.echo("No annotations found.")
        return

    for listing in listings:
        missing = "" if listing.path in documents else " [missing]"
        click.echo(f"{listing.path}{missing}")
        for entry in listing.entries:
            marker = "⚠" if not entry.is_match else " "
            click.echo(f"  {marker} {entry.line + 1:>5}: {format_annotation(entry.annotation, entry.is_match)}")


@cli.command()
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path), required=False)
@click.option("--all", "sync_all", is_flag=True, help="Synchronize every annotated file")
@click.option("--json", "json_output", is_flag=True, help="Output reports as JSON")
@click.pass_obj
def sync(app: AppContext, file_path: Path | None, sync_all: bool, json_output: bool):
    """
    Rewrite stored line numbers after the code has moved.

    Only confidently matched annotations move; broken ones keep their line.

    Examples:

        ghost sync src/main.py

        ghost sync --all
    """
    if sync_all == (file_path is not None):
        click.echo("Error: Specify either a file path or --all", err=True)
        sys.exit(1)

    if sync_all:
        store = run_store_operation(app.store.load(app.workspace))
        paths = [app.workspace / relative_path for relative_path in sorted(store)]
    else:
        paths = [file_path]

    reports = {}
    for path in paths:
        if not path.is_file():
            app.logger.warning(f"Skipping missing file: {path}")
            continue
        if not sync_all:
            document = read_document(path)
        else:
            try:
                document = TextDocument.from_file(path)
            except (ValueError, OSError) as e:
                app.logger.warning(f"Skipping unreadable file: {e}")
                continue
        report = run_store_operation(app.store.reconcile_report(document))
        if report is not None:
            reports[app.store.resolver.relative_path(path)] = report

    if json_output:
        click.echo(
            json.dumps({path: report.model_dump() for path, report in reports.items()}, indent=2)
        )
        return

    changed = any(report.changed for report in reports.values())
    click.echo("Comments synchronized." if changed else "No synchronization needed.")
    for path, report in reports.items():
        click.echo(
            f"  {path}: {report.relocated} moved, {report.anchored} in place, "
            f"{report.broken} broken"
        )


@cli.command()
@click.argument("old_path", type=click.Path(path_type=Path))
@click.argument("new_path", type=click.Path(path_type=Path))
@click.pass_obj
def mv(app: AppContext, old_path: Path, new_path: Path):
    """Move annotations from OLD_PATH to NEW_PATH after a file rename."""
    moved = run_store_operation(app.store.rename(old_path, new_path))
    if moved:
        click.echo(f"Moved annotations: {old_path} → {new_path}")
    else:
        click.echo(f"No annotations to move for {old_path}")


@cli.command()
@click.option(
    "--debounce",
    type=float,
    default=1.0,
    show_default=True,
    help="Seconds to wait after the last change before synchronizing",
)
@click.option(
    "--sync/--no-sync",
    "auto_sync",
    default=None,
    help="Synchronize annotations when files change (defaults to autoSyncOnSave)",
)
@click.pass_obj
def watch(app: AppContext, debounce: float, auto_sync: bool | None):
    """Follow renames and edits of annotated files until interrupted."""
    from ghost_comments.watcher import run_watcher

    enabled = app.config.auto_sync if auto_sync is None else auto_sync
    try:
        asyncio.run(run_watcher(app.workspace, app.store, debounce=debounce, auto_sync=enabled))
    except KeyboardInterrupt:
        pass
