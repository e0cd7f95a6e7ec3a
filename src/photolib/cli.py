"""CLI entry point for the photo library engine.

Provides commands:
  - import: Add image files (or directories of images) to the library
  - status: Asset and task counts
  - list: Query the library (albums, smart albums, flags, text search)
  - scan / refresh: Liveness sweep and bookmark re-resolution
  - rate, flag, keyword, delete: Edit assets
  - tasks: Show enrichment tasks, optionally run the dispatcher
  - album, smart-album: Manage albums
  - watch, local-only: Library settings
  - demo: Seed the sample library
  - config: Manage provider API keys

State lives in the JSON library file (``--library``), loaded before and
saved after every mutating command.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from photolib import commands
from photolib.config import (
    LibraryConfig,
    get_provider_api_key,
    keyring_service,
    load_config,
    set_provider_api_key,
)
from photolib.constants import IMAGE_EXTENSIONS
from photolib.demo import seed_demo
from photolib.exceptions import InvalidError, NotFoundError, PhotoLibError
from photolib.library import Library
from photolib.models import AIProvider, AssetStatus, TaskStatus
from photolib.persistence import load_library, save_library
from photolib.query import Query, SearchMode
from photolib.rules import format_rule, parse_rule

logger = logging.getLogger(__name__)

app = typer.Typer(
    help="photolib - headless photo library engine",
    rich_markup_mode="rich",
)
console = Console()

album_app = typer.Typer(help="Manage manual albums")
app.add_typer(album_app, name="album")

smart_album_app = typer.Typer(help="Manage rule-based smart albums")
app.add_typer(smart_album_app, name="smart-album")

config_app = typer.Typer(help="Manage configuration (API keys)")
app.add_typer(config_app, name="config")


@dataclass
class CLIState:
    config: LibraryConfig
    library_file: Path


@app.callback()
def app_callback(
    ctx: typer.Context,
    library_file: Annotated[
        Optional[Path],
        typer.Option("--library", "-l", help="Path to the JSON library file"),
    ] = None,
    config_file: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to a JSON config file"),
    ] = None,
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Enable debug logging")
    ] = False,
) -> None:
    """Load configuration and set up logging for every command."""
    try:
        config = load_config(config_file)
    except (PhotoLibError, ValueError) as e:
        console.print(f"[red]Error:[/red] Invalid config: {e}")
        raise typer.Exit(code=1)
    _setup_logging("DEBUG" if verbose else config.log_level)
    ctx.obj = CLIState(config=config, library_file=library_file or config.library_file)


def _setup_logging(level: str) -> None:
    root = logging.getLogger("photolib")
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        root.addHandler(RichHandler(console=console, show_path=False))
    root.setLevel(level.upper())


@contextmanager
def _errors() -> Iterator[None]:
    try:
        yield
    except PhotoLibError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)


def _open(ctx: typer.Context) -> Library:
    state: CLIState = ctx.obj
    with _errors():
        return load_library(state.library_file, Library(config=state.config))


def _save(ctx: typer.Context, library: Library) -> None:
    save_library(library, ctx.obj.library_file)


def _resolve_asset(library: Library, prefix: str) -> str:
    """Accept a full asset id or a unique prefix of one."""
    if prefix in library.index:
        return prefix
    matches = [a.id for a in library.index.assets() if a.id.startswith(prefix)]
    if not matches:
        raise NotFoundError("asset", prefix)
    if len(matches) > 1:
        raise InvalidError(f"Ambiguous asset id prefix '{prefix}' ({len(matches)} matches)")
    return matches[0]


def _expand_paths(paths: list[Path]) -> list[str]:
    expanded: list[str] = []
    for path in paths:
        if path.is_dir():
            expanded.extend(
                str(p)
                for p in sorted(path.rglob("*"))
                if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS
            )
        else:
            expanded.append(str(path))
    return expanded


@app.command("import")
def import_cmd(
    ctx: typer.Context,
    paths: Annotated[list[Path], typer.Argument(help="Image files or directories")],
) -> None:
    """Import images and enqueue their enrichment tasks."""
    library = _open(ctx)
    report = library.import_paths(_expand_paths(paths))
    _save(ctx, library)

    console.print(f"[green]Imported[/green] {len(report.imported)} asset(s)")
    for path, error in report.errors.items():
        console.print(f"  [red]✗[/red] {path}: {error}")
    if report.errors:
        raise typer.Exit(code=1)


@app.command()
def status(ctx: typer.Context) -> None:
    """Display asset and task counts."""
    library = _open(ctx)
    snap = library.snapshot()

    console.print(
        Panel(
            f"Library: [bold]{ctx.obj.library_file}[/bold]\n"
            f"AI provider: {snap.ai_provider.display_name}   "
            f"Local-only: {'on' if snap.local_only_mode else 'off'}",
            title="Library Status",
        )
    )

    asset_table = Table(title="Assets by Status")
    asset_table.add_column("Status", style="bold")
    asset_table.add_column("Count", justify="right")
    for s in AssetStatus:
        style = {"available": "green", "missing": "red", "offline": "dim"}[s.value]
        count = sum(1 for a in snap.assets if a.status == s)
        asset_table.add_row(s.value, f"[{style}]{count}[/{style}]")
    console.print(asset_table)

    task_table = Table(title="Tasks by Status")
    task_table.add_column("Status", style="bold")
    task_table.add_column("Count", justify="right")
    for s, count in library.ledger.counts().items():
        style = {
            "pending": "yellow",
            "running": "blue",
            "completed": "green",
            "failed": "red",
        }[s.value]
        task_table.add_row(s.value, f"[{style}]{count}[/{style}]")
    console.print(task_table)

    console.print(f"\n[bold]Total assets:[/bold] {len(snap.assets)}")
    console.print(f"[bold]Needs AI tags:[/bold] {sum(a.needs_ai_tags for a in snap.assets)}")


@app.command(name="list")
def list_cmd(
    ctx: typer.Context,
    album: Annotated[Optional[str], typer.Option("--album", help="Album id")] = None,
    smart_album: Annotated[
        Optional[str], typer.Option("--smart-album", help="Smart album id")
    ] = None,
    missing: Annotated[bool, typer.Option("--missing", help="Missing files only")] = False,
    needs_ai: Annotated[bool, typer.Option("--needs-ai", help="Untagged only")] = False,
    faces: Annotated[bool, typer.Option("--faces", help="Assets with faces")] = False,
    documents: Annotated[bool, typer.Option("--documents", help="Documents only")] = False,
    screenshots: Annotated[
        bool, typer.Option("--screenshots", help="Screenshots only")
    ] = False,
    search: Annotated[str, typer.Option("--search", "-q", help="Search text")] = "",
    mode: Annotated[
        SearchMode, typer.Option("--mode", help="keyword or semantic")
    ] = SearchMode.KEYWORD,
) -> None:
    """List assets matching the given filters (all ANDed)."""
    library = _open(ctx)
    query = Query(
        selected_album=album,
        selected_smart_album=smart_album,
        show_missing_only=missing,
        show_needs_ai=needs_ai,
        show_faces_only=faces,
        show_documents_only=documents,
        show_screenshots_only=screenshots,
        search_query=search,
        search_mode=mode,
    )
    snap = library.snapshot()
    with _errors():
        assets = library.pipeline.filter(snap, query)

    table = Table(title=f"Assets ({len(assets)})")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("File", style="bold")
    table.add_column("Folder")
    table.add_column("Rating", justify="right")
    table.add_column("Flag", justify="center")
    table.add_column("Status")
    table.add_column("Keywords")
    for asset in assets:
        style = {"available": "green", "missing": "red", "offline": "dim"}[asset.status.value]
        table.add_row(
            asset.id,
            asset.file_name,
            asset.folder,
            "★" * asset.rating,
            "⚑" if asset.flagged else "",
            f"[{style}]{asset.status.value}[/{style}]",
            ", ".join(k.name for k in asset.keywords),
        )
    console.print(table)
    if not query.is_empty():
        console.print(f"[dim]Filters: {' '.join(query.to_filter_strings())}[/dim]")


@app.command()
def scan(ctx: typer.Context) -> None:
    """Mark assets missing (or available again) based on their paths."""
    library = _open(ctx)
    report = library.scan_liveness()
    _save(ctx, library)
    console.print(f"[green]Scan complete:[/green] {report.summary}")


@app.command()
def refresh(ctx: typer.Context) -> None:
    """Re-resolve every bookmark."""
    library = _open(ctx)
    report = library.refresh_bookmarks()
    _save(ctx, library)
    console.print(f"[green]Bookmarks refreshed:[/green] {report.summary}")


@app.command()
def rate(
    ctx: typer.Context,
    asset_id: Annotated[str, typer.Argument(help="Asset id or unique prefix")],
    rating: Annotated[int, typer.Argument(help="Stars, 0-5 (clamped)")],
) -> None:
    """Set an asset's star rating."""
    library = _open(ctx)
    with _errors():
        asset = library.execute(
            commands.UpdateRating(_resolve_asset(library, asset_id), rating)
        )
    _save(ctx, library)
    console.print(f"[green]✓[/green] {asset.file_name}: {'★' * asset.rating or 'unrated'}")


@app.command()
def flag(
    ctx: typer.Context,
    asset_id: Annotated[str, typer.Argument(help="Asset id or unique prefix")],
    off: Annotated[bool, typer.Option("--off", help="Clear the flag")] = False,
) -> None:
    """Flag (or unflag) an asset."""
    library = _open(ctx)
    with _errors():
        asset = library.execute(
            commands.SetFlagged(_resolve_asset(library, asset_id), not off)
        )
    _save(ctx, library)
    console.print(f"[green]✓[/green] {asset.file_name}: {'flagged' if asset.flagged else 'unflagged'}")


@app.command()
def keyword(
    ctx: typer.Context,
    asset_id: Annotated[str, typer.Argument(help="Asset id or unique prefix")],
    name: Annotated[str, typer.Argument(help="Keyword")],
    remove: Annotated[bool, typer.Option("--remove", help="Remove instead of add")] = False,
) -> None:
    """Add (or remove) a keyword on an asset."""
    library = _open(ctx)
    with _errors():
        resolved = _resolve_asset(library, asset_id)
        command = (
            commands.RemoveKeyword(resolved, name)
            if remove
            else commands.AddKeyword(resolved, name)
        )
        asset = library.execute(command)
    _save(ctx, library)
    console.print(
        f"[green]✓[/green] {asset.file_name}: "
        f"{', '.join(k.name for k in asset.keywords) or 'no keywords'}"
    )


@app.command()
def delete(
    ctx: typer.Context,
    asset_id: Annotated[str, typer.Argument(help="Asset id or unique prefix")],
) -> None:
    """Delete an asset from the library (the file is untouched)."""
    library = _open(ctx)
    with _errors():
        resolved = _resolve_asset(library, asset_id)
        library.execute(commands.DeleteAsset(resolved))
    _save(ctx, library)
    console.print(f"[green]✓[/green] Deleted {resolved}")


@app.command()
def tasks(
    ctx: typer.Context,
    asset_id: Annotated[
        Optional[str], typer.Option("--asset", help="Only tasks of this asset")
    ] = None,
    run: Annotated[
        bool, typer.Option("--run", help="Run the dispatcher until idle first")
    ] = False,
    retry: Annotated[
        Optional[str], typer.Option("--retry", help="Requeue a failed task id")
    ] = None,
) -> None:
    """Show enrichment tasks, optionally running or retrying them."""
    library = _open(ctx)
    with _errors():
        if retry:
            library.execute(commands.RetryTask(retry))
        if run:
            stats = asyncio.run(library.run_tasks())
            console.print(f"[green]Dispatcher:[/green] {stats.summary}")
        if retry or run:
            _save(ctx, library)
        task_list = (
            library.ledger.tasks_for(_resolve_asset(library, asset_id))
            if asset_id
            else list(library.ledger.all_tasks())
        )

    table = Table(title=f"Tasks ({len(task_list)})")
    table.add_column("Task", style="dim", no_wrap=True)
    table.add_column("Asset", style="dim", no_wrap=True)
    table.add_column("Kind", style="bold")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Error")
    styles = {
        TaskStatus.PENDING: "yellow",
        TaskStatus.RUNNING: "blue",
        TaskStatus.COMPLETED: "green",
        TaskStatus.FAILED: "red",
    }
    for task in task_list:
        style = styles[task.status]
        table.add_row(
            task.id,
            task.asset_id[:8],
            task.kind.value,
            f"[{style}]{task.status.value}[/{style}]",
            str(task.attempts),
            task.error_description or "",
        )
    console.print(table)


@album_app.command("create")
def album_create(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Album name")],
    asset_ids: Annotated[
        Optional[list[str]], typer.Argument(help="Initial asset ids")
    ] = None,
) -> None:
    """Create a manual album."""
    library = _open(ctx)
    with _errors():
        ids = tuple(_resolve_asset(library, a) for a in asset_ids or [])
        album = library.execute(commands.CreateAlbum(name, ids))
    _save(ctx, library)
    console.print(f"[green]✓[/green] Created album '{album.name}' ({album.id})")


@album_app.command("add")
def album_add(
    ctx: typer.Context,
    album_id: Annotated[str, typer.Argument(help="Album id")],
    asset_ids: Annotated[list[str], typer.Argument(help="Asset ids to add")],
) -> None:
    """Add assets to an album."""
    library = _open(ctx)
    with _errors():
        ids = tuple(_resolve_asset(library, a) for a in asset_ids)
        album = library.execute(commands.AddToAlbum(album_id, ids))
    _save(ctx, library)
    console.print(f"[green]✓[/green] '{album.name}' now has {len(album.asset_ids)} asset(s)")


@album_app.command("list")
def album_list(ctx: typer.Context) -> None:
    """List manual and smart albums."""
    snap = _open(ctx).snapshot()
    table = Table(title="Albums")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Name", style="bold")
    table.add_column("Type")
    table.add_column("Contents")
    for album in snap.albums:
        table.add_row(album.id, album.name, "manual", f"{len(album.asset_ids)} asset(s)")
    for smart in snap.smart_albums:
        rules = " ".join(format_rule(r) for r in smart.rules) or "(everything)"
        table.add_row(smart.id, smart.name, "smart", rules)
    console.print(table)


@smart_album_app.command("create")
def smart_album_create(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Smart album name")],
    rules: Annotated[
        Optional[list[str]],
        typer.Argument(help="Rules as field:value, e.g. rating:4 keyword:cat"),
    ] = None,
) -> None:
    """Create a smart album from field:value rules (all must match)."""
    library = _open(ctx)
    with _errors():
        parsed = tuple(parse_rule(r) for r in rules or [])
        smart = library.execute(commands.CreateSmartAlbum(name, parsed))
    _save(ctx, library)
    console.print(f"[green]✓[/green] Created smart album '{smart.name}' ({smart.id})")


@app.command()
def watch(
    ctx: typer.Context,
    path: Annotated[Path, typer.Argument(help="Folder to watch")],
) -> None:
    """Add a watched folder."""
    library = _open(ctx)
    added = library.index.add_watched_folder(str(path))
    _save(ctx, library)
    if added:
        console.print(f"[green]✓[/green] Watching {path}")
    else:
        console.print(f"[yellow]Already watching[/yellow] {path}")


@app.command("local-only")
def local_only(
    ctx: typer.Context,
    state: Annotated[str, typer.Argument(help="on or off")],
) -> None:
    """Toggle local-only mode (cloud AI tasks stay pending while on)."""
    if state.lower() not in ("on", "off"):
        console.print(f"[red]Error:[/red] Expected 'on' or 'off', got '{state}'")
        raise typer.Exit(code=1)
    library = _open(ctx)
    library.execute(commands.SetLocalOnlyMode(state.lower() == "on"))
    _save(ctx, library)
    console.print(f"[green]✓[/green] Local-only mode {state.lower()}")


@app.command()
def demo(ctx: typer.Context) -> None:
    """Seed the library with sample assets, albums and smart albums."""
    library = _open(ctx)
    ids = seed_demo(library)
    _save(ctx, library)
    console.print(f"[green]✓[/green] Seeded {len(ids)} demo asset(s)")


@config_app.command("set-api-key")
def set_api_key(
    provider: Annotated[AIProvider, typer.Argument(help="AI provider")],
    key: Annotated[str, typer.Argument(help="API key to store in the system keyring")],
) -> None:
    """Store an AI provider's API key in the system keyring."""
    if not key or key.strip() == "":
        console.print("[red]Error:[/red] API key cannot be empty")
        raise typer.Exit(code=1)

    try:
        set_provider_api_key(provider, key)
    except Exception as e:
        console.print(f"[red]Error:[/red] Failed to store API key: {e}")
        raise typer.Exit(code=1)
    console.print(
        f"[green]✓[/green] API key stored successfully in system keyring "
        f"(service: {keyring_service(provider)})"
    )


@config_app.command("get-api-key")
def show_api_key(
    provider: Annotated[AIProvider, typer.Argument(help="AI provider")],
) -> None:
    """Show an AI provider's API key (masked)."""
    try:
        api_key = get_provider_api_key(provider)
    except RuntimeError as e:
        console.print(f"[yellow]{e}[/yellow]")
        raise typer.Exit(code=1)

    if len(api_key) > 8:
        masked = api_key[:8] + "*" * (len(api_key) - 8)
    else:
        masked = api_key[:2] + "*" * max(1, len(api_key) - 2)
    console.print(f"[green]API key:[/green] {masked}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
