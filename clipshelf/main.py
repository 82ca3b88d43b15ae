import asyncio
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

import typer
from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from clipshelf.config.loader import load_config
from clipshelf.config.models import AppConfig
from clipshelf.domain.errors import ClipshelfError
from clipshelf.domain.models import FolderNode, SearchQuery, SortKey, SortOrder, SourceKind, Video
from clipshelf.infrastructure.binaries import BinaryLocator
from clipshelf.infrastructure.catalog_store import CatalogStore
from clipshelf.infrastructure.event_bus import EventBus
from clipshelf.infrastructure.ffmpeg import FFmpegAdapter
from clipshelf.infrastructure.ffprobe import FFprobeAdapter
from clipshelf.infrastructure.housekeeping import HousekeepingService
from clipshelf.infrastructure.logging import setup_logging
from clipshelf.infrastructure.paths import LibraryPaths
from clipshelf.infrastructure.process_runner import ProcessRunner
from clipshelf.infrastructure.thumbnails import ThumbnailGenerator
from clipshelf.infrastructure.ytdlp import YtDlpAdapter
from clipshelf.pipeline.orchestrator import ImportOrchestrator
from clipshelf.ui.progress import ImportProgressView

app = typer.Typer(help="clipshelf - personal video reference library")
console = Console()


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Library directory (overrides config)"),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Path to log file (overrides config)"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    ctx.obj = {"config_path": config_path, "data_dir": data_dir, "log_path": log_path, "debug": debug}


def _load_settings(ctx: typer.Context) -> AppConfig:
    options = ctx.obj or {}
    config = load_config(options.get("config_path"))
    # Apply CLI overrides
    if options.get("data_dir") is not None:
        config.general.data_dir = Path(options["data_dir"]).expanduser()
    if options.get("log_path") is not None:
        config.general.log_path = str(options["log_path"])
    if options.get("debug"):
        config.general.debug = True
    return config


@contextmanager
def _library(ctx: typer.Context) -> Iterator[Tuple[AppConfig, LibraryPaths, CatalogStore]]:
    config = _load_settings(ctx)
    log_path_value = Path(config.general.log_path) if config.general.log_path else None
    logger = setup_logging(config.general.data_dir, debug=config.general.debug, log_path=log_path_value)
    paths = LibraryPaths(config.general.data_dir, config.catalog.database_name)
    logger.info(f"clipshelf started: data_dir={paths.data_dir}")
    with CatalogStore(paths.database_path, enable_wal=config.catalog.enable_wal) as store:
        yield config, paths, store


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except KeyboardInterrupt:
        typer.secho("\nInterrupted by user (Ctrl+C)", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130)
    except (ClipshelfError, FileNotFoundError) as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


def build_orchestrator(config: AppConfig, store: CatalogStore, paths: LibraryPaths, bus: EventBus) -> ImportOrchestrator:
    runner = ProcessRunner(terminate_timeout=config.process.terminate_timeout)
    locator = BinaryLocator(config.binaries)
    return ImportOrchestrator(
        config=config,
        event_bus=bus,
        store=store,
        paths=paths,
        probe=FFprobeAdapter(runner, locator),
        transcoder=FFmpegAdapter(runner, locator, config.transcode, temp_dir=paths.temp_dir),
        thumbnails=ThumbnailGenerator(runner, locator, paths.thumbnails_dir, config.thumbnail),
        acquirer=YtDlpAdapter(runner, locator, config.download),
        housekeeping=HousekeepingService(),
    )


def format_duration(seconds: float) -> str:
    total = int(round(seconds or 0))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}" if hours else f"{minutes}:{secs:02d}"


def _videos_table(videos: List[Video]) -> Table:
    table = Table(show_lines=False)
    table.add_column("ID", justify="right")
    table.add_column("Title")
    table.add_column("Duration", justify="right")
    table.add_column("Folder", justify="right")
    table.add_column("Source")
    table.add_column("Plays", justify="right")
    table.add_column("Fav", justify="center")
    for video in videos:
        table.add_row(
            str(video.id),
            video.title,
            format_duration(video.duration),
            str(video.folder_id),
            video.source_kind.value,
            str(video.play_count),
            "*" if video.is_favorite else "",
        )
    return table


def _add_tree_nodes(branch: Tree, nodes: List[FolderNode]):
    for node in nodes:
        child = branch.add(f"{node.name} [dim](id {node.id}, {node.video_count} videos)[/dim]")
        _add_tree_nodes(child, node.children)


def _run_import(ctx: typer.Context, start_import) -> Video:
    with _library(ctx) as (config, paths, store):
        bus = EventBus()
        orchestrator = build_orchestrator(config, store, paths, bus)
        with ImportProgressView(bus, console=console):
            video = asyncio.run(start_import(orchestrator))
    typer.secho(f"Imported video {video.id}: {video.title} -> {video.file_path}", fg=typer.colors.GREEN)
    return video


# ----------------------------------------------------------------------
# Imports
# ----------------------------------------------------------------------


@app.command("import-file")
def import_file(
    ctx: typer.Context,
    file_path: Path = typer.Argument(..., help="Local video file to import"),
    title: Optional[str] = typer.Option(None, "--title", help="Title (defaults to the file name)"),
    description: Optional[str] = typer.Option(None, "--description", help="Description"),
    folder: Optional[int] = typer.Option(None, "--folder", "-f", help="Target folder id"),
    tags: Optional[List[int]] = typer.Option(None, "--tag", "-t", help="Tag id (repeatable)"),
):
    """Transcode a local video into the library."""
    with _cli_errors():
        _run_import(
            ctx,
            lambda orchestrator: orchestrator.import_local(
                file_path, title=title, description=description, folder_id=folder, tag_ids=tags
            ),
        )


@app.command("import-url")
def import_url(
    ctx: typer.Context,
    url: str = typer.Argument(..., help="YouTube URL"),
    title: Optional[str] = typer.Option(None, "--title", help="Title (defaults to the video title)"),
    start: Optional[float] = typer.Option(None, "--start", help="Clip start in seconds"),
    end: Optional[float] = typer.Option(None, "--end", help="Clip end in seconds"),
    folder: Optional[int] = typer.Option(None, "--folder", "-f", help="Target folder id"),
    tags: Optional[List[int]] = typer.Option(None, "--tag", "-t", help="Tag id (repeatable)"),
):
    """Download a YouTube video (or a clip of it) into the library."""
    with _cli_errors():
        _run_import(
            ctx,
            lambda orchestrator: orchestrator.import_remote(
                url, title=title, clip_start=start, clip_end=end, folder_id=folder, tag_ids=tags
            ),
        )


# ----------------------------------------------------------------------
# Videos
# ----------------------------------------------------------------------


@app.command("list")
def list_videos(
    ctx: typer.Context,
    folder: Optional[int] = typer.Option(None, "--folder", "-f", help="Only videos in this folder"),
):
    """List videos, newest first."""
    with _cli_errors(), _library(ctx) as (_, _, store):
        console.print(_videos_table(store.list_videos(folder_id=folder)))


@app.command()
def search(
    ctx: typer.Context,
    text: Optional[str] = typer.Argument(None, help="Words to match in title or description"),
    tags: Optional[List[int]] = typer.Option(None, "--tag", "-t", help="Required tag id (repeatable)"),
    folder: Optional[int] = typer.Option(None, "--folder", "-f", help="Folder id"),
    source: Optional[SourceKind] = typer.Option(None, "--source", help="local or remote"),
    sort: SortKey = typer.Option(SortKey.CREATED_AT, "--sort", help="Sort key"),
    order: SortOrder = typer.Option(SortOrder.DESC, "--order", help="asc or desc"),
    limit: Optional[int] = typer.Option(None, "--limit", help="Maximum number of results"),
    offset: int = typer.Option(0, "--offset", help="Results to skip"),
):
    """Search the catalog by text, tags, folder and source."""
    with _cli_errors(), _library(ctx) as (_, _, store):
        query = SearchQuery(
            text=text,
            tag_ids=tags or [],
            folder_id=folder,
            source_kind=source,
            sort_by=sort,
            sort_order=order,
            limit=limit,
            offset=offset,
        )
        console.print(_videos_table(store.search_videos(query)))


@app.command()
def show(ctx: typer.Context, video_id: int = typer.Argument(..., help="Video id")):
    """Show one video with its tags."""
    with _cli_errors(), _library(ctx) as (_, _, store):
        video = store.get_video(video_id)
        if video is None:
            typer.secho(f"Error: Video {video_id} not found", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)
        video = store.with_tags(video)
        for key, value in video.model_dump(exclude={"tags"}).items():
            console.print(f"[bold]{key}[/bold]: {value}")
        console.print(f"[bold]tags[/bold]: {', '.join(tag.name for tag in video.tags) or '-'}")


@app.command()
def edit(
    ctx: typer.Context,
    video_id: int = typer.Argument(..., help="Video id"),
    title: Optional[str] = typer.Option(None, "--title"),
    description: Optional[str] = typer.Option(None, "--description"),
    folder: Optional[int] = typer.Option(None, "--folder", "-f", help="Move to folder id"),
    favorite: Optional[bool] = typer.Option(None, "--favorite/--no-favorite"),
):
    """Change the title, description, folder or favorite flag of a video."""
    changes = {"title": title, "description": description, "folder_id": folder, "is_favorite": favorite}
    with _cli_errors(), _library(ctx) as (_, _, store):
        video = store.update_video(video_id, **{k: v for k, v in changes.items() if v is not None})
        typer.secho(f"Updated video {video.id}: {video.title}", fg=typer.colors.GREEN)


@app.command()
def play(ctx: typer.Context, video_id: int = typer.Argument(..., help="Video id")):
    """Record a playback and print the media file path."""
    with _cli_errors(), _library(ctx) as (_, _, store):
        video = store.increment_play_count(video_id)
        typer.echo(str(video.file_path))


@app.command()
def delete(
    ctx: typer.Context,
    video_id: int = typer.Argument(..., help="Video id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Delete a video and its media and thumbnail files."""
    with _cli_errors(), _library(ctx) as (config, paths, store):
        if not yes and not typer.confirm(f"Delete video {video_id} and its files?"):
            raise typer.Exit(code=1)
        video = build_orchestrator(config, store, paths, EventBus()).delete_video(video_id)
        typer.secho(f"Deleted video {video.id}: {video.title}", fg=typer.colors.GREEN)


@app.command()
def thumbnail(ctx: typer.Context, video_id: int = typer.Argument(..., help="Video id")):
    """Render a new thumbnail for a video."""
    with _cli_errors(), _library(ctx) as (config, paths, store):
        orchestrator = build_orchestrator(config, store, paths, EventBus())
        path = asyncio.run(orchestrator.regenerate_thumbnail(video_id))
        typer.secho(f"Thumbnail: {path}", fg=typer.colors.GREEN)


# ----------------------------------------------------------------------
# Folders
# ----------------------------------------------------------------------


@app.command()
def folders(ctx: typer.Context):
    """Show the folder tree with video counts."""
    with _cli_errors(), _library(ctx) as (_, _, store):
        tree = Tree("[bold]Folders")
        _add_tree_nodes(tree, store.folder_tree())
        console.print(tree)


@app.command("folder-create")
def folder_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Folder name"),
    parent: Optional[int] = typer.Option(None, "--parent", "-p", help="Parent folder id"),
):
    """Create a folder."""
    with _cli_errors(), _library(ctx) as (_, _, store):
        folder = store.create_folder(name, parent_id=parent)
        typer.secho(f"Created folder {folder.id}: {folder.name}", fg=typer.colors.GREEN)


@app.command("folder-rename")
def folder_rename(
    ctx: typer.Context,
    folder_id: int = typer.Argument(..., help="Folder id"),
    name: str = typer.Argument(..., help="New name"),
):
    """Rename a folder."""
    with _cli_errors(), _library(ctx) as (_, _, store):
        folder = store.rename_folder(folder_id, name)
        typer.secho(f"Renamed folder {folder.id}: {folder.name}", fg=typer.colors.GREEN)


@app.command("folder-move")
def folder_move(
    ctx: typer.Context,
    folder_id: int = typer.Argument(..., help="Folder id"),
    parent: Optional[int] = typer.Option(None, "--parent", "-p", help="New parent id (omit for top level)"),
):
    """Move a folder under another folder."""
    with _cli_errors(), _library(ctx) as (_, _, store):
        folder = store.move_folder(folder_id, parent)
        typer.secho(f"Moved folder {folder.id} under {folder.parent_id}", fg=typer.colors.GREEN)


@app.command("folder-delete")
def folder_delete(
    ctx: typer.Context,
    folder_id: int = typer.Argument(..., help="Folder id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Delete a folder and its subfolders; their videos move to the root folder."""
    with _cli_errors(), _library(ctx) as (_, _, store):
        if not yes and not typer.confirm(f"Delete folder {folder_id} and its subfolders?"):
            raise typer.Exit(code=1)
        moved = store.delete_folder(folder_id)
        typer.secho(f"Deleted folder {folder_id} ({moved} video(s) moved to root)", fg=typer.colors.GREEN)


# ----------------------------------------------------------------------
# Tags
# ----------------------------------------------------------------------


@app.command("tags")
def list_tags(ctx: typer.Context):
    """List tags with their video counts."""
    with _cli_errors(), _library(ctx) as (_, _, store):
        table = Table()
        table.add_column("ID", justify="right")
        table.add_column("Name")
        table.add_column("Color")
        table.add_column("Videos", justify="right")
        for tag in store.list_tags():
            table.add_row(str(tag.id), tag.name, f"[{tag.color}]{tag.color}[/]", str(tag.video_count or 0))
        console.print(table)


@app.command("tag-create")
def tag_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Tag name"),
    color: Optional[str] = typer.Option(None, "--color", help="Hex color, e.g. #22c55e"),
):
    """Create a tag."""
    with _cli_errors(), _library(ctx) as (_, _, store):
        tag = store.create_tag(name, color=color)
        typer.secho(f"Created tag {tag.id}: {tag.name}", fg=typer.colors.GREEN)


@app.command("tag-set")
def tag_set(
    ctx: typer.Context,
    video_id: int = typer.Argument(..., help="Video id"),
    tag_ids: Optional[List[int]] = typer.Argument(None, help="Tag ids (none clears all tags)"),
):
    """Replace the tags of a video."""
    with _cli_errors(), _library(ctx) as (_, _, store):
        assigned = store.set_tags_for_video(video_id, tag_ids or [])
        names = ", ".join(tag.name for tag in assigned) or "-"
        typer.secho(f"Video {video_id} tags: {names}", fg=typer.colors.GREEN)


@app.command("tag-delete")
def tag_delete(ctx: typer.Context, tag_id: int = typer.Argument(..., help="Tag id")):
    """Delete a tag (removes it from every video)."""
    with _cli_errors(), _library(ctx) as (_, _, store):
        store.delete_tag(tag_id)
        typer.secho(f"Deleted tag {tag_id}", fg=typer.colors.GREEN)


# ----------------------------------------------------------------------
# Maintenance
# ----------------------------------------------------------------------


@app.command()
def reindex(ctx: typer.Context):
    """Rebuild the full-text search index."""
    with _cli_errors(), _library(ctx) as (_, _, store):
        store.rebuild_search_index()
        typer.secho("Search index rebuilt", fg=typer.colors.GREEN)


@app.command()
def cleanup(ctx: typer.Context):
    """Remove leftover temporary files from interrupted imports."""
    with _cli_errors(), _library(ctx) as (_, paths, _):
        removed = HousekeepingService().cleanup_temp_files(paths.data_dir)
        typer.secho(f"Removed {removed} temporary file(s)", fg=typer.colors.GREEN)


if __name__ == "__main__":
    app()
