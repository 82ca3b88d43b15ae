"""Import orchestrator: drives one video from source to catalog row.

Local imports run PENDING → PROBING → TRANSCODING → THUMBNAIL_GEN →
PERSISTING → COMPLETE; remote imports replace the first two stages with
FETCHING_INFO → DOWNLOADING. Any stage may end in ERROR.

Each import runs as its own asyncio task registered under a task id, so many
imports can share one event loop and `cancel(task_id)` stops exactly one of
them (the running tool process is terminated by the process runner).
Progress is published on the EventBus as ImportProgress events; the final
outcome as ImportCompleted or ImportFailed.

Nothing is written to the catalog until every external stage succeeded. A
failed or cancelled import leaves no row, and (unless disabled in config) its
partial files are removed.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Set
from clipshelf.config.models import AppConfig
from clipshelf.domain.errors import (
    ImportCancelled,
    ProcessCancelled,
    ThumbnailFailure,
    ValidationError,
    VideoNotFoundError,
)
from clipshelf.domain.events import ImportCompleted, ImportFailed, ImportProgress
from clipshelf.domain.models import ImportStage, SourceKind, TaskStatus, Video, build_clip_range
from clipshelf.infrastructure.catalog_store import CatalogStore
from clipshelf.infrastructure.event_bus import EventBus
from clipshelf.infrastructure.ffmpeg import FFmpegAdapter
from clipshelf.infrastructure.ffprobe import FFprobeAdapter
from clipshelf.infrastructure.housekeeping import HousekeepingService
from clipshelf.infrastructure.paths import LibraryPaths, generate_id
from clipshelf.infrastructure.thumbnails import ThumbnailGenerator
from clipshelf.infrastructure.ytdlp import YtDlpAdapter

# Overall percent at which each stage starts
STAGE_START = {
    ImportStage.PENDING: 0.0,
    ImportStage.PROBING: 0.0,
    ImportStage.FETCHING_INFO: 0.0,
    ImportStage.TRANSCODING: 5.0,
    ImportStage.DOWNLOADING: 5.0,
    ImportStage.THUMBNAIL_GEN: 90.0,
    ImportStage.PERSISTING: 95.0,
    ImportStage.COMPLETE: 100.0,
}


@dataclass
class ImportRun:
    """Mutable bookkeeping of one running import."""

    task_id: str
    kind: SourceKind
    source: str
    stage: ImportStage = ImportStage.PENDING
    percent: float = 0.0
    artifacts: List[Path] = field(default_factory=list)
    # Set once the catalog row is committed; from then on the import counts as done
    video: Optional[Video] = None


class ImportOrchestrator:
    """Coordinates probe, transcoder/acquirer, thumbnails and the catalog.

    Args:
        config: AppConfig (transcode container, download format, import cleanup).
        event_bus: EventBus receiving ImportProgress/ImportCompleted/ImportFailed.
        store: open CatalogStore.
        paths: LibraryPaths deciding where media and thumbnails are written.
        probe: FFprobeAdapter.
        transcoder: FFmpegAdapter.
        thumbnails: ThumbnailGenerator.
        acquirer: YtDlpAdapter.
        housekeeping: HousekeepingService for file reclaim and failure cleanup.
    """

    def __init__(
        self,
        config: AppConfig,
        event_bus: EventBus,
        store: CatalogStore,
        paths: LibraryPaths,
        probe: FFprobeAdapter,
        transcoder: FFmpegAdapter,
        thumbnails: ThumbnailGenerator,
        acquirer: YtDlpAdapter,
        housekeeping: Optional[HousekeepingService] = None,
    ):
        self.config = config
        self.event_bus = event_bus
        self.store = store
        self.paths = paths
        self.probe = probe
        self.transcoder = transcoder
        self.thumbnails = thumbnails
        self.acquirer = acquirer
        self.housekeeping = housekeeping or HousekeepingService()
        self.logger = logging.getLogger(__name__)

        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_requested: Set[str] = set()

    # ------------------------------------------------------------------
    # Task registry
    # ------------------------------------------------------------------

    def active_tasks(self) -> List[str]:
        return [task_id for task_id, task in self._tasks.items() if not task.done()]

    def cancel(self, task_id: str) -> bool:
        """Cancels one running import. Returns False if no such task is running."""
        task = self._tasks.get(task_id)
        if task is None or task.done():
            return False
        self.logger.info(f"IMPORT_CANCEL: {task_id}")
        self._cancel_requested.add(task_id)
        task.cancel()
        return True

    def _claim_task_id(self, task_id: Optional[str]) -> str:
        task_id = task_id or generate_id("task")
        if task_id in self._tasks:
            raise ValidationError(f"Import task {task_id} is already running")
        return task_id

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _emit(
        self,
        run: ImportRun,
        stage: ImportStage,
        percent: Optional[float] = None,
        status: TaskStatus = TaskStatus.RUNNING,
        message: Optional[str] = None,
    ):
        if percent is None:
            percent = STAGE_START.get(stage, run.percent)
        run.stage = stage
        run.percent = max(0.0, min(100.0, percent))
        self.event_bus.publish(
            ImportProgress(task_id=run.task_id, stage=stage, percent=run.percent, status=status, message=message)
        )

    def _stage_progress(self, run: ImportRun, stage: ImportStage, low: float, high: float) -> Callable[[float], None]:
        """Maps a tool's 0-100 progress into the stage's share of the overall percent."""
        def on_progress(percent: float):
            value = low + (high - low) * max(0.0, min(100.0, percent)) / 100.0
            # yt-dlp restarts at 0 for each downloaded stream; never move backwards within a stage
            if run.stage == stage and value <= run.percent:
                return
            self._emit(run, stage, value)
        return on_progress

    def _fail(self, run: ImportRun, error: BaseException, cancelled: bool = False):
        message = "Import cancelled" if cancelled else (str(error) or error.__class__.__name__)
        failed_stage = run.stage
        self.event_bus.publish(
            ImportProgress(
                task_id=run.task_id,
                stage=ImportStage.ERROR,
                percent=run.percent,
                status=TaskStatus.CANCELLED if cancelled else TaskStatus.ERROR,
                message=message,
            )
        )
        self.event_bus.publish(
            ImportFailed(task_id=run.task_id, stage=failed_stage, error_message=message, cancelled=cancelled)
        )
        run.stage = ImportStage.ERROR

    def _cleanup(self, run: ImportRun):
        if self.config.import_.cleanup_on_failure and run.artifacts:
            self.housekeeping.remove_artifacts(run.artifacts)

    # ------------------------------------------------------------------
    # Task execution
    # ------------------------------------------------------------------

    async def _execute(self, run: ImportRun, pipeline) -> Video:
        self._emit(run, ImportStage.PENDING, 0.0, status=TaskStatus.PENDING, message=run.source)
        task = asyncio.ensure_future(pipeline)
        self._tasks[run.task_id] = task

        start_time = time.monotonic()
        self.logger.info(f"IMPORT_START: {run.task_id} kind={run.kind.value} source={run.source}")
        try:
            video = await task
        except (asyncio.CancelledError, ProcessCancelled) as e:
            if run.video is not None:
                # The row is already committed: report the import as done, then let the cancel propagate
                self._complete(run, run.video, start_time)
                raise
            elapsed = time.monotonic() - start_time
            requested = run.task_id in self._cancel_requested
            self.logger.info(
                f"IMPORT_END: {run.task_id} status=cancelled stage={run.stage.value} elapsed={elapsed:.2f}s"
            )
            self._fail(run, e, cancelled=True)
            self._cleanup(run)
            if requested or isinstance(e, ProcessCancelled):
                raise ImportCancelled(run.task_id) from None
            # The caller itself was cancelled; let that propagate
            raise
        except Exception as e:
            elapsed = time.monotonic() - start_time
            self.logger.error(
                f"IMPORT_END: {run.task_id} status=failed stage={run.stage.value} "
                f"error={e.__class__.__name__}: {e} elapsed={elapsed:.2f}s"
            )
            self._fail(run, e)
            self._cleanup(run)
            raise
        finally:
            self._tasks.pop(run.task_id, None)
            self._cancel_requested.discard(run.task_id)

        self._complete(run, video, start_time)
        return video

    def _complete(self, run: ImportRun, video: Video, start_time: float):
        self._emit(run, ImportStage.COMPLETE, 100.0, status=TaskStatus.COMPLETE, message=video.title)
        self.event_bus.publish(ImportCompleted(task_id=run.task_id, video_id=video.id))
        elapsed = time.monotonic() - start_time
        self.logger.info(f"IMPORT_END: {run.task_id} status=completed video={video.id} elapsed={elapsed:.2f}s")

    async def _render_thumbnail(self, video_path: Path, duration: float, media_id: str, artifacts: List[Path]) -> Path:
        """Animated preview, or a single static frame when the preview fails."""
        preview = self.paths.preview_file(media_id)
        artifacts.append(preview)
        try:
            return await self.thumbnails.generate_animated_preview(video_path, duration, preview)
        except ThumbnailFailure as e:
            self.logger.warning(f"THUMBNAIL_FALLBACK: {video_path.name} preview failed ({e}); using static frame")

        frame = self.paths.frame_file(media_id)
        artifacts.append(frame)
        return await self.thumbnails.generate_static_frame(video_path, duration, frame)

    def _persist(self, run: ImportRun, tag_ids: Optional[Sequence[int]], **attrs) -> Video:
        video = self.store.insert_video(**attrs)
        if tag_ids:
            try:
                self.store.set_tags_for_video(video.id, tag_ids)
            except Exception:
                # No partial row: the import either lands with its tags or not at all
                self.store.delete_video(video.id)
                raise
        run.video = video
        return video

    # ------------------------------------------------------------------
    # Local import
    # ------------------------------------------------------------------

    async def import_local(
        self,
        file_path: Path,
        title: Optional[str] = None,
        description: Optional[str] = None,
        folder_id: Optional[int] = None,
        tag_ids: Optional[Sequence[int]] = None,
        task_id: Optional[str] = None,
    ) -> Video:
        """Transcodes a local file into the library and catalogs it."""
        source = Path(file_path).expanduser()
        if not source.is_file():
            raise ValidationError(f"File not found: {source}")
        run = ImportRun(task_id=self._claim_task_id(task_id), kind=SourceKind.LOCAL, source=str(source))
        return await self._execute(run, self._run_local(run, source, title, description, folder_id, tag_ids))

    async def _run_local(
        self,
        run: ImportRun,
        source: Path,
        title: Optional[str],
        description: Optional[str],
        folder_id: Optional[int],
        tag_ids: Optional[Sequence[int]],
    ) -> Video:
        self._emit(run, ImportStage.PROBING, message=f"Probing {source.name}")
        await self.probe.probe(source)

        media_id = generate_id("v")
        output = self.paths.video_file(media_id, self.config.transcode.container)
        run.artifacts.append(output)
        self._emit(run, ImportStage.TRANSCODING, message=f"Transcoding {source.name}")
        await self.transcoder.transcode(
            source,
            output,
            on_progress=self._stage_progress(run, ImportStage.TRANSCODING, 5.0, 90.0),
        )
        info = await self.probe.probe(output)

        self._emit(run, ImportStage.THUMBNAIL_GEN, message="Generating thumbnail")
        thumbnail = await self._render_thumbnail(output, info.duration, media_id, run.artifacts)

        self._emit(run, ImportStage.PERSISTING, message="Saving to library")
        return self._persist(
            run,
            tag_ids,
            title=title or source.stem,
            description=description,
            file_path=output,
            thumbnail_path=thumbnail,
            duration=info.duration,
            width=info.width,
            height=info.height,
            file_size=info.file_size,
            codec=info.codec,
            source_kind=SourceKind.LOCAL,
            source_path=source,
            folder_id=folder_id,
        )

    # ------------------------------------------------------------------
    # Remote import
    # ------------------------------------------------------------------

    async def import_remote(
        self,
        url: str,
        title: Optional[str] = None,
        clip_start: Optional[float] = None,
        clip_end: Optional[float] = None,
        folder_id: Optional[int] = None,
        tag_ids: Optional[Sequence[int]] = None,
        task_id: Optional[str] = None,
    ) -> Video:
        """Downloads a YouTube video (or a clip of it) into the library and catalogs it."""
        if not self.acquirer.validate(url):
            raise ValidationError(f"Invalid YouTube URL: {url}")
        clip = build_clip_range(clip_start, clip_end)
        run = ImportRun(task_id=self._claim_task_id(task_id), kind=SourceKind.REMOTE, source=url)
        return await self._execute(run, self._run_remote(run, url, title, clip.start, clip.end, folder_id, tag_ids))

    async def _run_remote(
        self,
        run: ImportRun,
        url: str,
        title: Optional[str],
        clip_start: Optional[float],
        clip_end: Optional[float],
        folder_id: Optional[int],
        tag_ids: Optional[Sequence[int]],
    ) -> Video:
        self._emit(run, ImportStage.FETCHING_INFO, message="Fetching video info")
        remote = await self.acquirer.fetch_metadata(url)

        media_id = generate_id("v")
        destination = self.paths.video_file(media_id, self.config.download.merge_format)
        run.artifacts.append(destination)
        self._emit(run, ImportStage.DOWNLOADING, message=f"Downloading {remote.title}")
        downloaded = await self.acquirer.download(
            url,
            destination,
            clip_start=clip_start,
            clip_end=clip_end,
            on_progress=self._stage_progress(run, ImportStage.DOWNLOADING, 5.0, 90.0),
        )
        downloaded = Path(downloaded)
        if downloaded != destination:
            run.artifacts.append(downloaded)
        info = await self.probe.probe(downloaded)

        self._emit(run, ImportStage.THUMBNAIL_GEN, message="Generating thumbnail")
        duration = info.duration or remote.duration
        thumbnail = await self._render_thumbnail(downloaded, duration, media_id, run.artifacts)

        self._emit(run, ImportStage.PERSISTING, message="Saving to library")
        return self._persist(
            run,
            tag_ids,
            title=title or remote.title,
            file_path=downloaded,
            thumbnail_path=thumbnail,
            duration=duration,
            width=info.width,
            height=info.height,
            file_size=info.file_size,
            codec=info.codec,
            source_kind=SourceKind.REMOTE,
            source_url=url,
            clip_start=clip_start,
            clip_end=clip_end,
            folder_id=folder_id,
        )

    # ------------------------------------------------------------------
    # Library maintenance
    # ------------------------------------------------------------------

    async def regenerate_thumbnail(self, video_id: int) -> Path:
        """Renders a fresh thumbnail for a cataloged video and records it."""
        video = self.store.get_video(video_id)
        if video is None:
            raise VideoNotFoundError(video_id)

        # Fresh file names so a failed render never clobbers the thumbnail on record
        thumbnail = await self._render_thumbnail(video.file_path, video.duration, generate_id("t"), [])

        self.store.update_video(video_id, thumbnail_path=thumbnail)
        if video.thumbnail_path is not None and video.thumbnail_path != thumbnail:
            self.housekeeping.remove_files([video.thumbnail_path])
        self.logger.info(f"THUMBNAIL_REGENERATED: video={video_id} file={thumbnail.name}")
        return thumbnail

    def delete_video(self, video_id: int) -> Video:
        """Removes a video from the catalog and deletes its media and thumbnail files."""
        video = self.store.delete_video(video_id)
        self.housekeeping.reclaim_video(video)
        return video
