"""End-to-end import flows: real catalog and event bus, scripted tool adapters."""
import asyncio
import os
import sys
import pytest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock
from clipshelf.config.models import AppConfig
from clipshelf.domain.errors import (
    CatalogError,
    ImportCancelled,
    ProbeError,
    ProcessCancelled,
    ThumbnailFailure,
    TranscodeFailure,
    ValidationError,
    VideoNotFoundError,
)
from clipshelf.domain.events import ImportCompleted, ImportFailed, ImportProgress
from clipshelf.domain.models import ImportStage, MediaInfo, RemoteVideoInfo, SourceKind, TaskStatus
from clipshelf.infrastructure.ffmpeg import FFmpegAdapter
from clipshelf.infrastructure.housekeeping import HousekeepingService
from clipshelf.infrastructure.process_runner import ProcessRunner
from clipshelf.infrastructure.ytdlp import is_valid_url
from clipshelf.pipeline.orchestrator import ImportOrchestrator

pytestmark = pytest.mark.integration

YOUTUBE_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


@pytest.fixture
def source_file(tmp_path):
    path = tmp_path / "incoming" / "sword kata.mp4"
    path.parent.mkdir()
    path.write_bytes(b"source")
    return path


@pytest.fixture
def adapters():
    """Tool adapters that write their output files like the real ones do."""
    probe = MagicMock()
    probe.probe = AsyncMock(
        return_value=MediaInfo(duration=12.5, width=1280, height=720, codec="vp9", file_size=2048)
    )

    async def transcode(source, output, on_progress=None, **kwargs):
        Path(output).write_bytes(b"webm")
        if on_progress is not None:
            on_progress(50.0)
            on_progress(100.0)
        return output

    transcoder = MagicMock()
    transcoder.transcode = AsyncMock(side_effect=transcode)

    async def render(video_path, duration, output_path=None):
        output_path.write_bytes(b"thumb")
        return output_path

    thumbnails = MagicMock()
    thumbnails.generate_animated_preview = AsyncMock(side_effect=render)
    thumbnails.generate_static_frame = AsyncMock(side_effect=render)

    async def download(url, destination, clip_start=None, clip_end=None, on_progress=None):
        destination.write_bytes(b"remote")
        if on_progress is not None:
            on_progress(100.0)
        return destination

    acquirer = MagicMock()
    acquirer.validate = MagicMock(side_effect=is_valid_url)
    acquirer.fetch_metadata = AsyncMock(
        return_value=RemoteVideoInfo(id="dQw4w9WgXcQ", title="Remote title", duration=30.0)
    )
    acquirer.download = AsyncMock(side_effect=download)

    return MagicMock(probe=probe, transcoder=transcoder, thumbnails=thumbnails, acquirer=acquirer)


def _orchestrator(config, event_bus, store, library_paths, adapters):
    return ImportOrchestrator(
        config=config,
        event_bus=event_bus,
        store=store,
        paths=library_paths,
        probe=adapters.probe,
        transcoder=adapters.transcoder,
        thumbnails=adapters.thumbnails,
        acquirer=adapters.acquirer,
        housekeeping=HousekeepingService(),
    )


@pytest.fixture
def orchestrator(sample_config, event_bus, store, library_paths, adapters):
    return _orchestrator(sample_config, event_bus, store, library_paths, adapters)


def _progress(events):
    return [e for e in events if isinstance(e, ImportProgress)]


def _stages(events):
    stages = []
    for event in _progress(events):
        if not stages or stages[-1] != event.stage:
            stages.append(event.stage)
    return stages


def _media_files(library_paths):
    return sorted(p.name for p in library_paths.videos_dir.iterdir())


# ============================================================================
# Local imports
# ============================================================================

def test_local_import_success(orchestrator, store, recorded_events, source_file):
    tag = store.create_tag("combat")
    folder = store.create_folder("Fencing")

    video = asyncio.run(orchestrator.import_local(
        source_file, description="basics", folder_id=folder.id, tag_ids=[tag.id], task_id="task_local"
    ))

    assert video.title == "sword kata"
    assert video.description == "basics"
    assert video.source_kind == SourceKind.LOCAL
    assert video.source_path == source_file
    assert video.folder_id == folder.id
    assert video.duration == 12.5
    assert video.file_path.exists()
    assert video.file_path.suffix == ".webm"
    assert video.file_path.stem.startswith("v_")
    assert video.thumbnail_path.suffix == ".gif"
    assert [t.name for t in store.tags_for_video(video.id)] == ["combat"]
    assert source_file.exists()

    assert _stages(recorded_events) == [
        ImportStage.PENDING,
        ImportStage.PROBING,
        ImportStage.TRANSCODING,
        ImportStage.THUMBNAIL_GEN,
        ImportStage.PERSISTING,
        ImportStage.COMPLETE,
    ]
    percents = [e.percent for e in _progress(recorded_events)]
    assert percents == sorted(percents)
    assert percents[-1] == 100.0
    assert _progress(recorded_events)[-1].status == TaskStatus.COMPLETE
    assert recorded_events[-1] == ImportCompleted(task_id="task_local", video_id=video.id)
    assert all(e.task_id == "task_local" for e in recorded_events)
    assert orchestrator.active_tasks() == []


def test_transcode_progress_is_scaled_into_stage_window(orchestrator, recorded_events, source_file):
    asyncio.run(orchestrator.import_local(source_file))

    transcoding = [e.percent for e in _progress(recorded_events) if e.stage == ImportStage.TRANSCODING]
    assert transcoding == [5.0, 47.5, 90.0]


def test_local_import_failure_leaves_no_row_and_no_files(
    orchestrator, adapters, store, recorded_events, source_file, library_paths
):
    async def failing_transcode(source, output, on_progress=None, **kwargs):
        Path(output).write_bytes(b"partial")
        Path(f"{output}.part").write_bytes(b"partial")
        raise TranscodeFailure(1, "Invalid data found when processing input")

    adapters.transcoder.transcode.side_effect = failing_transcode

    with pytest.raises(TranscodeFailure):
        asyncio.run(orchestrator.import_local(source_file, task_id="task_bad"))

    assert store.list_videos() == []
    assert _media_files(library_paths) == []
    last_progress = _progress(recorded_events)[-1]
    assert last_progress.stage == ImportStage.ERROR
    assert last_progress.status == TaskStatus.ERROR
    assert "Invalid data" in last_progress.message
    failed = recorded_events[-1]
    assert isinstance(failed, ImportFailed)
    assert failed.stage == ImportStage.TRANSCODING
    assert failed.cancelled is False
    adapters.thumbnails.generate_animated_preview.assert_not_called()


def test_failure_keeps_files_when_cleanup_disabled(
    tmp_path, event_bus, store, library_paths, adapters, source_file
):
    config = AppConfig(general={"data_dir": str(tmp_path / "library")}, **{"import": {"cleanup_on_failure": False}})
    adapters.probe.probe.side_effect = [MediaInfo(duration=5.0), ProbeError("unreadable output")]
    orchestrator = _orchestrator(config, event_bus, store, library_paths, adapters)

    with pytest.raises(ProbeError):
        asyncio.run(orchestrator.import_local(source_file))

    assert len(_media_files(library_paths)) == 1
    assert store.list_videos() == []


def test_thumbnail_falls_back_to_static_frame(orchestrator, adapters, source_file):
    adapters.thumbnails.generate_animated_preview.side_effect = ThumbnailFailure(1, "palettegen failed")

    video = asyncio.run(orchestrator.import_local(source_file))

    assert video.thumbnail_path.suffix == ".jpg"
    assert video.thumbnail_path.exists()
    assert video.thumbnail_path.stem == video.file_path.stem
    adapters.thumbnails.generate_static_frame.assert_awaited_once()


def test_thumbnail_total_failure_fails_import(orchestrator, adapters, store, recorded_events, source_file, library_paths):
    adapters.thumbnails.generate_animated_preview.side_effect = ThumbnailFailure(1, "palettegen failed")
    adapters.thumbnails.generate_static_frame.side_effect = ThumbnailFailure(1, "no frame")

    with pytest.raises(ThumbnailFailure):
        asyncio.run(orchestrator.import_local(source_file))

    assert store.list_videos() == []
    assert _media_files(library_paths) == []
    assert recorded_events[-1].stage == ImportStage.THUMBNAIL_GEN


def test_unknown_tag_leaves_no_partial_row(orchestrator, store, recorded_events, source_file, library_paths):
    with pytest.raises(CatalogError):
        asyncio.run(orchestrator.import_local(source_file, tag_ids=[999]))

    assert store.list_videos() == []
    assert _media_files(library_paths) == []
    assert recorded_events[-1].stage == ImportStage.PERSISTING


def test_missing_local_file_is_rejected_before_any_work(orchestrator, adapters, recorded_events, tmp_path):
    with pytest.raises(ValidationError):
        asyncio.run(orchestrator.import_local(tmp_path / "missing.mp4"))

    adapters.probe.probe.assert_not_called()
    assert recorded_events == []


# ============================================================================
# Remote imports
# ============================================================================

def test_remote_import_with_clip(orchestrator, adapters, store, recorded_events):
    tag = store.create_tag("dance")

    video = asyncio.run(orchestrator.import_remote(
        YOUTUBE_URL, clip_start=5, clip_end=15, tag_ids=[tag.id], task_id="task_remote"
    ))

    assert video.title == "Remote title"
    assert video.source_kind == SourceKind.REMOTE
    assert video.source_url == YOUTUBE_URL
    assert (video.clip_start, video.clip_end) == (5.0, 15.0)
    assert video.duration == 12.5
    assert video.file_path.exists()
    assert [t.name for t in store.tags_for_video(video.id)] == ["dance"]

    download_kwargs = adapters.acquirer.download.await_args.kwargs
    assert (download_kwargs["clip_start"], download_kwargs["clip_end"]) == (5, 15)
    assert _stages(recorded_events) == [
        ImportStage.PENDING,
        ImportStage.FETCHING_INFO,
        ImportStage.DOWNLOADING,
        ImportStage.THUMBNAIL_GEN,
        ImportStage.PERSISTING,
        ImportStage.COMPLETE,
    ]
    assert isinstance(recorded_events[-1], ImportCompleted)


def test_remote_duration_falls_back_to_metadata(orchestrator, adapters):
    adapters.probe.probe.return_value = MediaInfo(duration=0.0)

    video = asyncio.run(orchestrator.import_remote(YOUTUBE_URL, title="Custom"))

    assert video.title == "Custom"
    assert video.duration == 30.0


def test_download_progress_never_goes_backwards(orchestrator, adapters, recorded_events):
    # yt-dlp reports 0-100 for the video stream, then again for the audio stream
    async def download_two_streams(url, destination, clip_start=None, clip_end=None, on_progress=None):
        for percent in (0.0, 50.0, 100.0, 0.0, 50.0, 100.0):
            on_progress(percent)
        destination.write_bytes(b"remote")
        return destination

    adapters.acquirer.download.side_effect = download_two_streams

    asyncio.run(orchestrator.import_remote(YOUTUBE_URL))

    downloading = [e.percent for e in _progress(recorded_events) if e.stage == ImportStage.DOWNLOADING]
    assert downloading == [5.0, 47.5, 90.0]
    percents = [e.percent for e in _progress(recorded_events)]
    assert percents == sorted(percents)


def test_remote_download_to_other_container_is_cleaned_up(orchestrator, adapters, store, library_paths):
    async def download_mkv(url, destination, clip_start=None, clip_end=None, on_progress=None):
        merged = destination.with_suffix(".mkv")
        merged.write_bytes(b"remote")
        return merged

    adapters.acquirer.download.side_effect = download_mkv
    adapters.probe.probe.side_effect = ProbeError("bad")

    with pytest.raises(ProbeError):
        asyncio.run(orchestrator.import_remote(YOUTUBE_URL))

    assert _media_files(library_paths) == []
    assert store.list_videos() == []


@pytest.mark.parametrize("url, start, end", [
    ("https://vimeo.com/123", None, None),
    ("not a url", None, None),
    (YOUTUBE_URL, 10, 5),
    (YOUTUBE_URL, -1, None),
    (YOUTUBE_URL, 5, 5),
])
def test_remote_input_rejected_before_spawning(orchestrator, adapters, recorded_events, url, start, end):
    with pytest.raises(ValidationError):
        asyncio.run(orchestrator.import_remote(url, clip_start=start, clip_end=end))

    adapters.acquirer.fetch_metadata.assert_not_called()
    adapters.acquirer.download.assert_not_called()
    assert recorded_events == []


# ============================================================================
# Cancellation and task registry
# ============================================================================

def _blocking_transcode(adapters):
    """Makes transcode write a partial file, signal, then hang until cancelled."""
    started = {}

    async def transcode(source, output, on_progress=None, **kwargs):
        Path(output).write_bytes(b"partial")
        started["event"].set()
        await asyncio.sleep(3600)

    adapters.transcoder.transcode.side_effect = transcode
    return started


def test_cancel_running_import(orchestrator, adapters, store, recorded_events, source_file, library_paths):
    started = _blocking_transcode(adapters)

    async def scenario():
        started["event"] = asyncio.Event()
        task = asyncio.ensure_future(orchestrator.import_local(source_file, task_id="task_cancel"))
        await started["event"].wait()
        assert orchestrator.active_tasks() == ["task_cancel"]
        assert orchestrator.cancel("task_cancel") is True
        with pytest.raises(ImportCancelled):
            await task

    asyncio.run(scenario())

    assert store.list_videos() == []
    assert _media_files(library_paths) == []
    assert orchestrator.active_tasks() == []
    assert orchestrator.cancel("task_cancel") is False

    last_progress = _progress(recorded_events)[-1]
    assert last_progress.stage == ImportStage.ERROR
    assert last_progress.status == TaskStatus.CANCELLED
    failed = recorded_events[-1]
    assert isinstance(failed, ImportFailed)
    assert failed.cancelled is True
    assert failed.stage == ImportStage.TRANSCODING


def test_cancel_only_stops_the_named_task(orchestrator, adapters, store, tmp_path):
    first = tmp_path / "first.mp4"
    second = tmp_path / "second.mp4"
    first.write_bytes(b"a")
    second.write_bytes(b"b")
    release = {}

    async def transcode(source, output, on_progress=None, **kwargs):
        Path(output).write_bytes(b"webm")
        await release["event"].wait()

    adapters.transcoder.transcode.side_effect = transcode

    async def scenario():
        release["event"] = asyncio.Event()
        keep = asyncio.ensure_future(orchestrator.import_local(first, task_id="task_keep"))
        drop = asyncio.ensure_future(orchestrator.import_local(second, task_id="task_drop"))
        while len(orchestrator.active_tasks()) < 2:
            await asyncio.sleep(0)
        orchestrator.cancel("task_drop")
        release["event"].set()
        return await asyncio.gather(keep, drop, return_exceptions=True)

    kept, dropped = asyncio.run(scenario())

    assert isinstance(dropped, ImportCancelled)
    assert kept.title == "first"
    assert [v.title for v in store.list_videos()] == ["first"]


def test_process_cancelled_maps_to_import_cancelled(orchestrator, adapters, recorded_events, source_file):
    adapters.transcoder.transcode.side_effect = ProcessCancelled("ffmpeg terminated")

    with pytest.raises(ImportCancelled):
        asyncio.run(orchestrator.import_local(source_file))

    assert recorded_events[-1].cancelled is True


def test_caller_cancelled_after_commit_keeps_the_import(
    orchestrator, store, recorded_events, source_file, library_paths
):
    insert_video = store.insert_video
    outer = {}

    def insert_then_cancel_caller(**attrs):
        video = insert_video(**attrs)
        # The caller is cancelled before it resumes from the finished import task
        asyncio.get_running_loop().call_soon(outer["task"].cancel)
        return video

    store.insert_video = insert_then_cancel_caller

    async def scenario():
        outer["task"] = asyncio.ensure_future(orchestrator.import_local(source_file, task_id="task_late"))
        with pytest.raises(asyncio.CancelledError):
            await outer["task"]

    asyncio.run(scenario())

    videos = store.list_videos()
    assert len(videos) == 1
    assert videos[0].file_path.exists()
    assert videos[0].thumbnail_path.exists()
    assert not any(isinstance(e, ImportFailed) for e in recorded_events)
    assert _progress(recorded_events)[-1].status == TaskStatus.COMPLETE
    assert recorded_events[-1] == ImportCompleted(task_id="task_late", video_id=videos[0].id)
    assert orchestrator.active_tasks() == []


def _sleeping_tool(tmp_path):
    """Executable stand-in for ffmpeg: records its pid, then sleeps."""
    pid_file = tmp_path / "tool.pid"
    tool = tmp_path / "bin" / "ffmpeg"
    tool.parent.mkdir()
    tool.write_text(
        f"#!{sys.executable}\n"
        "import os, time\n"
        f"open({str(pid_file)!r}, 'w').write(str(os.getpid()))\n"
        "time.sleep(60)\n"
    )
    tool.chmod(0o755)
    return tool, pid_file


@pytest.mark.slow
@pytest.mark.skipif(sys.platform == "win32", reason="shebang scripts are not executable on Windows")
def test_cancel_terminates_real_tool_process(
    sample_config, event_bus, store, library_paths, adapters, recorded_events, source_file, tmp_path
):
    tool, pid_file = _sleeping_tool(tmp_path)
    adapters.transcoder = FFmpegAdapter(ProcessRunner(terminate_timeout=2.0), MagicMock(ffmpeg=tool))
    orchestrator = _orchestrator(sample_config, event_bus, store, library_paths, adapters)

    async def scenario():
        task = asyncio.ensure_future(orchestrator.import_local(source_file, task_id="task_real"))
        for _ in range(200):
            if pid_file.exists() and pid_file.read_text():
                break
            await asyncio.sleep(0.05)
        assert orchestrator.cancel("task_real") is True
        with pytest.raises(ImportCancelled):
            await asyncio.wait_for(task, timeout=10)
        return int(pid_file.read_text())

    pid = asyncio.run(scenario())

    # The child was terminated and reaped
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
    assert store.list_videos() == []
    assert _media_files(library_paths) == []
    assert recorded_events[-1].cancelled is True
    assert recorded_events[-1].stage == ImportStage.TRANSCODING


def test_duplicate_task_id_is_rejected(orchestrator, adapters, source_file):
    started = _blocking_transcode(adapters)

    async def scenario():
        started["event"] = asyncio.Event()
        task = asyncio.ensure_future(orchestrator.import_local(source_file, task_id="task_dup"))
        await started["event"].wait()
        with pytest.raises(ValidationError):
            await orchestrator.import_local(source_file, task_id="task_dup")
        orchestrator.cancel("task_dup")
        with pytest.raises(ImportCancelled):
            await task

    asyncio.run(scenario())


# ============================================================================
# Library maintenance
# ============================================================================

def test_regenerate_thumbnail_replaces_file_on_record(orchestrator, store, library_paths):
    media = library_paths.video_file("v_1")
    media.write_bytes(b"webm")
    old_thumb = library_paths.preview_file("v_1")
    old_thumb.write_bytes(b"old")
    video = store.insert_video(
        title="Clip", file_path=media, thumbnail_path=old_thumb, duration=8.0, source_kind=SourceKind.LOCAL
    )

    new_thumb = asyncio.run(orchestrator.regenerate_thumbnail(video.id))

    assert new_thumb.exists()
    assert new_thumb.name.startswith("t_")
    assert not old_thumb.exists()
    assert media.exists()
    assert store.get_video(video.id).thumbnail_path == new_thumb


def test_regenerate_thumbnail_failure_keeps_old_thumbnail(orchestrator, adapters, store, library_paths):
    old_thumb = library_paths.preview_file("v_2")
    old_thumb.write_bytes(b"old")
    video = store.insert_video(
        title="Clip", file_path=library_paths.video_file("v_2"), thumbnail_path=old_thumb,
        source_kind=SourceKind.LOCAL,
    )
    adapters.thumbnails.generate_animated_preview.side_effect = ThumbnailFailure(1, "x")
    adapters.thumbnails.generate_static_frame.side_effect = ThumbnailFailure(1, "y")

    with pytest.raises(ThumbnailFailure):
        asyncio.run(orchestrator.regenerate_thumbnail(video.id))

    assert old_thumb.exists()
    assert store.get_video(video.id).thumbnail_path == old_thumb


def test_regenerate_thumbnail_missing_video(orchestrator):
    with pytest.raises(VideoNotFoundError):
        asyncio.run(orchestrator.regenerate_thumbnail(404))


def test_delete_video_reclaims_files(orchestrator, store, source_file):
    video = asyncio.run(orchestrator.import_local(source_file))
    assert video.file_path.exists()

    deleted = orchestrator.delete_video(video.id)

    assert deleted.id == video.id
    assert not video.file_path.exists()
    assert not video.thumbnail_path.exists()
    assert store.get_video(video.id) is None
    with pytest.raises(VideoNotFoundError):
        orchestrator.delete_video(video.id)
