import json
import logging
import re
import time
from pathlib import Path
from typing import Callable, List, Optional
from clipshelf.config.models import DownloadConfig
from clipshelf.domain.errors import DownloadFailure, MetadataFetchError, MetadataOutputError, ProcessFailure, ValidationError
from clipshelf.domain.models import ClipRange, RemoteVideoInfo, build_clip_range
from clipshelf.infrastructure.binaries import BinaryLocator
from clipshelf.infrastructure.process_runner import ProcessRunner
from clipshelf.infrastructure.progress_parsers import YtDlpOutputParser, format_seconds

ProgressCallback = Callable[[float], None]

# Only these URL shapes are accepted, even if yt-dlp could resolve others
URL_PATTERNS = [
    re.compile(r"^https?://(www\.)?youtube\.com/watch\?v=[\w-]+"),
    re.compile(r"^https?://youtu\.be/[\w-]+"),
    re.compile(r"^https?://(www\.)?youtube\.com/shorts/[\w-]+"),
    re.compile(r"^https?://(www\.)?youtube\.com/embed/[\w-]+"),
]
VIDEO_ID_RE = re.compile(r"(?:youtube\.com/watch\?v=|youtu\.be/|youtube\.com/shorts/|youtube\.com/embed/)([\w-]+)")


def is_valid_url(url: str) -> bool:
    return any(p.match(url or "") for p in URL_PATTERNS)


def extract_video_id(url: str) -> Optional[str]:
    match = VIDEO_ID_RE.search(url or "")
    return match.group(1) if match else None


class YtDlpAdapter:
    """Wrapper around yt-dlp for metadata lookups and (optionally clipped) downloads."""

    def __init__(self, runner: ProcessRunner, locator: BinaryLocator, config: Optional[DownloadConfig] = None):
        self.runner = runner
        self.locator = locator
        self.config = config or DownloadConfig()
        self.logger = logging.getLogger(__name__)

    def validate(self, url: str) -> bool:
        return is_valid_url(url)

    def _require_valid(self, url: str):
        if not self.validate(url):
            raise ValidationError(f"Invalid YouTube URL: {url}")

    def format_selector(self) -> str:
        h = self.config.max_height
        return f"bestvideo[height<={h}]+bestaudio/best[height<={h}]/bestvideo+bestaudio/best"

    def _build_download_command(self, url: str, output_path: Path, clip: Optional[ClipRange] = None) -> List[str]:
        cmd = [
            "--ffmpeg-location", str(self.locator.ffmpeg.parent),
            "-f", self.format_selector(),
            "--merge-output-format", self.config.merge_format,
            "-o", str(output_path),
            "--progress",
            "--newline",
            "--no-warnings",
        ]
        if clip is not None and clip.is_set:
            start = format_seconds(clip.start) if clip.start is not None else "0"
            end = format_seconds(clip.end) if clip.end is not None else "inf"
            cmd.extend(["--download-sections", f"*{start}-{end}"])
            # Keyframes at the cut points so the section starts on a clean frame
            cmd.append("--force-keyframes-at-cuts")
        cmd.append(url)
        return cmd

    def parse_metadata(self, payload: str) -> RemoteVideoInfo:
        try:
            info = json.loads(payload)
        except json.JSONDecodeError as e:
            raise MetadataOutputError(f"Failed to parse yt-dlp output: {e}") from e
        if not isinstance(info, dict) or not info.get("id"):
            raise MetadataOutputError("yt-dlp output has no video id")
        return RemoteVideoInfo(
            id=str(info["id"]),
            title=info.get("title") or str(info["id"]),
            duration=float(info.get("duration") or 0),
            thumbnail_url=info.get("thumbnail") or "",
        )

    async def fetch_metadata(self, url: str) -> RemoteVideoInfo:
        self._require_valid(url)
        args = ["--dump-json", "--no-download", "--no-warnings", url]
        lines: List[str] = []
        try:
            await self.runner.run(self.locator.yt_dlp, args, on_stdout=lines.append)
        except ProcessFailure as e:
            raise MetadataFetchError(f"yt-dlp info failed (exit {e.exit_code}): {e.stderr.strip()}") from e

        info = self.parse_metadata("\n".join(lines))
        self.logger.info(f"YTDLP_INFO: {info.id} title={info.title!r} duration={info.duration:.0f}s")
        return info

    async def download(
        self,
        url: str,
        output_path: Path,
        clip_start: Optional[float] = None,
        clip_end: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        """Downloads url to output_path and returns the path yt-dlp actually wrote."""
        self._require_valid(url)
        clip = build_clip_range(clip_start, clip_end)
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        cmd = self._build_download_command(url, output_path, clip)
        parser = YtDlpOutputParser(default_output=output_path)

        def on_stdout(line: str):
            percent = parser.feed(line)
            if percent is not None and on_progress is not None:
                on_progress(percent)

        start_time = time.monotonic()
        self.logger.info(f"YTDLP_START: {url} -> {output_path.name} (clip={clip.start}-{clip.end})")
        self.logger.debug(f"YTDLP_CMD: {' '.join(cmd)}")
        try:
            await self.runner.run(self.locator.yt_dlp, cmd, on_stdout=on_stdout)
        except ProcessFailure as e:
            elapsed = time.monotonic() - start_time
            self.logger.error(f"YTDLP_END: {url} status=failed code={e.exit_code} elapsed={elapsed:.2f}s")
            raise DownloadFailure.from_failure(e) from e

        elapsed = time.monotonic() - start_time
        self.logger.info(f"YTDLP_END: {url} status=completed file={parser.output_path} elapsed={elapsed:.2f}s")
        return parser.output_path
