import logging
import time
from pathlib import Path
from typing import Callable, List, Optional
from clipshelf.config.models import TranscodeConfig
from clipshelf.domain.errors import ProcessFailure, TranscodeFailure
from clipshelf.domain.models import ClipRange, build_clip_range
from clipshelf.infrastructure.binaries import BinaryLocator
from clipshelf.infrastructure.process_runner import ProcessRunner
from clipshelf.infrastructure.progress_parsers import FFmpegProgressParser, format_seconds

ProgressCallback = Callable[[float], None]


class FFmpegAdapter:
    """Wrapper around ffmpeg that normalizes videos to the canonical playback profile."""

    def __init__(
        self,
        runner: ProcessRunner,
        locator: BinaryLocator,
        config: Optional[TranscodeConfig] = None,
        temp_dir: Optional[Path] = None,
    ):
        self.runner = runner
        self.locator = locator
        self.config = config or TranscodeConfig()
        # In-progress encodes go here when set, otherwise next to the output
        self.temp_dir = Path(temp_dir) if temp_dir is not None else None
        self.logger = logging.getLogger(__name__)

    def _tmp_path(self, output_path: Path) -> Path:
        if self.temp_dir is None:
            return output_path.with_suffix(".tmp")
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        return self.temp_dir / f"{output_path.stem}.tmp"

    def _build_command(self, input_path: Path, tmp_path: Path, clip: Optional[ClipRange] = None) -> List[str]:
        """Constructs the ffmpeg argument list (without the executable)."""
        cfg = self.config
        cmd = [
            "-y",  # Overwrite output files
            "-hide_banner",
            "-nostats",
        ]
        # Input seeking; -t below is relative to the seek point
        if clip is not None and clip.start is not None:
            cmd.extend(["-ss", format_seconds(clip.start)])
        cmd.extend(["-i", str(input_path)])
        if clip is not None and clip.duration is not None:
            cmd.extend(["-t", format_seconds(clip.duration)])

        cmd.extend([
            "-c:v", cfg.video_codec,
            "-crf", str(cfg.crf),
            "-b:v", "0",
            "-vf", f"scale=-2:{cfg.height}",
        ])
        if cfg.row_mt:
            cmd.extend(["-row-mt", "1"])
        cmd.extend([
            "-c:a", cfg.audio_codec,
            "-b:a", cfg.audio_bitrate,
            "-progress", "pipe:1",
        ])

        # Write to .tmp during encoding (renamed on success); the extension no longer names the format
        cmd.extend(["-f", cfg.container, str(tmp_path)])
        return cmd

    async def transcode(
        self,
        input_path: Path,
        output_path: Path,
        clip_start: Optional[float] = None,
        clip_end: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        """Re-encodes input_path into output_path, optionally clipped.

        Raises ValidationError for an inverted clip range (before spawning) and
        TranscodeFailure when ffmpeg exits non-zero.
        """
        clip = build_clip_range(clip_start, clip_end)
        input_path = Path(input_path)
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._tmp_path(output_path)

        cmd = self._build_command(input_path, tmp_path, clip if clip.is_set else None)
        parser = FFmpegProgressParser(expected_duration=clip.duration, start_offset=clip.start or 0.0)

        def on_stdout(line: str):
            percent = parser.feed_stdout(line)
            if percent is not None and on_progress is not None:
                on_progress(percent)

        filename = input_path.name
        start_time = time.monotonic()
        self.logger.info(f"FFMPEG_START: {filename} -> {output_path.name} (clip={clip.start}-{clip.end})")
        self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")

        succeeded = False
        try:
            await self.runner.run(self.locator.ffmpeg, cmd, on_stdout=on_stdout, on_stderr=parser.feed_stderr)
            tmp_path.replace(output_path)
            succeeded = True
        except ProcessFailure as e:
            elapsed = time.monotonic() - start_time
            self.logger.error(f"FFMPEG_END: {filename} status=failed code={e.exit_code} elapsed={elapsed:.2f}s")
            raise TranscodeFailure.from_failure(e) from e
        finally:
            # Cleanup tmp file on error or cancellation
            if not succeeded and tmp_path.exists():
                tmp_path.unlink()

        elapsed = time.monotonic() - start_time
        self.logger.info(f"FFMPEG_END: {filename} status=completed elapsed={elapsed:.2f}s")
        return output_path
