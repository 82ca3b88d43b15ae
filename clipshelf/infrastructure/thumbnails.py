import logging
from pathlib import Path
from typing import List, Optional
from clipshelf.config.models import ThumbnailConfig
from clipshelf.domain.errors import ProcessFailure, ThumbnailFailure
from clipshelf.infrastructure.binaries import BinaryLocator
from clipshelf.infrastructure.process_runner import ProcessRunner
from clipshelf.infrastructure.progress_parsers import format_seconds


class ThumbnailGenerator:
    """Renders catalog thumbnails from a transcoded video with ffmpeg.

    Both variants sample around the midpoint of the video, where the content
    is most likely to be representative. A missing or zero duration seeks to 0.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        locator: BinaryLocator,
        thumbnails_dir: Path,
        config: Optional[ThumbnailConfig] = None,
    ):
        self.runner = runner
        self.locator = locator
        self.thumbnails_dir = Path(thumbnails_dir)
        self.config = config or ThumbnailConfig()
        self.logger = logging.getLogger(__name__)

    def preview_window(self, duration: float) -> tuple:
        """(start, length) of the animated preview, centered on the midpoint."""
        window = self.config.preview_seconds
        if not duration or duration <= 0:
            return 0.0, window
        window = min(window, duration)
        return max(0.0, duration / 2 - window / 2), window

    @staticmethod
    def midpoint(duration: float) -> float:
        if not duration or duration <= 0:
            return 0.0
        return duration / 2

    def palette_filter(self) -> str:
        cfg = self.config
        return ";".join([
            f"fps={cfg.fps},scale={cfg.width}:-1:flags=lanczos,split[s0][s1]",
            f"[s0]palettegen=max_colors={cfg.max_colors}[p]",
            f"[s1][p]paletteuse=dither={cfg.dither}",
        ])

    def _build_preview_command(self, video_path: Path, duration: float, output_path: Path) -> List[str]:
        start, length = self.preview_window(duration)
        return [
            "-y",
            "-hide_banner",
            "-ss", format_seconds(start),
            "-i", str(video_path),
            "-t", format_seconds(length),
            "-filter_complex", self.palette_filter(),
            "-loop", "0",
            str(output_path),
        ]

    def _build_frame_command(self, video_path: Path, duration: float, output_path: Path) -> List[str]:
        return [
            "-y",
            "-hide_banner",
            "-ss", format_seconds(self.midpoint(duration)),
            "-i", str(video_path),
            "-frames:v", "1",
            "-vf", f"scale={self.config.static_width}:-1",
            str(output_path),
        ]

    async def _render(self, cmd: List[str], output_path: Path, kind: str) -> Path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        self.logger.debug(f"THUMBNAIL_CMD: {' '.join(cmd)}")
        succeeded = False
        try:
            await self.runner.run(self.locator.ffmpeg, cmd)
            succeeded = True
        except ProcessFailure as e:
            self.logger.error(f"THUMBNAIL_FAILED: {output_path.name} kind={kind} code={e.exit_code}")
            raise ThumbnailFailure.from_failure(e) from e
        finally:
            if not succeeded and output_path.exists():
                output_path.unlink()
        self.logger.info(f"THUMBNAIL_END: {output_path.name} kind={kind}")
        return output_path

    async def generate_animated_preview(self, video_path: Path, duration: float, output_path: Optional[Path] = None) -> Path:
        """Small looping GIF built with a two-pass palette (palettegen + paletteuse)."""
        video_path = Path(video_path)
        output_path = Path(output_path) if output_path else self.thumbnails_dir / f"{video_path.stem}.gif"
        cmd = self._build_preview_command(video_path, duration, output_path)
        return await self._render(cmd, output_path, "preview")

    async def generate_static_frame(self, video_path: Path, duration: float, output_path: Optional[Path] = None) -> Path:
        """Single JPEG frame at the midpoint, used when the preview cannot be rendered."""
        video_path = Path(video_path)
        output_path = Path(output_path) if output_path else self.thumbnails_dir / f"{video_path.stem}.jpg"
        cmd = self._build_frame_command(video_path, duration, output_path)
        return await self._render(cmd, output_path, "frame")
