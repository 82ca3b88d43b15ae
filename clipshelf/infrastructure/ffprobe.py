import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from clipshelf.domain.errors import ProbeError, ProbeOutputError, ProcessFailure
from clipshelf.domain.models import MediaInfo
from clipshelf.infrastructure.binaries import BinaryLocator
from clipshelf.infrastructure.process_runner import ProcessRunner

class FFprobeAdapter:
    """Wrapper around ffprobe to extract stream information."""

    def __init__(self, runner: ProcessRunner, locator: BinaryLocator):
        self.runner = runner
        self.locator = locator
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _to_float(value: Any) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0

    @staticmethod
    def _to_int(value: Any) -> int:
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return 0

    @classmethod
    def _parse_duration_tag(cls, value: Any) -> float:
        if value is None:
            return 0.0
        text = str(value).strip()
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            pass
        if ":" in text:
            parts = text.split(":")
            if len(parts) in (2, 3):
                try:
                    parts_f = [float(p) for p in parts]
                except ValueError:
                    return 0.0
                if len(parts_f) == 2:
                    minutes, seconds = parts_f
                    return minutes * 60 + seconds
                hours, minutes, seconds = parts_f
                return hours * 3600 + minutes * 60 + seconds
        return 0.0

    def parse(self, data: Dict[str, Any], file_path: Optional[Path] = None) -> MediaInfo:
        """Maps ffprobe's JSON document to MediaInfo, defaulting what is missing."""
        streams = data.get("streams") or []
        video_stream = next((s for s in streams if s.get("codec_type") == "video"), None) or {}
        fmt = data.get("format") or {}

        # Duration fallback order: format.duration, format tags, stream.duration, stream tags
        duration = self._to_float(fmt.get("duration"))
        if duration <= 0:
            tags = fmt.get("tags") or {}
            duration = self._parse_duration_tag(tags.get("DURATION") or tags.get("duration"))
        if duration <= 0:
            duration = self._to_float(video_stream.get("duration"))
        if duration <= 0:
            tags = video_stream.get("tags") or {}
            duration = self._parse_duration_tag(tags.get("DURATION") or tags.get("duration"))

        file_size = self._to_int(fmt.get("size"))
        if file_size <= 0 and file_path is not None:
            try:
                file_size = file_path.stat().st_size
            except OSError:
                file_size = 0

        return MediaInfo(
            duration=max(0.0, duration),
            width=self._to_int(video_stream.get("width")),
            height=self._to_int(video_stream.get("height")),
            codec=video_stream.get("codec_name") or "unknown",
            file_size=file_size,
        )

    async def probe(self, file_path: Path) -> MediaInfo:
        """Executes ffprobe and parses JSON output."""
        args = [
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(file_path),
        ]
        lines: List[str] = []

        try:
            await self.runner.run(self.locator.ffprobe, args, on_stdout=lines.append)
        except ProcessFailure as e:
            raise ProbeError(f"ffprobe failed for {file_path} (exit {e.exit_code}): {e.stderr.strip()}") from e

        try:
            data = json.loads("\n".join(lines))
        except json.JSONDecodeError as e:
            raise ProbeOutputError(f"Failed to parse ffprobe output for {file_path}: {e}") from e
        if not isinstance(data, dict):
            raise ProbeOutputError(f"Unexpected ffprobe output for {file_path}")

        info = self.parse(data, Path(file_path))
        self.logger.debug(
            f"PROBE: {Path(file_path).name} duration={info.duration:.2f}s "
            f"{info.width}x{info.height} codec={info.codec} size={info.file_size}"
        )
        return info
