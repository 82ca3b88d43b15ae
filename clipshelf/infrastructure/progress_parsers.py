"""Line parsers for tool output.

Scraping tool output is the only integration point ffmpeg and yt-dlp offer, so
each output format lives in one small class here. When a tool changes its
output, only the matching parser (and its tests) should need to change.
"""

import re
from pathlib import Path
from typing import Optional


def parse_clock(text: str) -> Optional[float]:
    """Parses HH:MM:SS(.frac) into seconds; None for N/A or garbage."""
    match = re.fullmatch(r"\s*(-?\d+):(\d{1,2}):(\d{1,2}(?:\.\d+)?)\s*", text)
    if not match:
        return None
    h, m, s = match.groups()
    return int(h) * 3600 + int(m) * 60 + float(s)


def format_seconds(value: float) -> str:
    """Seconds as a tool argument: millisecond precision, no trailing zeros (5.0 -> "5")."""
    return f"{value:.3f}".rstrip("0").rstrip(".") or "0"


class FFmpegProgressParser:
    """Derives percent complete from an ffmpeg run started with `-progress pipe:1`.

    The total comes from the `Duration:` banner on stderr (or from an explicit
    clip length); elapsed time comes from the key=value progress stream on
    stdout. Nothing is reported until a total is known.
    """

    DURATION_RE = re.compile(r"Duration:\s*(\d+:\d{1,2}:\d{1,2}(?:\.\d+)?)")

    def __init__(self, expected_duration: Optional[float] = None, start_offset: float = 0.0):
        self.expected_duration = expected_duration
        self.start_offset = start_offset
        self.input_duration: Optional[float] = None
        self.elapsed: float = 0.0
        self.finished = False

    @property
    def total_duration(self) -> Optional[float]:
        remaining = None
        if self.input_duration is not None:
            remaining = self.input_duration - self.start_offset
        candidates = [d for d in (remaining, self.expected_duration) if d and d > 0]
        return min(candidates) if candidates else None

    def feed_stderr(self, line: str) -> Optional[float]:
        if self.input_duration is None:
            match = self.DURATION_RE.search(line)
            if match:
                self.input_duration = parse_clock(match.group(1))
        return None

    def feed_stdout(self, line: str) -> Optional[float]:
        key, sep, value = line.strip().partition("=")
        if not sep:
            return None
        value = value.strip()

        if key in ("out_time_us", "out_time_ms"):
            # out_time_ms is in microseconds as well (long-standing ffmpeg quirk)
            if not value.lstrip("-").isdigit():
                return None
            self.elapsed = max(0, int(value)) / 1_000_000
        elif key == "out_time":
            seconds = parse_clock(value)
            if seconds is None:
                return None
            self.elapsed = max(0.0, seconds)
        elif key == "progress" and value == "end":
            self.finished = True
            return 100.0
        else:
            return None

        return self.percent

    @property
    def percent(self) -> Optional[float]:
        if self.finished:
            return 100.0
        total = self.total_duration
        if not total:
            return None
        return min(100.0, self.elapsed / total * 100.0)


class YtDlpOutputParser:
    """Reads yt-dlp `--newline` status lines: progress and the final file name.

    yt-dlp may change the requested name during container negotiation, so the
    resolved path is whatever the last Destination/Merger line reported.
    """

    PROGRESS_RE = re.compile(r"^\[download\]\s+(\d+(?:\.\d+)?)%")
    DESTINATION_RE = re.compile(r"Destination:\s*(.+)$")
    MERGER_RE = re.compile(r'^\[Merger\] Merging formats into "(.+)"$')
    ALREADY_RE = re.compile(r"^\[download\] (.+) has already been downloaded")

    def __init__(self, default_output: Optional[Path] = None):
        self.output_path: Optional[Path] = default_output
        self.last_percent: Optional[float] = None

    def feed(self, line: str) -> Optional[float]:
        line = line.strip()

        merge = self.MERGER_RE.match(line)
        if merge:
            self.output_path = Path(merge.group(1).strip())
            return None

        dest = self.DESTINATION_RE.search(line)
        if dest:
            self.output_path = Path(dest.group(1).strip())
            return None

        already = self.ALREADY_RE.match(line)
        if already:
            self.output_path = Path(already.group(1).strip())
            return None

        progress = self.PROGRESS_RE.match(line)
        if progress:
            self.last_percent = min(100.0, float(progress.group(1)))
            return self.last_percent
        return None
