import shutil
import sys
from pathlib import Path
from typing import Dict, List, Optional
from clipshelf.config.models import BinariesConfig
from clipshelf.domain.errors import BinaryNotFoundError

# tool -> (bundle sub-directory, executable base name)
TOOLS: Dict[str, tuple] = {
    "ffmpeg": ("ffmpeg", "ffmpeg"),
    "ffprobe": ("ffmpeg", "ffprobe"),
    "yt_dlp": ("yt-dlp", "yt-dlp"),
}


class BinaryLocator:
    """Resolves external tool paths per platform.

    Lookup order: explicit path from config, bundled layout
    `<bin_dir>/<bundle>/<platform>/<name>`, flat `<bin_dir>/<name>`, then PATH.
    """

    def __init__(self, config: Optional[BinariesConfig] = None, platform: Optional[str] = None):
        self.config = config or BinariesConfig()
        self.platform = platform or sys.platform
        self._cache: Dict[str, Path] = {}

    def executable_name(self, tool: str) -> str:
        _, base = TOOLS[tool]
        return f"{base}.exe" if self.platform == "win32" else base

    def candidates(self, tool: str) -> List[Path]:
        if tool not in TOOLS:
            raise KeyError(f"Unknown tool: {tool}")
        bundle, _ = TOOLS[tool]
        name = self.executable_name(tool)
        paths: List[Path] = []
        explicit = getattr(self.config, tool)
        if explicit:
            paths.append(Path(explicit).expanduser())
        if self.config.bin_dir:
            bin_dir = Path(self.config.bin_dir).expanduser()
            paths.append(bin_dir / bundle / self.platform / name)
            paths.append(bin_dir / name)
        return paths

    def locate(self, tool: str) -> Path:
        if tool in self._cache:
            return self._cache[tool]

        searched = self.candidates(tool)
        for candidate in searched:
            if candidate.is_file():
                self._cache[tool] = candidate
                return candidate

        found = shutil.which(self.executable_name(tool))
        if found:
            self._cache[tool] = Path(found)
            return self._cache[tool]

        raise BinaryNotFoundError(tool, searched)

    @property
    def ffmpeg(self) -> Path:
        return self.locate("ffmpeg")

    @property
    def ffprobe(self) -> Path:
        return self.locate("ffprobe")

    @property
    def yt_dlp(self) -> Path:
        return self.locate("yt_dlp")
