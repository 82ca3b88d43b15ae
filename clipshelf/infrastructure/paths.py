import secrets
import time
from pathlib import Path


def generate_id(prefix: str) -> str:
    """Timestamp plus random suffix, e.g. v_1718000000000_3f9a1c2b."""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class LibraryPaths:
    """On-disk layout of the library; directories are created on first access."""

    def __init__(self, data_dir: Path, database_name: str = "catalog.db"):
        self.data_dir = Path(data_dir)
        self.database_name = database_name

    def _ensure(self, path: Path) -> Path:
        path.mkdir(parents=True, exist_ok=True)
        return path

    @property
    def videos_dir(self) -> Path:
        return self._ensure(self.data_dir / "videos")

    @property
    def thumbnails_dir(self) -> Path:
        return self._ensure(self.data_dir / "thumbnails")

    @property
    def temp_dir(self) -> Path:
        return self._ensure(self.data_dir / "temp")

    @property
    def database_path(self) -> Path:
        return self._ensure(self.data_dir) / self.database_name

    def video_file(self, media_id: str, container: str = "webm") -> Path:
        return self.videos_dir / f"{media_id}.{container}"

    def preview_file(self, media_id: str) -> Path:
        return self.thumbnails_dir / f"{media_id}.gif"

    def frame_file(self, media_id: str) -> Path:
        return self.thumbnails_dir / f"{media_id}.jpg"
