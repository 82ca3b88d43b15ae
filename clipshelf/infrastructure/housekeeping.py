import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional
from clipshelf.domain.models import Video

# Leftovers of interrupted ffmpeg (.tmp) and yt-dlp (.part, .ytdl) runs
TEMP_SUFFIXES = (".tmp", ".part", ".ytdl")


class HousekeepingService:
    """Service for reclaiming library files and cleaning up temporary files.

    Removal is best effort: a file that cannot be deleted is logged and left
    in place, it never aborts the caller.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def _remove(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            self.logger.warning(f"CLEANUP_FAILED: {path} ({e})")
            return False

    def reclaim_video(self, video: Video) -> List[Path]:
        """Deletes the media file and thumbnail of a video removed from the catalog."""
        removed = self.remove_files([video.file_path, video.thumbnail_path])
        self.logger.info(f"RECLAIM: video={video.id} removed={len(removed)}")
        return removed

    def remove_files(self, paths: Iterable[Optional[Path]]) -> List[Path]:
        """Deletes exactly the given files; missing ones are skipped."""
        return [Path(p) for p in paths if p is not None and self._remove(Path(p))]

    def remove_artifacts(self, paths: Iterable[Optional[Path]]) -> List[Path]:
        """Removes partial outputs of a failed import.

        Besides each path itself, siblings sharing its stem (`<stem>.*`) are
        removed too: ffmpeg writes `<stem>.tmp`, yt-dlp writes `<stem>.webm.part`
        and per-format intermediates. Stems are generated ids, unique per import.
        """
        removed: List[Path] = []
        for path in paths:
            if path is None:
                continue
            path = Path(path)
            if not path.parent.is_dir():
                continue
            for candidate in [path, *sorted(path.parent.glob(f"{path.stem}.*"))]:
                if candidate not in removed and self._remove(candidate):
                    removed.append(candidate)
        if removed:
            self.logger.info(f"CLEANUP: removed {len(removed)} partial file(s): {', '.join(p.name for p in removed)}")
        return removed

    def cleanup_temp_files(self, directory: Path) -> int:
        """Recursively removes temporary download/encode files in the directory."""
        count = 0
        for root, dirs, files in os.walk(directory):
            for file in files:
                if file.endswith(TEMP_SUFFIXES):
                    if self._remove(Path(root) / file):
                        count += 1
        if count:
            self.logger.info(f"CLEANUP: removed {count} temporary file(s) under {directory}")
        return count
