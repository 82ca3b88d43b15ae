"""Exception hierarchy shared by the pipeline and the catalog.

Every error raised on purpose by clipshelf derives from `ClipshelfError`, so
callers can catch the whole family at the boundary (CLI, UI bridge) while the
pipeline reacts to the specific subclasses.
"""

from typing import Optional


class ClipshelfError(Exception):
    """Base class for all clipshelf errors."""


class ValidationError(ClipshelfError):
    """Input rejected before any external process is spawned."""


class RootFolderError(ValidationError):
    """Attempt to delete or reparent the root folder."""


class NotFoundError(ClipshelfError):
    """A catalog id does not exist."""

    entity = "Entity"

    def __init__(self, entity_id: int):
        self.entity_id = entity_id
        super().__init__(f"{self.entity} {entity_id} not found")


class VideoNotFoundError(NotFoundError):
    entity = "Video"


class FolderNotFoundError(NotFoundError):
    entity = "Folder"


class TagNotFoundError(NotFoundError):
    entity = "Tag"


class ParseError(ClipshelfError):
    """Tool output was not in the expected shape."""


class CatalogError(ClipshelfError):
    """Constraint violation or other failure reported by the database."""


class ProcessError(ClipshelfError):
    """Base class for external process lifecycle errors."""


class ProcessSpawnError(ProcessError):
    """The executable could not be started (missing binary, permissions)."""

    def __init__(self, executable: str, reason: str):
        self.executable = executable
        self.reason = reason
        super().__init__(f"Cannot start {executable}: {reason}")


class BinaryNotFoundError(ProcessSpawnError):
    """The binary locator could not resolve a tool."""

    def __init__(self, tool: str, searched: Optional[list] = None):
        self.tool = tool
        self.searched = searched or []
        locations = ", ".join(str(p) for p in self.searched) or "PATH"
        super().__init__(tool, f"not found (searched: {locations})")


class ProcessFailure(ProcessError):
    """The process exited with a non-zero status."""

    label = "process"

    def __init__(self, exit_code: int, stderr: str = "", executable: Optional[str] = None):
        self.exit_code = exit_code
        self.stderr = stderr
        self.executable = executable
        name = executable or self.label
        message = f"{name} exited with code {exit_code}"
        tail = stderr.strip().splitlines()[-1:] if stderr else []
        if tail:
            message = f"{message}: {tail[0]}"
        super().__init__(message)

    @classmethod
    def from_failure(cls, failure: "ProcessFailure") -> "ProcessFailure":
        return cls(failure.exit_code, failure.stderr, executable=cls.label)


class TranscodeFailure(ProcessFailure):
    label = "ffmpeg transcode"


class ThumbnailFailure(ProcessFailure):
    label = "ffmpeg thumbnail"


class DownloadFailure(ProcessFailure):
    label = "yt-dlp download"


class ProcessCancelled(ProcessError):
    """The process was terminated on request."""


class ProbeError(ClipshelfError):
    """ffprobe failed or returned something that is not a media description."""


class ProbeOutputError(ProbeError, ParseError):
    """ffprobe exited cleanly but its output is not the expected JSON document."""


class MetadataFetchError(ClipshelfError):
    """yt-dlp could not return metadata for a URL."""


class MetadataOutputError(MetadataFetchError, ParseError):
    """yt-dlp metadata output is not a JSON video description."""


class ImportCancelled(ClipshelfError):
    """An import task was cancelled before completion."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Import {task_id} cancelled")
