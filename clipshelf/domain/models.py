from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from .errors import ValidationError

ROOT_FOLDER_ID = 1
DEFAULT_TAG_COLOR = "#6366f1"


class SourceKind(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class SortKey(str, Enum):
    CREATED_AT = "created_at"
    TITLE = "title"
    DURATION = "duration"
    PLAY_COUNT = "play_count"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class ImportStage(str, Enum):
    PENDING = "PENDING"
    PROBING = "PROBING"
    FETCHING_INFO = "FETCHING_INFO"
    TRANSCODING = "TRANSCODING"
    DOWNLOADING = "DOWNLOADING"
    THUMBNAIL_GEN = "THUMBNAIL_GEN"
    PERSISTING = "PERSISTING"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in (ImportStage.COMPLETE, ImportStage.ERROR)


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


class MediaInfo(BaseModel):
    duration: float = 0.0
    width: int = 0
    height: int = 0
    codec: str = "unknown"
    file_size: int = 0


class RemoteVideoInfo(BaseModel):
    id: str
    title: str
    duration: float = 0.0
    thumbnail_url: str = ""


class ClipRange(BaseModel):
    """Optional start/end window (seconds) of a source video."""

    start: Optional[float] = None
    end: Optional[float] = None

    @model_validator(mode="after")
    def validate_bounds(self):
        if self.start is not None and self.start < 0:
            raise ValueError(f"Clip start cannot be negative: {self.start}")
        if self.end is not None and self.end <= (self.start or 0.0):
            raise ValueError(f"Clip end ({self.end}) must be greater than clip start ({self.start or 0.0})")
        return self

    @property
    def is_set(self) -> bool:
        return self.start is not None or self.end is not None

    @property
    def duration(self) -> Optional[float]:
        if self.end is None:
            return None
        return self.end - (self.start or 0.0)


def build_clip_range(start: Optional[float] = None, end: Optional[float] = None) -> ClipRange:
    """ClipRange from loose arguments; inverted or negative ranges raise ValidationError."""
    try:
        return ClipRange(start=start, end=end)
    except PydanticValidationError as e:
        messages = "; ".join(err["msg"].removeprefix("Value error, ") for err in e.errors())
        raise ValidationError(f"Invalid clip range: {messages}") from None


class Tag(BaseModel):
    id: int
    name: str
    color: str = DEFAULT_TAG_COLOR
    created_at: datetime
    video_count: Optional[int] = None


class Video(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    file_path: Path
    thumbnail_path: Optional[Path] = None
    duration: float = 0.0
    width: Optional[int] = None
    height: Optional[int] = None
    file_size: Optional[int] = None
    codec: Optional[str] = None
    source_kind: SourceKind
    source_url: Optional[str] = None
    source_path: Optional[Path] = None
    clip_start: Optional[float] = None
    clip_end: Optional[float] = None
    folder_id: int = ROOT_FOLDER_ID
    is_favorite: bool = False
    play_count: int = 0
    last_played_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    tags: Optional[List[Tag]] = None


class Folder(BaseModel):
    id: int
    name: str
    parent_id: Optional[int] = None
    sort_order: int = 0
    created_at: datetime


class FolderNode(Folder):
    video_count: int = 0
    children: List["FolderNode"] = Field(default_factory=list)


class SearchQuery(BaseModel):
    """Composable catalog filter; every set field narrows the result (AND)."""

    text: Optional[str] = None
    tag_ids: List[int] = Field(default_factory=list)
    folder_id: Optional[int] = None
    source_kind: Optional[SourceKind] = None
    sort_by: SortKey = SortKey.CREATED_AT
    sort_order: SortOrder = SortOrder.DESC
    limit: Optional[int] = Field(default=None, gt=0)
    offset: int = Field(default=0, ge=0)
