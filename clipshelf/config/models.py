from pathlib import Path
from typing import Optional
from pydantic import BaseModel, Field, field_validator

DEFAULT_DATA_DIR = Path.home() / ".clipshelf"
PALETTE_DITHER_MODES = {"bayer", "heckbert", "floyd_steinberg", "sierra2", "sierra2_4a", "sierra3", "burkes", "atkinson", "none"}


class GeneralConfig(BaseModel):
    data_dir: Path = Field(default=DEFAULT_DATA_DIR)
    debug: bool = False
    log_path: Optional[str] = None

    @field_validator("data_dir", mode="before")
    @classmethod
    def expand_user(cls, v):
        return Path(v).expanduser() if v is not None else DEFAULT_DATA_DIR


class BinariesConfig(BaseModel):
    """Where the external tools live. Explicit paths win over bin_dir, bin_dir over PATH."""
    bin_dir: Optional[Path] = None
    ffmpeg: Optional[Path] = None
    ffprobe: Optional[Path] = None
    yt_dlp: Optional[Path] = None


class TranscodeConfig(BaseModel):
    """Canonical playback profile every imported video is normalized to."""
    video_codec: str = "libvpx-vp9"
    crf: int = Field(default=32, ge=0, le=63)
    height: int = Field(default=720, gt=0)
    row_mt: bool = True
    audio_codec: str = "libopus"
    audio_bitrate: str = "128k"
    container: str = "webm"


class ThumbnailConfig(BaseModel):
    preview_seconds: float = Field(default=5.0, gt=0)
    fps: int = Field(default=10, gt=0, le=60)
    width: int = Field(default=320, gt=0)
    max_colors: int = Field(default=128, ge=2, le=256)
    dither: str = "bayer"
    static_width: int = Field(default=320, gt=0)

    @field_validator("dither")
    @classmethod
    def validate_dither(cls, v: str) -> str:
        if v not in PALETTE_DITHER_MODES:
            raise ValueError(f"Unsupported dither mode: {v}. Use one of {sorted(PALETTE_DITHER_MODES)}")
        return v


class DownloadConfig(BaseModel):
    max_height: int = Field(default=720, gt=0)
    merge_format: str = "webm"


class CatalogConfig(BaseModel):
    database_name: str = "catalog.db"
    enable_wal: bool = True


class ProcessConfig(BaseModel):
    terminate_timeout: float = Field(default=3.0, gt=0)


class ImportConfig(BaseModel):
    cleanup_on_failure: bool = True


class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    binaries: BinariesConfig = Field(default_factory=BinariesConfig)
    transcode: TranscodeConfig = Field(default_factory=TranscodeConfig)
    thumbnail: ThumbnailConfig = Field(default_factory=ThumbnailConfig)
    download: DownloadConfig = Field(default_factory=DownloadConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    process: ProcessConfig = Field(default_factory=ProcessConfig)
    import_: ImportConfig = Field(default_factory=ImportConfig, alias="import")

    model_config = {"populate_by_name": True}
