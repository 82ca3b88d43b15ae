import pytest
from pathlib import Path
from pydantic import ValidationError
from clipshelf.config.loader import load_config
from clipshelf.config.models import AppConfig, GeneralConfig, ThumbnailConfig, TranscodeConfig


def test_defaults_match_playback_profile():
    config = AppConfig()
    assert config.transcode.video_codec == "libvpx-vp9"
    assert config.transcode.crf == 32
    assert config.transcode.height == 720
    assert config.transcode.audio_codec == "libopus"
    assert config.transcode.audio_bitrate == "128k"
    assert config.transcode.container == "webm"
    assert config.thumbnail.preview_seconds == 5
    assert config.thumbnail.max_colors == 128
    assert config.download.max_height == 720
    assert config.catalog.database_name == "catalog.db"
    assert config.process.terminate_timeout == 3.0
    assert config.import_.cleanup_on_failure is True


def test_data_dir_expands_user():
    config = GeneralConfig(data_dir="~/media-lib")
    assert config.data_dir == Path("~/media-lib").expanduser()
    assert "~" not in str(config.data_dir)


def test_crf_range_validation():
    with pytest.raises(ValidationError):
        TranscodeConfig(crf=64)
    with pytest.raises(ValidationError):
        TranscodeConfig(crf=-1)


def test_dither_validation():
    assert ThumbnailConfig(dither="sierra2_4a").dither == "sierra2_4a"
    with pytest.raises(ValidationError):
        ThumbnailConfig(dither="halftone")


def test_import_section_alias():
    config = AppConfig(**{"import": {"cleanup_on_failure": False}})
    assert config.import_.cleanup_on_failure is False


def test_load_config_from_yaml(config_yaml_path, tmp_path):
    config = load_config(config_yaml_path)

    assert config.general.data_dir == tmp_path / "library"
    assert config.general.debug is True
    assert config.transcode.crf == 28
    assert config.transcode.height == 480
    assert config.thumbnail.dither == "floyd_steinberg"
    assert config.download.max_height == 480
    assert config.import_.cleanup_on_failure is False
    # untouched sections keep defaults
    assert config.catalog.enable_wal is True


def test_load_config_without_path_returns_defaults():
    assert load_config(None) == AppConfig()


def test_load_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_load_config_empty_file(tmp_path):
    conf = tmp_path / "empty.yaml"
    conf.write_text("")
    assert load_config(conf).transcode.crf == 32


def test_shipped_example_config_loads():
    repo_root = Path(__file__).resolve().parents[2]
    config = load_config(repo_root / "conf" / "clipshelf.yaml")
    assert config.transcode.container == "webm"
    assert config.binaries.ffmpeg is None
