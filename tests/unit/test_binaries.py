import pytest
from pathlib import Path
from unittest.mock import patch
from clipshelf.config.models import BinariesConfig
from clipshelf.domain.errors import BinaryNotFoundError, ProcessSpawnError
from clipshelf.infrastructure.binaries import BinaryLocator


def _touch(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n")
    return path


def test_executable_name_per_platform():
    assert BinaryLocator(platform="linux").executable_name("yt_dlp") == "yt-dlp"
    assert BinaryLocator(platform="win32").executable_name("ffprobe") == "ffprobe.exe"


def test_explicit_path_wins(tmp_path):
    explicit = _touch(tmp_path / "custom" / "my-ffmpeg")
    _touch(tmp_path / "bin" / "ffmpeg")
    locator = BinaryLocator(BinariesConfig(ffmpeg=explicit, bin_dir=tmp_path / "bin"), platform="linux")
    assert locator.ffmpeg == explicit


def test_bundled_layout_before_flat_bin_dir(tmp_path):
    bundled = _touch(tmp_path / "bin" / "ffmpeg" / "darwin" / "ffprobe")
    _touch(tmp_path / "bin" / "ffprobe")
    locator = BinaryLocator(BinariesConfig(bin_dir=tmp_path / "bin"), platform="darwin")
    assert locator.ffprobe == bundled


def test_windows_bundle_uses_exe(tmp_path):
    bundled = _touch(tmp_path / "bin" / "yt-dlp" / "win32" / "yt-dlp.exe")
    locator = BinaryLocator(BinariesConfig(bin_dir=tmp_path / "bin"), platform="win32")
    assert locator.yt_dlp == bundled


def test_flat_bin_dir(tmp_path):
    flat = _touch(tmp_path / "bin" / "ffmpeg")
    locator = BinaryLocator(BinariesConfig(bin_dir=tmp_path / "bin"), platform="linux")
    assert locator.ffmpeg == flat


def test_falls_back_to_path_lookup(tmp_path):
    with patch("clipshelf.infrastructure.binaries.shutil.which", return_value="/usr/bin/ffmpeg") as mock_which:
        locator = BinaryLocator(BinariesConfig(bin_dir=tmp_path / "empty"), platform="linux")
        assert locator.ffmpeg == Path("/usr/bin/ffmpeg")
        mock_which.assert_called_once_with("ffmpeg")


def test_result_is_cached(tmp_path):
    with patch("clipshelf.infrastructure.binaries.shutil.which", return_value="/usr/bin/ffmpeg") as mock_which:
        locator = BinaryLocator(platform="linux")
        locator.ffmpeg
        locator.ffmpeg
        assert mock_which.call_count == 1


def test_not_found_raises_spawn_error(tmp_path):
    with patch("clipshelf.infrastructure.binaries.shutil.which", return_value=None):
        locator = BinaryLocator(BinariesConfig(bin_dir=tmp_path / "bin"), platform="linux")
        with pytest.raises(BinaryNotFoundError) as exc_info:
            locator.yt_dlp

    assert isinstance(exc_info.value, ProcessSpawnError)
    assert exc_info.value.tool == "yt_dlp"
    assert tmp_path / "bin" / "yt-dlp" in exc_info.value.searched


def test_unknown_tool():
    with pytest.raises(KeyError):
        BinaryLocator().candidates("handbrake")
