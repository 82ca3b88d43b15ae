import pytest
import yaml
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock
from clipshelf.config.models import AppConfig
from clipshelf.domain.events import ImportCompleted, ImportFailed, ImportProgress
from clipshelf.domain.models import SourceKind
from clipshelf.infrastructure.catalog_store import CatalogStore
from clipshelf.infrastructure.event_bus import EventBus
from clipshelf.infrastructure.paths import LibraryPaths
from clipshelf.infrastructure.process_runner import ProcessResult

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def sample_config(tmp_path):
    """Returns an AppConfig pointing at a library under tmp_path."""
    return AppConfig(
        general={
            "data_dir": str(tmp_path / "library"),
            "debug": False,
        },
        transcode={
            "crf": 32,
            "height": 720,
        },
        thumbnail={
            "preview_seconds": 5,
            "fps": 10,
            "width": 320,
        },
    )

@pytest.fixture
def config_yaml_path(tmp_path):
    """Creates a temporary YAML config file."""
    conf_dir = tmp_path / "conf"
    conf_dir.mkdir()
    conf_file = conf_dir / "clipshelf.yaml"

    content = {
        'general': {
            'data_dir': str(tmp_path / "library"),
            'debug': True,
        },
        'transcode': {
            'crf': 28,
            'height': 480,
        },
        'thumbnail': {
            'dither': 'floyd_steinberg',
        },
        'download': {
            'max_height': 480,
        },
        'import': {
            'cleanup_on_failure': False,
        },
    }

    with open(conf_file, 'w') as f:
        yaml.dump(content, f)

    return conf_file

# ============================================================================
# EventBus Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    """Returns a fresh EventBus instance."""
    return EventBus()

@pytest.fixture
def recorded_events(event_bus):
    """Collects every import event published on event_bus, in order."""
    events = []
    for event_type in (ImportProgress, ImportCompleted, ImportFailed):
        event_bus.subscribe(event_type, events.append)
    return events

# ============================================================================
# Process Fixtures
# ============================================================================

@pytest.fixture
def locator():
    """BinaryLocator stand-in resolving every tool under /opt/tools."""
    mock = MagicMock()
    mock.ffmpeg = Path("/opt/tools/ffmpeg")
    mock.ffprobe = Path("/opt/tools/ffprobe")
    mock.yt_dlp = Path("/opt/tools/yt-dlp")
    return mock

@pytest.fixture
def fake_runner():
    """Factory for a ProcessRunner stand-in.

    The returned runner replays stderr/stdout lines into the callbacks, then
    calls `effect(args)` (e.g. to create the output file) and finally raises
    `error` if given.
    """
    def _make(stdout_lines=(), stderr_lines=(), error=None, effect=None):
        async def run(executable, args, on_stdout=None, on_stderr=None):
            for line in stderr_lines:
                if on_stderr is not None:
                    on_stderr(line)
            for line in stdout_lines:
                if on_stdout is not None:
                    on_stdout(line)
            if effect is not None:
                effect(list(args))
            if error is not None:
                raise error
            return ProcessResult(exit_code=0, stderr="\n".join(stderr_lines))

        runner = MagicMock()
        runner.run = AsyncMock(side_effect=run)
        return runner

    return _make

# ============================================================================
# Library / Catalog Fixtures
# ============================================================================

@pytest.fixture
def library_paths(tmp_path):
    return LibraryPaths(tmp_path / "library")

@pytest.fixture
def store(library_paths):
    """An open CatalogStore on a fresh SQLite file."""
    catalog = CatalogStore(library_paths.database_path)
    catalog.open()
    yield catalog
    catalog.close()

@pytest.fixture
def make_video(store, tmp_path):
    """Inserts a video row with sensible defaults; keyword arguments override them."""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        attrs = {
            "title": f"Video {counter['n']}",
            "file_path": tmp_path / "library" / "videos" / f"v_{counter['n']}.webm",
            "source_kind": SourceKind.LOCAL,
            "duration": 10.0 * counter["n"],
        }
        attrs.update(overrides)
        return store.insert_video(**attrs)

    return _make

# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (spawn real child processes)"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
