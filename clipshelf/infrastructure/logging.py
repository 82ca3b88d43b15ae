import logging
from pathlib import Path
from typing import Optional

def setup_logging(data_dir: Path, debug: bool = False, log_path: Optional[Path] = None) -> logging.Logger:
    """
    Setup logging configuration for clipshelf.

    Creates the data directory and its clipshelf.log file.
    Returns configured logger instance.

    Args:
        data_dir: Library data directory (database, videos, thumbnails)
        debug: If True, enable DEBUG level logging including tool command lines
        log_path: Optional path to log file (overrides data_dir)
    """
    data_dir.mkdir(parents=True, exist_ok=True)

    log_file = Path(log_path) if log_path else (data_dir / "clipshelf.log")
    log_file.parent.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if debug else logging.INFO

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[logging.FileHandler(log_file)],
        force=True  # Override any existing configuration
    )

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized: {log_file} (debug={'ON' if debug else 'OFF'})")

    return logger
