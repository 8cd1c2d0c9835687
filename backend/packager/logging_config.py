"""
Logging configuration for the packaging service.
"""
import logging
import sys
from pathlib import Path

FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(log_dir: Path | None = None, level: int = logging.INFO):
    """Configure logging to console and optionally to file."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    formatter = logging.Formatter(FORMAT)

    # Console handler, installed once even if setup runs again
    if not any(getattr(h, "_packager_console", False) for h in root_logger.handlers):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        console_handler._packager_console = True
        root_logger.addHandler(console_handler)

    # File handler (optional)
    if log_dir:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / "packager.log")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    return logging.getLogger("packager")


logger = setup_logging()
