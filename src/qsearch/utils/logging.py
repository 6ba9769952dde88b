"""Logging utilities."""

import logging
import os
from datetime import datetime
from pathlib import Path


def rotate_log_if_needed(
    log_path: Path | str,
    max_size_mb: float = 10,
) -> None:
    """Rotate log file if it exists and is over the size limit.

    Args:
        log_path: Path to the log file
        max_size_mb: Maximum log file size in megabytes before rotation
    """
    log_path = Path(log_path)
    max_size_bytes = max_size_mb * 1024 * 1024

    if log_path.exists() and log_path.stat().st_size > max_size_bytes:
        # Microseconds and pid keep concurrent rotations from colliding
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        rotated_name = f"{log_path.stem}_{timestamp}_{os.getpid()}.log"
        log_path.rename(log_path.parent / rotated_name)
        log_path.touch()


def attach_file_handler(log_path: Path, max_size_mb: float = 10) -> logging.Handler:
    """Rotate the log file if needed and route the root logger into it."""
    log_path.parent.mkdir(parents=True, exist_ok=True)
    rotate_log_if_needed(log_path, max_size_mb)
    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setLevel(logging.INFO)
    handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root = logging.getLogger()
    console_level = root.level
    if console_level > logging.INFO:
        # Console handlers keep the CLI level while INFO reaches the file
        for existing in root.handlers:
            existing.setLevel(console_level)
        root.setLevel(logging.INFO)
    root.addHandler(handler)
    return handler
