"""Utility functions for qsearch."""

from .hashing import chunk_id, content_hash
from .logging import rotate_log_if_needed
from .progress import ConsoleProgress, NullProgress, SimpleProgressBar, Spinner
from .text import (
    compute_line_offsets,
    count_lines,
    offset_to_line,
    preprocess_query,
    split_lines,
    truncate_lines,
)

__all__ = [
    "chunk_id",
    "content_hash",
    "rotate_log_if_needed",
    "ConsoleProgress",
    "NullProgress",
    "SimpleProgressBar",
    "Spinner",
    "compute_line_offsets",
    "count_lines",
    "offset_to_line",
    "preprocess_query",
    "split_lines",
    "truncate_lines",
]
