"""Text processing utilities."""

from typing import List, Optional, TypeVar

T = TypeVar("T")


def preprocess_query(query: str) -> str:
    """Normalize whitespace in a query string.

    Returns the original query if normalization results in an empty string.
    """
    if not query or not query.strip():
        return query

    processed = " ".join(query.split())
    return processed if processed else query


def compute_line_offsets(data: bytes) -> List[int]:
    """Compute byte offset positions for each line start.

    Returns a list where line_offsets[i] is the byte position where line i+1 starts.
    Line 1 starts at position 0 (implicit).

    Args:
        data: Raw file content

    Returns:
        List of byte offsets for line starts
    """
    offsets = [0]
    pos = data.find(b"\n")
    while pos != -1:
        offsets.append(pos + 1)
        pos = data.find(b"\n", pos + 1)
    return offsets


def offset_to_line(offset: Optional[int], line_offsets: Optional[List[int]]) -> Optional[int]:
    """Convert a byte offset to a line number (1-indexed).

    Args:
        offset: Byte position in the content (0-indexed)
        line_offsets: List where line_offsets[i] is the byte position where line i+1 starts

    Returns:
        Line number (1-indexed) or None if cannot be determined
    """
    if offset is None or not line_offsets:
        return None

    # Binary search to find the line containing offset
    left, right = 0, len(line_offsets) - 1
    while left < right:
        mid = (left + right + 1) // 2
        if line_offsets[mid] <= offset:
            left = mid
        else:
            right = mid - 1

    return left + 1


def count_lines(data: bytes) -> int:
    """Number of lines as an editor shows them (a trailing newline adds no line)."""
    if not data:
        return 0
    n = data.count(b"\n")
    return n if data.endswith(b"\n") else n + 1


def split_lines(data: bytes) -> List[str]:
    """Decode content into lines, breaking on ``\\n`` only.

    Agrees with ``count_lines`` and ``offset_to_line``: form feeds, vertical
    tabs and other Unicode line separators stay inside their line. A trailing
    ``\\r`` is dropped from each line.
    """
    if not data:
        return []
    pieces = data.split(b"\n")
    if data.endswith(b"\n"):
        pieces.pop()
    return [
        (piece[:-1] if piece.endswith(b"\r") else piece).decode("utf-8", errors="replace")
        for piece in pieces
    ]


def truncate_lines(lines: List[T], head: int = 5, tail: int = 3) -> List[Optional[T]]:
    """Shorten a long list of lines to head + tail, with None marking the gap."""
    if len(lines) <= head + tail + 1:
        return list(lines)
    return list(lines[:head]) + [None] + list(lines[-tail:])
