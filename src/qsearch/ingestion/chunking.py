#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
"""
Chunk extraction: turns file content into the chunks that get embedded.

Supported languages are cut along definition boundaries reported by the
parser; the bytes between definitions (imports, module-level statements)
become ``block`` chunks so the whole file stays searchable. Everything else
is cut into fixed-size windows that overlap by ``chunk_overlap`` bytes.

All offsets are byte offsets into the raw file content. Line numbers are
1-based and inclusive.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from ..cfgload import IndexSettings
from ..errors import ParseError
from ..utils.hashing import chunk_id, content_hash
from ..utils.text import compute_line_offsets, count_lines, offset_to_line
from .parsing import Span, Spans, TreeSitterParser, language_for_path

logger = logging.getLogger(__name__)

WINDOW = "window"
BLOCK = "block"
MODULE = "module"

# Semantic spans above this multiple of chunk_size are split into windows
OVERSIZE_FACTOR = 2

_WHITESPACE = b" \t\r\n\f\v"


@dataclass
class Chunk:
    id: str
    path: str
    start_byte: int
    end_byte: int
    start_line: int
    end_line: int
    kind: str
    hash: str
    text: str

    @property
    def line_span(self) -> int:
        return self.end_line - self.start_line + 1


@dataclass
class ExtractionResult:
    path: str
    hash: str
    line_count: int
    chunks: List[Chunk] = field(default_factory=list)
    fallback_reason: Optional[str] = None

    @property
    def chunk_ids(self) -> List[str]:
        return [c.id for c in self.chunks]


def _is_continuation(byte: int) -> bool:
    """True for UTF-8 continuation bytes (10xxxxxx)."""
    return (byte & 0xC0) == 0x80


def window_ranges(
    data: bytes,
    size: int,
    overlap: int,
    start: int = 0,
    end: Optional[int] = None,
) -> List[Tuple[int, int]]:
    """Cut ``data[start:end]`` into windows of at most ``size`` bytes.

    Each window end is pulled back to just after the last newline inside the
    window when there is one, and never lands inside a UTF-8 sequence. The
    next window starts ``overlap`` bytes before the previous end, moved
    forward to a line start when one lies inside the overlap. The final
    window is clipped to ``end``.
    """
    end = len(data) if end is None else end
    ranges: List[Tuple[int, int]] = []
    pos = start
    while pos < end:
        limit = min(pos + size, end)
        cut = limit
        if limit < end:
            newline = data.rfind(b"\n", pos, limit)
            if newline != -1 and newline + 1 > pos:
                cut = newline + 1
            while cut > pos + 1 and _is_continuation(data[cut]):
                cut -= 1
        ranges.append((pos, cut))
        if cut >= end:
            break

        nxt = max(cut - overlap, pos + 1)
        if nxt < cut and data[nxt - 1:nxt] != b"\n":
            newline = data.find(b"\n", nxt, cut)
            if newline != -1 and newline + 1 < cut:
                nxt = newline + 1
        while nxt < cut and _is_continuation(data[nxt]):
            nxt += 1
        pos = nxt
    return ranges


def normalize_spans(spans: List[Span], length: int) -> List[Span]:
    """Make parser spans ordered and non-overlapping.

    Spans are sorted by start offset. A span fully contained in an earlier
    kept span is dropped. When two spans partially overlap the later start
    wins and the earlier span is clipped to end where the later one begins.
    Spans left empty are dropped.
    """
    clamped = [
        Span(max(0, s.start_byte), min(length, s.end_byte), s.kind)
        for s in spans
    ]
    ordered = sorted(
        (s for s in clamped if s.end_byte > s.start_byte),
        key=lambda s: (s.start_byte, -s.end_byte),
    )
    kept: List[Span] = []
    for span in ordered:
        if kept and span.end_byte <= kept[-1].end_byte:
            continue
        if kept and span.start_byte < kept[-1].end_byte:
            prev = kept.pop()
            if span.start_byte > prev.start_byte:
                kept.append(Span(prev.start_byte, span.start_byte, prev.kind))
        kept.append(span)
    return kept


def _trim(data: bytes, start: int, end: int) -> Tuple[int, int]:
    """Shrink [start, end) to exclude leading and trailing whitespace."""
    while start < end and data[start] in _WHITESPACE:
        start += 1
    while end > start and data[end - 1] in _WHITESPACE:
        end -= 1
    return start, end


class ChunkExtractor:
    """Splits file content into chunks using the parser capability."""

    def __init__(self, settings: IndexSettings, parser: TreeSitterParser | None = None):
        self.settings = settings
        self.parser = parser or TreeSitterParser()

    @property
    def oversize_limit(self) -> int:
        return self.settings.chunk_size * OVERSIZE_FACTOR

    def extract(self, path: str, data: bytes) -> ExtractionResult:
        """Extract chunks for one file. Never raises on parser failure."""
        result = ExtractionResult(path=path, hash=content_hash(data), line_count=count_lines(data))
        if not data.strip():
            return result

        line_offsets = compute_line_offsets(data)
        ranges: List[Tuple[int, int, str]] = []

        try:
            parsed = self.parser.parse(data, language_for_path(path))
        except ParseError as e:
            logger.warning(f"Parse failed for {path}, falling back to windows: {e}")
            result.fallback_reason = str(e)
            parsed = None

        if isinstance(parsed, Spans) and parsed.spans:
            ranges = self._semantic_ranges(data, normalize_spans(parsed.spans, len(data)))
        elif isinstance(parsed, Spans):
            ranges = self._split_oversize(data, 0, len(data), MODULE)
        else:
            if parsed is not None:
                logger.debug(f"{path}: {parsed.reason}")
            ranges = [
                (s, e, WINDOW)
                for s, e in window_ranges(
                    data, self.settings.chunk_size, self.settings.chunk_overlap
                )
            ]

        for start, end, kind in ranges:
            piece = data[start:end]
            if not piece.strip():
                continue
            start_line = offset_to_line(start, line_offsets)
            end_line = offset_to_line(end - 1, line_offsets)
            piece_hash = content_hash(piece)
            result.chunks.append(Chunk(
                id=chunk_id(path, start_line, end_line, piece_hash),
                path=path,
                start_byte=start,
                end_byte=end,
                start_line=start_line,
                end_line=end_line,
                kind=kind,
                hash=piece_hash,
                text=piece.decode("utf-8", errors="replace"),
            ))
        return result

    def _semantic_ranges(self, data: bytes, spans: List[Span]) -> List[Tuple[int, int, str]]:
        ranges: List[Tuple[int, int, str]] = []
        cursor = 0
        for span in spans:
            gap_start, gap_end = _trim(data, cursor, span.start_byte)
            if gap_end > gap_start:
                ranges.extend(self._split_oversize(data, gap_start, gap_end, BLOCK))
            ranges.extend(self._split_oversize(data, span.start_byte, span.end_byte, span.kind))
            cursor = span.end_byte
        tail_start, tail_end = _trim(data, cursor, len(data))
        if tail_end > tail_start:
            ranges.extend(self._split_oversize(data, tail_start, tail_end, BLOCK))
        return ranges

    def _split_oversize(self, data: bytes, start: int, end: int, kind: str) -> List[Tuple[int, int, str]]:
        """Keep a span whole, or cut it into adjacent windows when it is too long."""
        if end - start <= self.oversize_limit:
            return [(start, end, kind)]
        return [
            (s, e, kind)
            for s, e in window_ranges(data, self.settings.chunk_size, 0, start, end)
        ]
