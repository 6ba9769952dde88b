"""Ingestion pipeline: scanning, change detection, parsing and chunking."""

from .changes import ChangeSet, detect_changes
from .chunking import Chunk, ChunkExtractor, ExtractionResult
from .parsing import Span, Spans, TreeSitterParser, Unsupported
from .scanner import ExcludedFile, FileScanner, ScannedFile, ScanResult

__all__ = [
    "ChangeSet",
    "detect_changes",
    "Chunk",
    "ChunkExtractor",
    "ExtractionResult",
    "Span",
    "Spans",
    "TreeSitterParser",
    "Unsupported",
    "ExcludedFile",
    "FileScanner",
    "ScannedFile",
    "ScanResult",
]
