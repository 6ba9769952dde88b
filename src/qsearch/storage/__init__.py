"""Persistent state: the file manifest and the vector shard."""

from .manifest import FileRecord, Manifest
from .vectors import SimpleVectorShard, VectorEntry, VectorHit, VectorStore

__all__ = [
    "FileRecord",
    "Manifest",
    "SimpleVectorShard",
    "VectorEntry",
    "VectorHit",
    "VectorStore",
]
