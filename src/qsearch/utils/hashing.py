"""Content hashing used for change detection and chunk identity."""

import hashlib

CHUNK_ID_LENGTH = 32


def content_hash(data: bytes) -> str:
    """SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def chunk_id(path: str, start_line: int, end_line: int, chunk_hash: str) -> str:
    """Derive a stable chunk identifier.

    Two chunks share an ID only if they belong to the same file, cover the
    same lines and have identical bytes. Byte offsets are left out so that an
    edit elsewhere in the file does not change the ID. The kind label is left
    out so a re-labelled span keeps its vector.
    """
    key = "\0".join([path, str(start_line), str(end_line), chunk_hash])
    return content_hash(key.encode("utf-8"))[:CHUNK_ID_LENGTH]
