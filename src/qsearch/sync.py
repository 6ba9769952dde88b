#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
"""
Index synchronizer: applies per-file changes to the vector store and manifest.

Store mutations happen immediately; manifest changes are staged and written
at checkpoints, after the store has been persisted. A crash between the two
leaves the store ahead of the manifest, which ``reconcile`` repairs at the
start of the next run.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Set

from .ingestion.chunking import Chunk, ExtractionResult
from .storage.manifest import FileRecord, Manifest
from .storage.vectors import VectorEntry, VectorStore

logger = logging.getLogger(__name__)


def chunk_payload(chunk: Chunk) -> dict:
    return {
        "path": chunk.path,
        "start_line": chunk.start_line,
        "end_line": chunk.end_line,
        "start_byte": chunk.start_byte,
        "end_byte": chunk.end_byte,
        "kind": chunk.kind,
        "hash": chunk.hash,
        "text": chunk.text,
    }


@dataclass
class FileUpdate:
    """Everything needed to bring one added or modified file up to date."""

    path: str
    size: int
    mtime: float
    extraction: ExtractionResult
    # Vectors for the chunks that were not already in the store
    vectors: Dict[str, List[float]] = field(default_factory=dict)

    @property
    def hash(self) -> str:
        return self.extraction.hash


class IndexSynchronizer:
    """Single writer for the vector store and the manifest."""

    def __init__(self, manifest: Manifest, store: VectorStore):
        self.manifest = manifest
        self.store = store
        self.mutations = 0
        self._dirty = False
        self._staged_updates: Dict[str, FileRecord] = {}
        self._staged_removals: Set[str] = set()

    @property
    def pending(self) -> int:
        return len(self._staged_updates) + len(self._staged_removals)

    def reconcile(self, records: Mapping[str, FileRecord]) -> Set[str]:
        """Repair disagreement between manifest and store.

        Deletes vectors no record refers to and returns the paths whose
        records reference vectors the store does not hold. Those paths must be
        re-extracted regardless of their hash.
        """
        store_ids = self.store.ids()
        referenced: Set[str] = set()
        dangling: Set[str] = set()
        for path, record in records.items():
            referenced.update(record.chunk_ids)
            if any(cid not in store_ids for cid in record.chunk_ids):
                dangling.add(path)

        orphans = store_ids - referenced
        if orphans:
            logger.warning(f"Removing {len(orphans)} orphaned vectors left by an interrupted run")
            self.store.delete(orphans)
            self.mutations += len(orphans)
            self._dirty = True
        if dangling:
            logger.warning(f"{len(dangling)} files have missing vectors and will be reindexed")
        return dangling

    def reusable_ids(self, prior: Optional[FileRecord]) -> Set[str]:
        """Chunk IDs of ``prior`` that still have a vector in the store."""
        if prior is None:
            return set()
        present = self.store.get_vectors(prior.chunk_ids)
        return set(present)

    def remove_file(self, record: FileRecord) -> None:
        """Delete every vector of a removed file and stage its record removal.

        Raises:
            StoreError: if the store rejects the deletion.
        """
        self.store.delete(record.chunk_ids)
        self.mutations += len(record.chunk_ids)
        self._dirty = True
        self._staged_updates.pop(record.path, None)
        self._staged_removals.add(record.path)

    def _refreshed_entries(self, reused: List[Chunk]) -> List[VectorEntry]:
        """Entries for reused chunks whose stored payload is out of date.

        The ID ignores the kind label and byte offsets, so a re-labelled or
        shifted span keeps its vector but needs its payload rewritten.
        """
        if not reused:
            return []
        vectors = self.store.get_vectors(chunk.id for chunk in reused)
        entries = []
        for chunk in reused:
            if chunk.id not in vectors:
                continue
            payload = chunk_payload(chunk)
            stored = self.store.get_payload(chunk.id) or {}
            if any(stored.get(key) != value for key, value in payload.items()):
                entries.append(VectorEntry(id=chunk.id, vector=vectors[chunk.id], payload=payload))
        return entries

    def apply_file(self, update: FileUpdate, prior: Optional[FileRecord]) -> None:
        """Bring the store in line with a fresh extraction, then stage the record.

        Stale vectors are deleted before new ones are inserted. Chunks whose
        IDs were not already stored are upserted, as are reused chunks whose
        payload changed.

        Raises:
            StoreError: if a store mutation fails. Nothing is staged then.
        """
        new_ids = update.extraction.chunk_ids
        new_set = set(new_ids)
        old_ids = prior.chunk_ids if prior else []

        stale = [cid for cid in old_ids if cid not in new_set]
        entries = [
            VectorEntry(id=chunk.id, vector=update.vectors[chunk.id], payload=chunk_payload(chunk))
            for chunk in update.extraction.chunks
            if chunk.id in update.vectors
        ]
        entries.extend(self._refreshed_entries(
            [chunk for chunk in update.extraction.chunks if chunk.id not in update.vectors]
        ))

        if stale:
            self.store.delete(stale)
            self.mutations += len(stale)
            self._dirty = True
        if entries:
            self.store.upsert(entries)
            self.mutations += len(entries)
            self._dirty = True

        self._staged_removals.discard(update.path)
        self._staged_updates[update.path] = FileRecord(
            path=update.path,
            hash=update.hash,
            size=update.size,
            mtime=update.mtime,
            chunk_ids=new_ids,
            last_indexed=time.time(),
        )

    def checkpoint(self) -> None:
        """Persist the store, then commit staged manifest changes in one transaction."""
        if self._dirty:
            self.store.persist()
            self._dirty = False
        if not self.pending:
            return
        self.manifest.commit_batch(
            self._staged_updates.values(),
            sorted(self._staged_removals),
        )
        logger.info(
            f"Checkpoint: {len(self._staged_updates)} files updated, "
            f"{len(self._staged_removals)} removed"
        )
        self._staged_updates.clear()
        self._staged_removals.clear()
