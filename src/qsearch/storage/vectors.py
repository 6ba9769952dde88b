#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
"""
Vector store capability and its on-disk implementation.

The pipeline only ever talks to ``VectorStore``; ``SimpleVectorShard`` backs
it with llama-index's ``SimpleVectorStore`` persisted as one JSON file per
repository under ``.qs/shard/``.
"""
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from llama_index.core.schema import TextNode
from llama_index.core.vector_stores import SimpleVectorStore
from llama_index.core.vector_stores.types import (
    FilterOperator,
    MetadataFilter,
    MetadataFilters,
    VectorStoreQuery,
)

from ..errors import StoreError

logger = logging.getLogger(__name__)

SHARD_FILENAME = "vectors.json"


@dataclass
class VectorEntry:
    id: str
    vector: List[float]
    payload: Dict[str, Any]


@dataclass
class VectorHit:
    id: str
    score: float
    payload: Dict[str, Any]


class VectorStore(ABC):
    """Minimal vector store interface used by the synchronizer and query engine."""

    @abstractmethod
    def upsert(self, entries: List[VectorEntry]) -> None:
        pass

    @abstractmethod
    def delete(self, ids: Iterable[str]) -> None:
        pass

    @abstractmethod
    def query(
        self,
        vector: List[float],
        k: int,
        exclude_path: Optional[str] = None,
    ) -> List[VectorHit]:
        """Top ``k`` entries by cosine similarity, optionally skipping one file."""
        pass

    @abstractmethod
    def ids(self) -> Set[str]:
        pass

    @abstractmethod
    def get_vectors(self, ids: Iterable[str]) -> Dict[str, List[float]]:
        """Stored vectors for the given IDs; unknown IDs are omitted."""
        pass

    @abstractmethod
    def get_payload(self, id: str) -> Optional[Dict[str, Any]]:
        pass

    def count(self) -> int:
        return len(self.ids())

    def persist(self) -> None:
        """Make all applied mutations durable. No-op for in-memory stores."""

    def wipe(self) -> None:
        self.delete(list(self.ids()))


class SimpleVectorShard(VectorStore):
    """``VectorStore`` over llama-index's in-memory store with atomic JSON persistence."""

    def __init__(self, shard_dir: Path | None = None):
        self.shard_dir = Path(shard_dir) if shard_dir is not None else None
        self._store = self._load()

    @property
    def path(self) -> Optional[Path]:
        return self.shard_dir / SHARD_FILENAME if self.shard_dir is not None else None

    def _load(self) -> SimpleVectorStore:
        if self.path is None or not self.path.exists():
            return SimpleVectorStore()
        try:
            store = SimpleVectorStore.from_persist_path(str(self.path))
        except (OSError, ValueError) as e:
            raise StoreError(f"Cannot load vector shard {self.path}: {e}") from e
        logger.info(f"Loaded {len(store.data.embedding_dict)} vectors from {self.path}")
        return store

    def upsert(self, entries: List[VectorEntry]) -> None:
        if not entries:
            return
        nodes = [
            TextNode(
                id_=entry.id,
                text=entry.payload.get("text", ""),
                embedding=entry.vector,
                metadata=dict(entry.payload),
            )
            for entry in entries
        ]
        try:
            self._store.add(nodes)
        except Exception as e:
            raise StoreError(f"Upsert of {len(nodes)} vectors failed: {e}") from e

    def delete(self, ids: Iterable[str]) -> None:
        known = [i for i in ids if i in self._store.data.embedding_dict]
        if not known:
            return
        try:
            self._store.delete_nodes(node_ids=known)
        except Exception as e:
            raise StoreError(f"Delete of {len(known)} vectors failed: {e}") from e

    def query(
        self,
        vector: List[float],
        k: int,
        exclude_path: Optional[str] = None,
    ) -> List[VectorHit]:
        if k <= 0 or not self._store.data.embedding_dict:
            return []
        filters = None
        if exclude_path is not None:
            filters = MetadataFilters(filters=[
                MetadataFilter(key="path", value=exclude_path, operator=FilterOperator.NE),
            ])
        try:
            result = self._store.query(
                VectorStoreQuery(query_embedding=vector, similarity_top_k=k, filters=filters)
            )
        except Exception as e:
            raise StoreError(f"Vector query failed: {e}") from e

        metadata = self._store.data.metadata_dict
        return [
            VectorHit(id=node_id, score=float(score), payload=dict(metadata.get(node_id, {})))
            for node_id, score in zip(result.ids or [], result.similarities or [])
        ]

    def ids(self) -> Set[str]:
        return set(self._store.data.embedding_dict)

    def count(self) -> int:
        return len(self._store.data.embedding_dict)

    def get_vectors(self, ids: Iterable[str]) -> Dict[str, List[float]]:
        embeddings = self._store.data.embedding_dict
        return {i: embeddings[i] for i in ids if i in embeddings}

    def get_payload(self, id: str) -> Optional[Dict[str, Any]]:
        payload = self._store.data.metadata_dict.get(id)
        return dict(payload) if payload is not None else None

    def persist(self) -> None:
        """Write the shard to a temp file and atomically swap it into place."""
        if self.path is None:
            return
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._store.persist(persist_path=str(tmp_path))
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StoreError(f"Cannot persist vector shard {self.path}: {e}") from e

    def wipe(self) -> None:
        self._store = SimpleVectorStore()
