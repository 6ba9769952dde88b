"""Read-only summary of the index state for a repository."""

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .cfgload import IndexSettings, load_config, manifest_path, shard_dir
from .ingestion.changes import detect_changes
from .ingestion.scanner import FileScanner
from .storage.manifest import Manifest
from .storage.vectors import SimpleVectorShard, VectorStore

logger = logging.getLogger(__name__)


@dataclass
class StatusReport:
    root: str
    file_count: int
    chunk_count: int
    vector_count: int
    excluded_count: int
    stale_file_count: int
    added: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    model: str = ""
    dimension: int = 0
    indexed_model: Optional[str] = None

    @property
    def consistent(self) -> bool:
        return self.chunk_count == self.vector_count

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["consistent"] = self.consistent
        return data


def get_status(
    root: Path,
    config: Optional[Dict[str, Any]] = None,
    store: Optional[VectorStore] = None,
) -> StatusReport:
    """Summarize what is indexed and what an index run would change.

    Nothing is written: the manifest is opened read-only and the shard is
    only loaded, never persisted.
    """
    root = Path(root).resolve()
    config = config if config is not None else load_config(root)
    settings = IndexSettings.from_config(config)
    manifest = Manifest(manifest_path(root), read_only=True)
    store = store if store is not None else SimpleVectorShard(shard_dir(root))

    records = manifest.get_all_records()
    snapshot = manifest.get_snapshot()
    scan = FileScanner(root, settings).scan(tracked=records)
    changes = detect_changes(scan, records)

    return StatusReport(
        root=str(root),
        file_count=len(records),
        chunk_count=sum(len(r.chunk_ids) for r in records.values()),
        vector_count=store.count(),
        excluded_count=len(scan.excluded),
        stale_file_count=changes.stale_count,
        added=changes.added,
        modified=changes.modified,
        removed=changes.removed,
        model=settings.model,
        dimension=settings.dimension,
        indexed_model=snapshot.get("model") if snapshot else None,
    )
