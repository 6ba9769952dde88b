"""Change detection between a filesystem scan and the manifest."""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterable, List, Mapping, Set

from .scanner import ScanResult

if TYPE_CHECKING:
    from ..storage.manifest import FileRecord


@dataclass
class ChangeSet:
    added: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)

    @property
    def to_process(self) -> List[str]:
        """Paths whose chunks must be (re)extracted, sorted."""
        return sorted(self.added + self.modified)

    @property
    def stale_count(self) -> int:
        return len(self.added) + len(self.modified) + len(self.removed)

    def is_empty(self) -> bool:
        return self.stale_count == 0


def detect_changes(
    scan: ScanResult,
    records: Mapping[str, "FileRecord"],
    force: Iterable[str] = (),
) -> ChangeSet:
    """Compare scanned files with manifest records.

    Pure set comparison on content hashes. ``force`` names paths that must be
    treated as modified even when their hash matches (used after reconciliation
    finds missing vectors or when chunking settings change).
    """
    forced: Set[str] = set(force)
    current: Dict[str, str] = {f.path: f.hash for f in scan.files}
    changes = ChangeSet()

    for path in sorted(current):
        record = records.get(path)
        if record is None:
            changes.added.append(path)
        elif path in forced or record.hash != current[path]:
            changes.modified.append(path)
        else:
            changes.unchanged.append(path)

    changes.removed = sorted(set(records) - set(current))
    return changes
