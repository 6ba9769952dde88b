"""Manifest of indexed files, persisted in SQLite."""

import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ..errors import ManifestError

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "config_snapshot"


@dataclass
class FileRecord:
    """What the index knows about one file."""

    path: str
    hash: str
    size: int
    mtime: float
    chunk_ids: List[str] = field(default_factory=list)
    last_indexed: float = 0.0


def _row_to_record(row) -> FileRecord:
    return FileRecord(
        path=row[0],
        hash=row[1],
        size=row[2],
        mtime=row[3],
        chunk_ids=row[4].split(",") if row[4] else [],
        last_indexed=row[5],
    )


class Manifest:
    """Manages indexed file records and the config snapshot using a SQLite database.

    Every operation opens its own connection, so a Manifest can be shared
    between threads. Writes from the pipeline go through ``commit_batch``,
    which applies all staged changes in a single transaction.
    """

    def __init__(self, db_path: Path, read_only: bool = False):
        self.db_path = Path(db_path)
        self.read_only = read_only
        if not read_only:
            self._init_db()

    def _connect(self) -> sqlite3.Connection:
        if self.read_only:
            return sqlite3.connect(f"{self.db_path.resolve().as_uri()}?mode=ro", uri=True)
        return sqlite3.connect(self.db_path)

    def exists(self) -> bool:
        return self.db_path.exists()

    def _init_db(self):
        """Initialize the SQLite database schema."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS files (
                        path TEXT PRIMARY KEY,
                        hash TEXT NOT NULL,
                        size INTEGER NOT NULL,
                        mtime REAL NOT NULL,
                        chunk_ids TEXT NOT NULL,
                        last_indexed REAL NOT NULL
                    )
                    """
                )
                conn.execute(
                    "CREATE TABLE IF NOT EXISTS meta (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
                )
        except (sqlite3.Error, OSError) as e:
            raise ManifestError(f"Cannot open manifest {self.db_path}: {e}") from e

    def get_all_records(self) -> Dict[str, FileRecord]:
        """Retrieve all tracked files keyed by relative path."""
        if self.read_only and not self.exists():
            return {}
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    "SELECT path, hash, size, mtime, chunk_ids, last_indexed FROM files"
                )
                return {row[0]: _row_to_record(row) for row in cursor}
        except sqlite3.Error as e:
            raise ManifestError(f"Cannot read manifest {self.db_path}: {e}") from e

    def get_record(self, path: str) -> Optional[FileRecord]:
        if self.read_only and not self.exists():
            return None
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT path, hash, size, mtime, chunk_ids, last_indexed FROM files WHERE path = ?",
                    (path,),
                ).fetchone()
        except sqlite3.Error as e:
            raise ManifestError(f"Cannot read manifest {self.db_path}: {e}") from e
        return _row_to_record(row) if row is not None else None

    def get_snapshot(self) -> Optional[Dict[str, Any]]:
        """Config snapshot stored by the last run, or None for a fresh manifest."""
        if self.read_only and not self.exists():
            return None
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT value FROM meta WHERE key = ?", (SNAPSHOT_KEY,)
                ).fetchone()
        except sqlite3.Error as e:
            raise ManifestError(f"Cannot read manifest {self.db_path}: {e}") from e
        return json.loads(row[0]) if row else None

    def set_snapshot(self, snapshot: Dict[str, Any]) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO meta (key, value) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET value=excluded.value
                    """,
                    (SNAPSHOT_KEY, json.dumps(snapshot, sort_keys=True)),
                )
        except sqlite3.Error as e:
            raise ManifestError(f"Cannot write manifest {self.db_path}: {e}") from e

    def commit_batch(
        self,
        updates: Iterable[FileRecord],
        removals: Iterable[str] = (),
    ) -> None:
        """Apply staged record upserts and removals in a single transaction.

        Raises:
            ManifestError: if the transaction fails; nothing is applied then.
        """
        updates = list(updates)
        removals = list(removals)
        if not updates and not removals:
            return

        now = time.time()
        try:
            with self._connect() as conn:
                conn.executemany(
                    """
                    INSERT INTO files (path, hash, size, mtime, chunk_ids, last_indexed)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(path) DO UPDATE SET
                        hash=excluded.hash,
                        size=excluded.size,
                        mtime=excluded.mtime,
                        chunk_ids=excluded.chunk_ids,
                        last_indexed=excluded.last_indexed
                    """,
                    [
                        (
                            r.path,
                            r.hash,
                            r.size,
                            r.mtime,
                            ",".join(r.chunk_ids),
                            r.last_indexed or now,
                        )
                        for r in updates
                    ],
                )
                conn.executemany(
                    "DELETE FROM files WHERE path = ?", [(p,) for p in removals]
                )
        except sqlite3.Error as e:
            raise ManifestError(f"Cannot write manifest {self.db_path}: {e}") from e
        logger.debug(f"Manifest commit: {len(updates)} updated, {len(removals)} removed")

    def clear(self) -> None:
        """Drop every file record and the config snapshot."""
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM files")
                conn.execute("DELETE FROM meta")
        except sqlite3.Error as e:
            raise ManifestError(f"Cannot write manifest {self.db_path}: {e}") from e
