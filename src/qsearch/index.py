#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
"""
Incremental indexing pipeline.

One run scans the repository, diffs it against the manifest, extracts and
embeds chunks for added and modified files on a worker pool, and applies the
results through the single-writer ``IndexSynchronizer``. Runs are hash-gated
and idempotent: an unchanged tree produces no store mutations.
"""
import logging
import os
import signal
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from llama_index.core.embeddings import BaseEmbedding

from .cfgload import IndexSettings, load_config, manifest_path, shard_dir
from .errors import ConfigMismatchError, ScanError, StoreError
from .ingestion.changes import detect_changes
from .ingestion.chunking import ChunkExtractor
from .ingestion.parsing import TreeSitterParser
from .ingestion.scanner import FileScanner
from .models.embeddings import EmbeddingDispatcher, create_embed_model
from .storage.manifest import FileRecord, Manifest
from .storage.vectors import SimpleVectorShard, VectorStore
from .sync import FileUpdate, IndexSynchronizer
from .utils.progress import NullProgress

logger = logging.getLogger(__name__)

FULL = "full"
INCREMENTAL = "incremental"

STAGE_SCAN = "scan"
STAGE_EMBED = "embed"
STAGE_STORE = "store"


@dataclass
class FailedFile:
    path: str
    stage: str
    reason: str


@dataclass
class IndexReport:
    added: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    unchanged: int = 0
    failed: List[FailedFile] = field(default_factory=list)
    excluded: int = 0
    chunks_embedded: int = 0
    store_mutations: int = 0
    cancelled: bool = False
    wiped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class _WorkResult:
    path: str
    update: Optional[FileUpdate] = None
    failure: Optional[FailedFile] = None
    embedded: int = 0


class GracefulAbort:
    """Two-stage Ctrl-C handler for the indexing pipeline.

    First Ctrl-C:  sets the cancel event and restores default SIGINT so a
                   second Ctrl-C raises KeyboardInterrupt immediately.
    """

    def __init__(self, on_abort=None):
        self.event = threading.Event()
        self._on_abort = on_abort
        self._original_handler = None

    def install(self) -> None:
        """Register the custom SIGINT handler. Must be called from the main thread."""
        self._original_handler = signal.getsignal(signal.SIGINT)
        signal.signal(signal.SIGINT, self._handle_sigint)

    def uninstall(self) -> None:
        """Restore the original SIGINT handler."""
        if self._original_handler is not None:
            signal.signal(signal.SIGINT, self._original_handler)
            self._original_handler = None

    def _handle_sigint(self, signum, frame):
        self.event.set()
        signal.signal(signal.SIGINT, signal.SIG_DFL)
        if self._on_abort is not None:
            self._on_abort()


class Indexer:
    """Wires the pipeline components together for one repository."""

    def __init__(
        self,
        root: Path,
        config: Optional[Dict[str, Any]] = None,
        embed_model: Optional[BaseEmbedding] = None,
        store: Optional[VectorStore] = None,
        parser: Optional[TreeSitterParser] = None,
        manifest: Optional[Manifest] = None,
    ):
        self.root = Path(root).resolve()
        self.config = config if config is not None else load_config(self.root)
        self.settings = IndexSettings.from_config(self.config)
        self.manifest = manifest or Manifest(manifest_path(self.root))
        self.store = store if store is not None else SimpleVectorShard(shard_dir(self.root))
        self.scanner = FileScanner(self.root, self.settings)
        self.extractor = ChunkExtractor(self.settings, parser)
        self._embed_model = embed_model

    @property
    def embed_model(self) -> BaseEmbedding:
        if self._embed_model is None:
            logger.info(f"Loading embedding model {self.settings.model}")
            self._embed_model = create_embed_model(self.config)
        return self._embed_model

    @property
    def max_workers(self) -> int:
        return max(1, self.settings.parallel_workers or os.cpu_count() or 4)

    def _check_snapshot(self, mode: str, report: IndexReport) -> bool:
        """Compare the stored config snapshot with the current settings.

        Returns True when chunking settings changed and every file must be
        re-extracted.

        Raises:
            ConfigMismatchError: model or dimension changed in incremental mode.
        """
        prior = self.manifest.get_snapshot()
        if prior is None:
            return False
        current = self.settings.config_snapshot()

        if prior.get("model") != current["model"] or prior.get("dimension") != current["dimension"]:
            detail = (
                f"index was built with {prior.get('model')} ({prior.get('dimension')} dims), "
                f"config now says {current['model']} ({current['dimension']} dims)"
            )
            if mode != FULL:
                raise ConfigMismatchError(f"{detail}; run 'qs index --mode full' to rebuild")
            logger.warning(f"{detail}; wiping index")
            self.store.wipe()
            self.store.persist()
            self.manifest.clear()
            report.wiped = True
            return False

        return (
            prior.get("chunk_size") != current["chunk_size"]
            or prior.get("chunk_overlap") != current["chunk_overlap"]
        )

    def _process_file(
        self,
        path: str,
        reusable: Set[str],
        dispatcher: EmbeddingDispatcher,
        cancel: threading.Event,
    ) -> _WorkResult:
        """Read, extract and embed one file (executed in thread pool)."""
        if cancel.is_set():
            return _WorkResult(path, failure=FailedFile(path, STAGE_SCAN, "cancelled"))
        try:
            data, stat = self.scanner.read_file(path)
        except ScanError as e:
            return _WorkResult(path, failure=FailedFile(path, STAGE_SCAN, str(e)))

        # Hash comes from the bytes actually chunked, even if the file changed since the scan
        extraction = self.extractor.extract(path, data)

        pending = [c for c in extraction.chunks if c.id not in reusable]
        vectors: Dict[str, List[float]] = {}
        if pending:
            outcome = dispatcher.embed_texts([c.text for c in pending])
            if not outcome.ok:
                reason = f"{outcome.failed_count} of {len(pending)} chunks failed: {outcome.errors[0]}"
                return _WorkResult(path, failure=FailedFile(path, STAGE_EMBED, reason))
            vectors = {c.id: v for c, v in zip(pending, outcome.vectors)}

        update = FileUpdate(
            path=path,
            size=len(data),
            mtime=stat.st_mtime,
            extraction=extraction,
            vectors=vectors,
        )
        return _WorkResult(path, update=update, embedded=len(vectors))

    def run(
        self,
        mode: str = INCREMENTAL,
        cancel: Optional[threading.Event] = None,
        progress=None,
    ) -> IndexReport:
        """Bring the index up to date with the working tree.

        Args:
            mode: ``incremental`` or ``full``. Both skip unchanged files;
                ``full`` rebuilds from scratch when the embedding model or
                dimension changed instead of failing.
            cancel: Optional event; when set, in-flight work is abandoned,
                completed files are checkpointed and the report is marked
                cancelled.
            progress: Optional progress sink (see ``utils.progress``).

        Raises:
            ConfigMismatchError: incompatible index in incremental mode, or the
                model produced vectors of the wrong dimension.
            ManifestError: the manifest could not be read or written.
        """
        if mode not in (FULL, INCREMENTAL):
            raise ValueError(f"Unknown index mode: {mode}")
        cancel = cancel or threading.Event()
        progress = progress or NullProgress()
        report = IndexReport()
        sync = IndexSynchronizer(self.manifest, self.store)

        rechunk_all = self._check_snapshot(mode, report)
        records = self.manifest.get_all_records()

        progress.phase("Reconciling index")
        forced = sync.reconcile(records)
        if rechunk_all:
            logger.info("Chunking settings changed; re-extracting every file")
            forced |= set(records)

        progress.phase("Scanning for changes")
        scan = self.scanner.scan(tracked=records)
        changes = detect_changes(scan, records, force=forced)
        report.excluded = len(scan.excluded)
        report.unchanged = len(changes.unchanged)
        logger.info(
            f"Scan: {len(changes.added)} new, {len(changes.modified)} modified, "
            f"{len(changes.removed)} deleted, {len(changes.unchanged)} unchanged, "
            f"{len(scan.excluded)} excluded"
        )

        for path in changes.removed:
            try:
                sync.remove_file(records[path])
                report.removed.append(path)
            except StoreError as e:
                logger.warning(f"Could not remove {path} from store: {e}")
                report.failed.append(FailedFile(path, STAGE_STORE, str(e)))

        to_process = changes.to_process
        if to_process and not cancel.is_set():
            self._process_all(to_process, records, sync, report, cancel, progress)

        report.cancelled = cancel.is_set()
        sync.checkpoint()
        # An incomplete re-chunk keeps the old snapshot so the next run retries every file
        if not (rechunk_all and (report.cancelled or report.failed)):
            self.manifest.set_snapshot(self.settings.config_snapshot())

        report.store_mutations = sync.mutations
        report.added.sort()
        report.modified.sort()
        report.failed.sort(key=lambda f: f.path)
        logger.info(
            f"Index run finished: {len(report.added)} added, {len(report.modified)} modified, "
            f"{len(report.removed)} removed, {len(report.failed)} failed, "
            f"{report.chunks_embedded} chunks embedded"
            + (" (cancelled)" if report.cancelled else "")
        )
        return report

    def _process_all(
        self,
        paths: List[str],
        records: Dict[str, FileRecord],
        sync: IndexSynchronizer,
        report: IndexReport,
        cancel: threading.Event,
        progress,
    ) -> None:
        added_paths = {p for p in paths if p not in records}
        files_since_checkpoint = 0
        progress.start(len(paths), "Indexing files")

        with EmbeddingDispatcher(
            self.embed_model,
            dimension=self.settings.dimension,
            batch_size=self.settings.embed_batch_size,
            timeout=self.settings.embed_timeout,
            max_workers=self.max_workers,
        ) as dispatcher, ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="qs-index"
        ) as executor:
            future_to_path: Dict[Future, str] = {
                executor.submit(
                    self._process_file,
                    path,
                    sync.reusable_ids(records.get(path)),
                    dispatcher,
                    cancel,
                ): path
                for path in paths
            }

            try:
                for future in as_completed(future_to_path):
                    if cancel.is_set():
                        break
                    result: _WorkResult = future.result()
                    progress.advance()

                    if result.failure is not None:
                        logger.warning(
                            f"Skipping {result.path} ({result.failure.stage}): {result.failure.reason}"
                        )
                        report.failed.append(result.failure)
                        continue

                    try:
                        sync.apply_file(result.update, records.get(result.path))
                    except StoreError as e:
                        logger.warning(f"Store update failed for {result.path}: {e}")
                        report.failed.append(FailedFile(result.path, STAGE_STORE, str(e)))
                        continue

                    report.chunks_embedded += result.embedded
                    if result.path in added_paths:
                        report.added.append(result.path)
                    else:
                        report.modified.append(result.path)

                    files_since_checkpoint += 1
                    if files_since_checkpoint >= self.settings.checkpoint_interval_files:
                        sync.checkpoint()
                        files_since_checkpoint = 0
            finally:
                for future in future_to_path:
                    future.cancel()
                progress.finish()


def run_index(
    root: Path,
    mode: str = INCREMENTAL,
    embed_model: Optional[BaseEmbedding] = None,
    store: Optional[VectorStore] = None,
    cancel: Optional[threading.Event] = None,
    progress=None,
    config: Optional[Dict[str, Any]] = None,
) -> IndexReport:
    """Index ``root`` and return what changed. See ``Indexer.run``."""
    indexer = Indexer(root, config=config, embed_model=embed_model, store=store)
    return indexer.run(mode=mode, cancel=cancel, progress=progress)
