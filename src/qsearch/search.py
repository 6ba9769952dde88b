#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
"""
Query engine for qsearch.

Answers free-text queries and "find code similar to this file" queries
against the vector shard, then groups hits per file, merges neighbours and
attaches surrounding source lines.
"""
import logging
import math
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from llama_index.core.embeddings import BaseEmbedding

from . import cfgload
from .cfgload import IndexSettings, load_config, manifest_path, shard_dir
from .errors import ConfigMismatchError, ScanError
from .ingestion.chunking import ChunkExtractor
from .ingestion.scanner import FileScanner
from .models.embeddings import EmbeddingDispatcher, create_embed_model
from .storage.manifest import Manifest
from .storage.vectors import SimpleVectorShard, VectorHit, VectorStore
from .utils.text import preprocess_query, split_lines

logger = logging.getLogger(__name__)


@dataclass
class SearchResult:
    path: str
    start_line: int
    end_line: int
    score: float
    kind: str
    context_start: int
    context_end: int
    lines: List[str] = field(default_factory=list)
    chunk_ids: List[str] = field(default_factory=list)

    @property
    def line_span(self) -> int:
        return self.end_line - self.start_line + 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def rank_key(result: SearchResult) -> Tuple[float, int, str, int]:
    """Score descending, then shorter span, then path, then start line."""
    return (-result.score, result.line_span, result.path, result.start_line)


def clip_context(start_line: int, end_line: int, context_lines: int, line_count: int) -> Tuple[int, int]:
    """Expand a 1-based inclusive span by ``context_lines`` and clip it to the file."""
    lo = max(1, start_line - context_lines)
    hi = min(max(line_count, 1), end_line + context_lines)
    return lo, max(lo, hi)


def centroid(vectors: List[List[float]]) -> Optional[List[float]]:
    """Mean of the given vectors, or None when there are none."""
    if not vectors:
        return None
    dim = len(vectors[0])
    total = [0.0] * dim
    for vector in vectors:
        for i, value in enumerate(vector):
            total[i] += value
    return [value / len(vectors) for value in total]


def _is_zero(vector: List[float]) -> bool:
    return not any(vector) or math.isclose(sum(v * v for v in vector), 0.0)


@dataclass
class _Group:
    """Hits of one file whose context ranges touch or overlap."""

    start_line: int
    end_line: int
    context_start: int
    context_end: int
    score: float
    kind: str
    hits: List[VectorHit]


class QueryEngine:
    """Runs text and similar-file queries for one repository."""

    def __init__(
        self,
        root: Path,
        config: Optional[Dict[str, Any]] = None,
        embed_model: Optional[BaseEmbedding] = None,
        store: Optional[VectorStore] = None,
        manifest: Optional[Manifest] = None,
    ):
        self.root = Path(root).resolve()
        self.config = config if config is not None else load_config(self.root)
        self.settings = IndexSettings.from_config(self.config)
        self.manifest = manifest or Manifest(manifest_path(self.root), read_only=True)
        self.store = store if store is not None else SimpleVectorShard(shard_dir(self.root))
        self._embed_model = embed_model
        self._dispatcher: Optional[EmbeddingDispatcher] = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self) -> None:
        if self._dispatcher is not None:
            self._dispatcher.close()
            self._dispatcher = None

    @property
    def dispatcher(self) -> EmbeddingDispatcher:
        if self._dispatcher is None:
            self._check_snapshot()
            if self._embed_model is None:
                self._embed_model = create_embed_model(self.config)
            self._dispatcher = EmbeddingDispatcher(
                self._embed_model,
                dimension=self.settings.dimension,
                batch_size=self.settings.embed_batch_size,
                timeout=self.settings.embed_timeout,
                max_workers=1,
            )
        return self._dispatcher

    def load_model(self) -> None:
        """Load the embedding model now rather than on the first query."""
        self.dispatcher

    def _check_snapshot(self) -> None:
        snapshot = self.manifest.get_snapshot()
        if snapshot is None:
            return
        if snapshot.get("model") != self.settings.model or snapshot.get("dimension") != self.settings.dimension:
            raise ConfigMismatchError(
                f"Index was built with {snapshot.get('model')} but config says {self.settings.model}; "
                "run 'qs index --mode full' to rebuild"
            )

    def _defaults(self, k: Optional[int], context_lines: Optional[int]) -> Tuple[int, int]:
        if k is None:
            k = int(cfgload.get(self.config, "search.top_k", 10))
        if context_lines is None:
            context_lines = int(cfgload.get(self.config, "search.context_lines", 2))
        return k, max(context_lines, 0)

    def query(self, text: str, k: Optional[int] = None, context_lines: Optional[int] = None) -> List[SearchResult]:
        """Semantic search for a free-text query."""
        k, context_lines = self._defaults(k, context_lines)
        text = preprocess_query(text)
        if not text or not text.strip():
            return []
        vector = self.dispatcher.embed_query(text)
        return self._search(vector, k, context_lines)

    def relative_path(self, path: str | Path) -> str:
        """Repository-relative POSIX path for a user-supplied path."""
        candidate = Path(path)
        if not candidate.is_absolute():
            from_cwd = (Path.cwd() / candidate).resolve()
            if from_cwd.exists() or not (self.root / candidate).exists():
                candidate = from_cwd
            else:
                candidate = self.root / candidate
        try:
            return candidate.resolve().relative_to(self.root).as_posix()
        except ValueError:
            return Path(path).as_posix()

    def similar(
        self,
        path: str | Path,
        k: Optional[int] = None,
        context_lines: Optional[int] = None,
    ) -> List[SearchResult]:
        """Find code similar to a file, never returning the file itself.

        Uses the centroid of the file's stored chunk vectors. A file that is
        not indexed yet is chunked and embedded on the fly.

        Raises:
            FileNotFoundError: the file is neither indexed nor on disk.
        """
        k, context_lines = self._defaults(k, context_lines)
        rel_path = self.relative_path(path)

        vectors: List[List[float]] = []
        record = self.manifest.get_record(rel_path)
        if record is not None:
            vectors = list(self.store.get_vectors(record.chunk_ids).values())

        if not vectors:
            vectors = self._embed_file(rel_path)

        query_vector = centroid(vectors)
        if query_vector is None:
            logger.info(f"No vectors available for {rel_path}")
            return []
        return self._search(query_vector, k, context_lines, exclude_path=rel_path)

    def _embed_file(self, rel_path: str) -> List[List[float]]:
        if not (self.root / rel_path).is_file():
            raise FileNotFoundError(f"{rel_path} is not indexed and does not exist")
        scanner = FileScanner(self.root, self.settings)
        try:
            data, _ = scanner.read_file(rel_path)
        except ScanError as e:
            logger.warning(f"Cannot use {rel_path} as a query: {e}")
            return []
        extraction = ChunkExtractor(self.settings).extract(rel_path, data)
        outcome = self.dispatcher.embed_texts([c.text for c in extraction.chunks])
        return [v for v in outcome.vectors if v is not None]

    def _search(
        self,
        vector: List[float],
        k: int,
        context_lines: int,
        exclude_path: Optional[str] = None,
    ) -> List[SearchResult]:
        if _is_zero(vector):
            return []
        hits = self.store.query(vector, k, exclude_path=exclude_path)
        threshold = float(cfgload.get(self.config, "search.score_threshold", 0.0) or 0.0)
        if threshold:
            hits = [h for h in hits if h.score >= threshold]
        # Guard against stores that ignore the filter
        if exclude_path is not None:
            hits = [h for h in hits if h.payload.get("path") != exclude_path]

        by_path: Dict[str, List[VectorHit]] = {}
        for hit in hits:
            path = hit.payload.get("path")
            if path is None:
                continue
            by_path.setdefault(path, []).append(hit)

        results: List[SearchResult] = []
        for path, file_hits in by_path.items():
            results.extend(self._build_results(path, file_hits, context_lines))
        results.sort(key=rank_key)
        return results

    def _read_lines(self, path: str) -> Optional[List[str]]:
        try:
            data = (self.root / path).read_bytes()
        except OSError:
            return None
        return split_lines(data)

    def _build_results(self, path: str, hits: List[VectorHit], context_lines: int) -> List[SearchResult]:
        file_lines = self._read_lines(path)
        max_end = max(int(h.payload["end_line"]) for h in hits)
        if file_lines is not None and len(file_lines) < max_end:
            logger.debug(f"{path} is shorter than when it was indexed; using stored text")
            file_lines = None

        if file_lines is None:
            line_count = max_end
            context_lines = 0
        else:
            line_count = len(file_lines)

        ranged = []
        for hit in hits:
            start, end = int(hit.payload["start_line"]), int(hit.payload["end_line"])
            ctx_start, ctx_end = clip_context(start, end, context_lines, line_count)
            ranged.append((ctx_start, ctx_end, start, end, hit))
        ranged.sort(key=lambda r: (r[0], r[1], -r[4].score, r[4].id))

        groups: List[_Group] = []
        for ctx_start, ctx_end, start, end, hit in ranged:
            current = groups[-1] if groups else None
            if current is not None and ctx_start <= current.context_end + 1:
                current.context_end = max(current.context_end, ctx_end)
                current.start_line = min(current.start_line, start)
                current.end_line = max(current.end_line, end)
                if hit.score > current.score:
                    current.score = hit.score
                    current.kind = hit.payload.get("kind", "")
                current.hits.append(hit)
            else:
                groups.append(_Group(
                    start_line=start,
                    end_line=end,
                    context_start=ctx_start,
                    context_end=ctx_end,
                    score=hit.score,
                    kind=hit.payload.get("kind", ""),
                    hits=[hit],
                ))

        results = []
        for group in groups:
            if file_lines is not None:
                lines = file_lines[group.context_start - 1:group.context_end]
            else:
                lines = self._stored_lines(group)
            results.append(SearchResult(
                path=path,
                start_line=group.start_line,
                end_line=group.end_line,
                score=group.score,
                kind=group.kind,
                context_start=group.context_start,
                context_end=group.context_end,
                lines=lines,
                chunk_ids=sorted(h.id for h in group.hits),
            ))
        return results

    @staticmethod
    def _stored_lines(group: _Group) -> List[str]:
        """Rebuild a span's lines from the chunk text kept in the store."""
        known: Dict[int, str] = {}
        for hit in group.hits:
            first = int(hit.payload["start_line"])
            text = str(hit.payload.get("text", ""))
            for offset, line in enumerate(split_lines(text.encode("utf-8"))):
                known.setdefault(first + offset, line)
        return [known.get(n, "") for n in range(group.context_start, group.context_end + 1)]


def run_query(
    root: Path,
    text: str,
    k: Optional[int] = None,
    context_lines: Optional[int] = None,
    embed_model: Optional[BaseEmbedding] = None,
    store: Optional[VectorStore] = None,
) -> List[SearchResult]:
    with QueryEngine(root, embed_model=embed_model, store=store) as engine:
        return engine.query(text, k=k, context_lines=context_lines)


def run_similar(
    root: Path,
    path: str | Path,
    k: Optional[int] = None,
    context_lines: Optional[int] = None,
    embed_model: Optional[BaseEmbedding] = None,
    store: Optional[VectorStore] = None,
) -> List[SearchResult]:
    with QueryEngine(root, embed_model=embed_model, store=store) as engine:
        return engine.similar(path, k=k, context_lines=context_lines)
