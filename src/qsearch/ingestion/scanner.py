#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
"""
File scanner: walks a repository and decides which files are indexable.

Hidden entries, the ``.qs`` directory and anything matched by ``.gitignore``
(root or nested), ``.qsignore`` or the ``ignore_paths`` setting are skipped
silently. Files rejected for their extension, size or content are reported
as excluded so callers can show why they never reached the index.
"""
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Dict, Iterator, List, Mapping, Optional, Tuple

import pathspec

from ..cfgload import QS_DIR, IndexSettings
from ..errors import ScanError
from ..utils.hashing import content_hash

if TYPE_CHECKING:
    from ..storage.manifest import FileRecord

logger = logging.getLogger(__name__)

EXCLUDED_EXTENSION = "excluded-extension"
NOT_INCLUDED = "not-included"
TOO_LARGE = "too-large"
UNREADABLE = "unreadable"
BINARY = "binary"

BINARY_SNIFF_BYTES = 8192
IGNORE_FILES = (".gitignore",)
ROOT_IGNORE_FILE = ".qsignore"


@dataclass
class ScannedFile:
    """An indexable file as seen by the most recent scan."""

    path: str
    size: int
    mtime: float
    hash: str


@dataclass
class ExcludedFile:
    path: str
    reason: str


@dataclass
class ScanResult:
    files: List[ScannedFile] = field(default_factory=list)
    excluded: List[ExcludedFile] = field(default_factory=list)

    def by_path(self) -> Dict[str, ScannedFile]:
        return {f.path: f for f in self.files}


def file_extension(path: str) -> str:
    """Lower-cased extension without the dot, or "" when there is none."""
    suffix = PurePosixPath(path).suffix
    return suffix[1:].lower() if suffix else ""


def check_content(path: str, data: bytes) -> None:
    """Reject content that is not UTF-8 text.

    Raises:
        ScanError: with reason ``binary``.
    """
    if b"\0" in data[:BINARY_SNIFF_BYTES]:
        raise ScanError(path, BINARY, "NUL byte in header")
    try:
        data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ScanError(path, BINARY, f"not valid UTF-8 at byte {e.start}") from e


class FileScanner:
    """Scanner for a single repository root with filtering."""

    def __init__(self, root: Path, settings: IndexSettings):
        self.root = Path(root).resolve()
        self.settings = settings
        self._config_spec = self._compile(settings.ignore_paths)
        root_ignore = self.root / ROOT_IGNORE_FILE
        self._root_spec = self._read_spec(root_ignore) if root_ignore.is_file() else None

    @staticmethod
    def _compile(patterns: List[str]) -> Optional[pathspec.PathSpec]:
        patterns = [p for p in patterns if p and p.strip()]
        if not patterns:
            return None
        return pathspec.PathSpec.from_lines("gitwildmatch", patterns)

    def _read_spec(self, ignore_file: Path) -> Optional[pathspec.PathSpec]:
        try:
            patterns = ignore_file.read_text(encoding="utf-8").splitlines()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read ignore file {ignore_file}: {e}")
            return None
        return self._compile(patterns)

    def _is_ignored(
        self,
        rel_path: str,
        is_dir: bool,
        specs: List[Tuple[str, pathspec.PathSpec]],
    ) -> bool:
        """Check a root-relative POSIX path against every ignore rule in scope."""
        candidate = rel_path + "/" if is_dir else rel_path
        if self._config_spec and self._config_spec.match_file(candidate):
            return True
        if self._root_spec and self._root_spec.match_file(candidate):
            return True
        for base, spec in specs:
            if base:
                if not candidate.startswith(base + "/"):
                    continue
                local = candidate[len(base) + 1:]
            else:
                local = candidate
            if spec.match_file(local):
                return True
        return False

    def iter_candidates(self) -> Iterator[Tuple[str, Path]]:
        """Yield (relative path, absolute path) of every non-ignored file, unsorted."""
        # (base dir, spec) pairs of every .gitignore in scope, per directory
        spec_by_dir: Dict[str, List[Tuple[str, pathspec.PathSpec]]] = {}

        for dirpath, dirs, files in os.walk(self.root):
            current = Path(dirpath)
            rel_dir = current.relative_to(self.root).as_posix()
            rel_dir = "" if rel_dir == "." else rel_dir

            parent_key = rel_dir.rsplit("/", 1)[0] if "/" in rel_dir else ""
            specs = list(spec_by_dir.get(parent_key, [])) if rel_dir else []
            for name in IGNORE_FILES:
                if name in files:
                    spec = self._read_spec(current / name)
                    if spec is not None:
                        specs.append((rel_dir, spec))
            spec_by_dir[rel_dir] = specs

            def rel(name: str) -> str:
                return f"{rel_dir}/{name}" if rel_dir else name

            # Prune hidden and ignored directories in-place to prevent descent
            dirs[:] = sorted(
                d for d in dirs
                if d != QS_DIR
                and not d.startswith(".")
                and not (current / d).is_symlink()
                and not self._is_ignored(rel(d), True, specs)
            )

            for name in sorted(files):
                if name.startswith("."):
                    continue
                rel_path = rel(name)
                if self._is_ignored(rel_path, False, specs):
                    continue
                abs_path = current / name
                if not abs_path.is_file():
                    continue
                yield rel_path, abs_path

    def check_extension(self, rel_path: str) -> None:
        ext = file_extension(rel_path)
        if ext and ext in self.settings.exclude_extensions:
            raise ScanError(rel_path, EXCLUDED_EXTENSION, ext)
        if self.settings.include_extensions and ext not in self.settings.include_extensions:
            raise ScanError(rel_path, NOT_INCLUDED, ext or "no extension")

    def read_file(self, rel_path: str) -> Tuple[bytes, os.stat_result]:
        """Read a file's bytes, enforcing the size limit and text-content rule.

        Raises:
            ScanError: when the file is too large, unreadable or binary.
        """
        abs_path = self.root / rel_path
        try:
            stat = abs_path.stat()
            if stat.st_size > self.settings.max_file_size:
                raise ScanError(rel_path, TOO_LARGE, f"{stat.st_size} bytes")
            with open(abs_path, "rb") as f:
                data = f.read(self.settings.max_file_size + 1)
        except OSError as e:
            raise ScanError(rel_path, UNREADABLE, str(e)) from e
        if len(data) > self.settings.max_file_size:
            raise ScanError(rel_path, TOO_LARGE, f"{len(data)} bytes")
        check_content(rel_path, data)
        return data, stat

    def _scan_one(self, rel_path: str, abs_path: Path, tracked: Optional[Mapping[str, "FileRecord"]]) -> ScannedFile:
        self.check_extension(rel_path)

        if self.settings.trust_mtime and tracked is not None:
            cached = tracked.get(rel_path)
            if cached is not None:
                try:
                    stat = abs_path.stat()
                except OSError as e:
                    raise ScanError(rel_path, UNREADABLE, str(e)) from e
                # Fast path: reuse stored hash when size and mtime are unchanged
                if cached.size == stat.st_size and cached.mtime == stat.st_mtime:
                    return ScannedFile(rel_path, stat.st_size, stat.st_mtime, cached.hash)

        data, stat = self.read_file(rel_path)
        return ScannedFile(
            path=rel_path,
            size=len(data),
            mtime=stat.st_mtime,
            hash=content_hash(data),
        )

    def scan(self, tracked: Optional[Mapping[str, "FileRecord"]] = None) -> ScanResult:
        """Scan the repository.

        Args:
            tracked: Optional manifest records keyed by relative path. Used
                for the mtime fast path when ``trust_mtime`` is enabled.

        Returns:
            ScanResult with files and exclusions, each sorted by path.
        """
        result = ScanResult()
        for rel_path, abs_path in self.iter_candidates():
            try:
                result.files.append(self._scan_one(rel_path, abs_path, tracked))
            except ScanError as e:
                logger.debug(f"Excluded {e}")
                result.excluded.append(ExcludedFile(rel_path, e.reason))

        result.files.sort(key=lambda f: f.path)
        result.excluded.sort(key=lambda f: f.path)
        return result
