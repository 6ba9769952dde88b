#!/usr/bin/env python3
"""Tests for the file scanner and change detection."""

import os

import pytest

from conftest import write_file
from qsearch.cfgload import IndexSettings, init_repository
from qsearch.errors import ScanError
from qsearch.ingestion.changes import detect_changes
from qsearch.ingestion.scanner import (
    BINARY,
    EXCLUDED_EXTENSION,
    NOT_INCLUDED,
    TOO_LARGE,
    FileScanner,
    ScannedFile,
    ScanResult,
    check_content,
    file_extension,
)
from qsearch.storage.manifest import FileRecord
from qsearch.utils.hashing import content_hash


def make_settings(**overrides) -> IndexSettings:
    values = dict(
        model="mock-bow",
        dimension=384,
        chunk_size=2000,
        chunk_overlap=200,
        max_file_size=1024 * 1024,
    )
    values.update(overrides)
    return IndexSettings(**values)


def scanned_paths(result: ScanResult):
    return [f.path for f in result.files]


@pytest.fixture
def tree(tmp_path):
    root = tmp_path / "tree"
    root.mkdir()
    init_repository(root)
    return root


# =============================================================================
# Ignore rules
# =============================================================================

class TestIgnoreRules:
    """Tests for hidden entries and ignore files."""

    def test_skips_qs_and_hidden_entries(self, tree):
        """.qs, hidden directories and hidden files never appear."""
        write_file(tree, "main.py", "print('hi')\n")
        write_file(tree, ".git/config", "[core]\n")
        write_file(tree, ".env", "SECRET=1\n")
        write_file(tree, "pkg/.hidden.py", "x = 1\n")

        result = FileScanner(tree, make_settings()).scan()
        assert scanned_paths(result) == ["main.py"]
        assert result.excluded == []

    def test_root_gitignore(self, tree):
        """Patterns in the root .gitignore match files and directories."""
        write_file(tree, ".gitignore", "build/\n*.log\n")
        write_file(tree, "build/out.py", "x = 1\n")
        write_file(tree, "app.log", "started\n")
        write_file(tree, "src/main.py", "x = 2\n")

        result = FileScanner(tree, make_settings()).scan()
        assert scanned_paths(result) == ["src/main.py"]

    def test_nested_gitignore_is_scoped(self, tree):
        """A nested .gitignore applies only below its own directory."""
        write_file(tree, "sub/.gitignore", "secret.py\n")
        write_file(tree, "sub/secret.py", "token = 1\n")
        write_file(tree, "sub/public.py", "value = 1\n")
        write_file(tree, "other/secret.py", "token = 2\n")

        result = FileScanner(tree, make_settings()).scan()
        assert scanned_paths(result) == ["other/secret.py", "sub/public.py"]

    def test_negated_pattern(self, tree):
        write_file(tree, ".gitignore", "*.txt\n!keep.txt\n")
        write_file(tree, "drop.txt", "a\n")
        write_file(tree, "keep.txt", "b\n")

        result = FileScanner(tree, make_settings()).scan()
        assert scanned_paths(result) == ["keep.txt"]

    def test_qsignore_and_config_ignore_paths(self, tree):
        """.qsignore and the ignore_paths setting behave like .gitignore."""
        write_file(tree, ".qsignore", "vendor/\n")
        write_file(tree, "vendor/lib.py", "x = 1\n")
        write_file(tree, "docs/guide.md", "# Guide\n")
        write_file(tree, "app.py", "x = 2\n")

        result = FileScanner(tree, make_settings(ignore_paths=["docs/"])).scan()
        assert scanned_paths(result) == ["app.py"]

    def test_symlinked_directory_not_followed(self, tree, tmp_path):
        outside = tmp_path / "outside"
        write_file(outside, "far.py", "x = 1\n")
        write_file(tree, "near.py", "x = 2\n")
        try:
            os.symlink(outside, tree / "link", target_is_directory=True)
        except (OSError, NotImplementedError):
            pytest.skip("symlinks not supported")

        result = FileScanner(tree, make_settings()).scan()
        assert scanned_paths(result) == ["near.py"]


# =============================================================================
# Exclusions
# =============================================================================

class TestExclusions:
    """Files rejected by extension, size or content are reported with a reason."""

    def test_binary_and_invalid_utf8(self, tree):
        write_file(tree, "image.py", b"\x89PNG\x00\x01\x02")
        write_file(tree, "latin1.txt", "caf\xe9".encode("latin-1"))
        write_file(tree, "ok.txt", "café\n")

        result = FileScanner(tree, make_settings()).scan()
        assert scanned_paths(result) == ["ok.txt"]
        reasons = {e.path: e.reason for e in result.excluded}
        assert reasons == {"image.py": BINARY, "latin1.txt": BINARY}

    def test_too_large(self, tree):
        write_file(tree, "big.py", "x" * 50)
        write_file(tree, "small.py", "x")

        result = FileScanner(tree, make_settings(max_file_size=10)).scan()
        assert scanned_paths(result) == ["small.py"]
        assert [(e.path, e.reason) for e in result.excluded] == [("big.py", TOO_LARGE)]

    def test_extension_filters(self, tree):
        """exclude_extensions wins; include_extensions limits what is kept."""
        write_file(tree, "a.py", "x = 1\n")
        write_file(tree, "b.PY", "x = 2\n")
        write_file(tree, "c.md", "# c\n")
        write_file(tree, "Makefile", "all:\n")
        write_file(tree, "d.lock", "pinned\n")

        settings = make_settings(include_extensions=["py", "lock"], exclude_extensions=["lock"])
        result = FileScanner(tree, settings).scan()
        assert scanned_paths(result) == ["a.py", "b.PY"]
        reasons = {e.path: e.reason for e in result.excluded}
        assert reasons == {
            "Makefile": NOT_INCLUDED,
            "c.md": NOT_INCLUDED,
            "d.lock": EXCLUDED_EXTENSION,
        }

    def test_check_content_raises_scan_error(self):
        with pytest.raises(ScanError) as exc_info:
            check_content("x.bin", b"abc\x00def")
        assert exc_info.value.reason == BINARY
        assert exc_info.value.path == "x.bin"

    @pytest.mark.parametrize("path, ext", [
        ("src/main.PY", "py"),
        ("Makefile", ""),
        ("archive.tar.gz", "gz"),
    ])
    def test_file_extension(self, path, ext):
        assert file_extension(path) == ext


# =============================================================================
# Scan results
# =============================================================================

class TestScanResult:
    """Tests for what a scan reports about each file."""

    def test_sorted_with_hash_and_size(self, tree):
        write_file(tree, "z.py", "z = 1\n")
        write_file(tree, "a/b.py", "b = 1\n")
        write_file(tree, "m.py", "m = 1\n")

        result = FileScanner(tree, make_settings()).scan()
        assert scanned_paths(result) == ["a/b.py", "m.py", "z.py"]
        by_path = result.by_path()
        assert by_path["z.py"].hash == content_hash(b"z = 1\n")
        assert by_path["z.py"].size == 6

    def test_trust_mtime_reuses_stored_hash(self, tree):
        """With trust_mtime, a file whose size and mtime match is not re-read."""
        path = write_file(tree, "a.py", "a = 1\n")
        stat = path.stat()
        tracked = {"a.py": FileRecord("a.py", "stored-hash", stat.st_size, stat.st_mtime, ["c1"])}

        trusting = FileScanner(tree, make_settings(trust_mtime=True)).scan(tracked=tracked)
        assert trusting.by_path()["a.py"].hash == "stored-hash"

        strict = FileScanner(tree, make_settings()).scan(tracked=tracked)
        assert strict.by_path()["a.py"].hash == content_hash(b"a = 1\n")


# =============================================================================
# Change detection
# =============================================================================

class TestDetectChanges:
    """Tests for detect_changes."""

    def _scan(self, **hashes):
        return ScanResult(files=[ScannedFile(p, 1, 0.0, h) for p, h in sorted(hashes.items())])

    def _record(self, path, hash_):
        return FileRecord(path, hash_, 1, 0.0, [f"{path}-chunk"])

    def test_classifies_every_path(self):
        scan = self._scan(**{"new.py": "n", "same.py": "s", "edit.py": "e2"})
        records = {
            "same.py": self._record("same.py", "s"),
            "edit.py": self._record("edit.py", "e1"),
            "gone.py": self._record("gone.py", "g"),
        }
        changes = detect_changes(scan, records)
        assert changes.added == ["new.py"]
        assert changes.modified == ["edit.py"]
        assert changes.removed == ["gone.py"]
        assert changes.unchanged == ["same.py"]
        assert changes.to_process == ["edit.py", "new.py"]
        assert changes.stale_count == 3

    def test_forced_path_is_modified(self):
        scan = self._scan(**{"a.py": "h"})
        records = {"a.py": self._record("a.py", "h")}
        assert detect_changes(scan, records).is_empty()
        assert detect_changes(scan, records, force={"a.py"}).modified == ["a.py"]

    def test_mtime_alone_is_not_a_change(self):
        """Only the content hash decides whether a file changed."""
        scan = ScanResult(files=[ScannedFile("a.py", 1, 999.0, "h")])
        records = {"a.py": FileRecord("a.py", "h", 1, 1.0, [])}
        assert detect_changes(scan, records).unchanged == ["a.py"]

    def test_empty_manifest_adds_everything(self):
        scan = self._scan(**{"a.py": "1", "lib/b.py": "2", "c.md": "3"})
        changes = detect_changes(scan, {})
        assert changes.added == ["a.py", "c.md", "lib/b.py"]
        assert changes.modified == changes.removed == changes.unchanged == []
