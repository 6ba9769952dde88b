#!/usr/bin/env python3
"""End-to-end tests for incremental indexing against a temporary repository.

Every test indexes with the Bag-of-Words mock model, the real SQLite manifest
and the real on-disk vector shard.
"""

import copy
import threading

import pytest

from conftest import ExplodingEmbedding, save_config, write_file
from qsearch.cfgload import load_config, manifest_path, shard_dir
from qsearch.errors import ConfigMismatchError, StoreError
from qsearch.index import FULL, INCREMENTAL, STAGE_EMBED, STAGE_STORE, run_index
from qsearch.ingestion.chunking import WINDOW, Chunk, ExtractionResult
from qsearch.storage.manifest import Manifest
from qsearch.storage.vectors import SimpleVectorShard, VectorEntry
from qsearch.sync import FileUpdate, IndexSynchronizer
from qsearch.utils.hashing import chunk_id, content_hash
from qsearch.utils.progress import NullProgress

PY_MODULE = (
    "import os\n"
    "\n"
    "\n"
    "def load(path):\n"
    "    return open(path).read()\n"
    "\n"
    "\n"
    "def save(path, data):\n"
    "    open(path, 'w').write(data)\n"
)


class ExplodingStore(SimpleVectorShard):
    """Vector shard that rejects upserts for one file."""

    def __init__(self, shard_dir, bad_path):
        super().__init__(shard_dir)
        self.bad_path = bad_path

    def upsert(self, entries):
        if any(e.payload["path"] == self.bad_path for e in entries):
            raise StoreError("disk full")
        super().upsert(entries)


class CancelAfter(NullProgress):
    """Progress sink that requests cancellation once ``n`` files have finished."""

    def __init__(self, cancel, n):
        self.cancel = cancel
        self.n = n
        self.seen = 0

    def advance(self, step=1):
        self.seen += step
        if self.seen >= self.n:
            self.cancel.set()


def records(repo):
    return Manifest(manifest_path(repo)).get_all_records()


def stored_ids(repo):
    return SimpleVectorShard(shard_dir(repo)).ids()


def manifest_ids(repo):
    return {cid for r in records(repo).values() for cid in r.chunk_ids}


def index(repo, model, mode=INCREMENTAL, **kwargs):
    return run_index(repo, mode=mode, embed_model=model, config=load_config(repo), **kwargs)


# =============================================================================
# Core incremental behaviour
# =============================================================================

class TestIncrementalIndexing:
    """Tests for add / modify / delete handling across runs."""

    def test_first_run_indexes_everything(self, repo, mock_embed_model):
        write_file(repo, "src/io.py", PY_MODULE)
        write_file(repo, "README.md", "# Project\n\nLoads and saves files.\n")

        report = index(repo, mock_embed_model)

        assert report.added == ["README.md", "src/io.py"]
        assert report.failed == []
        assert set(records(repo)) == {"README.md", "src/io.py"}
        assert manifest_ids(repo) == stored_ids(repo)
        assert report.chunks_embedded == len(stored_ids(repo))

    def test_second_run_is_a_no_op(self, repo, mock_embed_model):
        """An unchanged tree produces zero store mutations."""
        write_file(repo, "src/io.py", PY_MODULE)
        write_file(repo, "notes.txt", "remember the milk\n")
        index(repo, mock_embed_model)
        before = stored_ids(repo)

        report = index(repo, mock_embed_model)

        assert report.store_mutations == 0
        assert report.chunks_embedded == 0
        assert (report.added, report.modified, report.removed) == ([], [], [])
        assert report.unchanged == 2
        assert stored_ids(repo) == before

    def test_modified_file_only_reembeds_changed_chunks(self, repo, mock_embed_model):
        write_file(repo, "src/io.py", PY_MODULE)
        index(repo, mock_embed_model)
        old_ids = set(records(repo)["src/io.py"].chunk_ids)

        write_file(repo, "src/io.py", PY_MODULE.replace("write(data)", "write(data + '')"))
        report = index(repo, mock_embed_model)

        new_ids = set(records(repo)["src/io.py"].chunk_ids)
        assert report.modified == ["src/io.py"]
        assert report.chunks_embedded == 1
        assert len(old_ids - new_ids) == 1
        assert stored_ids(repo) == new_ids

    def test_editing_earlier_function_keeps_later_vectors(self, repo, mock_embed_model):
        """A length change in one function does not re-embed the functions after it."""
        write_file(repo, "src/io.py", PY_MODULE)
        index(repo, mock_embed_model)
        old_ids = records(repo)["src/io.py"].chunk_ids

        write_file(repo, "src/io.py", PY_MODULE.replace("open(path).read()", "open(path, 'rb').read()"))
        report = index(repo, mock_embed_model)

        new_ids = records(repo)["src/io.py"].chunk_ids
        assert report.chunks_embedded == 1
        assert new_ids[0] == old_ids[0]
        assert new_ids[1] != old_ids[1]
        assert new_ids[2] == old_ids[2]
        assert stored_ids(repo) == set(new_ids)

    def test_other_files_untouched_by_an_edit(self, repo, mock_embed_model):
        """Editing one file leaves every other record exactly as it was."""
        write_file(repo, "a.py", PY_MODULE)
        write_file(repo, "b.py", "def b():\n    return 2\n")
        write_file(repo, "docs/c.md", "# C\n\nNotes.\n")
        index(repo, mock_embed_model)
        before = records(repo)

        write_file(repo, "a.py", PY_MODULE.replace("import os", "import sys"))
        report = index(repo, mock_embed_model)

        after = records(repo)
        assert report.modified == ["a.py"]
        assert after["b.py"] == before["b.py"]
        assert after["docs/c.md"] == before["docs/c.md"]
        assert after["a.py"].hash != before["a.py"].hash

    def test_update_after_full_index_changes_nothing(self, repo, mock_embed_model):
        write_file(repo, "a.py", PY_MODULE)
        write_file(repo, "b.txt", "plain text\n")
        index(repo, mock_embed_model, mode=FULL)
        before = records(repo)

        report = index(repo, mock_embed_model, mode=INCREMENTAL)

        assert records(repo) == before
        assert report.store_mutations == 0

    def test_deleted_file_leaves_no_vectors(self, repo, mock_embed_model):
        write_file(repo, "keep.py", "def keep():\n    return 1\n")
        gone = write_file(repo, "gone.py", "def gone():\n    return 2\n")
        index(repo, mock_embed_model)
        gone_ids = set(records(repo)["gone.py"].chunk_ids)

        gone.unlink()
        report = index(repo, mock_embed_model)

        assert report.removed == ["gone.py"]
        assert "gone.py" not in records(repo)
        assert not gone_ids & stored_ids(repo)
        store = SimpleVectorShard(shard_dir(repo))
        assert all(store.get_payload(i)["path"] != "gone.py" for i in store.ids())

    def test_rename_is_delete_plus_add(self, repo, mock_embed_model):
        path = write_file(repo, "old_name.py", "def f():\n    return 1\n")
        index(repo, mock_embed_model)

        path.rename(repo / "new_name.py")
        report = index(repo, mock_embed_model)

        assert report.removed == ["old_name.py"]
        assert report.added == ["new_name.py"]
        assert set(records(repo)) == {"new_name.py"}

    def test_incremental_equals_fresh_build(self, repo, tmp_path, mock_embed_model):
        """Any edit sequence ends in the same chunk IDs as indexing the final tree once."""
        write_file(repo, "a.py", PY_MODULE)
        write_file(repo, "b.txt", "first draft\n")
        index(repo, mock_embed_model)
        write_file(repo, "a.py", PY_MODULE.replace("import os", "import sys"))
        (repo / "b.txt").unlink()
        write_file(repo, "c.md", "# Title\n\nBody text.\n")
        index(repo, mock_embed_model)

        from qsearch.cfgload import init_repository

        fresh = tmp_path / "fresh"
        fresh.mkdir()
        init_repository(fresh)
        save_config(fresh, load_config(repo))
        write_file(fresh, "a.py", PY_MODULE.replace("import os", "import sys"))
        write_file(fresh, "c.md", "# Title\n\nBody text.\n")
        index(fresh, mock_embed_model)

        assert stored_ids(repo) == stored_ids(fresh)
        assert manifest_ids(repo) == manifest_ids(fresh)

    def test_excluded_files_are_counted_not_indexed(self, repo, mock_embed_model):
        write_file(repo, "data.bin", b"\x00\x01\x02binary")
        write_file(repo, "ok.py", "x = 1\n")

        report = index(repo, mock_embed_model)

        assert report.added == ["ok.py"]
        assert report.excluded == 1
        assert "data.bin" not in records(repo)

    def test_empty_file_is_tracked_without_chunks(self, repo, mock_embed_model):
        write_file(repo, "__init__.py", "")
        report = index(repo, mock_embed_model)
        assert report.added == ["__init__.py"]
        assert records(repo)["__init__.py"].chunk_ids == []

    def test_small_checkpoint_interval(self, repo, mock_embed_model):
        config = copy.deepcopy(load_config(repo))
        config["indexing"]["checkpoint_interval_files"] = 1
        save_config(repo, config)
        for i in range(5):
            write_file(repo, f"m{i}.py", f"def f{i}():\n    return {i}\n")

        report = index(repo, mock_embed_model)

        assert len(report.added) == 5
        assert manifest_ids(repo) == stored_ids(repo)


# =============================================================================
# Failure handling
# =============================================================================

class TestFailures:
    """A failing file is reported and skipped; the rest of the run completes."""

    def test_embedding_failure_skips_file(self, repo, mock_embed_model):
        write_file(repo, "good.py", "def good():\n    return 1\n")
        write_file(repo, "bad.py", "def bad():\n    return 'EXPLODE'\n")

        report = index(repo, ExplodingEmbedding())

        assert report.added == ["good.py"]
        assert [(f.path, f.stage) for f in report.failed] == [("bad.py", STAGE_EMBED)]
        assert set(records(repo)) == {"good.py"}
        assert manifest_ids(repo) == stored_ids(repo)

        # The file is picked up again once the model cooperates
        retry = index(repo, mock_embed_model)
        assert retry.added == ["bad.py"]
        assert retry.failed == []

    def test_embedding_failure_keeps_previous_version(self, repo, mock_embed_model):
        write_file(repo, "a.py", "def a():\n    return 1\n")
        index(repo, mock_embed_model)
        old = records(repo)["a.py"]

        write_file(repo, "a.py", "def a():\n    return 'EXPLODE'\n")
        report = index(repo, ExplodingEmbedding())

        assert [f.path for f in report.failed] == ["a.py"]
        assert records(repo)["a.py"].hash == old.hash
        assert stored_ids(repo) == set(old.chunk_ids)

    def test_store_failure_skips_file(self, repo, mock_embed_model):
        write_file(repo, "ok.py", "def ok():\n    return 1\n")
        write_file(repo, "bad.py", "def bad():\n    return 2\n")
        store = ExplodingStore(shard_dir(repo), bad_path="bad.py")

        report = index(repo, mock_embed_model, store=store)

        assert [(f.path, f.stage) for f in report.failed] == [("bad.py", STAGE_STORE)]
        assert set(records(repo)) == {"ok.py"}
        assert manifest_ids(repo) == stored_ids(repo)


# =============================================================================
# Reconciliation
# =============================================================================

class TestReconciliation:
    """Manifest and store disagreements are repaired at the start of a run."""

    def test_orphan_vectors_are_removed(self, repo, mock_embed_model):
        write_file(repo, "a.py", "def a():\n    return 1\n")
        index(repo, mock_embed_model)

        store = SimpleVectorShard(shard_dir(repo))
        store.upsert([VectorEntry("orphan", [1.0] * 384, {"path": "ghost.py", "start_line": 1, "end_line": 1})])
        store.persist()

        report = index(repo, mock_embed_model)

        assert "orphan" not in stored_ids(repo)
        assert report.store_mutations == 1
        assert manifest_ids(repo) == stored_ids(repo)

    def test_missing_vectors_are_rebuilt(self, repo, mock_embed_model):
        write_file(repo, "a.py", "def a():\n    return 1\n")
        index(repo, mock_embed_model)
        chunk_ids = records(repo)["a.py"].chunk_ids

        store = SimpleVectorShard(shard_dir(repo))
        store.delete(chunk_ids)
        store.persist()

        report = index(repo, mock_embed_model)

        assert report.modified == ["a.py"]
        assert stored_ids(repo) == set(chunk_ids)


# =============================================================================
# Configuration changes
# =============================================================================

class TestConfigChanges:
    """Tests for the persisted config snapshot."""

    def test_model_change_refused_in_incremental_mode(self, repo, mock_embed_model):
        write_file(repo, "a.py", "x = 1\n")
        index(repo, mock_embed_model)

        config = copy.deepcopy(load_config(repo))
        config["embedding"]["model"] = "another-model"
        save_config(repo, config)

        with pytest.raises(ConfigMismatchError):
            index(repo, mock_embed_model)

    def test_model_change_rebuilds_in_full_mode(self, repo, mock_embed_model):
        write_file(repo, "a.py", "x = 1\n")
        index(repo, mock_embed_model)

        config = copy.deepcopy(load_config(repo))
        config["embedding"]["model"] = "another-model"
        save_config(repo, config)

        report = index(repo, mock_embed_model, mode=FULL)

        assert report.wiped
        assert report.added == ["a.py"]
        assert Manifest(manifest_path(repo)).get_snapshot()["model"] == "another-model"
        assert manifest_ids(repo) == stored_ids(repo)

    def test_chunk_size_change_reextracts_all_files(self, repo, mock_embed_model):
        write_file(repo, "a.py", "x = 1\n")
        write_file(repo, "b.md", "hello\n")
        index(repo, mock_embed_model)

        config = copy.deepcopy(load_config(repo))
        config["indexing"]["chunk_size"] = 500
        config["indexing"]["chunk_overlap"] = 50
        save_config(repo, config)

        report = index(repo, mock_embed_model)
        assert report.modified == ["a.py", "b.md"]
        assert Manifest(manifest_path(repo)).get_snapshot()["chunk_size"] == 500

        again = index(repo, mock_embed_model)
        assert again.modified == []


# =============================================================================
# Cancellation
# =============================================================================

class TestCancellation:
    """A cancelled run commits what it finished and the next run completes."""

    def test_cancelled_before_processing(self, repo, mock_embed_model):
        write_file(repo, "a.py", "x = 1\n")
        cancel = threading.Event()
        cancel.set()

        report = index(repo, mock_embed_model, cancel=cancel)

        assert report.cancelled
        assert report.added == []
        assert records(repo) == {}

        resumed = index(repo, mock_embed_model)
        assert resumed.added == ["a.py"]
        assert not resumed.cancelled

    def test_cancelled_mid_run_keeps_applied_files(self, repo, mock_embed_model):
        """Files applied before the cancel are committed; the next run does the rest."""
        paths = [f"m{i}.py" for i in range(6)]
        for i, path in enumerate(paths):
            write_file(repo, path, f"def f{i}():\n    return {i}\n")
        cancel = threading.Event()

        report = index(repo, mock_embed_model, cancel=cancel, progress=CancelAfter(cancel, 2))

        assert report.cancelled
        assert len(report.added) == 2
        assert set(records(repo)) == set(report.added)
        assert manifest_ids(repo) == stored_ids(repo)

        resumed = index(repo, mock_embed_model)
        assert not resumed.cancelled
        assert sorted(report.added + resumed.added) == paths
        assert set(records(repo)) == set(paths)
        assert manifest_ids(repo) == stored_ids(repo)


# =============================================================================
# Reused chunks
# =============================================================================

class TestReusedChunks:
    """A chunk that keeps its ID keeps its vector; its payload follows the file."""

    TEXT = "def f():\n    return 1\n"

    def extraction(self, kind, start_byte=0):
        piece_hash = content_hash(self.TEXT.encode())
        chunk = Chunk(
            id=chunk_id("a.py", 1, 2, piece_hash),
            path="a.py",
            start_byte=start_byte,
            end_byte=start_byte + len(self.TEXT),
            start_line=1,
            end_line=2,
            kind=kind,
            hash=piece_hash,
            text=self.TEXT,
        )
        return ExtractionResult(path="a.py", hash=piece_hash, line_count=2, chunks=[chunk])

    @pytest.fixture
    def synced(self, tmp_path):
        manifest = Manifest(tmp_path / "manifest.db")
        store = SimpleVectorShard()
        sync = IndexSynchronizer(manifest, store)
        first = self.extraction(WINDOW)
        sync.apply_file(
            FileUpdate("a.py", len(self.TEXT), 0.0, first, vectors={first.chunk_ids[0]: [1.0, 0.0]}),
            None,
        )
        sync.checkpoint()
        return sync, manifest.get_record("a.py")

    def test_relabelled_chunk_gets_new_kind(self, synced):
        sync, prior = synced
        relabelled = self.extraction("function")
        cid = relabelled.chunk_ids[0]
        assert cid == prior.chunk_ids[0]

        sync.apply_file(FileUpdate("a.py", len(self.TEXT), 0.0, relabelled), prior)

        assert sync.store.get_payload(cid)["kind"] == "function"
        assert sync.store.get_vectors([cid]) == {cid: [1.0, 0.0]}

    def test_shifted_chunk_gets_new_offsets(self, synced):
        sync, prior = synced
        shifted = self.extraction(WINDOW, start_byte=7)

        sync.apply_file(FileUpdate("a.py", len(self.TEXT) + 7, 0.0, shifted), prior)

        assert sync.store.get_payload(shifted.chunk_ids[0])["start_byte"] == 7

    def test_identical_chunk_is_not_rewritten(self, synced):
        sync, prior = synced
        before = sync.mutations

        sync.apply_file(FileUpdate("a.py", len(self.TEXT), 0.0, self.extraction(WINDOW)), prior)

        assert sync.mutations == before
