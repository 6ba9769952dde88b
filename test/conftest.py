"""Shared pytest fixtures for qsearch tests."""
import copy
import json
import sys
from pathlib import Path

import pytest

# Make the src layout importable without installing the package
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from qsearch.cfgload import config_path, init_repository, load_config, reload_config  # noqa: E402

EMBED_DIM = 384


def _bow_vector(text: str):
    vec = [0.0] * EMBED_DIM
    for word in text.lower().split():
        model_idx = sum(ord(c) for c in word) % EMBED_DIM
        vec[model_idx] += 1.0
    return vec


@pytest.fixture
def mock_embed_model():
    """Create a Bag-of-Words mock embedding model for deterministic tests.

    This mock creates vectors based on word hashes, avoiding the need
    to load heavy ML models during tests.
    """
    from llama_index.core.embeddings import BaseEmbedding

    class BoWEmbedding(BaseEmbedding):
        """Simple Bag-of-Words embedding for testing."""

        def _get_query_embedding(self, query: str):
            return _bow_vector(query)

        def _get_text_embedding(self, text: str):
            return _bow_vector(text)

        async def _aget_query_embedding(self, query: str):
            return _bow_vector(query)

    return BoWEmbedding(model_name="mock-bow")


class ExplodingEmbedding:
    """Embeds like the BoW mock but fails any batch containing a trigger word."""

    def __init__(self, trigger: str = "EXPLODE"):
        self.trigger = trigger
        self.calls = 0

    def _get_text_embeddings(self, texts):
        self.calls += 1
        if any(self.trigger in t for t in texts):
            raise RuntimeError("model crashed")
        return [_bow_vector(t) for t in texts]

    def get_query_embedding(self, query):
        return _bow_vector(query)


@pytest.fixture
def exploding_embed_model():
    return ExplodingEmbedding()


def write_file(root: Path, rel_path: str, content) -> Path:
    """Write text or bytes under ``root``, creating parent directories."""
    path = root / rel_path
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content, encoding="utf-8")
    return path


def save_config(root: Path, config: dict) -> None:
    config_path(root).write_text(json.dumps(config, indent=2), encoding="utf-8")
    reload_config()


@pytest.fixture
def repo(tmp_path):
    """Create an initialized repository configured for the BoW mock model.

    Returns the repository root. Its ``.qs/config.json`` uses model
    ``mock-bow`` with 384 dimensions so the mock's vectors are accepted.
    """
    root = tmp_path / "repo"
    root.mkdir()
    init_repository(root)

    config = copy.deepcopy(load_config(root))
    config["embedding"]["model"] = "mock-bow"
    config["embedding"]["dimension"] = EMBED_DIM
    config["embedding"]["timeout_seconds"] = 30
    config["indexing"]["parallel_workers"] = 2
    save_config(root, config)
    return root


@pytest.fixture
def repo_config(repo):
    """Fresh, mutable copy of the repository's configuration."""
    return copy.deepcopy(load_config(repo))
