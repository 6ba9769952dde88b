#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
"""
Embedding model management and batch dispatch.

``create_embed_model`` builds the FastEmbed-backed llama-index embedding used
in production. ``EmbeddingDispatcher`` wraps any llama-index ``BaseEmbedding``
with batching, a per-batch timeout and a single retry, and isolates failures
to the batch that caused them.
"""
import logging
import os
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional

from llama_index.core.embeddings import BaseEmbedding
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..errors import ConfigMismatchError, EmbeddingError

logger = logging.getLogger(__name__)

# One initial attempt plus one retry
MAX_ATTEMPTS = 2


def get_cached_model_path(cache_dir: Path, model_name: str) -> Optional[Path]:
    """Get the cached model directory path using huggingface_hub's snapshot_download.

    This works completely offline and bypasses fastembed's download API calls.

    Returns:
        Path to the cached model directory, or None if not found
    """
    from fastembed import TextEmbedding
    from huggingface_hub import snapshot_download
    from huggingface_hub.errors import LocalEntryNotFoundError

    models = TextEmbedding.list_supported_models()
    model_info = [m for m in models if m.get("model") == model_name]
    if not model_info:
        return None
    hf_source = model_info[0].get("sources", {}).get("hf")
    if not hf_source:
        return None
    try:
        model_dir = snapshot_download(
            repo_id=hf_source,
            local_files_only=True,
            cache_dir=str(cache_dir.resolve()),
        )
    except (LocalEntryNotFoundError, OSError):
        return None
    return Path(model_dir).resolve()


def configure_offline_mode(offline: bool, cache_dir: Path) -> None:
    """Configure environment variables for offline mode."""
    if offline:
        os.environ["HF_HUB_OFFLINE"] = "1"
        cache_dir_abs = str(cache_dir.resolve())
        os.environ["HF_HOME"] = cache_dir_abs
        os.environ["HF_HUB_CACHE"] = cache_dir_abs
        logger.info("Offline mode enabled.")
    else:
        os.environ.pop("HF_HUB_OFFLINE", None)


def model_cache_dir(config: dict[str, Any]) -> Path:
    return Path(os.path.expanduser(config["embedding"]["cache_dir"]))


def create_embed_model(config: dict[str, Any], offline: Optional[bool] = None) -> BaseEmbedding:
    """Create a FastEmbedEmbedding instance for the configured model."""
    from llama_index.embeddings.fastembed import FastEmbedEmbedding

    model_name = config["embedding"]["model"]
    cache_dir = model_cache_dir(config)
    offline = config["embedding"].get("offline", False) if offline is None else offline
    configure_offline_mode(offline, cache_dir)

    kwargs: dict[str, Any] = {
        "model_name": model_name,
        "cache_dir": str(cache_dir),
        # The dispatcher does its own batching; let FastEmbed take each batch whole
        "embed_batch_size": max(int(config["embedding"].get("batch_size", 32)), 1),
        "threads": os.cpu_count(),
    }
    if offline:
        cached_model_path = get_cached_model_path(cache_dir, model_name)
        if cached_model_path:
            logger.info(f"Using cached model path to bypass download: {cached_model_path}")
            kwargs["specific_model_path"] = str(cached_model_path)
        else:
            logger.warning("Could not find cached model path, falling back to normal initialization")

    return FastEmbedEmbedding(**kwargs)


def ensure_model_cached(config: dict[str, Any]) -> Path:
    """Download the embedding model into the cache if needed. Returns the cache dir."""
    cache_dir = model_cache_dir(config)
    cache_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"Downloading {config['embedding']['model']} into {cache_dir}")
    try:
        create_embed_model(config, offline=False)
    except (ValueError, OSError, RuntimeError) as e:
        raise EmbeddingError(f"Failed to download/initialize model: {e}") from e
    return cache_dir


@dataclass
class EmbeddingOutcome:
    """Vectors aligned with the input texts; None where the batch failed."""

    vectors: List[Optional[List[float]]]
    errors: List[str] = field(default_factory=list)

    @property
    def failed_count(self) -> int:
        return sum(1 for v in self.vectors if v is None)

    @property
    def ok(self) -> bool:
        return self.failed_count == 0


class EmbeddingDispatcher:
    """Runs embedding batches with a timeout, one retry and failure isolation."""

    def __init__(
        self,
        embed_model: BaseEmbedding,
        dimension: int,
        batch_size: int = 32,
        timeout: float = 120.0,
        max_workers: int | None = None,
    ):
        self.embed_model = embed_model
        self.dimension = dimension
        self.batch_size = max(batch_size, 1)
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or os.cpu_count() or 4,
            thread_name_prefix="qs-embed",
        )

    def close(self) -> None:
        # Timed-out calls may still be running; don't block on them
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _call(self, fn: Callable[[], Any], what: str) -> Any:
        future = self._executor.submit(fn)
        try:
            return future.result(timeout=self.timeout)
        except FuturesTimeoutError as e:
            future.cancel()
            raise EmbeddingError(f"{what} timed out after {self.timeout}s") from e
        except (EmbeddingError, ConfigMismatchError):
            raise
        except Exception as e:
            raise EmbeddingError(f"{what} failed: {e}") from e

    def _check_dimension(self, vector: List[float]) -> None:
        if len(vector) != self.dimension:
            raise ConfigMismatchError(
                f"Embedding model returned {len(vector)}-dimensional vectors, "
                f"index is configured for {self.dimension}"
            )

    @retry(
        stop=stop_after_attempt(MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        retry=retry_if_exception_type(EmbeddingError),
        reraise=True,
    )
    def _embed_batch(self, batch: List[str]) -> List[List[float]]:
        vectors = self._call(
            lambda: self.embed_model._get_text_embeddings(batch),
            f"Embedding batch of {len(batch)}",
        )
        if len(vectors) != len(batch):
            raise EmbeddingError(f"Expected {len(batch)} vectors, got {len(vectors)}")
        vectors = [list(map(float, v)) for v in vectors]
        for vector in vectors:
            self._check_dimension(vector)
        return vectors

    def embed_texts(self, texts: List[str]) -> EmbeddingOutcome:
        """Embed texts batch by batch.

        A batch that still fails after its retry leaves None in its slots and
        the remaining batches carry on.

        Raises:
            ConfigMismatchError: when the model's vector dimension is wrong.
        """
        outcome = EmbeddingOutcome(vectors=[None] * len(texts))
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start:start + self.batch_size]
            try:
                vectors = self._embed_batch(batch)
            except EmbeddingError as e:
                logger.warning(f"Embedding batch {start // self.batch_size + 1} failed: {e}")
                outcome.errors.append(str(e))
                continue
            outcome.vectors[start:start + len(batch)] = vectors
        return outcome

    @retry(
        stop=stop_after_attempt(MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        retry=retry_if_exception_type(EmbeddingError),
        reraise=True,
    )
    def embed_query(self, text: str) -> List[float]:
        vector = self._call(
            lambda: self.embed_model.get_query_embedding(text),
            "Query embedding",
        )
        vector = list(map(float, vector))
        self._check_dimension(vector)
        return vector
