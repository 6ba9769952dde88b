"""Embedding models and dispatch."""

from .embeddings import (
    EmbeddingDispatcher,
    EmbeddingOutcome,
    create_embed_model,
    ensure_model_cached,
)

__all__ = [
    "EmbeddingDispatcher",
    "EmbeddingOutcome",
    "create_embed_model",
    "ensure_model_cached",
]
