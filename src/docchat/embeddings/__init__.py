"""Embedding services and chunk stores."""

from .service import (
    EmbeddingBackend,
    EmbeddingClient,
    EmbeddingConfig,
    HashEmbeddingBackend,
    HuggingFaceEmbeddingBackend,
)
from .store import ChromaChunkStore, ChunkStore, InMemoryChunkStore

__all__ = [
    "ChromaChunkStore",
    "ChunkStore",
    "EmbeddingBackend",
    "EmbeddingClient",
    "EmbeddingConfig",
    "HashEmbeddingBackend",
    "HuggingFaceEmbeddingBackend",
    "InMemoryChunkStore",
]
