"""Retrieval components."""

from .service import ChunkRetriever, RetrievalConfig

__all__ = ["ChunkRetriever", "RetrievalConfig"]
