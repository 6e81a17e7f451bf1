"""Similarity retrieval scoped to one owner's collection."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Sequence

from docchat.embeddings.store import ChunkStore
from docchat.errors import RetrievalError
from docchat.metrics.observability import PipelineMetrics, get_logger
from docchat.models import RetrievedSource, ScoredChunk


@dataclass(frozen=True)
class RetrievalConfig:
    """Configuration for retrieval."""

    # Extra candidates fetched so ties at the cut-off resolve by ingestion order
    candidate_multiplier: int = 2
    max_top_k: int | None = 20


class ChunkRetriever:
    """Returns the top-k passages above a similarity threshold for one owner+collection."""

    def __init__(self, store: ChunkStore, config: RetrievalConfig | None = None) -> None:
        self._store = store
        self._config = config or RetrievalConfig()
        self._logger = get_logger("retrieval")

    async def retrieve(
        self,
        query_vector: Sequence[float],
        owner_id: str,
        collection_id: str,
        k: int,
        threshold: float,
    ) -> Sequence[RetrievedSource]:
        if k <= 0:
            return []
        if self._config.max_top_k:
            k = min(k, self._config.max_top_k)
        start = time.perf_counter()
        try:
            candidates = await asyncio.to_thread(
                self._store.query,
                query_vector,
                owner_id=owner_id,
                collection_id=collection_id,
                limit=k * max(1, self._config.candidate_multiplier),
            )
        except Exception as exc:
            PipelineMetrics.record_upstream_failure("retrieval")
            self._logger.error("retrieval.failed", collection_id=collection_id, detail=str(exc))
            raise RetrievalError("Failed to retrieve document context") from exc
        selected = self.select(candidates, owner_id=owner_id, collection_id=collection_id, k=k, threshold=threshold)
        duration = time.perf_counter() - start
        PipelineMetrics.observe_retrieval(duration, len(selected), (source.similarity for source in selected))
        self._logger.info(
            "retrieval.complete",
            collection_id=collection_id,
            candidate_count=len(candidates),
            source_count=len(selected),
            duration_seconds=duration,
            top_k=k,
            threshold=threshold,
        )
        return selected

    @staticmethod
    def select(
        candidates: Sequence[ScoredChunk],
        *,
        owner_id: str,
        collection_id: str,
        k: int,
        threshold: float,
    ) -> list[RetrievedSource]:
        scoped = [
            item
            for item in candidates
            if item.chunk.owner_id == owner_id
            and item.chunk.collection_id == collection_id
            and item.similarity > threshold
        ]
        scoped.sort(key=lambda item: (-item.similarity, item.sequence))
        return [
            RetrievedSource(
                chunk_id=item.chunk.chunk_id,
                content=item.chunk.content,
                similarity=item.similarity,
                file_name=item.chunk.file_name,
            )
            for item in scoped[:k]
        ]
