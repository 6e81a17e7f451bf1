"""Chunk store implementations scoped by owner and collection."""

from __future__ import annotations

import itertools
import json
import math
import threading
from pathlib import Path
from typing import Dict, Iterable, Mapping, MutableMapping, Protocol, Sequence

import chromadb
from chromadb.api import ClientAPI
from chromadb.api.types import Documents, Embeddings as ChromaEmbeddings, IDs, Metadatas

from docchat.models import Chunk, ScoredChunk


class ChunkStore(Protocol):
    """Protocol for chunk persistence backends."""

    def add(self, chunks: Sequence[Chunk]) -> Sequence[str]:
        """Persist pre-embedded chunks produced by the ingestion pipeline."""

    def query(
        self,
        vector: Sequence[float],
        *,
        owner_id: str,
        collection_id: str,
        limit: int,
    ) -> Sequence[ScoredChunk]:
        """Return up to ``limit`` chunks of one owner's collection, most similar first."""

    def count(self, collection_id: str | None = None) -> int:
        """Return number of stored chunks, optionally for one collection."""


def clamp_similarity(value: float) -> float:
    if value < 0.0:
        return 0.0
    if value > 1.0:
        return 1.0
    return value


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    if len(left) != len(right) or not left:
        return 0.0
    dot = sum(a * b for a, b in zip(left, right))
    norm = math.sqrt(sum(a * a for a in left)) * math.sqrt(sum(b * b for b in right))
    if not norm:
        return 0.0
    return dot / norm


class InMemoryChunkStore:
    """Exact cosine search over chunks held in process memory."""

    def __init__(self) -> None:
        self._chunks: Dict[str, tuple[int, Chunk]] = {}
        self._sequence = itertools.count()
        self._lock = threading.Lock()

    def add(self, chunks: Sequence[Chunk]) -> Sequence[str]:
        with self._lock:
            for chunk in chunks:
                existing = self._chunks.get(chunk.chunk_id)
                sequence = existing[0] if existing else next(self._sequence)
                self._chunks[chunk.chunk_id] = (sequence, chunk)
        return [chunk.chunk_id for chunk in chunks]

    def query(
        self,
        vector: Sequence[float],
        *,
        owner_id: str,
        collection_id: str,
        limit: int,
    ) -> Sequence[ScoredChunk]:
        if limit <= 0:
            return []
        with self._lock:
            candidates = [
                (sequence, chunk)
                for sequence, chunk in self._chunks.values()
                if chunk.owner_id == owner_id and chunk.collection_id == collection_id
            ]
        scored = [
            ScoredChunk(
                chunk=chunk,
                similarity=clamp_similarity(cosine_similarity(vector, chunk.embedding)),
                sequence=sequence,
            )
            for sequence, chunk in candidates
        ]
        scored.sort(key=lambda item: (-item.similarity, item.sequence))
        return scored[:limit]

    def count(self, collection_id: str | None = None) -> int:
        with self._lock:
            if collection_id is None:
                return len(self._chunks)
            return sum(1 for _, chunk in self._chunks.values() if chunk.collection_id == collection_id)


class ChromaChunkStore:
    """Chroma-backed chunk store using cosine distance."""

    def __init__(
        self,
        collection_name: str = "docchat-chunks",
        *,
        client: ClientAPI | None = None,
        persist_directory: str | Path | None = None,
    ) -> None:
        if client is not None:
            self._client = client
        elif persist_directory is not None:
            self._client = chromadb.PersistentClient(path=str(persist_directory))
        else:
            self._client = chromadb.EphemeralClient()
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )
        self._lock = threading.Lock()

    def add(self, chunks: Sequence[Chunk]) -> Sequence[str]:
        if not chunks:
            return []
        with self._lock:
            ids: IDs = [chunk.chunk_id for chunk in chunks]
            known = self._known_sequences(ids)
            # count() only grows for ids not stored yet
            next_sequence = int(self._collection.count())
            metadatas: Metadatas = []
            for chunk in chunks:
                sequence = known.get(chunk.chunk_id)
                if sequence is None:
                    sequence = next_sequence
                    next_sequence += 1
                metadatas.append(self._serialize_chunk(chunk, sequence=sequence))
            documents: Documents = [chunk.content for chunk in chunks]
            vectors: ChromaEmbeddings = [list(chunk.embedding) for chunk in chunks]
            self._collection.upsert(ids=ids, documents=documents, embeddings=vectors, metadatas=metadatas)
        return list(ids)

    def query(
        self,
        vector: Sequence[float],
        *,
        owner_id: str,
        collection_id: str,
        limit: int,
    ) -> Sequence[ScoredChunk]:
        if limit <= 0:
            return []
        where = {"$and": [{"owner_id": owner_id}, {"collection_id": collection_id}]}
        results = self._collection.query(
            query_embeddings=[list(vector)],
            n_results=limit,
            where=where,
            include=["documents", "metadatas", "distances"],
        )
        return self._deserialize_results(results)

    def count(self, collection_id: str | None = None) -> int:
        if collection_id is None:
            return int(self._collection.count())
        batch = self._collection.get(where={"collection_id": collection_id}, include=[])
        return len(batch.get("ids") or [])

    def _known_sequences(self, ids: Sequence[str]) -> Dict[str, int]:
        existing = self._collection.get(ids=list(ids), include=["metadatas"])
        found = existing.get("ids") or []
        metadatas = existing.get("metadatas") or []
        return {
            chunk_id: int(metadata.get("seq", 0))
            for chunk_id, metadata in zip(found, metadatas)
            if metadata is not None
        }

    def _serialize_chunk(self, chunk: Chunk, *, sequence: int) -> MutableMapping[str, object]:
        metadata: MutableMapping[str, object] = {
            "owner_id": chunk.owner_id,
            "collection_id": chunk.collection_id,
            "seq": sequence,
            "chunk_metadata": self._dumps(chunk.metadata),
        }
        if chunk.file_name:
            metadata["file_name"] = chunk.file_name
        return metadata

    def _deserialize_results(self, results: Mapping[str, object]) -> Sequence[ScoredChunk]:
        ids = self._first(results.get("ids", []))
        documents = self._first(results.get("documents", []))
        metadatas = self._first(results.get("metadatas", []))
        distances = self._first(results.get("distances", []))
        scored: list[ScoredChunk] = []
        if not ids or not documents or not metadatas or not distances:
            return scored
        for chunk_id, document, metadata, distance in zip(ids, documents, metadatas, distances, strict=False):
            chunk = Chunk(
                chunk_id=chunk_id,
                owner_id=str(metadata.get("owner_id", "")),
                collection_id=str(metadata.get("collection_id", "")),
                content=document,
                embedding=(),
                metadata=self._loads_dict(metadata.get("chunk_metadata")),
            )
            scored.append(
                ScoredChunk(
                    chunk=chunk,
                    similarity=clamp_similarity(1.0 - float(distance)),
                    sequence=int(metadata.get("seq", 0)),
                )
            )
        return scored

    @staticmethod
    def _first(value: object) -> Iterable:
        if isinstance(value, list):
            return value[0] if value else []
        return []

    @staticmethod
    def _dumps(value: object) -> str:
        try:
            return json.dumps(value, default=str)
        except TypeError:
            return json.dumps({}, default=str)

    @staticmethod
    def _loads_dict(value: object) -> Dict[str, object]:
        if isinstance(value, str) and value:
            try:
                loaded = json.loads(value)
                if isinstance(loaded, dict):
                    return loaded
            except json.JSONDecodeError:
                return {}
        if isinstance(value, Mapping):
            return dict(value)
        return {}
