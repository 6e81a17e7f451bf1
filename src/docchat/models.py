"""Shared domain models used across the DocChat pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Sequence, Tuple, Union

Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class Chunk:
    """Stored passage of extracted document text with its precomputed embedding."""

    chunk_id: str
    owner_id: str
    collection_id: str
    content: str
    embedding: Tuple[float, ...]
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def file_name(self) -> str | None:
        value = self.metadata.get("fileName") or self.metadata.get("file_name")
        return str(value) if value else None


@dataclass(frozen=True)
class ScoredChunk:
    """Chunk returned from a store query together with its similarity and ingestion order."""

    chunk: Chunk
    similarity: float
    sequence: int


@dataclass(frozen=True)
class RetrievedSource:
    """Passage selected to ground an answer, in final citation order."""

    chunk_id: str
    content: str
    similarity: float
    file_name: str | None = None

    def preview(self, max_chars: int | None) -> "RetrievedSource":
        if not max_chars or len(self.content) <= max_chars:
            return self
        return replace(self, content=self.content[:max_chars])

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "chunkId": self.chunk_id,
            "content": self.content,
            "similarity": self.similarity,
        }
        if self.file_name:
            payload["fileName"] = self.file_name
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RetrievedSource":
        return cls(
            chunk_id=str(payload["chunkId"]),
            content=str(payload.get("content", "")),
            similarity=float(payload.get("similarity", 0.0)),
            file_name=payload.get("fileName"),
        )


@dataclass(frozen=True)
class ChatMessage:
    """One turn of the conversation history supplied by the caller."""

    role: Role
    content: str


@dataclass(frozen=True)
class StoredMessage:
    """Persisted half of an exchange in a collection's message log."""

    collection_id: str
    owner_id: str
    role: Role
    content: str
    sources: Sequence[RetrievedSource] | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class SourcesResolved:
    sources: Sequence[RetrievedSource]


@dataclass(frozen=True)
class Done:
    text: str


@dataclass(frozen=True)
class StreamError:
    kind: Literal["upstream", "timeout"]


StreamEvent = Union[TextDelta, SourcesResolved, Done, StreamError]
