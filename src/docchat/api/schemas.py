"""Pydantic models for the DocChat API."""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from docchat.models import ChatMessage, RetrievedSource, StoredMessage


class MessageModel(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(..., description="Message text")

    def to_domain(self) -> ChatMessage:
        return ChatMessage(role=self.role, content=self.content)


class ChatRequest(BaseModel):
    """Owner-path chat body."""

    model_config = ConfigDict(populate_by_name=True)

    messages: List[MessageModel] = Field(..., min_length=1, description="Conversation so far, oldest first")
    collection_id: Optional[str] = Field(
        default=None,
        alias="collectionId",
        description="Collection the question is answered against",
    )


class SharedChatRequest(BaseModel):
    """Anonymous share-path chat body; the collection comes from the token."""

    messages: List[MessageModel] = Field(..., min_length=1)


class SourceModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chunk_id: str = Field(..., alias="chunkId")
    content: str
    similarity: float = Field(..., ge=0.0, le=1.0)
    file_name: Optional[str] = Field(default=None, alias="fileName")

    @classmethod
    def from_domain(cls, source: RetrievedSource) -> "SourceModel":
        return cls(
            chunk_id=source.chunk_id,
            content=source.content,
            similarity=source.similarity,
            file_name=source.file_name,
        )


class StoredMessageModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    collection_id: str = Field(..., alias="collectionId")
    owner_id: str = Field(..., alias="ownerId")
    role: Literal["user", "assistant"]
    content: str
    sources: Optional[List[SourceModel]] = None
    created_at: str = Field(..., alias="createdAt")

    @classmethod
    def from_domain(cls, message: StoredMessage) -> "StoredMessageModel":
        return cls(
            collection_id=message.collection_id,
            owner_id=message.owner_id,
            role=message.role,
            content=message.content,
            sources=[SourceModel.from_domain(s) for s in message.sources] if message.sources else None,
            created_at=message.created_at.isoformat(),
        )


class MessageListResponse(BaseModel):
    messages: List[StoredMessageModel]


class ErrorResponse(BaseModel):
    error: str
    correlation_id: Optional[str] = None
