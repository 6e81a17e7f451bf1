from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Iterator

import jwt
import pytest
from fastapi.testclient import TestClient

from docchat.access import RateLimiter
from docchat.api.app import build_dependencies, create_app
from docchat.config import Settings
from docchat.embeddings import EmbeddingConfig, HashEmbeddingBackend, InMemoryChunkStore
from docchat.models import Chunk
from docchat.storage import (
    CollectionRecord,
    InMemoryCollectionStore,
    InMemoryMessageStore,
    InMemoryShareTokenStore,
    ShareTokenRecord,
)

TEST_SECRET = "docchat-test-secret-0123456789abcdef"
OWNER_ID = "user-owner"
MEMBER_ID = "user-member"
STRANGER_ID = "user-stranger"
COLLECTION_ID = "6f1c2d3e-4a5b-4c6d-8e7f-901234567890"
EMPTY_COLLECTION_ID = "11111111-2222-4333-8444-555555555555"
PROCESSING_COLLECTION_ID = "aaaaaaaa-bbbb-4ccc-8ddd-eeeeeeeeeeee"
CHAT_TOKEN = "chat-token-abcdef"
VIEW_TOKEN = "view-token-abcdef"


def make_token(user_id: str, *, secret: str = TEST_SECRET, expires_in: int = 3600) -> str:
    return jwt.encode({"sub": user_id, "exp": int(time.time()) + expires_in}, secret, algorithm="HS256")


def auth_header(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


def embed(text: str, dim: int = 768) -> tuple[float, ...]:
    return HashEmbeddingBackend(EmbeddingConfig(dim=dim)).embed_query(text)


def opposite(vector: tuple[float, ...]) -> tuple[float, ...]:
    return tuple(-value for value in vector)


def parse_sse(body: str) -> list[tuple[str, dict]]:
    events = []
    for block in body.strip().split("\n\n"):
        if not block:
            continue
        name = data = None
        for line in block.splitlines():
            if line.startswith("event: "):
                name = line[len("event: ") :]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: ") :])
        events.append((name, data))
    return events


@pytest.fixture
def settings() -> Settings:
    return Settings(environment="test", jwt_secret=TEST_SECRET, use_chroma=False)


@dataclass
class ChatEnv:
    client: TestClient
    collections: InMemoryCollectionStore
    share_tokens: InMemoryShareTokenStore
    messages: InMemoryMessageStore
    chunk_store: InMemoryChunkStore
    rate_limiter: RateLimiter


@pytest.fixture
def chat_env(settings: Settings) -> Iterator[ChatEnv]:
    collections = InMemoryCollectionStore(
        [
            CollectionRecord(collection_id=COLLECTION_ID, owner_id=OWNER_ID),
            CollectionRecord(collection_id=EMPTY_COLLECTION_ID, owner_id=OWNER_ID),
            CollectionRecord(collection_id=PROCESSING_COLLECTION_ID, owner_id=OWNER_ID, status="processing"),
        ]
    )
    collections.add_member(COLLECTION_ID, MEMBER_ID)
    share_tokens = InMemoryShareTokenStore(
        [
            ShareTokenRecord(token=CHAT_TOKEN, collection_id=COLLECTION_ID, owner_id=OWNER_ID, permissions="chat"),
            ShareTokenRecord(token=VIEW_TOKEN, collection_id=COLLECTION_ID, owner_id=OWNER_ID, permissions="view"),
        ]
    )
    messages = InMemoryMessageStore()
    chunk_store = InMemoryChunkStore()
    chunk_store.add(
        [
            Chunk(
                chunk_id="chunk-refund",
                owner_id=OWNER_ID,
                collection_id=COLLECTION_ID,
                content="Refunds are issued within 14 days of purchase.",
                embedding=embed("What is the refund policy?"),
                metadata={"fileName": "policy.pdf"},
            ),
            Chunk(
                chunk_id="chunk-unrelated",
                owner_id=OWNER_ID,
                collection_id=COLLECTION_ID,
                content="The office is closed on public holidays.",
                embedding=opposite(embed("What is the refund policy?")),
                metadata={"fileName": "hours.txt"},
            ),
        ]
    )
    rate_limiter = RateLimiter()
    deps = build_dependencies(
        settings,
        chunk_store=chunk_store,
        collections=collections,
        share_tokens=share_tokens,
        messages=messages,
        rate_limiter=rate_limiter,
    )
    app = create_app(settings=settings, dependencies=deps)
    with TestClient(app) as client:
        yield ChatEnv(
            client=client,
            collections=collections,
            share_tokens=share_tokens,
            messages=messages,
            chunk_store=chunk_store,
            rate_limiter=rate_limiter,
        )
