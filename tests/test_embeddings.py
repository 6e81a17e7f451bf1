from __future__ import annotations

import math

import pytest

from docchat.embeddings import EmbeddingClient, EmbeddingConfig, HashEmbeddingBackend, HuggingFaceEmbeddingBackend
from docchat.errors import EmbeddingError


class FlakyBackend:
    def __init__(self, failures: list[Exception], vector=(3.0, 4.0)) -> None:
        self.failures = list(failures)
        self.vector = vector
        self.calls = 0

    def embed_query(self, query):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.vector


class RecordingSleep:
    def __init__(self) -> None:
        self.waits: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)


def test_hash_embedding_dim_matches_config():
    backend = HashEmbeddingBackend(EmbeddingConfig(dim=64))
    vec = backend.embed_query("hello world")
    assert isinstance(vec, tuple)
    assert len(vec) == 64
    assert math.isclose(math.sqrt(sum(v * v for v in vec)), 1.0, rel_tol=1e-9)


def test_hash_embedding_is_deterministic():
    backend = HuggingFaceEmbeddingBackend(EmbeddingConfig(dim=32, use_model=False))
    assert backend.embed_query("alpha") == backend.embed_query("alpha")
    assert backend.embed_query("alpha") != backend.embed_query("beta")


@pytest.mark.asyncio
async def test_client_normalizes_vectors():
    client = EmbeddingClient(FlakyBackend([]), dim=2)
    assert await client.embed("q") == pytest.approx((0.6, 0.8))


@pytest.mark.asyncio
async def test_rate_limited_calls_retry_with_exponential_backoff():
    sleep = RecordingSleep()
    backend = FlakyBackend([RuntimeError("429 Too Many Requests"), RuntimeError("quota exceeded")])
    client = EmbeddingClient(backend, dim=2, retry_base_seconds=6.0, sleep=sleep)

    assert await client.embed("q") == pytest.approx((0.6, 0.8))
    assert backend.calls == 3
    assert sleep.waits == [6.0, 12.0]


@pytest.mark.asyncio
async def test_retries_are_bounded():
    sleep = RecordingSleep()
    backend = FlakyBackend([RuntimeError("429")] * 10)
    client = EmbeddingClient(backend, dim=2, max_retries=2, sleep=sleep)

    with pytest.raises(EmbeddingError):
        await client.embed("q")
    assert backend.calls == 3
    assert len(sleep.waits) == 2


@pytest.mark.asyncio
async def test_other_failures_are_not_retried():
    sleep = RecordingSleep()
    backend = FlakyBackend([ValueError("bad input")])
    client = EmbeddingClient(backend, dim=2, sleep=sleep)

    with pytest.raises(EmbeddingError):
        await client.embed("q")
    assert backend.calls == 1
    assert sleep.waits == []
