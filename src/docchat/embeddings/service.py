"""Query embedding backends and the retrying async client in front of them."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol, Sequence, Tuple

from langchain_community.embeddings import HuggingFaceEmbeddings
from langchain_core.embeddings import Embeddings as LangChainEmbeddings

from docchat.errors import EmbeddingError
from docchat.metrics.observability import PipelineMetrics, get_logger

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding backends."""

    model: str = "BAAI/bge-base-en-v1.5"
    dim: int = 768
    use_model: bool = False
    device: str | None = None
    normalize: bool = True
    cache_folder: str | None = None


class EmbeddingBackend(Protocol):
    """Protocol describing embedding behaviour."""

    def embed_query(self, query: str) -> Tuple[float, ...]:
        """Return embedding vector for a query string."""


def normalize_vector(vector: Sequence[float]) -> Tuple[float, ...]:
    norm = math.sqrt(sum(value * value for value in vector)) or 1.0
    return tuple(value / norm for value in vector)


class HashEmbeddingBackend:
    """Deterministic lightweight embedding fallback used for testing."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()

    def _hash_to_vector(self, text: str) -> Tuple[float, ...]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        repeat = (self._config.dim + len(digest) - 1) // len(digest)
        raw = (digest * repeat)[: self._config.dim]
        vector = [byte / 255.0 for byte in raw]
        if self._config.normalize:
            return normalize_vector(vector)
        return tuple(vector)

    def embed_query(self, query: str) -> Tuple[float, ...]:
        return self._hash_to_vector(query)


class HuggingFaceEmbeddingBackend:
    """Embedding backend that loads a sentence-embedding model via LangChain."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()
        self._delegate = HashEmbeddingBackend(self._config)
        self._client: LangChainEmbeddings | None = None
        if not self._config.use_model:
            LOGGER.info("HuggingFaceEmbeddingBackend running in hash-only mode.")
            return
        try:
            model_kwargs = {"device": self._config.device} if self._config.device else {}
            self._client = HuggingFaceEmbeddings(
                model_name=self._config.model,
                model_kwargs=model_kwargs,
                cache_folder=self._config.cache_folder,
                encode_kwargs={"normalize_embeddings": self._config.normalize},
            )
            LOGGER.info("Loaded embedding model %s", self._config.model)
        except Exception as exc:  # pragma: no cover - model load failure
            LOGGER.warning("Falling back to hash embeddings: %s", exc)
            self._client = None

    def embed_query(self, query: str) -> Tuple[float, ...]:
        if self._client is None:
            return self._delegate.embed_query(query)
        return tuple(self._client.embed_query(query))


def _is_rate_limited(exc: BaseException) -> bool:
    text = str(exc).lower()
    return "429" in text or "quota" in text


class EmbeddingClient:
    """Turns question text into a normalized vector, retrying upstream rate limits."""

    def __init__(
        self,
        backend: EmbeddingBackend,
        *,
        dim: int,
        max_retries: int = 5,
        retry_base_seconds: float = 6.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self._dim = dim
        self._max_retries = max_retries
        self._retry_base = retry_base_seconds
        self._sleep = sleep
        self._logger = get_logger("embedding")

    async def embed(self, text: str) -> Tuple[float, ...]:
        attempt = 0
        while True:
            start = time.perf_counter()
            try:
                vector = await asyncio.to_thread(self._backend.embed_query, text)
            except Exception as exc:
                rate_limited = _is_rate_limited(exc)
                self._logger.error(
                    "embedding.failed",
                    attempt=attempt,
                    rate_limited=rate_limited,
                    text_length=len(text),
                    detail=str(exc),
                )
                if rate_limited and attempt < self._max_retries:
                    wait = self._retry_base * (2**attempt)
                    self._logger.warning("embedding.retrying", wait_seconds=wait, attempt=attempt + 1)
                    await self._sleep(wait)
                    attempt += 1
                    continue
                PipelineMetrics.record_upstream_failure("embedding")
                raise EmbeddingError() from exc
            PipelineMetrics.observe_embedding(time.perf_counter() - start)
            if len(vector) != self._dim:
                self._logger.warning("embedding.dim_mismatch", configured=self._dim, actual=len(vector))
            return normalize_vector(vector)
