"""Chat orchestration: retrieval, grounding, streaming and persistence."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Sequence

from docchat.access.gate import AccessGrant
from docchat.access.validation import sanitize_text
from docchat.embeddings.service import EmbeddingClient
from docchat.errors import InputError, RequestTimeoutError, UpstreamError
from docchat.metrics.observability import get_logger
from docchat.models import ChatMessage, RetrievedSource
from docchat.retrieval.service import ChunkRetriever
from docchat.services.context import ContextAssembler, dedupe_sources
from docchat.services.generation import GenerationBackend, TemplateGenerator
from docchat.services.persistence import ExchangePersister
from docchat.services.streamer import AnswerStream, StreamState


@dataclass
class PreparedChat:
    """A chat request whose context is ready and whose answer can now be streamed."""

    grant: AccessGrant
    question: str
    stream: AnswerStream
    persister: ExchangePersister

    @property
    def sources(self) -> Sequence[RetrievedSource]:
        return self.stream.sources

    async def finalize(self) -> bool:
        """Persist the exchange if, and only if, the stream completed."""

        if self.stream.state is not StreamState.COMPLETED or self.stream.text is None:
            return False
        return await self.persister.persist(self.grant, self.question, self.stream.text, self.stream.sources)


class ChatService:
    """One pipeline shared by the owner and anonymous share paths.

    The :class:`~docchat.policy.ChatPolicy` on the grant decides retrieval depth and
    whether upstream failures degrade to an answer without sources.
    """

    def __init__(
        self,
        *,
        embedder: EmbeddingClient,
        retriever: ChunkRetriever,
        persister: ExchangePersister,
        generator: GenerationBackend | None = None,
        assembler: ContextAssembler | None = None,
        timeout_seconds: float = 60.0,
        max_history_messages: int = 50,
    ) -> None:
        self._embedder = embedder
        self._retriever = retriever
        self._persister = persister
        self._generator = generator or TemplateGenerator()
        self._assembler = assembler or ContextAssembler()
        self._timeout = timeout_seconds
        self._max_history = max_history_messages
        self._logger = get_logger("chat")

    async def prepare(self, grant: AccessGrant, messages: Sequence[ChatMessage]) -> PreparedChat:
        if not messages or messages[-1].role != "user":
            raise InputError("Last message must be from user")
        history = [
            ChatMessage(role=message.role, content=sanitize_text(message.content))
            for message in messages[-self._max_history :]
        ]
        question = history[-1].content
        deadline = asyncio.get_running_loop().time() + self._timeout
        try:
            retrieved = await asyncio.wait_for(self._resolve_sources(grant, question), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            self._logger.error("chat.timeout", stage="retrieval", collection_id=grant.collection_id)
            raise RequestTimeoutError() from exc

        context = self._assembler.assemble(dedupe_sources(retrieved))
        stream = AnswerStream(self._generator, deadline=deadline)
        stream.prepare(
            context,
            instructions=grant.policy.system_prompt,
            messages=history,
            sources=[source.preview(grant.policy.source_preview_chars) for source in context.sources],
        )
        return PreparedChat(grant=grant, question=question, stream=stream, persister=self._persister)

    async def _resolve_sources(self, grant: AccessGrant, question: str) -> Sequence[RetrievedSource]:
        policy = grant.policy
        try:
            vector = await self._embedder.embed(question)
            return await self._retriever.retrieve(
                vector,
                grant.owner_id,
                grant.collection_id,
                policy.top_k,
                policy.threshold,
            )
        except UpstreamError as exc:
            if not policy.degrade_on_upstream_failure:
                self._logger.error("chat.upstream_failed", policy=policy.name, error=type(exc).__name__)
                raise
            self._logger.warning("chat.degraded", policy=policy.name, error=type(exc).__name__)
            return []
