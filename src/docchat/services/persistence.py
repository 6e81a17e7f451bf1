"""Writes completed exchanges to the collection's message log."""

from __future__ import annotations

import asyncio
from typing import Sequence

from docchat.access.gate import AccessGrant
from docchat.metrics.observability import PipelineMetrics, get_logger
from docchat.models import RetrievedSource, StoredMessage
from docchat.storage.base import MessageStore


class ExchangePersister:
    """Persists the question and the full answer once a stream has completed.

    Failures are logged and counted; the answer has already been delivered, so they
    never propagate to the caller.
    """

    def __init__(self, store: MessageStore) -> None:
        self._store = store
        self._logger = get_logger("exchange")

    async def persist(
        self,
        grant: AccessGrant,
        question: str,
        answer: str,
        sources: Sequence[RetrievedSource],
    ) -> bool:
        messages = [
            StoredMessage(
                collection_id=grant.collection_id,
                owner_id=grant.author_id,
                role="user",
                content=question,
                sources=None,
            ),
            StoredMessage(
                collection_id=grant.collection_id,
                owner_id=grant.author_id,
                role="assistant",
                content=answer,
                sources=list(sources) or None,
            ),
        ]
        try:
            await asyncio.to_thread(self._store.insert_many, messages)
        except Exception as exc:
            PipelineMetrics.persistence_failures.inc()
            self._logger.error(
                "exchange.persist_failed",
                collection_id=grant.collection_id,
                policy=grant.policy.name,
                detail=str(exc),
            )
            return False
        if grant.anonymous:
            self._logger.info(
                "shared_chat.exchange",
                anonymous=grant.client_fingerprint,
                collection_id=grant.collection_id,
            )
        self._logger.info(
            "exchange.persisted",
            collection_id=grant.collection_id,
            policy=grant.policy.name,
            source_count=len(sources),
        )
        return True
