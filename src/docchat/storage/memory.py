"""In-process stores used in tests and offline environments."""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Dict, Iterable, Sequence

from docchat.models import StoredMessage
from docchat.storage.base import CollectionRecord, ShareTokenRecord, ShareValidation


class InMemoryCollectionStore:
    def __init__(self, collections: Iterable[CollectionRecord] = ()) -> None:
        self._collections: Dict[str, CollectionRecord] = {c.collection_id: c for c in collections}
        self._members: defaultdict[str, set[str]] = defaultdict(set)

    def add(self, collection: CollectionRecord) -> None:
        self._collections[collection.collection_id] = collection

    def add_member(self, collection_id: str, user_id: str) -> None:
        self._members[collection_id].add(user_id)

    def get(self, collection_id: str) -> CollectionRecord | None:
        return self._collections.get(collection_id)

    def is_member(self, collection_id: str, user_id: str) -> bool:
        return user_id in self._members.get(collection_id, set())


class InMemoryShareTokenStore:
    def __init__(self, records: Iterable[ShareTokenRecord] = ()) -> None:
        self._records: Dict[str, ShareTokenRecord] = {r.token: r for r in records}

    def add(self, record: ShareTokenRecord) -> None:
        self._records[record.token] = record

    def validate(self, token: str) -> ShareValidation | None:
        record = self._records.get(token)
        if record is None:
            return None
        return ShareValidation(
            is_valid=record.is_valid(),
            collection_id=record.collection_id,
            owner_id=record.owner_id,
            permissions=record.permissions,
        )


class InMemoryMessageStore:
    def __init__(self) -> None:
        self._messages: list[StoredMessage] = []
        self._lock = threading.Lock()

    def insert_many(self, messages: Sequence[StoredMessage]) -> None:
        with self._lock:
            self._messages.extend(messages)

    def list_for_collection(self, collection_id: str, limit: int = 100) -> Sequence[StoredMessage]:
        with self._lock:
            return [m for m in self._messages if m.collection_id == collection_id][:limit]

    def all(self) -> Sequence[StoredMessage]:
        with self._lock:
            return list(self._messages)
