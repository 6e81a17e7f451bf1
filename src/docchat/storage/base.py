"""Records and store protocols for the relational side of DocChat."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Protocol, Sequence

from docchat.models import StoredMessage

Permission = Literal["view", "chat"]


@dataclass(frozen=True)
class CollectionRecord:
    """Document collection ("notebook") as seen by the chat pipeline."""

    collection_id: str
    owner_id: str
    status: str = "ready"

    @property
    def is_ready(self) -> bool:
        return self.status == "ready"


@dataclass(frozen=True)
class ShareTokenRecord:
    token: str
    collection_id: str
    owner_id: str
    permissions: Permission
    is_active: bool = True
    expires_at: datetime | None = None

    def is_valid(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.is_active and (self.expires_at is None or self.expires_at > now)


@dataclass(frozen=True)
class ShareValidation:
    """Result of validating an anonymous share token."""

    is_valid: bool
    collection_id: str
    owner_id: str
    permissions: Permission


class CollectionStore(Protocol):
    def get(self, collection_id: str) -> CollectionRecord | None:
        """Return the collection or None when it does not exist."""

    def is_member(self, collection_id: str, user_id: str) -> bool:
        """Return True when the user has been granted membership on the collection."""


class ShareTokenStore(Protocol):
    def validate(self, token: str) -> ShareValidation | None:
        """Return the validation record for the token, or None when it never existed."""


class MessageStore(Protocol):
    def insert_many(self, messages: Sequence[StoredMessage]) -> None:
        """Append the messages to their collection's log."""

    def list_for_collection(self, collection_id: str, limit: int = 100) -> Sequence[StoredMessage]:
        """Return the first ``limit`` messages of the collection in creation order."""
