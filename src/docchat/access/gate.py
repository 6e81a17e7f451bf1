"""Caller identity and authorization for both chat paths."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import TYPE_CHECKING

from docchat.access.identity import IdentityResolver
from docchat.access.rate_limit import RateLimiter, RateLimitRule
from docchat.access.validation import is_valid_uuid
from docchat.errors import AuthenticationError, InputError, NotFoundError, PermissionDeniedError, RateLimitedError
from docchat.metrics.observability import get_logger
from docchat.storage.base import CollectionStore, ShareTokenStore

if TYPE_CHECKING:
    from docchat.policy import ChatPolicy


def hash_client_address(address: str) -> str:
    """Irreversible fingerprint of a network address for abuse auditing."""

    return hashlib.sha256(address.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class AccessGrant:
    """Resolved scope of one chat request.

    ``owner_id`` scopes retrieval and is never taken from caller input;
    ``author_id`` is the user id written on persisted messages.
    """

    collection_id: str
    owner_id: str
    author_id: str
    policy: ChatPolicy
    client_fingerprint: str | None = None

    @property
    def anonymous(self) -> bool:
        return self.client_fingerprint is not None


class AccessGate:
    """Resolves who is calling and what they may read."""

    def __init__(
        self,
        *,
        rate_limiter: RateLimiter,
        identity: IdentityResolver,
        collections: CollectionStore,
        share_tokens: ShareTokenStore,
        share_token_length: tuple[int, int] = (10, 64),
    ) -> None:
        self._rate_limiter = rate_limiter
        self._identity = identity
        self._collections = collections
        self._share_tokens = share_tokens
        self._min_token, self._max_token = share_token_length
        self._logger = get_logger("access")

    def authenticate(self, authorization: str | None) -> str:
        user_id = self._identity.resolve(authorization)
        if not user_id:
            raise AuthenticationError()
        return user_id

    def enforce(self, rule: RateLimitRule, identifier: str, *, message: str | None = None) -> None:
        if not self._rate_limiter.check(rule, identifier):
            raise RateLimitedError(message, retry_after=rule.retry_after)

    def authorize_owner(
        self,
        user_id: str,
        collection_id: str | None,
        policy: ChatPolicy,
        *,
        require_ready: bool = True,
    ) -> AccessGrant:
        if not collection_id or not is_valid_uuid(collection_id):
            raise InputError("Invalid collectionId")
        collection = self._collections.get(collection_id)
        # Missing and foreign collections look the same to the caller
        if collection is None:
            raise NotFoundError("Collection not found")
        if collection.owner_id != user_id and not self._collections.is_member(collection_id, user_id):
            self._logger.info("access.collection_denied", collection_id=collection_id)
            raise NotFoundError("Collection not found")
        if require_ready and not collection.is_ready:
            raise InputError("Collection is still processing")
        return AccessGrant(
            collection_id=collection.collection_id,
            owner_id=collection.owner_id,
            author_id=user_id,
            policy=policy,
        )

    def authorize_share(self, token: str | None, client_address: str, policy: ChatPolicy) -> AccessGrant:
        fingerprint = hash_client_address(client_address)
        self.enforce(
            policy.rate_limit,
            fingerprint,
            message="Chat limit reached. Try again in an hour, or sign up for full access.",
        )
        if not token or not self._min_token <= len(token) <= self._max_token:
            raise NotFoundError("Invalid or expired share link")
        validation = self._share_tokens.validate(token)
        if validation is None or not validation.is_valid:
            raise NotFoundError("Invalid or expired share link")
        if validation.permissions != "chat":
            raise PermissionDeniedError("This shared collection is view-only")
        return AccessGrant(
            collection_id=validation.collection_id,
            owner_id=validation.owner_id,
            # Stored under the owner to satisfy row-level policies
            author_id=validation.owner_id,
            policy=policy,
            client_fingerprint=fingerprint,
        )


def resolve_client_address(forwarded_for: str | None, peer: str | None, *, trust_forwarded_for: bool = True) -> str:
    if trust_forwarded_for and forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    return peer or "unknown"
