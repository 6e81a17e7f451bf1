"""Bearer-token identity resolution for the owner path."""

from __future__ import annotations

from typing import Protocol, Sequence

import jwt

from docchat.metrics.observability import get_logger

LOGGER = get_logger("identity")


class IdentityResolver(Protocol):
    """Resolve the stable user id behind an Authorization header."""

    def resolve(self, authorization: str | None) -> str | None:
        """Return the user id, or None when the caller is not authenticated."""


class JWTIdentityResolver:
    """Verifies HS256 bearer tokens issued by the identity provider."""

    def __init__(
        self,
        secret: str | None,
        *,
        issuer: str | None = None,
        algorithms: Sequence[str] = ("HS256",),
    ) -> None:
        self._secret = secret
        self._issuer = issuer
        self._algorithms = list(algorithms)

    def resolve(self, authorization: str | None) -> str | None:
        if not authorization or not authorization.startswith("Bearer "):
            return None
        if not self._secret:
            LOGGER.error("identity.misconfigured", detail="jwt secret is not set")
            return None
        token = authorization[len("Bearer ") :].strip()
        options = {"require": ["sub", "exp"]}
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=self._algorithms,
                issuer=self._issuer,
                options=options,
            )
        except jwt.PyJWTError as exc:
            LOGGER.info("identity.rejected", reason=type(exc).__name__)
            return None
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            return None
        return subject
