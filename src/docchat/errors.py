"""Exception hierarchy mapped onto HTTP responses by the API layer."""

from __future__ import annotations


class DocChatError(RuntimeError):
    """Base error carrying a caller-safe message and an HTTP status."""

    status_code: int = 500
    default_message: str = "Internal Server Error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def headers(self) -> dict[str, str] | None:
        return None


class InputError(DocChatError):
    """Raised for malformed bodies, ids or message content."""

    status_code = 400
    default_message = "Invalid request"


class AuthenticationError(DocChatError):
    status_code = 401
    default_message = "Unauthorized"


class PermissionDeniedError(DocChatError):
    status_code = 403
    default_message = "Forbidden"


class NotFoundError(DocChatError):
    """Raised when a resource is missing or the caller may not know it exists."""

    status_code = 404
    default_message = "Not found"


class RateLimitedError(DocChatError):
    status_code = 429
    default_message = "Too many requests"

    def __init__(self, message: str | None = None, *, retry_after: int) -> None:
        super().__init__(message)
        self.retry_after = retry_after

    @property
    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class UpstreamError(DocChatError):
    """Raised when the embedding or generation service fails."""

    status_code = 500
    default_message = "Something went wrong. Please try again."


class EmbeddingError(UpstreamError):
    """Raised when a query embedding could not be produced."""


class RetrievalError(UpstreamError):
    """Raised when the chunk store cannot be queried."""


class GenerationError(UpstreamError):
    """Raised when the answer model fails mid-generation."""


class RequestTimeoutError(DocChatError):
    status_code = 504
    default_message = "Request timed out"


__all__ = [
    "AuthenticationError",
    "DocChatError",
    "EmbeddingError",
    "GenerationError",
    "InputError",
    "NotFoundError",
    "PermissionDeniedError",
    "RateLimitedError",
    "RequestTimeoutError",
    "RetrievalError",
    "UpstreamError",
]
