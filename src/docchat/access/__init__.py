"""Access control: rate limiting, identity and collection authorization."""

from .gate import AccessGate, AccessGrant, hash_client_address, resolve_client_address
from .identity import IdentityResolver, JWTIdentityResolver
from .rate_limit import RateLimiter, RateLimitRule
from .validation import is_valid_uuid, sanitize_text, validate_user_message

__all__ = [
    "AccessGate",
    "AccessGrant",
    "IdentityResolver",
    "JWTIdentityResolver",
    "RateLimitRule",
    "RateLimiter",
    "hash_client_address",
    "is_valid_uuid",
    "resolve_client_address",
    "sanitize_text",
    "validate_user_message",
]
