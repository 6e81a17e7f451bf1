"""Input validation and sanitisation for user-supplied chat content."""

from __future__ import annotations

import re

DOCUMENT_BEGIN_MARKER = "===BEGIN DOCUMENT==="
DOCUMENT_END_MARKER = "===END DOCUMENT==="
MAX_SANITIZED_CHARS = 100_000

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
# Keeps \t \n \r
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def is_valid_uuid(value: str | None) -> bool:
    return bool(value) and _UUID_RE.match(value) is not None


def validate_user_message(message: str | None, *, max_chars: int = 2000) -> str | None:
    """Return a caller-facing problem description, or None when the message is acceptable."""

    if not message or not message.strip():
        return "Message cannot be empty"
    if len(message) > max_chars:
        return f"Message exceeds {max_chars} character limit"
    if "\x00" in message:
        return "Invalid characters in message"
    return None


def sanitize_text(text: str) -> str:
    cleaned = _CONTROL_CHARS_RE.sub("", text)
    cleaned = cleaned.replace(DOCUMENT_BEGIN_MARKER, "").replace(DOCUMENT_END_MARKER, "")
    return cleaned[:MAX_SANITIZED_CHARS]
