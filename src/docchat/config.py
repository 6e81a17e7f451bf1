"""Runtime configuration for the DocChat services."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="docchat_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"

    # Relational records: collections, members, share links, messages
    database_path: Path = Path("./data/docchat.db")

    use_chroma: bool = True
    chroma_persist_dir: Path = Path("./.chroma")
    chroma_collection: str = "docchat-chunks"
    chroma_host: str | None = None
    chroma_port: int | None = None
    chroma_ssl: bool = False

    # Must match the dimension the ingestion pipeline embedded chunks with
    embedding_model: str = "BAAI/bge-base-en-v1.5"
    embedding_dim: int = 768
    use_model_embeddings: bool = False
    embedding_max_retries: int = 5
    embedding_retry_base_seconds: float = 6.0

    generator_model: str = "Qwen/Qwen2.5-1.5B-Instruct"
    generator_max_new_tokens: int = 512
    generator_temperature: float = 0.3
    use_model_generator: bool = False

    # Retrieval: owner chat favours precision, shared chat favours recall
    owner_top_k: int = 5
    owner_similarity_threshold: float = 0.5
    shared_top_k: int = 8
    shared_similarity_threshold: float = 0.3
    shared_source_preview_chars: int = 300

    # Rate limiting
    rate_limit_max_entries: int = 10_000
    rate_limit_evict_fraction: float = 0.1
    owner_chat_limit: int = 10
    owner_chat_window_seconds: int = 60
    messages_limit: int = 60
    messages_window_seconds: int = 60
    message_history_limit: int = 100
    shared_chat_limit: int = 3
    shared_chat_window_seconds: int = 3600

    # Access
    jwt_secret: str | None = None
    jwt_issuer: str | None = None
    jwt_algorithms: tuple[str, ...] = ("HS256",)
    share_token_min_length: int = 10
    share_token_max_length: int = 64
    trust_forwarded_for: bool = True

    max_message_chars: int = 2000
    max_history_messages: int = 50

    # Embedding + retrieval + full answer stream
    request_timeout_seconds: float = 60.0

    # CORS
    cors_allow_origins: tuple[str, ...] = ()
    cors_allow_credentials: bool = False
    cors_allow_methods: tuple[str, ...] = ("GET", "POST", "OPTIONS")
    cors_allow_headers: tuple[str, ...] = ("*",)

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def share_token_length_band(self) -> tuple[int, int]:
        return self.share_token_min_length, self.share_token_max_length


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
