"""Collection, share link and message log stores."""

from .base import (
    CollectionRecord,
    CollectionStore,
    MessageStore,
    ShareTokenRecord,
    ShareTokenStore,
    ShareValidation,
)
from .memory import InMemoryCollectionStore, InMemoryMessageStore, InMemoryShareTokenStore
from .sqlite import Database, SQLiteCollectionStore, SQLiteMessageStore, SQLiteShareTokenStore

__all__ = [
    "CollectionRecord",
    "CollectionStore",
    "Database",
    "InMemoryCollectionStore",
    "InMemoryMessageStore",
    "InMemoryShareTokenStore",
    "MessageStore",
    "SQLiteCollectionStore",
    "SQLiteMessageStore",
    "SQLiteShareTokenStore",
    "ShareTokenRecord",
    "ShareTokenStore",
    "ShareValidation",
]
