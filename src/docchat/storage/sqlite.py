"""SQLite-backed stores for collections, share links and the message log."""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from docchat.models import RetrievedSource, StoredMessage
from docchat.storage.base import CollectionRecord, ShareTokenRecord, ShareValidation

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS collections (
        id          TEXT PRIMARY KEY,
        owner_id    TEXT NOT NULL,
        status      TEXT NOT NULL DEFAULT 'ready',
        created_at  DATETIME NOT NULL DEFAULT (datetime('now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS collection_members (
        collection_id   TEXT NOT NULL REFERENCES collections(id) ON DELETE CASCADE,
        user_id         TEXT NOT NULL,
        role            TEXT NOT NULL DEFAULT 'viewer',
        PRIMARY KEY (collection_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shared_links (
        token           TEXT PRIMARY KEY,
        collection_id   TEXT NOT NULL REFERENCES collections(id) ON DELETE CASCADE,
        owner_id        TEXT NOT NULL,
        permissions     TEXT NOT NULL CHECK (permissions IN ('view', 'chat')),
        is_active       INTEGER NOT NULL DEFAULT 1,
        expires_at      TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        collection_id   TEXT NOT NULL REFERENCES collections(id) ON DELETE CASCADE,
        owner_id        TEXT NOT NULL,
        role            TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
        content         TEXT NOT NULL,
        sources         TEXT,
        created_at      TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_collection ON messages(collection_id, id)",
)


class Database:
    """Single SQLite connection shared by the stores, serialised by a lock."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self.lock = threading.Lock()
        self._connect_lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> sqlite3.Connection:
        with self._connect_lock:
            if self._conn is None:
                self._conn = self._open()
            return self._conn

    def _open(self) -> sqlite3.Connection:
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        for statement in _SCHEMA:
            conn.execute(statement)
        conn.commit()
        return conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


class SQLiteCollectionStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    def add(self, collection: CollectionRecord) -> None:
        conn = self._db.connect()
        with self._db.lock, conn:
            conn.execute(
                "INSERT INTO collections (id, owner_id, status) VALUES (?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET owner_id = excluded.owner_id, status = excluded.status",
                (collection.collection_id, collection.owner_id, collection.status),
            )

    def add_member(self, collection_id: str, user_id: str, role: str = "viewer") -> None:
        conn = self._db.connect()
        with self._db.lock, conn:
            conn.execute(
                "INSERT OR REPLACE INTO collection_members (collection_id, user_id, role) VALUES (?, ?, ?)",
                (collection_id, user_id, role),
            )

    def get(self, collection_id: str) -> CollectionRecord | None:
        conn = self._db.connect()
        with self._db.lock:
            row = conn.execute(
                "SELECT id, owner_id, status FROM collections WHERE id = ?",
                (collection_id,),
            ).fetchone()
        if row is None:
            return None
        return CollectionRecord(collection_id=row["id"], owner_id=row["owner_id"], status=row["status"])

    def is_member(self, collection_id: str, user_id: str) -> bool:
        conn = self._db.connect()
        with self._db.lock:
            row = conn.execute(
                "SELECT 1 FROM collection_members WHERE collection_id = ? AND user_id = ?",
                (collection_id, user_id),
            ).fetchone()
        return row is not None


class SQLiteShareTokenStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    def add(self, record: ShareTokenRecord) -> None:
        conn = self._db.connect()
        expires_at = record.expires_at.isoformat() if record.expires_at else None
        with self._db.lock, conn:
            conn.execute(
                "INSERT OR REPLACE INTO shared_links "
                "(token, collection_id, owner_id, permissions, is_active, expires_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    record.token,
                    record.collection_id,
                    record.owner_id,
                    record.permissions,
                    int(record.is_active),
                    expires_at,
                ),
            )

    def validate(self, token: str) -> ShareValidation | None:
        conn = self._db.connect()
        with self._db.lock:
            row = conn.execute(
                "SELECT token, collection_id, owner_id, permissions, is_active, expires_at "
                "FROM shared_links WHERE token = ? LIMIT 1",
                (token,),
            ).fetchone()
        if row is None:
            return None
        record = ShareTokenRecord(
            token=row["token"],
            collection_id=row["collection_id"],
            owner_id=row["owner_id"],
            permissions=row["permissions"],
            is_active=bool(row["is_active"]),
            expires_at=_parse_datetime(row["expires_at"]),
        )
        return ShareValidation(
            is_valid=record.is_valid(),
            collection_id=record.collection_id,
            owner_id=record.owner_id,
            permissions=record.permissions,
        )


class SQLiteMessageStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    def insert_many(self, messages: Sequence[StoredMessage]) -> None:
        rows = [
            (
                m.collection_id,
                m.owner_id,
                m.role,
                m.content,
                json.dumps([s.to_dict() for s in m.sources]) if m.sources else None,
                m.created_at.isoformat(),
            )
            for m in messages
        ]
        conn = self._db.connect()
        with self._db.lock, conn:
            conn.executemany(
                "INSERT INTO messages (collection_id, owner_id, role, content, sources, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                rows,
            )

    def list_for_collection(self, collection_id: str, limit: int = 100) -> Sequence[StoredMessage]:
        conn = self._db.connect()
        with self._db.lock:
            rows = conn.execute(
                "SELECT collection_id, owner_id, role, content, sources, created_at "
                "FROM messages WHERE collection_id = ? ORDER BY id LIMIT ?",
                (collection_id, limit),
            ).fetchall()
        return [
            StoredMessage(
                collection_id=row["collection_id"],
                owner_id=row["owner_id"],
                role=row["role"],
                content=row["content"],
                sources=_loads_sources(row["sources"]),
                created_at=_parse_datetime(row["created_at"]) or datetime.now(timezone.utc),
            )
            for row in rows
        ]


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _loads_sources(value: str | None) -> list[RetrievedSource] | None:
    if not value:
        return None
    try:
        loaded = json.loads(value)
    except json.JSONDecodeError:
        return None
    if not isinstance(loaded, list):
        return None
    return [RetrievedSource.from_dict(item) for item in loaded if isinstance(item, dict)]
