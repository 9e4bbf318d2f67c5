"""SQLite-backed durable storage adapter.

Blocking sqlite3 calls run in a worker thread via ``asyncio.to_thread``;
the connection is shared behind an internal lock.  Every sqlite failure
is translated into one of the ``StorageError`` kinds.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, TypeVar

from peik.errors import (
    GenericStorageError,
    StorageAccessError,
    StorageCapacityError,
    StorageError,
    StorageVersionError,
)
from peik.types import Chat, Message

_logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
_SETTINGS_KEY = "user_settings"

T = TypeVar("T")


def _translate(exc: Exception) -> StorageError:
    """Map a sqlite3/OS failure onto the storage error taxonomy."""
    if isinstance(exc, StorageError):
        return exc
    if isinstance(exc, PermissionError):
        return StorageAccessError()
    if isinstance(exc, sqlite3.Error):
        code = getattr(exc, "sqlite_errorcode", None)
        text = str(exc).lower()
        if code == getattr(sqlite3, "SQLITE_FULL", -1) or "disk is full" in text:
            return StorageCapacityError()
        if (
            code in (getattr(sqlite3, "SQLITE_CANTOPEN", -1),
                     getattr(sqlite3, "SQLITE_READONLY", -1),
                     getattr(sqlite3, "SQLITE_PERM", -1))
            or "unable to open" in text
            or "readonly" in text
        ):
            return StorageAccessError()
    if isinstance(exc, OSError):
        return StorageAccessError(f"Storage could not be accessed: {exc}")
    return GenericStorageError()


class SQLiteStorage:
    """Durable chat/settings store in a single SQLite file."""

    def __init__(self, db_path: str = "~/.peik/peik.db") -> None:
        self.db_path = Path(db_path).expanduser() if db_path != ":memory:" else db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Connection / schema
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        if self._conn is not None:
            return self._conn
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        try:
            conn.execute("PRAGMA busy_timeout=5000")
            version = conn.execute("PRAGMA user_version").fetchone()[0]
            if version > SCHEMA_VERSION:
                raise StorageVersionError()
            self._init_schema(conn)
        except BaseException:
            conn.close()
            raise
        self._conn = conn
        return conn

    @staticmethod
    def _init_schema(conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS chats (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                provider TEXT NOT NULL DEFAULT '',
                model TEXT NOT NULL DEFAULT '',
                messages TEXT NOT NULL DEFAULT '[]'
            );
            CREATE INDEX IF NOT EXISTS idx_chats_updated
                ON chats(updated_at DESC);
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );
        """)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()

    async def _run(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        def call() -> T:
            with self._lock:
                try:
                    return fn(self._connect())
                except (sqlite3.Error, OSError, StorageError) as e:
                    _logger.error("Storage operation failed: %s", e)
                    raise _translate(e) from e
        return await asyncio.to_thread(call)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def load_settings(self) -> dict[str, Any] | None:
        def op(conn: sqlite3.Connection) -> dict[str, Any] | None:
            row = conn.execute(
                "SELECT value FROM settings WHERE key = ?", (_SETTINGS_KEY,),
            ).fetchone()
            return json.loads(row[0]) if row else None
        return await self._run(op)

    async def save_settings(self, settings: dict[str, Any]) -> None:
        payload = json.dumps(settings)

        def op(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT INTO settings (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (_SETTINGS_KEY, payload),
            )
            conn.commit()
        await self._run(op)

    # ------------------------------------------------------------------
    # Chats
    # ------------------------------------------------------------------

    async def load_chat_list(self) -> list[Chat]:
        def op(conn: sqlite3.Connection) -> list[Chat]:
            rows = conn.execute(
                "SELECT id, title, created_at, updated_at, provider, model "
                "FROM chats ORDER BY updated_at DESC",
            ).fetchall()
            return [
                Chat(id=r[0], title=r[1], messages=None, created_at=r[2],
                     updated_at=r[3], provider=r[4], model=r[5])
                for r in rows
            ]
        return await self._run(op)

    async def load_chat_by_id(self, chat_id: str) -> Chat | None:
        def op(conn: sqlite3.Connection) -> Chat | None:
            row = conn.execute(
                "SELECT id, title, created_at, updated_at, provider, model, messages "
                "FROM chats WHERE id = ?",
                (chat_id,),
            ).fetchone()
            if row is None:
                return None
            return Chat(
                id=row[0], title=row[1], created_at=row[2], updated_at=row[3],
                provider=row[4], model=row[5],
                messages=[Message.from_dict(m) for m in json.loads(row[6])],
            )
        return await self._run(op)

    async def save_chat(self, chat: Chat) -> None:
        meta = (chat.id, chat.title, chat.created_at, chat.updated_at,
                chat.provider, chat.model)
        messages = (
            json.dumps([m.to_dict() for m in chat.messages])
            if chat.messages is not None else None
        )

        def op(conn: sqlite3.Connection) -> None:
            if messages is None:
                # Metadata-only update keeps the stored messages
                conn.execute(
                    "INSERT INTO chats (id, title, created_at, updated_at, provider, model) "
                    "VALUES (?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(id) DO UPDATE SET title = excluded.title, "
                    "updated_at = excluded.updated_at, provider = excluded.provider, "
                    "model = excluded.model",
                    meta,
                )
            else:
                conn.execute(
                    "INSERT INTO chats (id, title, created_at, updated_at, provider, model, messages) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(id) DO UPDATE SET title = excluded.title, "
                    "updated_at = excluded.updated_at, provider = excluded.provider, "
                    "model = excluded.model, messages = excluded.messages",
                    (*meta, messages),
                )
            conn.commit()
        await self._run(op)

    async def delete_chat_by_id(self, chat_id: str) -> None:
        def op(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM chats WHERE id = ?", (chat_id,))
            conn.commit()
        await self._run(op)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
