"""Persistent storage for engine session tokens, keyed by (chat, bot)."""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from ..errors import SessionStoreError

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"


@dataclass
class SessionRecord:
    """One stored row. An empty ``session_id`` means the token was cleared."""

    chat_id: str
    bot_name: str
    session_id: str
    updated_at: datetime


class SessionStore(Protocol):
    """Storage interface for per-chat engine session tokens."""

    def save(self, chat_id: str | int, bot_name: str, session_id: str) -> None:
        """Insert or update the token for a chat."""

    def load(self, chat_id: str | int, bot_name: str) -> str | None:
        """Return the stored token, or None if absent or cleared."""

    def clear_token(self, chat_id: str | int, bot_name: str) -> None:
        """Blank the token but keep the record (soft reset)."""

    def delete(self, chat_id: str | int, bot_name: str) -> None:
        """Remove the record entirely."""

    def get_record(self, chat_id: str | int, bot_name: str) -> SessionRecord | None:
        """Return the full record, including cleared ones."""

    def load_all(self, bot_name: str) -> list[SessionRecord]:
        """Return every record with a live token for ``bot_name``."""

    def close(self) -> None:
        """Release any held resources."""


class SqliteSessionStore:
    """SQLite-backed ``SessionStore`` implementation."""

    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        self._shared: sqlite3.Connection | None = None
        if self.path == MEMORY_PATH:
            # Each connect() to :memory: is a fresh database; keep one open.
            self._shared = sqlite3.connect(MEMORY_PATH)
        else:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        logger.info("Initializing SQLite session store at %s", self.path)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        """Open a WAL-mode connection to the backing database."""
        if self._shared is not None:
            return self._shared
        conn = sqlite3.connect(self.path)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _release(self, conn: sqlite3.Connection) -> None:
        if conn is not self._shared:
            conn.close()

    def _execute(self, op_name: str, sql: str, params: tuple = ()) -> list[tuple]:
        conn = self._connect()
        try:
            with conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            logger.error("Session store %s failed: %s", op_name, exc)
            raise SessionStoreError(f"Session store {op_name} failed: {exc}") from exc
        finally:
            self._release(conn)
        return rows

    def _init_schema(self) -> None:
        self._execute(
            "init",
            """
            CREATE TABLE IF NOT EXISTS sessions (
                chat_id TEXT NOT NULL,
                bot_name TEXT NOT NULL,
                session_id TEXT NOT NULL,
                updated_at REAL NOT NULL,
                PRIMARY KEY (chat_id, bot_name)
            )
            """,
        )
        self._execute(
            "init",
            "CREATE INDEX IF NOT EXISTS idx_sessions_bot_name ON sessions(bot_name)",
        )

    def save(self, chat_id: str | int, bot_name: str, session_id: str) -> None:
        """Insert or update the token for a chat."""
        self._execute(
            "save",
            """
            INSERT INTO sessions(chat_id, bot_name, session_id, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(chat_id, bot_name)
            DO UPDATE SET session_id = excluded.session_id, updated_at = excluded.updated_at
            """,
            (str(chat_id), bot_name, session_id, time.time()),
        )
        logger.debug("Session saved: chat=%s bot=%s", chat_id, bot_name)

    def load(self, chat_id: str | int, bot_name: str) -> str | None:
        """Return the stored token, or None if absent or cleared."""
        rows = self._execute(
            "load",
            "SELECT session_id FROM sessions WHERE chat_id = ? AND bot_name = ?",
            (str(chat_id), bot_name),
        )
        if not rows or not rows[0][0]:
            return None
        return rows[0][0]

    def get_record(self, chat_id: str | int, bot_name: str) -> SessionRecord | None:
        """Return the full record, including cleared ones."""
        rows = self._execute(
            "get_record",
            """
            SELECT chat_id, bot_name, session_id, updated_at FROM sessions
            WHERE chat_id = ? AND bot_name = ?
            """,
            (str(chat_id), bot_name),
        )
        return _to_record(rows[0]) if rows else None

    def load_all(self, bot_name: str) -> list[SessionRecord]:
        """Return every record with a live token for ``bot_name``, newest first."""
        rows = self._execute(
            "load_all",
            """
            SELECT chat_id, bot_name, session_id, updated_at FROM sessions
            WHERE bot_name = ? AND session_id != ''
            ORDER BY updated_at DESC
            """,
            (bot_name,),
        )
        return [_to_record(row) for row in rows]

    def clear_token(self, chat_id: str | int, bot_name: str) -> None:
        """Blank the token but keep the record (soft reset)."""
        self._execute(
            "clear_token",
            "UPDATE sessions SET session_id = '', updated_at = ? WHERE chat_id = ? AND bot_name = ?",
            (time.time(), str(chat_id), bot_name),
        )
        logger.debug("Session token cleared: chat=%s bot=%s", chat_id, bot_name)

    def delete(self, chat_id: str | int, bot_name: str) -> None:
        """Remove the record entirely."""
        self._execute(
            "delete",
            "DELETE FROM sessions WHERE chat_id = ? AND bot_name = ?",
            (str(chat_id), bot_name),
        )
        logger.debug("Session deleted: chat=%s bot=%s", chat_id, bot_name)

    def close(self) -> None:
        """Release the shared in-memory connection, if any."""
        if self._shared is not None:
            self._shared.close()
            self._shared = None
        logger.info("Session store closed")


def _to_record(row: tuple) -> SessionRecord:
    chat_id, bot_name, session_id, updated_at = row
    return SessionRecord(
        chat_id=str(chat_id),
        bot_name=str(bot_name),
        session_id=str(session_id),
        updated_at=datetime.fromtimestamp(float(updated_at), tz=timezone.utc),
    )
