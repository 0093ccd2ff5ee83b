"""Session token persistence."""

from .session_store import SessionRecord, SessionStore, SqliteSessionStore

__all__ = ["SessionRecord", "SessionStore", "SqliteSessionStore"]
