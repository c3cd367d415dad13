"""SQLite record store for the resume descriptor, message history and sessions."""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path

from .errors import StorageError
from .models import ChatSession, ConnectionDescriptor, Message

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS chat_sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT UNIQUE NOT NULL,
        participant_name TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        last_message_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        sender TEXT NOT NULL,
        content TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        is_own INTEGER NOT NULL,
        seq INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS messages_by_session ON messages (session_id, timestamp)",
    # NULL seq (local delivery) never collides, so only hub replays are merged.
    "CREATE UNIQUE INDEX IF NOT EXISTS messages_by_seq ON messages (session_id, seq)",
    """
    CREATE TABLE IF NOT EXISTS current_connection (
        slot INTEGER PRIMARY KEY CHECK (slot = 0),
        session_id TEXT NOT NULL,
        local_user_name TEXT NOT NULL,
        transport_endpoint TEXT NOT NULL
    )
    """,
)


class SqliteStore:
    """
    Persistent records used by the chat core.

    A single connection is shared between threads and serialized with a lock.
    Every sqlite3 failure surfaces as StorageError.
    """

    def __init__(self, path: str | Path = ":memory:") -> None:
        self.path = str(path)
        self.log = logging.getLogger("pairchat.storage")
        self._lock = threading.Lock()
        self._db: sqlite3.Connection | None = None

    def initialize(self) -> None:
        with self._lock:
            if self._db is not None:
                return
            try:
                if self.path != ":memory:":
                    Path(self.path).parent.mkdir(parents=True, exist_ok=True)
                db = sqlite3.connect(self.path, check_same_thread=False)
                with db:
                    for stmt in _SCHEMA:
                        db.execute(stmt)
            except (sqlite3.Error, OSError) as e:
                raise StorageError(f"cannot open database {self.path}: {e}") from e
            self._db = db
        self.log.info("Database ready path=%s", self.path)

    def close(self) -> None:
        with self._lock:
            db = self._db
            self._db = None
        if db is not None:
            db.close()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            if self._db is None:
                raise StorageError("database not initialized")
            try:
                with self._db:
                    return self._db.execute(sql, params)
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    def _query(self, sql: str, params: tuple = ()) -> list[tuple]:
        with self._lock:
            if self._db is None:
                raise StorageError("database not initialized")
            try:
                return self._db.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    # Connection descriptor

    def save_descriptor(self, descriptor: ConnectionDescriptor) -> None:
        self._execute(
            "INSERT OR REPLACE INTO current_connection "
            "(slot, session_id, local_user_name, transport_endpoint) VALUES (0, ?, ?, ?)",
            (
                descriptor.session_id,
                descriptor.local_user_name,
                descriptor.transport_endpoint,
            ),
        )

    def load_descriptor(self) -> ConnectionDescriptor | None:
        rows = self._query(
            "SELECT session_id, local_user_name, transport_endpoint "
            "FROM current_connection WHERE slot = 0"
        )
        if not rows:
            return None
        session_id, user, endpoint = rows[0]
        return ConnectionDescriptor(
            session_id=session_id, local_user_name=user, transport_endpoint=endpoint
        )

    def delete_descriptor(self) -> None:
        self._execute("DELETE FROM current_connection")

    # Messages

    def save_message(self, message: Message) -> int:
        """Store ``message``; returns its row id, or 0 if it was already stored."""
        cur = self._execute(
            "INSERT OR IGNORE INTO messages (session_id, sender, content, timestamp, is_own, seq) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                message.session_id,
                message.sender,
                message.content,
                int(message.timestamp_ms),
                1 if message.is_own else 0,
                message.seq,
            ),
        )
        if cur.rowcount < 1:
            return 0
        return int(cur.lastrowid or 0)

    def get_messages(self, session_id: str) -> list[Message]:
        rows = self._query(
            "SELECT session_id, sender, content, timestamp, is_own, seq FROM messages "
            "WHERE session_id = ? ORDER BY timestamp ASC, id ASC",
            (session_id,),
        )
        return [
            Message(
                session_id=sid,
                sender=sender,
                content=content,
                timestamp_ms=ts,
                is_own=bool(own),
                seq=seq,
            )
            for sid, sender, content, ts, own, seq in rows
        ]

    # Sessions

    def save_chat_session(self, session: ChatSession) -> None:
        self._execute(
            "INSERT OR REPLACE INTO chat_sessions "
            "(session_id, participant_name, created_at, last_message_at) VALUES (?, ?, ?, ?)",
            (
                session.session_id,
                session.participant_name,
                int(session.created_at_ms),
                int(session.last_message_at_ms),
            ),
        )

    def get_chat_session(self, session_id: str) -> ChatSession | None:
        rows = self._query(
            "SELECT session_id, participant_name, created_at, last_message_at "
            "FROM chat_sessions WHERE session_id = ?",
            (session_id,),
        )
        return ChatSession(*rows[0]) if rows else None

    def get_chat_sessions(self) -> list[ChatSession]:
        rows = self._query(
            "SELECT session_id, participant_name, created_at, last_message_at "
            "FROM chat_sessions ORDER BY last_message_at DESC"
        )
        return [ChatSession(*row) for row in rows]

    def update_session_last_message(self, session_id: str, timestamp_ms: int) -> None:
        self._execute(
            "UPDATE chat_sessions SET last_message_at = ? WHERE session_id = ?",
            (int(timestamp_ms), session_id),
        )

    def delete_chat_session(self, session_id: str) -> None:
        self._execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
        self._execute("DELETE FROM chat_sessions WHERE session_id = ?", (session_id,))
