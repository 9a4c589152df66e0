from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

SCHEMA_VERSION = 1


class SQLiteBackend:
    """Owns a shared SQLite connection and applies substrate migrations."""

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._configure(in_memory=db_path == ":memory:")
        self._apply_migrations()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def close(self) -> None:
        self._conn.close()

    def _configure(self, *, in_memory: bool) -> None:
        cursor = self._conn.cursor()
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        elif user_version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS profiles (
                id TEXT PRIMARY KEY,
                username TEXT,
                email TEXT,
                online_status INTEGER NOT NULL DEFAULT 0,
                last_seen_ms INTEGER,
                avatar_url TEXT
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                participant1_id TEXT NOT NULL REFERENCES profiles (id),
                participant2_id TEXT NOT NULL REFERENCES profiles (id),
                created_at_ms INTEGER NOT NULL,
                CHECK (participant1_id <> participant2_id)
            )
            """
        )
        # One row per unordered pair, whichever order the participants were stored in.
        self._conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS conversations_pair
            ON conversations (min(participant1_id, participant2_id), max(participant1_id, participant2_id))
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL REFERENCES conversations (id) ON DELETE CASCADE,
                sender_id TEXT NOT NULL REFERENCES profiles (id),
                content TEXT NOT NULL CHECK (length(trim(content)) > 0),
                created_at_ms INTEGER NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS messages_timeline
            ON messages (conversation_id, created_at_ms, id)
            """
        )
        self._conn.execute(
            """
            CREATE TRIGGER IF NOT EXISTS messages_sender_is_participant
            BEFORE INSERT ON messages
            WHEN NOT EXISTS (
                SELECT 1 FROM conversations
                WHERE id = NEW.conversation_id
                AND (participant1_id = NEW.sender_id OR participant2_id = NEW.sender_id)
            )
            BEGIN
                SELECT RAISE(ABORT, 'sender is not a participant');
            END
            """
        )
