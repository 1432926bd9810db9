from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

SCHEMA_VERSION = 2


class SQLiteBackend:
    """Owns a shared SQLite connection and applies row store migrations."""

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._configure()
        self._apply_migrations()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def close(self) -> None:
        self._conn.close()

    def _configure(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute("PRAGMA user_version = 1")
            user_version = 1
        if user_version == 1:
            self._migrate_v2()
            self._conn.execute("PRAGMA user_version = 2")
        elif user_version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS profiles (
                user_id TEXT PRIMARY KEY,
                display_name TEXT NOT NULL,
                avatar_json TEXT
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS invitations (
                invitation_id TEXT PRIMARY KEY,
                sender_id TEXT NOT NULL,
                receiver_id TEXT NOT NULL,
                pair_lo TEXT NOT NULL,
                pair_hi TEXT NOT NULL,
                activity TEXT NOT NULL,
                status TEXT NOT NULL CHECK (status IN ('pending', 'accepted', 'declined')),
                created_at_ms INTEGER NOT NULL,
                resolved_at_ms INTEGER
            )
            """
        )
        # One live invitation or connection per unordered pair.
        self._conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS invitations_live_pair
            ON invitations (pair_lo, pair_hi)
            WHERE status IN ('pending', 'accepted')
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS invitations_receiver_status
            ON invitations (receiver_id, status)
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS event_rooms (
                event_id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                category TEXT NOT NULL,
                host_id TEXT NOT NULL,
                created_at_ms INTEGER NOT NULL,
                starts_at_ms INTEGER NOT NULL,
                duration_minutes INTEGER NOT NULL,
                is_private INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS room_members (
                event_id TEXT NOT NULL REFERENCES event_rooms (event_id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                PRIMARY KEY (event_id, user_id)
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                message_id TEXT PRIMARY KEY,
                thread_type TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                sender_id TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at_ms INTEGER NOT NULL,
                client_token TEXT,
                UNIQUE (thread_type, thread_id, client_token)
            )
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS messages_thread_created
            ON messages (thread_type, thread_id, created_at_ms)
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS read_marks (
                user_id TEXT NOT NULL,
                thread_type TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                read_at_ms INTEGER NOT NULL,
                PRIMARY KEY (user_id, thread_type, thread_id)
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS mutes (
                user_id TEXT NOT NULL,
                thread_type TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                PRIMARY KEY (user_id, thread_type, thread_id)
            )
            """
        )

    def _migrate_v2(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS room_bans (
                event_id TEXT NOT NULL REFERENCES event_rooms (event_id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                banned_at_ms INTEGER NOT NULL,
                PRIMARY KEY (event_id, user_id)
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS message_reactions (
                message_id TEXT NOT NULL REFERENCES messages (message_id) ON DELETE CASCADE,
                thread_type TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                emoji TEXT NOT NULL,
                created_at_ms INTEGER NOT NULL,
                PRIMARY KEY (message_id, user_id, emoji)
            )
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS message_reactions_thread
            ON message_reactions (thread_type, thread_id)
            """
        )
