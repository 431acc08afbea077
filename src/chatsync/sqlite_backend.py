from __future__ import annotations

import sqlite3
import threading
from pathlib import Path


class SQLiteBackend:
    """Owns a shared SQLite connection and applies client store migrations."""

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
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute("PRAGMA user_version = 1")
        elif user_version != 1:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                conv_id TEXT NOT NULL,
                msg_id TEXT NOT NULL,
                sender TEXT NOT NULL,
                recipient TEXT NOT NULL,
                ts_ms INTEGER NOT NULL,
                payload TEXT NOT NULL,
                PRIMARY KEY (conv_id, msg_id)
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS messages_by_position ON messages (conv_id, ts_ms, msg_id)"
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS cursors (
                conv_id TEXT PRIMARY KEY,
                position INTEGER NOT NULL
            )
            """
        )
