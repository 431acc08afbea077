from __future__ import annotations

import sqlite3
from typing import Iterable, Optional

from .log import ConversationLog
from .messages import Message
from .sqlite_backend import SQLiteBackend

_COLUMNS = "msg_id, sender, recipient, ts_ms, payload"


def _row_to_message(row) -> Message:
    return Message(
        msg_id=row[0],
        sender=row[1],
        recipient=row[2],
        ts_ms=int(row[3]),
        payload=row[4],
    )


class SQLiteMessageLog:
    """Durable message log backed by SQLite."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def merge(self, conv_id: str, batch: Iterable[Message]) -> list[Message]:
        """Insert unseen messages of ``batch`` in one transaction."""

        applied: list[Message] = []
        conn = self._backend.connection
        with self._backend.lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                for message in sorted(batch, key=lambda m: m.sort_key):
                    cursor.execute(
                        f"""
                        INSERT OR IGNORE INTO messages (conv_id, {_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            conv_id,
                            message.msg_id,
                            message.sender,
                            message.recipient,
                            message.ts_ms,
                            message.payload,
                        ),
                    )
                    if cursor.rowcount == 1:
                        applied.append(message)
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
            finally:
                cursor.close()
        return applied

    def append(self, conv_id: str, message: Message) -> bool:
        return bool(self.merge(conv_id, [message]))

    def contains(self, conv_id: str, msg_id: str) -> bool:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT 1 FROM messages WHERE conv_id=? AND msg_id=?",
                (conv_id, msg_id),
            ).fetchone()
        return row is not None

    def snapshot(self, conv_id: str) -> list[Message]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"SELECT {_COLUMNS} FROM messages WHERE conv_id=? ORDER BY ts_ms ASC, msg_id ASC",
                (conv_id,),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def list_since(self, conv_id: str, position: int) -> list[Message]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"""
                SELECT {_COLUMNS} FROM messages
                WHERE conv_id=? AND ts_ms>=?
                ORDER BY ts_ms ASC, msg_id ASC
                """,
                (conv_id, position),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def latest_position(self, conv_id: str) -> Optional[int]:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT MAX(ts_ms) FROM messages WHERE conv_id=?",
                (conv_id,),
            ).fetchone()
        return int(row[0]) if row and row[0] is not None else None

    def count(self, conv_id: str) -> int:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT COUNT(*) FROM messages WHERE conv_id=?",
                (conv_id,),
            ).fetchone()
        return int(row[0])

    def scoped(self, conv_id: str) -> ConversationLog:
        return ConversationLog(self, conv_id)
