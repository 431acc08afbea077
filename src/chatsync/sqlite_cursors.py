from __future__ import annotations

from typing import Optional

from .cursors import ConversationCursor
from .sqlite_backend import SQLiteBackend


class SQLiteCursorStore:
    """Durable cursor store backed by SQLite."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def get(self, conv_id: str) -> Optional[int]:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT position FROM cursors WHERE conv_id=?",
                (conv_id,),
            ).fetchone()
        return int(row[0]) if row else None

    def advance(self, conv_id: str, position: int) -> int:
        if position < 0:
            raise ValueError("cursor position must be non-negative")

        with self._backend.lock:
            self._backend.connection.execute(
                """
                INSERT INTO cursors (conv_id, position)
                VALUES (?, ?)
                ON CONFLICT(conv_id) DO UPDATE SET position = CASE
                    WHEN excluded.position > cursors.position THEN excluded.position
                    ELSE cursors.position
                END
                """,
                (conv_id, position),
            )
            row = self._backend.connection.execute(
                "SELECT position FROM cursors WHERE conv_id=?",
                (conv_id,),
            ).fetchone()
        return int(row[0]) if row else position

    def list_cursors(self) -> list[tuple[str, int]]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                "SELECT conv_id, position FROM cursors ORDER BY conv_id ASC"
            ).fetchall()
        return [(row[0], int(row[1])) for row in rows]

    def scoped(self, conv_id: str) -> ConversationCursor:
        return ConversationCursor(self, conv_id)
