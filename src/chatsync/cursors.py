from __future__ import annotations

import threading
from typing import Dict, Optional


class CursorStore:
    """Tracks the last synchronized position per conversation."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._positions: Dict[str, int] = {}

    def get(self, conv_id: str) -> Optional[int]:
        """Return the cursor for ``conv_id`` or ``None`` before the first sync."""

        with self._lock:
            return self._positions.get(conv_id)

    def advance(self, conv_id: str, position: int) -> int:
        """Persist ``position`` for ``conv_id``, keeping monotonicity."""

        if position < 0:
            raise ValueError("cursor position must be non-negative")
        with self._lock:
            current = self._positions.get(conv_id)
            stored = position if current is None else max(current, position)
            self._positions[conv_id] = stored
            return stored

    def list_cursors(self) -> list[tuple[str, int]]:
        with self._lock:
            return sorted(self._positions.items())

    def scoped(self, conv_id: str) -> "ConversationCursor":
        return ConversationCursor(self, conv_id)


class ConversationCursor:
    """Cursor handle bound to a single conversation."""

    def __init__(self, store, conv_id: str) -> None:
        self._store = store
        self.conv_id = conv_id

    def get(self) -> Optional[int]:
        return self._store.get(self.conv_id)

    def advance(self, position: int) -> int:
        return self._store.advance(self.conv_id, position)
