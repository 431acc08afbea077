from __future__ import annotations

import bisect
import threading
from typing import Dict, Iterable, List, Optional, Set

from .messages import Message


class MessageLog:
    """In-memory, append-only message log with id-based deduplication.

    Entries of a conversation are kept sorted by ``(ts_ms, msg_id)``; reads
    return copies so consumers never observe a half-applied merge.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, List[Message]] = {}
        self._keys: Dict[str, List[tuple[int, str]]] = {}
        self._ids: Dict[str, Set[str]] = {}

    def merge(self, conv_id: str, batch: Iterable[Message]) -> list[Message]:
        """Apply every message of ``batch`` whose id is not yet present.

        Returns the newly applied messages in ascending position order.
        Merging the same batch twice leaves the log unchanged the second time.
        """

        applied: list[Message] = []
        with self._lock:
            ids = self._ids.setdefault(conv_id, set())
            entries = self._entries.setdefault(conv_id, [])
            keys = self._keys.setdefault(conv_id, [])
            for message in sorted(batch, key=lambda m: m.sort_key):
                if message.msg_id in ids:
                    continue
                index = bisect.bisect_right(keys, message.sort_key)
                keys.insert(index, message.sort_key)
                entries.insert(index, message)
                ids.add(message.msg_id)
                applied.append(message)
        return applied

    def append(self, conv_id: str, message: Message) -> bool:
        """Add a single message; returns ``False`` when the id is already known."""

        return bool(self.merge(conv_id, [message]))

    def contains(self, conv_id: str, msg_id: str) -> bool:
        with self._lock:
            return msg_id in self._ids.get(conv_id, ())

    def snapshot(self, conv_id: str) -> list[Message]:
        with self._lock:
            return list(self._entries.get(conv_id, []))

    def list_since(self, conv_id: str, position: int) -> list[Message]:
        """Return messages with ``ts_ms >= position`` in log order."""

        with self._lock:
            keys = self._keys.get(conv_id, [])
            start = bisect.bisect_left(keys, (position, ""))
            return list(self._entries.get(conv_id, [])[start:])

    def latest_position(self, conv_id: str) -> Optional[int]:
        with self._lock:
            entries = self._entries.get(conv_id)
            return entries[-1].ts_ms if entries else None

    def count(self, conv_id: str) -> int:
        with self._lock:
            return len(self._entries.get(conv_id, []))

    def scoped(self, conv_id: str) -> "ConversationLog":
        return ConversationLog(self, conv_id)


class ConversationLog:
    """Message log handle bound to a single conversation."""

    def __init__(self, log, conv_id: str) -> None:
        self._log = log
        self.conv_id = conv_id

    def merge(self, batch: Iterable[Message]) -> list[Message]:
        return self._log.merge(self.conv_id, batch)

    def append(self, message: Message) -> bool:
        return self._log.append(self.conv_id, message)

    def contains(self, msg_id: str) -> bool:
        return self._log.contains(self.conv_id, msg_id)

    def snapshot(self) -> list[Message]:
        return self._log.snapshot(self.conv_id)

    def latest_position(self) -> Optional[int]:
        return self._log.latest_position(self.conv_id)

    def count(self) -> int:
        return self._log.count(self.conv_id)
