"""Collaborator contracts consumed by the poller and an in-process store."""

from __future__ import annotations

import asyncio
import threading
import time
import uuid
from typing import Callable, Dict, List, Protocol, Tuple

from .errors import TransportError
from .messages import Message, OutboundDraft, build_outbound


def _now_ms() -> int:
    return int(time.time() * 1000)


class MessageTransport(Protocol):
    async def fetch_since(self, conv_id: str, cursor: int) -> list[Message]:
        """Return every message of ``conv_id`` with ``ts_ms >= cursor``."""

    async def fetch_recent_history(self, conv_id: str, limit: int) -> list[Message]:
        """Return the most recent ``limit`` messages in ascending order."""

    async def has_recent_activity(self, conv_id: str, window_ms: int) -> bool:
        """Report whether the counterpart wrote within the last ``window_ms``."""

    async def send(self, draft: OutboundDraft) -> Message:
        """Persist ``draft`` and return the authoritative record."""


def pair_key(a: str, b: str) -> Tuple[str, str]:
    return (a, b) if a <= b else (b, a)


class InMemoryObjectStore:
    """Pull-only message store: put, list-since and recent-page reads only.

    Timestamps are assigned from ``now_func`` and forced to be strictly
    increasing per conversation pair.
    """

    def __init__(
        self,
        *,
        now_func: Callable[[], int] = _now_ms,
        max_payload_bytes: int = 64 * 1024,
    ) -> None:
        self._now = now_func
        self.max_payload_bytes = max_payload_bytes
        self._lock = threading.Lock()
        self._messages: Dict[Tuple[str, str], List[Message]] = {}
        self._failures_pending = 0

    def fail_next(self, count: int = 1) -> None:
        """Make the next ``count`` read or write operations raise ``TransportError``."""

        with self._lock:
            self._failures_pending += max(count, 0)

    def _maybe_fail(self, operation: str) -> None:
        with self._lock:
            if self._failures_pending > 0:
                self._failures_pending -= 1
                raise TransportError(f"injected failure during {operation}")

    def put(self, sender: str, draft: OutboundDraft) -> Message:
        self._maybe_fail("put")
        body = build_outbound(draft, self.max_payload_bytes)
        key = pair_key(sender, body["to"])
        with self._lock:
            events = self._messages.setdefault(key, [])
            ts_ms = self._now()
            if events and ts_ms <= events[-1].ts_ms:
                ts_ms = events[-1].ts_ms + 1
            message = Message(
                msg_id=uuid.uuid4().hex,
                sender=sender,
                recipient=body["to"],
                ts_ms=ts_ms,
                payload=body["payload"],
            )
            events.append(message)
        return message

    def list_since(self, owner: str, peer: str, cursor: int) -> list[Message]:
        self._maybe_fail("list_since")
        with self._lock:
            events = self._messages.get(pair_key(owner, peer), [])
            return [event for event in events if event.ts_ms >= cursor]

    def recent(self, owner: str, peer: str, limit: int) -> list[Message]:
        self._maybe_fail("recent")
        if limit <= 0:
            return []
        with self._lock:
            events = self._messages.get(pair_key(owner, peer), [])
            return list(events[-limit:])

    def has_incoming_since(self, owner: str, peer: str, since_ms: int) -> bool:
        self._maybe_fail("has_incoming_since")
        with self._lock:
            events = self._messages.get(pair_key(owner, peer), [])
            return any(event.sender == peer and event.ts_ms >= since_ms for event in events)

    def now_ms(self) -> int:
        return self._now()

    def transport_for(self, address: str, *, latency_s: float = 0.0) -> "LocalTransport":
        return LocalTransport(self, address, latency_s=latency_s)


class LocalTransport:
    """Binds an :class:`InMemoryObjectStore` to one user's point of view."""

    def __init__(self, store: InMemoryObjectStore, address: str, *, latency_s: float = 0.0) -> None:
        self.store = store
        self.address = address
        self._latency_s = latency_s

    async def _wire(self) -> None:
        await asyncio.sleep(self._latency_s)

    async def fetch_since(self, conv_id: str, cursor: int) -> list[Message]:
        await self._wire()
        return self.store.list_since(self.address, conv_id, cursor)

    async def fetch_recent_history(self, conv_id: str, limit: int) -> list[Message]:
        await self._wire()
        return self.store.recent(self.address, conv_id, limit)

    async def has_recent_activity(self, conv_id: str, window_ms: int) -> bool:
        await self._wire()
        return self.store.has_incoming_since(self.address, conv_id, self.store.now_ms() - window_ms)

    async def send(self, draft: OutboundDraft) -> Message:
        await self._wire()
        return self.store.put(self.address, draft)
