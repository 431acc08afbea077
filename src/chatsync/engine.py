from __future__ import annotations

import asyncio
import dataclasses
import logging
import random
from typing import Callable, Dict, Optional, Set

from .config import SyncConfig
from .cursors import CursorStore
from .errors import TransportError, ValidationError
from .hub import Callback, Subscription, SubscriptionHub
from .log import MessageLog
from .messages import Message, OutboundDraft, build_outbound
from .poller import ConversationPoller, PollState, Sleep
from .sqlite_cursors import SQLiteCursorStore
from .sqlite_log import SQLiteMessageLog
from .transport import MessageTransport, _now_ms

logger = logging.getLogger(__name__)


class SyncEngine:
    """Presentation-facing entry point: lifecycle, sends and read models.

    One :class:`ConversationPoller` runs per active conversation. The engine
    is the only writer of ``log`` and ``cursors``; everything else reads.
    """

    def __init__(
        self,
        transport: MessageTransport,
        self_address: str,
        *,
        log: MessageLog | SQLiteMessageLog | None = None,
        cursors: CursorStore | SQLiteCursorStore | None = None,
        hub: SubscriptionHub | None = None,
        config: SyncConfig | None = None,
        now_func: Callable[[], int] = _now_ms,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
        autostart: bool = True,
    ) -> None:
        self.transport = transport
        self.self_address = self_address
        self.log = log if log is not None else MessageLog()
        self.cursors = cursors if cursors is not None else CursorStore()
        self.hub = hub or SubscriptionHub()
        self.config = config or SyncConfig()
        self._now = now_func
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._autostart = autostart
        self._pollers: Dict[str, ConversationPoller] = {}
        self._draining: Set[ConversationPoller] = set()

    def activate(self, conv_id: str) -> ConversationPoller:
        """Start syncing ``conv_id``; a second call while active is a no-op."""

        if not conv_id or conv_id == self.self_address:
            raise ValueError("conv_id must name a counterpart address")
        poller = self._pollers.get(conv_id)
        if poller is not None and poller.active:
            return poller

        poller = ConversationPoller(
            conv_id,
            self.transport,
            self.log.scoped(conv_id),
            self.cursors.scoped(conv_id),
            config=self.config,
            hub=self.hub,
            now_func=self._now,
            sleep=self._sleep,
            rng=self._rng,
        )
        self._pollers[conv_id] = poller
        if self._autostart:
            poller.start()
        logger.debug("activated %s", conv_id)
        return poller

    def deactivate(self, conv_id: str) -> None:
        poller = self._pollers.pop(conv_id, None)
        if poller is None:
            return
        poller.deactivate()
        task = poller.task
        if task is not None and not task.done():
            self._draining.add(poller)
            task.add_done_callback(lambda _task, p=poller: self._draining.discard(p))

    def poller(self, conv_id: str) -> Optional[ConversationPoller]:
        return self._pollers.get(conv_id)

    def is_active(self, conv_id: str) -> bool:
        poller = self._pollers.get(conv_id)
        return poller is not None and poller.active

    def active_conversations(self) -> list[str]:
        return sorted(conv_id for conv_id, poller in self._pollers.items() if poller.active)

    def poll_state(self, conv_id: str) -> Optional[PollState]:
        poller = self._pollers.get(conv_id)
        if poller is None:
            return None
        return dataclasses.replace(poller.state)

    def messages(self, conv_id: str) -> list[Message]:
        return self.log.snapshot(conv_id)

    def cursor(self, conv_id: str) -> Optional[int]:
        return self.cursors.get(conv_id)

    def subscribe(self, conv_id: str, callback: Callback) -> Subscription:
        return self.hub.subscribe(conv_id, callback)

    def unsubscribe(self, subscription: Subscription) -> None:
        self.hub.unsubscribe(subscription)

    async def submit(self, draft: OutboundDraft) -> Message:
        """Send ``draft`` and append the stored record to its conversation.

        :class:`ValidationError` and :class:`TransportError` propagate with
        ``draft`` attached; sends are never retried here.
        """

        body = build_outbound(draft, self.config.max_payload_bytes)
        try:
            message = await asyncio.wait_for(self.transport.send(draft), timeout=self.config.cycle_timeout_s)
        except asyncio.TimeoutError as exc:
            raise TransportError("send timed out", draft=draft) from exc
        except (TransportError, ValidationError) as exc:
            exc.draft = draft
            logger.warning("send to %s failed: %s", body["to"], exc)
            raise

        conv_id = body["to"]
        if self.log.append(conv_id, message):
            self.hub.messages_applied(conv_id, [message])
        return message

    async def close(self) -> None:
        pollers = list(self._pollers.values()) + list(self._draining)
        self._pollers.clear()
        for poller in pollers:
            await poller.close()
        self._draining.clear()
