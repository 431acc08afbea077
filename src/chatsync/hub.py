from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .messages import Message

logger = logging.getLogger(__name__)

KIND_MESSAGES = "messages"
KIND_CURSOR = "cursor"


@dataclass(frozen=True)
class SyncEvent:
    """A change to a conversation's read models."""

    conv_id: str
    kind: str
    messages: Tuple[Message, ...] = ()
    cursor: Optional[int] = None


Callback = Callable[[SyncEvent], None]


@dataclass
class Subscription:
    conv_id: str
    callback: Callback

    def deliver(self, event: SyncEvent) -> None:
        self.callback(event)


class SubscriptionHub:
    """Registers read-model observers and broadcasts changes to them."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, conv_id: str, callback: Callback) -> Subscription:
        subscription = Subscription(conv_id=conv_id, callback=callback)
        self._subscriptions.setdefault(conv_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.conv_id)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.conv_id, None)

    def broadcast(self, event: SyncEvent) -> None:
        for subscription in list(self._subscriptions.get(event.conv_id, [])):
            try:
                subscription.deliver(event)
            except Exception:
                logger.exception("subscriber for %s failed on %s event", event.conv_id, event.kind)

    def messages_applied(self, conv_id: str, messages: list[Message]) -> None:
        if messages:
            self.broadcast(SyncEvent(conv_id=conv_id, kind=KIND_MESSAGES, messages=tuple(messages)))

    def cursor_moved(self, conv_id: str, cursor: int) -> None:
        self.broadcast(SyncEvent(conv_id=conv_id, kind=KIND_CURSOR, cursor=cursor))
