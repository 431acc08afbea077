"""Client-side synchronization engine for pull-only chat storage."""

from .config import SyncConfig, load_sync_config_from_env
from .cursors import ConversationCursor, CursorStore
from .engine import SyncEngine
from .errors import TransportError, ValidationError
from .hub import Subscription, SubscriptionHub, SyncEvent
from .log import ConversationLog, MessageLog
from .messages import Message, OutboundDraft
from .poller import ConversationPoller, CycleResult, PollPhase, PollState
from .transport import InMemoryObjectStore, LocalTransport, MessageTransport

__all__ = [
    "ConversationCursor",
    "ConversationLog",
    "ConversationPoller",
    "CursorStore",
    "CycleResult",
    "InMemoryObjectStore",
    "LocalTransport",
    "Message",
    "MessageLog",
    "MessageTransport",
    "OutboundDraft",
    "PollPhase",
    "PollState",
    "Subscription",
    "SubscriptionHub",
    "SyncConfig",
    "SyncEngine",
    "SyncEvent",
    "TransportError",
    "ValidationError",
    "load_sync_config_from_env",
]
