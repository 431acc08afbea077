from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, Dict

from .errors import ValidationError


@dataclass(frozen=True)
class Message:
    """An immutable message record as persisted by the object store."""

    msg_id: str
    sender: str
    recipient: str
    ts_ms: int
    payload: str

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.ts_ms, self.msg_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "msg_id": self.msg_id,
            "from": self.sender,
            "to": self.recipient,
            "ts": self.ts_ms,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        msg_id = data.get("msg_id")
        sender = data.get("from")
        recipient = data.get("to")
        ts_ms = data.get("ts")
        payload = data.get("payload", "")
        if not isinstance(msg_id, str) or not msg_id:
            raise ValueError("msg_id must be a non-empty string")
        if not isinstance(sender, str) or not isinstance(recipient, str):
            raise ValueError("from and to must be strings")
        if not isinstance(ts_ms, int) or isinstance(ts_ms, bool):
            raise ValueError("ts must be an integer")
        if not isinstance(payload, str):
            raise ValueError("payload must be a string")
        return cls(msg_id=msg_id, sender=sender, recipient=recipient, ts_ms=ts_ms, payload=payload)


@dataclass(frozen=True)
class OutboundDraft:
    recipient: str
    payload: bytes | str
    kind: str = "text"


def to_b64(payload: bytes | str) -> str:
    if isinstance(payload, bytes):
        return base64.b64encode(payload).decode("ascii")
    return payload


def build_outbound(draft: OutboundDraft, max_payload_bytes: int) -> Dict[str, Any]:
    """Validate ``draft`` and return the body handed to a transport's ``send``.

    Raises :class:`ValidationError` with the draft attached so the caller can
    redisplay it.
    """

    if not isinstance(draft.recipient, str) or not draft.recipient.strip():
        raise ValidationError("recipient is required", draft=draft)
    if not isinstance(draft.payload, (bytes, str)):
        raise ValidationError("payload must be bytes or str", draft=draft)
    payload = to_b64(draft.payload)
    if not payload.strip():
        raise ValidationError("payload is empty", draft=draft)
    if len(payload.encode("utf-8")) > max_payload_bytes:
        raise ValidationError(f"payload exceeds {max_payload_bytes} bytes", draft=draft)
    if not isinstance(draft.kind, str) or not draft.kind:
        raise ValidationError("kind is required", draft=draft)
    return {"to": draft.recipient.strip(), "payload": payload, "kind": draft.kind}
