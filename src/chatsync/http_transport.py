"""aiohttp client for the development object-store API."""

from __future__ import annotations

import asyncio
import logging
import urllib.parse
from typing import Any, Dict, Optional

import aiohttp

from .errors import TransportError, ValidationError
from .messages import Message, OutboundDraft, to_b64

logger = logging.getLogger(__name__)

_VALIDATION_STATUSES = {400, 413, 422}


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


def _parse_messages(payload: Dict[str, Any]) -> list[Message]:
    items = payload.get("messages")
    if not isinstance(items, list):
        raise TransportError("response is missing a messages list")
    try:
        return [Message.from_dict(item) for item in items]
    except (ValueError, AttributeError) as exc:
        raise TransportError(f"malformed message in response: {exc}") from exc


class HttpTransport:
    """Implements the poller's transport contract over HTTP.

    The caller is identified by ``Authorization: Bearer <address>``.
    """

    def __init__(
        self,
        base_url: str,
        address: str,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = 10.0,
    ) -> None:
        self.base_url = base_url
        self.address = address
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        session = self._ensure_session()
        headers = {"Authorization": f"Bearer {self.address}"}
        try:
            async with session.request(
                method,
                _build_url(self.base_url, path),
                params=params,
                json=json,
                headers=headers,
                timeout=self._timeout,
            ) as response:
                if response.status in _VALIDATION_STATUSES:
                    detail = await response.text()
                    raise ValidationError(f"{method} {path} rejected ({response.status}): {detail}")
                if response.status >= 400:
                    raise TransportError(f"{method} {path} returned {response.status}")
                payload = await response.json(content_type=None)
        except aiohttp.ClientError as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise TransportError(f"{method} {path} timed out") from exc
        except ValueError as exc:
            raise TransportError(f"{method} {path} returned malformed json") from exc

        if not isinstance(payload, dict):
            raise TransportError(f"{method} {path} returned a non-object body")
        return payload

    def _conversation_path(self, conv_id: str, suffix: str) -> str:
        return f"/v1/conversations/{urllib.parse.quote(conv_id, safe='')}/{suffix}"

    async def fetch_since(self, conv_id: str, cursor: int) -> list[Message]:
        payload = await self._request(
            "GET", self._conversation_path(conv_id, "messages"), params={"since": str(cursor)}
        )
        return _parse_messages(payload)

    async def fetch_recent_history(self, conv_id: str, limit: int) -> list[Message]:
        payload = await self._request(
            "GET", self._conversation_path(conv_id, "messages"), params={"limit": str(limit)}
        )
        return _parse_messages(payload)

    async def has_recent_activity(self, conv_id: str, window_ms: int) -> bool:
        payload = await self._request(
            "GET", self._conversation_path(conv_id, "activity"), params={"window_ms": str(window_ms)}
        )
        active = payload.get("active")
        if not isinstance(active, bool):
            raise TransportError("activity response is missing a boolean 'active'")
        return active

    async def send(self, draft: OutboundDraft) -> Message:
        body = {"to": draft.recipient, "payload": to_b64(draft.payload), "kind": draft.kind}
        payload = await self._request("POST", "/v1/messages", json=body)
        try:
            message = Message.from_dict(payload.get("message") or {})
        except (ValueError, AttributeError) as exc:
            raise TransportError(f"malformed send response: {exc}") from exc
        logger.debug("stored %s for %s at %d", message.msg_id, message.recipient, message.ts_ms)
        return message
