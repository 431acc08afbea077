from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .messages import OutboundDraft


class TransportError(Exception):
    """Network or storage failure reported by a transport."""

    def __init__(self, message: str, *, draft: "OutboundDraft | None" = None) -> None:
        super().__init__(message)
        self.draft = draft


class ValidationError(Exception):
    """An outbound draft was rejected before or by the transport."""

    def __init__(self, message: str, *, draft: "OutboundDraft | None" = None) -> None:
        super().__init__(message)
        self.draft = draft


class CycleCancelled(Exception):
    pass


class InvalidTransition(RuntimeError):
    pass
