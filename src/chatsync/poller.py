"""Per-conversation polling scheduler and cursor/dedup cycle."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, FrozenSet, Optional, Tuple, TypeVar

from .config import SyncConfig
from .cursors import ConversationCursor
from .errors import CycleCancelled, InvalidTransition, TransportError
from .hub import SubscriptionHub
from .log import ConversationLog
from .messages import Message
from .transport import MessageTransport, _now_ms

logger = logging.getLogger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


class PollPhase(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    FETCHING = "fetching"
    CANCELLED = "cancelled"


_TRANSITIONS: Dict[PollPhase, FrozenSet[PollPhase]] = {
    PollPhase.IDLE: frozenset({PollPhase.SCHEDULED, PollPhase.CANCELLED}),
    PollPhase.SCHEDULED: frozenset({PollPhase.FETCHING, PollPhase.CANCELLED}),
    PollPhase.FETCHING: frozenset({PollPhase.SCHEDULED, PollPhase.CANCELLED}),
    PollPhase.CANCELLED: frozenset(),
}


@dataclass
class PollState:
    """Scheduling state of one active conversation. Never persisted."""

    interval_ms: int
    burst_remaining: int = 0
    phase: PollPhase = PollPhase.IDLE
    consecutive_failures: int = 0
    cycles: int = 0
    last_delay_ms: Optional[int] = None

    @property
    def in_flight(self) -> bool:
        return self.phase is PollPhase.FETCHING

    def transition(self, target: PollPhase) -> None:
        if target not in _TRANSITIONS[self.phase]:
            raise InvalidTransition(f"cannot move from {self.phase.value} to {target.value}")
        self.phase = target


@dataclass(frozen=True)
class CycleResult:
    applied: Tuple[Message, ...]
    cursor: Optional[int]
    next_delay_ms: int
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ConversationPoller:
    """Keeps one conversation's message log in sync with a pull-only store.

    The loop is ``seed`` once, then repeatedly arm a timer, wait, and run one
    fetch cycle. Only the loop task touches :attr:`state`, so cycles never
    overlap and need no locking. ``deactivate`` is safe to call at any time:
    an armed timer is cancelled at once, while a fetch already in flight is
    allowed to resolve and its result is discarded.
    """

    def __init__(
        self,
        conv_id: str,
        transport: MessageTransport,
        log: ConversationLog,
        cursor: ConversationCursor,
        *,
        config: SyncConfig | None = None,
        hub: SubscriptionHub | None = None,
        now_func: Callable[[], int] = _now_ms,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.conv_id = conv_id
        self.config = config or SyncConfig()
        self.state = PollState(interval_ms=self.config.steady_interval_ms)
        self._transport = transport
        self._log = log
        self._cursor = cursor
        self._hub = hub or SubscriptionHub()
        self._now = now_func
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._task: asyncio.Task | None = None

    @property
    def counterpart(self) -> str:
        return self.conv_id

    @property
    def active(self) -> bool:
        return self.state.phase is not PollPhase.CANCELLED

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    # lifecycle

    def start(self) -> asyncio.Task:
        if self._task is None:
            if not self.active:
                raise InvalidTransition("cannot start a cancelled poller")
            self._task = asyncio.create_task(self._run(), name=f"chatsync-poll-{self.conv_id}")
        return self._task

    def deactivate(self) -> None:
        previous = self.state.phase
        if previous is PollPhase.CANCELLED:
            return
        self.state.transition(PollPhase.CANCELLED)
        if self._task is not None and previous is PollPhase.SCHEDULED:
            self._task.cancel()
        logger.debug("deactivated %s while %s", self.conv_id, previous.value)

    async def wait_closed(self) -> None:
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def close(self) -> None:
        self.deactivate()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        await self.wait_closed()

    async def _run(self) -> None:
        try:
            try:
                await self._seed()
            except CycleCancelled:
                raise
            except Exception:
                logger.exception("seeding %s failed; polling from the stored cursor", self.conv_id)
                self._grant_burst()
            delay_ms = self._arm()
            while True:
                await self._sleep(delay_ms / 1000)
                delay_ms = (await self._cycle()).next_delay_ms
        except CycleCancelled:
            logger.debug("discarded late result for %s", self.conv_id)
        except asyncio.CancelledError:
            return

    # stepping API

    async def seed(self) -> Optional[int]:
        """Prime the log and cursor; returns the cursor, or ``None`` once cancelled."""

        try:
            return await self._seed()
        except CycleCancelled:
            return None

    async def step(self) -> Optional[CycleResult]:
        """Run the armed cycle now instead of waiting for its timer.

        The first call arms the initial timer. Calling ``step`` while another
        cycle is unresolved raises :class:`InvalidTransition`.
        """

        try:
            if self.state.phase is PollPhase.IDLE:
                self._arm()
            return await self._cycle()
        except CycleCancelled:
            return None

    def backoff_interval(self) -> int:
        jitter = self._rng.uniform(-self.config.failure_jitter_ms, self.config.failure_jitter_ms)
        low, high = self.config.failure_bounds_ms
        return min(high, max(low, int(round(self.config.failure_interval_ms + jitter))))

    # internals

    def _ensure_active(self) -> None:
        if self.state.phase is PollPhase.CANCELLED:
            raise CycleCancelled(self.conv_id)

    async def _call(self, awaitable: Awaitable[T], operation: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.config.cycle_timeout_s)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"{operation} timed out after {self.config.cycle_timeout_s}s") from exc

    def _grant_burst(self) -> None:
        self.state.burst_remaining = max(self.state.burst_remaining, self.config.burst_cycles)

    def _merge(self, batch: list[Message]) -> list[Message]:
        applied = self._log.merge(batch)
        self._hub.messages_applied(self.conv_id, applied)
        return applied

    def _advance_cursor(self, position: int) -> int:
        previous = self._cursor.get()
        stored = self._cursor.advance(position)
        if stored != previous:
            self._hub.cursor_moved(self.conv_id, stored)
        return stored

    async def _seed(self) -> int:
        self._ensure_active()
        cursor = self._cursor.get()
        if cursor is None:
            await self._load_history(self.config.history_page_size, "history")
            await self._backfill_if_missing()
            latest = self._log.latest_position()
            cursor = self._advance_cursor(latest if latest is not None else self._now())
            logger.debug("seeded %s at %d with %d messages", self.conv_id, cursor, self._log.count())
        self._grant_burst()
        return cursor

    async def _load_history(self, limit: int, reason: str) -> list[Message]:
        try:
            batch = await self._call(self._transport.fetch_recent_history(self.conv_id, limit), reason)
            self._ensure_active()
            return self._merge(batch)
        except CycleCancelled:
            raise
        except TransportError as exc:
            self._ensure_active()
            logger.warning("%s load for %s failed: %s", reason, self.conv_id, exc)
        except Exception:
            self._ensure_active()
            logger.exception("unexpected error during %s load for %s", reason, self.conv_id)
        return []

    async def _backfill_if_missing(self) -> None:
        window_ms = self.config.recent_window_ms
        try:
            recent = await self._call(
                self._transport.has_recent_activity(self.conv_id, window_ms), "recency probe"
            )
        except TransportError as exc:
            self._ensure_active()
            logger.warning("recency probe for %s failed: %s", self.conv_id, exc)
            return
        except Exception:
            self._ensure_active()
            logger.exception("unexpected error probing %s", self.conv_id)
            return
        self._ensure_active()
        if not recent:
            return

        threshold = self._now() - window_ms
        for message in self._log.snapshot():
            if message.sender == self.counterpart and message.ts_ms >= threshold:
                return
        logger.info("recent activity in %s missing from first page; backfilling", self.conv_id)
        await self._load_history(self.config.backfill_page_size, "backfill")

    def _arm(self) -> int:
        self._ensure_active()
        if self.state.burst_remaining > 0:
            delay_ms = self.config.fast_interval_ms
            self.state.burst_remaining -= 1
        else:
            delay_ms = self.state.interval_ms
        self.state.transition(PollPhase.SCHEDULED)
        self.state.last_delay_ms = delay_ms
        return delay_ms

    async def _cycle(self) -> CycleResult:
        self._ensure_active()
        self.state.transition(PollPhase.FETCHING)
        self.state.cycles += 1
        cursor: Optional[int] = None
        try:
            cursor = self._cursor.get()
            if cursor is None:
                cursor = self._advance_cursor(self._now())
            batch = await self._call(self._transport.fetch_since(self.conv_id, cursor), "fetch_since")
            self._ensure_active()
            applied = self._merge(batch)
            if applied:
                self._grant_burst()
            latest = self._log.latest_position()
            if latest is not None:
                cursor = self._advance_cursor(latest)
        except CycleCancelled:
            raise
        except TransportError as exc:
            self._ensure_active()
            return self._fail(cursor, exc)
        except Exception as exc:
            self._ensure_active()
            logger.exception("unexpected error polling %s", self.conv_id)
            return self._fail(cursor, exc)

        self.state.interval_ms = self.config.steady_interval_ms
        self.state.consecutive_failures = 0
        logger.debug(
            "cycle %d for %s: %d fetched, %d new, cursor %d",
            self.state.cycles,
            self.conv_id,
            len(batch),
            len(applied),
            cursor,
        )
        return CycleResult(applied=tuple(applied), cursor=cursor, next_delay_ms=self._arm())

    def _fail(self, cursor: Optional[int], exc: Exception) -> CycleResult:
        self.state.consecutive_failures += 1
        self.state.interval_ms = self.backoff_interval()
        logger.warning(
            "poll of %s failed (%d in a row): %s; steady interval now %d ms",
            self.conv_id,
            self.state.consecutive_failures,
            exc,
            self.state.interval_ms,
        )
        return CycleResult(applied=(), cursor=cursor, next_delay_ms=self._arm(), error=exc)
