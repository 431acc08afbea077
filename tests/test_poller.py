import asyncio
import random
import sqlite3
import unittest

from chatsync.config import SyncConfig
from chatsync.cursors import CursorStore
from chatsync.errors import InvalidTransition, TransportError
from chatsync.log import MessageLog
from chatsync.poller import ConversationPoller, PollPhase, PollState

from sync_util import FakeClock, ScriptedTransport, msg, wait_until

NOW_MS = 5_000_000
WINDOW_MS = 10 * 60 * 1000


class LockedOnceLog(MessageLog):
    def __init__(self) -> None:
        super().__init__()
        self.failures = 0

    def merge(self, conv_id, batch):
        if self.failures:
            self.failures -= 1
            raise sqlite3.OperationalError("database is locked")
        return super().merge(conv_id, batch)


class PollerTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = FakeClock(NOW_MS)
        self.transport = ScriptedTransport(self.clock)
        self.log = MessageLog()
        self.cursors = CursorStore()

    def make_poller(self, **config_overrides) -> ConversationPoller:
        return ConversationPoller(
            "bob",
            self.transport,
            self.log.scoped("bob"),
            self.cursors.scoped("bob"),
            config=SyncConfig(**config_overrides),
            now_func=self.clock.now,
            rng=random.Random(7),
        )

    async def burn_burst(self, poller: ConversationPoller) -> None:
        while poller.state.last_delay_ms != poller.state.interval_ms:
            await poller.step()


class TestColdStart(PollerTestCase):
    async def test_history_seeds_cursor_log_and_burst(self):
        history = [msg(f"m{i}", 25 * i) for i in range(1, 41)]
        self.transport.pages[100] = history
        poller = self.make_poller()

        cursor = await poller.seed()

        self.assertEqual(cursor, 1000)
        self.assertEqual(self.cursors.get("bob"), 1000)
        self.assertEqual(self.log.count("bob"), 40)
        self.assertGreaterEqual(poller.state.burst_remaining, 3)
        self.assertEqual(self.transport.call_names(), ["history", "probe"])
        self.assertEqual(self.transport.calls[1], ("probe", "bob", WINDOW_MS))

    async def test_empty_history_seeds_from_now(self):
        poller = self.make_poller()

        cursor = await poller.seed()

        self.assertEqual(cursor, NOW_MS)
        self.assertEqual(self.log.count("bob"), 0)

    async def test_backfill_when_recent_activity_is_missing_from_first_page(self):
        self.transport.pages[100] = [msg("old", 1000)]
        recent = msg("recent", NOW_MS - 60_000)
        self.transport.pages[150] = [msg("old", 1000), recent]
        self.transport.recent_activity = True
        poller = self.make_poller()

        cursor = await poller.seed()

        self.assertIn(("history", "bob", 150), self.transport.calls)
        self.assertTrue(self.log.contains("bob", "recent"))
        self.assertEqual(cursor, recent.ts_ms)

    async def test_no_backfill_when_recent_counterpart_message_is_loaded(self):
        self.transport.pages[100] = [msg("recent", NOW_MS - 1000)]
        self.transport.recent_activity = True
        poller = self.make_poller()

        await poller.seed()

        self.assertNotIn(("history", "bob", 150), self.transport.calls)

    async def test_own_recent_message_does_not_count_as_counterpart_activity(self):
        self.transport.pages[100] = [msg("mine", NOW_MS - 1000, sender="alice", recipient="bob")]
        self.transport.recent_activity = True
        poller = self.make_poller()

        await poller.seed()

        self.assertIn(("history", "bob", 150), self.transport.calls)

    async def test_no_backfill_without_recent_activity(self):
        self.transport.pages[100] = [msg("old", 1000)]
        poller = self.make_poller()

        await poller.seed()

        self.assertEqual(self.transport.call_names(), ["history", "probe"])

    async def test_seeding_absorbs_transport_failures(self):
        self.transport.history_error = TransportError("store down")
        self.transport.recent_activity = TransportError("store down")
        poller = self.make_poller()

        with self.assertLogs("chatsync.poller", level="WARNING"):
            cursor = await poller.seed()

        self.assertEqual(cursor, NOW_MS)
        self.assertEqual(poller.state.burst_remaining, 3)
        self.assertIs(poller.state.phase, PollPhase.IDLE)

    async def test_seeding_absorbs_unexpected_errors(self):
        self.transport.history_error = RuntimeError("decoder bug")
        self.transport.recent_activity = RuntimeError("decoder bug")
        poller = self.make_poller()

        with self.assertLogs("chatsync.poller", level="ERROR") as logs:
            cursor = await poller.seed()

        self.assertEqual(len(logs.records), 2)
        self.assertEqual(cursor, NOW_MS)
        self.assertEqual(poller.state.burst_remaining, 3)

    async def test_warm_start_resumes_from_stored_cursor(self):
        self.cursors.advance("bob", 4242)
        poller = self.make_poller()

        cursor = await poller.seed()

        self.assertEqual(cursor, 4242)
        self.assertEqual(self.transport.calls, [])
        self.assertEqual(poller.state.burst_remaining, 3)


class TestFetchCycle(PollerTestCase):
    async def test_first_cycles_run_fast_then_steady(self):
        poller = self.make_poller()
        await poller.seed()

        delays = [(await poller.step()).next_delay_ms for _ in range(3)]

        self.assertEqual(poller.state.last_delay_ms, 3000)
        self.assertEqual(delays, [1000, 1000, 3000])

    async def test_fetch_uses_current_cursor(self):
        self.transport.pages[100] = [msg("m1", 1000)]
        poller = self.make_poller()
        await poller.seed()

        await poller.step()

        self.assertEqual(self.transport.calls[-1], ("fetch_since", "bob", 1000))

    async def test_new_message_triggers_burst(self):
        poller = self.make_poller()
        await poller.seed()
        await self.burn_burst(poller)
        self.assertEqual(poller.state.last_delay_ms, 3000)

        self.transport.fetch_results.append([msg("m1", NOW_MS + 10)])
        result = await poller.step()

        self.assertEqual([m.msg_id for m in result.applied], ["m1"])
        self.assertEqual(result.next_delay_ms, 1000)
        self.assertEqual(poller.state.burst_remaining, 2)
        self.assertEqual(result.cursor, NOW_MS + 10)

    async def test_duplicate_fetch_advances_cursor_without_burst(self):
        self.cursors.advance("bob", 500)
        self.log.merge("bob", [msg("m1", 1000)])
        poller = self.make_poller()
        await poller.seed()
        await self.burn_burst(poller)

        self.transport.fetch_results.append([msg("m1", 1000)])
        result = await poller.step()

        self.assertEqual(result.applied, ())
        self.assertEqual(self.log.count("bob"), 1)
        self.assertEqual(self.cursors.get("bob"), 1000)
        self.assertEqual(poller.state.burst_remaining, 0)
        self.assertEqual(result.next_delay_ms, 3000)

    async def test_cursor_never_moves_backwards(self):
        poller = self.make_poller()
        await poller.seed()
        seen = [self.cursors.get("bob")]

        batches = [
            [msg("a", NOW_MS + 100)],
            [msg("late", NOW_MS - 50)],
            [],
            [msg("b", NOW_MS + 200), msg("a", NOW_MS + 100)],
        ]
        for batch in batches:
            self.transport.fetch_results.append(batch)
            await poller.step()
            seen.append(self.cursors.get("bob"))

        self.assertEqual(seen, sorted(seen))
        self.assertEqual(seen[-1], NOW_MS + 200)
        self.assertEqual([m.msg_id for m in self.log.snapshot("bob")], ["late", "a", "b"])

    async def test_three_failures_back_off_within_bounds(self):
        self.transport.pages[100] = [msg("m1", 1000)]
        poller = self.make_poller()
        await poller.seed()
        await self.burn_burst(poller)
        calls_before = len(self.transport.calls)

        for _ in range(3):
            self.transport.fetch_results.append(TransportError("timeout"))
            with self.assertLogs("chatsync.poller", level="WARNING"):
                result = await poller.step()
            self.assertFalse(result.ok)
            self.assertIsInstance(result.error, TransportError)
            self.assertGreaterEqual(result.next_delay_ms, 4000)
            self.assertLessEqual(result.next_delay_ms, 6000)
            self.assertEqual(result.next_delay_ms, poller.state.interval_ms)
            self.assertEqual(self.cursors.get("bob"), 1000)

        self.assertEqual(poller.state.consecutive_failures, 3)
        self.assertEqual(self.log.count("bob"), 1)
        self.assertEqual(len(self.transport.calls), calls_before + 3)
        self.assertIs(poller.state.phase, PollPhase.SCHEDULED)

        result = await poller.step()
        self.assertTrue(result.ok)
        self.assertEqual(poller.state.interval_ms, 3000)
        self.assertEqual(poller.state.consecutive_failures, 0)

    async def test_failure_keeps_earned_burst(self):
        poller = self.make_poller()
        await poller.seed()
        await poller.step()
        remaining = poller.state.burst_remaining

        self.transport.fetch_results.append(TransportError("flaky"))
        with self.assertLogs("chatsync.poller", level="WARNING"):
            result = await poller.step()

        self.assertEqual(result.next_delay_ms, 1000)
        self.assertEqual(poller.state.burst_remaining, remaining - 1)

    async def test_backoff_interval_respects_configured_bounds(self):
        class Extreme:
            def __init__(self, value):
                self.value = value

            def uniform(self, a, b):
                return b if self.value > 0 else a

        config = SyncConfig(max_interval_ms=5500)
        for rng, expected in [(Extreme(1), 5500), (Extreme(-1), 4000)]:
            poller = ConversationPoller(
                "bob",
                self.transport,
                self.log.scoped("bob"),
                self.cursors.scoped("bob"),
                config=config,
                rng=rng,
            )
            self.assertEqual(poller.backoff_interval(), expected)

    async def test_watchdog_turns_hung_fetch_into_failure(self):
        poller = self.make_poller(cycle_timeout_s=0.05)
        await poller.seed()
        self.transport.fetch_results.append(asyncio.get_running_loop().create_future())

        with self.assertLogs("chatsync.poller", level="WARNING"):
            result = await poller.step()

        self.assertIsInstance(result.error, TransportError)
        self.assertIn("timed out", str(result.error))

    async def test_unexpected_error_is_logged_and_loop_survives(self):
        poller = self.make_poller()
        await poller.seed()
        self.transport.fetch_results.append(RuntimeError("bug"))

        with self.assertLogs("chatsync.poller", level="ERROR"):
            result = await poller.step()

        self.assertIsInstance(result.error, RuntimeError)
        self.assertIs(poller.state.phase, PollPhase.SCHEDULED)

    async def test_failed_merge_backs_off_without_moving_cursor(self):
        self.log = LockedOnceLog()
        poller = self.make_poller()
        await poller.seed()
        await self.burn_burst(poller)
        self.log.failures = 1
        self.transport.fetch_results.append([msg("m1", NOW_MS + 10)])

        with self.assertLogs("chatsync.poller", level="ERROR"):
            result = await poller.step()

        self.assertIsInstance(result.error, sqlite3.OperationalError)
        self.assertEqual(result.cursor, NOW_MS)
        self.assertEqual(self.cursors.get("bob"), NOW_MS)
        self.assertEqual(self.log.count("bob"), 0)
        self.assertEqual(poller.state.consecutive_failures, 1)
        self.assertIs(poller.state.phase, PollPhase.SCHEDULED)

        self.transport.fetch_results.append([msg("m1", NOW_MS + 10)])
        result = await poller.step()

        self.assertEqual([m.msg_id for m in result.applied], ["m1"])
        self.assertEqual(self.cursors.get("bob"), NOW_MS + 10)

    async def test_cycles_never_overlap(self):
        poller = self.make_poller()
        await poller.seed()
        gate = asyncio.get_running_loop().create_future()
        self.transport.fetch_results.append(gate)

        first = asyncio.create_task(poller.step())
        await wait_until(lambda: self.transport.in_flight == 1)
        self.assertTrue(poller.state.in_flight)

        with self.assertRaises(InvalidTransition):
            await poller.step()

        gate.set_result([msg("m1", NOW_MS + 1)])
        result = await first
        self.assertEqual(len(result.applied), 1)
        self.assertEqual(self.transport.max_in_flight, 1)

    async def test_deactivated_in_flight_cycle_is_discarded(self):
        poller = self.make_poller()
        await poller.seed()
        cursor_before = self.cursors.get("bob")
        gate = asyncio.get_running_loop().create_future()
        self.transport.fetch_results.append(gate)

        pending = asyncio.create_task(poller.step())
        await wait_until(lambda: self.transport.in_flight == 1)
        poller.deactivate()
        gate.set_result([msg("m1", NOW_MS + 1), msg("m2", NOW_MS + 2)])

        self.assertIsNone(await pending)
        self.assertEqual(self.log.count("bob"), 0)
        self.assertEqual(self.cursors.get("bob"), cursor_before)
        self.assertIs(poller.state.phase, PollPhase.CANCELLED)
        self.assertIsNone(await poller.step())


class TestPollState(unittest.TestCase):
    def test_transition_table(self):
        state = PollState(interval_ms=3000)

        state.transition(PollPhase.SCHEDULED)
        state.transition(PollPhase.FETCHING)
        with self.assertRaises(InvalidTransition):
            state.transition(PollPhase.FETCHING)
        state.transition(PollPhase.SCHEDULED)
        state.transition(PollPhase.CANCELLED)
        for target in PollPhase:
            with self.assertRaises(InvalidTransition):
                state.transition(target)

    def test_idle_cannot_fetch_directly(self):
        with self.assertRaises(InvalidTransition):
            PollState(interval_ms=3000).transition(PollPhase.FETCHING)


if __name__ == "__main__":
    unittest.main()
