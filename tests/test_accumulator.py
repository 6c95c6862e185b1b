"""
Unit tests for the voice activity state machine.

Tests:
- Join/leave/move transitions and idempotence
- Excluded channels and observer suspension
- Conservation of time across flushes
- Flush failure merge-back and cache degradation
- Resets racing unflushed time
"""

import unittest
from unittest import mock

from activitybot.core.activity.accumulator import ActivityAccumulator
from activitybot.core.activity.events import EventType, Transition, VoiceEvent
from activitybot.core.activity.persistence import PersistenceGateway
from activitybot.core.activity.session_store import MemorySessionRepository, SessionStateStore
from activitybot.core.errors import DatabaseError, error_handler

from test_session_store import FailingRepository


class Clock:
    def __init__(self, now=1_000_000):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


def voice(user_id, old, new, name="Alice"):
    return VoiceEvent(user_id=user_id, old_channel_id=old, new_channel_id=new, display_name=name)


class AccumulatorTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = Clock()
        self.sessions = MemorySessionRepository()
        self.accumulator = ActivityAccumulator(
            self.sessions,
            excluded_channel_ids={"afk"},
            clock=self.clock,
        )
        self.gateway = PersistenceGateway.from_url("sqlite://")
        error_handler.reset()

    def tearDown(self):
        self.gateway.dispose()

    def stored_total(self, user_id):
        row = self.gateway.get_user_activity(user_id)
        return row.total_time_ms if row is not None else 0


class TestTransitions(AccumulatorTestCase):

    async def test_join_and_leave(self):
        start = self.clock.now
        self.assertIs(await self.accumulator.handle_event(voice("u1", None, "c1")), Transition.JOIN)
        self.assertTrue(self.accumulator.is_active("u1"))
        self.assertEqual((await self.sessions.get("u1")).start_time, start)

        self.clock.advance(60_000)
        self.assertIs(await self.accumulator.handle_event(voice("u1", "c1", None)), Transition.LEAVE)

        self.assertFalse(self.accumulator.is_active("u1"))
        self.assertIsNone(await self.sessions.get("u1"))
        self.assertEqual(self.accumulator.unflushed_ms("u1"), 60_000)
        logs = self.accumulator.pending_logs_for("u1")
        self.assertEqual([(l.event_type, l.timestamp) for l in logs],
                         [(EventType.JOIN, start), (EventType.LEAVE, start + 60_000)])

    async def test_repeated_events_are_noops(self):
        await self.accumulator.handle_event(voice("u1", None, "c1"))
        self.clock.advance(1000)

        self.assertIs(await self.accumulator.handle_event(voice("u1", None, "c1")), Transition.NOOP)
        self.assertIs(await self.accumulator.handle_event(voice("u1", "c1", "c1")), Transition.NOOP)
        self.clock.advance(1000)
        await self.accumulator.handle_event(voice("u1", "c1", None))
        self.assertIs(await self.accumulator.handle_event(voice("u1", "c1", None)), Transition.NOOP)

        self.assertEqual(self.accumulator.unflushed_ms("u1"), 2000)
        self.assertEqual(len(self.accumulator.pending_logs_for("u1")), 2)

    async def test_move_keeps_session(self):
        await self.accumulator.handle_event(voice("u1", None, "c1"))
        started = (await self.sessions.get("u1")).start_time
        self.clock.advance(5000)

        self.assertIs(await self.accumulator.handle_event(voice("u1", "c1", "c2")), Transition.MOVE)

        session = await self.sessions.get("u1")
        self.assertEqual(session.start_time, started)
        self.assertEqual(session.channel_id, "c2")
        self.clock.advance(5000)
        self.assertEqual(self.accumulator.unflushed_ms("u1"), 10_000)
        reasons = [(l.event_type, l.channel_id, l.reason) for l in self.accumulator.pending_logs_for("u1")]
        self.assertEqual(reasons, [
            (EventType.JOIN, "c1", "channel"),
            (EventType.LEAVE, "c1", "move"),
            (EventType.JOIN, "c2", "move"),
        ])

    async def test_excluded_channels(self):
        self.assertIs(await self.accumulator.handle_event(voice("u1", None, "afk")), Transition.NOOP)
        self.clock.advance(5000)
        self.assertEqual(self.accumulator.unflushed_ms("u1"), 0)

        self.assertIs(await self.accumulator.handle_event(voice("u1", "afk", "c1")), Transition.JOIN)
        self.clock.advance(3000)
        self.assertIs(await self.accumulator.handle_event(voice("u1", "c1", "afk")), Transition.LEAVE)
        self.clock.advance(5000)

        self.assertEqual(self.accumulator.unflushed_ms("u1"), 3000)

    async def test_observer_marker_suspends_and_resumes(self):
        await self.accumulator.handle_event(voice("u1", None, "c1"))
        self.clock.advance(1000)

        transition = await self.accumulator.handle_event(voice("u1", "c1", "c1", name="[Observing] Alice"))
        self.assertIs(transition, Transition.SUSPEND)
        self.assertFalse(self.accumulator.is_active("u1"))
        self.clock.advance(10_000)

        transition = await self.accumulator.handle_event(voice("u1", "c1", "c1", name="Alice"))
        self.assertIs(transition, Transition.RESUME)
        self.clock.advance(2000)

        self.assertEqual(self.accumulator.unflushed_ms("u1"), 3000)
        reasons = [l.reason for l in self.accumulator.pending_logs_for("u1")]
        self.assertEqual(reasons, ["channel", "suspend", "resume"])

    async def test_join_while_suspended(self):
        transition = await self.accumulator.handle_event(voice("u1", None, "c1", name="Alice [Waiting]"))
        self.assertIs(transition, Transition.NOOP)
        self.clock.advance(5000)
        self.assertEqual(self.accumulator.unflushed_ms("u1"), 0)

        self.assertIs(await self.accumulator.handle_event(voice("u1", "c1", "c1")), Transition.RESUME)
        self.assertTrue(self.accumulator.is_active("u1"))

    async def test_profile_update_while_idle_is_noop(self):
        self.assertIs(await self.accumulator.handle_event(voice("u1", None, None)), Transition.NOOP)
        self.assertEqual(self.accumulator.active_user_ids(), [])
        self.assertEqual(self.accumulator.get_stats()["dirty_users"], 0)

    async def test_cache_failures_do_not_block_events(self):
        accumulator = ActivityAccumulator(SessionStateStore(primary=FailingRepository()), clock=self.clock)

        self.assertIs(await accumulator.handle_event(voice("u1", None, "c1")), Transition.JOIN)
        self.clock.advance(1000)
        self.assertIs(await accumulator.handle_event(voice("u1", "c1", None)), Transition.LEAVE)

        self.assertEqual(accumulator.unflushed_ms("u1"), 1000)
        self.assertEqual(accumulator.sessions.primary_failures, 2)

    async def test_stats(self):
        await self.accumulator.handle_event(voice("u1", None, "c1"))
        await self.accumulator.handle_event(voice("u2", None, "c1", name="Bob"))
        self.clock.advance(4000)
        await self.accumulator.handle_event(voice("u1", "c1", None))

        stats = self.accumulator.get_stats()
        self.assertEqual(stats["total_joins"], 2)
        self.assertEqual(stats["total_leaves"], 1)
        self.assertEqual(stats["peak_concurrent"], 2)
        self.assertEqual(stats["total_session_ms"], 4000)
        self.assertEqual(stats["active_users"], 1)
        self.assertEqual(stats["uptime_ms"], 4000)


class TestFlush(AccumulatorTestCase):

    async def test_conservation_across_flushes(self):
        await self.accumulator.handle_event(voice("u1", None, "c1"))
        self.clock.advance(30_000)
        await self.accumulator.flush(self.gateway)
        self.assertEqual(self.stored_total("u1"), 30_000)
        self.assertEqual(self.accumulator.unflushed_ms("u1"), 0)

        self.clock.advance(20_000)
        await self.accumulator.handle_event(voice("u1", "c1", "c2"))
        self.clock.advance(10_000)
        await self.accumulator.handle_event(voice("u1", "c2", None))
        self.clock.advance(99_000)
        result = await self.accumulator.flush(self.gateway)

        self.assertEqual(result.users_flushed, 1)
        self.assertEqual(self.stored_total("u1"), 60_000)
        self.assertEqual(self.accumulator.live_total("u1", self.stored_total("u1")), 60_000)
        self.assertIsNone(self.gateway.get_user_activity("u1").start_time)

    async def test_open_session_rearmed_in_store(self):
        await self.accumulator.handle_event(voice("u1", None, "c1"))
        self.clock.advance(10_000)
        await self.accumulator.flush(self.gateway)

        self.assertEqual(self.gateway.get_open_sessions(), {"u1": self.clock.now})
        self.clock.advance(5000)
        self.assertEqual(self.accumulator.live_total("u1", self.stored_total("u1")), 15_000)

    async def test_nothing_to_flush(self):
        result = await self.accumulator.flush(self.gateway)
        self.assertEqual(result.users_flushed, 0)
        self.assertEqual(result.logs_written, 0)

    async def test_failed_flush_is_retried(self):
        await self.accumulator.handle_event(voice("u1", None, "c1"))
        self.clock.advance(10_000)
        await self.accumulator.handle_event(voice("u1", "c1", None))

        failing = mock.Mock()
        failing.flush_activity.side_effect = DatabaseError("A database error occurred.", "locked")
        self.assertIsNone(await self.accumulator.flush(failing))

        self.assertEqual(self.accumulator.unflushed_ms("u1"), 10_000)
        self.assertEqual(len(self.accumulator.pending_logs_for("u1")), 2)
        self.assertEqual(error_handler.get_stats()["by_category"].get("database"), 1)

        result = await self.accumulator.flush(self.gateway)
        self.assertEqual(result.users_flushed, 1)
        self.assertEqual(result.logs_written, 2)
        self.assertEqual(self.stored_total("u1"), 10_000)

    async def test_failed_flush_keeps_open_session_time(self):
        await self.accumulator.handle_event(voice("u1", None, "c1"))
        self.clock.advance(10_000)

        failing = mock.Mock()
        failing.flush_activity.side_effect = DatabaseError("A database error occurred.")
        await self.accumulator.flush(failing)
        self.clock.advance(5000)

        await self.accumulator.flush(self.gateway)
        self.assertEqual(self.stored_total("u1"), 15_000)

    async def test_sum_activity_includes_unflushed(self):
        start = self.clock.now
        await self.accumulator.handle_event(voice("u1", None, "c1"))
        self.clock.advance(3000)

        total = await self.accumulator.sum_activity(self.gateway, "u1", start - 1000, start + 10_000)
        self.assertEqual(total, 3000)

        await self.accumulator.flush(self.gateway)
        self.clock.advance(2000)
        total = await self.accumulator.sum_activity(self.gateway, "u1", start - 1000, start + 10_000)
        self.assertEqual(total, 5000)

    async def test_snapshot(self):
        await self.accumulator.handle_event(voice("u1", None, "c1"))
        self.clock.advance(2500)

        snapshot = self.accumulator.snapshot(["u1", "u2"])
        self.assertEqual(snapshot["u1"].unflushed_ms, 2500)
        self.assertTrue(snapshot["u1"].is_live)
        self.assertEqual(len(snapshot["u1"].pending_logs), 1)
        self.assertEqual(snapshot["u2"].unflushed_ms, 0)
        self.assertFalse(snapshot["u2"].is_live)


class TestReset(AccumulatorTestCase):

    async def test_reset_clears_unflushed_time(self):
        await self.accumulator.handle_event(voice("u1", None, "c1"))
        await self.accumulator.handle_event(voice("u2", None, "c1", name="Bob"))
        self.clock.advance(10_000)
        await self.accumulator.flush(self.gateway)
        self.clock.advance(5000)
        await self.accumulator.handle_event(voice("u2", "c1", None, name="Bob"))

        affected = await self.accumulator.reset_group(self.gateway, "Member", ["u1", "u2"], reason="test")
        self.assertEqual(affected, 2)
        self.assertEqual(self.accumulator.unflushed_ms("u1"), 0)
        self.assertEqual(self.accumulator.unflushed_ms("u2"), 0)
        self.assertEqual(self.gateway.get_open_sessions(), {"u1": self.clock.now})

        self.clock.advance(4000)
        await self.accumulator.flush(self.gateway)
        self.assertEqual(self.stored_total("u1"), 4000)
        self.assertEqual(self.stored_total("u2"), 0)

    async def test_failed_reset_restores_ledger(self):
        await self.accumulator.handle_event(voice("u1", None, "c1"))
        self.clock.advance(10_000)

        failing = mock.Mock()
        failing.reset_group.side_effect = DatabaseError("A database error occurred.")
        with self.assertRaises(DatabaseError):
            await self.accumulator.reset_group(failing, "Member", ["u1"])

        self.assertEqual(self.accumulator.unflushed_ms("u1"), 10_000)
        self.clock.advance(1000)
        await self.accumulator.flush(self.gateway)
        self.assertEqual(self.stored_total("u1"), 11_000)

    async def test_batch_drained_before_reset_is_not_restored(self):
        await self.accumulator.handle_event(voice("u1", None, "c1"))
        self.clock.advance(10_000)
        deltas, logs = self.accumulator.drain(self.clock.now)

        self.clock.advance(1000)
        await self.accumulator.reset_group(self.gateway, "Member", ["u1"])
        self.accumulator.restore(deltas, logs)

        self.assertEqual(self.accumulator.unflushed_ms("u1"), 0)


class TestSeedConnected(AccumulatorTestCase):

    async def test_seed_joins_and_closes(self):
        self.accumulator.recover_session("u1", self.clock.now - 5000, channel_id="c1")
        self.accumulator.recover_session("u2", self.clock.now - 5000, channel_id="c1")

        joined, closed = await self.accumulator.seed_connected([
            voice("u1", None, "c2"),
            voice("u3", None, "c1", name="Carol"),
        ])

        self.assertEqual((joined, closed), (1, 1))
        self.assertEqual(self.accumulator.active_user_ids(), ["u1", "u3"])
        self.assertEqual(self.accumulator.unflushed_ms("u1"), 5000)
        self.assertEqual(self.accumulator.unflushed_ms("u3"), 0)

        # u2 left at some unknown point after the last flush and is credited nothing more
        self.assertEqual(self.accumulator.unflushed_ms("u2"), 0)
        logs = self.accumulator.pending_logs_for("u2")
        self.assertEqual([(l.event_type, l.reason, l.timestamp) for l in logs],
                         [(EventType.LEAVE, "offline", self.clock.now - 5000)])

    async def test_seed_closes_session_now_in_excluded_channel(self):
        self.accumulator.recover_session("u1", self.clock.now - 5000, channel_id="c1")

        joined, closed = await self.accumulator.seed_connected([voice("u1", None, "afk")])

        self.assertEqual((joined, closed), (0, 1))
        self.assertFalse(self.accumulator.is_active("u1"))
        self.assertEqual(self.accumulator.unflushed_ms("u1"), 0)

        # Leaving the excluded channel later is a no-op
        self.clock.advance(60_000)
        self.assertIs(await self.accumulator.handle_event(voice("u1", "afk", None)), Transition.NOOP)


if __name__ == "__main__":
    unittest.main()
