"""
Unit tests for activity classification.
"""

import unittest
from types import SimpleNamespace
from unittest import mock

from activitybot.core.activity.classifier import Classifier, threshold_ms
from activitybot.core.activity.events import HOUR_MS, EventType, FlushDelta, LiveState, PendingLog, RosterMember
from activitybot.core.activity.persistence import PersistenceGateway

MINUTE_MS = 60 * 1000
NOW = 1_700_000_000_000


class ClassifierTestCase(unittest.TestCase):

    def setUp(self):
        self.gateway = PersistenceGateway.from_url("sqlite://")
        self.classifier = Classifier(self.gateway, afk_marker="AFK")

    def tearDown(self):
        self.gateway.dispose()

    def store(self, **totals):
        self.gateway.flush_activity(
            [FlushDelta(user_id, user_id.title(), total, 0, open_session=False) for user_id, total in totals.items()],
            now=NOW - HOUR_MS,
        )


class TestThresholds(ClassifierTestCase):

    def test_live_time_crosses_threshold(self):
        self.gateway.set_group_config("Member", min_hours=10)
        self.store(alice=9 * HOUR_MS + 59 * MINUTE_MS)
        live = {"alice": LiveState(unflushed_ms=2 * MINUTE_MS, is_live=True)}

        result = self.classifier.classify("Member", [RosterMember("alice", "Alice")], now=NOW, live=live)

        self.assertEqual([u.user_id for u in result.active], ["alice"])
        self.assertEqual(result.active[0].total_ms, 10 * HOUR_MS + MINUTE_MS)
        self.assertEqual(result.inactive, [])

    def test_threshold_is_inclusive(self):
        self.gateway.set_group_config("Member", min_hours=10)
        self.store(exact=10 * HOUR_MS, short=10 * HOUR_MS - 1)
        roster = [RosterMember("exact", "Exact"), RosterMember("short", "Short")]

        result = self.classifier.classify("Member", roster, now=NOW)

        self.assertEqual([u.user_id for u in result.active], ["exact"])
        self.assertEqual([u.user_id for u in result.inactive], ["short"])
        self.assertEqual(result.min_hours, 10.0)
        self.assertEqual(result.threshold_ms, 10 * HOUR_MS)

    def test_fractional_hours_in_whole_ms(self):
        self.assertEqual(threshold_ms(0.1), 360_000)
        self.assertEqual(threshold_ms(2.5), 9_000_000)

    def test_unknown_user_counts_zero(self):
        self.gateway.set_group_config("Member", min_hours=1)

        result = self.classifier.classify("Member", [RosterMember("ghost", "Ghost")], now=NOW)

        self.assertEqual(result.inactive[0].total_ms, 0)

    def test_missing_config_uses_zero(self):
        with self.assertLogs("activitybot.classifier", level="WARNING"):
            result = self.classifier.classify("Nobody", [RosterMember("ghost", "Ghost")], now=NOW)

        self.assertEqual(result.min_hours, 0.0)
        self.assertIsNone(result.reset_time)
        self.assertEqual([u.user_id for u in result.active], ["ghost"])

    def test_corrupt_config_uses_zero(self):
        corrupt = SimpleNamespace(min_hours="ten", reset_time=123)
        with mock.patch.object(self.gateway, "get_group_config", return_value=corrupt):
            with self.assertLogs("activitybot.classifier", level="WARNING"):
                result = self.classifier.classify("Member", [RosterMember("ghost", "Ghost")], now=NOW)

        self.assertEqual(result.min_hours, 0.0)
        self.assertEqual(result.reset_time, 123)
        self.assertEqual(len(result.active), 1)


class TestOrdering(ClassifierTestCase):

    def test_sorted_by_total_ties_keep_roster_order(self):
        self.gateway.set_group_config("Member", min_hours=1)
        self.store(a=5 * HOUR_MS, b=5 * HOUR_MS, c=7 * HOUR_MS, d=HOUR_MS // 2, e=HOUR_MS // 2)
        roster = [RosterMember(user_id, user_id.upper()) for user_id in ["e", "a", "b", "d", "c"]]

        first = self.classifier.classify("Member", roster, now=NOW)
        second = self.classifier.classify("Member", roster, now=NOW)

        self.assertEqual([u.user_id for u in first.active], ["c", "a", "b"])
        self.assertEqual([u.user_id for u in first.inactive], ["e", "d"])
        self.assertEqual(first.active, second.active)
        self.assertEqual(first.inactive, second.inactive)
        self.assertEqual(first.summary(), {"active": 3, "inactive": 2, "exempt": 0})


class TestExempt(ClassifierTestCase):

    def test_markers_and_status(self):
        self.gateway.set_group_config("Member", min_hours=1)
        self.store(role=50 * HOUR_MS, name=HOUR_MS, status=2 * HOUR_MS, plain=3 * HOUR_MS)
        self.gateway.set_afk_status("status", "Status", afk_until=NOW + HOUR_MS, now=NOW - HOUR_MS)
        roster = [
            RosterMember("role", "Role", ("Member", "AFK-Leave")),
            RosterMember("name", "Name [AFK]"),
            RosterMember("status", "Status"),
            RosterMember("plain", "Plain", ("Member",)),
        ]

        result = self.classifier.classify("Member", roster, now=NOW)

        # Exempt wins even above the threshold
        self.assertEqual([u.user_id for u in result.exempt], ["role", "status", "name"])
        self.assertEqual([u.user_id for u in result.active], ["plain"])

    def test_expired_status_not_exempt(self):
        self.gateway.set_group_config("Member", min_hours=1)
        self.gateway.set_afk_status("u1", "U1", afk_until=NOW - 1, now=NOW - HOUR_MS)

        result = self.classifier.classify("Member", [RosterMember("u1", "U1")], now=NOW)

        self.assertEqual(result.exempt, [])
        self.assertEqual(len(result.inactive), 1)


class TestWindow(ClassifierTestCase):

    def test_window_totals_come_from_log(self):
        self.gateway.set_group_config("Member", min_hours=1)
        self.store(alice=100 * HOUR_MS)
        start = NOW - 10 * HOUR_MS
        self.gateway.flush_activity([], [
            PendingLog("alice", EventType.JOIN, "c1", "General", start + HOUR_MS),
            PendingLog("alice", EventType.LEAVE, "c1", "General", start + HOUR_MS + 30 * MINUTE_MS),
        ], now=NOW)
        live = {"bob": LiveState(
            unflushed_ms=2 * HOUR_MS,
            is_live=True,
            pending_logs=[PendingLog("bob", EventType.JOIN, "c1", "General", NOW - 2 * HOUR_MS)],
        )}
        roster = [RosterMember("alice", "Alice"), RosterMember("bob", "Bob")]

        result = self.classifier.classify("Member", roster, window=(start, NOW), now=NOW, live=live)

        self.assertEqual([(u.user_id, u.total_ms) for u in result.active], [("bob", 2 * HOUR_MS)])
        self.assertEqual([(u.user_id, u.total_ms) for u in result.inactive], [("alice", 30 * MINUTE_MS)])
        self.assertEqual(result.window, (start, NOW))


if __name__ == "__main__":
    unittest.main()
