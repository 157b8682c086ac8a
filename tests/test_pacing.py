import unittest

from presence.autonomy.config import PacingLimits
from presence.autonomy.pacing import PacingManager, action_type_for


class _FakeTime:
    def __init__(self):
        self.now = 1000.0
        self.slept = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.slept.append(seconds)
        self.now += seconds


class PacingManagerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.time = _FakeTime()
        self.pacing = PacingManager(PacingLimits(), time_fn=self.time, sleep=self.time.sleep)

    def test_first_action_is_allowed(self):
        self.assertTrue(self.pacing.can_do_action("reply").allowed)

    def test_global_cooldown_then_type_cooldown(self):
        self.pacing.record_action("reply")
        decision = self.pacing.can_do_action("like")
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.wait_seconds, 10)
        self.time.now += 11
        self.assertTrue(self.pacing.can_do_action("like").allowed)
        decision = self.pacing.can_do_action("reply")
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.wait_seconds, 49)
        self.assertIn("reply", decision.reason)

    def test_tick_cap_reports_no_wait(self):
        for _ in range(3):
            self.pacing.record_action("other")
        decision = self.pacing.can_do_action("reply")
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.wait_seconds, 0)
        self.pacing.start_tick()
        self.assertTrue(self.pacing.can_do_more_actions())

    async def test_wait_for_cooldown_sleeps_remaining_time(self):
        self.pacing.record_action("post")
        self.pacing.start_tick()
        waited = await self.pacing.wait_for_cooldown("post")
        self.assertEqual(waited, 1800.0)
        self.assertEqual(self.time.slept, [10, 1790])
        self.assertEqual(await self.pacing.wait_for_cooldown("post"), 0.0)

    def test_history_is_bounded_and_stats_count_recent(self):
        for _ in range(120):
            self.pacing.record_action("like")
        self.assertEqual(len(self.pacing.history), 100)
        self.assertEqual(self.pacing.stats()["recent"], {"like": 100})

    def test_action_type_mapping(self):
        self.assertEqual(action_type_for("social_reply"), "reply")
        self.assertEqual(action_type_for("unfollow"), "follow")
        self.assertEqual(action_type_for("github_issue_comment"), "reply")
        self.assertEqual(action_type_for("search"), "other")


if __name__ == "__main__":
    unittest.main()
