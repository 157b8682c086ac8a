import json
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from presence.autonomy.action_journal import read_outbound_journal, summarize_outbound_journal
from presence.autonomy.config import PacingLimits
from presence.autonomy.models import FeedItem
from presence.autonomy.outbound_queue import (
    REASON_FEED_DUPLICATE,
    REASON_NEAR_DUPLICATE,
    OutboundQueue,
    execute_prune_plan,
    merge_prune_plans,
    pacing_kind_for,
    plan_closing_chain_pruning,
    plan_duplicate_pruning,
)
from presence.autonomy.pacing import PacingManager


T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
AGENT = "agent-1"


class _FakeTime:
    def __init__(self):
        self.now = 5000.0
        self.slept = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.slept.append(seconds)
        self.now += seconds


def _item(pid, text, minutes=0, root=None, author=AGENT, repost=False):
    return FeedItem(
        id=pid,
        author_id=author,
        text=text,
        created_at=T0 + timedelta(minutes=minutes),
        thread_root_id=root,
        is_repost=repost,
    )


class OutboundQueueTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.time = _FakeTime()
        self.pacing = PacingManager(PacingLimits(), time_fn=self.time, sleep=self.time.sleep)
        self.queue = OutboundQueue(self.pacing, agent_id=AGENT, clock=lambda: T0)

    async def test_uppercased_copy_of_feed_post_is_rejected(self):
        text = "Building resilient distributed systems requires careful fault tolerance design"
        self.queue.warmup_from_feed([_item("p1", text)])
        result = await self.queue.enqueue("post", text.upper())
        self.assertFalse(result.allowed)
        self.assertIn("duplicate of post already in feed", result.reason)
        self.assertEqual(self.pacing.history, [])

    async def test_trailing_mention_or_link_still_collides_with_feed(self):
        self.queue.warmup_from_feed([_item("p1", "Small commits make reviews kinder")])
        with_mention = await self.queue.enqueue("reply", "small commits make reviews kinder @bob")
        with_link = await self.queue.enqueue("post", "Small commits make reviews kinder https://x.example/a")
        self.assertEqual(with_mention.reason, REASON_FEED_DUPLICATE)
        self.assertEqual(with_link.reason, REASON_FEED_DUPLICATE)

    async def test_second_identical_enqueue_is_near_duplicate(self):
        first = await self.queue.enqueue("reply", "Retries need a budget, not hope.")
        second = await self.queue.enqueue("reply", "retries need a budget,   not hope.")
        self.assertTrue(first.allowed)
        self.assertFalse(second.allowed)
        self.assertEqual(second.reason, REASON_NEAR_DUPLICATE)
        self.assertEqual(len(self.pacing.history), 1)
        self.assertEqual(len(self.queue.runtime_entries), 1)

    async def test_accepted_send_waits_for_cooldown(self):
        await self.queue.enqueue("reply", "first distinct reply")
        self.pacing.start_tick()
        result = await self.queue.enqueue("reply", "second distinct reply")
        self.assertTrue(result.allowed)
        self.assertEqual(self.time.slept, [10, 50])
        self.assertEqual([r.kind for r in self.pacing.history], ["reply", "reply"])

    async def test_empty_fingerprint_is_paced_but_not_recorded(self):
        result = await self.queue.enqueue("reply", "@bob")
        self.assertTrue(result.allowed)
        self.assertEqual(result.fingerprint, "")
        self.assertEqual(self.queue.runtime_entries, [])
        self.assertEqual(len(self.pacing.history), 1)

    def test_warmup_skips_reposts_and_other_authors(self):
        count = self.queue.warmup_from_feed(
            [
                _item("p1", "my own thought"),
                _item("p2", "boosted from someone", author="someone", repost=True),
                _item("p3", "their post", author="someone"),
                _item("p4", "MY OWN THOUGHT"),
            ]
        )
        self.assertEqual(count, 1)
        self.assertTrue(self.queue.check("boosted from someone").allowed)

    async def test_runtime_buffer_is_bounded(self):
        queue = OutboundQueue(self.pacing, agent_id=AGENT, buffer_size=2, clock=lambda: T0)
        for i in range(4):
            queue.pacing.start_tick()
            await queue.enqueue("other", f"message number {i}")
        self.assertEqual(len(queue.runtime_entries), 2)
        self.assertTrue(queue.check("message number 0").allowed)
        self.assertFalse(queue.check("message number 3").allowed)

    async def test_state_and_journal_are_persisted(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "outbound_dedup.json"
            journal = Path(tmp) / "logs" / "outbound-queue.jsonl"
            queue = OutboundQueue(self.pacing, agent_id=AGENT, path=path, journal_path=journal, clock=lambda: T0)
            await queue.enqueue("post", "persist me")
            await queue.enqueue("post", "persist me")
            reloaded = OutboundQueue(self.pacing, agent_id=AGENT, path=path, clock=lambda: T0)
            after_restart = reloaded.check("Persist me")
            self.assertFalse(after_restart.allowed)
            self.assertEqual(after_restart.reason, REASON_FEED_DUPLICATE)
            self.assertEqual(reloaded.stats()["runtime_entries"], 0)
            self.assertEqual(reloaded.stats()["prior_entries"], 1)
            rows = [json.loads(line) for line in journal.read_text(encoding="utf-8").splitlines()]
            self.assertEqual([r["decision"] for r in rows], ["allowed", "rejected"])
            self.assertEqual(rows[1]["reason"], REASON_NEAR_DUPLICATE)
            self.assertEqual(rows[0]["agent_id"], AGENT)
            summary = summarize_outbound_journal(read_outbound_journal(journal))
            self.assertEqual(summary["decisions"], {"allowed": 1, "rejected": 1})
            self.assertEqual(summary["rejection_reasons"], {REASON_NEAR_DUPLICATE: 1})

    async def test_feed_copy_after_restart_reports_feed_duplicate(self):
        text = "Shipping the new reading list tonight"
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "outbound_dedup.json"
            first = OutboundQueue(self.pacing, agent_id=AGENT, path=path, clock=lambda: T0)
            self.assertTrue((await first.enqueue("post", text)).allowed)

            second = OutboundQueue(self.pacing, agent_id=AGENT, path=path, clock=lambda: T0)
            second.warmup_from_feed([_item("p1", text)])
            result = await second.enqueue("post", text.upper())
            self.assertFalse(result.allowed)
            self.assertEqual(result.reason, REASON_FEED_DUPLICATE)

    async def test_sends_from_this_run_stay_near_duplicates_after_save(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "outbound_dedup.json"
            first = OutboundQueue(self.pacing, agent_id=AGENT, path=path, clock=lambda: T0)
            await first.enqueue("post", "from yesterday")
            second = OutboundQueue(self.pacing, agent_id=AGENT, path=path, clock=lambda: T0)
            await second.enqueue("post", "from today")
            self.assertEqual(second.check("From today").reason, REASON_NEAR_DUPLICATE)
            third = OutboundQueue(self.pacing, agent_id=AGENT, path=path, clock=lambda: T0)
            self.assertEqual(third.stats()["prior_entries"], 2)


class PacingKindTests(unittest.TestCase):
    def test_outbound_kinds_map_to_pacing_types(self):
        self.assertEqual(pacing_kind_for("expression"), "post")
        self.assertEqual(pacing_kind_for("post_with_image"), "post")
        self.assertEqual(pacing_kind_for("issue_comment"), "reply")
        self.assertEqual(pacing_kind_for(" Reply "), "reply")
        self.assertEqual(pacing_kind_for("bookmark"), "other")


class PrunePlanningTests(unittest.IsolatedAsyncioTestCase):
    def test_identical_closings_in_one_thread_keep_the_first(self):
        items = [
            _item("r1", "Thanks so much!", minutes=0, root="t1"),
            _item("r2", "Thanks so much!", minutes=2, root="t1"),
        ]
        closing_plan = plan_closing_chain_pruning(items)
        self.assertEqual([c.post_id for c in closing_plan], ["r2"])
        self.assertEqual(closing_plan[0].kept_post_id, "r1")
        merged = merge_prune_plans(plan_duplicate_pruning(items), closing_plan)
        self.assertEqual([c.post_id for c in merged], ["r2"])

    def test_duplicates_are_scoped_to_thread_for_replies(self):
        items = [
            _item("a1", "Same reply text", minutes=5, root="t1"),
            _item("b1", "Same reply text", minutes=1, root="t2"),
            _item("a2", "same reply text", minutes=1, root="t1"),
        ]
        plan = plan_duplicate_pruning(items)
        self.assertEqual([c.post_id for c in plan], ["a1"])
        self.assertEqual(plan[0].kept_post_id, "a2")

    def test_top_level_duplicates_collide_globally(self):
        items = [
            _item("p2", "A repeated thought", minutes=10),
            _item("p1", "A repeated thought", minutes=0),
            _item("p3", "A repeated thought", minutes=20),
        ]
        plan = plan_duplicate_pruning(items)
        self.assertEqual(sorted(c.post_id for c in plan), ["p2", "p3"])
        self.assertTrue(all(c.kept_post_id == "p1" for c in plan))

    def test_top_level_closings_are_never_pruned(self):
        items = [_item("p1", "Thanks everyone!"), _item("p2", "Thanks all, cheers", minutes=1)]
        self.assertEqual(plan_closing_chain_pruning(items), [])

    async def test_execute_counts_successful_deletes(self):
        class _Deleter:
            def __init__(self):
                self.calls = []

            async def delete_post(self, post_id):
                self.calls.append(post_id)
                if post_id == "boom":
                    raise RuntimeError("network down")
                return post_id != "gone"

        items = [
            _item("keep", "dup"),
            _item("ok", "dup", minutes=1),
            _item("gone", "dup", minutes=2),
            _item("boom", "dup", minutes=3),
        ]
        plan = plan_duplicate_pruning(items)
        deleter = _Deleter()
        self.assertEqual(await execute_prune_plan(plan, deleter, dry_run=True), 0)
        self.assertEqual(deleter.calls, [])
        self.assertEqual(await execute_prune_plan(plan, deleter), 1)
        self.assertEqual(deleter.calls, ["ok", "gone", "boom"])


if __name__ == "__main__":
    unittest.main()
