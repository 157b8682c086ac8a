import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from presence.autonomy.models import Sentiment, Signal, SignalKind
from presence.autonomy.relationships import MAX_INTERACTIONS, RelationshipStore


NOON = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _signal(sid, author="alice", kind=SignalKind.LIKE, at=NOON):
    return Signal(id=sid, author_id=author, kind=kind, timestamp=at, author_name=author.title())


class RelationshipStoreTests(unittest.TestCase):
    def setUp(self):
        self.now = NOON
        self.store = RelationshipStore(clock=lambda: self.now)

    def test_interactions_are_unique_by_reference(self):
        self.store.record_interaction(_signal("s1"))
        self.store.record_interaction(_signal("s1"))
        self.assertEqual(len(self.store.get_relationship("alice").interactions), 1)

    def test_sentiment_follows_recent_positive_signals(self):
        self.store.record_interaction(_signal("s1"))
        self.assertEqual(self.store.get_relationship("alice").sentiment, Sentiment.NEUTRAL)
        self.store.record_interaction(_signal("s2", kind=SignalKind.REPOST))
        self.store.record_interaction(_signal("s3", kind=SignalKind.FOLLOW))
        self.assertEqual(self.store.get_relationship("alice").sentiment, Sentiment.POSITIVE)

    def test_interaction_history_is_bounded(self):
        for i in range(MAX_INTERACTIONS + 7):
            self.store.record_interaction(_signal(f"s{i}", kind=SignalKind.REPLY))
        record = self.store.get_relationship("alice")
        self.assertEqual(len(record.interactions), MAX_INTERACTIONS)
        self.assertEqual(record.interactions[-1].reference_id, f"s{MAX_INTERACTIONS + 6}")
        self.assertTrue(record.is_recurring)

    def test_mark_responded_is_visible_across_relationships(self):
        self.store.record_interaction(_signal("r1", kind=SignalKind.REPLY))
        self.store.record_interaction(_signal("r2", author="bob", kind=SignalKind.MENTION))
        self.assertFalse(self.store.has_responded_to("r2"))
        self.assertTrue(self.store.mark_interaction_responded("r2", "reply-9"))
        self.assertTrue(self.store.has_responded_to("r2"))
        self.assertFalse(self.store.mark_interaction_responded("missing", None))
        self.assertTrue(self.store.get_relationship("bob").responded)
        pending = self.store.pending_responses()
        self.assertEqual([key for key, _ in pending], ["alice"])

    def test_posting_respects_daily_limit_and_quiet_hours(self):
        store = RelationshipStore(daily_post_limit=1, quiet_hours=(23, 7), clock=lambda: self.now)
        decision = store.can_post_original()
        self.assertTrue(decision.should_post)
        self.assertEqual(decision.suggested_tone, "supportive")
        store.record_original_post("p1", "first thought")
        self.assertFalse(store.can_post_original().should_post)

        self.now = NOON + timedelta(days=1)
        self.assertTrue(store.can_post_original().should_post)
        late = datetime(2026, 3, 3, 23, 30, tzinfo=timezone.utc)
        self.assertFalse(store.can_post_original(late).should_post)

    def test_expression_engagement_updates_tracked_post(self):
        self.store.record_original_post("p1", "a thought")
        self.assertEqual(len(self.store.expressions_needing_check()), 1)
        self.assertTrue(self.store.update_expression_engagement("p1", 3, 1, 2))
        self.assertFalse(self.store.update_expression_engagement("p2", 1, 1, 1))
        self.assertEqual(self.store.posting["expressions"][0]["likes"], 3)

    def test_insights_dedup_by_prefix_and_clear_on_reflection(self):
        self.assertTrue(self.store.add_insight("People like short posts about testing"))
        self.assertFalse(self.store.add_insight("People like short posts about testing at night"))
        for _ in range(5):
            self.store.record_significant_event("reply_sent")
        self.assertTrue(self.store.should_reflect())
        self.store.record_reflection_complete()
        self.assertEqual(self.store.insights(), [])
        self.assertFalse(self.store.should_reflect())

    def test_state_survives_reload(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "engagement.json"
            store = RelationshipStore(path, clock=lambda: self.now)
            store.record_interaction(_signal("s1", kind=SignalKind.REPLY))
            store.mark_seen(NOON)
            reloaded = RelationshipStore(path, clock=lambda: self.now)
            self.assertEqual(len(reloaded.get_relationship("alice").interactions), 1)
            self.assertEqual(reloaded.seen_at, NOON)
            self.assertEqual(reloaded.get_relationship("alice").display_name, "Alice")


if __name__ == "__main__":
    unittest.main()
