from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import is_quiet_hour
from .models import (
    POSITIVE_KINDS,
    RESPONSE_KINDS,
    InteractionEvent,
    RelationshipRecord,
    Sentiment,
    Signal,
)
from .state import load_json_state, parse_iso, save_json_state, to_iso, utc_date_str, utc_now


MAX_INTERACTIONS = 50
SENTIMENT_WINDOW = 10
MAX_INSIGHTS = 20
MAX_TRACKED_EXPRESSIONS = 30
REFLECTION_EVENT_THRESHOLD = 5


@dataclass
class PostingDecision:
    should_post: bool
    reason: str
    suggested_tone: Optional[str] = None


def _default_engagement_state() -> Dict[str, Any]:
    return {
        "relationships": {},
        "posting": {
            "last_original_post": None,
            "posts_today": 0,
            "today": utc_date_str(),
            "expressions": [],
        },
        "reflection": {
            "last_reflection": None,
            "reflection_count": 0,
            "significant_events": 0,
            "pending_insights": [],
        },
        "seen_at": None,
    }


def suggested_tone_for_hour(hour: int) -> str:
    if 7 <= hour < 10:
        return "curious"
    if 10 <= hour < 14:
        return "supportive"
    if 18 <= hour < 23:
        return "celebratory"
    return "reflective"


class RelationshipStore:
    """Relationship, posting and reflection memory persisted as one JSON document."""

    def __init__(
        self,
        path: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
        daily_post_limit: int = 12,
        quiet_hours: Tuple[int, int] = (23, 7),
        clock: Callable[[], datetime] = utc_now,
    ):
        self.path = path
        self.logger = logger or logging.getLogger("presence.autonomy")
        self.daily_post_limit = daily_post_limit
        self.quiet_hours = quiet_hours
        self.clock = clock
        raw = load_json_state(path, _default_engagement_state, self.logger, label="engagement")
        self.relationships: Dict[str, RelationshipRecord] = {}
        for key, value in (raw.get("relationships") or {}).items():
            if isinstance(value, dict):
                record = RelationshipRecord.from_dict(value)
                record.identity_key = record.identity_key or str(key)
                self.relationships[record.identity_key] = record
        default = _default_engagement_state()
        self.posting: Dict[str, Any] = {**default["posting"], **(raw.get("posting") or {})}
        self.reflection: Dict[str, Any] = {**default["reflection"], **(raw.get("reflection") or {})}
        self._seen_at: Optional[datetime] = parse_iso(raw.get("seen_at"))

    def save(self) -> bool:
        data = {
            "relationships": {k: r.to_dict() for k, r in self.relationships.items()},
            "posting": self.posting,
            "reflection": self.reflection,
            "seen_at": to_iso(self._seen_at),
        }
        return save_json_state(self.path, data, self.logger, label="engagement")

    # Relationships

    def get_relationship(self, identity_key: str) -> Optional[RelationshipRecord]:
        return self.relationships.get(identity_key)

    def record_interaction(
        self,
        signal: Signal,
        responded: bool = False,
        response_ref: Optional[str] = None,
    ) -> RelationshipRecord:
        now = self.clock()
        record = self.relationships.get(signal.author_id)
        if record is None:
            record = RelationshipRecord(
                identity_key=signal.author_id,
                display_name=signal.author_name or signal.author_id,
                first_seen=now,
                last_seen=now,
            )
            self.relationships[signal.author_id] = record
            self.record_significant_event("new_relationship")
            self.add_insight(f"Met someone new: @{record.display_name}")
        record.last_seen = now

        existing = next((i for i in record.interactions if i.reference_id == signal.id), None)
        if existing is None:
            record.interactions.append(
                InteractionEvent(
                    kind=signal.kind,
                    reference_id=signal.id,
                    timestamp=signal.timestamp,
                    responded=responded,
                    response_ref=response_ref,
                )
            )
            if len(record.interactions) > MAX_INTERACTIONS:
                record.interactions = record.interactions[-MAX_INTERACTIONS:]
        elif responded and not existing.responded:
            existing.responded = True
            existing.response_ref = response_ref

        recent_positive = sum(1 for i in record.interactions[-SENTIMENT_WINDOW:] if i.kind in POSITIVE_KINDS)
        if recent_positive >= 3:
            record.sentiment = Sentiment.POSITIVE
        elif recent_positive >= 1:
            record.sentiment = Sentiment.NEUTRAL

        record.responded = any(i.responded for i in record.interactions)
        self.save()
        return record

    def mark_interaction_responded(self, reference_id: str, response_ref: Optional[str]) -> bool:
        for record in self.relationships.values():
            for interaction in record.interactions:
                if interaction.reference_id == reference_id and not interaction.responded:
                    interaction.responded = True
                    interaction.response_ref = response_ref
                    record.responded = True
                    self.save()
                    return True
        return False

    def has_responded_to(self, reference_id: str) -> bool:
        for record in self.relationships.values():
            for interaction in record.interactions:
                if interaction.reference_id == reference_id and interaction.responded:
                    return True
        return False

    def pending_responses(self) -> List[Tuple[str, List[InteractionEvent]]]:
        pending = []
        for key, record in self.relationships.items():
            unresponded = [i for i in record.interactions if not i.responded and i.kind in RESPONSE_KINDS]
            if unresponded:
                pending.append((key, unresponded))
        pending.sort(key=lambda item: item[1][0].timestamp)
        return pending

    # Restart recovery

    @property
    def seen_at(self) -> Optional[datetime]:
        return self._seen_at

    def mark_seen(self, timestamp: datetime) -> None:
        if self._seen_at is None or timestamp > self._seen_at:
            self._seen_at = timestamp
            self.save()

    # Posting

    def _reset_daily_if_needed(self) -> None:
        today = utc_date_str(self.clock())
        if self.posting.get("today") != today:
            self.posting["posts_today"] = 0
            self.posting["today"] = today

    def can_post_original(self, now: Optional[datetime] = None) -> PostingDecision:
        now = now or self.clock()
        self._reset_daily_if_needed()
        posts_today = int(self.posting.get("posts_today", 0) or 0)
        if posts_today >= self.daily_post_limit:
            return PostingDecision(False, f"Already shared {posts_today} thoughts today.")
        start, end = self.quiet_hours
        if is_quiet_hour(now.hour, start, end):
            return PostingDecision(False, "Quiet hours - resting.", "quiet")
        return PostingDecision(True, "Ready to share.", suggested_tone_for_hour(now.hour))

    def record_original_post(self, post_id: str, text: str) -> None:
        now = self.clock()
        self._reset_daily_if_needed()
        self.posting["last_original_post"] = to_iso(now)
        self.posting["posts_today"] = int(self.posting.get("posts_today", 0) or 0) + 1
        expressions = list(self.posting.get("expressions") or [])
        expressions.append(
            {
                "post_id": post_id,
                "text": text[:200],
                "posted_at": to_iso(now),
                "likes": 0,
                "replies": 0,
                "reposts": 0,
                "last_checked": None,
            }
        )
        self.posting["expressions"] = expressions[-MAX_TRACKED_EXPRESSIONS:]
        self.save()

    def expressions_needing_check(self, max_age_hours: float = 24.0) -> List[Dict[str, Any]]:
        now = self.clock()
        out = []
        for item in self.posting.get("expressions") or []:
            posted_at = parse_iso(item.get("posted_at"))
            if posted_at is None:
                continue
            if (now - posted_at).total_seconds() <= max_age_hours * 3600:
                out.append(item)
        return out

    def update_expression_engagement(self, post_id: str, likes: int, replies: int, reposts: int) -> bool:
        for item in self.posting.get("expressions") or []:
            if item.get("post_id") != post_id:
                continue
            item["likes"] = likes
            item["replies"] = replies
            item["reposts"] = reposts
            item["last_checked"] = to_iso(self.clock())
            self.save()
            return True
        return False

    # Reflection

    def record_significant_event(self, kind: str) -> None:
        self.reflection["significant_events"] = int(self.reflection.get("significant_events", 0) or 0) + 1
        self.logger.debug("Significant event kind=%s total=%s", kind, self.reflection["significant_events"])

    def add_insight(self, insight: str) -> bool:
        pending: List[str] = list(self.reflection.get("pending_insights") or [])
        prefix = insight[:30].lower()
        if any(existing[:30].lower() == prefix for existing in pending):
            return False
        if len(pending) >= MAX_INSIGHTS:
            return False
        pending.append(insight)
        self.reflection["pending_insights"] = pending
        return True

    def insights(self) -> List[str]:
        return list(self.reflection.get("pending_insights") or [])

    def should_reflect(self) -> bool:
        return int(self.reflection.get("significant_events", 0) or 0) >= REFLECTION_EVENT_THRESHOLD

    def record_reflection_complete(self) -> None:
        self.reflection["last_reflection"] = to_iso(self.clock())
        self.reflection["reflection_count"] = int(self.reflection.get("reflection_count", 0) or 0) + 1
        self.reflection["significant_events"] = 0
        self.reflection["pending_insights"] = []
        self.save()

    def engagement_stats(self) -> Dict[str, Any]:
        total_interactions = sum(len(r.interactions) for r in self.relationships.values())
        return {
            "relationships": len(self.relationships),
            "positive_relationships": sum(
                1 for r in self.relationships.values() if r.sentiment == Sentiment.POSITIVE
            ),
            "recurring_engagers": sum(1 for r in self.relationships.values() if r.is_recurring),
            "total_interactions": total_interactions,
            "pending_responses": sum(len(items) for _, items in self.pending_responses()),
            "posts_today": int(self.posting.get("posts_today", 0) or 0),
            "significant_events": int(self.reflection.get("significant_events", 0) or 0),
        }
