from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .state import parse_iso, to_iso, utc_now


class SignalKind(str, Enum):
    LIKE = "like"
    REPLY = "reply"
    MENTION = "mention"
    FOLLOW = "follow"
    REPOST = "repost"
    QUOTE = "quote"

    @classmethod
    def parse(cls, value: Any) -> Optional["SignalKind"]:
        text = str(value or "").strip().lower()
        for kind in cls:
            if kind.value == text:
                return kind
        return None


DIRECT_KINDS = frozenset({SignalKind.REPLY, SignalKind.MENTION})
RESPONSE_KINDS = frozenset({SignalKind.REPLY, SignalKind.MENTION, SignalKind.QUOTE})
POSITIVE_KINDS = frozenset({SignalKind.LIKE, SignalKind.REPOST, SignalKind.FOLLOW})


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    UNKNOWN = "unknown"


class ConversationState(str, Enum):
    NEW = "new"
    ACTIVE = "active"
    AWAITING_RESPONSE = "awaiting_response"
    CONCLUDED = "concluded"
    STALE = "stale"


class SchedulerMode(str, Enum):
    IDLE = "idle"
    AWARENESS = "awareness"
    RESPONDING = "responding"
    EXPRESSING = "expressing"
    REFLECTING = "reflecting"
    IMPROVING = "improving"
    STOPPED = "stopped"


@dataclass
class Signal:
    """One inbound social event, already decoded from the platform payload."""

    id: str
    author_id: str
    kind: SignalKind
    timestamp: datetime
    text: str = ""
    is_read: bool = False
    author_name: str = ""
    thread_root_id: Optional[str] = None
    root_token: Optional[str] = None
    parent_id: Optional[str] = None
    parent_author_id: Optional[str] = None
    token: Optional[str] = None

    @property
    def root_id(self) -> str:
        return self.thread_root_id or self.parent_id or self.id


@dataclass
class InteractionEvent:
    kind: SignalKind
    reference_id: str
    timestamp: datetime
    responded: bool = False
    response_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "reference_id": self.reference_id,
            "timestamp": to_iso(self.timestamp),
            "responded": self.responded,
            "response_ref": self.response_ref,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["InteractionEvent"]:
        kind = SignalKind.parse(data.get("kind"))
        reference_id = str(data.get("reference_id") or "").strip()
        if kind is None or not reference_id:
            return None
        return cls(
            kind=kind,
            reference_id=reference_id,
            timestamp=parse_iso(data.get("timestamp")) or utc_now(),
            responded=bool(data.get("responded", False)),
            response_ref=data.get("response_ref"),
        )


@dataclass
class RelationshipRecord:
    identity_key: str
    display_name: str
    first_seen: datetime
    last_seen: datetime
    interactions: List[InteractionEvent] = field(default_factory=list)
    sentiment: Sentiment = Sentiment.UNKNOWN
    responded: bool = False

    @property
    def is_recurring(self) -> bool:
        return len(self.interactions) >= 5

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity_key": self.identity_key,
            "display_name": self.display_name,
            "first_seen": to_iso(self.first_seen),
            "last_seen": to_iso(self.last_seen),
            "interactions": [i.to_dict() for i in self.interactions],
            "sentiment": self.sentiment.value,
            "responded": self.responded,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelationshipRecord":
        interactions = []
        for raw in data.get("interactions") or []:
            if isinstance(raw, dict):
                event = InteractionEvent.from_dict(raw)
                if event is not None:
                    interactions.append(event)
        try:
            sentiment = Sentiment(data.get("sentiment", "unknown"))
        except ValueError:
            sentiment = Sentiment.UNKNOWN
        now = utc_now()
        return cls(
            identity_key=str(data.get("identity_key") or ""),
            display_name=str(data.get("display_name") or ""),
            first_seen=parse_iso(data.get("first_seen")) or now,
            last_seen=parse_iso(data.get("last_seen")) or now,
            interactions=interactions,
            sentiment=sentiment,
            responded=bool(data.get("responded", False)),
        )


@dataclass
class ThreadParticipant:
    identity: str
    display_name: str
    reply_count: int
    first_reply_at: datetime
    last_reply_at: datetime
    seems_disengaged: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "display_name": self.display_name,
            "reply_count": self.reply_count,
            "first_reply_at": to_iso(self.first_reply_at),
            "last_reply_at": to_iso(self.last_reply_at),
            "seems_disengaged": self.seems_disengaged,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreadParticipant":
        now = utc_now()
        return cls(
            identity=str(data.get("identity") or ""),
            display_name=str(data.get("display_name") or ""),
            reply_count=int(data.get("reply_count", 0) or 0),
            first_reply_at=parse_iso(data.get("first_reply_at")) or now,
            last_reply_at=parse_iso(data.get("last_reply_at")) or now,
            seems_disengaged=bool(data.get("seems_disengaged", False)),
        )


@dataclass
class OwnReply:
    reference: str
    text: str
    sent_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"reference": self.reference, "text": self.text, "sent_at": to_iso(self.sent_at)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OwnReply":
        return cls(
            reference=str(data.get("reference") or ""),
            text=str(data.get("text") or ""),
            sent_at=parse_iso(data.get("sent_at")) or utc_now(),
        )


@dataclass
class ConversationRecord:
    root_id: str
    first_seen: datetime
    last_checked: datetime
    source: str
    root_token: Optional[str] = None
    root_author_id: str = ""
    root_author_name: str = ""
    thread_depth: int = 0
    participants: Dict[str, ThreadParticipant] = field(default_factory=dict)
    own_reply_count: int = 0
    own_last_reply_at: Optional[datetime] = None
    own_last_reply_id: Optional[str] = None
    own_replies: List[OwnReply] = field(default_factory=list)
    state: ConversationState = ConversationState.NEW
    conclusion_reason: Optional[str] = None
    concluded_at: Optional[datetime] = None
    reengagement_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root_id": self.root_id,
            "root_token": self.root_token,
            "root_author_id": self.root_author_id,
            "root_author_name": self.root_author_name,
            "first_seen": to_iso(self.first_seen),
            "last_checked": to_iso(self.last_checked),
            "source": self.source,
            "thread_depth": self.thread_depth,
            "participants": {k: p.to_dict() for k, p in self.participants.items()},
            "own_reply_count": self.own_reply_count,
            "own_last_reply_at": to_iso(self.own_last_reply_at),
            "own_last_reply_id": self.own_last_reply_id,
            "own_replies": [r.to_dict() for r in self.own_replies],
            "state": self.state.value,
            "conclusion_reason": self.conclusion_reason,
            "concluded_at": to_iso(self.concluded_at),
            "reengagement_count": self.reengagement_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationRecord":
        try:
            state = ConversationState(data.get("state", "new"))
        except ValueError:
            state = ConversationState.NEW
        participants = {}
        for key, raw in (data.get("participants") or {}).items():
            if isinstance(raw, dict):
                participants[str(key)] = ThreadParticipant.from_dict(raw)
        now = utc_now()
        return cls(
            root_id=str(data.get("root_id") or ""),
            root_token=data.get("root_token"),
            root_author_id=str(data.get("root_author_id") or ""),
            root_author_name=str(data.get("root_author_name") or ""),
            first_seen=parse_iso(data.get("first_seen")) or now,
            last_checked=parse_iso(data.get("last_checked")) or now,
            source=str(data.get("source") or "notification"),
            thread_depth=int(data.get("thread_depth", 0) or 0),
            participants=participants,
            own_reply_count=int(data.get("own_reply_count", 0) or 0),
            own_last_reply_at=parse_iso(data.get("own_last_reply_at")),
            own_last_reply_id=data.get("own_last_reply_id"),
            own_replies=[OwnReply.from_dict(r) for r in data.get("own_replies") or [] if isinstance(r, dict)],
            state=state,
            conclusion_reason=data.get("conclusion_reason"),
            concluded_at=parse_iso(data.get("concluded_at")),
            reengagement_count=int(data.get("reengagement_count", 0) or 0),
        )


@dataclass(frozen=True)
class IssueRef:
    owner: str
    repo: str
    number: int


@dataclass
class ConversationAnalysis:
    should_conclude: bool
    reason: str
    thread_depth: int = 0
    participant_count: int = 0
    own_reply_count: int = 0
    active_participants: int = 0
    disengaged_participants: int = 0


@dataclass
class RespondDecision:
    should_respond: bool
    reason: str
    reengaged: bool = False


@dataclass
class PrioritizedNotification:
    signal: Signal
    priority: int
    reasons: List[str]
    relationship: Optional[RelationshipRecord]
    is_response_to_own_content: bool

    @property
    def reason(self) -> str:
        return ", ".join(self.reasons)


@dataclass
class TriagedThread:
    root_id: str
    notifications: List[PrioritizedNotification]
    highest_priority: int
    is_owner_thread: bool
    has_recurring_engager: bool
    oldest_timestamp: datetime

    @property
    def notification_count(self) -> int:
        return len(self.notifications)


@dataclass
class OutboundResult:
    allowed: bool
    reason: Optional[str] = None
    fingerprint: str = ""


@dataclass
class FeedItem:
    """One of the agent's own posts as returned by the platform."""

    id: str
    author_id: str
    text: str
    created_at: datetime
    thread_root_id: Optional[str] = None
    is_repost: bool = False
    like_count: int = 0
    reply_count: int = 0
    repost_count: int = 0

    @property
    def is_reply(self) -> bool:
        return bool(self.thread_root_id) and self.thread_root_id != self.id


@dataclass
class PruneCandidate:
    post_id: str
    group_key: str
    reason: str
    kept_post_id: str
    text: str = ""


@dataclass
class SchedulerState:
    mode: SchedulerMode = SchedulerMode.IDLE
    is_running: bool = False
    started_at: Optional[datetime] = None
    last_awareness_check: Optional[datetime] = None
    last_expression: Optional[datetime] = None
    last_reflection: Optional[datetime] = None
    last_improvement_check: Optional[datetime] = None
    last_engagement_check: Optional[datetime] = None
    next_expression_at: Optional[datetime] = None
    pending_notifications: List[PrioritizedNotification] = field(default_factory=list)
    pending_issue_conversations: List[IssueRef] = field(default_factory=list)
    consecutive_errors: int = 0
    fatal_error: Optional[str] = None
