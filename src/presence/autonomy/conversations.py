from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, Tuple, TypeVar

from .config import ConversationThresholds
from .models import (
    ConversationAnalysis,
    ConversationRecord,
    ConversationState,
    IssueRef,
    OwnReply,
    RespondDecision,
    ThreadParticipant,
)
from .state import load_json_state, parse_iso, save_json_state, to_iso, utc_now
from .text import is_low_value_closing, preview_text


KeyT = TypeVar("KeyT")

MAX_OWN_REPLY_SNIPPETS = 5

# Sources for issue threads discovered through links in notifications.
ISSUE_SOURCE_LINK = "shared_link"
ISSUE_SOURCE_OWNER_LINK = "shared_link_owner"

_ISSUE_URL_RE = re.compile(r"(?:https?://)?github\.com/([\w.-]+)/([\w.-]+)/(issues|pull)/(\d+)", re.IGNORECASE)


def issue_conversation_key(ref: IssueRef) -> str:
    return f"{ref.owner}/{ref.repo}#{ref.number}"


def extract_issue_refs(text: str) -> List[IssueRef]:
    """Issue and pull request links in ``text``, first occurrence wins."""
    refs: List[IssueRef] = []
    for match in _ISSUE_URL_RE.finditer(text or ""):
        ref = IssueRef(owner=match.group(1), repo=match.group(2), number=int(match.group(4)))
        if ref not in refs:
            refs.append(ref)
    return refs


def _default_conversation_state() -> Dict[str, Any]:
    return {"conversations": {}, "last_cleanup": None}


class ConversationTracker(Generic[KeyT]):
    """Per-thread lifecycle state machine shared by every conversation domain.

    ``KeyT`` is the domain identifier (a post reference string, an
    ``IssueRef``...). ``key_fn`` maps it to the string used as the storage
    key. Operations against an untracked thread log a warning and do nothing.
    """

    def __init__(
        self,
        name: str,
        key_fn: Callable[[KeyT], str],
        thresholds: ConversationThresholds,
        path: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
        reengagement_limit: int = 1,
        unlimited_sources: Iterable[str] = (),
        max_age_days: int = 7,
        clock: Callable[[], datetime] = utc_now,
        closing_classifier: Callable[[str], bool] = is_low_value_closing,
    ):
        self.name = name
        self.key_fn = key_fn
        self.thresholds = thresholds
        self.path = path
        self.logger = logger or logging.getLogger("presence.autonomy")
        self.reengagement_limit = reengagement_limit
        self.unlimited_sources = {s.lower() for s in unlimited_sources}
        self.max_age_days = max_age_days
        self.clock = clock
        self.closing_classifier = closing_classifier
        raw = load_json_state(path, _default_conversation_state, self.logger, label=f"{name}_conversations")
        self.conversations: Dict[str, ConversationRecord] = {}
        for key, value in (raw.get("conversations") or {}).items():
            if isinstance(value, dict):
                record = ConversationRecord.from_dict(value)
                record.root_id = record.root_id or str(key)
                self.conversations[str(key)] = record
        self.last_cleanup: Optional[datetime] = parse_iso(raw.get("last_cleanup"))

    def save(self) -> bool:
        data = {
            "conversations": {k: r.to_dict() for k, r in self.conversations.items()},
            "last_cleanup": to_iso(self.last_cleanup),
        }
        return save_json_state(self.path, data, self.logger, label=f"{self.name}_conversations")

    def _lookup(self, root: KeyT, operation: str) -> Optional[ConversationRecord]:
        key = self.key_fn(root)
        record = self.conversations.get(key)
        if record is None:
            self.logger.warning(
                "Conversation untracked tracker=%s op=%s root=%s action=noop",
                self.name,
                operation,
                key,
            )
        return record

    def get_conversation(self, root: KeyT) -> Optional[ConversationRecord]:
        return self.conversations.get(self.key_fn(root))

    def track_conversation(
        self,
        root: KeyT,
        source: str,
        root_token: Optional[str] = None,
        root_author_id: str = "",
        root_author_name: str = "",
    ) -> ConversationRecord:
        key = self.key_fn(root)
        now = self.clock()
        existing = self.conversations.get(key)
        if existing is not None:
            existing.last_checked = now
            self.save()
            return existing

        record = ConversationRecord(
            root_id=key,
            root_token=root_token,
            root_author_id=root_author_id,
            root_author_name=root_author_name,
            first_seen=now,
            last_checked=now,
            source=source,
        )
        self.conversations[key] = record
        self.save()
        self.logger.info(
            "Tracking new conversation tracker=%s root=%s author=%s source=%s",
            self.name,
            key,
            root_author_name or root_author_id,
            source,
        )
        return record

    def record_participant_activity(
        self,
        root: KeyT,
        identity: str,
        display_name: str = "",
        at: Optional[datetime] = None,
    ) -> None:
        record = self._lookup(root, "record_participant_activity")
        if record is None:
            return
        self._upsert_participant(record, identity, display_name, at or self.clock())
        record.last_checked = self.clock()
        if record.state == ConversationState.AWAITING_RESPONSE:
            record.state = ConversationState.ACTIVE
        self.save()

    @staticmethod
    def _upsert_participant(record: ConversationRecord, identity: str, display_name: str, at: datetime) -> None:
        participant = record.participants.get(identity)
        if participant is not None:
            participant.reply_count += 1
            participant.last_reply_at = at
            participant.seems_disengaged = False
            return
        record.participants[identity] = ThreadParticipant(
            identity=identity,
            display_name=display_name or identity,
            reply_count=1,
            first_reply_at=at,
            last_reply_at=at,
        )

    def record_own_reply(
        self,
        root: KeyT,
        reply_id: str,
        agent_id: str,
        agent_name: str = "",
        text: str = "",
    ) -> None:
        record = self._lookup(root, "record_own_reply")
        if record is None:
            return
        now = self.clock()
        record.own_reply_count += 1
        record.own_last_reply_at = now
        record.own_last_reply_id = reply_id
        record.own_replies.append(OwnReply(reference=reply_id, text=preview_text(text, 280), sent_at=now))
        record.own_replies = record.own_replies[-MAX_OWN_REPLY_SNIPPETS:]
        record.last_checked = now
        if record.state == ConversationState.CONCLUDED:
            self.logger.warning(
                "Own reply recorded on concluded conversation tracker=%s root=%s state_kept=concluded",
                self.name,
                record.root_id,
            )
        else:
            record.state = ConversationState.AWAITING_RESPONSE
        self._upsert_participant(record, agent_id, agent_name, now)
        self.save()
        self.logger.debug(
            "Recorded own reply tracker=%s root=%s reply_id=%s own_reply_count=%s",
            self.name,
            record.root_id,
            reply_id,
            record.own_reply_count,
        )

    def update_thread_depth(self, root: KeyT, depth: int) -> None:
        record = self._lookup(root, "update_thread_depth")
        if record is None:
            return
        record.thread_depth = max(0, int(depth))
        self.save()

    def mark_concluded(self, root: KeyT, reason: str) -> None:
        record = self._lookup(root, "mark_concluded")
        if record is None:
            return
        now = self.clock()
        record.state = ConversationState.CONCLUDED
        record.conclusion_reason = reason
        record.concluded_at = now
        record.last_checked = now
        self.save()
        self.logger.info("Conversation concluded tracker=%s root=%s reason=%s", self.name, record.root_id, reason)

    def update_state(self, root: KeyT, new_state: ConversationState, reason: Optional[str] = None) -> None:
        record = self._lookup(root, "update_state")
        if record is None:
            return
        if new_state == ConversationState.CONCLUDED:
            self.mark_concluded(root, reason or record.conclusion_reason or "Concluded")
            return
        if record.state == ConversationState.CONCLUDED:
            # Leaving concluded goes through should_respond_in_conversation only.
            self.logger.warning(
                "Ignoring state change on concluded conversation tracker=%s root=%s requested=%s",
                self.name,
                record.root_id,
                new_state.value,
            )
            return
        record.state = new_state
        record.last_checked = self.clock()
        if reason:
            record.conclusion_reason = reason
        self.save()
        self.logger.debug(
            "Updated conversation state tracker=%s root=%s state=%s reason=%s",
            self.name,
            record.root_id,
            new_state.value,
            reason,
        )

    def _is_closing_chain(self, record: ConversationRecord) -> bool:
        needed = max(2, self.thresholds.closing_chain_length)
        if len(record.own_replies) < needed:
            return False
        tail = record.own_replies[-needed:]
        if not all(self.closing_classifier(reply.text) for reply in tail):
            return False
        window = self.thresholds.closing_chain_window_seconds
        for earlier, later in zip(tail, tail[1:]):
            if (later.sent_at - earlier.sent_at).total_seconds() > window:
                return False
        return True

    def analyze_conversation(
        self,
        root: KeyT,
        agent_id: str,
        current_depth: Optional[int] = None,
    ) -> ConversationAnalysis:
        record = self.conversations.get(self.key_fn(root))
        if record is None:
            return ConversationAnalysis(
                should_conclude=False,
                reason="Unknown conversation",
                thread_depth=current_depth or 0,
            )

        now = self.clock()
        depth = record.thread_depth if current_depth is None else current_depth
        participants = list(record.participants.values())
        others = [p for p in participants if p.identity != agent_id]
        window = self.thresholds.disengagement_seconds
        active = 0
        disengaged = 0
        for participant in others:
            silent_for = (now - participant.last_reply_at).total_seconds()
            participant.seems_disengaged = False
            if silent_for < window:
                active += 1
            elif participant.reply_count > 1:
                disengaged += 1
                participant.seems_disengaged = True

        def _result(should_conclude: bool, reason: str) -> ConversationAnalysis:
            return ConversationAnalysis(
                should_conclude=should_conclude,
                reason=reason,
                thread_depth=depth,
                participant_count=len(participants),
                own_reply_count=record.own_reply_count,
                active_participants=active,
                disengaged_participants=disengaged,
            )

        if record.state == ConversationState.CONCLUDED:
            return _result(True, record.conclusion_reason or "Already concluded")
        if self._is_closing_chain(record):
            return _result(True, "Thank-you chain detected, letting the conversation end")
        if record.own_reply_count >= self.thresholds.max_replies_before_exit:
            return _result(
                True,
                f"Replied {record.own_reply_count} times, time to wrap up",
            )
        if depth >= self.thresholds.max_thread_depth:
            return _result(True, f"Thread is {depth} replies deep, conversation has likely run its course")
        if others and active == 0 and disengaged > 0:
            return _result(True, "Other participants seem to have disengaged")
        if (
            record.state == ConversationState.AWAITING_RESPONSE
            and record.own_last_reply_at is not None
            and (now - record.own_last_reply_at).total_seconds() > self.thresholds.no_response_timeout_seconds
        ):
            return _result(True, "No response to the last reply, they've moved on")
        return _result(False, "")

    def _reengagement_budget(self, record: ConversationRecord, privileged: bool) -> Optional[int]:
        if privileged or record.source.lower() in self.unlimited_sources:
            return None
        return self.reengagement_limit

    def should_respond_in_conversation(
        self,
        root: KeyT,
        agent_id: str,
        privileged: bool = False,
    ) -> RespondDecision:
        key = self.key_fn(root)
        record = self.conversations.get(key)
        if record is None:
            return RespondDecision(True, "Untracked conversation")

        if record.state == ConversationState.CONCLUDED:
            reference = record.concluded_at or record.last_checked
            fresh_activity = any(
                p.identity != agent_id and p.last_reply_at > reference for p in record.participants.values()
            )
            budget = self._reengagement_budget(record, privileged)
            if fresh_activity and (budget is None or record.reengagement_count < budget):
                record.state = ConversationState.ACTIVE
                record.reengagement_count += 1
                record.conclusion_reason = None
                record.concluded_at = None
                record.last_checked = self.clock()
                self.save()
                self.logger.info(
                    "Conversation reengaged tracker=%s root=%s reengagement_count=%s",
                    self.name,
                    key,
                    record.reengagement_count,
                )
                return RespondDecision(True, "New activity after conclusion", reengaged=True)
            return RespondDecision(False, record.conclusion_reason or "Conversation concluded")

        analysis = self.analyze_conversation(root, agent_id)
        if analysis.should_conclude:
            return RespondDecision(False, analysis.reason)
        return RespondDecision(True, "Conversation is active")

    def needing_attention(self) -> List[Tuple[ConversationRecord, str]]:
        out = []
        for record in self.conversations.values():
            if record.state == ConversationState.NEW:
                out.append((record, "New conversation requiring initial response"))
            elif record.state == ConversationState.ACTIVE:
                out.append((record, "Someone replied to the thread"))
        return out

    def cleanup_old(self, max_age_days: Optional[int] = None) -> int:
        max_age = timedelta(days=self.max_age_days if max_age_days is None else max_age_days)
        now = self.clock()
        removed = 0
        changed = False
        for key in list(self.conversations.keys()):
            record = self.conversations[key]
            if now - record.last_checked <= max_age:
                continue
            if record.state == ConversationState.CONCLUDED:
                del self.conversations[key]
                removed += 1
                changed = True
            elif record.state != ConversationState.STALE:
                record.state = ConversationState.STALE
                changed = True
        if changed:
            self.last_cleanup = now
            self.save()
        if removed:
            self.logger.info("Cleaned up old conversations tracker=%s count=%s", self.name, removed)
        return removed

    def stats(self) -> Dict[str, Any]:
        records = list(self.conversations.values())
        avg_depth = sum(r.thread_depth for r in records) / len(records) if records else 0.0
        return {
            "total": len(records),
            "active": sum(1 for r in records if r.state in (ConversationState.NEW, ConversationState.ACTIVE)),
            "awaiting_response": sum(1 for r in records if r.state == ConversationState.AWAITING_RESPONSE),
            "concluded": sum(1 for r in records if r.state == ConversationState.CONCLUDED),
            "stale": sum(1 for r in records if r.state == ConversationState.STALE),
            "own_replies": sum(r.own_reply_count for r in records),
            "average_thread_depth": round(avg_depth, 1),
        }


def make_feed_tracker(
    thresholds: ConversationThresholds,
    path: Optional[Path] = None,
    logger: Optional[logging.Logger] = None,
    **kwargs: Any,
) -> ConversationTracker[str]:
    return ConversationTracker("feed", str, thresholds, path=path, logger=logger, **kwargs)


def make_issue_tracker(
    thresholds: ConversationThresholds,
    path: Optional[Path] = None,
    logger: Optional[logging.Logger] = None,
    **kwargs: Any,
) -> ConversationTracker[IssueRef]:
    # Threads the owner pointed at are never cut off by the reengagement budget.
    sources = list(kwargs.pop("unlimited_sources", ()))
    if ISSUE_SOURCE_OWNER_LINK not in sources:
        sources.append(ISSUE_SOURCE_OWNER_LINK)
    kwargs["unlimited_sources"] = sources
    return ConversationTracker("issue", issue_conversation_key, thresholds, path=path, logger=logger, **kwargs)
