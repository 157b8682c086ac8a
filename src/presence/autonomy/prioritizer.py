from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from .models import (
    DIRECT_KINDS,
    RESPONSE_KINDS,
    PrioritizedNotification,
    Sentiment,
    Signal,
    SignalKind,
    TriagedThread,
)
from .relationships import RelationshipStore


BASE_PRIORITY = 50
OWN_CONTENT_BONUS = 50
OWNER_BONUS = 50
POSITIVE_SENTIMENT_BONUS = 15
RECURRING_ENGAGER_BONUS = 10
NEVER_RESPONDED_BONUS = 20
NEW_CONNECTION_BONUS = 5
UNREAD_BONUS = 10

# Every SignalKind must appear here.
KIND_WEIGHTS: Dict[SignalKind, int] = {
    SignalKind.REPLY: 30,
    SignalKind.MENTION: 30,
    SignalKind.QUOTE: 25,
    SignalKind.LIKE: 0,
    SignalKind.FOLLOW: 0,
    SignalKind.REPOST: 0,
}
KIND_REASONS: Dict[SignalKind, Optional[str]] = {
    SignalKind.REPLY: "direct conversation",
    SignalKind.MENTION: "direct conversation",
    SignalKind.QUOTE: "quoted your thought",
    SignalKind.LIKE: None,
    SignalKind.FOLLOW: None,
    SignalKind.REPOST: None,
}


def is_response_to_own_content(signal: Signal, agent_id: Optional[str]) -> bool:
    if not agent_id:
        return False
    return signal.parent_author_id == agent_id


def thread_root_for(signal: Signal) -> str:
    return signal.root_id


def prioritize_signals(
    signals: Iterable[Signal],
    relationships: RelationshipStore,
    owner_id: Optional[str],
    agent_id: Optional[str] = None,
) -> List[PrioritizedNotification]:
    """Score inbound signals, highest priority first.

    Signals whose reference id has already been answered are dropped before
    scoring. Every bonus that applies is appended to the reason trail.
    """
    prioritized: List[PrioritizedNotification] = []
    for signal in signals:
        if relationships.has_responded_to(signal.id):
            continue

        priority = BASE_PRIORITY
        reasons: List[str] = []
        relationship = relationships.get_relationship(signal.author_id)
        own_content = is_response_to_own_content(signal, agent_id)

        if own_content and signal.kind in RESPONSE_KINDS:
            priority += OWN_CONTENT_BONUS
            reasons.append("response to your content")

        kind_weight = KIND_WEIGHTS[signal.kind]
        if kind_weight:
            priority += kind_weight
            reasons.append(KIND_REASONS[signal.kind] or signal.kind.value)

        if owner_id and signal.author_id == owner_id:
            priority += OWNER_BONUS
            reasons.append("owner interaction")

        if relationship is not None:
            if relationship.sentiment == Sentiment.POSITIVE:
                priority += POSITIVE_SENTIMENT_BONUS
                reasons.append("positive relationship")
            if relationship.is_recurring:
                priority += RECURRING_ENGAGER_BONUS
                reasons.append("recurring engager")
            if not relationship.responded:
                priority += NEVER_RESPONDED_BONUS
                reasons.append("awaiting first response")
        else:
            priority += NEW_CONNECTION_BONUS
            reasons.append("new connection")

        if not signal.is_read:
            priority += UNREAD_BONUS
            reasons.append("unread")

        prioritized.append(
            PrioritizedNotification(
                signal=signal,
                priority=priority,
                reasons=reasons,
                relationship=relationship,
                is_response_to_own_content=own_content,
            )
        )

    # sorted() is stable, so equal scores keep arrival order.
    return sorted(prioritized, key=lambda pn: -pn.priority)


def has_urgent_signals(prioritized: Iterable[PrioritizedNotification]) -> bool:
    for pn in prioritized:
        if pn.signal.is_read:
            continue
        if pn.signal.kind in DIRECT_KINDS:
            return True
        if pn.is_response_to_own_content and pn.signal.kind in RESPONSE_KINDS:
            return True
    return False


def deduplicate_prioritized(items: Iterable[PrioritizedNotification]) -> List[PrioritizedNotification]:
    best: Dict[str, PrioritizedNotification] = {}
    for pn in items:
        existing = best.get(pn.signal.id)
        if existing is None or pn.priority > existing.priority:
            best[pn.signal.id] = pn
    return list(best.values())


def triage_signals(
    prioritized: Iterable[PrioritizedNotification],
    relationships: RelationshipStore,
    owner_id: Optional[str],
) -> List[TriagedThread]:
    threads: Dict[str, TriagedThread] = {}
    for pn in prioritized:
        root_id = thread_root_for(pn.signal)
        thread = threads.get(root_id)
        if thread is None:
            thread = TriagedThread(
                root_id=root_id,
                notifications=[],
                highest_priority=0,
                is_owner_thread=False,
                has_recurring_engager=False,
                oldest_timestamp=pn.signal.timestamp,
            )
            threads[root_id] = thread
        thread.notifications.append(pn)
        thread.highest_priority = max(thread.highest_priority, pn.priority)
        if owner_id and pn.signal.author_id == owner_id:
            thread.is_owner_thread = True
        relationship = relationships.get_relationship(pn.signal.author_id)
        if relationship is not None and relationship.is_recurring:
            thread.has_recurring_engager = True
        if pn.signal.timestamp < thread.oldest_timestamp:
            thread.oldest_timestamp = pn.signal.timestamp

    for thread in threads.values():
        thread.notifications.sort(key=lambda pn: pn.signal.timestamp)

    return sorted(
        threads.values(),
        key=lambda t: (
            not t.is_owner_thread,
            not t.has_recurring_engager,
            -t.highest_priority,
            t.oldest_timestamp,
        ),
    )


def flatten_triaged(threads: Iterable[TriagedThread]) -> List[PrioritizedNotification]:
    out: List[PrioritizedNotification] = []
    for thread in threads:
        out.extend(thread.notifications)
    return out
