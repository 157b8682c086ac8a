from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .action_journal import append_outbound_journal
from .collaborators import PostDeleter
from .models import FeedItem, OutboundResult, PruneCandidate
from .pacing import PacingManager, action_type_for
from .state import load_json_state, parse_iso, save_json_state, to_iso, utc_now
from .text import NORMALIZED_PREFIX_CHARS, fingerprint, is_low_value_closing, normalize_post_text, preview_text


REASON_NEAR_DUPLICATE = "near-duplicate"
REASON_FEED_DUPLICATE = "duplicate of post already in feed"


@dataclass
class OutboundDedupEntry:
    fingerprint: str
    first_seen: datetime
    reference: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"fingerprint": self.fingerprint, "first_seen": to_iso(self.first_seen), "reference": self.reference}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["OutboundDedupEntry"]:
        fp = str(data.get("fingerprint") or "").strip()
        if not fp:
            return None
        return cls(
            fingerprint=fp,
            first_seen=parse_iso(data.get("first_seen")) or utc_now(),
            reference=str(data.get("reference") or ""),
        )


def _default_outbound_state() -> Dict[str, Any]:
    return {"runtime": [], "feed": []}


def pacing_kind_for(kind: str) -> str:
    value = (kind or "").strip().lower()
    if value in {"post_with_image", "expression"}:
        return "post"
    return action_type_for(value)


class OutboundQueue:
    """Last gate before content leaves the process.

    Rejects near-duplicates of this runtime's sends and duplicates of posts
    already live in the agent's feed, then serializes the accepted send
    behind the pacing cooldown for its kind.
    """

    def __init__(
        self,
        pacing: PacingManager,
        agent_id: Optional[str] = None,
        path: Optional[Path] = None,
        journal_path: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
        buffer_size: int = 50,
        feed_limit: int = 50,
        prefix_chars: int = NORMALIZED_PREFIX_CHARS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.pacing = pacing
        self.agent_id = agent_id
        self.path = path
        self.journal_path = journal_path
        self.logger = logger or logging.getLogger("presence.autonomy")
        self.buffer_size = max(1, buffer_size)
        self.feed_limit = max(1, feed_limit)
        self.prefix_chars = prefix_chars
        self.clock = clock
        self._lock = asyncio.Lock()
        raw = load_json_state(path, _default_outbound_state, self.logger, label="outbound_dedup")
        # Sends from earlier runs; "runtime" always starts empty for this session.
        self.prior_entries: List[OutboundDedupEntry] = self._entries(raw.get("runtime"))[-self.buffer_size :]
        self.runtime_entries: List[OutboundDedupEntry] = []
        self.feed_entries: List[OutboundDedupEntry] = self._entries(raw.get("feed"))[-self.feed_limit :]

    @staticmethod
    def _entries(raw: Any) -> List[OutboundDedupEntry]:
        out = []
        for item in raw or []:
            if isinstance(item, dict):
                entry = OutboundDedupEntry.from_dict(item)
                if entry is not None:
                    out.append(entry)
        return out

    def save(self) -> bool:
        data = {
            "runtime": [e.to_dict() for e in (self.prior_entries + self.runtime_entries)[-self.buffer_size :]],
            "feed": [e.to_dict() for e in self.feed_entries],
        }
        return save_json_state(self.path, data, self.logger, label="outbound_dedup")

    def _journal(self, decision: str, kind: str, text: str, reason: Optional[str], fp: str) -> None:
        if self.journal_path is None:
            return
        try:
            append_outbound_journal(
                self.journal_path,
                decision=decision,
                kind=kind,
                content=text,
                reason=reason,
                fingerprint=fp,
                agent_id=self.agent_id,
                at=self.clock(),
            )
        except OSError as e:
            self.logger.warning("Outbound journal write failed path=%s error=%s", self.journal_path, e)

    def check(self, text: str) -> OutboundResult:
        """Dedup verdict for ``text`` without recording anything."""
        fp = fingerprint(text, self.prefix_chars)
        if not fp:
            return OutboundResult(True, None, fp)
        if any(e.fingerprint == fp for e in self.runtime_entries):
            return OutboundResult(False, REASON_NEAR_DUPLICATE, fp)
        if any(e.fingerprint == fp for e in self.feed_entries):
            return OutboundResult(False, REASON_FEED_DUPLICATE, fp)
        # A post sent by an earlier run counts as already published.
        if any(e.fingerprint == fp for e in self.prior_entries):
            return OutboundResult(False, REASON_FEED_DUPLICATE, fp)
        return OutboundResult(True, None, fp)

    def _reject(self, kind: str, text: str, result: OutboundResult) -> OutboundResult:
        self.logger.info(
            "Outbound blocked kind=%s reason=%s fingerprint=%s text=%s",
            kind,
            result.reason,
            result.fingerprint,
            preview_text(text, 60),
        )
        self._journal("rejected", kind, text, result.reason, result.fingerprint)
        return result

    async def enqueue(self, kind: str, text: str) -> OutboundResult:
        verdict = self.check(text)
        if not verdict.allowed:
            return self._reject(kind, text, verdict)

        async with self._lock:
            # Another send may have recorded the same fingerprint while we waited.
            verdict = self.check(text)
            if not verdict.allowed:
                return self._reject(kind, text, verdict)

            pacing_kind = pacing_kind_for(kind)
            await self.pacing.wait_for_cooldown(pacing_kind)
            self.pacing.record_action(pacing_kind, preview_text(text, 80))
            if verdict.fingerprint:
                self.runtime_entries.append(
                    OutboundDedupEntry(
                        fingerprint=verdict.fingerprint,
                        first_seen=self.clock(),
                        reference=preview_text(text, 80),
                    )
                )
                self.runtime_entries = self.runtime_entries[-self.buffer_size :]
                self.save()
            self._journal("allowed", kind, text, None, verdict.fingerprint)
            self.logger.debug("Outbound allowed kind=%s fingerprint=%s", kind, verdict.fingerprint)
            return OutboundResult(True, None, verdict.fingerprint)

    def warmup_from_feed(self, items: Iterable[FeedItem]) -> int:
        entries: List[OutboundDedupEntry] = []
        seen = set()
        for item in items:
            if item.is_repost:
                continue
            if self.agent_id and item.author_id and item.author_id != self.agent_id:
                continue
            fp = fingerprint(item.text, self.prefix_chars)
            if not fp or fp in seen:
                continue
            seen.add(fp)
            entries.append(OutboundDedupEntry(fingerprint=fp, first_seen=item.created_at, reference=item.id))
        self.feed_entries = entries[-self.feed_limit :]
        self.save()
        self.logger.info("Outbound queue warmed from feed entries=%s", len(self.feed_entries))
        return len(self.feed_entries)

    def stats(self) -> Dict[str, Any]:
        return {
            "runtime_entries": len(self.runtime_entries),
            "prior_entries": len(self.prior_entries),
            "feed_entries": len(self.feed_entries),
        }


def _own_items(items: Iterable[FeedItem]) -> List[FeedItem]:
    return [item for item in items if not item.is_repost]


def plan_duplicate_pruning(
    items: Iterable[FeedItem],
    prefix_chars: int = NORMALIZED_PREFIX_CHARS,
) -> List[PruneCandidate]:
    """Mark every later copy of identical text for deletion, keeping the earliest.

    Replies only collide with replies under the same thread root; top-level
    posts collide globally.
    """
    groups: Dict[str, List[FeedItem]] = {}
    for item in _own_items(items):
        normalized = normalize_post_text(item.text, prefix_chars)
        if not normalized:
            continue
        scope = f"thread:{item.thread_root_id}" if item.is_reply else "post"
        groups.setdefault(f"{scope}|{normalized}", []).append(item)

    plan: List[PruneCandidate] = []
    for key, members in groups.items():
        if len(members) < 2:
            continue
        members.sort(key=lambda m: (m.created_at, m.id))
        keep = members[0]
        for dup in members[1:]:
            plan.append(
                PruneCandidate(
                    post_id=dup.id,
                    group_key=key,
                    reason="duplicate",
                    kept_post_id=keep.id,
                    text=preview_text(dup.text, 80),
                )
            )
    return plan


def plan_closing_chain_pruning(
    items: Iterable[FeedItem],
    classifier: Callable[[str], bool] = is_low_value_closing,
) -> List[PruneCandidate]:
    threads: Dict[str, List[FeedItem]] = {}
    for item in _own_items(items):
        if not item.is_reply:
            continue
        if not classifier(item.text):
            continue
        threads.setdefault(str(item.thread_root_id), []).append(item)

    plan: List[PruneCandidate] = []
    for root, closings in threads.items():
        if len(closings) < 2:
            continue
        closings.sort(key=lambda m: (m.created_at, m.id))
        keep = closings[0]
        for extra in closings[1:]:
            plan.append(
                PruneCandidate(
                    post_id=extra.id,
                    group_key=f"thread:{root}",
                    reason="closing chain",
                    kept_post_id=keep.id,
                    text=preview_text(extra.text, 80),
                )
            )
    return plan


def merge_prune_plans(*plans: Iterable[PruneCandidate]) -> List[PruneCandidate]:
    merged: List[PruneCandidate] = []
    seen = set()
    for plan in plans:
        for candidate in plan:
            if candidate.post_id in seen:
                continue
            seen.add(candidate.post_id)
            merged.append(candidate)
    return merged


async def execute_prune_plan(
    plan: Iterable[PruneCandidate],
    deleter: PostDeleter,
    logger: Optional[logging.Logger] = None,
    dry_run: bool = False,
) -> int:
    logger = logger or logging.getLogger("presence.autonomy")
    deleted = 0
    for candidate in plan:
        if dry_run:
            logger.info(
                "Prune dry_run post_id=%s reason=%s keep=%s text=%s",
                candidate.post_id,
                candidate.reason,
                candidate.kept_post_id,
                candidate.text,
            )
            continue
        try:
            ok = await deleter.delete_post(candidate.post_id)
        except Exception as e:
            logger.warning("Prune delete failed post_id=%s error=%s", candidate.post_id, e)
            continue
        if ok:
            deleted += 1
            logger.info("Pruned post_id=%s reason=%s keep=%s", candidate.post_id, candidate.reason, candidate.kept_post_id)
    return deleted
