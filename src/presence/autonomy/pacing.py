from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .config import PacingLimits


MAX_ACTION_HISTORY = 100

_TOOL_ACTION_TYPES = {
    "post": "post",
    "reply": "reply",
    "like": "like",
    "repost": "repost",
    "follow": "follow",
    "unfollow": "follow",
    "issue_comment": "reply",
}


def action_type_for(tool_name: str) -> str:
    name = (tool_name or "").strip().lower()
    for suffix, action in _TOOL_ACTION_TYPES.items():
        if name == suffix or name.endswith("_" + suffix):
            return action
    return "other"


@dataclass
class PacingDecision:
    allowed: bool
    wait_seconds: int = 0
    reason: Optional[str] = None


@dataclass
class _ActionRecord:
    kind: str
    at: float
    detail: Optional[str] = None


class PacingManager:
    """Spacing rules for outbound actions: per-tick cap, global and per-type cooldowns."""

    def __init__(
        self,
        limits: Optional[PacingLimits] = None,
        logger: Optional[logging.Logger] = None,
        time_fn: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.limits = limits or PacingLimits()
        self.logger = logger or logging.getLogger("presence.autonomy")
        self.time_fn = time_fn
        self.sleep = sleep
        self.history: List[_ActionRecord] = []
        self.actions_this_tick = 0

    def start_tick(self) -> None:
        self.actions_this_tick = 0

    def can_do_more_actions(self) -> bool:
        return self.actions_this_tick < self.limits.max_actions_per_tick

    def _last_action_at(self, kind: Optional[str] = None) -> Optional[float]:
        for record in reversed(self.history):
            if kind is None or record.kind == kind:
                return record.at
        return None

    def cooldown_for(self, kind: str) -> int:
        if kind == "post":
            return self.limits.post_cooldown_seconds
        if kind == "reply":
            return self.limits.reply_cooldown_seconds
        if kind in {"like", "repost"}:
            return self.limits.like_cooldown_seconds
        if kind in {"follow", "unfollow"}:
            return self.limits.follow_cooldown_seconds
        return self.limits.action_cooldown_seconds

    def can_do_action(self, kind: str) -> PacingDecision:
        if not self.can_do_more_actions():
            return PacingDecision(
                False,
                0,
                f"Reached limit ({self.limits.max_actions_per_tick}) for this cycle",
            )
        now = self.time_fn()
        last_any = self._last_action_at()
        if last_any is not None:
            wait = math.ceil(self.limits.action_cooldown_seconds - (now - last_any))
            if wait > 0:
                return PacingDecision(False, wait, "Breathing between actions")
        last_of_type = self._last_action_at(kind)
        if last_of_type is not None:
            wait = math.ceil(self.cooldown_for(kind) - (now - last_of_type))
            if wait > 0:
                return PacingDecision(False, wait, f"Waiting before next {kind}")
        return PacingDecision(True)

    def record_action(self, kind: str, detail: Optional[str] = None) -> None:
        self.history.append(_ActionRecord(kind=kind, at=self.time_fn(), detail=detail))
        self.actions_this_tick += 1
        if len(self.history) > MAX_ACTION_HISTORY:
            self.history = self.history[-MAX_ACTION_HISTORY:]
        self.logger.debug("Action recorded kind=%s actions_this_tick=%s", kind, self.actions_this_tick)

    async def wait_for_cooldown(self, kind: str) -> float:
        """Sleep until both the global and the per-type cooldown have elapsed.

        The per-tick cap is not a cooldown and never causes a wait.
        """
        waited = 0.0
        while True:
            decision = self.can_do_action(kind)
            if decision.allowed or decision.wait_seconds <= 0:
                return waited
            self.logger.info(
                "Cooldown wait kind=%s seconds=%s reason=%s", kind, decision.wait_seconds, decision.reason
            )
            await self.sleep(decision.wait_seconds)
            waited += decision.wait_seconds

    def stats(self) -> Dict[str, Any]:
        cutoff = self.time_fn() - 3600
        recent = Counter(r.kind for r in self.history if r.at > cutoff)
        return {
            "total": len(self.history),
            "recent": dict(recent),
            "actions_this_tick": self.actions_this_tick,
        }
