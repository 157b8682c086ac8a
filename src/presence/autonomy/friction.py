import logging
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .state import load_json_state, parse_iso, save_json_state, to_iso, utc_now


CATEGORIES = ("pacing", "expression", "memory", "social", "tools", "understanding", "other")
OUTCOMES = ("success", "partial", "failed")
MAX_INSTANCES = 10
MAX_IMPROVEMENTS = 50
MATCH_PREFIX_CHARS = 50

_CATEGORY_HINTS = {
    "pacing": "scheduler intervals, pacing cooldowns and quiet hours",
    "expression": "expression prompts and posting limits",
    "memory": "state files under the memory directory",
    "social": "signal triage, relationships and conversation thresholds",
    "tools": "collaborator clients and their error handling",
    "understanding": "prompts and persona context",
    "other": "recent logs and changes",
}


def _default_friction_state() -> Dict[str, Any]:
    return {"frictions": [], "improvements": [], "last_improvement_attempt": None}


class FrictionStore:
    """Recurring operational pain points, and the self-improvement attempts made against them."""

    def __init__(
        self,
        path: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.path = path
        self.logger = logger or logging.getLogger("presence.autonomy")
        self.clock = clock
        self.state = load_json_state(path, _default_friction_state, self.logger, label="friction")

    def save(self) -> bool:
        return save_json_state(self.path, self.state, self.logger, label="friction")

    def _find(self, friction_id: str) -> Optional[Dict[str, Any]]:
        for friction in self.state["frictions"]:
            if friction.get("id") == friction_id:
                return friction
        return None

    def record_friction(self, category: str, description: str, context: str) -> Dict[str, Any]:
        if category not in CATEGORIES:
            category = "other"
        now = to_iso(self.clock())
        prefix = description[:MATCH_PREFIX_CHARS].lower()
        for friction in self.state["frictions"]:
            if friction.get("category") != category or friction.get("resolved"):
                continue
            if str(friction.get("description", ""))[:MATCH_PREFIX_CHARS].lower() != prefix:
                continue
            friction["occurrences"] = int(friction.get("occurrences", 0)) + 1
            friction["last_noticed"] = now
            instances = list(friction.get("instances") or [])
            instances.append({"timestamp": now, "context": context[:300]})
            friction["instances"] = instances[-MAX_INSTANCES:]
            self.save()
            self.logger.debug(
                "Friction recorded id=%s occurrences=%s", friction["id"], friction["occurrences"]
            )
            return friction

        friction = {
            "id": f"friction-{uuid.uuid4().hex[:10]}",
            "category": category,
            "description": description,
            "occurrences": 1,
            "first_noticed": now,
            "last_noticed": now,
            "instances": [{"timestamp": now, "context": context[:300]}],
            "attempted": False,
            "resolved": False,
            "attempt_result": None,
        }
        self.state["frictions"].append(friction)
        self.save()
        self.logger.debug("Friction recorded id=%s category=%s new=1", friction["id"], category)
        return friction

    def ready_for_improvement(self, min_occurrences: int = 3) -> Optional[Dict[str, Any]]:
        for friction in self.state["frictions"]:
            if (
                int(friction.get("occurrences", 0)) >= min_occurrences
                and not friction.get("attempted")
                and not friction.get("resolved")
            ):
                return friction
        return None

    def should_attempt_improvement(self, min_hours_since_last: float) -> bool:
        last = parse_iso(self.state.get("last_improvement_attempt"))
        if last is not None:
            hours_since = (self.clock() - last).total_seconds() / 3600
            if hours_since < min_hours_since_last:
                return False
        return self.ready_for_improvement() is not None

    def mark_attempted(self, friction_id: str) -> None:
        friction = self._find(friction_id)
        if friction is None:
            return
        friction["attempted"] = True
        self.state["last_improvement_attempt"] = to_iso(self.clock())
        self.save()

    def record_improvement_outcome(
        self,
        friction_id: str,
        outcome: str,
        changes: str,
        notes: Optional[str] = None,
    ) -> None:
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown improvement outcome: {outcome}")
        friction = self._find(friction_id)
        if friction is not None:
            friction["attempt_result"] = f"{outcome}: {changes}"
            if outcome == "success":
                friction["resolved"] = True
        improvements = list(self.state.get("improvements") or [])
        improvements.append(
            {
                "timestamp": to_iso(self.clock()),
                "friction_id": friction_id,
                "friction_description": friction.get("description") if friction else "unknown",
                "changes": changes,
                "outcome": outcome,
                "notes": notes,
            }
        )
        self.state["improvements"] = improvements[-MAX_IMPROVEMENTS:]
        self.save()

    def mark_resolved(self, friction_id: str, notes: Optional[str] = None) -> None:
        friction = self._find(friction_id)
        if friction is None:
            return
        friction["resolved"] = True
        if notes:
            friction["attempt_result"] = f"{friction.get('attempt_result') or ''} | {notes}".strip(" |")
        self.save()

    def unresolved(self) -> List[Dict[str, Any]]:
        return [f for f in self.state["frictions"] if not f.get("resolved")]

    def stats(self) -> Dict[str, Any]:
        by_category = {c: 0 for c in CATEGORIES}
        for friction in self.state["frictions"]:
            if not friction.get("resolved"):
                by_category[friction.get("category", "other")] = by_category.get(friction.get("category", "other"), 0) + 1
        ready = sum(
            1
            for f in self.state["frictions"]
            if int(f.get("occurrences", 0)) >= 3 and not f.get("attempted") and not f.get("resolved")
        )
        return {
            "total": len(self.state["frictions"]),
            "unresolved": len(self.unresolved()),
            "by_category": by_category,
            "ready_for_improvement": ready,
            "improvements": len(self.state.get("improvements") or []),
        }

    def cleanup_resolved(self, older_than_days: int = 30) -> int:
        cutoff = self.clock() - timedelta(days=older_than_days)
        before = len(self.state["frictions"])
        kept = []
        for friction in self.state["frictions"]:
            last = parse_iso(friction.get("last_noticed"))
            if friction.get("resolved") and last is not None and last <= cutoff:
                continue
            kept.append(friction)
        self.state["frictions"] = kept
        removed = before - len(kept)
        if removed:
            self.save()
        return removed


def build_improvement_prompt(friction: Dict[str, Any]) -> str:
    instances = "\n".join(
        f"- {i.get('timestamp')}: {i.get('context')}" for i in (friction.get("instances") or [])[-3:]
    )
    category = friction.get("category", "other")
    return (
        "Recurring friction was noticed in the agent runtime.\n\n"
        f"Category: {category}\n"
        f"Issue: {friction.get('description')}\n"
        f"Occurrences: {friction.get('occurrences')} since {friction.get('first_noticed')}\n\n"
        f"Recent instances:\n{instances}\n\n"
        f"Areas to check: {_CATEGORY_HINTS.get(category, _CATEGORY_HINTS['other'])}\n\n"
        "Reply with a short, concrete plan, or the single word SKIP if the friction is not worth addressing."
    )
