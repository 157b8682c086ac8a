from __future__ import annotations

import json
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .state import to_iso, utc_now
from .text import normalize_str, preview_text


JOURNAL_PREVIEW_CHARS = 120


def append_outbound_journal(
    path: Path,
    *,
    decision: str,
    kind: str,
    content: str,
    reason: Optional[str] = None,
    fingerprint: Optional[str] = None,
    agent_id: Optional[str] = None,
    at: Optional[datetime] = None,
) -> None:
    """Append one outbound queue decision as a JSON line. Raises OSError on write failure."""
    path.parent.mkdir(parents=True, exist_ok=True)
    row: Dict[str, Any] = {
        "ts": to_iso(at or utc_now()),
        "decision": normalize_str(decision).strip().lower(),
        "kind": normalize_str(kind).strip().lower(),
        "content": preview_text(content, JOURNAL_PREVIEW_CHARS),
    }
    if agent_id:
        row["agent_id"] = agent_id
    if reason:
        row["reason"] = normalize_str(reason).strip()
    if fingerprint:
        row["fingerprint"] = fingerprint
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(row, ensure_ascii=True) + "\n")


def read_outbound_journal(path: Path, limit: int = 50) -> List[Dict[str, Any]]:
    """Most recent journal rows, oldest first. Unparseable lines are skipped."""
    if not path.exists():
        return []
    rows: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                row = json.loads(line)
            except ValueError:
                continue
            if isinstance(row, dict):
                rows.append(row)
    return rows[-limit:] if limit > 0 else rows


def summarize_outbound_journal(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    decisions = Counter(str(r.get("decision") or "unknown") for r in rows)
    reasons = Counter(str(r["reason"]) for r in rows if r.get("decision") == "rejected" and r.get("reason"))
    return {
        "rows": len(rows),
        "decisions": dict(decisions),
        "rejection_reasons": dict(reasons),
    }
