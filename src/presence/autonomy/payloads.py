from typing import Any, Dict, List, Optional, Tuple

from .models import FeedItem, Signal, SignalKind
from .state import parse_iso, utc_now
from .text import normalize_str


def extract_items(payload: Any, keys: Tuple[str, ...] = ("items", "data", "results")) -> List[Dict[str, Any]]:
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if not isinstance(payload, dict):
        return []
    for key in keys:
        value = payload.get(key)
        if isinstance(value, list):
            return [item for item in value if isinstance(item, dict)]
    return []


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _opt_str(value: Any) -> Optional[str]:
    text = normalize_str(value).strip()
    return text or None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def payload_author(item: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """Best-effort (id, display name) of whoever authored ``item``."""
    nested = _as_dict(item.get("post"))
    author = _as_dict(
        item.get("author") or item.get("user") or item.get("agent") or nested.get("author") or nested.get("user")
    )
    author_id = _first(author, "id", "did", "agent_id", "user_id") or _first(
        item, "author_id", "agent_id", "user_id"
    ) or _first(nested, "author_id", "agent_id")
    author_name = _first(author, "name", "handle", "username", "display_name") or _first(
        item, "author_name", "handle", "username"
    )
    return _opt_str(author_id), _opt_str(author_name)


def _reply_refs(item: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    record = _as_dict(item.get("record"))
    reply = _as_dict(item.get("reply") or record.get("reply"))
    return _as_dict(reply.get("root")), _as_dict(reply.get("parent"))


def signal_from_payload(item: Dict[str, Any]) -> Optional[Signal]:
    """Decode one notification payload; ``None`` when the kind is unknown or fields are missing."""
    kind = SignalKind.parse(_first(item, "kind", "type", "reason"))
    signal_id = _opt_str(_first(item, "id", "uri", "notification_id"))
    author_id, author_name = payload_author(item)
    if kind is None or signal_id is None or author_id is None:
        return None

    record = _as_dict(item.get("record"))
    root, parent = _reply_refs(item)
    timestamp = parse_iso(_first(item, "created_at", "indexed_at", "indexedAt", "timestamp")) or utc_now()
    return Signal(
        id=signal_id,
        author_id=author_id,
        kind=kind,
        timestamp=timestamp,
        text=normalize_str(_first(item, "text", "content") or record.get("text")),
        is_read=_as_bool(_first(item, "is_read", "isRead", "read")),
        author_name=author_name or "",
        thread_root_id=_opt_str(_first(item, "thread_root_id", "root_id") or _first(root, "id", "uri")),
        root_token=_opt_str(_first(item, "root_token", "root_cid") or _first(root, "token", "cid")),
        parent_id=_opt_str(_first(item, "parent_id") or _first(parent, "id", "uri")),
        parent_author_id=_opt_str(_first(item, "parent_author_id") or _first(parent, "author_id")),
        token=_opt_str(_first(item, "token", "cid")),
    )


def feed_item_from_payload(item: Dict[str, Any]) -> Optional[FeedItem]:
    nested = _as_dict(item.get("post"))
    source = nested or item
    post_id = _opt_str(_first(source, "id", "uri"))
    author_id, _ = payload_author(item)
    if post_id is None:
        return None
    root, _parent = _reply_refs(source)
    reason = _as_dict(item.get("reason"))
    is_repost = _as_bool(_first(item, "is_repost", "repost")) or "repost" in normalize_str(reason.get("type")).lower()
    return FeedItem(
        id=post_id,
        author_id=author_id or "",
        text=normalize_str(_first(source, "text", "content") or _as_dict(source.get("record")).get("text")),
        created_at=parse_iso(_first(source, "created_at", "indexed_at", "indexedAt")) or utc_now(),
        thread_root_id=_opt_str(_first(source, "thread_root_id", "root_id") or _first(root, "id", "uri")),
        is_repost=is_repost,
        like_count=_as_int(_first(source, "like_count", "likeCount", "likes")),
        reply_count=_as_int(_first(source, "reply_count", "replyCount", "replies")),
        repost_count=_as_int(_first(source, "repost_count", "repostCount", "reposts")),
    )
