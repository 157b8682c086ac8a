import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_date_str(now: Optional[datetime] = None) -> str:
    return (now or utc_now()).date().isoformat()


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_iso(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value or "").strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def load_json_state(
    path: Optional[Path],
    default_factory: Callable[[], Dict[str, Any]],
    logger: Optional[logging.Logger] = None,
    label: str = "state",
) -> Dict[str, Any]:
    """Load a JSON document, falling back to a fresh default.

    A missing file and a corrupt file both yield ``default_factory()``.
    Corruption is reported as a ``state_corrupt`` warning so it stays
    visible in production logs. Keys missing from older files are filled
    in from the default.
    """
    default = default_factory()
    if path is None or not path.exists():
        return default
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        if logger:
            logger.warning(
                "state_corrupt label=%s path=%s error=%s action=reset_to_default",
                label,
                path,
                e,
            )
        return default
    if not isinstance(data, dict):
        if logger:
            logger.warning(
                "state_corrupt label=%s path=%s error=not_an_object action=reset_to_default",
                label,
                path,
            )
        return default
    # Backward compatibility with older state files.
    for key, value in default.items():
        if key not in data:
            data[key] = value
    return data


def save_json_state(
    path: Optional[Path],
    data: Dict[str, Any],
    logger: Optional[logging.Logger] = None,
    label: str = "state",
) -> bool:
    if path is None:
        return True
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
        tmp_path.replace(path)
    except (OSError, TypeError, ValueError) as e:
        # In-memory state stays authoritative until the next successful write.
        if logger:
            logger.warning("state_save_failed label=%s path=%s error=%s", label, path, e)
        return False
    return True
