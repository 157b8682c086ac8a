import hashlib
import re
from typing import Any


NORMALIZED_PREFIX_CHARS = 200

_MENTION_RE = re.compile(r"@[\w.-]+")
_URL_RE = re.compile(r"https?://\S+")
_BARE_URL_RE = re.compile(r"(?:[\w-]+\.)+[\w]{2,}/\S*")
_WORD_RE = re.compile(r"[a-z0-9']+")

_CLOSING_PHRASES = (
    "thank",
    "thanks",
    "thx",
    "appreciate",
    "grateful",
    "cheers",
    "likewise",
    "you too",
    "same to you",
    "my pleasure",
    "take care",
    "anytime",
    "glad you",
    "glad it",
    "means a lot",
    "love that",
    "agreed",
)
_CLOSING_MAX_WORDS = 16


def normalize_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def normalize_post_text(value: Any, prefix_chars: int = NORMALIZED_PREFIX_CHARS) -> str:
    """Case-fold, drop mentions and links, collapse whitespace, keep a fixed prefix."""
    text = normalize_str(value).lower()
    text = _MENTION_RE.sub("", text)
    text = _URL_RE.sub("", text)
    text = _BARE_URL_RE.sub("", text)
    text = " ".join(text.split())
    return text[:prefix_chars]


def fingerprint(value: Any, prefix_chars: int = NORMALIZED_PREFIX_CHARS) -> str:
    normalized = normalize_post_text(value, prefix_chars)
    if not normalized:
        return ""
    return hashlib.sha1(normalized.encode("utf-8")).hexdigest()[:16]


def is_low_value_closing(value: Any) -> bool:
    """True for short acknowledgment or thank-you replies with no question in them."""
    normalized = normalize_post_text(value)
    if not normalized or "?" in normalized:
        return False
    words = _WORD_RE.findall(normalized)
    if not words or len(words) > _CLOSING_MAX_WORDS:
        return False
    padded = " " + " ".join(words) + " "
    for phrase in _CLOSING_PHRASES:
        if f" {phrase}" in padded:
            return True
    return False


def preview_text(content: Any, max_chars: int = 120) -> str:
    normalized = " ".join(normalize_str(content).split())
    if len(normalized) <= max_chars:
        return normalized
    return normalized[:max_chars] + "..."
