from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .config import DEFAULT_PERSONA_HINT
from .models import ConversationRecord, PrioritizedNotification
from .text import normalize_str, preview_text


SKIP_TOKEN = "SKIP"
MAX_POST_CHARS = 300


def load_persona_text(path: Optional[Path]) -> str:
    if not path or not path.exists():
        return DEFAULT_PERSONA_HINT
    try:
        return path.read_text(encoding="utf-8").strip() or DEFAULT_PERSONA_HINT
    except OSError:
        return DEFAULT_PERSONA_HINT


def clean_generated_text(text: Any, max_chars: int = MAX_POST_CHARS) -> str:
    """Strip wrapping quotes and whitespace; empty string means nothing to send."""
    value = normalize_str(text).strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        value = value[1:-1].strip()
    if not value or value.upper().rstrip(".!") == SKIP_TOKEN:
        return ""
    if len(value) > max_chars:
        cut = value[:max_chars]
        space = cut.rfind(" ")
        value = (cut[:space] if space > max_chars // 2 else cut).rstrip()
    return value


def build_reply_prompt(
    persona: str,
    item: PrioritizedNotification,
    conversation: Optional[ConversationRecord],
) -> str:
    signal = item.signal
    lines = [
        persona,
        "",
        f"@{signal.author_name or signal.author_id} sent a {signal.kind.value}:",
        f'"{preview_text(signal.text, 600)}"',
        "",
        f"Why this matters: {item.reason or 'incoming signal'}",
    ]
    if conversation is not None:
        lines.append(
            f"Thread so far: you replied {conversation.own_reply_count} times, "
            f"{len(conversation.participants)} participants, depth {conversation.thread_depth}."
        )
        if conversation.own_replies:
            lines.append("Your recent replies in this thread:")
            lines.extend(f"- {preview_text(r.text, 160)}" for r in conversation.own_replies[-3:])
    lines.extend(
        [
            "",
            f"Write one reply under {MAX_POST_CHARS} characters that adds something new.",
            f"If a reply would only be a thank-you or would repeat yourself, answer with {SKIP_TOKEN}.",
        ]
    )
    return "\n".join(lines)


def build_expression_prompt(persona: str, tone: Optional[str], insights: Iterable[str], recent_posts: List[str]) -> str:
    lines = [persona, "", f"Share one original thought. Tone: {tone or 'reflective'}."]
    insight_list = [preview_text(i, 160) for i in insights][:5]
    if insight_list:
        lines.append("Things you noticed recently:")
        lines.extend(f"- {i}" for i in insight_list)
    if recent_posts:
        lines.append("Do not repeat any of your recent posts:")
        lines.extend(f"- {preview_text(p, 160)}" for p in recent_posts[-5:])
    lines.append(f"Keep it under {MAX_POST_CHARS} characters. Answer {SKIP_TOKEN} if nothing is worth saying.")
    return "\n".join(lines)


def build_reflection_prompt(persona: str, stats: Dict[str, Any], insights: Iterable[str]) -> str:
    lines = [persona, "", "Reflect on the last stretch of activity.", "Stats:"]
    for key in sorted(stats):
        lines.append(f"- {key}: {stats[key]}")
    insight_list = list(insights)
    if insight_list:
        lines.append("Pending insights:")
        lines.extend(f"- {preview_text(i, 200)}" for i in insight_list[:10])
    lines.append("Reply with one or two sentences describing what to do differently next time.")
    return "\n".join(lines)
