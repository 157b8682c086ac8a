from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import List, Optional
import os


DEFAULT_PERSONA_HINT = (
    "You are an autonomous social agent with a steady, curious voice. "
    "Reply briefly, add something substantive, and let conversations end naturally "
    "instead of trading thank-yous."
)


@dataclass
class ConversationThresholds:
    max_replies_before_exit: int = 4
    max_thread_depth: int = 12
    disengagement_seconds: int = 30 * 60
    no_response_timeout_seconds: int = 60 * 60
    closing_chain_window_seconds: int = 5 * 60
    closing_chain_length: int = 2


FEED_THRESHOLDS = ConversationThresholds()
ISSUE_THRESHOLDS = ConversationThresholds(
    max_replies_before_exit=10,
    max_thread_depth=50,
    disengagement_seconds=4 * 60 * 60,
    no_response_timeout_seconds=8 * 60 * 60,
)


@dataclass
class PacingLimits:
    post_cooldown_seconds: int = 1800
    reply_cooldown_seconds: int = 60
    like_cooldown_seconds: int = 45
    follow_cooldown_seconds: int = 3600
    action_cooldown_seconds: int = 10
    max_actions_per_tick: int = 3


@dataclass
class Config:
    agent_name: str
    agent_id: str
    owner_id: Optional[str]
    awareness_interval_seconds: int
    urgent_awareness_interval_seconds: int
    expression_min_seconds: int
    expression_max_seconds: int
    reflection_interval_seconds: int
    engagement_check_interval_seconds: int
    improvement_min_hours: float
    improvement_burn_in_hours: float
    timer_jitter_enabled: bool
    quiet_hours_start: int
    quiet_hours_end: int
    signal_fetch_limit: int
    max_responses_per_cycle: int
    daily_post_limit: int
    reengagement_limit: int
    unlimited_reengagement_sources: List[str]
    conversation_max_age_days: int
    outbound_buffer_size: int
    feed_warmup_limit: int
    memory_dir: Path
    persona_path: Optional[Path]
    openai_api_key: Optional[str]
    openai_base_url: str
    openai_model: str
    openai_temperature: float
    openai_max_retries: int
    log_level: str
    log_path: Optional[Path]
    dry_run: bool
    feed_thresholds: ConversationThresholds = field(default_factory=ConversationThresholds)
    issue_thresholds: ConversationThresholds = field(default_factory=lambda: replace(ISSUE_THRESHOLDS))
    pacing: PacingLimits = field(default_factory=PacingLimits)

    @property
    def engagement_path(self) -> Path:
        return self.memory_dir / "engagement.json"

    @property
    def feed_conversations_path(self) -> Path:
        return self.memory_dir / "feed_conversations.json"

    @property
    def issue_conversations_path(self) -> Path:
        return self.memory_dir / "issue_conversations.json"

    @property
    def outbound_path(self) -> Path:
        return self.memory_dir / "outbound_dedup.json"

    @property
    def friction_path(self) -> Path:
        return self.memory_dir / "friction.json"

    @property
    def outbound_journal_path(self) -> Path:
        return self.memory_dir / "logs" / "outbound-queue.jsonl"


def _parse_csv_env(env_key: str) -> List[str]:
    value = os.getenv(env_key, "")
    if not value.strip():
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_bool_env(env_key: str, default: str) -> bool:
    return os.getenv(env_key, default).strip().lower() in {"1", "true", "yes"}


def _thresholds_from_env(prefix: str, base: ConversationThresholds) -> ConversationThresholds:
    return ConversationThresholds(
        max_replies_before_exit=int(os.getenv(f"{prefix}_MAX_REPLIES", str(base.max_replies_before_exit))),
        max_thread_depth=int(os.getenv(f"{prefix}_MAX_DEPTH", str(base.max_thread_depth))),
        disengagement_seconds=int(os.getenv(f"{prefix}_DISENGAGEMENT_SECONDS", str(base.disengagement_seconds))),
        no_response_timeout_seconds=int(
            os.getenv(f"{prefix}_NO_RESPONSE_SECONDS", str(base.no_response_timeout_seconds))
        ),
        closing_chain_window_seconds=int(
            os.getenv(f"{prefix}_CLOSING_WINDOW_SECONDS", str(base.closing_chain_window_seconds))
        ),
        closing_chain_length=base.closing_chain_length,
    )


def load_config() -> Config:
    agent_name = os.getenv("PRESENCE_AGENT_NAME", "presence-agent").strip() or "presence-agent"
    agent_id = os.getenv("PRESENCE_AGENT_ID", "").strip() or agent_name
    owner_id = os.getenv("PRESENCE_OWNER_ID", "").strip() or None

    awareness_interval_seconds = int(os.getenv("PRESENCE_AWARENESS_SECONDS", "45"))
    urgent_awareness_interval_seconds = int(os.getenv("PRESENCE_URGENT_AWARENESS_SECONDS", "15"))
    expression_min_seconds = int(os.getenv("PRESENCE_EXPRESSION_MIN_SECONDS", str(3 * 60 * 60)))
    expression_max_seconds = int(os.getenv("PRESENCE_EXPRESSION_MAX_SECONDS", str(4 * 60 * 60)))
    if expression_max_seconds < expression_min_seconds:
        expression_max_seconds = expression_min_seconds
    reflection_interval_seconds = int(os.getenv("PRESENCE_REFLECTION_SECONDS", str(6 * 60 * 60)))
    engagement_check_interval_seconds = int(os.getenv("PRESENCE_ENGAGEMENT_CHECK_SECONDS", str(15 * 60)))
    improvement_min_hours = float(os.getenv("PRESENCE_IMPROVEMENT_MIN_HOURS", "24"))
    improvement_burn_in_hours = float(os.getenv("PRESENCE_IMPROVEMENT_BURN_IN_HOURS", "48"))
    timer_jitter_enabled = _parse_bool_env("PRESENCE_TIMER_JITTER", "1")

    quiet_hours_start = int(os.getenv("PRESENCE_QUIET_HOURS_START", "23")) % 24
    quiet_hours_end = int(os.getenv("PRESENCE_QUIET_HOURS_END", "7")) % 24

    signal_fetch_limit = int(os.getenv("PRESENCE_SIGNAL_FETCH_LIMIT", "10"))
    max_responses_per_cycle = int(os.getenv("PRESENCE_MAX_RESPONSES_PER_CYCLE", "3"))
    daily_post_limit = int(os.getenv("PRESENCE_DAILY_POST_LIMIT", "12"))
    reengagement_limit = int(os.getenv("PRESENCE_REENGAGEMENT_LIMIT", "1"))
    unlimited_reengagement_sources = [s.lower() for s in _parse_csv_env("PRESENCE_UNLIMITED_REENGAGEMENT_SOURCES")]
    if not unlimited_reengagement_sources:
        unlimited_reengagement_sources = ["workspace"]
    conversation_max_age_days = int(os.getenv("PRESENCE_CONVERSATION_MAX_AGE_DAYS", "7"))
    outbound_buffer_size = int(os.getenv("PRESENCE_OUTBOUND_BUFFER_SIZE", "50"))
    feed_warmup_limit = int(os.getenv("PRESENCE_FEED_WARMUP_LIMIT", "50"))

    memory_dir = Path(os.getenv("PRESENCE_MEMORY_DIR", "memory"))
    persona_path_str = os.getenv("PRESENCE_PERSONA_PATH", "").strip()
    persona_path = Path(persona_path_str) if persona_path_str else None

    openai_api_key = os.getenv("OPENAI_API_KEY")
    openai_base_url = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
    openai_model = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    openai_temperature = float(os.getenv("OPENAI_TEMPERATURE", "0.7"))
    openai_max_retries = int(os.getenv("OPENAI_MAX_RETRIES", "3"))

    log_level = os.getenv("PRESENCE_LOG_LEVEL", "INFO").strip().upper()
    log_path_str = os.getenv("PRESENCE_LOG_PATH", "").strip()
    log_path = Path(log_path_str) if log_path_str else None
    dry_run = _parse_bool_env("PRESENCE_DRY_RUN", "0")

    pacing = PacingLimits(
        post_cooldown_seconds=int(os.getenv("PRESENCE_POST_COOLDOWN_SECONDS", "1800")),
        reply_cooldown_seconds=int(os.getenv("PRESENCE_REPLY_COOLDOWN_SECONDS", "60")),
        like_cooldown_seconds=int(os.getenv("PRESENCE_LIKE_COOLDOWN_SECONDS", "45")),
        follow_cooldown_seconds=int(os.getenv("PRESENCE_FOLLOW_COOLDOWN_SECONDS", "3600")),
        action_cooldown_seconds=int(os.getenv("PRESENCE_ACTION_COOLDOWN_SECONDS", "10")),
        max_actions_per_tick=int(os.getenv("PRESENCE_MAX_ACTIONS_PER_TICK", "3")),
    )

    return Config(
        agent_name=agent_name,
        agent_id=agent_id,
        owner_id=owner_id,
        awareness_interval_seconds=awareness_interval_seconds,
        urgent_awareness_interval_seconds=urgent_awareness_interval_seconds,
        expression_min_seconds=expression_min_seconds,
        expression_max_seconds=expression_max_seconds,
        reflection_interval_seconds=reflection_interval_seconds,
        engagement_check_interval_seconds=engagement_check_interval_seconds,
        improvement_min_hours=improvement_min_hours,
        improvement_burn_in_hours=improvement_burn_in_hours,
        timer_jitter_enabled=timer_jitter_enabled,
        quiet_hours_start=quiet_hours_start,
        quiet_hours_end=quiet_hours_end,
        signal_fetch_limit=signal_fetch_limit,
        max_responses_per_cycle=max_responses_per_cycle,
        daily_post_limit=daily_post_limit,
        reengagement_limit=reengagement_limit,
        unlimited_reengagement_sources=unlimited_reengagement_sources,
        conversation_max_age_days=conversation_max_age_days,
        outbound_buffer_size=outbound_buffer_size,
        feed_warmup_limit=feed_warmup_limit,
        memory_dir=memory_dir,
        persona_path=persona_path,
        openai_api_key=openai_api_key,
        openai_base_url=openai_base_url,
        openai_model=openai_model,
        openai_temperature=openai_temperature,
        openai_max_retries=openai_max_retries,
        log_level=log_level,
        log_path=log_path,
        dry_run=dry_run,
        feed_thresholds=_thresholds_from_env("PRESENCE_FEED", FEED_THRESHOLDS),
        issue_thresholds=_thresholds_from_env("PRESENCE_ISSUE", ISSUE_THRESHOLDS),
        pacing=pacing,
    )


def is_quiet_hour(hour: int, start: int, end: int) -> bool:
    if start == end:
        return False
    if start > end:
        # Window spans midnight, e.g. 23 -> 7.
        return hour >= start or hour < end
    return start <= hour < end
