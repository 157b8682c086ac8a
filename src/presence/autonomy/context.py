from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from .collaborators import (
    ContentTransmitter,
    ImprovementRunner,
    LanguageModel,
    OwnFeedSource,
    SessionProvider,
    SignalSource,
)
from .config import Config, DEFAULT_PERSONA_HINT
from .conversations import ConversationTracker, IssueRef, make_feed_tracker, make_issue_tracker
from .friction import FrictionStore
from .outbound_queue import OutboundQueue
from .pacing import PacingManager
from .relationships import RelationshipStore
from .state import utc_now


@dataclass
class AgentContext:
    """Everything one agent process shares, built once and passed explicitly."""

    cfg: Config
    logger: logging.Logger
    relationships: RelationshipStore
    feed_conversations: ConversationTracker[str]
    issue_conversations: ConversationTracker[IssueRef]
    pacing: PacingManager
    outbound: OutboundQueue
    friction: FrictionStore
    signals: SignalSource
    transmitter: ContentTransmitter
    llm: LanguageModel
    session: SessionProvider
    feed: Optional[OwnFeedSource] = None
    improvement_runner: Optional[ImprovementRunner] = None
    persona: str = DEFAULT_PERSONA_HINT
    clock: Callable[[], datetime] = utc_now
    rng: random.Random = field(default_factory=random.Random)


def build_context(
    cfg: Config,
    logger: logging.Logger,
    signals: SignalSource,
    transmitter: ContentTransmitter,
    llm: LanguageModel,
    session: SessionProvider,
    feed: Optional[OwnFeedSource] = None,
    improvement_runner: Optional[ImprovementRunner] = None,
    persona: str = DEFAULT_PERSONA_HINT,
    clock: Callable[[], datetime] = utc_now,
    persist: bool = True,
) -> AgentContext:
    def _path(value):
        return value if persist else None

    tracker_kwargs = dict(
        logger=logger,
        reengagement_limit=cfg.reengagement_limit,
        unlimited_sources=cfg.unlimited_reengagement_sources,
        max_age_days=cfg.conversation_max_age_days,
        clock=clock,
    )
    pacing = PacingManager(cfg.pacing, logger=logger)
    return AgentContext(
        cfg=cfg,
        logger=logger,
        relationships=RelationshipStore(
            _path(cfg.engagement_path),
            logger=logger,
            daily_post_limit=cfg.daily_post_limit,
            quiet_hours=(cfg.quiet_hours_start, cfg.quiet_hours_end),
            clock=clock,
        ),
        feed_conversations=make_feed_tracker(
            cfg.feed_thresholds, path=_path(cfg.feed_conversations_path), **tracker_kwargs
        ),
        issue_conversations=make_issue_tracker(
            cfg.issue_thresholds, path=_path(cfg.issue_conversations_path), **tracker_kwargs
        ),
        pacing=pacing,
        outbound=OutboundQueue(
            pacing,
            agent_id=cfg.agent_id,
            path=_path(cfg.outbound_path),
            journal_path=_path(cfg.outbound_journal_path),
            logger=logger,
            buffer_size=cfg.outbound_buffer_size,
            feed_limit=cfg.feed_warmup_limit,
            clock=clock,
        ),
        friction=FrictionStore(_path(cfg.friction_path), logger=logger, clock=clock),
        signals=signals,
        transmitter=transmitter,
        llm=llm,
        session=session,
        feed=feed,
        improvement_runner=improvement_runner,
        persona=persona,
        clock=clock,
    )
