from __future__ import annotations

import asyncio
from contextlib import contextmanager
from dataclasses import replace
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Set

from .collaborators import SendReceipt, ThreadContext
from .config import Config, is_quiet_hour
from .context import AgentContext
from .conversations import ISSUE_SOURCE_LINK, ISSUE_SOURCE_OWNER_LINK, extract_issue_refs
from .errors import FatalProviderError, TransientCollaboratorError
from .friction import build_improvement_prompt
from .models import (
    RESPONSE_KINDS,
    ConversationState,
    IssueRef,
    PrioritizedNotification,
    SchedulerMode,
    SchedulerState,
    Signal,
)
from .prioritizer import (
    deduplicate_prioritized,
    flatten_triaged,
    has_urgent_signals,
    prioritize_signals,
    triage_signals,
)
from .prompts import (
    build_expression_prompt,
    build_reflection_prompt,
    build_reply_prompt,
    clean_generated_text,
)
from .text import preview_text


TIMER_JITTER_PCT = 0.12

LOOP_AWARENESS = "awareness"
LOOP_RESPONDING = "responding"
LOOP_EXPRESSION = "expression"
LOOP_REFLECTION = "reflection"
LOOP_IMPROVEMENT = "improvement"
LOOP_ENGAGEMENT = "engagement"

# Delay before a reflection pulled forward by a busy response cycle.
EARLY_REFLECTION_DELAY_SECONDS = 5.0

_FRICTION_CATEGORY = {
    LOOP_AWARENESS: "social",
    LOOP_RESPONDING: "social",
    LOOP_EXPRESSION: "expression",
    LOOP_REFLECTION: "memory",
    LOOP_IMPROVEMENT: "other",
    LOOP_ENGAGEMENT: "tools",
}


def timer_interval(agent_name: str, timer: str, base_seconds: float, pct: float = TIMER_JITTER_PCT) -> float:
    """Stable per-agent offset of up to ``pct`` applied to ``base_seconds``.

    Agents sharing a signal source stagger naturally because every
    (agent, timer) pair hashes to its own offset.
    """
    key = f"{agent_name}:{timer}"
    h = 5381
    for ch in key:
        h = ((h << 5) + h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    normalized = (abs(h) % 2001 - 1000) / 1000
    return base_seconds + round(base_seconds * 1000 * pct * normalized) / 1000


class AgentScheduler:
    """Runs the agent's independently timed loops under a single-active-mode guard.

    Every loop fires on its own ``call_later`` timer. A loop that fires while
    another one holds a non-idle mode returns immediately and waits for its
    next tick; nothing ever queues behind a busy mode.
    """

    def __init__(self, ctx: AgentContext):
        self.ctx = ctx
        self.cfg: Config = ctx.cfg
        self.logger = ctx.logger
        self.state = SchedulerState()
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._stopped = asyncio.Event()
        self._fatal: Optional[FatalProviderError] = None
        self._shutdown_requested = False
        self._cycles: Dict[str, Callable[[], Awaitable[Any]]] = {
            LOOP_AWARENESS: self.run_awareness_cycle,
            LOOP_RESPONDING: self.run_response_cycle,
            LOOP_EXPRESSION: self.run_expression_cycle,
            LOOP_REFLECTION: self.run_reflection_cycle,
            LOOP_IMPROVEMENT: self.run_improvement_cycle,
            LOOP_ENGAGEMENT: self.run_engagement_check,
        }

    # Lifecycle

    async def start(self) -> bool:
        if self.state.is_running:
            self.logger.debug("Scheduler already running")
            return True
        if self.state.mode == SchedulerMode.STOPPED:
            self.logger.warning("Scheduler start ignored reason=stopped")
            return False

        self.logger.info("Scheduler starting agent=%s dry_run=%s", self.cfg.agent_name, self.cfg.dry_run)
        try:
            session_ok = await self.ctx.session.ensure_valid_session()
        except Exception as e:
            self.logger.error("Session check failed error=%s", e)
            session_ok = False
        if not session_ok:
            message = (
                "Failed to establish an agent session. Check PRESENCE_API_KEY "
                "(or ~/.config/presence/credentials.json) and PRESENCE_API_BASE."
            )
            self.logger.error("%s", message)
            self.state.fatal_error = message
            return False

        self.state.is_running = True
        self.state.started_at = self.ctx.clock()
        await self._warmup_outbound()

        intervals = {
            LOOP_AWARENESS: self._interval(LOOP_AWARENESS, self.cfg.awareness_interval_seconds),
            LOOP_REFLECTION: self._interval(LOOP_REFLECTION, self.cfg.reflection_interval_seconds),
            LOOP_ENGAGEMENT: self._interval(LOOP_ENGAGEMENT, self.cfg.engagement_check_interval_seconds),
        }
        self.logger.info(
            "Timer intervals agent=%s %s",
            self.cfg.agent_name,
            " ".join(f"{name}={seconds:.1f}s" for name, seconds in intervals.items()),
        )
        for name, seconds in intervals.items():
            self._schedule(name, seconds)
        self._schedule(LOOP_EXPRESSION, self._roll_expression_delay())
        return True

    async def _warmup_outbound(self) -> None:
        if self.ctx.feed is None:
            return
        try:
            items = await self.ctx.feed.fetch_own_posts(self.cfg.feed_warmup_limit)
        except Exception as e:
            self.logger.warning("Outbound warmup failed error=%s", e)
            return
        self.ctx.outbound.warmup_from_feed(items)

    def stop(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        if self._shutdown_requested:
            return
        self._shutdown_requested = True
        self.state.is_running = False
        self.state.mode = SchedulerMode.STOPPED
        self._stopped.set()
        self.logger.info("Scheduler stopped")

    async def wait_stopped(self) -> None:
        await self._stopped.wait()
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._fatal is not None:
            raise self._fatal

    def get_state(self) -> SchedulerState:
        return replace(
            self.state,
            pending_notifications=list(self.state.pending_notifications),
            pending_issue_conversations=list(self.state.pending_issue_conversations),
        )

    def get_config(self) -> Config:
        return replace(self.cfg)

    # Timers

    def _interval(self, timer: str, base_seconds: float) -> float:
        if not self.cfg.timer_jitter_enabled:
            return float(base_seconds)
        return timer_interval(self.cfg.agent_name, timer, base_seconds)

    def _roll_expression_delay(self) -> float:
        delay = self.ctx.rng.uniform(self.cfg.expression_min_seconds, self.cfg.expression_max_seconds)
        self.state.next_expression_at = self.ctx.clock() + timedelta(seconds=delay)
        return delay

    def _next_delay(self, name: str) -> float:
        if name == LOOP_EXPRESSION:
            return self._roll_expression_delay()
        if name == LOOP_AWARENESS:
            return self._interval(name, self.cfg.awareness_interval_seconds)
        if name == LOOP_REFLECTION:
            return self._interval(name, self.cfg.reflection_interval_seconds)
        return self._interval(name, self.cfg.engagement_check_interval_seconds)

    def _schedule(self, name: str, delay: float) -> None:
        existing = self._timers.pop(name, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._timers[name] = loop.call_later(max(0.0, delay), self._fire, name)

    def _fire(self, name: str) -> None:
        self._timers.pop(name, None)
        if not self.state.is_running:
            return
        self._schedule(name, self._next_delay(name))
        task = asyncio.get_running_loop().create_task(self._run_cycle(name))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # Cycle plumbing

    @contextmanager
    def _mode(self, mode: SchedulerMode) -> Iterator[bool]:
        # No await between the check and the assignment.
        if self.state.mode != SchedulerMode.IDLE:
            self.logger.debug("Cycle skip reason=mode_busy wanted=%s current=%s", mode.value, self.state.mode.value)
            yield False
            return
        self.state.mode = mode
        self.logger.info("Mode enter mode=%s", mode.value)
        try:
            yield True
        finally:
            self.state.mode = SchedulerMode.STOPPED if self._shutdown_requested else SchedulerMode.IDLE

    async def _run_cycle(self, name: str) -> None:
        try:
            await self._cycles[name]()
        except FatalProviderError as e:
            self._handle_fatal(e)
        except TransientCollaboratorError as e:
            self._record_cycle_failure(name, e)
            self.logger.warning("Cycle failed loop=%s transient_error=%s", name, e)
        except Exception as e:
            self._record_cycle_failure(name, e)
            self.logger.exception("Cycle failed loop=%s loop_error=%s", name, e)

    def _record_cycle_failure(self, name: str, error: Exception) -> None:
        if name == LOOP_AWARENESS:
            self.state.consecutive_errors += 1
        try:
            self.ctx.friction.record_friction(
                _FRICTION_CATEGORY.get(name, "other"),
                f"{name} cycle failed: {type(error).__name__}",
                preview_text(str(error), 300),
            )
        except Exception as e:
            self.logger.warning("Friction record failed loop=%s error=%s", name, e)

    def _handle_fatal(self, error: FatalProviderError) -> None:
        diagnostic = error.diagnostic()
        self.logger.critical("%s", diagnostic)
        self.state.fatal_error = diagnostic
        self._fatal = error
        self.stop()

    # Forced runs

    async def _force(self, name: str) -> bool:
        if self.state.mode != SchedulerMode.IDLE:
            self.logger.info("Force ignored loop=%s mode=%s", name, self.state.mode.value)
            return False
        await self._run_cycle(name)
        return True

    async def force_awareness(self) -> bool:
        return await self._force(LOOP_AWARENESS)

    async def force_expression(self) -> bool:
        return await self._force(LOOP_EXPRESSION)

    async def force_reflection(self) -> bool:
        return await self._force(LOOP_REFLECTION)

    async def force_improvement(self) -> bool:
        return await self._force(LOOP_IMPROVEMENT)

    async def force_engagement_check(self) -> bool:
        await self._run_cycle(LOOP_ENGAGEMENT)
        return True

    # Awareness

    def _is_response_candidate(self, signal: Signal) -> bool:
        if signal.kind not in RESPONSE_KINDS:
            return False
        if signal.author_id == self.cfg.agent_id:
            return False
        seen_at = self.ctx.relationships.seen_at
        return seen_at is None or signal.timestamp > seen_at

    def _track_issue_links(self, signal: Signal) -> List[IssueRef]:
        """Track issue threads linked from ``signal`` and queue the ones worth answering.

        Replying on the issue tracker is left to whatever consumes
        ``pending_issue_conversations``.
        """
        refs = extract_issue_refs(signal.text)
        if not refs:
            return []
        tracker = self.ctx.issue_conversations
        owner_request = bool(self.cfg.owner_id) and signal.author_id == self.cfg.owner_id
        source = ISSUE_SOURCE_OWNER_LINK if owner_request else ISSUE_SOURCE_LINK
        queued: List[IssueRef] = []
        for ref in refs:
            tracker.track_conversation(ref, source=source)
            decision = tracker.should_respond_in_conversation(ref, self.cfg.agent_id, privileged=owner_request)
            if not decision.should_respond:
                self.logger.info(
                    "Issue conversation skipped ref=%s/%s#%s reason=%s", ref.owner, ref.repo, ref.number, decision.reason
                )
                continue
            if ref not in self.state.pending_issue_conversations:
                self.state.pending_issue_conversations.append(ref)
                queued.append(ref)
                self.logger.info(
                    "Issue conversation queued ref=%s/%s#%s source=%s signal=%s",
                    ref.owner,
                    ref.repo,
                    ref.number,
                    source,
                    signal.id,
                )
        return queued

    async def run_awareness_cycle(self) -> bool:
        urgent = False
        with self._mode(SchedulerMode.AWARENESS) as entered:
            if not entered:
                return False
            ctx = self.ctx
            signals = await ctx.signals.fetch_recent_signals(self.cfg.signal_fetch_limit)
            others = [s for s in signals if s.author_id != self.cfg.agent_id]
            prioritized = prioritize_signals(others, ctx.relationships, self.cfg.owner_id, self.cfg.agent_id)
            for pn in prioritized:
                ctx.relationships.record_interaction(pn.signal)

            fresh = [pn for pn in prioritized if self._is_response_candidate(pn.signal)]
            for pn in fresh:
                signal = pn.signal
                ctx.feed_conversations.track_conversation(
                    signal.root_id,
                    source="notification",
                    root_token=signal.root_token,
                    root_author_id=(signal.parent_author_id or "") if signal.root_id == signal.parent_id else "",
                )
                ctx.feed_conversations.record_participant_activity(
                    signal.root_id, signal.author_id, signal.author_name, at=signal.timestamp
                )
                self._track_issue_links(signal)

            merged = deduplicate_prioritized(list(self.state.pending_notifications) + fresh)
            merged = [pn for pn in merged if not ctx.relationships.has_responded_to(pn.signal.id)]
            threads = triage_signals(merged, ctx.relationships, self.cfg.owner_id)
            self.state.pending_notifications = flatten_triaged(threads)

            if signals:
                ctx.relationships.mark_seen(max(s.timestamp for s in signals))
            urgent = has_urgent_signals(fresh)
            self.state.last_awareness_check = ctx.clock()
            self.state.consecutive_errors = 0
            self.logger.info(
                "Awareness check complete fetched=%s new=%s pending=%s threads=%s urgent=%s",
                len(signals),
                len(fresh),
                len(self.state.pending_notifications),
                len(threads),
                urgent,
            )

        if urgent and self.state.is_running:
            self._schedule(
                LOOP_AWARENESS,
                self._interval(LOOP_AWARENESS, self.cfg.urgent_awareness_interval_seconds),
            )
        if self.state.pending_notifications:
            await self._run_cycle(LOOP_RESPONDING)
        return True

    # Responding

    async def run_response_cycle(self) -> bool:
        with self._mode(SchedulerMode.RESPONDING) as entered:
            if not entered:
                return False
            self.ctx.pacing.start_tick()
            queue: List[PrioritizedNotification] = list(self.state.pending_notifications)
            handled = 0
            try:
                for pn in queue[: max(0, self.cfg.max_responses_per_cycle)]:
                    if not self.ctx.pacing.can_do_more_actions():
                        self.logger.info("Response cycle paused reason=tick_action_limit")
                        break
                    await self._respond_to(pn)
                    handled += 1
            finally:
                self.state.pending_notifications = queue[handled:]
            self.logger.info(
                "Response cycle complete handled=%s remaining=%s", handled, len(self.state.pending_notifications)
            )
        self._maybe_reflect_early()
        return True

    def _maybe_reflect_early(self) -> bool:
        relationships = self.ctx.relationships
        if not relationships.should_reflect():
            return False
        events = relationships.engagement_stats()["significant_events"]
        relationships.add_insight(f"Busy stretch of conversation worth reflecting on ({events} interactions)")
        if self.state.is_running:
            self._schedule(LOOP_REFLECTION, EARLY_REFLECTION_DELAY_SECONDS)
        self.logger.info("Reflection pulled forward reason=significant_events events=%s", events)
        return True

    async def _respond_to(self, pn: PrioritizedNotification) -> None:
        ctx = self.ctx
        signal = pn.signal
        root = signal.root_id
        tracker = ctx.feed_conversations
        record = tracker.track_conversation(root, source="notification", root_token=signal.root_token)
        privileged = bool(self.cfg.owner_id) and signal.author_id == self.cfg.owner_id
        decision = tracker.should_respond_in_conversation(root, self.cfg.agent_id, privileged=privileged)
        if not decision.should_respond:
            if record.state != ConversationState.CONCLUDED:
                tracker.mark_concluded(root, decision.reason)
            self.logger.info("Reply skipped signal=%s root=%s reason=%s", signal.id, root, decision.reason)
            return

        prompt = build_reply_prompt(ctx.persona, pn, tracker.get_conversation(root))
        result = await ctx.llm.generate(prompt)
        text = clean_generated_text(result.text)
        if not text:
            self.logger.info("Reply skipped signal=%s root=%s reason=model_declined", signal.id, root)
            return

        outcome = await ctx.outbound.enqueue("reply", text)
        if not outcome.allowed:
            ctx.friction.record_friction(
                "expression",
                f"Generated reply blocked as {outcome.reason}",
                preview_text(text, 200),
            )
            return

        thread = ThreadContext(
            root_id=root,
            parent_id=signal.id,
            root_token=signal.root_token or signal.token,
            parent_token=signal.token,
        )
        receipt = await self._send("reply", text, thread, outcome.fingerprint)
        ctx.relationships.mark_interaction_responded(signal.id, receipt.id)
        tracker.record_own_reply(root, receipt.id, self.cfg.agent_id, self.cfg.agent_name, text)
        ctx.relationships.record_significant_event("reply_sent")
        self.logger.info(
            "ACTION SUCCESS kind=reply signal=%s root=%s reply_id=%s priority=%s reengaged=%s text=%s",
            signal.id,
            root,
            receipt.id,
            pn.priority,
            decision.reengaged,
            preview_text(text, 80),
        )

    async def _send(self, kind: str, text: str, thread: Optional[ThreadContext], fp: str) -> SendReceipt:
        if self.cfg.dry_run:
            self.logger.info("Dry run send kind=%s text=%s", kind, preview_text(text, 80))
            return SendReceipt(id=f"dry-run-{fp or kind}")
        return await self.ctx.transmitter.send(kind, text, thread)

    # Expression

    async def run_expression_cycle(self) -> bool:
        now = self.ctx.clock()
        if is_quiet_hour(now.hour, self.cfg.quiet_hours_start, self.cfg.quiet_hours_end):
            self.logger.info("Expression skipped reason=quiet_hours hour=%s", now.hour)
            return False
        with self._mode(SchedulerMode.EXPRESSING) as entered:
            if not entered:
                return False
            ctx = self.ctx
            self.state.last_expression = now
            decision = ctx.relationships.can_post_original(now)
            if not decision.should_post:
                self.logger.info("Expression skipped reason=%s", decision.reason)
                return True

            ctx.pacing.start_tick()
            recent = [str(e.get("text") or "") for e in ctx.relationships.posting.get("expressions") or []]
            prompt = build_expression_prompt(ctx.persona, decision.suggested_tone, ctx.relationships.insights(), recent)
            result = await ctx.llm.generate(prompt)
            text = clean_generated_text(result.text)
            if not text:
                self.logger.info("Expression skipped reason=model_declined")
                return True

            outcome = await ctx.outbound.enqueue("post", text)
            if not outcome.allowed:
                ctx.friction.record_friction(
                    "expression",
                    f"Generated post blocked as {outcome.reason}",
                    preview_text(text, 200),
                )
                return True

            receipt = await self._send("post", text, None, outcome.fingerprint)
            ctx.relationships.record_original_post(receipt.id, text)
            ctx.relationships.record_significant_event("expression")
            self.logger.info(
                "ACTION SUCCESS kind=post post_id=%s tone=%s text=%s",
                receipt.id,
                decision.suggested_tone,
                preview_text(text, 80),
            )
        return True

    # Reflection and improvement

    def _reflection_stats(self) -> Dict[str, Any]:
        ctx = self.ctx
        stats = dict(ctx.relationships.engagement_stats())
        feed = ctx.feed_conversations.stats()
        issues = ctx.issue_conversations.stats()
        stats.update(
            {
                "feed_conversations_active": feed["active"],
                "feed_conversations_concluded": feed["concluded"],
                "issue_conversations_active": issues["active"],
                "unresolved_friction": ctx.friction.stats()["unresolved"],
                "recent_actions": ctx.pacing.stats()["recent"],
                "conversations_needing_attention": len(ctx.feed_conversations.needing_attention())
                + len(ctx.issue_conversations.needing_attention()),
                "pending_issue_conversations": len(self.state.pending_issue_conversations),
            }
        )
        return stats

    def _improvement_due(self) -> bool:
        started = self.state.started_at
        if started is None:
            return False
        uptime_hours = (self.ctx.clock() - started).total_seconds() / 3600
        if uptime_hours < self.cfg.improvement_burn_in_hours:
            return False
        return self.ctx.friction.should_attempt_improvement(self.cfg.improvement_min_hours)

    async def run_reflection_cycle(self) -> bool:
        with self._mode(SchedulerMode.REFLECTING) as entered:
            if not entered:
                return False
            ctx = self.ctx
            removed_feed = ctx.feed_conversations.cleanup_old()
            removed_issue = ctx.issue_conversations.cleanup_old()
            removed_friction = ctx.friction.cleanup_resolved()
            stats = self._reflection_stats()
            result = await ctx.llm.generate(build_reflection_prompt(ctx.persona, stats, ctx.relationships.insights()))
            summary = clean_generated_text(result.text, max_chars=600)
            ctx.relationships.record_reflection_complete()
            self.state.last_reflection = ctx.clock()
            self.logger.info(
                "Reflection complete removed_conversations=%s removed_friction=%s summary=%s",
                removed_feed + removed_issue,
                removed_friction,
                preview_text(summary, 160) or "(none)",
            )

        if self._improvement_due():
            await self._run_cycle(LOOP_IMPROVEMENT)
        return True

    async def run_improvement_cycle(self) -> bool:
        with self._mode(SchedulerMode.IMPROVING) as entered:
            if not entered:
                return False
            ctx = self.ctx
            self.state.last_improvement_check = ctx.clock()
            friction = ctx.friction.ready_for_improvement()
            if friction is None:
                self.logger.info("Improvement skipped reason=no_actionable_friction")
                return True

            friction_id = friction["id"]
            ctx.friction.mark_attempted(friction_id)
            result = await ctx.llm.generate(build_improvement_prompt(friction))
            plan = clean_generated_text(result.text, max_chars=2000)
            if not plan:
                ctx.friction.mark_resolved(friction_id, "declined by model")
                self.logger.info("Improvement skipped friction=%s reason=model_declined", friction_id)
                return True

            if ctx.improvement_runner is None:
                ctx.friction.record_improvement_outcome(
                    friction_id, "partial", preview_text(plan, 300), notes="plan only, no runner configured"
                )
                self.logger.info("Improvement planned friction=%s plan=%s", friction_id, preview_text(plan, 120))
                return True

            ok = await ctx.improvement_runner.run_improvement(
                str(friction.get("category") or "other"), str(friction.get("description") or ""), plan
            )
            ctx.friction.record_improvement_outcome(
                friction_id, "success" if ok else "failed", preview_text(plan, 300)
            )
            self.logger.info("Improvement finished friction=%s success=%s", friction_id, ok)
        return True

    # Engagement check

    async def run_engagement_check(self) -> bool:
        """Refresh like, reply and repost counts of recent expressions.

        Read-only with respect to the mode guard: it runs whatever mode is
        active and never changes it.
        """
        ctx = self.ctx
        tracked = ctx.relationships.expressions_needing_check()
        self.state.last_engagement_check = ctx.clock()
        if not tracked or ctx.feed is None:
            return True
        posts = await ctx.feed.fetch_own_posts(self.cfg.feed_warmup_limit)
        by_id = {post.id: post for post in posts}
        updated = 0
        for item in tracked:
            post = by_id.get(str(item.get("post_id") or ""))
            if post is None:
                continue
            if ctx.relationships.update_expression_engagement(
                post.id, post.like_count, post.reply_count, post.repost_count
            ):
                updated += 1
        self.logger.info("Engagement check complete tracked=%s updated=%s", len(tracked), updated)
        return True
