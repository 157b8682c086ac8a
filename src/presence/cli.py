import argparse
import asyncio
import json
from dataclasses import asdict
from typing import Any

from .agent_client import AgentApiClient, AgentApiCollaborator, AgentAuthError
from .autonomy.action_journal import read_outbound_journal, summarize_outbound_journal
from .autonomy.config import load_config
from .autonomy.conversations import make_feed_tracker, make_issue_tracker
from .autonomy.friction import FrictionStore
from .autonomy.logging_utils import setup_logging
from .autonomy.outbound_queue import (
    OutboundQueue,
    execute_prune_plan,
    merge_prune_plans,
    plan_closing_chain_pruning,
    plan_duplicate_pruning,
)
from .autonomy.pacing import PacingManager
from .autonomy.relationships import RelationshipStore
from .autonomy.runner import load_env, run_agent


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def cmd_run(_: argparse.Namespace) -> None:
    """Run the agent until interrupted."""
    run_agent()


def cmd_status(args: argparse.Namespace) -> None:
    """Summarize persisted state without touching the network."""
    cfg = load_config()
    logger = setup_logging(cfg)
    journal = read_outbound_journal(cfg.outbound_journal_path, limit=500)
    print_json(
        {
            "agent": cfg.agent_name,
            "memory_dir": str(cfg.memory_dir),
            "engagement": RelationshipStore(cfg.engagement_path, logger=logger).engagement_stats(),
            "feed_conversations": make_feed_tracker(
                cfg.feed_thresholds, path=cfg.feed_conversations_path, logger=logger
            ).stats(),
            "issue_conversations": make_issue_tracker(
                cfg.issue_thresholds, path=cfg.issue_conversations_path, logger=logger
            ).stats(),
            "friction": FrictionStore(cfg.friction_path, logger=logger).stats(),
            "outbound": OutboundQueue(PacingManager(cfg.pacing), path=cfg.outbound_path, logger=logger).stats(),
            "recent_outbound": journal[-args.journal :] if args.journal > 0 else [],
            "outbound_decisions": summarize_outbound_journal(journal),
        }
    )


def cmd_prune(args: argparse.Namespace) -> None:
    """Plan (and with --apply, delete) duplicate replies and closing chains in the agent's own posts.

    Examples:

        presence prune --limit 100
        presence prune --apply
    """
    cfg = load_config()
    logger = setup_logging(cfg)
    api = AgentApiCollaborator(AgentApiClient(), cfg.agent_id, logger=logger)

    async def _prune() -> None:
        items = await api.fetch_own_posts(args.limit)
        plans = [plan_duplicate_pruning(items)]
        if not args.skip_closings:
            plans.append(plan_closing_chain_pruning(items))
        plan = merge_prune_plans(*plans)
        deleted = await execute_prune_plan(plan, api, logger=logger, dry_run=not args.apply)
        print_json(
            {
                "scanned": len(items),
                "planned": [asdict(c) for c in plan],
                "applied": args.apply,
                "deleted": deleted,
            }
        )

    asyncio.run(_prune())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Autonomous social-presence agent.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run
    p_run = subparsers.add_parser("run", help="Start the scheduler loops")
    p_run.set_defaults(func=cmd_run)

    # status
    p_status = subparsers.add_parser("status", help="Show persisted engagement, conversation and dedup state")
    p_status.add_argument("--journal", type=int, default=10, help="Recent outbound decisions to include")
    p_status.set_defaults(func=cmd_status)

    # prune
    p_prune = subparsers.add_parser("prune", help="Find duplicate replies and thank-you chains in own posts")
    p_prune.add_argument("--limit", type=int, default=100, help="How many recent own posts to scan")
    p_prune.add_argument("--apply", action="store_true", help="Actually delete the planned posts")
    p_prune.add_argument("--skip-closings", action="store_true", help="Only prune exact duplicates")
    p_prune.set_defaults(func=cmd_prune)

    return parser


def main() -> None:
    load_env()
    try:
        parser = build_parser()
        args = parser.parse_args()
        args.func(args)
    except AgentAuthError as e:
        raise SystemExit(str(e))


if __name__ == "__main__":
    main()
