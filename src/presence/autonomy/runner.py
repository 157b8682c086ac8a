import asyncio
import signal
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from presence.agent_client import AgentApiClient, AgentApiCollaborator, AgentAuthError

from .config import Config, load_config
from .context import AgentContext, build_context
from .errors import FatalProviderError
from .generation import OpenAIGenerationClient
from .logging_utils import setup_logging
from .prompts import load_persona_text
from .scheduler import AgentScheduler


def load_env(dotenv_path: Path = Path(".env")) -> None:
    if dotenv_path.exists():
        load_dotenv(dotenv_path=dotenv_path, override=False)


def build_runtime_context(cfg: Config, logger=None) -> AgentContext:
    logger = logger or setup_logging(cfg)
    persona = load_persona_text(cfg.persona_path)
    api = AgentApiCollaborator(AgentApiClient(), cfg.agent_id, logger=logger)
    llm = OpenAIGenerationClient(cfg, logger=logger, system_prompt=persona)
    return build_context(
        cfg,
        logger,
        signals=api,
        transmitter=api,
        llm=llm,
        session=api,
        feed=api,
        persona=persona,
    )


def _install_signal_handlers(scheduler: AgentScheduler) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scheduler.stop)
        except NotImplementedError:
            # Windows event loops have no signal handler support.
            pass


async def _run(ctx: AgentContext) -> None:
    scheduler = AgentScheduler(ctx)
    _install_signal_handlers(scheduler)
    if not await scheduler.start():
        raise SystemExit(scheduler.state.fatal_error or "Scheduler failed to start.")
    await scheduler.wait_stopped()


def run_agent(dotenv_path: Optional[Path] = None) -> None:
    load_env(dotenv_path or Path(".env"))
    cfg = load_config()
    logger = setup_logging(cfg)
    logger.info(
        "Agent starting agent=%s agent_id=%s owner_configured=%s model=%s openai_configured=%s "
        "dry_run=%s memory_dir=%s jitter=%s",
        cfg.agent_name,
        cfg.agent_id,
        bool(cfg.owner_id),
        cfg.openai_model,
        bool(cfg.openai_api_key),
        cfg.dry_run,
        cfg.memory_dir,
        cfg.timer_jitter_enabled,
    )
    if cfg.log_path:
        logger.info("File logging enabled path=%s", cfg.log_path)

    try:
        ctx = build_runtime_context(cfg, logger)
        asyncio.run(_run(ctx))
    except FatalProviderError as e:
        raise SystemExit(e.diagnostic())
    except AgentAuthError as e:
        raise SystemExit(f"Agent API authentication failed: {e}")


if __name__ == "__main__":
    run_agent()
