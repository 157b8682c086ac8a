import logging
import os
import sys
from typing import Optional, Tuple

from .config import Config


LOGGER_NAME = "presence.autonomy"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

_RESET = "\033[0m"
_BOLD = "\033[1m"
_DIM = "\033[2m"

_LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[1;31m",
}

# (message needle, console tag, ansi style); first match wins. A tag of None dims the line.
_HIGHLIGHTS: Tuple[Tuple[str, Optional[str], str], ...] = (
    ("ACTION SUCCESS", "SENT", "\033[1;32m"),
    ("Outbound blocked", "DEDUP", "\033[1;33m"),
    ("Conversation concluded", "CONCLUDED", "\033[1;35m"),
    ("Conversation reengaged", "REENGAGED", "\033[1;35m"),
    ("Mode enter", "MODE", "\033[1;36m"),
    ("Fatal model provider error", "FATAL", "\033[1;31m"),
    ("state_corrupt", "STATE RESET", "\033[1;31m"),
    ("Cooldown wait", None, ""),
    ("reason=mode_busy", None, ""),
)


def _stream_supports_color() -> bool:
    if os.getenv("NO_COLOR"):
        return False
    if os.getenv("FORCE_COLOR", "").strip().lower() in {"1", "true", "yes"}:
        return True
    return bool(sys.stderr.isatty())


class ColorFormatter(logging.Formatter):
    """Console formatter that tags the scheduler's milestone lines."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        level_color = _LEVEL_COLORS.get(record.levelno, "")
        for needle, tag, style in _HIGHLIGHTS:
            if needle not in message:
                continue
            if tag is None:
                return f"{_DIM}{level_color}{message}{_RESET}"
            return f"{_BOLD}{style}[{tag}] {message}{_RESET}"
        if not level_color:
            return message
        return f"{level_color}{message}{_RESET}"


def _line_format(agent_name: str) -> str:
    agent = agent_name.replace("%", "%%")
    return f"%(asctime)sZ %(levelname)s [{agent}] %(message)s"


def setup_logging(cfg: Config) -> logging.Logger:
    """Configure the shared agent logger: console always, a plain-text file when PRESENCE_LOG_PATH is set."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, cfg.log_level, logging.INFO))
    logger.handlers.clear()
    logger.propagate = False

    line_format = _line_format(cfg.agent_name)
    plain = logging.Formatter(fmt=line_format, datefmt=DATE_FORMAT)

    console = logging.StreamHandler()
    if _stream_supports_color():
        console.setFormatter(ColorFormatter(fmt=line_format, datefmt=DATE_FORMAT))
    else:
        console.setFormatter(plain)
    logger.addHandler(console)

    if cfg.log_path:
        cfg.log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(cfg.log_path, encoding="utf-8")
        file_handler.setFormatter(plain)
        logger.addHandler(file_handler)

    return logger
