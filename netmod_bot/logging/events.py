from __future__ import annotations

import logging
import sys
from typing import Any

import structlog


class Colors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    DEBUG = "\033[36m"
    INFO = "\033[32m"
    WARNING = "\033[33m"
    ERROR = "\033[31m"
    CRITICAL = "\033[35m"

    TIMESTAMP = "\033[90m"
    EVENT = "\033[96m"
    KEY = "\033[94m"
    NUMBER = "\033[93m"
    STRING = "\033[92m"
    VALUE = "\033[37m"


LEVEL_COLORS = {
    "DEBUG": Colors.DEBUG,
    "INFO": Colors.INFO,
    "WARNING": Colors.WARNING,
    "ERROR": Colors.ERROR,
    "CRITICAL": Colors.CRITICAL,
}

# context keys printed right after the event name
LEADING_KEYS = ("action_id", "job_id", "parent_id")

NOISY_LOGGERS = {
    "aiogram": logging.INFO,
    "aiogram.event": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "httpx": logging.WARNING,
}


def _colorize(value: Any) -> str:
    if value is None:
        return f"{Colors.DIM}None{Colors.RESET}"
    if isinstance(value, (bool, int, float)):
        return f"{Colors.NUMBER}{value}{Colors.RESET}"
    if isinstance(value, str):
        return f"{Colors.STRING}{value}{Colors.RESET}"
    return f"{Colors.VALUE}{value}{Colors.RESET}"


class ColoredConsoleRenderer:
    """One line per event: time, level, event name, then ``key=value`` pairs."""

    def __init__(self, colored: bool = True) -> None:
        self.colored = colored and sys.stdout.isatty()
        self._plain = structlog.processors.KeyValueRenderer(
            key_order=["timestamp", "level", "event", *LEADING_KEYS],
            drop_missing=True,
        )

    def __call__(self, logger: Any, name: str, event_dict: dict) -> str:
        if not self.colored:
            return self._plain(logger, name, event_dict)

        timestamp = event_dict.pop("timestamp", "")
        level = event_dict.pop("level", "info").upper()
        event = event_dict.pop("event", "")

        parts = []
        if timestamp:
            parts.append(f"{Colors.TIMESTAMP}[{timestamp}]{Colors.RESET}")
        parts.append(f"{LEVEL_COLORS.get(level, Colors.INFO)}{Colors.BOLD}{level:8}{Colors.RESET}")
        parts.append(f"{Colors.EVENT}{event}{Colors.RESET}")

        ordered = [key for key in LEADING_KEYS if key in event_dict]
        ordered += [key for key in event_dict if key not in LEADING_KEYS]
        if ordered:
            pairs = [f"{Colors.KEY}{key}{Colors.RESET}={_colorize(event_dict[key])}" for key in ordered]
            parts.append(f"{Colors.DIM}|{Colors.RESET} " + " ".join(pairs))
        return " ".join(parts)


class _StdlibFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        if not sys.stdout.isatty():
            return super().format(record)
        color = LEVEL_COLORS.get(record.levelname, Colors.INFO)
        return (
            f"{Colors.TIMESTAMP}[{self.formatTime(record, '%H:%M:%S')}]{Colors.RESET} "
            f"{color}{Colors.BOLD}{record.levelname:8}{Colors.RESET} "
            f"{Colors.DIM}{record.name}{Colors.RESET} {record.getMessage()}"
        )


def setup_logging(level: int = logging.INFO, use_json: bool = False) -> None:
    """
    Configure structlog for the bot and route stdlib loggers (aiogram, httpx,
    aiosqlite) through a matching console format.

    Args:
        level: minimum level for both structlog and stdlib loggers
        use_json: emit one JSON object per event instead of the console format
    """
    renderer = structlog.processors.JSONRenderer() if use_json else ColoredConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S", utc=False),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(_StdlibFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    logging.basicConfig(level=level, handlers=[handler], force=True)

    for name, noisy_level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(max(noisy_level, level))
