"""Structured logging for the follow-up engine.

structlog renders every event either as a JSON line (watch mode, log
shippers) or in a colored console format. Log output goes to stderr so that
the CLI's tables on stdout stay clean.

Each analysis run carries an analysis_run_id that is attached to every event
logged while the run is active, including events from the batch executor and
the resilience layer running inside it. Mail addresses are truncated before
rendering.

Usage:
    from followup.core.logging import get_logger, run_context

    logger = get_logger(__name__)

    with run_context(run_id):
        logger.info("thread_resolved", conversation_key="AAQk...", messages=3)
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import structlog

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

# Keys whose values are mail addresses; truncated in every event
ADDRESS_KEYS = frozenset({"user", "sender", "account", "account_email", "recipient"})
ADDRESS_MAX_CHARS = 20

# Chatty libraries that only log below WARNING when debugging
QUIET_LOGGERS = ("anthropic", "httpx", "httpcore", "apscheduler")

_run_id: ContextVar[str | None] = ContextVar("analysis_run_id", default=None)


def set_correlation_id(correlation_id: str | None) -> None:
    """Set (or clear, with None) the analysis run id for the current context."""
    _run_id.set(correlation_id)


def get_correlation_id() -> str | None:
    return _run_id.get()


@contextmanager
def run_context(run_id: str) -> Iterator[str]:
    """Attach run_id to every event logged inside the block.

    The previous id is restored on exit, so nested or concurrent runs in
    separate tasks do not clobber each other.
    """
    token = _run_id.set(run_id)
    try:
        yield run_id
    finally:
        _run_id.reset(token)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor adding analysis_run_id while a run is active."""
    run_id = _run_id.get()
    if run_id is not None:
        event_dict["analysis_run_id"] = run_id
    return event_dict


def truncate_addresses(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor shortening mail addresses to ADDRESS_MAX_CHARS."""
    for key in ADDRESS_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str) and len(value) > ADDRESS_MAX_CHARS:
            event_dict[key] = value[:ADDRESS_MAX_CHARS] + "..."
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog and the stdlib root logger.

    Safe to call more than once; watch mode re-applies the level from the
    config file after the CLI's initial setup.

    Args:
        log_level: One of LOG_LEVELS (case-insensitive)
        json_output: JSON lines if True, colored console output otherwise

    Raises:
        ValueError: If log_level is not a known level
    """
    level_name = log_level.upper()
    if level_name not in LOG_LEVELS:
        raise ValueError(f"Unknown log level '{log_level}'. Use one of: {', '.join(LOG_LEVELS)}")
    level = getattr(logging, level_name)

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(level if level == logging.DEBUG else logging.WARNING)

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_correlation_id,
        truncate_addresses,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Structured logger for a module (pass __name__)."""
    return structlog.get_logger(name)
