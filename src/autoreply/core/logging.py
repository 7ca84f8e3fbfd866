"""Process logging for the auto-reply service, built on structlog.

Every run binds a ``run_id`` through a contextvar so that the events of one
run (across all of its accounts and concurrent message workflows) can be
grouped. ``serve`` renders JSON lines; the CLI renders for a terminal.

This is the developer-facing log. The operator-facing audit trail is the
log ledger (``autoreply.core.ledger``), which forwards into this one.

Usage:
    from autoreply.core.logging import get_logger, set_correlation_id

    logger = get_logger(__name__)

    set_correlation_id(run_id)
    logger.info("folder_opened", account="me@example.com", folder="INBOX")
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Event keys never written out verbatim
SECRET_KEYS = frozenset({"password", "secret", "token"})

# Library loggers that echo protocol traffic at DEBUG
_CHATTY_LOGGERS = ("imapclient", "aiosqlite", "apscheduler", "httpx")


def set_correlation_id(correlation_id: str | None) -> None:
    """Bind (or with None, clear) the run id for the current context."""
    _correlation_id.set(correlation_id)


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def add_correlation_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor: attach the current run id, if any."""
    run_id = _correlation_id.get()
    if run_id is not None:
        event_dict["run_id"] = run_id
    return event_dict


def mask_secrets(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor: replace credential-like values with a placeholder."""
    for key in SECRET_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog and the stdlib logging bridge.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines when True (``serve``), console rendering otherwise
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    # IMAP traffic stays quiet unless explicitly debugging
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.INFO))

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        add_correlation_id,
        mask_secrets,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger, typically ``get_logger(__name__)``."""
    return structlog.get_logger(name)
