"""Structured logging for Deckhand.

Records go to stderr so stdout stays free for the CLI's event stream. While
an invocation runs, its ``thread_id``, ``depth`` and ``parent_id`` are bound
to the asyncio task context, so nested subagent logs are attributable.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Iterator

import structlog

from deckhand.config import LoggingConfig, get_config


def _renderer(fmt: str) -> structlog.typing.Processor:
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def configure_logging(level: str | None = None, settings: LoggingConfig | None = None) -> None:
    """Configure structlog from the ``logging`` config section.

    Args:
        level: Level name overriding the configured one (e.g. from ``--verbose``)
        settings: Logging section to use instead of the global config
    """
    settings = settings or get_config().logging
    level_name = (level or settings.level).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(settings.format),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


@contextmanager
def bind_invocation(thread_id: str, depth: int = 0, parent_id: str | None = None) -> Iterator[None]:
    """Attach invocation identity to every record logged inside the block."""
    with structlog.contextvars.bound_contextvars(thread_id=thread_id, depth=depth, parent_id=parent_id):
        yield


def get_logger(name: str | None = None) -> structlog.typing.FilteringBoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (usually __name__)
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


log = get_logger(__name__)
