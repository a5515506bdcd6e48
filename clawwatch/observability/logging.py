"""
Structured logging configuration using structlog.

The pipeline loops log through structlog with key/value fields, while the
library modules (tracker, batcher, repositories, channels) use stdlib
``logging``. Both are rendered by one ``ProcessorFormatter`` so a
production deployment emits a single JSON stream.
"""

import logging
import sys

import structlog
from structlog.types import Processor

from clawwatch.config.settings import get_settings

# Libraries whose INFO output is per-request noise
_QUIET_LOGGERS = ("httpx", "httpcore", "asyncio", "asyncpg")


def setup_logging() -> None:
    """
    Configure structlog and the root stdlib logger.

    JSON lines in production, colored console output otherwise.

    Usage:
        setup_logging()
        logger = structlog.get_logger(__name__)
        logger.info("Ingestion cycle completed", records=42, duplicates=3)
    """
    settings = get_settings()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: Processor
    if settings.is_production:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, settings.log_level))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_context(**kwargs) -> None:
    """
    Bind fields (e.g. ``instance``) to every later log line in this context.

    Args:
        **kwargs: Key-value pairs to bind
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
