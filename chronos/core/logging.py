"""
Structured logging setup.

All modules obtain a logger through ``get_logger(__name__)`` and log an event
name plus key/value context:

    logger = get_logger(__name__)
    logger.info("chunking_completed", content_id=42, chunk_count=3)

``setup_logging()`` is called once per process (FastAPI lifespan, Celery
worker init). Records emitted through the standard library ``logging`` module
are rendered by the same processor chain, so third-party libraries and
``logging.getLogger`` callers end up in the same output stream.
"""

import logging
import sys

import structlog

from chronos.core.config import settings


_configured = False


def setup_logging(level: str | None = None, log_format: str | None = None) -> None:
    """
    Configure structlog and the standard library root logger.

    Args:
        level: Log level name (default from settings.LOG_LEVEL)
        log_format: "json" or "text" (default from settings.LOG_FORMAT)
    """
    global _configured

    level_name = (level or settings.LOG_LEVEL).upper()
    fmt = log_format or settings.LOG_FORMAT

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if fmt == "json":
        renderer = structlog.processors.JSONRenderer()
        shared_processors.append(structlog.processors.format_exc_info)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level_name)

    # Chatty libraries
    for noisy in ("httpx", "httpcore", "sentence_transformers", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structured logger bound to ``name``."""
    return structlog.get_logger(name)


def is_configured() -> bool:
    return _configured
