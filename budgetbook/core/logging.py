from __future__ import annotations

import logging
import sys

import structlog

from .config import settings


def configure_logging(level: str | None = None, *, json_output: bool | None = None) -> None:
    """Configure structlog on top of the standard library logging module."""
    level_name = (level or settings.LOG_LEVEL).upper()
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level_name)
    logging.getLogger("budgetbook").setLevel(level_name)

    use_json = settings.LOG_JSON if json_output is None else json_output
    renderer = structlog.processors.JSONRenderer() if use_json else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


configure_logging()
