"""structlog configuration.

Logs go to stdout as JSON lines. Call setup_logging() once at process start;
modules log through structlog.get_logger(__name__).
"""

from __future__ import annotations

import logging
import sys

import structlog

from fwafunnel.config import env


def setup_logging(level: str | None = None) -> None:
    """Configure structlog and the standard logging root handler."""
    level_name = (level or env("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name, logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
