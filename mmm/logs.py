from __future__ import annotations

import logging
import os
import sys
from typing import Optional

import structlog

LOG_LEVEL_ENV = "MMM_LOG_LEVEL"

_LOGGING_CONFIGURED = False


def setup_logging(*, debug: bool = False, quiet: bool = False, force: bool = False) -> None:
    """Configure structlog on top of stdlib logging, rendering to stderr.

    The level comes from ``MMM_LOG_LEVEL`` when set; otherwise ``--debug`` selects
    DEBUG, ``--quiet`` selects ERROR and the default is WARNING so normal command
    output stays uncluttered.
    """
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED and not force:
        return

    default_level = "DEBUG" if debug else ("ERROR" if quiet else "WARNING")
    level_name = os.environ.get(LOG_LEVEL_ENV, default_level).upper()
    level = getattr(logging, level_name, logging.WARNING)

    pre_chain = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
            foreign_pre_chain=pre_chain,
        )
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            *pre_chain,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)
    _LOGGING_CONFIGURED = True


def get_logger(name: Optional[str] = None):
    return structlog.get_logger(name)
