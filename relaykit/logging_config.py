"""
Structured logging configuration using structlog.

Library modules log through ``logging.getLogger(__name__)``. This module
routes those stdlib records through structlog so each line carries the
execution context the step executor binds with
``structlog.contextvars.bound_contextvars`` (``request_id``,
``origin_chain_id``, ``step_id``). Logs go to stderr by default so the CLI
can print quote JSON on stdout.
"""

import logging
import sys
from typing import IO, Optional

import structlog

from .config import settings


# Third-party loggers that are noisy below WARNING
QUIET_LOGGERS = ("httpcore", "httpx", "websockets")


def setup_logging(
    log_level: Optional[str] = None,
    *,
    stream: Optional[IO[str]] = None,
    json_logs: Optional[bool] = None,
) -> None:
    """Configure structlog and the root logger.

    ``merge_contextvars`` sits in ``foreign_pre_chain`` as well as in the
    structlog chain, so records from plain stdlib loggers pick up whatever
    the executor has bound for the current task.

    Args:
        log_level: Override log level (default: from settings.log_level)
        stream: Where to write (default: stderr)
        json_logs: Force JSON (True) or console (False) rendering. By default
            DEBUG renders for the console and every other level as JSON.
    """
    level = getattr(logging, (log_level or settings.log_level).upper(), logging.INFO)
    if json_logs is None:
        json_logs = level != logging.DEBUG

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_logs:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
