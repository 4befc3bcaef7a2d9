"""structlog setup shared by the worker, finalizer and CLI."""

import logging
import sys
from typing import Optional, TextIO

import structlog

from harvester.config import settings


def configure_logging(
    level: Optional[str] = None,
    json_logs: Optional[bool] = None,
    stream: Optional[TextIO] = None,
) -> None:
    """Configure stdlib logging and structlog.

    Args:
        level: Log level name, defaults to settings.LOG_LEVEL
        json_logs: Emit JSON lines instead of console output, defaults to settings.LOG_JSON
        stream: Output stream, defaults to stdout
    """
    stream = stream or sys.stdout
    level_name = (level or settings.LOG_LEVEL).upper()
    numeric_level = logging.getLevelName(level_name)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO
    use_json = settings.LOG_JSON if json_logs is None else json_logs

    logging.basicConfig(
        level=numeric_level,
        format="%(message)s",
        stream=stream,
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if use_json:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )
