"""
Structured logging configuration using structlog.

Console output is human-readable for interactive use; JSON output is meant
for log shipping when the pipeline runs unattended (scheduled exports).
"""
import sys
import logging
import structlog
from pathlib import Path
from typing import Optional, Sequence

# Third-party loggers that are chatty at INFO (connection pool, event loop)
NOISY_LOGGERS = ("urllib3", "asyncio", "shapely")


def configure_logging(
    log_level: str = "INFO",
    log_file: Optional[Path] = None,
    json_output: bool = False,
    quiet_loggers: Sequence[str] = NOISY_LOGGERS,
):
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path; records are appended there as well
        json_output: If True, output JSON logs; else human-readable console
        quiet_loggers: Library loggers raised to WARNING so that per-request
            chatter does not drown the per-page progress events

    Example:
        >>> from drive_analytics.utils.logging_config import configure_logging, get_logger
        >>> configure_logging(log_level="INFO", json_output=False)
        >>> logger = get_logger(__name__)
        >>> logger.info("fetch_started", fetch_key="101,102", page_size=20000)
    """
    level = getattr(logging, log_level.upper())

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    # basicConfig is a no-op once the root logger has handlers
    logging.getLogger().setLevel(level)
    for name in quiet_loggers:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter('%(message)s'))
        logging.getLogger().addHandler(file_handler)


def get_logger(name: str):
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Structured logger with bound context

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("page_fetched", page=3, records=20000)
        >>> logger.error("fetch_failed", fetch_key="101", exc_info=True)
    """
    return structlog.get_logger(name)


def bind_operation(**context):
    """
    Bind context (e.g. ``fetch_key``, ``fetch_id``) to every log event
    emitted from the current asyncio task.

    Context is stored in contextvars, so concurrent fetches running in
    separate tasks do not see each other's values.
    """
    structlog.contextvars.bind_contextvars(**context)


def clear_operation():
    """Drop context bound with :func:`bind_operation` in the current task."""
    structlog.contextvars.clear_contextvars()
