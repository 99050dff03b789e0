"""Centralized logging configuration for backtest workers.

Stdlib loggers and structlog loggers end up on the same JSON handler: structlog
is configured to hand its event dicts to the stdlib logger of the same name, so
``logger.info("stage_job_enqueued", job_id=...)`` renders as a JSON line whose
message is the event name and whose context holds the keyword fields. Worker
processes call configure_logging() once at startup.

Example:
    >>> from libs.common.logging.config import configure_logging
    >>> logger = configure_logging(service_name="backtest_worker", log_level="INFO")
    >>> logger.info("Worker started", extra={"context": {"queue": "backtest_pipeline"}})
"""

import logging
import sys

import structlog

from libs.common.logging.context import get_pipeline_id, get_stage
from libs.common.logging.formatter import JSONFormatter


class PipelineContextFilter(logging.Filter):
    """Logging filter that copies the bound pipeline id and stage onto records."""

    def filter(self, record: logging.LogRecord) -> bool:
        # Explicit extra= values win over the bound context
        if getattr(record, "pipeline_id", None) is None:
            record.pipeline_id = get_pipeline_id()
        if getattr(record, "stage", None) is None:
            record.stage = get_stage()
        return True


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def configure_logging(
    service_name: str,
    log_level: str = "INFO",
    include_context: bool = True,
) -> logging.Logger:
    """Configure structured JSON logging for a service.

    Sets up the root logger with:
    - JSON formatted output to stdout
    - Pipeline id / stage injection on all records
    - Specified log level
    - structlog events routed through the same handler

    Args:
        service_name: Name of the service (e.g., "backtest_worker")
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        include_context: Whether to include context dict in output

    Returns:
        Configured root logger instance

    Raises:
        ValueError: If log_level is invalid
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(
        JSONFormatter(
            service_name=service_name,
            include_context=include_context,
        )
    )
    handler.addFilter(PipelineContextFilter())

    root_logger.addHandler(handler)
    _configure_structlog()

    return root_logger


def get_logger(name: str | None = None) -> logging.Logger:
    """Get a logger instance (typically ``get_logger(__name__)``)."""
    return logging.getLogger(name)


def log_with_context(
    logger: logging.Logger,
    level: str,
    message: str,
    **context_fields: object,
) -> None:
    """Log a message with additional context fields.

    Context fields will appear in the "context" dict in JSON output.

    Example:
        >>> logger = get_logger(__name__)
        >>> log_with_context(logger, "INFO", "Stage finished", stage="load", rows=1200)
    """
    log_method = getattr(logger, level.lower())
    log_method(message, extra={"context": context_fields})
