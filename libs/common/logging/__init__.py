"""Centralized structured logging library.

Structured JSON logging with pipeline correlation for backtest workers.

Usage:
    # At worker startup
    from libs.common.logging import configure_logging
    configure_logging(service_name="backtest_worker", log_level="INFO")

    # Around each stage job
    from libs.common.logging import PipelineLogContext
    with PipelineLogContext(pipeline_id, stage="load"):
        ...
"""

from libs.common.logging.config import (
    PipelineContextFilter,
    configure_logging,
    get_logger,
    log_with_context,
)
from libs.common.logging.context import (
    PipelineLogContext,
    clear_pipeline_id,
    get_pipeline_id,
    get_stage,
    set_pipeline_id,
)
from libs.common.logging.formatter import JSONFormatter

__all__ = [
    # Configuration
    "configure_logging",
    "get_logger",
    "log_with_context",
    "PipelineContextFilter",
    # Pipeline correlation
    "get_pipeline_id",
    "get_stage",
    "set_pipeline_id",
    "clear_pipeline_id",
    "PipelineLogContext",
    # Formatter (for advanced usage)
    "JSONFormatter",
]
