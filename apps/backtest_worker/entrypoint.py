"""
RQ pipeline worker entrypoint.

Configures logging, verifies Redis connectivity and starts the RQ worker
processing backtest pipeline stage jobs. The scheduler is enabled because
stage retries are scheduled with backoff intervals.

Stage jobs run in the worker process itself (``SimpleWorker``) rather than in
a forked work-horse, so process-local state such as exchange circuit state
carries over from one job to the next.
"""

from __future__ import annotations

import os
import sys

import redis
import structlog
from redis import Redis
from rq import SimpleWorker

from config.settings import get_settings
from libs.common.logging import configure_logging

logger = structlog.get_logger(__name__)


def main() -> None:
    """Worker entrypoint - validates connectivity and starts RQ worker loop."""
    settings = get_settings()
    configure_logging(service_name="backtest_worker", log_level=settings.log_level)

    redis_client = Redis.from_url(settings.redis_url)

    # Verify Redis connectivity before starting worker loop
    try:
        redis_client.ping()
    except redis.exceptions.RedisError as exc:
        logger.error("redis_connection_failed", error=str(exc))
        sys.exit(1)

    # RQ_QUEUES env var allows specifying which queues to process (comma-separated)
    rq_queues_env = os.getenv("RQ_QUEUES")
    if rq_queues_env:
        queues = [q.strip() for q in rq_queues_env.split(",") if q.strip()]
    else:
        queues = [settings.pipeline_queue_name]
    # Jobs run in this process so the circuit breaker and DB pool outlive each job
    worker = SimpleWorker(queues, connection=redis_client)

    logger.info("worker_starting", queues=queues, pid=os.getpid())
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
