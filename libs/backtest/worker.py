from __future__ import annotations

import atexit
import threading
from pathlib import Path
from typing import Any

import psutil  # type: ignore[import-untyped]
import structlog
from psycopg_pool import ConnectionPool
from redis import Redis
from rq import get_current_job

from config.settings import Settings, get_settings
from libs.backtest.artifacts import PipelineArtifactStore
from libs.backtest.coin_catalog import PostgresCoinCatalog
from libs.backtest.coin_resolver import CoinResolver
from libs.backtest.job_queue import PipelineJobQueue
from libs.backtest.market_data_reader import MarketDataReader
from libs.backtest.models import PipelineStage
from libs.backtest.orchestrator import PipelineOrchestrator
from libs.backtest.pipeline_store import PostgresPipelineStore
from libs.backtest.quote_currency import QuoteCurrencyResolver
from libs.backtest.stages import StageProcessor
from libs.backtest.storage import create_object_storage
from libs.common.logging import PipelineLogContext
from libs.data_providers.exchange_fetcher import ExchangeDataFetcher


class PipelineWorker:
    """Per-job wiring of the orchestrator plus a memory guard."""

    def __init__(self, settings: Settings, redis: Redis, db_pool: ConnectionPool):
        self.settings = settings
        self.redis = redis
        self.db_pool = db_pool
        self.max_rss_bytes = settings.stage_job_memory_limit_bytes
        self.process = psutil.Process()
        self.logger = structlog.get_logger(__name__)

    def check_memory(self) -> None:
        """Abort the job if memory exceeds the limit."""
        rss = self.process.memory_info().rss
        if rss > self.max_rss_bytes:
            raise MemoryError(f"Stage job exceeded {self.max_rss_bytes / 1e9:.1f}GB limit")

    def build_processor(self) -> StageProcessor:
        settings = self.settings
        catalog = PostgresCoinCatalog(self.db_pool)
        return StageProcessor(
            artifacts=PipelineArtifactStore(Path(settings.artifacts_dir)),
            reader=MarketDataReader(
                create_object_storage(settings),
                max_file_bytes=settings.max_market_data_file_bytes,
            ),
            exchange_fetcher=ExchangeDataFetcher.from_settings(settings),
            coin_resolver=CoinResolver(catalog),
            quote_resolver=QuoteCurrencyResolver(catalog),
            default_quote_currency=settings.default_quote_currency,
        )

    def build_orchestrator(self) -> PipelineOrchestrator:
        return PipelineOrchestrator(
            store=PostgresPipelineStore(self.db_pool),
            job_queue=PipelineJobQueue.from_settings(self.redis, self.settings),
            processor=self.build_processor(),
            artifacts=PipelineArtifactStore(Path(self.settings.artifacts_dir)),
        )


_WORKER_POOL: ConnectionPool | None = None
_POOL_LOCK = threading.Lock()


def _get_worker_pool() -> ConnectionPool:
    """
    Lazily create a shared psycopg pool for worker jobs.

    Thread-safe: Uses lock to prevent race conditions during initialization.
    The pipeline worker runs jobs in-process, so one pool serves every job.
    """
    global _WORKER_POOL
    if _WORKER_POOL is None:
        with _POOL_LOCK:
            # Double-check after acquiring lock
            if _WORKER_POOL is None:
                db_url = get_settings().database_url
                if not db_url:
                    raise RuntimeError("DATABASE_URL not set; cannot create worker pool")
                _WORKER_POOL = ConnectionPool(conninfo=db_url, min_size=1, max_size=4)
                _WORKER_POOL.open()
                atexit.register(_close_worker_pool)
    return _WORKER_POOL


def _close_worker_pool() -> None:
    """Close worker pool on process exit for clean shutdown."""
    global _WORKER_POOL
    if _WORKER_POOL is not None:
        try:
            _WORKER_POOL.close()
        except Exception as exc:
            structlog.get_logger(__name__).warning("worker_pool_close_failed", error=str(exc))
        _WORKER_POOL = None


def run_pipeline_stage(pipeline_id: str, stage: str) -> dict[str, Any]:
    """
    RQ job entrypoint for one pipeline stage.

    Exceptions propagate to RQ after the pipeline has been marked FAILED so
    that the job's retry policy applies; retried jobs skip the stage.
    """
    settings = get_settings()
    redis = Redis.from_url(settings.redis_url)
    db_pool = _get_worker_pool()
    worker = PipelineWorker(settings, redis, db_pool)

    current_job = get_current_job()
    job_id = current_job.id if current_job else None
    stage_value = PipelineStage(stage).value

    with PipelineLogContext(pipeline_id, stage_value):
        worker.logger.info(
            "stage_job_started", pipeline_id=pipeline_id, stage=stage_value, job_id=job_id
        )
        outcome = worker.build_orchestrator().execute_stage(
            pipeline_id, stage_value, pre_stage=worker.check_memory
        )
        worker.logger.info(
            "stage_job_finished",
            pipeline_id=pipeline_id,
            stage=stage_value,
            job_id=job_id,
            outcome=outcome.value if outcome else "skipped",
        )

    return {
        "pipeline_id": pipeline_id,
        "stage": stage_value,
        "outcome": outcome.value if outcome else "skipped",
    }
