from __future__ import annotations

import time

import structlog
from redis import Redis
from rq import Queue, Retry
from rq.job import Job, NoSuchJobError  # type: ignore[attr-defined]

from config.settings import Settings
from libs.backtest.models import PipelineStage

STAGE_JOB_FUNC = "libs.backtest.worker.run_pipeline_stage"


def stage_job_id(pipeline_id: str, stage: PipelineStage | str, now_ms: int | None = None) -> str:
    """Unique RQ job id for one stage attempt of one pipeline."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"pipeline-{pipeline_id}-{PipelineStage(stage).value}-{now_ms}"


def backoff_intervals(attempts: int, base_seconds: int) -> list[int]:
    """Exponential delays for the ``attempts - 1`` RQ retries (base, 2*base, 4*base, ...)."""
    return [base_seconds * 2**i for i in range(max(attempts - 1, 0))]


class PipelineJobQueue:
    """Redis-based queue of pipeline stage jobs.

    A job carries only ``{pipeline_id, stage}``; the worker re-reads the
    pipeline row on pickup, so a stale job can never act on outdated state.
    """

    def __init__(
        self,
        redis_client: Redis,
        queue_name: str = "backtest_pipeline",
        attempts: int = 3,
        backoff_seconds: int = 5,
        job_timeout: int = 3600,
        result_ttl: int = 3600,
        failure_ttl: int = 86400 * 7,
    ):
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self.redis = redis_client
        self.queue = Queue(queue_name, connection=redis_client)
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.job_timeout = job_timeout
        self.result_ttl = result_ttl
        self.failure_ttl = failure_ttl
        self.logger = structlog.get_logger(__name__)

    @classmethod
    def from_settings(cls, redis_client: Redis, settings: Settings) -> PipelineJobQueue:
        return cls(
            redis_client,
            queue_name=settings.pipeline_queue_name,
            attempts=settings.stage_job_attempts,
            backoff_seconds=settings.stage_job_backoff_seconds,
            job_timeout=settings.stage_job_timeout_seconds,
            result_ttl=settings.stage_job_result_ttl_seconds,
            failure_ttl=settings.stage_job_failure_ttl_seconds,
        )

    def _safe_fetch_job(self, job_id: str) -> Job | None:
        try:
            return Job.fetch(job_id, connection=self.redis)
        except NoSuchJobError:
            return None

    def enqueue_stage(self, pipeline_id: str, stage: PipelineStage) -> Job:
        """
        Enqueue one stage job.

        Retries: RQ re-runs a job that raises, up to ``attempts - 1`` more
        times with exponential backoff. The worker skips stages of pipelines
        that are no longer RUNNING, so retries never revive a failed or
        cancelled pipeline.
        """
        job_id = stage_job_id(pipeline_id, stage)
        retry = None
        if self.attempts > 1:
            retry = Retry(
                max=self.attempts - 1,
                interval=backoff_intervals(self.attempts, self.backoff_seconds),
            )
        job = self.queue.enqueue(
            STAGE_JOB_FUNC,
            kwargs={"pipeline_id": pipeline_id, "stage": PipelineStage(stage).value},
            job_id=job_id,
            job_timeout=self.job_timeout,
            retry=retry,
            result_ttl=self.result_ttl,
            failure_ttl=self.failure_ttl,
        )
        self.logger.info(
            "stage_job_enqueued",
            pipeline_id=pipeline_id,
            stage=PipelineStage(stage).value,
            job_id=job_id,
        )
        return job

    def find_jobs(self, pipeline_id: str) -> list[Job]:
        """Stage jobs of a pipeline waiting in the queue or scheduled for retry."""
        prefix = f"pipeline-{pipeline_id}-"
        jobs: list[Job] = []
        job_ids = [
            *self.queue.get_job_ids(),
            *self.queue.scheduled_job_registry.get_job_ids(),
        ]
        for job_id in job_ids:
            if job_id.startswith(prefix):
                job = self._safe_fetch_job(job_id)
                if job is not None:
                    jobs.append(job)
        return jobs

    def remove_queued_jobs(self, pipeline_id: str) -> int:
        """
        Cancel queued stage jobs of a pipeline.

        A job already started is left alone: it finishes its stage and then
        observes the persisted CANCELLED status.
        """
        removed = 0
        for job in self.find_jobs(pipeline_id):
            if job.get_status() not in ("queued", "scheduled", "deferred"):
                continue
            job.delete()
            removed += 1
            self.logger.info("stage_job_removed", pipeline_id=pipeline_id, job_id=job.id)
        return removed
