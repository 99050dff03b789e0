"""
Backtest pipeline orchestration.

The orchestrator is the only component that writes pipeline status. It
creates pipelines, starts them by enqueuing the first stage, and, when a
worker picks up a stage job, runs the stage and decides from the returned
:class:`~libs.backtest.stages.StageResult` whether to advance, fail or
complete.

State machine:
    PENDING -> RUNNING -> COMPLETED | FAILED | CANCELLED

Cancellation is cooperative. ``cancel_pipeline`` flips the persisted status
to CANCELLED and drops queued stage jobs; a stage already running finishes,
then the orchestrator re-reads the status and stops instead of advancing.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Protocol

from libs.backtest.artifacts import PipelineArtifactStore
from libs.backtest.exceptions import (
    InvalidPipelineStateError,
    PipelineNotFoundError,
    StageExecutionError,
)
from libs.backtest.job_queue import PipelineJobQueue
from libs.backtest.models import (
    PIPELINE_STAGE_ORDER,
    Pipeline,
    PipelineConfig,
    PipelineStage,
    PipelineStatus,
    next_stage,
)
from libs.backtest.pipeline_store import DEFAULT_LIST_LIMIT, PipelineStore
from libs.backtest.stages import StageOutcome, StageResult

logger = logging.getLogger(__name__)

CANCELLED_BY_USER = "Cancelled by user"


class StageRunner(Protocol):
    def process(self, pipeline: Pipeline, stage: PipelineStage) -> StageResult: ...


class PipelineOrchestrator:
    """Drives pipelines through their stages on the job queue."""

    def __init__(
        self,
        store: PipelineStore,
        job_queue: PipelineJobQueue,
        processor: StageRunner | None = None,
        artifacts: PipelineArtifactStore | None = None,
    ):
        self.store = store
        self.job_queue = job_queue
        self.processor = processor
        self.artifacts = artifacts

    # ------------------------------------------------------------------ admin
    def create_pipeline(self, config: PipelineConfig, *, start: bool = True) -> Pipeline:
        """Persist a new PENDING pipeline and, by default, start it."""
        pipeline = self.store.create(config)
        logger.info(
            "Created backtest pipeline",
            extra={"pipeline_id": pipeline.id, "simulator": config.simulator},
        )
        if start:
            return self.start_pipeline(pipeline.id)
        return pipeline

    def start_pipeline(self, pipeline_id: str) -> Pipeline:
        """
        PENDING -> RUNNING and enqueue the first stage.

        Raises:
            PipelineNotFoundError: Unknown pipeline
            InvalidPipelineStateError: Pipeline is not PENDING
        """
        pipeline = self.get_pipeline(pipeline_id)
        first_stage = PIPELINE_STAGE_ORDER[0]
        if pipeline.status is not PipelineStatus.PENDING or not self.store.mark_running(
            pipeline_id, first_stage
        ):
            current = self.get_pipeline(pipeline_id)
            raise InvalidPipelineStateError(pipeline_id, current.status.value, "start")

        # DB row is RUNNING before the job exists, so the worker never sees PENDING
        try:
            self.job_queue.enqueue_stage(pipeline_id, first_stage)
        except Exception as e:
            self.store.fail(pipeline_id, f"Failed to enqueue {first_stage.value} stage: {e}")
            raise
        logger.info("Started backtest pipeline", extra={"pipeline_id": pipeline_id})
        return self.get_pipeline(pipeline_id)

    def cancel_pipeline(self, pipeline_id: str, reason: str = CANCELLED_BY_USER) -> Pipeline:
        """
        Cancel a PENDING or RUNNING pipeline.

        Raises:
            PipelineNotFoundError: Unknown pipeline
            InvalidPipelineStateError: Pipeline already terminal
        """
        pipeline = self.get_pipeline(pipeline_id)
        if pipeline.is_terminal or not self.store.cancel(pipeline_id, reason):
            current = self.get_pipeline(pipeline_id)
            raise InvalidPipelineStateError(pipeline_id, current.status.value, "cancel")

        removed = self.job_queue.remove_queued_jobs(pipeline_id)
        self._remove_artifacts(pipeline_id)
        logger.info(
            "Cancelled backtest pipeline",
            extra={"pipeline_id": pipeline_id, "removed_jobs": removed, "reason": reason},
        )
        return self.get_pipeline(pipeline_id)

    def get_pipeline(self, pipeline_id: str) -> Pipeline:
        pipeline = self.store.get(pipeline_id)
        if pipeline is None:
            raise PipelineNotFoundError(pipeline_id)
        return pipeline

    def list_pipelines(
        self, status: PipelineStatus | None = None, limit: int = DEFAULT_LIST_LIMIT
    ) -> list[Pipeline]:
        return self.store.list_pipelines(status=status, limit=limit)

    def get_report(self, pipeline_id: str) -> dict[str, Any] | None:
        """Summary report of a COMPLETED pipeline (None before completion)."""
        self.get_pipeline(pipeline_id)
        return self.store.get_report(pipeline_id)

    # ---------------------------------------------------------------- stages
    def execute_stage(
        self,
        pipeline_id: str,
        stage: PipelineStage | str,
        pre_stage: Callable[[], None] | None = None,
    ) -> StageOutcome | None:
        """
        Run one stage job.

        Args:
            pipeline_id: Pipeline to advance
            stage: Stage the job was enqueued for
            pre_stage: Check run just before the stage (e.g. a memory guard).
                Its errors fail the pipeline like stage errors do.

        Returns:
            The stage outcome, or None when the job was dropped or skipped.

        Raises:
            Exception: Whatever the stage raised, after the pipeline is marked
                FAILED, so that the queue can apply its retry policy. Retried
                jobs then see a FAILED pipeline and skip.
        """
        stage = PipelineStage(stage)
        pipeline = self.store.get(pipeline_id)
        if pipeline is None:
            logger.warning(
                "Pipeline not found; dropping stage job",
                extra={"pipeline_id": pipeline_id, "stage": stage.value},
            )
            return None

        if pipeline.status is not PipelineStatus.RUNNING:
            logger.info(
                "Skipping %s stage: pipeline is %s",
                stage.value,
                pipeline.status.value,
                extra={"pipeline_id": pipeline_id, "stage": stage.value},
            )
            return None

        if pipeline.current_stage is not stage:
            logger.warning(
                "Skipping %s stage: pipeline is at %s",
                stage.value,
                pipeline.current_stage.value,
                extra={"pipeline_id": pipeline_id, "stage": stage.value},
            )
            return None

        if self.processor is None:
            raise RuntimeError("PipelineOrchestrator has no stage processor configured")

        try:
            if pre_stage is not None:
                pre_stage()
            result = self.processor.process(pipeline, stage)
        except Exception as e:
            if isinstance(e, StageExecutionError):
                reason = str(e)
            else:
                reason = f"Stage {stage.value} failed: {e}"
            self.store.fail(pipeline_id, reason)
            logger.error(
                "Stage %s failed: %s",
                stage.value,
                e,
                extra={"pipeline_id": pipeline_id, "stage": stage.value},
                exc_info=True,
            )
            raise

        self.store.save_stage_result(pipeline_id, stage, result.data)

        # Status may have changed while the stage ran
        current = self.store.get(pipeline_id)
        if current is None or current.status is not PipelineStatus.RUNNING:
            status = current.status.value if current else "missing"
            logger.info(
                "Pipeline no longer running after %s stage (%s); not advancing",
                stage.value,
                status,
                extra={"pipeline_id": pipeline_id, "stage": stage.value},
            )
            if current is not None and current.status is PipelineStatus.CANCELLED:
                self._remove_artifacts(pipeline_id)
            return None

        return self._apply_outcome(pipeline_id, stage, result)

    def _apply_outcome(
        self, pipeline_id: str, stage: PipelineStage, result: StageResult
    ) -> StageOutcome:
        if result.outcome is StageOutcome.FAIL:
            reason = result.failure_reason or f"Stage {stage.value} failed"
            self.store.fail(pipeline_id, reason)
            logger.warning(
                "Pipeline failed at %s stage: %s",
                stage.value,
                reason,
                extra={"pipeline_id": pipeline_id, "stage": stage.value},
            )
            return result.outcome

        following = next_stage(stage)
        if result.outcome is StageOutcome.COMPLETE or following is None:
            if result.outcome is StageOutcome.COMPLETE:
                self.store.write_report(pipeline_id, result.data)
            self.store.complete(pipeline_id)
            logger.info(
                "Pipeline completed",
                extra={"pipeline_id": pipeline_id, "stage": stage.value},
            )
            return StageOutcome.COMPLETE

        if not self.store.advance_stage(pipeline_id, following):
            logger.info(
                "Pipeline stopped before %s stage",
                following.value,
                extra={"pipeline_id": pipeline_id, "stage": stage.value},
            )
            return result.outcome

        try:
            self.job_queue.enqueue_stage(pipeline_id, following)
        except Exception as e:
            self.store.fail(pipeline_id, f"Failed to enqueue {following.value} stage: {e}")
            raise
        return result.outcome

    def _remove_artifacts(self, pipeline_id: str) -> None:
        if self.artifacts is not None:
            self.artifacts.remove(pipeline_id)
