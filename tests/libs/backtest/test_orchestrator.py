"""
Tests for PipelineOrchestrator.

Tests cover:
- create/start/cancel transitions and their guards
- execute_stage skip rules (missing, not RUNNING, stage mismatch)
- Failure handling marks FAILED and re-raises for the queue retry policy
- Cooperative cancellation while a stage is running
- Advancement, threshold failure and completion with report
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from libs.backtest.exceptions import (
    InvalidPipelineStateError,
    PipelineNotFoundError,
    StageExecutionError,
)
from libs.backtest.models import PipelineStage, PipelineStatus
from libs.backtest.orchestrator import CANCELLED_BY_USER, PipelineOrchestrator
from libs.backtest.stages import StageOutcome, StageResult


@pytest.fixture()
def job_queue():
    queue = MagicMock()
    queue.remove_queued_jobs.return_value = 2
    return queue


@pytest.fixture()
def processor():
    runner = MagicMock()
    runner.process.return_value = StageResult(StageOutcome.ADVANCE, {"ok": True})
    return runner


@pytest.fixture()
def orchestrator(pipeline_store, job_queue, processor):
    return PipelineOrchestrator(pipeline_store, job_queue, processor, artifacts=MagicMock())


@pytest.fixture()
def running(orchestrator, make_config):
    """A started pipeline sitting at the load stage."""
    return orchestrator.create_pipeline(make_config())


def _enqueued(job_queue):
    return [call.args for call in job_queue.enqueue_stage.call_args_list]


class TestLifecycle:
    def test_create_starts_and_enqueues_first_stage(self, orchestrator, job_queue, running):
        assert running.status is PipelineStatus.RUNNING
        assert running.current_stage is PipelineStage.LOAD
        assert running.started_at is not None
        assert _enqueued(job_queue) == [(running.id, PipelineStage.LOAD)]

    def test_create_without_start(self, orchestrator, job_queue, make_config):
        pipeline = orchestrator.create_pipeline(make_config(), start=False)

        assert pipeline.status is PipelineStatus.PENDING
        job_queue.enqueue_stage.assert_not_called()

    def test_start_twice_rejected(self, orchestrator, running):
        with pytest.raises(InvalidPipelineStateError) as exc_info:
            orchestrator.start_pipeline(running.id)
        assert exc_info.value.status == "running"
        assert exc_info.value.action == "start"

    def test_start_enqueue_failure_fails_pipeline(self, orchestrator, job_queue, make_config):
        pipeline = orchestrator.create_pipeline(make_config(), start=False)
        job_queue.enqueue_stage.side_effect = ConnectionError("redis down")

        with pytest.raises(ConnectionError):
            orchestrator.start_pipeline(pipeline.id)

        failed = orchestrator.get_pipeline(pipeline.id)
        assert failed.status is PipelineStatus.FAILED
        assert failed.failure_reason == "Failed to enqueue load stage: redis down"

    def test_unknown_pipeline(self, orchestrator):
        with pytest.raises(PipelineNotFoundError):
            orchestrator.get_pipeline("missing")
        with pytest.raises(PipelineNotFoundError):
            orchestrator.cancel_pipeline("missing")
        with pytest.raises(PipelineNotFoundError):
            orchestrator.get_report("missing")

    def test_cancel_running_pipeline(self, orchestrator, job_queue, running):
        cancelled = orchestrator.cancel_pipeline(running.id)

        assert cancelled.status is PipelineStatus.CANCELLED
        assert cancelled.failure_reason == CANCELLED_BY_USER
        assert cancelled.completed_at is not None
        job_queue.remove_queued_jobs.assert_called_once_with(running.id)
        orchestrator.artifacts.remove.assert_called_once_with(running.id)

    def test_cancel_pending_pipeline(self, orchestrator, make_config):
        pipeline = orchestrator.create_pipeline(make_config(), start=False)
        assert orchestrator.cancel_pipeline(pipeline.id, "superseded").failure_reason == (
            "superseded"
        )

    @pytest.mark.parametrize("terminal", ["fail", "cancel"])
    def test_cancel_terminal_pipeline_rejected(
        self, orchestrator, pipeline_store, running, terminal
    ):
        getattr(pipeline_store, terminal)(running.id, "done")

        with pytest.raises(InvalidPipelineStateError) as exc_info:
            orchestrator.cancel_pipeline(running.id)
        assert exc_info.value.action == "cancel"

    def test_list_pipelines_by_status(self, orchestrator, make_config, running):
        orchestrator.create_pipeline(make_config(), start=False)

        assert [p.id for p in orchestrator.list_pipelines(PipelineStatus.RUNNING)] == [running.id]
        assert len(orchestrator.list_pipelines()) == 2
        assert len(orchestrator.list_pipelines(limit=1)) == 1


class TestExecuteStage:
    def test_advances_and_enqueues_next_stage(
        self, orchestrator, pipeline_store, job_queue, processor, running
    ):
        outcome = orchestrator.execute_stage(running.id, "load")

        assert outcome is StageOutcome.ADVANCE
        pipeline = pipeline_store.get(running.id)
        assert pipeline.current_stage is PipelineStage.RESOLVE
        assert pipeline.stage_results == {"load": {"ok": True}}
        assert _enqueued(job_queue)[-1] == (running.id, PipelineStage.RESOLVE)
        processor.process.assert_called_once()

    def test_missing_pipeline_dropped(self, orchestrator, processor):
        assert orchestrator.execute_stage("missing", PipelineStage.LOAD) is None
        processor.process.assert_not_called()

    def test_pending_pipeline_skipped(self, orchestrator, processor, make_config):
        pipeline = orchestrator.create_pipeline(make_config(), start=False)

        assert orchestrator.execute_stage(pipeline.id, PipelineStage.LOAD) is None
        processor.process.assert_not_called()

    def test_cancelled_pipeline_skipped_without_mutation(
        self, orchestrator, pipeline_store, processor, running
    ):
        orchestrator.cancel_pipeline(running.id)
        before = pipeline_store.get(running.id)

        assert orchestrator.execute_stage(running.id, PipelineStage.LOAD) is None

        after = pipeline_store.get(running.id)
        assert after.current_stage is before.current_stage
        assert after.updated_at == before.updated_at
        processor.process.assert_not_called()

    def test_stale_stage_job_skipped(self, orchestrator, processor, running):
        assert orchestrator.execute_stage(running.id, PipelineStage.SCORE) is None
        processor.process.assert_not_called()

    def test_no_processor_configured(self, pipeline_store, job_queue, make_config):
        orchestrator = PipelineOrchestrator(pipeline_store, job_queue)
        pipeline = orchestrator.create_pipeline(make_config())

        with pytest.raises(RuntimeError, match="no stage processor"):
            orchestrator.execute_stage(pipeline.id, PipelineStage.LOAD)

    def test_stage_error_fails_and_reraises(
        self, orchestrator, pipeline_store, job_queue, processor, running
    ):
        processor.process.side_effect = ValueError("bad candles")

        with pytest.raises(ValueError, match="bad candles"):
            orchestrator.execute_stage(running.id, PipelineStage.LOAD)

        failed = pipeline_store.get(running.id)
        assert failed.status is PipelineStatus.FAILED
        assert failed.failure_reason == "Stage load failed: bad candles"
        assert len(_enqueued(job_queue)) == 1

    def test_stage_execution_error_message_used_verbatim(
        self, orchestrator, pipeline_store, processor, running
    ):
        processor.process.side_effect = StageExecutionError("load", "no market data reader")

        with pytest.raises(StageExecutionError):
            orchestrator.execute_stage(running.id, PipelineStage.LOAD)

        assert pipeline_store.get(running.id).failure_reason == (
            "Stage load failed: no market data reader"
        )

    def test_pre_stage_error_fails_pipeline(self, orchestrator, pipeline_store, processor, running):
        guard = MagicMock(side_effect=MemoryError("Stage job exceeded 2.0GB limit"))

        with pytest.raises(MemoryError):
            orchestrator.execute_stage(running.id, PipelineStage.LOAD, pre_stage=guard)

        guard.assert_called_once_with()
        processor.process.assert_not_called()
        failed = pipeline_store.get(running.id)
        assert failed.status is PipelineStatus.FAILED
        assert failed.failure_reason == "Stage load failed: Stage job exceeded 2.0GB limit"

    def test_pre_stage_not_run_for_skipped_job(self, orchestrator, running):
        guard = MagicMock()

        assert orchestrator.execute_stage(running.id, PipelineStage.SCORE, pre_stage=guard) is None
        guard.assert_not_called()

    def test_retry_after_failure_is_skipped(self, orchestrator, processor, running):
        processor.process.side_effect = ValueError("boom")
        with pytest.raises(ValueError):
            orchestrator.execute_stage(running.id, PipelineStage.LOAD)

        assert orchestrator.execute_stage(running.id, PipelineStage.LOAD) is None
        assert processor.process.call_count == 1

    def test_cancel_during_stage_stops_advancement(
        self, orchestrator, pipeline_store, job_queue, processor, running
    ):
        def cancel_mid_stage(pipeline, stage):
            orchestrator.cancel_pipeline(pipeline.id)
            return StageResult(StageOutcome.ADVANCE, {"record_count": 5})

        processor.process.side_effect = cancel_mid_stage

        assert orchestrator.execute_stage(running.id, PipelineStage.LOAD) is None

        pipeline = pipeline_store.get(running.id)
        assert pipeline.status is PipelineStatus.CANCELLED
        assert pipeline.current_stage is PipelineStage.LOAD
        assert len(_enqueued(job_queue)) == 1
        # Removed once by cancel_pipeline and again after the stage returned
        assert orchestrator.artifacts.remove.call_count == 2

    def test_threshold_failure_fails_without_raising(
        self, orchestrator, pipeline_store, job_queue, processor, running
    ):
        pipeline_store.advance_stage(running.id, PipelineStage.SCORE)
        processor.process.return_value = StageResult(
            StageOutcome.FAIL,
            {"threshold_failures": ["x"]},
            failure_reason="Progression thresholds not met: x",
        )

        outcome = orchestrator.execute_stage(running.id, PipelineStage.SCORE)

        assert outcome is StageOutcome.FAIL
        pipeline = pipeline_store.get(running.id)
        assert pipeline.status is PipelineStatus.FAILED
        assert pipeline.failure_reason == "Progression thresholds not met: x"
        assert pipeline.stage_results["score"] == {"threshold_failures": ["x"]}
        assert len(_enqueued(job_queue)) == 1

    def test_report_stage_completes_and_stores_report(
        self, orchestrator, pipeline_store, processor, running
    ):
        pipeline_store.advance_stage(running.id, PipelineStage.REPORT)
        report = {"recommendation": "NEEDS_REVIEW", "confidence_score": 55}
        processor.process.return_value = StageResult(StageOutcome.COMPLETE, report)

        outcome = orchestrator.execute_stage(running.id, PipelineStage.REPORT)

        assert outcome is StageOutcome.COMPLETE
        assert pipeline_store.get(running.id).status is PipelineStatus.COMPLETED
        assert orchestrator.get_report(running.id) == report

    def test_advance_on_last_stage_completes_without_report(
        self, orchestrator, pipeline_store, processor, running
    ):
        pipeline_store.advance_stage(running.id, PipelineStage.REPORT)

        outcome = orchestrator.execute_stage(running.id, PipelineStage.REPORT)

        assert outcome is StageOutcome.COMPLETE
        assert pipeline_store.report_writes == 0
        assert pipeline_store.get(running.id).status is PipelineStatus.COMPLETED

    def test_enqueue_failure_after_stage_fails_pipeline(
        self, orchestrator, pipeline_store, job_queue, running
    ):
        job_queue.enqueue_stage.side_effect = ConnectionError("redis down")

        with pytest.raises(ConnectionError):
            orchestrator.execute_stage(running.id, PipelineStage.LOAD)

        pipeline = pipeline_store.get(running.id)
        assert pipeline.status is PipelineStatus.FAILED
        assert pipeline.failure_reason == "Failed to enqueue resolve stage: redis down"

    def test_full_run_reaches_completed(
        self, orchestrator, pipeline_store, job_queue, processor, running
    ):
        def run(pipeline, stage):
            if stage is PipelineStage.REPORT:
                return StageResult(StageOutcome.COMPLETE, {"recommendation": "DEPLOY"})
            return StageResult(StageOutcome.ADVANCE, {"stage": stage.value})

        processor.process.side_effect = run

        outcomes = []
        while pipeline_store.get(running.id).status is PipelineStatus.RUNNING:
            _, stage = _enqueued(job_queue)[-1]
            outcomes.append(orchestrator.execute_stage(running.id, stage))

        assert outcomes[-1] is StageOutcome.COMPLETE
        assert [stage.value for _, stage in _enqueued(job_queue)] == [
            "load",
            "resolve",
            "simulate",
            "score",
            "report",
        ]
        assert set(pipeline_store.get(running.id).stage_results) == {
            "load",
            "resolve",
            "simulate",
            "score",
            "report",
        }
