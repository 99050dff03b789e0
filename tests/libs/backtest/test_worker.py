from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

import libs.backtest.worker as worker_module
from config.settings import Settings
from libs.backtest.models import PipelineStatus
from libs.backtest.orchestrator import PipelineOrchestrator
from libs.backtest.stages import StageOutcome, StageProcessor
from libs.common.logging import get_pipeline_id, get_stage


class _FakeProcess:
    def __init__(self, rss: int):
        self.rss = rss

    def memory_info(self):
        return SimpleNamespace(rss=self.rss)


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        _env_file=None,
        artifacts_dir=str(tmp_path / "artifacts"),
        local_storage_root=str(tmp_path / "market"),
        stage_job_memory_limit_bytes=1_000_000,
    )


def _worker(settings, monkeypatch, rss: int):
    monkeypatch.setattr(worker_module.psutil, "Process", lambda: _FakeProcess(rss))
    return worker_module.PipelineWorker(settings, MagicMock(), MagicMock())


def test_check_memory_under_limit(settings, monkeypatch):
    _worker(settings, monkeypatch, rss=999_999).check_memory()


def test_check_memory_over_limit(settings, monkeypatch):
    worker = _worker(settings, monkeypatch, rss=2_000_000)
    with pytest.raises(MemoryError, match="exceeded"):
        worker.check_memory()


def test_build_orchestrator_wires_components(settings, monkeypatch):
    monkeypatch.setattr("libs.backtest.job_queue.Queue", MagicMock())
    worker = _worker(settings, monkeypatch, rss=1)

    orchestrator = worker.build_orchestrator()

    assert isinstance(orchestrator, PipelineOrchestrator)
    assert isinstance(orchestrator.processor, StageProcessor)
    assert orchestrator.store.db_pool is worker.db_pool
    assert orchestrator.job_queue.attempts == settings.stage_job_attempts


@pytest.fixture()
def job_env(monkeypatch, settings):
    """Patch process-level collaborators of run_pipeline_stage."""
    monkeypatch.setattr(worker_module, "get_settings", lambda: settings)
    monkeypatch.setattr(worker_module.Redis, "from_url", MagicMock(return_value=MagicMock()))
    monkeypatch.setattr(worker_module, "_get_worker_pool", MagicMock(return_value=MagicMock()))
    monkeypatch.setattr(worker_module, "get_current_job", lambda: SimpleNamespace(id="job-7"))
    monkeypatch.setattr(worker_module.psutil, "Process", lambda: _FakeProcess(1))

    orchestrator = MagicMock()
    monkeypatch.setattr(
        worker_module.PipelineWorker, "build_orchestrator", lambda self: orchestrator
    )
    return orchestrator


def test_run_pipeline_stage_reports_outcome(job_env):
    seen = {}

    def execute(pipeline_id, stage, pre_stage=None):
        seen["context"] = (get_pipeline_id(), get_stage())
        return StageOutcome.ADVANCE

    job_env.execute_stage.side_effect = execute

    result = worker_module.run_pipeline_stage("pipe-1", "load")

    assert result == {"pipeline_id": "pipe-1", "stage": "load", "outcome": "advance"}
    job_env.execute_stage.assert_called_once()
    assert job_env.execute_stage.call_args.args == ("pipe-1", "load")
    assert seen["context"] == ("pipe-1", "load")
    assert get_pipeline_id() is None


def test_run_pipeline_stage_skipped(job_env):
    job_env.execute_stage.return_value = None

    result = worker_module.run_pipeline_stage("pipe-1", "score")

    assert result["outcome"] == "skipped"


def test_run_pipeline_stage_rejects_unknown_stage(job_env):
    with pytest.raises(ValueError):
        worker_module.run_pipeline_stage("pipe-1", "deploy")
    job_env.execute_stage.assert_not_called()


def test_run_pipeline_stage_propagates_errors(job_env):
    job_env.execute_stage.side_effect = RuntimeError("stage blew up")

    with pytest.raises(RuntimeError, match="stage blew up"):
        worker_module.run_pipeline_stage("pipe-1", "simulate")
    assert get_pipeline_id() is None


def test_memory_guard_passed_to_orchestrator(job_env):
    worker_module.run_pipeline_stage("pipe-1", "load")

    pre_stage = job_env.execute_stage.call_args.kwargs["pre_stage"]
    assert pre_stage.__self__.max_rss_bytes == 1_000_000
    assert pre_stage.__func__ is worker_module.PipelineWorker.check_memory


def test_memory_guard_fails_pipeline(job_env, monkeypatch, pipeline_store, make_config):
    processor = MagicMock()
    orchestrator = PipelineOrchestrator(pipeline_store, MagicMock(), processor)
    pipeline = orchestrator.create_pipeline(make_config())
    monkeypatch.setattr(
        worker_module.PipelineWorker, "build_orchestrator", lambda self: orchestrator
    )
    monkeypatch.setattr(worker_module.psutil, "Process", lambda: _FakeProcess(10**12))

    with pytest.raises(MemoryError):
        worker_module.run_pipeline_stage(pipeline.id, "load")

    failed = pipeline_store.get(pipeline.id)
    assert failed.status is PipelineStatus.FAILED
    assert "exceeded" in failed.failure_reason
    assert failed.completed_at is not None
    processor.process.assert_not_called()

    # A retry of the same job sees FAILED and skips
    assert worker_module.run_pipeline_stage(pipeline.id, "load")["outcome"] == "skipped"


def test_worker_pool_requires_database_url(monkeypatch):
    monkeypatch.setattr(worker_module, "_WORKER_POOL", None)
    monkeypatch.setattr(
        worker_module, "get_settings", lambda: Settings(_env_file=None, database_url="")
    )

    with pytest.raises(RuntimeError, match="DATABASE_URL not set"):
        worker_module._get_worker_pool()


def test_close_worker_pool_swallows_close_errors(monkeypatch):
    pool = MagicMock()
    pool.close.side_effect = RuntimeError("already closed")
    monkeypatch.setattr(worker_module, "_WORKER_POOL", pool)

    worker_module._close_worker_pool()

    assert worker_module._WORKER_POOL is None
