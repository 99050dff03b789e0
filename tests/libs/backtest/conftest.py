"""Shared fakes for backtest tests: psycopg pool stand-ins, catalog, storage, store."""

from __future__ import annotations

import uuid
from collections.abc import Iterator, Sequence
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

import pytest

from libs.backtest.models import (
    PIPELINE_STAGE_ORDER,
    TERMINAL_STATUSES,
    Coin,
    MarketDataSet,
    Pipeline,
    PipelineConfig,
    PipelineStage,
    PipelineStatus,
)
from libs.backtest.storage import FileStats


class DummyCursor:
    def __init__(self, rows=None, rowcount=None):
        self.rows = rows or []
        self.executed = []
        self.rowcount = len(self.rows) if rowcount is None else rowcount
        self.row_factory = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return self.rows


class DummyConnection:
    def __init__(self, cursor: DummyCursor):
        self.cursor_obj = cursor
        self.commits = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self, *args, **kwargs):
        self.cursor_obj.row_factory = kwargs.get("row_factory")
        return self.cursor_obj

    def commit(self):
        self.commits += 1


class DummyPool:
    def __init__(self, cursor: DummyCursor):
        self.conn = DummyConnection(cursor)

    def connection(self):
        return self.conn


class FakeCoinCatalog:
    """Catalog over a fixed coin list that records every lookup."""

    def __init__(self, coins: Sequence[Coin]):
        self.coins = list(coins)
        self.single_calls: list[str] = []
        self.batch_calls: list[list[str]] = []

    def get_coin_by_symbol(self, symbol: str) -> Coin | None:
        self.single_calls.append(symbol)
        for coin in self.coins:
            if coin.symbol.upper() == symbol.upper():
                return coin
        return None

    def get_multiple_coins_by_symbol(self, symbols: Sequence[str]) -> list[Coin]:
        self.batch_calls.append(list(symbols))
        wanted = {symbol.upper() for symbol in symbols}
        # Reverse to prove callers do not rely on catalog order
        return [coin for coin in reversed(self.coins) if coin.symbol.upper() in wanted]


class InMemoryObjectStorage:
    def __init__(self, objects: dict[str, bytes] | None = None, chunk_size: int = 7):
        self.objects = dict(objects or {})
        self.chunk_size = chunk_size
        self.stat_calls: list[str] = []
        self.stream_calls: list[str] = []
        self.size_override: dict[str, int] = {}

    def get_file_stats(self, path: str) -> FileStats | None:
        self.stat_calls.append(path)
        if path not in self.objects:
            return None
        return FileStats(size=self.size_override.get(path, len(self.objects[path])))

    def get_file_stream(self, path: str) -> Iterator[bytes]:
        self.stream_calls.append(path)
        data = self.objects[path]
        for start in range(0, len(data), self.chunk_size):
            yield data[start : start + self.chunk_size]


class InMemoryPipelineStore:
    """PipelineStore with the same guarded transitions as the Postgres store."""

    def __init__(self):
        self.pipelines: dict[str, Pipeline] = {}
        self.reports: dict[str, dict[str, Any]] = {}
        self.report_writes = 0

    def _touch(self, pipeline_id: str, **changes: Any) -> None:
        pipeline = self.pipelines[pipeline_id]
        self.pipelines[pipeline_id] = replace(pipeline, updated_at=datetime.now(UTC), **changes)

    def create(self, config: PipelineConfig) -> Pipeline:
        now = datetime.now(UTC)
        pipeline = Pipeline(
            id=str(uuid.uuid4()),
            status=PipelineStatus.PENDING,
            current_stage=PIPELINE_STAGE_ORDER[0],
            config=config,
            created_at=now,
            updated_at=now,
        )
        self.pipelines[pipeline.id] = pipeline
        return pipeline

    def get(self, pipeline_id: str) -> Pipeline | None:
        pipeline = self.pipelines.get(pipeline_id)
        if pipeline is None:
            return None
        return replace(pipeline, stage_results=dict(pipeline.stage_results))

    def list_pipelines(self, status=None, limit=50) -> list[Pipeline]:
        rows = [p for p in self.pipelines.values() if status is None or p.status == status]
        rows.sort(key=lambda p: p.created_at, reverse=True)
        return rows[:limit]

    def mark_running(self, pipeline_id: str, stage: PipelineStage) -> bool:
        if self.pipelines[pipeline_id].status is not PipelineStatus.PENDING:
            return False
        self._touch(
            pipeline_id,
            status=PipelineStatus.RUNNING,
            current_stage=stage,
            started_at=datetime.now(UTC),
        )
        return True

    def advance_stage(self, pipeline_id: str, stage: PipelineStage) -> bool:
        if self.pipelines[pipeline_id].status is not PipelineStatus.RUNNING:
            return False
        self._touch(pipeline_id, current_stage=stage)
        return True

    def save_stage_result(self, pipeline_id: str, stage: PipelineStage, result: dict) -> None:
        results = dict(self.pipelines[pipeline_id].stage_results)
        results[stage.value] = result
        self._touch(pipeline_id, stage_results=results)

    def fail(self, pipeline_id: str, reason: str) -> bool:
        if self.pipelines[pipeline_id].status in TERMINAL_STATUSES:
            return False
        self._touch(
            pipeline_id,
            status=PipelineStatus.FAILED,
            failure_reason=reason,
            completed_at=datetime.now(UTC),
        )
        return True

    def cancel(self, pipeline_id: str, reason: str) -> bool:
        if self.pipelines[pipeline_id].status not in (
            PipelineStatus.PENDING,
            PipelineStatus.RUNNING,
        ):
            return False
        self._touch(
            pipeline_id,
            status=PipelineStatus.CANCELLED,
            failure_reason=reason,
            completed_at=datetime.now(UTC),
        )
        return True

    def complete(self, pipeline_id: str) -> bool:
        if self.pipelines[pipeline_id].status is not PipelineStatus.RUNNING:
            return False
        self._touch(pipeline_id, status=PipelineStatus.COMPLETED, completed_at=datetime.now(UTC))
        return True

    def write_report(self, pipeline_id: str, report: dict) -> bool:
        self.report_writes += 1
        if pipeline_id in self.reports:
            return False
        self.reports[pipeline_id] = report
        return True

    def get_report(self, pipeline_id: str) -> dict | None:
        return self.reports.get(pipeline_id)


CATALOG_COINS = [
    Coin(id="bitcoin", symbol="BTC", name="Bitcoin"),
    Coin(id="ethereum", symbol="ETH", name="Ethereum"),
    Coin(id="solana", symbol="SOL", name="Solana"),
    Coin(id="tether", symbol="USDT", name="Tether"),
    Coin(id="usd-coin", symbol="USDC", name="USD Coin"),
]


@pytest.fixture()
def coin_catalog() -> FakeCoinCatalog:
    return FakeCoinCatalog(CATALOG_COINS)


@pytest.fixture()
def pipeline_store() -> InMemoryPipelineStore:
    return InMemoryPipelineStore()


@pytest.fixture()
def make_config():
    def _make(**overrides: Any) -> PipelineConfig:
        defaults: dict[str, Any] = {
            "dataset": MarketDataSet(
                id="ds-1",
                storage_location="s3://market-data/datasets/btc.csv",
                instrument_universe=("BTC", "ETHUSDT"),
            ),
            "simulator": "fake",
            "initial_capital": 10_000.0,
        }
        defaults.update(overrides)
        return PipelineConfig(**defaults)

    return _make


@pytest.fixture()
def dummy_pool():
    def _make(rows=None, rowcount=None) -> DummyPool:
        return DummyPool(DummyCursor(rows=rows, rowcount=rowcount))

    return _make


@pytest.fixture()
def fake_store_cls():
    return InMemoryPipelineStore


@pytest.fixture()
def fake_storage_cls():
    return InMemoryObjectStorage


@pytest.fixture()
def fake_catalog_cls():
    return FakeCoinCatalog
