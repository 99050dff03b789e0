"""Backtest pipeline models.

This module provides:
- MarketDataSet / Candle / ParsedMarketData: market data reader inputs and outputs
- Coin / ResolvedInstrumentSet: instrument resolution results
- PipelineStatus / PipelineStage: pipeline state machine vocabulary
- PipelineConfig: serialisable request carried by every pipeline row
- Pipeline / row_to_pipeline: persisted pipeline record and its dict_row mapper

Status and stage values are stored lowercase in ``backtest_pipelines``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from libs.backtest.metrics import TimeframeType

DEFAULT_MAX_INSTRUMENTS = 50


@dataclass(frozen=True)
class MarketDataSet:
    """Historical market data file plus the instruments requested from it.

    ``max_instruments`` is never None: rows loaded with a NULL column fall back
    to the default of 50.
    """

    id: str
    storage_location: str | None = None
    instrument_universe: tuple[str, ...] = ()
    max_instruments: int = DEFAULT_MAX_INSTRUMENTS

    def __post_init__(self) -> None:
        if self.max_instruments is None:
            object.__setattr__(self, "max_instruments", DEFAULT_MAX_INSTRUMENTS)
        if not isinstance(self.instrument_universe, tuple):
            object.__setattr__(self, "instrument_universe", tuple(self.instrument_universe or ()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "storage_location": self.storage_location,
            "instrument_universe": list(self.instrument_universe),
            "max_instruments": self.max_instruments,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MarketDataSet:
        return cls(
            id=str(data["id"]),
            storage_location=data.get("storage_location"),
            instrument_universe=tuple(data.get("instrument_universe") or ()),
            max_instruments=data.get("max_instruments") or DEFAULT_MAX_INSTRUMENTS,
        )


@dataclass(frozen=True)
class Candle:
    """One OHLCV observation. ``timestamp`` is always UTC-aware."""

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    coin_id: str


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime


@dataclass
class ParsedMarketData:
    """Ordered candle sequence produced by a market data load."""

    data: list[Candle]
    record_count: int
    date_range: DateRange
    source: str


@dataclass(frozen=True)
class Coin:
    """Canonical asset identity from the coin catalog."""

    id: str
    symbol: str
    name: str = ""

    @property
    def is_virtual(self) -> bool:
        """Bookkeeping placeholders are never tradable."""
        return "virtual" in self.id.lower() or self.id.startswith("USD-")

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "symbol": self.symbol, "name": self.name}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Coin:
        return cls(id=str(data["id"]), symbol=str(data["symbol"]), name=str(data.get("name") or ""))


@dataclass
class ResolvedInstrumentSet:
    """Resolved coins in requested order plus soft-failure markers."""

    coins: list[Coin] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class PipelineStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {PipelineStatus.COMPLETED, PipelineStatus.FAILED, PipelineStatus.CANCELLED}
)


class PipelineStage(str, Enum):
    LOAD = "load"
    RESOLVE = "resolve"
    SIMULATE = "simulate"
    SCORE = "score"
    REPORT = "report"


PIPELINE_STAGE_ORDER: tuple[PipelineStage, ...] = (
    PipelineStage.LOAD,
    PipelineStage.RESOLVE,
    PipelineStage.SIMULATE,
    PipelineStage.SCORE,
    PipelineStage.REPORT,
)


def next_stage(stage: PipelineStage) -> PipelineStage | None:
    """Stage following ``stage``, or None after the last one."""
    index = PIPELINE_STAGE_ORDER.index(stage)
    if index + 1 >= len(PIPELINE_STAGE_ORDER):
        return None
    return PIPELINE_STAGE_ORDER[index + 1]


class DataSource(str, Enum):
    STORAGE = "storage"
    EXCHANGE = "exchange"


class DeploymentRecommendation(str, Enum):
    DEPLOY = "DEPLOY"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    DO_NOT_DEPLOY = "DO_NOT_DEPLOY"


@dataclass(frozen=True)
class ProgressionThresholds:
    """Minimum bar a scored backtest must clear before the report stage.

    A threshold left as None is not enforced.
    """

    min_sharpe_ratio: float | None = 0.3
    max_drawdown: float | None = 0.45
    min_win_rate: float | None = None
    min_total_return: float | None = 0.0

    def to_dict(self) -> dict[str, float | None]:
        return {
            "min_sharpe_ratio": self.min_sharpe_ratio,
            "max_drawdown": self.max_drawdown,
            "min_win_rate": self.min_win_rate,
            "min_total_return": self.min_total_return,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ProgressionThresholds:
        if not data:
            return cls()
        defaults = cls()
        return cls(
            min_sharpe_ratio=data.get("min_sharpe_ratio", defaults.min_sharpe_ratio),
            max_drawdown=data.get("max_drawdown", defaults.max_drawdown),
            min_win_rate=data.get("min_win_rate", defaults.min_win_rate),
            min_total_return=data.get("min_total_return", defaults.min_total_return),
        )


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass
class PipelineConfig:
    """Backtest request persisted with the pipeline and read by every stage."""

    dataset: MarketDataSet
    simulator: str
    initial_capital: float
    start_date: datetime | None = None
    end_date: datetime | None = None
    strategy_params: dict[str, Any] = field(default_factory=dict)
    data_source: DataSource = DataSource.STORAGE
    timeframe: str = "daily"
    risk_free_rate: float = 0.02
    use_crypto_calendar: bool = True
    quote_currency: str | None = None
    require_confirmation: bool = False
    thresholds: ProgressionThresholds = field(default_factory=ProgressionThresholds)

    def __post_init__(self) -> None:
        if self.initial_capital <= 0:
            raise ValueError("initial_capital must be positive")
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        try:
            self.timeframe = TimeframeType(self.timeframe).value
        except ValueError:
            allowed = ", ".join(t.value for t in TimeframeType)
            raise ValueError(
                f"timeframe must be one of {allowed}, got {self.timeframe!r}"
            ) from None

    def to_dict(self) -> dict[str, Any]:
        return {
            "dataset": self.dataset.to_dict(),
            "simulator": self.simulator,
            "initial_capital": self.initial_capital,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "strategy_params": self.strategy_params,
            "data_source": self.data_source.value,
            "timeframe": self.timeframe,
            "risk_free_rate": self.risk_free_rate,
            "use_crypto_calendar": self.use_crypto_calendar,
            "quote_currency": self.quote_currency,
            "require_confirmation": self.require_confirmation,
            "thresholds": self.thresholds.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineConfig:
        return cls(
            dataset=MarketDataSet.from_dict(data["dataset"]),
            simulator=data["simulator"],
            initial_capital=float(data["initial_capital"]),
            start_date=_parse_datetime(data.get("start_date")),
            end_date=_parse_datetime(data.get("end_date")),
            strategy_params=data.get("strategy_params") or {},
            data_source=DataSource(data.get("data_source", DataSource.STORAGE.value)),
            timeframe=data.get("timeframe", "daily"),
            risk_free_rate=float(data.get("risk_free_rate", 0.02)),
            use_crypto_calendar=bool(data.get("use_crypto_calendar", True)),
            quote_currency=data.get("quote_currency"),
            require_confirmation=bool(data.get("require_confirmation", False)),
            thresholds=ProgressionThresholds.from_dict(data.get("thresholds")),
        )


@dataclass
class Pipeline:
    """Pipeline record from Postgres (``backtest_pipelines``)."""

    id: str
    status: PipelineStatus
    current_stage: PipelineStage
    config: PipelineConfig
    created_at: datetime
    updated_at: datetime
    stage_results: dict[str, Any] = field(default_factory=dict)
    failure_reason: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def row_to_pipeline(row: dict[str, Any]) -> Pipeline:
    """Convert psycopg dict_row to Pipeline dataclass.

    Raises:
        KeyError: If required fields are missing
        ValueError: If status/stage values are outside the known vocabulary
    """
    config_raw = row["config"]
    if config_raw is None:
        raise ValueError(f"Pipeline {row['id']} has no config")
    if isinstance(config_raw, str):
        config_raw = json.loads(config_raw)

    stage_results = row.get("stage_results")
    if isinstance(stage_results, str):
        stage_results = json.loads(stage_results)
    if not isinstance(stage_results, dict):
        stage_results = {}

    created_at = _parse_datetime(row["created_at"])
    updated_at = _parse_datetime(row.get("updated_at")) or created_at
    assert created_at is not None and updated_at is not None

    return Pipeline(
        id=str(row["id"]),
        status=PipelineStatus(row["status"]),
        current_stage=PipelineStage(row["current_stage"]),
        config=PipelineConfig.from_dict(config_raw),
        created_at=created_at,
        updated_at=updated_at,
        stage_results=stage_results,
        failure_reason=row.get("failure_reason"),
        started_at=_parse_datetime(row.get("started_at")),
        completed_at=_parse_datetime(row.get("completed_at")),
    )
