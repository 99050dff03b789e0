"""
Stage handlers for backtest pipelines.

A pipeline walks a fixed list of stages (load -> resolve -> simulate -> score
-> report). Each stage is one queue job. Handlers here do the work of a single
stage and return a :class:`StageResult` that the orchestrator inspects before
deciding what happens next; handlers never write pipeline status.

Stage inputs and outputs:
    LOAD      dataset or exchange candles         -> candles.parquet
    RESOLVE   instrument universe                 -> coins + quote currency
    SIMULATE  candles, coins, registered simulator -> portfolio/trades parquet
    SCORE     portfolio + trades                  -> metrics, threshold check
    REPORT    metrics                             -> summary report

Simulation itself is external: strategies plug in through
:func:`register_simulator`.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from libs.backtest.artifacts import PipelineArtifactStore
from libs.backtest.coin_resolver import CoinResolver, extract_base_symbol
from libs.backtest.exceptions import SimulatorNotFoundError, StageExecutionError
from libs.backtest.market_data_reader import MarketDataReader
from libs.backtest.metrics import (
    MetricsConfig,
    MetricsInput,
    MetricsResult,
    TimeframeType,
    TradeMetrics,
    calculate_metrics,
    metrics_result_from_dict,
    metrics_result_to_dict,
)
from libs.backtest.models import (
    Candle,
    Coin,
    DataSource,
    DateRange,
    DeploymentRecommendation,
    ParsedMarketData,
    Pipeline,
    PipelineStage,
    ProgressionThresholds,
)
from libs.backtest.quote_currency import DEFAULT_QUOTE_CURRENCY, QuoteCurrencyResolver

if TYPE_CHECKING:
    from libs.data_providers.exchange_fetcher import ExchangeDataFetcher

logger = logging.getLogger(__name__)

LOW_TRADE_COUNT = "LOW_TRADE_COUNT"
HIGH_DRAWDOWN = "HIGH_DRAWDOWN"
POOR_WIN_RATE = "POOR_WIN_RATE"
NEGATIVE_RETURN = "NEGATIVE_RETURN"

MIN_TRADES_FOR_CONFIDENCE = 10
DEFAULT_CANDLE_LIMIT = 500

EXCHANGE_TIMEFRAMES: dict[TimeframeType, str] = {
    TimeframeType.HOURLY: "1h",
    TimeframeType.DAILY: "1d",
    TimeframeType.WEEKLY: "1w",
    TimeframeType.MONTHLY: "1M",
}


class StageOutcome(str, Enum):
    """What the orchestrator should do after a stage returns.

    ADVANCE: persist the result and enqueue the next stage
    FAIL: persist the result and fail the pipeline with ``failure_reason``
    COMPLETE: persist the report and complete the pipeline
    """

    ADVANCE = "advance"
    FAIL = "fail"
    COMPLETE = "complete"


@dataclass
class StageResult:
    outcome: StageOutcome
    data: dict[str, Any] = field(default_factory=dict)
    failure_reason: str | None = None


# =============================================================================
# Simulator registry
# =============================================================================


@dataclass(frozen=True)
class SimulationRequest:
    pipeline_id: str
    candles: Sequence[Candle]
    coins: Sequence[Coin]
    quote_currency: Coin
    initial_capital: float
    strategy_params: dict[str, Any]


@dataclass
class SimulationResult:
    """Portfolio value per period (first value is the starting equity) and trade ledger."""

    portfolio_values: list[float]
    trades: list[TradeMetrics] = field(default_factory=list)


class BacktestSimulator(Protocol):
    def run(self, request: SimulationRequest) -> SimulationResult: ...


_SIMULATORS: dict[str, BacktestSimulator] = {}
_SIMULATOR_LOCK = threading.Lock()


def register_simulator(name: str, simulator: BacktestSimulator) -> None:
    """Make ``simulator`` available to pipelines whose config names ``name``."""
    if not name:
        raise ValueError("simulator name must be non-empty")
    with _SIMULATOR_LOCK:
        _SIMULATORS[name] = simulator


def unregister_simulator(name: str) -> None:
    with _SIMULATOR_LOCK:
        _SIMULATORS.pop(name, None)


def available_simulators() -> list[str]:
    with _SIMULATOR_LOCK:
        return sorted(_SIMULATORS)


def get_simulator(name: str) -> BacktestSimulator:
    """
    Raises:
        SimulatorNotFoundError: If no simulator is registered under ``name``
    """
    with _SIMULATOR_LOCK:
        simulator = _SIMULATORS.get(name)
        if simulator is None:
            raise SimulatorNotFoundError(name, sorted(_SIMULATORS))
        return simulator


# =============================================================================
# Scoring and reporting
# =============================================================================


def evaluate_thresholds(
    metrics: MetricsResult, thresholds: ProgressionThresholds
) -> list[str]:
    """Human-readable list of every threshold the metrics miss (empty when all pass)."""
    failures: list[str] = []
    if (
        thresholds.min_sharpe_ratio is not None
        and metrics.sharpe_ratio < thresholds.min_sharpe_ratio
    ):
        failures.append(
            f"sharpe_ratio {metrics.sharpe_ratio:.4f} below minimum {thresholds.min_sharpe_ratio}"
        )
    if thresholds.max_drawdown is not None and metrics.max_drawdown > thresholds.max_drawdown:
        failures.append(
            f"max_drawdown {metrics.max_drawdown:.4f} above maximum {thresholds.max_drawdown}"
        )
    if thresholds.min_win_rate is not None and metrics.win_rate < thresholds.min_win_rate:
        failures.append(f"win_rate {metrics.win_rate:.4f} below minimum {thresholds.min_win_rate}")
    if (
        thresholds.min_total_return is not None
        and metrics.total_return < thresholds.min_total_return
    ):
        failures.append(
            f"total_return {metrics.total_return:.4f} below minimum {thresholds.min_total_return}"
        )
    return failures


def report_warnings(metrics: MetricsResult) -> list[str]:
    warnings: list[str] = []
    if metrics.total_trades < MIN_TRADES_FOR_CONFIDENCE:
        warnings.append(LOW_TRADE_COUNT)
    if metrics.max_drawdown > 0.3:
        warnings.append(HIGH_DRAWDOWN)
    if metrics.win_rate < 0.4:
        warnings.append(POOR_WIN_RATE)
    if metrics.total_return < 0:
        warnings.append(NEGATIVE_RETURN)
    return warnings


def deployment_recommendation(
    metrics: MetricsResult, warnings: Sequence[str]
) -> DeploymentRecommendation:
    """
    Map metrics to a deployment decision.

    DEPLOY needs sharpe >= 1.0, drawdown <= 25%, win rate >= 50%, return > 5%
    and no warnings. NEEDS_REVIEW needs sharpe >= 0.5, drawdown <= 40%,
    win rate >= 40% and a non-negative return. A negative return is always
    DO_NOT_DEPLOY.
    """
    if NEGATIVE_RETURN in warnings:
        return DeploymentRecommendation.DO_NOT_DEPLOY
    if (
        metrics.sharpe_ratio >= 1.0
        and metrics.max_drawdown <= 0.25
        and metrics.win_rate >= 0.5
        and metrics.total_return > 0.05
        and not warnings
    ):
        return DeploymentRecommendation.DEPLOY
    if (
        metrics.sharpe_ratio >= 0.5
        and metrics.max_drawdown <= 0.4
        and metrics.win_rate >= 0.4
        and metrics.total_return >= 0
    ):
        return DeploymentRecommendation.NEEDS_REVIEW
    return DeploymentRecommendation.DO_NOT_DEPLOY


def confidence_score(metrics: MetricsResult, warnings: Sequence[str]) -> int:
    """0-100 score: 50 base, bonuses for strong ratios, 10 off per warning."""
    score = 50
    if metrics.sharpe_ratio >= 1.5:
        score += 15
    elif metrics.sharpe_ratio >= 1.0:
        score += 10
    elif metrics.sharpe_ratio >= 0.5:
        score += 5

    if metrics.total_return >= 0.2:
        score += 10
    elif metrics.total_return >= 0.1:
        score += 5

    if metrics.max_drawdown <= 0.15:
        score += 10
    elif metrics.max_drawdown <= 0.25:
        score += 5

    if metrics.total_trades >= 50:
        score += 5

    score -= 10 * len(warnings)
    return max(0, min(100, score))


def build_report(pipeline: Pipeline, metrics: MetricsResult) -> dict[str, Any]:
    warnings = report_warnings(metrics)
    resolution = pipeline.stage_results.get(PipelineStage.RESOLVE.value) or {}
    return {
        "pipeline_id": pipeline.id,
        "simulator": pipeline.config.simulator,
        "dataset_id": pipeline.config.dataset.id,
        "instruments": [coin.get("symbol") for coin in resolution.get("coins", [])],
        "quote_currency": (resolution.get("quote_currency") or {}).get("symbol"),
        "resolution_warnings": list(resolution.get("warnings", [])),
        "metrics": metrics_result_to_dict(metrics),
        "warnings": warnings,
        "recommendation": deployment_recommendation(metrics, warnings).value,
        "confidence_score": confidence_score(metrics, warnings),
        "generated_at": datetime.now(UTC).isoformat(),
    }


# =============================================================================
# Processor
# =============================================================================


def _exchange_symbol(instrument: str, quote: str) -> tuple[str, str]:
    """Unified exchange symbol and base asset for a requested instrument.

    Pair-shaped instruments (``ETHUSDT``) are re-quoted in the pipeline quote
    currency; explicit ``BASE/QUOTE`` symbols pass through unchanged.
    """
    symbol = instrument.strip().upper()
    if "/" in symbol:
        return symbol, symbol.split("/", 1)[0]
    base = extract_base_symbol(symbol) or symbol
    return f"{base}/{quote.upper()}", base


class StageProcessor:
    """Runs one stage of one pipeline against injected collaborators.

    Collaborators not needed by a deployment (e.g. ``exchange_fetcher`` when
    every dataset lives in object storage) may be left as None; a stage that
    needs a missing collaborator raises :class:`StageExecutionError`.
    """

    def __init__(
        self,
        artifacts: PipelineArtifactStore,
        reader: MarketDataReader | None = None,
        exchange_fetcher: ExchangeDataFetcher | None = None,
        coin_resolver: CoinResolver | None = None,
        quote_resolver: QuoteCurrencyResolver | None = None,
        default_quote_currency: str = DEFAULT_QUOTE_CURRENCY,
    ):
        self.artifacts = artifacts
        self.reader = reader
        self.exchange_fetcher = exchange_fetcher
        self.coin_resolver = coin_resolver
        self.quote_resolver = quote_resolver
        self.default_quote_currency = default_quote_currency

    def process(self, pipeline: Pipeline, stage: PipelineStage) -> StageResult:
        handlers = {
            PipelineStage.LOAD: self.load,
            PipelineStage.RESOLVE: self.resolve,
            PipelineStage.SIMULATE: self.simulate,
            PipelineStage.SCORE: self.score,
            PipelineStage.REPORT: self.report,
        }
        return handlers[stage](pipeline)

    # --------------------------------------------------------------------- load
    def load(self, pipeline: Pipeline) -> StageResult:
        config = pipeline.config
        if config.data_source is DataSource.EXCHANGE:
            market_data = self._fetch_from_exchanges(pipeline)
        else:
            if self.reader is None:
                raise StageExecutionError(PipelineStage.LOAD.value, "no market data reader")
            market_data = self.reader.read_market_data(
                config.dataset, config.start_date, config.end_date
            )

        self.artifacts.write_candles(pipeline.id, market_data.data)
        return StageResult(
            StageOutcome.ADVANCE,
            {
                "source": market_data.source,
                "record_count": market_data.record_count,
                "date_range": {
                    "start": market_data.date_range.start.isoformat(),
                    "end": market_data.date_range.end.isoformat(),
                },
            },
        )

    def _fetch_from_exchanges(self, pipeline: Pipeline) -> ParsedMarketData:
        if self.exchange_fetcher is None:
            raise StageExecutionError(PipelineStage.LOAD.value, "no exchange fetcher")
        config = pipeline.config
        instruments = list(config.dataset.instrument_universe)
        if not instruments:
            raise StageExecutionError(
                PipelineStage.LOAD.value, "exchange data source needs an instrument universe"
            )

        quote = config.quote_currency or self.default_quote_currency
        timeframe = EXCHANGE_TIMEFRAMES.get(TimeframeType(config.timeframe), "1d")
        since = int(config.start_date.timestamp() * 1000) if config.start_date else None
        limit = int(config.strategy_params.get("candle_limit", DEFAULT_CANDLE_LIMIT))

        candles: list[Candle] = []
        for instrument in instruments[: config.dataset.max_instruments]:
            symbol, base = _exchange_symbol(instrument, quote)
            fetched = self.exchange_fetcher.fetch_ohlcv_with_fallback(
                symbol, since=since, limit=limit, timeframe=timeframe, coin_id=base
            )
            candles.extend(
                candle
                for candle in fetched.data
                if config.end_date is None or candle.timestamp <= config.end_date
            )

        if not candles:
            raise StageExecutionError(PipelineStage.LOAD.value, "exchanges returned no candles")
        candles.sort(key=lambda candle: candle.timestamp)
        return ParsedMarketData(
            data=candles,
            record_count=len(candles),
            date_range=DateRange(start=candles[0].timestamp, end=candles[-1].timestamp),
            source=DataSource.EXCHANGE.value,
        )

    # ------------------------------------------------------------------ resolve
    def resolve(self, pipeline: Pipeline) -> StageResult:
        if self.coin_resolver is None or self.quote_resolver is None:
            raise StageExecutionError(PipelineStage.RESOLVE.value, "no instrument resolver")
        config = pipeline.config
        resolved = self.coin_resolver.resolve_coins(
            config.dataset, require_confirmation=config.require_confirmation
        )
        quote = self.quote_resolver.resolve_quote_currency(
            config.quote_currency or self.default_quote_currency
        )
        return StageResult(
            StageOutcome.ADVANCE,
            {
                "coins": [coin.to_dict() for coin in resolved.coins],
                "warnings": list(resolved.warnings),
                "quote_currency": quote.to_dict(),
            },
        )

    # ----------------------------------------------------------------- simulate
    def simulate(self, pipeline: Pipeline) -> StageResult:
        config = pipeline.config
        resolution = pipeline.stage_results.get(PipelineStage.RESOLVE.value)
        if not resolution:
            raise StageExecutionError(PipelineStage.SIMULATE.value, "resolve stage result missing")

        simulator = get_simulator(config.simulator)
        request = SimulationRequest(
            pipeline_id=pipeline.id,
            candles=self.artifacts.read_candles(pipeline.id),
            coins=[Coin.from_dict(coin) for coin in resolution["coins"]],
            quote_currency=Coin.from_dict(resolution["quote_currency"]),
            initial_capital=config.initial_capital,
            strategy_params=dict(config.strategy_params),
        )
        result = simulator.run(request)

        self.artifacts.write_portfolio(pipeline.id, result.portfolio_values)
        self.artifacts.write_trades(pipeline.id, result.trades)
        return StageResult(
            StageOutcome.ADVANCE,
            {
                "periods": len(result.portfolio_values),
                "trade_count": len(result.trades),
                "final_value": (
                    result.portfolio_values[-1]
                    if result.portfolio_values
                    else config.initial_capital
                ),
            },
        )

    # -------------------------------------------------------------------- score
    def score(self, pipeline: Pipeline) -> StageResult:
        config = pipeline.config
        metrics = calculate_metrics(
            MetricsInput(
                portfolio_values=self.artifacts.read_portfolio(pipeline.id),
                initial_capital=config.initial_capital,
                trades=self.artifacts.read_trades(pipeline.id),
            ),
            MetricsConfig(
                timeframe=TimeframeType(config.timeframe),
                risk_free_rate=config.risk_free_rate,
                use_crypto_calendar=config.use_crypto_calendar,
            ),
        )
        failures = evaluate_thresholds(metrics, config.thresholds)
        data = {"metrics": metrics_result_to_dict(metrics), "threshold_failures": failures}
        if failures:
            return StageResult(
                StageOutcome.FAIL,
                data,
                failure_reason=f"Progression thresholds not met: {'; '.join(failures)}",
            )
        return StageResult(StageOutcome.ADVANCE, data)

    # ------------------------------------------------------------------- report
    def report(self, pipeline: Pipeline) -> StageResult:
        scored = pipeline.stage_results.get(PipelineStage.SCORE.value)
        if not scored or "metrics" not in scored:
            raise StageExecutionError(PipelineStage.REPORT.value, "score stage result missing")
        metrics = metrics_result_from_dict(scored["metrics"])
        return StageResult(StageOutcome.COMPLETE, build_report(pipeline, metrics))
