from .coin_resolver import INSTRUMENT_UNIVERSE_TRUNCATED, CoinResolver
from .exceptions import (
    InstrumentResolutionError,
    InstrumentUniverseTruncationError,
    InstrumentUniverseUnresolvedError,
    InvalidPipelineStateError,
    InvalidStoragePathError,
    MarketDataError,
    PipelineError,
    PipelineNotFoundError,
    QuoteCurrencyNotFoundError,
    SimulatorNotFoundError,
    StageExecutionError,
)
from .market_data_reader import MarketDataReader
from .metrics import (
    MetricsConfig,
    MetricsInput,
    MetricsResult,
    TimeframeType,
    TradeMetrics,
    TradeType,
    calculate_metrics,
)
from .models import (
    Candle,
    Coin,
    DataSource,
    MarketDataSet,
    ParsedMarketData,
    Pipeline,
    PipelineConfig,
    PipelineStage,
    PipelineStatus,
    ProgressionThresholds,
    ResolvedInstrumentSet,
)
from .orchestrator import PipelineOrchestrator
from .quote_currency import QuoteCurrencyResolver
from .stages import (
    BacktestSimulator,
    SimulationRequest,
    SimulationResult,
    StageOutcome,
    StageProcessor,
    StageResult,
    get_simulator,
    register_simulator,
)

__all__ = [
    # Market data
    "Candle",
    "MarketDataReader",
    "MarketDataSet",
    "ParsedMarketData",
    # Instrument resolution
    "Coin",
    "CoinResolver",
    "INSTRUMENT_UNIVERSE_TRUNCATED",
    "QuoteCurrencyResolver",
    "ResolvedInstrumentSet",
    # Metrics
    "MetricsConfig",
    "MetricsInput",
    "MetricsResult",
    "TimeframeType",
    "TradeMetrics",
    "TradeType",
    "calculate_metrics",
    # Pipelines
    "DataSource",
    "Pipeline",
    "PipelineConfig",
    "PipelineOrchestrator",
    "PipelineStage",
    "PipelineStatus",
    "ProgressionThresholds",
    "StageOutcome",
    "StageProcessor",
    "StageResult",
    # Simulators
    "BacktestSimulator",
    "SimulationRequest",
    "SimulationResult",
    "get_simulator",
    "register_simulator",
    # Exceptions
    "InstrumentResolutionError",
    "InstrumentUniverseTruncationError",
    "InstrumentUniverseUnresolvedError",
    "InvalidPipelineStateError",
    "InvalidStoragePathError",
    "MarketDataError",
    "PipelineError",
    "PipelineNotFoundError",
    "QuoteCurrencyNotFoundError",
    "SimulatorNotFoundError",
    "StageExecutionError",
]
