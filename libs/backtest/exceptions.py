"""
Exceptions for backtest data loading, instrument resolution and pipelines.

Every fatal condition carries the context needed to act on it (path, missing
column, attempted symbols) as attributes as well as in the message.
"""

from __future__ import annotations

from collections.abc import Sequence

from libs.common.exceptions import ConfigurationError, DataQualityError, TradingPlatformError


class MarketDataError(TradingPlatformError):
    """Base class for market data reader failures."""

    pass


class NoStorageLocationError(MarketDataError, ConfigurationError):
    """Dataset has no storage location configured."""

    def __init__(self, dataset_id: str):
        self.dataset_id = dataset_id
        super().__init__(f"Dataset {dataset_id} has no storage location configured")


class InvalidStorageLocationError(MarketDataError, ConfigurationError):
    """Storage location could not be parsed into a bucket-relative path."""

    def __init__(self, location: str, reason: str):
        self.location = location
        self.reason = reason
        super().__init__(f"Invalid storage location '{location}': {reason}")


class InvalidStoragePathError(MarketDataError):
    """
    Object path rejected at the security boundary.

    The path comes from user-controlled dataset metadata, so every subclass is
    fatal and is never coerced into a "safe" path.
    """

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid storage path {path!r}: {reason}")


class EmptyStoragePathError(InvalidStoragePathError):
    def __init__(self, path: str = ""):
        super().__init__(path, "path is empty")


class NullByteInPathError(InvalidStoragePathError):
    def __init__(self, path: str):
        super().__init__(path, "path contains a null byte")


class PathTraversalError(InvalidStoragePathError):
    def __init__(self, path: str):
        super().__init__(path, "path traversal ('..') is not allowed")


class AbsoluteStoragePathError(InvalidStoragePathError):
    def __init__(self, path: str):
        super().__init__(path, "absolute paths are not allowed")


class MarketDataFileNotFoundError(MarketDataError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Market data file not found: {path}")


class MarketDataFileTooLargeError(MarketDataError):
    """Source file exceeds the size cap; rejected before any byte is read."""

    def __init__(self, path: str, size_bytes: int, max_bytes: int):
        self.path = path
        self.size_bytes = size_bytes
        self.max_bytes = max_bytes
        super().__init__(
            f"Market data file {path} is {size_bytes / (1024 * 1024):.1f}MB, "
            f"exceeds {max_bytes / (1024 * 1024):.0f}MB limit"
        )


class MissingRequiredColumnError(MarketDataError, DataQualityError):
    def __init__(self, column: str, header: Sequence[str]):
        self.column = column
        self.header = list(header)
        super().__init__(
            f"Market data file is missing required column '{column}' "
            f"(found: {', '.join(self.header) or 'none'})"
        )


class MalformedHeaderError(MarketDataError, DataQualityError):
    """The header line is not valid CSV."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Malformed header row in {path}: {reason}")


class NoValidDataRowsError(MarketDataError, DataQualityError):
    """Every data row failed to parse."""

    def __init__(self, path: str, row_errors: Sequence[str] = ()):
        self.path = path
        self.row_errors = list(row_errors)
        detail = f": {'; '.join(self.row_errors[:5])}" if self.row_errors else ""
        super().__init__(f"No valid data rows in {path}{detail}")


class InstrumentResolutionError(TradingPlatformError):
    """Base class for coin and quote currency resolution failures."""

    pass


class InstrumentUniverseUnresolvedError(InstrumentResolutionError):
    def __init__(self, dataset_id: str, instruments: Sequence[str], unresolved: Sequence[str]):
        self.dataset_id = dataset_id
        self.instruments = list(instruments)
        self.unresolved = list(unresolved)
        super().__init__(
            f"Unresolved instrument universe for dataset {dataset_id}: "
            f"none of [{', '.join(self.instruments)}] could be resolved"
        )


class InstrumentUniverseTruncationError(InstrumentResolutionError):
    """Resolved universe exceeds max_instruments and the caller asked to confirm."""

    def __init__(self, dataset_id: str, resolved_count: int, max_instruments: int):
        self.dataset_id = dataset_id
        self.resolved_count = resolved_count
        self.max_instruments = max_instruments
        super().__init__(
            f"Dataset {dataset_id} resolves to {resolved_count} instruments, "
            f"above the limit of {max_instruments}; confirm truncation or reduce the universe"
        )


class QuoteCurrencyNotFoundError(InstrumentResolutionError):
    def __init__(self, attempted: Sequence[str]):
        self.attempted = list(attempted)
        super().__init__(
            f"No valid quote currency found. Tried: {', '.join(self.attempted)}"
        )


class PipelineError(TradingPlatformError):
    """Base class for pipeline orchestration failures."""

    pass


class PipelineNotFoundError(PipelineError):
    def __init__(self, pipeline_id: str):
        self.pipeline_id = pipeline_id
        super().__init__(f"Pipeline {pipeline_id} not found")


class InvalidPipelineStateError(PipelineError):
    def __init__(self, pipeline_id: str, status: str, action: str):
        self.pipeline_id = pipeline_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} pipeline {pipeline_id} in status {status}")


class StageExecutionError(PipelineError):
    """A stage could not complete; the message becomes the pipeline failure reason."""

    def __init__(self, stage: str, reason: str):
        self.stage = stage
        self.reason = reason
        super().__init__(f"Stage {stage} failed: {reason}")


class SimulatorNotFoundError(PipelineError):
    def __init__(self, name: str, available: Sequence[str]):
        self.name = name
        self.available = list(available)
        super().__init__(
            f"Unknown simulator '{name}'. Available: {', '.join(self.available) or 'none'}"
        )
