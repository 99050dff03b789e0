"""
Parquet artifacts passed between pipeline stages.

Stages run as separate queue jobs (often on different workers), so bulk
time series never travel through Redis or the pipeline row. Each stage writes
its output under ``<artifacts_dir>/<pipeline_id>/`` and the next stage reads
it back:

    candles.parquet    LOAD      -> SIMULATE
    portfolio.parquet  SIMULATE  -> SCORE
    trades.parquet     SIMULATE  -> SCORE

The directory is deleted when the pipeline is cancelled.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Mapping, Sequence
from pathlib import Path

import polars as pl

from libs.backtest.metrics import TradeMetrics, TradeType
from libs.backtest.models import Candle

logger = logging.getLogger(__name__)

CANDLES_FILE = "candles.parquet"
PORTFOLIO_FILE = "portfolio.parquet"
TRADES_FILE = "trades.parquet"

CANDLE_SCHEMA: dict[str, pl.DataType] = {
    "timestamp": pl.Datetime("us", "UTC"),
    "open": pl.Float64(),
    "high": pl.Float64(),
    "low": pl.Float64(),
    "close": pl.Float64(),
    "volume": pl.Float64(),
    "coin_id": pl.Utf8(),
}
PORTFOLIO_SCHEMA: dict[str, pl.DataType] = {"period": pl.Int64(), "value": pl.Float64()}
TRADE_SCHEMA: dict[str, pl.DataType] = {"realized_pnl": pl.Float64(), "type": pl.Utf8()}


def _validate_schema(df: pl.DataFrame, required: Mapping[str, pl.DataType]) -> None:
    missing_cols = set(required.keys()) - set(df.columns)
    if missing_cols:
        raise ValueError(f"missing columns: {missing_cols}")
    for col, dtype in required.items():
        if df[col].dtype != dtype:
            raise ValueError(f"column {col} has type {df[col].dtype}, expected {dtype}")


class PipelineArtifactStore:
    """Per-pipeline Parquet files under a single base directory."""

    def __init__(self, base_dir: Path | str):
        self.base_dir = Path(base_dir)

    def pipeline_dir(self, pipeline_id: str) -> Path:
        """
        Directory for one pipeline's artifacts.

        Raises:
            ValueError: If the id would place the directory outside base_dir
        """
        safe_base = self.base_dir.resolve()
        target = (safe_base / pipeline_id).resolve(strict=False)
        if target == safe_base or not target.is_relative_to(safe_base):
            raise ValueError(f"pipeline_id {pipeline_id!r} escapes artifacts directory")
        return target

    def _write(self, pipeline_id: str, name: str, df: pl.DataFrame) -> Path:
        target_dir = self.pipeline_dir(pipeline_id)
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / name
        df.write_parquet(path, compression="snappy")
        return path

    def _read(self, pipeline_id: str, name: str, schema: Mapping[str, pl.DataType]) -> pl.DataFrame:
        path = self.pipeline_dir(pipeline_id) / name
        if not path.exists():
            raise FileNotFoundError(f"artifact {name} missing for pipeline {pipeline_id}")
        df = pl.read_parquet(path)
        _validate_schema(df, schema)
        return df

    # ----------------------------------------------------------------- candles
    def write_candles(self, pipeline_id: str, candles: Sequence[Candle]) -> Path:
        df = pl.DataFrame(
            {
                "timestamp": [candle.timestamp for candle in candles],
                "open": [candle.open for candle in candles],
                "high": [candle.high for candle in candles],
                "low": [candle.low for candle in candles],
                "close": [candle.close for candle in candles],
                "volume": [candle.volume for candle in candles],
                "coin_id": [candle.coin_id for candle in candles],
            },
            schema=CANDLE_SCHEMA,
        )
        return self._write(pipeline_id, CANDLES_FILE, df)

    def read_candles(self, pipeline_id: str) -> list[Candle]:
        df = self._read(pipeline_id, CANDLES_FILE, CANDLE_SCHEMA)
        return [Candle(**row) for row in df.iter_rows(named=True)]

    # --------------------------------------------------------------- portfolio
    def write_portfolio(self, pipeline_id: str, values: Sequence[float]) -> Path:
        df = pl.DataFrame(
            {"period": list(range(len(values))), "value": [float(v) for v in values]},
            schema=PORTFOLIO_SCHEMA,
        )
        return self._write(pipeline_id, PORTFOLIO_FILE, df)

    def read_portfolio(self, pipeline_id: str) -> list[float]:
        df = self._read(pipeline_id, PORTFOLIO_FILE, PORTFOLIO_SCHEMA)
        return df.sort("period")["value"].to_list()

    # ------------------------------------------------------------------ trades
    def write_trades(self, pipeline_id: str, trades: Sequence[TradeMetrics]) -> Path:
        df = pl.DataFrame(
            {
                "realized_pnl": [trade.realized_pnl for trade in trades],
                "type": [TradeType(trade.type).value for trade in trades],
            },
            schema=TRADE_SCHEMA,
        )
        return self._write(pipeline_id, TRADES_FILE, df)

    def read_trades(self, pipeline_id: str) -> list[TradeMetrics]:
        df = self._read(pipeline_id, TRADES_FILE, TRADE_SCHEMA)
        return [TradeMetrics.from_dict(row) for row in df.iter_rows(named=True)]

    # ----------------------------------------------------------------- cleanup
    def remove(self, pipeline_id: str) -> None:
        """Delete every artifact of a pipeline; missing directories are ignored."""
        target = self.pipeline_dir(pipeline_id)
        if target.exists():
            shutil.rmtree(target, ignore_errors=True)
            logger.info("Removed pipeline artifacts", extra={"pipeline_id": pipeline_id})
