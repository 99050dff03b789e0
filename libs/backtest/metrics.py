"""Backtest performance metrics.

Pure functions from a portfolio-value series and a trade ledger to the fixed
metrics record stored with every scored pipeline. Ratios delegate to
:mod:`libs.analytics.metrics` so backtests and live monitoring share one
Sharpe/Sortino convention.

Annualization depends on the candle timeframe and on whether the market
trades around the clock (crypto) or on a traditional exchange calendar.

Example:
    >>> result = calculate_metrics(
    ...     MetricsInput(portfolio_values=[10_000, 10_500, 10_200, 11_000], initial_capital=10_000),
    ...     MetricsConfig(timeframe=TimeframeType.DAILY),
    ... )
    >>> round(result.total_return, 2)
    0.1
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

import numpy as np

from libs.analytics.metrics import (
    calculate_standard_deviation,
    downside_deviation,
    max_drawdown,
    sharpe_ratio,
    sortino_ratio,
)


class TimeframeType(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class TradeType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


# (crypto calendar, traditional calendar)
PERIODS_PER_YEAR: dict[TimeframeType, tuple[int, int]] = {
    TimeframeType.HOURLY: (8760, 6552),
    TimeframeType.DAILY: (365, 252),
    TimeframeType.WEEKLY: (52, 52),
    TimeframeType.MONTHLY: (12, 12),
}
DEFAULT_PERIODS_PER_YEAR = 252


@dataclass(frozen=True)
class MetricsConfig:
    timeframe: TimeframeType = TimeframeType.DAILY
    risk_free_rate: float = 0.02
    use_crypto_calendar: bool = True


DEFAULT_METRICS_CONFIG = MetricsConfig()


@dataclass(frozen=True)
class TradeMetrics:
    realized_pnl: float
    type: TradeType

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TradeMetrics:
        return cls(
            realized_pnl=float(data.get("realized_pnl") or 0.0),
            type=TradeType(str(data["type"]).upper()),
        )


@dataclass(frozen=True)
class MetricsInput:
    portfolio_values: Sequence[float]
    initial_capital: float
    trades: Sequence[TradeMetrics] = field(default_factory=tuple)


@dataclass(frozen=True)
class MetricsResult:
    sharpe_ratio: float
    sortino_ratio: float
    max_drawdown: float
    win_rate: float
    profit_factor: float
    volatility: float
    downside_deviation: float
    total_return: float
    annualized_return: float
    total_trades: int
    winning_trades: int
    losing_trades: int
    final_value: float


def get_periods_per_year(
    timeframe: TimeframeType | str, use_crypto_calendar: bool = True
) -> int:
    """Annualization factor for a candle timeframe.

    Example:
        >>> get_periods_per_year(TimeframeType.HOURLY, use_crypto_calendar=False)
        6552
    """
    try:
        crypto, traditional = PERIODS_PER_YEAR[TimeframeType(timeframe)]
    except ValueError:
        return DEFAULT_PERIODS_PER_YEAR
    return crypto if use_crypto_calendar else traditional


def calculate_returns(values: Sequence[float]) -> list[float]:
    """Simple period returns; a zero previous value yields 0.0 instead of NaN."""
    series = np.asarray(values, dtype=np.float64)
    if series.size < 2:
        return []
    previous = series[:-1]
    returns = np.divide(
        np.diff(series), previous, out=np.zeros(series.size - 1), where=previous != 0
    )
    return [float(value) for value in returns]


def calculate_volatility(
    returns: Sequence[float], config: MetricsConfig = DEFAULT_METRICS_CONFIG
) -> float:
    if len(returns) == 0:
        return 0.0
    periods = get_periods_per_year(config.timeframe, config.use_crypto_calendar)
    return calculate_standard_deviation(returns) * float(np.sqrt(periods))


def calculate_downside_deviation(
    returns: Sequence[float], config: MetricsConfig = DEFAULT_METRICS_CONFIG
) -> float:
    """Annualized downside deviation.

    Squared shortfalls below the period risk-free rate are divided by the full
    number of returns, matching the Sortino ratio.
    """
    periods = get_periods_per_year(config.timeframe, config.use_crypto_calendar)
    return downside_deviation(returns, config.risk_free_rate, periods, annualize=True)


def calculate_sharpe_ratio(
    returns: Sequence[float], config: MetricsConfig = DEFAULT_METRICS_CONFIG
) -> float:
    if len(returns) == 0:
        return 0.0
    periods = get_periods_per_year(config.timeframe, config.use_crypto_calendar)
    return sharpe_ratio(returns, config.risk_free_rate, periods)


def calculate_sortino_ratio(
    returns: Sequence[float], config: MetricsConfig = DEFAULT_METRICS_CONFIG
) -> float:
    if len(returns) == 0:
        return 0.0
    periods = get_periods_per_year(config.timeframe, config.use_crypto_calendar)
    return sortino_ratio(returns, config.risk_free_rate, periods)


def calculate_max_drawdown(values: Sequence[float]) -> float:
    return max_drawdown(values)


def _sell_trades(trades: Sequence[TradeMetrics]) -> list[TradeMetrics]:
    # Only SELL legs realize P&L; BUY legs are excluded from every trade statistic
    return [trade for trade in trades if trade.type == TradeType.SELL]


def calculate_win_rate(trades: Sequence[TradeMetrics]) -> float:
    """Winning SELL trades over all SELL trades (0.0 with none)."""
    sells = _sell_trades(trades)
    if not sells:
        return 0.0
    return sum(1 for trade in sells if trade.realized_pnl > 0) / len(sells)


def calculate_profit_factor(trades: Sequence[TradeMetrics]) -> float:
    """Gross profit over gross loss of SELL trades.

    ``math.inf`` with profit and no loss, ``1.0`` with neither.
    """
    sells = _sell_trades(trades)
    gross_profit = sum(trade.realized_pnl for trade in sells if trade.realized_pnl > 0)
    gross_loss = abs(sum(trade.realized_pnl for trade in sells if trade.realized_pnl < 0))
    if gross_loss == 0:
        return math.inf if gross_profit > 0 else 1.0
    return gross_profit / gross_loss


def calculate_annualized_return(
    total_return: float, period_count: int, periods_per_year: int
) -> float:
    if period_count <= 0:
        return total_return
    growth = 1 + total_return
    if growth <= 0:
        # Capital wiped out; a fractional power of a non-positive base is undefined
        return -1.0
    return growth ** (periods_per_year / period_count) - 1


def empty_metrics(initial_capital: float) -> MetricsResult:
    return MetricsResult(
        sharpe_ratio=0.0,
        sortino_ratio=0.0,
        max_drawdown=0.0,
        win_rate=0.0,
        profit_factor=1.0,
        volatility=0.0,
        downside_deviation=0.0,
        total_return=0.0,
        annualized_return=0.0,
        total_trades=0,
        winning_trades=0,
        losing_trades=0,
        final_value=initial_capital,
    )


def calculate_metrics(
    metrics_input: MetricsInput, config: MetricsConfig = DEFAULT_METRICS_CONFIG
) -> MetricsResult:
    """Compute the full metrics record for one backtest.

    Args:
        metrics_input: Portfolio values (one per period), initial capital, trades
        config: Timeframe, risk-free rate and calendar used for annualization

    Returns:
        MetricsResult; all-neutral when ``portfolio_values`` is empty.

    Raises:
        ValueError: If initial_capital is not positive
    """
    values = list(metrics_input.portfolio_values)
    initial_capital = metrics_input.initial_capital
    if initial_capital <= 0:
        raise ValueError("initial_capital must be positive")
    if not values:
        return empty_metrics(initial_capital)

    returns = calculate_returns(values)
    periods = get_periods_per_year(config.timeframe, config.use_crypto_calendar)
    trades = list(metrics_input.trades)
    sells = _sell_trades(trades)

    final_value = values[-1]
    total_return = (final_value - initial_capital) / initial_capital

    return MetricsResult(
        sharpe_ratio=calculate_sharpe_ratio(returns, config),
        sortino_ratio=calculate_sortino_ratio(returns, config),
        max_drawdown=calculate_max_drawdown(values),
        win_rate=calculate_win_rate(trades),
        profit_factor=calculate_profit_factor(trades),
        volatility=calculate_volatility(returns, config),
        downside_deviation=calculate_downside_deviation(returns, config),
        total_return=total_return,
        annualized_return=calculate_annualized_return(total_return, len(values) - 1, periods),
        total_trades=len(trades),
        winning_trades=sum(1 for trade in sells if trade.realized_pnl > 0),
        losing_trades=sum(1 for trade in sells if trade.realized_pnl < 0),
        final_value=final_value,
    )


def metrics_result_to_dict(result: MetricsResult) -> dict[str, Any]:
    """JSON-safe dict of a result; infinite ratios become None."""
    payload = asdict(result)
    for key, value in payload.items():
        if isinstance(value, float) and not math.isfinite(value):
            payload[key] = None
    return payload


def metrics_result_from_dict(data: dict[str, Any]) -> MetricsResult:
    """Inverse of :func:`metrics_result_to_dict` (None ratios read back as inf)."""
    restored = dict(data)
    for key in ("sortino_ratio", "profit_factor"):
        if restored.get(key) is None:
            restored[key] = math.inf
    return MetricsResult(**restored)
