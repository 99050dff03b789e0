"""Shared statistical primitives for performance metrics.

Every risk-adjusted ratio on the platform goes through these helpers so that
backtest scoring, live monitoring and reports agree on one convention:

- Standard deviations are population (``ddof=0``), not sample.
- The annual risk-free rate is converted to a per-period rate by dividing by
  ``periods_per_year``.
- Sortino downside variance sums squared shortfalls below the period
  risk-free rate but divides by the full sample size ``n``. Keep the pairing
  with :func:`sharpe_ratio` intact when touching either function.

Inputs may be any sequence of numbers or a numpy array; results are plain
Python floats.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import Any

import numpy as np
from numpy.typing import NDArray

SeriesLike = Sequence[float] | NDArray[np.floating[Any]]


def _as_array(values: SeriesLike) -> NDArray[np.float64]:
    return np.asarray(values, dtype=np.float64)


def calculate_mean(values: SeriesLike) -> float:
    series = _as_array(values)
    if series.size == 0:
        return 0.0
    return float(series.mean())


def calculate_variance(values: SeriesLike) -> float:
    """Population variance; 0.0 for an empty series."""
    series = _as_array(values)
    if series.size == 0:
        return 0.0
    return float(series.var(ddof=0))


def calculate_standard_deviation(values: SeriesLike) -> float:
    series = _as_array(values)
    if series.size == 0:
        return 0.0
    return float(series.std(ddof=0))


def sharpe_ratio(
    returns: SeriesLike,
    risk_free_rate: float = 0.02,
    periods_per_year: float = 252,
) -> float:
    """Annualized Sharpe ratio of period returns.

    Args:
        returns: Period returns (e.g. daily)
        risk_free_rate: Annual risk-free rate
        periods_per_year: Annualization factor

    Returns:
        ``mean(excess) / std(excess) * sqrt(periods_per_year)``, or ``0.0``
        for an empty series or zero dispersion.
    """
    series = _as_array(returns)
    if series.size == 0:
        return 0.0

    excess = series - risk_free_rate / periods_per_year
    # Identical values can leave a rounding residue in std
    if np.ptp(excess) == 0:
        return 0.0
    std = excess.std(ddof=0)
    if std == 0:
        return 0.0
    return float(excess.mean() / std * np.sqrt(periods_per_year))


def downside_deviation(
    returns: SeriesLike,
    risk_free_rate: float = 0.02,
    periods_per_year: float = 252,
    *,
    annualize: bool = False,
) -> float:
    """Downside deviation below the period risk-free rate (full-sample divisor)."""
    series = _as_array(returns)
    if series.size == 0:
        return 0.0

    shortfalls = np.minimum(series - risk_free_rate / periods_per_year, 0.0)
    if not shortfalls.any():
        return 0.0

    deviation = float(np.sqrt(np.square(shortfalls).sum() / series.size))
    return deviation * math.sqrt(periods_per_year) if annualize else deviation


def sortino_ratio(
    returns: SeriesLike,
    risk_free_rate: float = 0.02,
    periods_per_year: float = 252,
) -> float:
    """Annualized Sortino ratio of period returns.

    Returns:
        ``0.0`` for an empty series, ``math.inf`` when no return falls below
        the period risk-free rate, otherwise
        ``mean(excess) / downside_deviation * sqrt(periods_per_year)``.
    """
    series = _as_array(returns)
    if series.size == 0:
        return 0.0

    excess = series - risk_free_rate / periods_per_year
    if not (excess < 0).any():
        return math.inf

    deviation = downside_deviation(series, risk_free_rate, periods_per_year)
    if deviation == 0:
        return 0.0
    return float(excess.mean() / deviation * np.sqrt(periods_per_year))


def max_drawdown(values: SeriesLike) -> float:
    """Largest peak-to-trough decline as a fraction of the running peak.

    Returns ``0.0`` for empty or never-declining series. Points whose running
    peak is not positive do not count.

    Example:
        >>> round(max_drawdown([100, 110, 105, 120, 100, 115]), 4)
        0.1667
    """
    series = _as_array(values)
    if series.size == 0:
        return 0.0

    peaks = np.maximum.accumulate(series)
    drawdowns = np.divide(
        peaks - series, peaks, out=np.zeros_like(series), where=peaks > 0
    )
    return float(drawdowns.max())


__all__ = [
    "SeriesLike",
    "calculate_mean",
    "calculate_variance",
    "calculate_standard_deviation",
    "sharpe_ratio",
    "sortino_ratio",
    "downside_deviation",
    "max_drawdown",
]
