"""Analytics library: shared statistical primitives for performance metrics."""

from __future__ import annotations

from libs.analytics.metrics import (
    calculate_mean,
    calculate_standard_deviation,
    calculate_variance,
    downside_deviation,
    max_drawdown,
    sharpe_ratio,
    sortino_ratio,
)

__all__ = [
    "calculate_mean",
    "calculate_variance",
    "calculate_standard_deviation",
    "sharpe_ratio",
    "sortino_ratio",
    "downside_deviation",
    "max_drawdown",
]
