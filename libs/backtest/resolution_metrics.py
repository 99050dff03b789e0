"""Prometheus metrics for backtest instrument resolution.

Metrics:
    backtest_coin_resolution_total: Resolution attempts by outcome
        (``success``, ``partial``, ``failed``)
    backtest_instruments_resolved_total: Coins resolved, by lookup method
        (``direct`` symbol match or ``symbol_extraction`` from a pair)
"""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter

ResolutionResult = Literal["success", "partial", "failed"]
ResolutionMethod = Literal["direct", "symbol_extraction"]

backtest_coin_resolution_total = Counter(
    "backtest_coin_resolution_total",
    "Instrument universe resolution attempts",
    ["result"],
)

backtest_instruments_resolved_total = Counter(
    "backtest_instruments_resolved_total",
    "Coins resolved from requested instruments",
    ["method"],
)


def record_coin_resolution(result: ResolutionResult) -> None:
    backtest_coin_resolution_total.labels(result=result).inc()


def record_instruments_resolved(method: ResolutionMethod, count: int) -> None:
    if count > 0:
        backtest_instruments_resolved_total.labels(method=method).inc(count)


__all__ = [
    "backtest_coin_resolution_total",
    "backtest_instruments_resolved_total",
    "record_coin_resolution",
    "record_instruments_resolved",
]
