"""
Instrument resolution: free-form requested symbols to canonical coins.

Resolution runs in two batch lookups against the coin catalog:
    1. Direct symbol match for every requested instrument.
    2. For instruments still unresolved and shaped like a trading pair
       (``ETHUSDT``, ``SOLUSD``), the base asset is looked up. Bases shorter
       than three characters are rejected.

The resolved list keeps the requested order with duplicates removed. A
universe larger than ``max_instruments`` is truncated and flagged rather than
rejected, unless the caller asks for explicit confirmation.
"""

from __future__ import annotations

import logging
import re

from libs.backtest.coin_catalog import CoinCatalog
from libs.backtest.exceptions import (
    InstrumentUniverseTruncationError,
    InstrumentUniverseUnresolvedError,
)
from libs.backtest.models import Coin, MarketDataSet, ResolvedInstrumentSet
from libs.backtest.resolution_metrics import record_coin_resolution, record_instruments_resolved

logger = logging.getLogger(__name__)

MIN_BASE_SYMBOL_LENGTH = 3
INSTRUMENT_UNIVERSE_TRUNCATED = "instrument_universe_truncated"

_QUOTE_SUFFIX = re.compile(r"(USDT|USD|BTC|ETH)$", re.IGNORECASE)


def extract_base_symbol(symbol: str) -> str | None:
    """Base asset of a pair-shaped symbol, or None when it is not one.

    Example:
        >>> extract_base_symbol("ETHUSDT")
        'ETH'
        >>> extract_base_symbol("OPUSD") is None
        True
    """
    base = _QUOTE_SUFFIX.sub("", symbol)
    if base and base != symbol and len(base) >= MIN_BASE_SYMBOL_LENGTH:
        return base
    return None


class CoinResolver:
    def __init__(self, catalog: CoinCatalog):
        self.catalog = catalog

    def resolve_coins(
        self, dataset: MarketDataSet, require_confirmation: bool = False
    ) -> ResolvedInstrumentSet:
        """
        Resolve ``dataset.instrument_universe`` to coins.

        Args:
            dataset: Dataset declaring the requested instruments
            require_confirmation: Raise instead of truncating an oversized universe

        Raises:
            InstrumentUniverseUnresolvedError: Universe empty or nothing resolved
            InstrumentUniverseTruncationError: Truncation needed and confirmation required
        """
        instruments = list(dataset.instrument_universe)
        if not instruments:
            raise InstrumentUniverseUnresolvedError(dataset.id, [], [])

        symbols = [instrument.strip().upper() for instrument in instruments]
        by_symbol: dict[str, Coin] = {}
        for coin in self.catalog.get_multiple_coins_by_symbol(list(dict.fromkeys(symbols))):
            by_symbol.setdefault(coin.symbol.upper(), coin)
        record_instruments_resolved("direct", len(by_symbol))

        bases = {
            symbol: base
            for symbol in symbols
            if symbol not in by_symbol and (base := extract_base_symbol(symbol)) is not None
        }
        if bases:
            missing_bases = [
                base for base in dict.fromkeys(bases.values()) if base not in by_symbol
            ]
            direct_count = len(by_symbol)
            for coin in self.catalog.get_multiple_coins_by_symbol(missing_bases):
                by_symbol.setdefault(coin.symbol.upper(), coin)
            record_instruments_resolved("symbol_extraction", len(by_symbol) - direct_count)

        resolved: list[Coin] = []
        seen_ids: set[str] = set()
        unresolved: list[str] = []
        for instrument, symbol in zip(instruments, symbols, strict=True):
            coin = by_symbol.get(symbol)
            if coin is None and symbol in bases:
                coin = by_symbol.get(bases[symbol])
            if coin is None:
                unresolved.append(instrument)
                continue
            if coin.id not in seen_ids:
                seen_ids.add(coin.id)
                resolved.append(coin)

        if not resolved:
            record_coin_resolution("failed")
            raise InstrumentUniverseUnresolvedError(dataset.id, instruments, unresolved)

        if unresolved:
            record_coin_resolution("partial")
            logger.warning(
                "Partial instrument resolution for dataset %s: resolved %d/%d, unresolved: [%s]",
                dataset.id,
                len(resolved),
                len(instruments),
                ", ".join(unresolved),
                extra={"dataset_id": dataset.id, "unresolved": unresolved},
            )
        else:
            record_coin_resolution("success")

        warnings: list[str] = []
        max_instruments = dataset.max_instruments
        if len(resolved) > max_instruments:
            if require_confirmation:
                raise InstrumentUniverseTruncationError(dataset.id, len(resolved), max_instruments)
            logger.warning(
                "Truncating instrument universe from %d to %d coins",
                len(resolved),
                max_instruments,
                extra={"dataset_id": dataset.id},
            )
            warnings.append(INSTRUMENT_UNIVERSE_TRUNCATED)
            resolved = resolved[:max_instruments]

        return ResolvedInstrumentSet(coins=resolved, warnings=warnings)
