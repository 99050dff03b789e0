"""
Data providers for live exchange market data.

This module provides:
- ExchangeManager: Cached public ccxt clients per exchange slug
- ExchangeDataFetcher: Priority-ordered OHLCV/ticker fetch with retry,
  circuit breaking and multi-exchange fallback
"""

from libs.data_providers.exchange_fetcher import (
    AllExchangesFailedError,
    ExchangeDataError,
    ExchangeDataFetcher,
    ExchangeManager,
    SymbolNotListedError,
)

__all__ = [
    "AllExchangesFailedError",
    "ExchangeDataError",
    "ExchangeDataFetcher",
    "ExchangeManager",
    "SymbolNotListedError",
]
