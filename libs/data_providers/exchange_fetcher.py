"""Multi-exchange OHLCV and ticker fetching with fallback.

Public market data is pulled through ccxt clients, one per exchange slug.
Exchanges are tried in the configured priority order. Each exchange is
guarded by its own circuit in the process-wide circuit breaker and retried
with exponential backoff before the next exchange is tried. Only when every
exchange has failed does a fetch raise.

Classes:
    ExchangeManager: Lazily builds and caches public ccxt clients.
    ExchangeDataFetcher: Priority-ordered fetch with retry and fallback.

Exceptions:
    ExchangeDataError: Base exception for exchange fetch errors.
    SymbolNotListedError: Symbol absent from an exchange's market list.
    AllExchangesFailedError: Every exchange in the priority list failed.

Example:
    >>> fetcher = ExchangeDataFetcher.from_settings(get_settings())
    >>> data = fetcher.fetch_ohlcv_with_fallback("BTC/USDT", since=1704067200000)
    >>> data.source
    'exchange'
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any, TypeVar

import ccxt
from tenacity import (
    Retrying,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config.settings import Settings
from libs.backtest.models import Candle, DataSource, DateRange, ParsedMarketData
from libs.common.circuit_breaker import CircuitBreaker, CircuitOpenError, get_circuit_breaker
from libs.common.exceptions import TradingPlatformError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_OHLCV_LIMIT = 500
DEFAULT_TIMEFRAME = "1h"
MAX_BACKOFF_SECONDS = 30.0


# =============================================================================
# Exceptions
# =============================================================================


class ExchangeDataError(TradingPlatformError):
    """Base exception for exchange fetch errors."""

    pass


class SymbolNotListedError(ExchangeDataError):
    """Raised when an exchange does not list the requested symbol.

    Not retried: the market list was just loaded.
    """

    def __init__(self, exchange: str, symbol: str):
        self.exchange = exchange
        self.symbol = symbol
        super().__init__(f"Symbol {symbol} not found on {exchange}")


class EmptyExchangeResponseError(ExchangeDataError):
    def __init__(self, exchange: str, symbol: str):
        self.exchange = exchange
        self.symbol = symbol
        super().__init__(f"No data returned by {exchange} for {symbol}")


class AllExchangesFailedError(ExchangeDataError):
    """Raised when every exchange in the priority list failed.

    Attributes:
        symbol: Requested symbol.
        errors: Last error message per exchange slug, in priority order.
    """

    def __init__(self, symbol: str, errors: dict[str, str]):
        self.symbol = symbol
        self.errors = dict(errors)
        detail = "; ".join(f"{slug}: {message}" for slug, message in self.errors.items())
        super().__init__(f"All exchanges failed: {detail or 'no exchanges configured'}")


# =============================================================================
# Clients
# =============================================================================


class ExchangeManager:
    """Builds public (unauthenticated) ccxt clients on first use and caches them.

    Args:
        timeout_ms: Request timeout handed to every client.
        client_factory: Override for client construction, ``(slug, options) -> client``.
    """

    def __init__(
        self,
        timeout_ms: int = 30_000,
        client_factory: Callable[[str, dict[str, Any]], Any] | None = None,
    ):
        self.timeout_ms = timeout_ms
        self._client_factory = client_factory or self._create_ccxt_client
        self._clients: dict[str, Any] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _create_ccxt_client(slug: str, options: dict[str, Any]) -> Any:
        exchange_class = getattr(ccxt, slug, None)
        if exchange_class is None:
            raise ExchangeDataError(f"Unsupported exchange: {slug}")
        return exchange_class(options)

    def get_public_client(self, slug: str) -> Any:
        with self._lock:
            client = self._clients.get(slug)
            if client is None:
                client = self._client_factory(
                    slug, {"enableRateLimit": True, "timeout": self.timeout_ms}
                )
                self._clients[slug] = client
            return client


# =============================================================================
# Fetcher
# =============================================================================


class ExchangeDataFetcher:
    """Fetch market data from the first healthy exchange in priority order.

    Every exchange call (``load_markets``, ``fetch_ohlcv``, ``fetch_ticker``)
    passes through the circuit breaker under the exchange slug. An open
    circuit skips the exchange without retrying it.
    """

    def __init__(
        self,
        manager: ExchangeManager,
        breaker: CircuitBreaker,
        exchange_priority: Sequence[str],
        retries: int = 3,
        backoff_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.manager = manager
        self.breaker = breaker
        self.exchange_priority = list(exchange_priority)
        self.retries = retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> ExchangeDataFetcher:
        return cls(
            manager=ExchangeManager(timeout_ms=settings.exchange_timeout_ms),
            breaker=get_circuit_breaker(),
            exchange_priority=settings.exchange_priority,
            retries=settings.exchange_fetch_retries,
            backoff_seconds=settings.exchange_backoff_seconds,
        )

    def get_exchange_priority(self) -> list[str]:
        return list(self.exchange_priority)

    def _guarded(self, slug: str, call: Callable[[], T]) -> T:
        self.breaker.check_circuit(slug)
        try:
            result = call()
        except Exception:
            self.breaker.record_failure(slug)
            raise
        self.breaker.record_success(slug)
        return result

    def _ensure_markets(self, slug: str, client: Any, symbol: str) -> None:
        if not client.markets:
            self._guarded(slug, client.load_markets)
        if symbol not in client.markets:
            raise SymbolNotListedError(slug, symbol)

    def _with_retry(self, slug: str, operation: str, call: Callable[[], T]) -> T:
        retrying = Retrying(
            stop=stop_after_attempt(self.retries),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=MAX_BACKOFF_SECONDS),
            retry=retry_if_not_exception_type((CircuitOpenError, SymbolNotListedError)),
            before_sleep=lambda state: logger.warning(
                "%s attempt %d/%d failed on %s: %s",
                operation,
                state.attempt_number,
                self.retries,
                slug,
                state.outcome.exception() if state.outcome else None,
                extra={"exchange": slug, "operation": operation},
            ),
            sleep=self._sleep,
            reraise=True,
        )
        return retrying(call)

    def _fallback(self, symbol: str, operation: str, fetch_one: Callable[[str], T]) -> T:
        errors: dict[str, str] = {}
        for slug in self.exchange_priority:
            try:
                return self._with_retry(slug, operation, lambda slug=slug: fetch_one(slug))
            except CircuitOpenError as e:
                logger.info(
                    "Skipping %s for %s: circuit open",
                    slug,
                    symbol,
                    extra={"exchange": slug, "symbol": symbol},
                )
                errors[slug] = str(e)
            except Exception as e:
                logger.warning(
                    "%s failed on %s for %s: %s",
                    operation,
                    slug,
                    symbol,
                    e,
                    extra={"exchange": slug, "symbol": symbol},
                )
                errors[slug] = str(e)

        logger.error(
            "All exchanges failed for %s",
            symbol,
            extra={"symbol": symbol, "errors": errors},
        )
        raise AllExchangesFailedError(symbol, errors)

    def fetch_ohlcv(
        self,
        slug: str,
        symbol: str,
        since: int | None = None,
        limit: int = DEFAULT_OHLCV_LIMIT,
        timeframe: str = DEFAULT_TIMEFRAME,
    ) -> list[list[float]]:
        """Single attempt against one exchange. Raw ccxt rows."""
        client = self.manager.get_public_client(slug)
        if not client.has.get("fetchOHLCV"):
            raise ExchangeDataError(f"{slug} does not support fetchOHLCV")
        self._ensure_markets(slug, client, symbol)
        rows = self._guarded(slug, lambda: client.fetch_ohlcv(symbol, timeframe, since, limit))
        if not rows:
            raise EmptyExchangeResponseError(slug, symbol)
        return rows

    def fetch_ohlcv_with_fallback(
        self,
        symbol: str,
        since: int | None = None,
        limit: int = DEFAULT_OHLCV_LIMIT,
        timeframe: str = DEFAULT_TIMEFRAME,
        coin_id: str | None = None,
    ) -> ParsedMarketData:
        """
        Fetch candles from the first exchange that serves them.

        Args:
            symbol: Unified ccxt symbol, e.g. ``"BTC/USDT"``
            since: Start timestamp in Unix milliseconds
            limit: Maximum candles to fetch
            timeframe: ccxt timeframe string
            coin_id: Coin id stamped on every candle (defaults to the symbol)

        Returns:
            ParsedMarketData with ``source == "exchange"``, sorted by timestamp

        Raises:
            AllExchangesFailedError: If no exchange returned candles
        """
        served_by: dict[str, str] = {}

        def fetch_one(slug: str) -> list[Candle]:
            rows = self.fetch_ohlcv(slug, symbol, since, limit, timeframe)
            converted = [_row_to_candle(row, coin_id or symbol) for row in rows]
            valid = [candle for candle in converted if candle is not None]
            if not valid:
                raise EmptyExchangeResponseError(slug, symbol)
            if len(valid) < len(converted):
                logger.warning(
                    "Dropped %d incomplete candles for %s from %s",
                    len(converted) - len(valid),
                    symbol,
                    slug,
                    extra={"symbol": symbol, "exchange": slug},
                )
            served_by["exchange"] = slug
            return valid

        candles = sorted(
            self._fallback(symbol, "fetch_ohlcv", fetch_one),
            key=lambda candle: candle.timestamp,
        )
        logger.info(
            "Fetched %d candles for %s from %s",
            len(candles),
            symbol,
            served_by.get("exchange"),
            extra={"symbol": symbol, "exchange": served_by.get("exchange")},
        )
        return ParsedMarketData(
            data=candles,
            record_count=len(candles),
            date_range=DateRange(start=candles[0].timestamp, end=candles[-1].timestamp),
            source=DataSource.EXCHANGE.value,
        )

    def fetch_ticker(self, slug: str, symbol: str) -> dict[str, Any]:
        client = self.manager.get_public_client(slug)
        self._ensure_markets(slug, client, symbol)
        ticker = self._guarded(slug, lambda: client.fetch_ticker(symbol))
        if not ticker:
            raise EmptyExchangeResponseError(slug, symbol)
        return dict(ticker, exchange=slug)

    def fetch_ticker_with_fallback(self, symbol: str) -> dict[str, Any]:
        """Latest ticker for ``symbol``; the serving exchange is added under ``exchange``.

        Raises:
            AllExchangesFailedError: If no exchange returned a ticker
        """
        return self._fallback(symbol, "fetch_ticker", lambda slug: self.fetch_ticker(slug, symbol))


def _row_to_candle(row: Sequence[float | None], coin_id: str) -> Candle | None:
    """Candle from a ccxt OHLCV row; None when timestamp or close is missing.

    Missing open/high/low default to close and missing volume to 0.
    """
    if len(row) < 6:
        return None
    timestamp, open_, high, low, close, volume = row[:6]
    if timestamp is None or close is None:
        return None
    return Candle(
        timestamp=datetime.fromtimestamp(float(timestamp) / 1000, tz=UTC),
        open=float(close if open_ is None else open_),
        high=float(close if high is None else high),
        low=float(close if low is None else low),
        close=float(close),
        volume=float(volume or 0.0),
        coin_id=coin_id,
    )
