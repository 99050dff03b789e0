"""Quote currency resolution with a bounded stablecoin fallback chain."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from libs.backtest.coin_catalog import CoinCatalog
from libs.backtest.exceptions import QuoteCurrencyNotFoundError
from libs.backtest.models import Coin

logger = logging.getLogger(__name__)

DEFAULT_QUOTE_CURRENCY = "USDT"
DEFAULT_QUOTE_CURRENCY_FALLBACK: tuple[str, ...] = ("USDT", "USDC", "BUSD", "DAI")


class QuoteCurrencyResolver:
    """Picks the pricing denominator for a backtest."""

    def __init__(self, catalog: CoinCatalog):
        self.catalog = catalog

    def resolve_quote_currency(
        self,
        preferred: str | None = DEFAULT_QUOTE_CURRENCY,
        fallback_chain: Sequence[str] = DEFAULT_QUOTE_CURRENCY_FALLBACK,
    ) -> Coin:
        """
        Resolve ``preferred`` or the first usable fallback.

        Symbols are compared case-insensitively and each is tried at most once.
        Virtual placeholder coins are skipped even when they match.

        Raises:
            QuoteCurrencyNotFoundError: No candidate resolved to a real coin
        """
        preferred_symbol = (preferred or DEFAULT_QUOTE_CURRENCY).strip().upper()

        candidates: list[str] = [preferred_symbol]
        for symbol in fallback_chain:
            normalized = symbol.strip().upper()
            if normalized and normalized not in candidates:
                candidates.append(normalized)

        attempted: list[str] = []
        for symbol in candidates:
            attempted.append(symbol)
            coin = self.catalog.get_coin_by_symbol(symbol)
            if coin is None:
                continue
            if coin.is_virtual:
                logger.warning(
                    "Skipping virtual quote currency candidate",
                    extra={"symbol": symbol, "coin_id": coin.id},
                )
                continue
            if symbol != preferred_symbol:
                logger.info(
                    "Quote currency %s unavailable, falling back to %s",
                    preferred_symbol,
                    symbol,
                    extra={"attempted": attempted},
                )
            return coin

        raise QuoteCurrencyNotFoundError(attempted)
