from __future__ import annotations

import logging

import pytest

from libs.backtest.coin_resolver import (
    INSTRUMENT_UNIVERSE_TRUNCATED,
    CoinResolver,
    extract_base_symbol,
)
from libs.backtest.exceptions import (
    InstrumentUniverseTruncationError,
    InstrumentUniverseUnresolvedError,
)
from libs.backtest.models import Coin, MarketDataSet
from libs.backtest.resolution_metrics import (
    backtest_coin_resolution_total,
    backtest_instruments_resolved_total,
)


def _dataset(*instruments: str, max_instruments: int = 50) -> MarketDataSet:
    return MarketDataSet(
        id="ds-1",
        storage_location="datasets/x.csv",
        instrument_universe=instruments,
        max_instruments=max_instruments,
    )


@pytest.mark.parametrize(
    ("symbol", "expected"),
    [
        ("ETHUSDT", "ETH"),
        ("SOLUSD", "SOL"),
        ("LINKBTC", "LINK"),
        ("ADAETH", "ADA"),
        ("OPUSD", None),
        ("BTC", None),
        ("USDT", None),
    ],
)
def test_extract_base_symbol(symbol, expected):
    assert extract_base_symbol(symbol) == expected


def test_direct_and_pair_symbols_keep_requested_order(coin_catalog):
    resolver = CoinResolver(coin_catalog)

    result = resolver.resolve_coins(_dataset("ETHUSDT", "btc", "SOLUSD"))

    assert [coin.id for coin in result.coins] == ["ethereum", "bitcoin", "solana"]
    assert result.warnings == []
    # One batch for direct symbols, one for the pair bases
    assert coin_catalog.batch_calls == [["ETHUSDT", "BTC", "SOLUSD"], ["ETH", "SOL"]]


def test_duplicates_collapse_to_first_position(coin_catalog):
    resolver = CoinResolver(coin_catalog)

    result = resolver.resolve_coins(_dataset("ETH", "BTC", "ETHUSDT", "eth"))

    assert [coin.id for coin in result.coins] == ["ethereum", "bitcoin"]


def test_no_second_lookup_when_everything_resolves(coin_catalog):
    CoinResolver(coin_catalog).resolve_coins(_dataset("BTC", "ETH"))
    assert len(coin_catalog.batch_calls) == 1


def test_partial_resolution_logs_unresolved(coin_catalog, caplog):
    resolver = CoinResolver(coin_catalog)

    with caplog.at_level(logging.WARNING, logger="libs.backtest.coin_resolver"):
        result = resolver.resolve_coins(_dataset("BTC", "DOGEUSDT", "XX"))

    assert [coin.id for coin in result.coins] == ["bitcoin"]
    assert any("DOGEUSDT, XX" in record.getMessage() for record in caplog.records)


def test_nothing_resolved_raises(coin_catalog):
    with pytest.raises(InstrumentUniverseUnresolvedError) as exc_info:
        CoinResolver(coin_catalog).resolve_coins(_dataset("DOGE", "PEPEUSDT"))

    assert exc_info.value.unresolved == ["DOGE", "PEPEUSDT"]
    assert "DOGE, PEPEUSDT" in str(exc_info.value)


def test_empty_universe_raises_without_lookup(coin_catalog):
    with pytest.raises(InstrumentUniverseUnresolvedError):
        CoinResolver(coin_catalog).resolve_coins(_dataset())
    assert coin_catalog.batch_calls == []


def test_truncation_flags_warning_once(coin_catalog):
    result = CoinResolver(coin_catalog).resolve_coins(
        _dataset("BTC", "ETH", "SOL", "USDC", max_instruments=2)
    )

    assert [coin.id for coin in result.coins] == ["bitcoin", "ethereum"]
    assert result.warnings == [INSTRUMENT_UNIVERSE_TRUNCATED]


def test_truncation_with_confirmation_raises(coin_catalog):
    with pytest.raises(InstrumentUniverseTruncationError) as exc_info:
        CoinResolver(coin_catalog).resolve_coins(
            _dataset("BTC", "ETH", "SOL", max_instruments=2), require_confirmation=True
        )

    assert exc_info.value.resolved_count == 3
    assert exc_info.value.max_instruments == 2


def test_universe_at_limit_is_not_truncated(coin_catalog):
    result = CoinResolver(coin_catalog).resolve_coins(
        _dataset("BTC", "ETH", max_instruments=2), require_confirmation=True
    )
    assert len(result.coins) == 2
    assert result.warnings == []


def test_first_catalog_match_wins_for_shared_symbol(fake_catalog_cls):
    catalog = fake_catalog_cls(
        [Coin(id="btc-a", symbol="BTC"), Coin(id="btc-b", symbol="BTC")]
    )
    result = CoinResolver(catalog).resolve_coins(_dataset("BTC"))
    # The fake returns coins in reverse order
    assert [coin.id for coin in result.coins] == ["btc-b"]


def _resolution_count(result: str) -> float:
    return backtest_coin_resolution_total.labels(result=result)._value.get()


def _resolved_count(method: str) -> float:
    return backtest_instruments_resolved_total.labels(method=method)._value.get()


def test_metrics_count_direct_and_extracted_coins(coin_catalog):
    direct_before = _resolved_count("direct")
    extracted_before = _resolved_count("symbol_extraction")
    success_before = _resolution_count("success")

    CoinResolver(coin_catalog).resolve_coins(_dataset("ETHUSDT", "btc", "SOLUSD"))

    assert _resolved_count("direct") == direct_before + 1
    assert _resolved_count("symbol_extraction") == extracted_before + 2
    assert _resolution_count("success") == success_before + 1


def test_metrics_record_partial_resolution(coin_catalog):
    partial_before = _resolution_count("partial")
    extracted_before = _resolved_count("symbol_extraction")

    CoinResolver(coin_catalog).resolve_coins(_dataset("BTC", "NOPE"))

    assert _resolution_count("partial") == partial_before + 1
    # NOPE has no pair suffix, so no base lookup happens
    assert _resolved_count("symbol_extraction") == extracted_before


def test_metrics_record_failed_resolution(coin_catalog):
    failed_before = _resolution_count("failed")

    with pytest.raises(InstrumentUniverseUnresolvedError):
        CoinResolver(coin_catalog).resolve_coins(_dataset("NOPE", "XYZUSDT"))

    assert _resolution_count("failed") == failed_before + 1
