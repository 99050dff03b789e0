"""
Coin catalog lookups used by instrument and quote currency resolution.

The catalog itself (the ``coins`` table and its CRUD surface) is owned by the
platform API; this module only reads it.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from libs.backtest.models import Coin


class CoinCatalog(Protocol):
    def get_coin_by_symbol(self, symbol: str) -> Coin | None:
        """Exact (case-insensitive) symbol lookup."""
        ...

    def get_multiple_coins_by_symbol(self, symbols: Sequence[str]) -> list[Coin]:
        """Batch lookup. Result order is unspecified; missing symbols are omitted."""
        ...


class PostgresCoinCatalog:
    """Coin catalog backed by the platform ``coins`` table."""

    def __init__(self, db_pool: ConnectionPool):
        self.db_pool = db_pool

    def get_coin_by_symbol(self, symbol: str) -> Coin | None:
        sql = "SELECT id, symbol, name FROM coins WHERE UPPER(symbol) = %s ORDER BY id LIMIT 1"
        with self.db_pool.connection() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(sql, (symbol.upper(),))
            row = cur.fetchone()
        if row is None:
            return None
        return Coin.from_dict(row)

    def get_multiple_coins_by_symbol(self, symbols: Sequence[str]) -> list[Coin]:
        if not symbols:
            return []
        sql = "SELECT id, symbol, name FROM coins WHERE UPPER(symbol) = ANY(%s)"
        with self.db_pool.connection() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(sql, ([symbol.upper() for symbol in symbols],))
            rows = cur.fetchall()
        return [Coin.from_dict(row) for row in rows]
