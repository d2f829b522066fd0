"""Price and exchange-rate cache: Protocol definition, SQLite implementation, factory.

Records are upserted by key, so re-fetching a day overwrites it and never
duplicates it: ``(symbol, exchange, date)`` for prices and
``(from_currency, to_currency, date)`` for rates.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import ClassVar, Protocol, runtime_checkable

import aiosqlite

from quotefeed.core.config import StorageConfig
from quotefeed.core.exceptions import StorageError
from quotefeed.core.models import ExchangeRate, PricePoint, StorageBackend

logger = logging.getLogger(__name__)

# NULL never collides in a SQLite key, so an unresolved exchange is stored as ''
_NO_EXCHANGE = ""


@runtime_checkable
class MarketStore(Protocol):
    """Persistence contract for normalized market records."""

    async def upsert_prices(self, points: Sequence[PricePoint]) -> int: ...
    async def upsert_rates(self, rates: Sequence[ExchangeRate]) -> int: ...
    async def get_prices(
        self, symbol: str, exchange: str | None, start: date, end: date
    ) -> list[PricePoint]: ...
    async def get_rate(
        self, from_currency: str, to_currency: str, on_date: date
    ) -> ExchangeRate | None: ...
    async def get_rates(
        self, from_currency: str, to_currency: str, start: date, end: date
    ) -> list[ExchangeRate]: ...
    async def initialize(self) -> None: ...
    async def close(self) -> None: ...


class SqliteMarketStore:
    """SQLite implementation of MarketStore.

    Decimals are stored as TEXT so prices round-trip exactly.
    """

    _MIGRATIONS: ClassVar[dict[int, tuple[str, list[str]]]] = {
        1: (
            "Initial schema",
            [
                """CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT DEFAULT (datetime('now'))
                )""",
                """CREATE TABLE IF NOT EXISTS security_prices (
                    symbol TEXT NOT NULL,
                    exchange TEXT NOT NULL DEFAULT '',
                    date TEXT NOT NULL,
                    price TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    source TEXT NOT NULL DEFAULT 'unknown',
                    updated_at TEXT DEFAULT (datetime('now')),
                    PRIMARY KEY (symbol, exchange, date)
                )""",
                """CREATE TABLE IF NOT EXISTS exchange_rates (
                    from_currency TEXT NOT NULL,
                    to_currency TEXT NOT NULL,
                    date TEXT NOT NULL,
                    rate TEXT NOT NULL,
                    source TEXT NOT NULL DEFAULT 'unknown',
                    updated_at TEXT DEFAULT (datetime('now')),
                    PRIMARY KEY (from_currency, to_currency, date)
                )""",
                "CREATE INDEX IF NOT EXISTS idx_prices_symbol ON security_prices(symbol)",
            ],
        ),
    }

    def __init__(self, config: StorageConfig) -> None:
        self._path = config.sqlite_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open connection, enable WAL, run migrations."""
        try:
            if self._path != ":memory:":
                Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(self._path)
            self._db.row_factory = aiosqlite.Row
            await self._db.execute("PRAGMA journal_mode=WAL")
            current = await self._get_schema_version()
            await self._apply_migrations(current)
            await self._db.commit()
        except Exception as e:
            raise StorageError(
                f"Failed to initialize SQLite store: {e}",
                context={"operation": "initialize", "path": self._path},
            ) from e

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageError(
                "Store is not initialized",
                context={"operation": "connect", "path": self._path},
            )
        return self._db

    # --- Schema Migration ---

    async def _get_schema_version(self) -> int:
        try:
            async with self._conn().execute(
                "SELECT MAX(version) FROM schema_version"
            ) as cursor:
                row = await cursor.fetchone()
            return row[0] if row[0] is not None else 0
        except aiosqlite.OperationalError:
            return 0

    async def _apply_migrations(self, current_version: int) -> None:
        db = self._conn()
        for version in sorted(self._MIGRATIONS.keys()):
            if version <= current_version:
                continue
            desc, statements = self._MIGRATIONS[version]
            logger.info("Applying migration %d: %s", version, desc)
            for sql in statements:
                await db.execute(sql)
            await db.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )

    # --- Prices ---

    async def upsert_prices(self, points: Sequence[PricePoint]) -> int:
        """Insert or overwrite prices. Returns the number of rows written."""
        if not points:
            return 0
        db = self._conn()
        try:
            await db.executemany(
                """INSERT INTO security_prices
                   (symbol, exchange, date, price, currency, source)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT (symbol, exchange, date) DO UPDATE SET
                       price = excluded.price,
                       currency = excluded.currency,
                       source = excluded.source,
                       updated_at = datetime('now')""",
                [
                    (
                        p.symbol,
                        p.exchange or _NO_EXCHANGE,
                        p.date.isoformat(),
                        str(p.price),
                        p.currency,
                        p.source,
                    )
                    for p in points
                ],
            )
            await db.commit()
        except Exception as e:
            raise StorageError(
                f"Failed to upsert prices: {e}",
                context={"operation": "upsert", "table": "security_prices"},
            ) from e

        logger.info("Stored %d price points", len(points))
        return len(points)

    async def get_prices(
        self,
        symbol: str,
        exchange: str | None,
        start: date,
        end: date,
    ) -> list[PricePoint]:
        """Stored prices for one security in ``[start, end]``, sorted by date."""
        try:
            async with self._conn().execute(
                """SELECT * FROM security_prices
                   WHERE symbol = ? AND exchange = ? AND date >= ? AND date <= ?
                   ORDER BY date""",
                (symbol, exchange or _NO_EXCHANGE, start.isoformat(), end.isoformat()),
            ) as cursor:
                rows = await cursor.fetchall()
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to query prices: {e}",
                context={"operation": "query", "table": "security_prices"},
            ) from e
        return [self._row_to_price(row) for row in rows]

    # --- Exchange Rates ---

    async def upsert_rates(self, rates: Sequence[ExchangeRate]) -> int:
        """Insert or overwrite rates. Returns the number of rows written."""
        if not rates:
            return 0
        db = self._conn()
        try:
            await db.executemany(
                """INSERT INTO exchange_rates
                   (from_currency, to_currency, date, rate, source)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT (from_currency, to_currency, date) DO UPDATE SET
                       rate = excluded.rate,
                       source = excluded.source,
                       updated_at = datetime('now')""",
                [
                    (
                        r.from_currency,
                        r.to_currency,
                        r.date.isoformat(),
                        str(r.rate),
                        r.source,
                    )
                    for r in rates
                ],
            )
            await db.commit()
        except Exception as e:
            raise StorageError(
                f"Failed to upsert exchange rates: {e}",
                context={"operation": "upsert", "table": "exchange_rates"},
            ) from e

        logger.info("Stored %d exchange rates", len(rates))
        return len(rates)

    async def get_rate(
        self,
        from_currency: str,
        to_currency: str,
        on_date: date,
    ) -> ExchangeRate | None:
        rates = await self.get_rates(from_currency, to_currency, on_date, on_date)
        return rates[0] if rates else None

    async def get_rates(
        self,
        from_currency: str,
        to_currency: str,
        start: date,
        end: date,
    ) -> list[ExchangeRate]:
        try:
            async with self._conn().execute(
                """SELECT * FROM exchange_rates
                   WHERE from_currency = ? AND to_currency = ?
                     AND date >= ? AND date <= ?
                   ORDER BY date""",
                (
                    from_currency.upper(),
                    to_currency.upper(),
                    start.isoformat(),
                    end.isoformat(),
                ),
            ) as cursor:
                rows = await cursor.fetchall()
        except Exception as e:
            if isinstance(e, StorageError):
                raise
            raise StorageError(
                f"Failed to query exchange rates: {e}",
                context={"operation": "query", "table": "exchange_rates"},
            ) from e
        return [self._row_to_rate(row) for row in rows]

    # --- Row Mapping ---

    @staticmethod
    def _row_to_price(row: aiosqlite.Row) -> PricePoint:
        return PricePoint(
            symbol=row["symbol"],
            exchange=row["exchange"] or None,
            date=date.fromisoformat(row["date"]),
            price=Decimal(row["price"]),
            currency=row["currency"],
            source=row["source"],
        )

    @staticmethod
    def _row_to_rate(row: aiosqlite.Row) -> ExchangeRate:
        return ExchangeRate(
            from_currency=row["from_currency"],
            to_currency=row["to_currency"],
            date=date.fromisoformat(row["date"]),
            rate=Decimal(row["rate"]),
            source=row["source"],
        )


async def create_store(config: StorageConfig) -> SqliteMarketStore:
    """Create and initialize a storage backend based on configuration."""
    if config.backend == StorageBackend.SQLITE:
        store = SqliteMarketStore(config)
        await store.initialize()
        return store
    raise StorageError(
        f"Unsupported storage backend: {config.backend}",
        context={"operation": "create_store", "backend": str(config.backend)},
    )
