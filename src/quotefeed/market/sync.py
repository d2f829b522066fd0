"""Fetch-and-persist jobs: the caller side of the cache-writer contract.

A scheduler (outside this package) calls these periodically. Records are
written as each unit of work completes, so a job cancelled half way keeps
whatever it had already parsed.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from contextlib import aclosing
from datetime import date, datetime, time
from zoneinfo import ZoneInfo

from quotefeed.core.models import (
    ExchangeRate,
    Listing,
    PricePoint,
    Quote,
    SyncReport,
)
from quotefeed.market.provider import MarketDataProvider
from quotefeed.market.store import MarketStore
from quotefeed.market.symbols import DEFAULT_CURRENCY, currency_for_exchange, resolve_exchange
from quotefeed.market.tencent import ListingLike, as_listing

logger = logging.getLogger(__name__)

MARKET_TIMEZONE = ZoneInfo("Asia/Shanghai")

# A-share and H-share continuous trading, Beijing time. The afternoon runs to
# the Hong Kong close.
_SESSIONS: tuple[tuple[time, time], ...] = (
    (time(9, 30), time(11, 30)),
    (time(13, 0), time(16, 0)),
)


def market_open(now: datetime | None = None, tz: ZoneInfo = MARKET_TIMEZONE) -> bool:
    """True during weekday A/H-share trading sessions.

    Session times are wall-clock times in ``tz``, normally the configured
    ``ProviderConfig.market_timezone``.
    """
    now = (now or datetime.now(tz)).astimezone(tz)
    if now.weekday() >= 5:
        return False
    current = now.time()
    return any(start <= current <= end for start, end in _SESSIONS)


class MarketDataSync:
    """Fetches normalized records from a provider and upserts them.

    Parameters
    ----------
    provider : MarketDataProvider
        Where records come from.
    store : MarketStore
        Where records go. Keys are upserted; nothing is read back to decide
        what to fetch, except by ``find_or_fetch_rate``.
    base_currency : str
        Currency assumed for listings on an unknown exchange.
    """

    def __init__(
        self,
        provider: MarketDataProvider,
        store: MarketStore,
        base_currency: str = DEFAULT_CURRENCY,
    ) -> None:
        self._provider = provider
        self._store = store
        self._base_currency = base_currency

    def _to_price_point(self, listing: Listing, quote: Quote, on_date: date) -> PricePoint:
        ticker, mic = resolve_exchange(listing.ticker, listing.exchange)
        return PricePoint(
            symbol=ticker,
            exchange=mic,
            date=on_date,
            price=quote.price,
            currency=currency_for_exchange(mic, default=self._base_currency),
            source=self._provider.name,
        )

    async def sync_realtime(
        self,
        listings: Iterable[ListingLike],
        on_date: date | None = None,
    ) -> SyncReport:
        """Store the live price of every listing that has one.

        A live price is only ever stored under today's date in the market
        timezone. An ``on_date`` before today is served from the closing
        history instead, and a future ``on_date`` stores nothing.
        """
        unique = list(dict.fromkeys(as_listing(item) for item in listings))
        today = self._provider.today()
        on_date = on_date or today
        if on_date < today:
            logger.info("%s is a closed day, syncing closes instead of live prices", on_date)
            return await self.sync_history(unique, on_date, on_date)

        report = SyncReport(requested=len(unique))
        if on_date > today:
            logger.warning("Cannot store live prices for future date %s", on_date)
            return report
        if not unique:
            logger.info("No securities to update")
            return report

        logger.info("Updating real-time prices for %d securities", len(unique))

        # aclosing() cancels outstanding group requests as soon as we stop
        # iterating, including when an upsert raises.
        async with aclosing(
            self._provider.iter_batch_quotes(unique, outcomes=report.outcomes)
        ) as chunks:
            async for chunk in chunks:
                points = [
                    self._to_price_point(listing, quote, on_date)
                    for listing, quote in chunk.items()
                    if quote.is_priceable
                ]
                report.stored += await self._store.upsert_prices(points)

        missing = report.requested - report.stored
        if missing:
            logger.warning("No real-time data for %d of %d securities", missing, report.requested)
        return report

    async def sync_history(
        self,
        listings: Iterable[ListingLike],
        start: date,
        end: date,
    ) -> SyncReport:
        """Backfill daily closes in ``[start, end]``, one security at a time."""
        unique = list(dict.fromkeys(as_listing(item) for item in listings))
        report = SyncReport(requested=len(unique))

        for listing in unique:
            points = await self._provider.fetch_price_history(
                listing.ticker, listing.exchange, start, end, outcomes=report.outcomes
            )
            if not points:
                logger.warning("No history for %s between %s and %s", listing.ticker, start, end)
                continue
            report.stored += await self._store.upsert_prices(points)

        return report

    async def sync_rates(
        self,
        from_currency: str,
        to_currency: str,
        start: date,
        end: date,
    ) -> SyncReport:
        """Backfill daily exchange rates in ``[start, end]``."""
        report = SyncReport(requested=1)
        rates = await self._provider.fetch_exchange_rate_range(
            from_currency, to_currency, start, end, outcomes=report.outcomes
        )
        report.stored = await self._store.upsert_rates(rates)
        return report

    async def find_or_fetch_rate(
        self,
        from_currency: str,
        to_currency: str,
        on_date: date | None = None,
        cache: bool = True,
    ) -> ExchangeRate | None:
        """Cached rate for the day, or fetch it (and cache it unless told not to)."""
        on_date = on_date or self._provider.today()
        cached = await self._store.get_rate(from_currency, to_currency, on_date)
        if cached is not None:
            return cached

        rate = await self._provider.fetch_exchange_rate(from_currency, to_currency, on_date)
        if rate is None:
            return None
        if cache:
            await self._store.upsert_rates([rate])
        return rate
