"""Tests for quotefeed.market.sync."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from quotefeed.core.config import StorageConfig
from quotefeed.core.models import ExchangeRate, FetchOutcome, FetchState, Listing, PricePoint, Quote
from quotefeed.market.store import SqliteMarketStore
from quotefeed.market.sync import MarketDataSync, market_open
from quotefeed.market.tencent import as_listing
from tests.conftest import SHANGHAI, TODAY


class Interrupted(Exception):
    pass


class FakeProvider:
    """In-memory provider with canned answers."""

    name = "fake"

    def __init__(self, quotes=None, history=None, rates=None, chunk_size=1):
        self.quotes: dict[str, Quote] = quotes or {}
        self.history: dict[str, list[PricePoint]] = history or {}
        self.rates: list[ExchangeRate] = rates or []
        self.chunk_size = chunk_size
        self.rate_calls = 0
        self.closed = False

    def today(self) -> date:
        return TODAY

    async def iter_batch_quotes(self, listings, *, outcomes=None):
        unique = [as_listing(item) for item in listings]
        try:
            for i in range(0, len(unique), self.chunk_size):
                chunk = {
                    listing: self.quotes[listing.ticker]
                    for listing in unique[i : i + self.chunk_size]
                    if listing.ticker in self.quotes
                }
                if outcomes is not None:
                    outcomes.append(FetchOutcome(unit=f"batch:{i}", state=FetchState.PARSED, records=len(chunk)))
                yield chunk
        finally:
            self.closed = True

    async def fetch_price_history(self, ticker, exchange, start, end, *, outcomes=None):
        return [p for p in self.history.get(ticker, []) if start <= p.date <= end]

    async def fetch_exchange_rate_range(self, from_currency, to_currency, start, end, *, outcomes=None):
        return [r for r in self.rates if start <= r.date <= end]

    async def fetch_exchange_rate(self, from_currency, to_currency, on_date=None, *, outcomes=None):
        self.rate_calls += 1
        for r in self.rates:
            if r.date == on_date:
                return r
        return None


def _quote(ticker: str, price: str | None) -> Quote:
    return Quote(
        symbol=ticker,
        provider_symbol=ticker,
        price=Decimal(price) if price is not None else None,
    )


@pytest.fixture
async def store():
    s = SqliteMarketStore(StorageConfig(sqlite_path=":memory:"))
    await s.initialize()
    yield s
    await s.close()


class TestMarketOpen:
    @pytest.mark.parametrize(
        "hour, minute, expected",
        [(9, 29, False), (9, 30, True), (11, 0, True), (12, 0, False), (13, 0, True), (16, 0, True), (16, 1, False)],
    )
    def test_weekday_sessions(self, hour, minute, expected):
        assert market_open(datetime(2024, 6, 14, hour, minute, tzinfo=SHANGHAI)) is expected

    def test_weekend_closed(self):
        assert market_open(datetime(2024, 6, 15, 10, 0, tzinfo=SHANGHAI)) is False

    def test_converts_timezone(self):
        utc = datetime(2024, 6, 14, 2, 0, tzinfo=ZoneInfo("UTC"))
        assert market_open(utc) is True

    def test_sessions_follow_given_timezone(self):
        # 10:00 in Shanghai is 02:00 UTC, outside the sessions on a UTC clock
        now = datetime(2024, 6, 14, 10, 0, tzinfo=SHANGHAI)
        assert market_open(now, tz=ZoneInfo("UTC")) is False
        assert market_open(now.replace(hour=19), tz=ZoneInfo("UTC")) is True


class TestSyncRealtime:
    async def test_stores_priceable_quotes(self, store):
        provider = FakeProvider(quotes={"600000": _quote("600000", "8.12"), "000001": _quote("000001", None)})
        sync = MarketDataSync(provider, store)
        report = await sync.sync_realtime(
            [Listing(ticker="600000", exchange="XSHG"), Listing(ticker="000001", exchange="XSHE")]
        )
        assert report.requested == 2
        assert report.stored == 1

        rows = await store.get_prices("600000", "XSHG", TODAY, TODAY)
        assert rows[0].price == Decimal("8.12")
        assert rows[0].currency == "CNY"
        assert rows[0].source == "fake"
        assert await store.get_prices("000001", "XSHE", TODAY, TODAY) == []

    async def test_dotted_listing_normalized(self, store):
        provider = FakeProvider(quotes={"00700.HK": _quote("00700", "301")})
        report = await MarketDataSync(provider, store).sync_realtime(["00700.HK"])
        assert report.stored == 1
        rows = await store.get_prices("00700", "XHKG", TODAY, TODAY)
        assert rows[0].currency == "HKD"

    async def test_unknown_exchange_uses_base_currency(self, store):
        provider = FakeProvider(quotes={"AAPL": _quote("AAPL", "190")})
        await MarketDataSync(provider, store, base_currency="USD").sync_realtime([("AAPL", "XNAS")])
        rows = await store.get_prices("AAPL", None, TODAY, TODAY)
        assert rows[0].currency == "USD"

    async def test_empty_input(self, store):
        report = await MarketDataSync(FakeProvider(), store).sync_realtime([])
        assert report.requested == 0
        assert report.outcomes == []

    async def test_chunks_persisted_before_cancellation(self, store):
        provider = FakeProvider(
            quotes={"600000": _quote("600000", "8"), "600001": _quote("600001", "9")},
        )

        original = provider.iter_batch_quotes

        async def interrupted(listings, *, outcomes=None):
            async for chunk in original(listings, outcomes=outcomes):
                yield chunk
                raise Interrupted

        provider.iter_batch_quotes = interrupted
        with pytest.raises(Interrupted):
            await MarketDataSync(provider, store).sync_realtime(
                [("600000", "XSHG"), ("600001", "XSHG")]
            )
        assert len(await store.get_prices("600000", "XSHG", TODAY, TODAY)) == 1

    async def test_outcomes_collected(self, store):
        provider = FakeProvider(quotes={"600000": _quote("600000", "8")}, chunk_size=1)
        report = await MarketDataSync(provider, store).sync_realtime(
            [("600000", "XSHG"), ("600001", "XSHG")]
        )
        assert report.parsed == 2

    async def test_past_date_never_gets_live_price(self, store):
        past = TODAY - timedelta(days=30)
        provider = FakeProvider(quotes={"600000": _quote("600000", "9.99")})
        report = await MarketDataSync(provider, store).sync_realtime([("600000", "XSHG")], on_date=past)
        assert report.stored == 0
        assert await store.get_prices("600000", "XSHG", past, past) == []
        assert await store.get_prices("600000", "XSHG", TODAY, TODAY) == []

    async def test_past_date_served_from_history(self, store, sample_price_point):
        provider = FakeProvider(
            quotes={"600000": _quote("600000", "9.99")},
            history={"600000": [sample_price_point]},
        )
        report = await MarketDataSync(provider, store).sync_realtime(
            [("600000", "XSHG")], on_date=sample_price_point.date
        )
        assert report.stored == 1
        rows = await store.get_prices("600000", "XSHG", sample_price_point.date, sample_price_point.date)
        assert [r.price for r in rows] == [Decimal("10.5")]

    async def test_future_date_stores_nothing(self, store):
        future = TODAY + timedelta(days=1)
        provider = FakeProvider(quotes={"600000": _quote("600000", "9.99")})
        report = await MarketDataSync(provider, store).sync_realtime([("600000", "XSHG")], on_date=future)
        assert report.requested == 1
        assert report.stored == 0
        assert await store.get_prices("600000", "XSHG", future, future) == []

    async def test_quote_stream_closed_when_store_fails(self, store, monkeypatch):
        provider = FakeProvider(
            quotes={"600000": _quote("600000", "8"), "600001": _quote("600001", "9")},
        )

        async def failing_upsert(points):
            raise Interrupted

        monkeypatch.setattr(store, "upsert_prices", failing_upsert)
        with pytest.raises(Interrupted):
            await MarketDataSync(provider, store).sync_realtime(
                [("600000", "XSHG"), ("600001", "XSHG")]
            )
        assert provider.closed


class TestSyncHistory:
    async def test_backfill(self, store, sample_price_point):
        provider = FakeProvider(history={"600000": [sample_price_point]})
        report = await MarketDataSync(provider, store).sync_history(
            [("600000", "XSHG"), ("000001", "XSHE")], date(2024, 1, 1), date(2024, 1, 31)
        )
        assert report.requested == 2
        assert report.stored == 1
        assert await store.get_prices("600000", "XSHG", date(2024, 1, 1), date(2024, 1, 31)) == [
            sample_price_point
        ]


class TestRates:
    async def test_sync_rates(self, store, sample_exchange_rate):
        provider = FakeProvider(rates=[sample_exchange_rate])
        report = await MarketDataSync(provider, store).sync_rates("USD", "CNY", date(2024, 1, 1), date(2024, 1, 31))
        assert report.stored == 1

    async def test_find_or_fetch_caches(self, store, sample_exchange_rate):
        provider = FakeProvider(rates=[sample_exchange_rate])
        sync = MarketDataSync(provider, store)
        first = await sync.find_or_fetch_rate("USD", "CNY", date(2024, 1, 2))
        second = await sync.find_or_fetch_rate("USD", "CNY", date(2024, 1, 2))
        assert first == second == sample_exchange_rate
        assert provider.rate_calls == 1

    async def test_find_or_fetch_without_cache(self, store, sample_exchange_rate):
        provider = FakeProvider(rates=[sample_exchange_rate])
        sync = MarketDataSync(provider, store)
        await sync.find_or_fetch_rate("USD", "CNY", date(2024, 1, 2), cache=False)
        assert await store.get_rate("USD", "CNY", date(2024, 1, 2)) is None

    async def test_find_or_fetch_missing(self, store):
        assert await MarketDataSync(FakeProvider(), store).find_or_fetch_rate("USD", "CNY", date(2024, 1, 2)) is None
