"""Integration tests: config -> provider -> sync -> SQLite, with a mocked upstream."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import httpx
import pytest
import respx

from quotefeed.core.config import FeedConfig
from quotefeed.market import MarketDataSync, create_provider, create_store
from quotefeed.market.provider import FXProvider, MarketDataProvider, QuoteProvider
from quotefeed.market.transport import QuoteTransport
from tests.conftest import HISTORY_URL, QUOTE_URL, kline_body, quote_line


def _history(request: httpx.Request) -> httpx.Response:
    symbol, _, start, *_ = request.url.params["param"].split(",")
    year = start[:4]
    if symbol == "whUSDCNY":
        days = [[f"{year}-01-02", "7.1", "7.09"], [f"{year}-01-03", "7.1", "7.11"]]
    else:
        days = [[f"{year}-01-02", "10", "10.5"], [f"{year}-01-03", "10", "-1"]]
    return httpx.Response(200, text=kline_body(symbol, days, var=f"kline_day{year}"))


def _quotes(request: httpx.Request) -> httpx.Response:
    symbols = request.url.path.removeprefix("/q=").split(",")
    return httpx.Response(200, text="".join(quote_line(s, price="8.00") for s in symbols if s != "sz000002"))


@pytest.fixture
async def pipeline(feed_config: FeedConfig):
    provider = create_provider(feed_config, QuoteTransport(feed_config.http))
    store = await create_store(feed_config.storage)
    yield provider, store, MarketDataSync(provider, store)
    await store.close()
    await provider.close()


class TestProviderSelection:
    async def test_configured_provider_satisfies_capabilities(self, pipeline):
        provider, _, _ = pipeline
        assert isinstance(provider, QuoteProvider)
        assert isinstance(provider, FXProvider)
        assert isinstance(provider, MarketDataProvider)
        assert provider.name == "tencent"


class TestPipeline:
    @respx.mock
    async def test_history_backfill_end_to_end(self, pipeline):
        _, store, sync = pipeline
        respx.get(url__startswith=HISTORY_URL).mock(side_effect=_history)

        report = await sync.sync_history(["600000.SH", ("00700", "XHKG")], date(2023, 12, 1), date(2024, 1, 31))

        # Per symbol: 2023-01-02 falls outside the range and both Jan 3 closes are negative
        assert report.requested == 2
        assert report.stored == 2
        assert len(report.outcomes) == 4
        sh = await store.get_prices("600000", "XSHG", date(2023, 1, 1), date(2024, 12, 31))
        assert [(p.date, p.price) for p in sh] == [(date(2024, 1, 2), Decimal("10.5"))]
        hk = await store.get_prices("00700", "XHKG", date(2024, 1, 1), date(2024, 1, 31))
        assert hk[0].currency == "HKD"

    @respx.mock
    async def test_realtime_sync_with_fallback(self, pipeline):
        provider, store, sync = pipeline

        def handler(request: httpx.Request) -> httpx.Response:
            if "," in request.url.path:
                return httpx.Response(500)
            return _quotes(request)

        respx.get(url__startswith=f"{QUOTE_URL}/q=").mock(side_effect=handler)
        report = await sync.sync_realtime(["600000.SH", "000002.SZ", "00700.HK"])

        assert report.requested == 3
        assert report.stored == 2
        assert report.failed == 1
        assert report.degraded == 1
        today = provider.today()
        rows = await store.get_prices("00700", "XHKG", today, today)
        assert rows[0].price == Decimal("8.00")

    @respx.mock
    async def test_rate_backfill_then_cached_lookup(self, pipeline):
        _, store, sync = pipeline
        route = respx.get(url__startswith=HISTORY_URL).mock(side_effect=_history)

        report = await sync.sync_rates("USD", "CNY", date(2024, 1, 1), date(2024, 1, 31))
        assert report.stored == 2
        assert route.call_count == 1

        rate = await sync.find_or_fetch_rate("USD", "CNY", date(2024, 1, 3))
        assert rate is not None
        assert rate.rate == Decimal("7.11")
        assert route.call_count == 1
