"""Shared pytest fixtures for quotefeed."""

import json
from datetime import date, datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from quotefeed.core.config import FeedConfig, HttpConfig, ProviderConfig, StorageConfig
from quotefeed.core.models import ExchangeRate, PricePoint
from quotefeed.market.tencent import TencentProvider
from quotefeed.market.transport import QuoteTransport

QUOTE_URL = "http://qt.gtimg.cn"
HISTORY_URL = "http://web.ifzq.gtimg.cn/appstock/app/kline/kline"
SEARCH_URL = "https://proxy.finance.qq.com/cgi/cgi-bin/smartbox/search"

SHANGHAI = ZoneInfo("Asia/Shanghai")
NOW = datetime(2024, 6, 14, 10, 0, tzinfo=SHANGHAI)
TODAY = NOW.date()


def quote_line(symbol: str, name: str = "Test Co", price: str = "10.00") -> str:
    """One real-time assignment in the upstream's format."""
    return f'v_{symbol}="51~{name}~{symbol[2:]}~{price}~0.10~1.00~1000~500~~2000";\n'


def kline_body(symbol: str, days: list[list], var: str = "kline_day") -> str:
    """History response: JSON wrapped in a JavaScript assignment."""
    payload = {"code": 0, "msg": "", "data": {symbol: {"day": days}}}
    return f"{var}={json.dumps(payload)}"


@pytest.fixture
def http_config() -> HttpConfig:
    return HttpConfig(
        request_timeout=5,
        max_retries=2,
        retry_interval=0,
        retry_jitter=0,
        rate_limit=1000,
        max_concurrency=4,
    )


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(quote_url=QUOTE_URL, history_url=HISTORY_URL, search_url=SEARCH_URL)


@pytest.fixture
def feed_config(http_config, provider_config, tmp_path) -> FeedConfig:
    return FeedConfig(
        provider=provider_config,
        http=http_config,
        storage=StorageConfig(sqlite_path=str(tmp_path / "quotefeed.db")),
    )


@pytest.fixture
async def provider(http_config, provider_config):
    transport = QuoteTransport(http_config)
    async with TencentProvider(provider_config, transport, clock=lambda: NOW) as p:
        yield p


@pytest.fixture
def sample_price_point() -> PricePoint:
    return PricePoint(
        symbol="600000",
        exchange="XSHG",
        date=date(2024, 1, 2),
        price=Decimal("10.5"),
        currency="CNY",
        source="tencent",
    )


@pytest.fixture
def sample_exchange_rate() -> ExchangeRate:
    return ExchangeRate(
        from_currency="USD",
        to_currency="CNY",
        date=date(2024, 1, 2),
        rate=Decimal("7.1"),
        source="tencent",
    )
