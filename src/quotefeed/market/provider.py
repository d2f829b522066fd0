"""Provider capability protocols and one-time provider selection.

Architecture
------------
Consumers depend on two narrow capabilities rather than on a concrete
upstream:

    caller -> QuoteProvider / FXProvider -> transport -> parsers -> records

- **QuoteProvider** answers live quotes, single-day prices and daily history.
- **FXProvider** answers exchange rates for one day or a date range.

The concrete provider is chosen once, from ``FeedConfig.provider.name``, by
``create_provider`` and then injected. Adding an upstream means writing a
class that satisfies both protocols and registering it in ``_REGISTRY``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Iterable
from datetime import date
from typing import Protocol, runtime_checkable

from quotefeed.core.config import FeedConfig
from quotefeed.core.exceptions import ConfigError
from quotefeed.core.models import (
    ExchangeRate,
    FetchOutcome,
    Listing,
    PricePoint,
    ProviderName,
    Quote,
)
from quotefeed.market.tencent import TencentProvider
from quotefeed.market.transport import QuoteTransport


@runtime_checkable
class QuoteProvider(Protocol):
    """Security prices: live quotes and daily closes."""

    async def fetch_quote(
        self,
        ticker: str,
        exchange: str | None = None,
        *,
        outcomes: list[FetchOutcome] | None = None,
    ) -> Quote | None: ...

    async def fetch_batch_quotes(
        self,
        listings: Iterable[Listing],
        *,
        outcomes: list[FetchOutcome] | None = None,
    ) -> dict[Listing, Quote]:
        """Listings without a priceable quote are omitted."""
        ...

    async def fetch_price(
        self,
        ticker: str,
        exchange: str | None = None,
        on_date: date | None = None,
        *,
        outcomes: list[FetchOutcome] | None = None,
    ) -> PricePoint | None: ...

    async def fetch_price_history(
        self,
        ticker: str,
        exchange: str | None,
        start: date,
        end: date,
        *,
        outcomes: list[FetchOutcome] | None = None,
    ) -> list[PricePoint]:
        """Sorted by date ascending, bounded to ``[start, end]``."""
        ...


@runtime_checkable
class FXProvider(Protocol):
    """Currency conversion rates."""

    async def fetch_exchange_rate(
        self,
        from_currency: str,
        to_currency: str,
        on_date: date | None = None,
        *,
        outcomes: list[FetchOutcome] | None = None,
    ) -> ExchangeRate | None: ...

    async def fetch_exchange_rate_range(
        self,
        from_currency: str,
        to_currency: str,
        start: date,
        end: date,
        *,
        outcomes: list[FetchOutcome] | None = None,
    ) -> list[ExchangeRate]: ...


@runtime_checkable
class MarketDataProvider(QuoteProvider, FXProvider, Protocol):
    """Both capabilities plus streaming batches and lifecycle."""

    name: str

    def iter_batch_quotes(
        self,
        listings: Iterable[Listing],
        *,
        outcomes: list[FetchOutcome] | None = None,
    ) -> AsyncGenerator[dict[Listing, Quote], None]: ...

    def today(self) -> date: ...

    async def healthy(self) -> bool: ...

    async def close(self) -> None: ...


_REGISTRY: dict[ProviderName, type[TencentProvider]] = {
    ProviderName.TENCENT: TencentProvider,
}


def create_provider(
    config: FeedConfig,
    transport: QuoteTransport | None = None,
) -> MarketDataProvider:
    """Instantiate the configured provider.

    Raises:
        ConfigError: No provider is configured, or the configured one is not
            registered. This is the only fatal condition in the market layer.
    """
    name = config.provider.name
    if name is None:
        raise ConfigError(
            "No market data provider configured",
            context={"field": "provider.name", "value": None},
        )
    provider_cls = _REGISTRY.get(name)
    if provider_cls is None:
        raise ConfigError(
            f"Provider {name!r} is not available",
            context={"field": "provider.name", "value": str(name)},
        )

    return provider_cls(
        config.provider,
        transport or QuoteTransport(config.http),
        max_concurrency=config.http.max_concurrency,
    )
