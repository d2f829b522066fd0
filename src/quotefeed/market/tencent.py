"""Tencent finance provider: fetch orchestration over the quote parsers.

Every public operation degrades instead of raising: a symbol, batch group, or
year that fails contributes nothing and the rest of the request completes.
Callers should expect fewer records than they asked for.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import re
from collections.abc import AsyncGenerator, Callable, Iterable
from contextlib import aclosing
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import TypeVar
from zoneinfo import ZoneInfo

from quotefeed.core.config import ProviderConfig
from quotefeed.core.exceptions import ConfigError, TransportError, UnsupportedPairError
from quotefeed.core.models import (
    ExchangeRate,
    FetchOutcome,
    FetchState,
    Listing,
    PricePoint,
    Quote,
    SecurityMatch,
)
from quotefeed.market.history import parse_closes
from quotefeed.market.parsers import (
    SOURCE,
    fx_pair_code,
    parse_fx,
    parse_quote,
)
from quotefeed.market.symbols import (
    country_for_exchange,
    currency_for_exchange,
    decode,
    encode,
    resolve_exchange,
)
from quotefeed.market.transport import QuoteTransport

logger = logging.getLogger(__name__)

_HEALTH_SYMBOL = "sz000001"
_CURRENCY_CODE = re.compile(r"[A-Z]{3}")

T = TypeVar("T")

ListingLike = Listing | tuple[str, str | None] | str


class _FetchUnit:
    """One unit of work moving pending -> in_flight -> parsed/degraded/failed."""

    def __init__(self, label: str, outcomes: list[FetchOutcome] | None) -> None:
        self.label = label
        self.state = FetchState.PENDING
        self._outcomes = outcomes

    def start(self) -> None:
        self._move(FetchState.IN_FLIGHT)

    def parsed(self, records: int) -> None:
        self._finish(FetchState.PARSED, records)

    def degraded(self, records: int = 0) -> None:
        self._finish(FetchState.DEGRADED, records)

    def failed(self, error: Exception) -> None:
        self._finish(FetchState.FAILED, 0, str(error))

    def _move(self, state: FetchState) -> None:
        logger.debug("%s: %s -> %s", self.label, self.state, state)
        self.state = state

    def _finish(self, state: FetchState, records: int, error: str | None = None) -> None:
        self._move(state)
        if self._outcomes is not None:
            self._outcomes.append(
                FetchOutcome(unit=self.label, state=state, records=records, error=error)
            )


def as_listing(item: ListingLike) -> Listing:
    """Accept a Listing, a (ticker, exchange) tuple, or a bare/dotted ticker."""
    if isinstance(item, Listing):
        return item
    if isinstance(item, str):
        return Listing(ticker=item)
    ticker, exchange = item
    return Listing(ticker=ticker, exchange=exchange)


class TencentProvider:
    """Quote, history, and FX provider backed by Tencent's public endpoints.

    Parameters
    ----------
    config : ProviderConfig
        Endpoints, batch size, base currency, and market timezone.
    transport : QuoteTransport
        Shared HTTP transport. Owned by the provider once passed in.
    max_concurrency : int
        Upper bound on simultaneous upstream requests issued by one provider.
    clock : callable, optional
        Returns the current aware datetime. Defaults to now in the market
        timezone; tests inject a fixed clock.
    """

    name = "tencent"

    def __init__(
        self,
        config: ProviderConfig,
        transport: QuoteTransport | None,
        max_concurrency: int = 4,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if transport is None:
            raise ConfigError(
                "No transport configured for the Tencent provider",
                context={"field": "transport", "value": None},
            )
        self._config = config
        self._transport = transport
        self._semaphore = asyncio.Semaphore(max_concurrency)
        tz = ZoneInfo(config.market_timezone)
        self._clock = clock or (lambda: datetime.now(tz))

    async def __aenter__(self) -> TencentProvider:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._transport.close()

    def today(self) -> date:
        return self._clock().date()

    async def _get(self, url: str, params: dict[str, str] | None = None) -> str:
        async with self._semaphore:
            return await self._transport.get_text(url, params)

    def _quote_url(self, symbols: Iterable[str]) -> str:
        return f"{self._config.quote_url}/q={','.join(symbols)}"

    def _currency(self, exchange: str | None) -> str:
        return currency_for_exchange(exchange, default=self._config.base_currency)

    # --- Real-time quotes ---

    async def fetch_quote(
        self,
        ticker: str,
        exchange: str | None = None,
        *,
        outcomes: list[FetchOutcome] | None = None,
    ) -> Quote | None:
        """Fetch the live quote for one security.

        Returns None when the upstream has no priceable quote for it or the
        request fails.
        """
        symbol = encode(ticker, exchange)
        unit = _FetchUnit(f"quote:{symbol}", outcomes)
        unit.start()
        try:
            body = await self._get(self._quote_url([symbol]))
        except TransportError as e:
            logger.error("Quote request failed for %s: %s", symbol, e)
            unit.failed(e)
            return None

        quote = parse_quote(body, symbol, fetched_at=self._clock())
        if quote is None:
            logger.warning("No real-time data for %s", symbol)
            unit.degraded()
            return None
        unit.parsed(1)
        return quote

    async def fetch_batch_quotes(
        self,
        listings: Iterable[ListingLike],
        *,
        outcomes: list[FetchOutcome] | None = None,
    ) -> dict[Listing, Quote]:
        """Fetch live quotes for many securities.

        Symbols are grouped ``batch_size`` per request. A group whose request
        fails falls back to one request per symbol. Listings without a
        priceable quote are omitted; results are keyed by the listing given.
        """
        results: dict[Listing, Quote] = {}
        async with aclosing(self.iter_batch_quotes(listings, outcomes=outcomes)) as chunks:
            async for chunk in chunks:
                results.update(chunk)
        return results

    async def iter_batch_quotes(
        self,
        listings: Iterable[ListingLike],
        *,
        outcomes: list[FetchOutcome] | None = None,
    ) -> AsyncGenerator[dict[Listing, Quote], None]:
        """Yield each group's quotes as soon as that group completes.

        Group requests still running are cancelled when the generator is
        closed. A consumer that may stop early should iterate inside
        ``contextlib.aclosing`` so that happens at once, not at garbage
        collection.
        """
        unique = list(dict.fromkeys(as_listing(item) for item in listings))
        if not unique:
            return

        size = self._config.batch_size
        groups = [unique[i : i + size] for i in range(0, len(unique), size)]
        tasks = [
            asyncio.ensure_future(self._fetch_group(index, group, outcomes))
            for index, group in enumerate(groups)
        ]
        try:
            for next_done in asyncio.as_completed(tasks):
                yield await next_done
        finally:
            pending = [t for t in tasks if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def _fetch_group(
        self,
        index: int,
        group: list[Listing],
        outcomes: list[FetchOutcome] | None,
    ) -> dict[Listing, Quote]:
        by_symbol: dict[str, list[Listing]] = {}
        for listing in group:
            by_symbol.setdefault(encode(listing.ticker, listing.exchange), []).append(listing)

        unit = _FetchUnit(f"batch:{index}({len(by_symbol)} symbols)", outcomes)
        unit.start()
        try:
            body = await self._get(self._quote_url(by_symbol))
        except TransportError as e:
            logger.warning(
                "Batch request %d failed (%s), falling back to %d single requests",
                index, e, len(by_symbol),
            )
            unit.failed(e)
            return await self._fetch_fallback(by_symbol, outcomes)

        fetched_at = self._clock()
        results: dict[Listing, Quote] = {}
        found = 0
        for symbol, symbol_listings in by_symbol.items():
            quote = parse_quote(body, symbol, fetched_at=fetched_at)
            if quote is None:
                logger.warning("No real-time data for %s", symbol)
                continue
            found += 1
            for listing in symbol_listings:
                results[listing] = quote

        if found == len(by_symbol):
            unit.parsed(found)
        else:
            unit.degraded(found)
        return results

    async def _fetch_fallback(
        self,
        by_symbol: dict[str, list[Listing]],
        outcomes: list[FetchOutcome] | None,
    ) -> dict[Listing, Quote]:
        symbols = list(by_symbol)
        quotes = await asyncio.gather(
            *(self._fetch_fallback_one(symbol, outcomes) for symbol in symbols)
        )
        results: dict[Listing, Quote] = {}
        for symbol, quote in zip(symbols, quotes):
            if quote is None:
                continue
            for listing in by_symbol[symbol]:
                results[listing] = quote
        return results

    async def _fetch_fallback_one(
        self,
        symbol: str,
        outcomes: list[FetchOutcome] | None,
    ) -> Quote | None:
        unit = _FetchUnit(f"fallback:{symbol}", outcomes)
        unit.start()
        try:
            body = await self._get(self._quote_url([symbol]))
        except TransportError as e:
            logger.error("Fallback request failed for %s: %s", symbol, e)
            unit.failed(e)
            return None

        quote = parse_quote(body, symbol, fetched_at=self._clock())
        if quote is None:
            unit.degraded()
            return None
        unit.parsed(1)
        return quote

    # --- Prices ---

    async def fetch_price(
        self,
        ticker: str,
        exchange: str | None = None,
        on_date: date | None = None,
        *,
        outcomes: list[FetchOutcome] | None = None,
    ) -> PricePoint | None:
        """Price one security on one day.

        Closed days (strictly before today in the market timezone) always come
        from the history endpoint. Today comes from the live quote.
        """
        today = self.today()
        on_date = on_date or today
        if on_date > today:
            logger.warning("Cannot price %s for future date %s", ticker, on_date)
            return None

        if on_date < today:
            points = await self.fetch_price_history(
                ticker, exchange, on_date, on_date, outcomes=outcomes
            )
            return points[0] if points else None

        quote = await self.fetch_quote(ticker, exchange, outcomes=outcomes)
        if quote is None or not quote.is_priceable:
            return None

        bare, mic = resolve_exchange(ticker, exchange)
        return PricePoint(
            symbol=bare,
            exchange=mic,
            date=on_date,
            price=quote.price,
            currency=self._currency(mic),
            source=SOURCE,
        )

    def _history_params(self, provider_symbol: str, year: int) -> dict[str, str]:
        return {
            "_var": f"kline_day{year}",
            "param": (
                f"{provider_symbol},day,{year}-01-01,{year}-12-31,"
                f"{self._config.history_limit}"
            ),
            "r": str(random.random()),
        }

    async def _fetch_year(
        self,
        provider_symbol: str,
        year: int,
        parse: Callable[[str, int], list[T]],
        outcomes: list[FetchOutcome] | None,
    ) -> list[T]:
        """Fetch and parse one calendar year. A failed year yields []."""
        unit = _FetchUnit(f"history:{provider_symbol}:{year}", outcomes)
        unit.start()
        try:
            body = await self._get(
                self._config.history_url, self._history_params(provider_symbol, year)
            )
        except TransportError as e:
            logger.error("History request failed for %s in %d: %s", provider_symbol, year, e)
            unit.failed(e)
            return []

        records = parse(body, year)
        if records:
            unit.parsed(len(records))
        else:
            unit.degraded()
        return records

    async def _fetch_years(
        self,
        provider_symbol: str,
        start: date,
        end: date,
        parse: Callable[[str, int], list[T]],
        outcomes: list[FetchOutcome] | None,
    ) -> list[T]:
        """One request per calendar year in ``[start.year, end.year]``, concatenated."""
        per_year = await asyncio.gather(
            *(
                self._fetch_year(provider_symbol, year, parse, outcomes)
                for year in range(start.year, end.year + 1)
            )
        )
        return [record for records in per_year for record in records]

    async def fetch_price_history(
        self,
        ticker: str,
        exchange: str | None,
        start: date,
        end: date,
        *,
        outcomes: list[FetchOutcome] | None = None,
    ) -> list[PricePoint]:
        """Daily closes in ``[start, end]``, ascending, one request per calendar year."""
        if start > end:
            logger.warning("Empty history range for %s: %s > %s", ticker, start, end)
            return []

        # Points are keyed by the caller's listing, never by re-decoding the
        # provider symbol: an unresolved "SHOP" must stay ("SHOP", None).
        provider_symbol = encode(ticker, exchange)
        bare, mic = resolve_exchange(ticker, exchange)
        currency = self._currency(mic)

        def parse(body: str, year: int) -> list[tuple[date, Decimal]]:
            return parse_closes(body, provider_symbol, year)

        by_date: dict[date, Decimal] = {}
        for day, close in await self._fetch_years(provider_symbol, start, end, parse, outcomes):
            if start <= day <= end:
                by_date[day] = close

        logger.info(
            "Fetched %d prices for %s between %s and %s",
            len(by_date), provider_symbol, start, end,
        )
        return [
            PricePoint(
                symbol=bare,
                exchange=mic,
                date=day,
                price=by_date[day],
                currency=currency,
                source=SOURCE,
            )
            for day in sorted(by_date)
        ]

    # --- Exchange rates ---

    def _pair_code(self, from_currency: str, to_currency: str) -> str | None:
        try:
            return fx_pair_code(from_currency, to_currency)
        except UnsupportedPairError as e:
            logger.warning("%s", e)
            return None

    async def fetch_exchange_rate(
        self,
        from_currency: str,
        to_currency: str,
        on_date: date | None = None,
        *,
        outcomes: list[FetchOutcome] | None = None,
    ) -> ExchangeRate | None:
        """Rate converting one unit of ``from_currency`` into ``to_currency``.

        Past dates come from the pair's daily history, today from the live
        FX line. Pairs outside the allow-list return None without a request.
        """
        codes = _currency_codes(from_currency, to_currency)
        if codes is None:
            return None
        from_currency, to_currency = codes
        today = self.today()
        on_date = on_date or today

        if from_currency == to_currency:
            return _identity_rate(from_currency, on_date)

        pair = self._pair_code(from_currency, to_currency)
        if pair is None:
            return None

        if on_date > today:
            logger.warning("Cannot fetch %s rate for future date %s", pair, on_date)
            return None

        if on_date < today:
            rates = await self.fetch_exchange_rate_range(
                from_currency, to_currency, on_date, on_date, outcomes=outcomes
            )
            return rates[0] if rates else None

        unit = _FetchUnit(f"fx:{pair}", outcomes)
        unit.start()
        try:
            body = await self._get(self._quote_url([pair]))
        except TransportError as e:
            logger.error("FX request failed for %s: %s", pair, e)
            unit.failed(e)
            return None

        rate = parse_fx(body, pair, on_date=on_date)
        if rate is None:
            logger.warning("No valid FX rate for %s", pair)
            unit.degraded()
            return None
        unit.parsed(1)
        return rate

    async def fetch_exchange_rate_range(
        self,
        from_currency: str,
        to_currency: str,
        start: date,
        end: date,
        *,
        outcomes: list[FetchOutcome] | None = None,
    ) -> list[ExchangeRate]:
        """Daily rates in ``[start, end]``, ascending."""
        codes = _currency_codes(from_currency, to_currency)
        if codes is None or start > end:
            return []
        from_currency, to_currency = codes

        if from_currency == to_currency:
            return [
                _identity_rate(from_currency, start + timedelta(days=i))
                for i in range((end - start).days + 1)
            ]

        pair = self._pair_code(from_currency, to_currency)
        if pair is None:
            return []

        def parse(body: str, year: int) -> list[tuple[date, Decimal]]:
            return parse_closes(body, pair, year)

        by_date: dict[date, Decimal] = {}
        for day, close in await self._fetch_years(pair, start, end, parse, outcomes):
            if start <= day <= end:
                by_date[day] = close

        return [
            ExchangeRate(
                from_currency=from_currency,
                to_currency=to_currency,
                date=day,
                rate=by_date[day],
                source=SOURCE,
            )
            for day in sorted(by_date)
        ]

    # --- Securities ---

    async def search_securities(
        self,
        query: str,
        country_code: str | None = None,
        exchange: str | None = None,
    ) -> list[SecurityMatch]:
        """Look up securities by code or name through the smartbox endpoint."""
        params = {
            "stockFlag": "1",
            "fundFlag": "0",
            "app": "official_website",
            "query": query,
        }
        try:
            body = await self._get(self._config.search_url, params)
        except TransportError as e:
            logger.error("Security search failed for %r: %s", query, e)
            return []

        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            logger.warning("Malformed search response for %r: %r", query, body[:200])
            return []

        stocks = data.get("stock") if isinstance(data, dict) else None
        matches: list[SecurityMatch] = []
        for stock in stocks or []:
            if not isinstance(stock, dict) or not stock.get("code"):
                continue
            decoded = decode(str(stock["code"]))
            if exchange is not None and decoded.exchange != exchange:
                continue
            if country_code is not None and decoded.country != country_code:
                continue
            matches.append(
                SecurityMatch(
                    symbol=decoded.ticker,
                    name=stock.get("name"),
                    exchange=decoded.exchange,
                    country_code=decoded.country,
                    provider_symbol=str(stock["code"]),
                )
            )
        return matches

    async def fetch_security_info(
        self,
        ticker: str,
        exchange: str | None = None,
    ) -> SecurityMatch | None:
        """Name and market of a security, read from its live quote line.

        Works for suspended securities too: the price is not required.
        """
        symbol = encode(ticker, exchange)
        try:
            body = await self._get(self._quote_url([symbol]))
        except TransportError as e:
            logger.error("Security info request failed for %s: %s", symbol, e)
            return None

        quote = parse_quote(body, symbol, allow_partial=True)
        if quote is None:
            return None
        bare, mic = resolve_exchange(ticker, exchange)
        return SecurityMatch(
            symbol=bare,
            name=quote.name,
            exchange=mic,
            country_code=country_for_exchange(mic),
            provider_symbol=symbol,
        )

    async def healthy(self) -> bool:
        """True when the real-time endpoint answers with a non-empty body."""
        try:
            body = await self._get(self._quote_url([_HEALTH_SYMBOL]))
        except TransportError as e:
            logger.warning("Health check failed: %s", e)
            return False
        return bool(body.strip())


def _currency_codes(from_currency: str, to_currency: str) -> tuple[str, str] | None:
    """Upper-case both codes, or None (logged) unless each is 3 letters."""
    codes = (from_currency.strip().upper(), to_currency.strip().upper())
    for code in codes:
        if not _CURRENCY_CODE.fullmatch(code):
            logger.warning("Invalid currency code %r, expected 3 letters", code)
            return None
    return codes


def _identity_rate(currency: str, on_date: date) -> ExchangeRate:
    return ExchangeRate(
        from_currency=currency,
        to_currency=currency,
        date=on_date,
        rate=Decimal(1),
        source="identity",
    )
