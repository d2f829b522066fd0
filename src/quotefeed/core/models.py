"""Pydantic records for quotes, daily prices, exchange rates and fetch outcomes."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

# --- Type Aliases ---

Ticker = str
MicCode = str
CurrencyCode = str
ProviderSymbol = str

# --- Enumerations ---


class ProviderName(StrEnum):
    """Supported market-data providers."""

    TENCENT = "tencent"


class StorageBackend(StrEnum):
    """Supported storage backends."""

    SQLITE = "sqlite"


class FetchState(StrEnum):
    """Lifecycle of one logical unit of fetch work."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    PARSED = "parsed"
    DEGRADED = "degraded"
    FAILED = "failed"


# --- Reference Data ---


class ExchangeDescriptor(BaseModel):
    """One row of the static exchange table.

    Ties a market identifier to its country, currency, and the upstream's
    symbol prefix / dotted suffix.
    """

    model_config = ConfigDict(frozen=True)

    mic: MicCode
    country_code: str
    currency_code: CurrencyCode
    provider_prefix: str
    suffix: str
    name: str = ""


class Listing(BaseModel):
    """A canonical (ticker, exchange) pair. Hashable, used as a batch key."""

    model_config = ConfigDict(frozen=True)

    ticker: Ticker
    exchange: MicCode | None = None

    @field_validator("ticker")
    @classmethod
    def ticker_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("ticker must not be blank")
        return v


# --- Market Data ---


class Quote(BaseModel):
    """A point-in-time market observation.

    ``price`` is None when the upstream value was missing, unparsable, or
    non-positive. Such a quote is never priceable.
    """

    model_config = ConfigDict(frozen=True)

    symbol: Ticker
    exchange: MicCode | None = None
    provider_symbol: ProviderSymbol
    name: str | None = None
    price: Decimal | None = None
    change_absolute: Decimal | None = None
    change_percent: Decimal | None = None
    volume: int | None = None
    turnover: Decimal | None = None
    market_cap: Decimal | None = None
    fetched_at: datetime | None = None

    @property
    def is_priceable(self) -> bool:
        return self.price is not None and self.price > 0


class PricePoint(BaseModel):
    """One calendar day's close for one security.

    Uniquely identified by ``(symbol, exchange, date)``.
    """

    model_config = ConfigDict(frozen=True)

    symbol: Ticker
    exchange: MicCode | None
    date: date
    price: Decimal
    currency: CurrencyCode
    source: str = "unknown"

    @field_validator("price")
    @classmethod
    def price_positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError(f"price must be > 0, got {v}")
        return v

    @property
    def key(self) -> tuple[str, str | None, date]:
        return (self.symbol, self.exchange, self.date)


class ExchangeRate(BaseModel):
    """Convertibility between two currencies on a date."""

    model_config = ConfigDict(frozen=True)

    from_currency: CurrencyCode
    to_currency: CurrencyCode
    date: date
    rate: Decimal
    source: str = "unknown"

    @field_validator("from_currency", "to_currency")
    @classmethod
    def currency_upper(cls, v: str) -> str:
        v = v.strip().upper()
        if len(v) != 3 or not v.isalpha():
            raise ValueError(f"currency must be a 3-letter ISO code, got {v!r}")
        return v

    @field_validator("rate")
    @classmethod
    def rate_positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError(f"rate must be > 0, got {v}")
        return v

    @property
    def key(self) -> tuple[str, str, date]:
        return (self.from_currency, self.to_currency, self.date)


class FxQuote(BaseModel):
    """Full real-time FX line, as decoded from the upstream."""

    model_config = ConfigDict(frozen=True)

    pair_code: str
    status: str
    name: str | None = None
    rate: Decimal | None = None
    previous_close: Decimal | None = None
    open: Decimal | None = None
    high: Decimal | None = None
    low: Decimal | None = None
    change: Decimal | None = None
    change_percent: Decimal | None = None


class SecurityMatch(BaseModel):
    """A security found through the provider's search endpoint."""

    model_config = ConfigDict(frozen=True)

    symbol: Ticker
    name: str | None = None
    exchange: MicCode | None = None
    country_code: str | None = None
    provider_symbol: ProviderSymbol


# --- Fetch bookkeeping ---


class FetchOutcome(BaseModel):
    """Terminal state of one unit of fetch work (a symbol, group, or year)."""

    model_config = ConfigDict(frozen=True)

    unit: str
    state: FetchState
    records: int = 0
    error: str | None = None


class SyncReport(BaseModel):
    """Summary of one fetch-and-persist job."""

    requested: int = 0
    stored: int = 0
    outcomes: list[FetchOutcome] = Field(default_factory=list)

    def _count(self, state: FetchState) -> int:
        return sum(1 for o in self.outcomes if o.state == state)

    @property
    def parsed(self) -> int:
        return self._count(FetchState.PARSED)

    @property
    def degraded(self) -> int:
        return self._count(FetchState.DEGRADED)

    @property
    def failed(self) -> int:
        return self._count(FetchState.FAILED)
