"""Market-data acquisition: symbol codec, parsers, transport, provider, cache.

Architecture
------------
    caller -> provider (orchestration) -> symbols.encode -> transport
           -> parsers / history -> Quote | PricePoint | ExchangeRate
           -> store (upsert) via sync

Key abstractions:

- ``QuoteProvider`` / ``FXProvider``: capability protocols callers depend on.
- ``TencentProvider``: the built-in implementation.
- ``QuoteTransport``: shared, rate-limited HTTP client with bounded retry.
- ``MarketStore``: upsert contract for prices and exchange rates.
- ``MarketDataSync``: fetch-and-persist jobs for a scheduler to call.
"""

from quotefeed.market.history import parse_closes, parse_history
from quotefeed.market.parsers import (
    FX_PAIRS,
    extract_payloads,
    fx_pair_code,
    parse_fx,
    parse_fx_detail,
    parse_quote,
)
from quotefeed.market.provider import (
    FXProvider,
    MarketDataProvider,
    QuoteProvider,
    create_provider,
)
from quotefeed.market.store import MarketStore, SqliteMarketStore, create_store
from quotefeed.market.symbols import (
    EXCHANGES,
    country_for_exchange,
    currency_for_exchange,
    decode,
    encode,
)
from quotefeed.market.sync import MarketDataSync, market_open
from quotefeed.market.tencent import TencentProvider
from quotefeed.market.transport import QuoteTransport

__all__ = [
    # Symbols
    "EXCHANGES",
    "encode",
    "decode",
    "country_for_exchange",
    "currency_for_exchange",
    # Parsers
    "parse_quote",
    "extract_payloads",
    "parse_fx",
    "parse_fx_detail",
    "fx_pair_code",
    "FX_PAIRS",
    "parse_history",
    "parse_closes",
    # Protocols
    "QuoteProvider",
    "FXProvider",
    "MarketDataProvider",
    "MarketStore",
    # Implementations
    "QuoteTransport",
    "TencentProvider",
    "SqliteMarketStore",
    "MarketDataSync",
    # Factories
    "create_provider",
    "create_store",
    "market_open",
]
