"""quotefeed.core — Foundation types, config, and exceptions."""

from quotefeed.core.config import (
    FeedConfig,
    HttpConfig,
    ProviderConfig,
    StorageConfig,
    load_config,
)
from quotefeed.core.exceptions import (
    ConfigError,
    InvalidValueError,
    ParseError,
    QuoteFeedError,
    RateLimitError,
    StorageError,
    TransportError,
    UnsupportedPairError,
)
from quotefeed.core.models import (
    CurrencyCode,
    ExchangeDescriptor,
    ExchangeRate,
    FetchOutcome,
    FetchState,
    FxQuote,
    Listing,
    MicCode,
    PricePoint,
    ProviderName,
    ProviderSymbol,
    Quote,
    SecurityMatch,
    StorageBackend,
    SyncReport,
    Ticker,
)

__all__ = [
    # Type aliases
    "Ticker",
    "MicCode",
    "CurrencyCode",
    "ProviderSymbol",
    # Enums
    "ProviderName",
    "StorageBackend",
    "FetchState",
    # Models
    "ExchangeDescriptor",
    "Listing",
    "Quote",
    "PricePoint",
    "ExchangeRate",
    "FxQuote",
    "SecurityMatch",
    "FetchOutcome",
    "SyncReport",
    # Config
    "FeedConfig",
    "HttpConfig",
    "ProviderConfig",
    "StorageConfig",
    "load_config",
    # Exceptions
    "QuoteFeedError",
    "ConfigError",
    "TransportError",
    "RateLimitError",
    "ParseError",
    "InvalidValueError",
    "UnsupportedPairError",
    "StorageError",
]
