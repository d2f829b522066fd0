"""Custom exception hierarchy for quotefeed."""

from typing import Any


class QuoteFeedError(Exception):
    """Base exception for all quotefeed errors.

    All exceptions carry an optional `context` dict for structured error
    metadata that can be logged or serialized without parsing the message.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.context = context or {}


class ConfigError(QuoteFeedError):
    """Invalid or missing configuration.

    Raised by load_config() and create_provider() during startup. Should be
    treated as fatal. Also raised when no upstream transport is configured.

    Context keys:
        field: str — the config field that failed validation
        value: Any — the invalid value
    """


class TransportError(QuoteFeedError):
    """Network or HTTP failure talking to the upstream.

    Policy: retried by QuoteTransport, then isolated per unit of work. Never
    escalates past a single symbol, batch group, or year.

    Context keys:
        url: str — the URL that was being fetched
        status_code: int | None — HTTP status if a response arrived
    """


class RateLimitError(TransportError):
    """Upstream throttled us (HTTP 429).

    Context keys:
        retry_after: float | None — seconds the upstream asked us to wait
    """


class ParseError(QuoteFeedError):
    """Response body did not match the expected grammar.

    Policy: log at warning with the offending fragment, treat as no data.

    Context keys:
        symbol: str — the provider symbol being parsed
        fragment: str — truncated raw text
    """


class InvalidValueError(QuoteFeedError):
    """Grammar matched but the value is semantically invalid.

    Non-positive prices or rates, failed FX status gate. Policy: discard
    silently as Absent.

    Context keys:
        field: str — which field was rejected
        value: Any — the rejected raw value
    """


class UnsupportedPairError(QuoteFeedError):
    """FX pair outside the provider's allow-list.

    Raised before any network call is attempted.

    Context keys:
        from_currency: str
        to_currency: str
    """


class StorageError(QuoteFeedError):
    """Database operation failed.

    Policy: raise immediately. Price history integrity is critical.

    Context keys:
        operation: str — "upsert", "query", "migrate", etc.
        table: str — the table involved
    """
