"""Tests for quotefeed.core.exceptions."""

import pytest

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


class TestExceptionHierarchy:
    """Verify the exception class hierarchy."""

    @pytest.mark.parametrize(
        "exc_cls",
        [
            ConfigError,
            TransportError,
            ParseError,
            InvalidValueError,
            UnsupportedPairError,
            StorageError,
        ],
    )
    def test_subclass_of_base(self, exc_cls):
        assert issubclass(exc_cls, QuoteFeedError)

    def test_rate_limit_is_transport_error(self):
        assert issubclass(RateLimitError, TransportError)
        assert issubclass(RateLimitError, QuoteFeedError)

    def test_parse_and_invalid_value_are_distinct(self):
        assert not issubclass(ParseError, InvalidValueError)
        assert not issubclass(InvalidValueError, ParseError)


class TestExceptionContext:
    """Verify context dict behavior."""

    def test_context_preserved(self):
        exc = TransportError(
            "HTTP 404",
            context={"url": "http://qt.gtimg.cn/q=sh600000", "status_code": 404},
        )
        assert exc.context["status_code"] == 404

    def test_default_context_is_empty_dict(self):
        assert QuoteFeedError("boom").context == {}

    def test_context_none_becomes_empty_dict(self):
        assert StorageError("db fail", context=None).context == {}

    def test_str_returns_message(self):
        assert str(ConfigError("invalid field")) == "invalid field"

    def test_can_be_caught_as_base(self):
        with pytest.raises(QuoteFeedError):
            raise UnsupportedPairError("EUR/JPY", context={"from_currency": "EUR"})
