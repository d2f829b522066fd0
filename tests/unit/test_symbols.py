"""Tests for quotefeed.market.symbols."""

import logging

import pytest

from quotefeed.market.symbols import (
    EXCHANGES,
    country_for_exchange,
    currency_for_exchange,
    decode,
    encode,
    resolve_exchange,
    split_dotted,
)


class TestEncode:
    @pytest.mark.parametrize(
        "ticker, expected",
        [
            ("688110.SH", "sh688110"),
            ("000001.sz", "sz000001"),
            ("430047.BJ", "bj430047"),
            ("00700.HK", "hk00700"),
        ],
    )
    def test_dotted_form(self, ticker, expected):
        assert encode(ticker) == expected

    @pytest.mark.parametrize(
        "ticker, exchange, expected",
        [
            ("600000", "XSHG", "sh600000"),
            ("000001", "XSHE", "sz000001"),
            ("00700", "XHKG", "hk00700"),
            ("00700", "xhkg", "hk00700"),
        ],
    )
    def test_bare_ticker_with_exchange(self, ticker, exchange, expected):
        assert encode(ticker, exchange) == expected

    def test_dotted_suffix_wins_over_exchange(self):
        assert encode("600000.SH", "XHKG") == "sh600000"

    def test_unknown_exchange_returns_ticker_unchanged(self):
        assert encode("AAPL", "XNAS") == "AAPL"
        assert encode("AAPL") == "AAPL"

    def test_unknown_suffix_returns_ticker_unchanged(self):
        assert encode("AAPL.US") == "AAPL.US"


class TestDecode:
    def test_provider_symbol(self):
        assert decode("sh600000") == ("600000", "XSHG", "CN")
        assert decode("sz000001") == ("000001", "XSHE", "CN")
        assert decode("hk00700") == ("00700", "XHKG", "HK")

    def test_dotted_symbol(self):
        assert decode("688110.SH") == ("688110", "XSHG", "CN")

    def test_unknown_is_unresolved_not_error(self):
        decoded = decode("usAAPL")
        assert decoded.exchange is None
        assert decoded.country is None
        assert decoded.ticker == "usAAPL"

    def test_prefix_alone_is_unresolved(self):
        assert decode("sh").exchange is None

    @pytest.mark.parametrize("ticker", ["SHOP", "HKIT", "SZX", "bjorn", "hk007a"])
    def test_tickers_resembling_prefixes_stay_unresolved(self, ticker):
        assert decode(ticker) == (ticker, None, None)
        assert decode(encode(ticker)) == (ticker, None, None)

    def test_uppercase_prefix_is_not_a_provider_symbol(self):
        assert decode("SH600000") == ("SH600000", None, None)

    @pytest.mark.parametrize("descriptor", EXCHANGES, ids=lambda d: d.mic)
    def test_round_trip_every_exchange(self, descriptor):
        decoded = decode(encode("123456", descriptor.mic))
        assert (decoded.ticker, decoded.exchange) == ("123456", descriptor.mic)


class TestExchangeTable:
    def test_mainland_markets_share_country(self):
        assert country_for_exchange("XSHG") == "CN"
        assert country_for_exchange("XSHE") == "CN"
        assert country_for_exchange("XHKG") == "HK"

    def test_unknown_country_is_none(self):
        assert country_for_exchange("XNAS") is None

    def test_currency_by_exchange(self):
        assert currency_for_exchange("XSHG") == "CNY"
        assert currency_for_exchange("XHKG") == "HKD"

    def test_unknown_currency_defaults_and_warns(self, caplog):
        with caplog.at_level(logging.WARNING, logger="quotefeed.market.symbols"):
            assert currency_for_exchange("XNAS") == "CNY"
        assert "Unknown exchange" in caplog.text

    def test_unknown_currency_custom_default(self):
        assert currency_for_exchange(None, default="USD") == "USD"

    def test_prefixes_unique(self):
        prefixes = [d.provider_prefix for d in EXCHANGES]
        assert len(prefixes) == len(set(prefixes))


class TestHelpers:
    def test_split_dotted(self):
        ticker, descriptor = split_dotted("00700.HK")
        assert ticker == "00700"
        assert descriptor is not None and descriptor.mic == "XHKG"

    def test_split_dotted_without_dot(self):
        assert split_dotted("600000") == ("600000", None)

    def test_resolve_exchange(self):
        assert resolve_exchange("600000.SH") == ("600000", "XSHG")
        assert resolve_exchange("600000", "xshg") == ("600000", "XSHG")
        assert resolve_exchange("AAPL", "XNAS") == ("AAPL", None)
