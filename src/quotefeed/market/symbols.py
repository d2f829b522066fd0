"""Symbol codec: canonical (ticker, exchange) <-> upstream provider symbols.

The upstream identifies a security by a lowercase market prefix glued to the
ticker (``sh600000``, ``hk00700``). Callers may also hand us the dotted form
(``600000.SH``) or a bare ticker plus a MIC code. Everything here is driven by
the ``EXCHANGES`` table; adding a market means adding a row.
"""

from __future__ import annotations

import logging
import re
from typing import NamedTuple

from quotefeed.core.models import ExchangeDescriptor

logger = logging.getLogger(__name__)

EXCHANGES: tuple[ExchangeDescriptor, ...] = (
    ExchangeDescriptor(
        mic="XSHG",
        country_code="CN",
        currency_code="CNY",
        provider_prefix="sh",
        suffix="SH",
        name="Shanghai Stock Exchange",
    ),
    ExchangeDescriptor(
        mic="XSHE",
        country_code="CN",
        currency_code="CNY",
        provider_prefix="sz",
        suffix="SZ",
        name="Shenzhen Stock Exchange",
    ),
    ExchangeDescriptor(
        mic="XBSE",
        country_code="CN",
        currency_code="CNY",
        provider_prefix="bj",
        suffix="BJ",
        name="Beijing Stock Exchange",
    ),
    ExchangeDescriptor(
        mic="XHKG",
        country_code="HK",
        currency_code="HKD",
        provider_prefix="hk",
        suffix="HK",
        name="Hong Kong Exchanges",
    ),
)

DEFAULT_CURRENCY = "CNY"

_BY_MIC: dict[str, ExchangeDescriptor] = {d.mic: d for d in EXCHANGES}
_BY_SUFFIX: dict[str, ExchangeDescriptor] = {d.suffix: d for d in EXCHANGES}
_BY_PREFIX: dict[str, ExchangeDescriptor] = {d.provider_prefix: d for d in EXCHANGES}
# Upstream codes are numeric on every market in the table
_PROVIDER_SYMBOL_RE = re.compile(
    "^(" + "|".join(re.escape(p) for p in _BY_PREFIX) + r")(\d+)$"
)


class DecodedSymbol(NamedTuple):
    """Result of decode(). ``exchange`` and ``country`` are None when unresolved."""

    ticker: str
    exchange: str | None
    country: str | None


def descriptor_for_mic(mic: str | None) -> ExchangeDescriptor | None:
    if not mic:
        return None
    return _BY_MIC.get(mic.strip().upper())


def descriptor_for_suffix(suffix: str | None) -> ExchangeDescriptor | None:
    if not suffix:
        return None
    return _BY_SUFFIX.get(suffix.strip().upper())


def _split_provider_symbol(provider_symbol: str) -> tuple[ExchangeDescriptor, str] | None:
    match = _PROVIDER_SYMBOL_RE.match(provider_symbol.strip())
    if match is None:
        return None
    return _BY_PREFIX[match.group(1)], match.group(2)


def descriptor_for_provider_symbol(provider_symbol: str) -> ExchangeDescriptor | None:
    """Exchange of a provider symbol: a lowercase table prefix followed by digits.

    ``SHOP`` or ``hkit`` are not provider symbols and resolve to None.
    """
    split = _split_provider_symbol(provider_symbol)
    return split[0] if split else None


def split_dotted(symbol: str) -> tuple[str, ExchangeDescriptor | None]:
    """Split ``"600000.SH"`` into ("600000", <XSHG>).

    Returns (symbol, None) when there is no dot or the suffix is unknown.
    """
    if "." not in symbol:
        return symbol, None
    ticker, suffix = symbol.rsplit(".", 1)
    descriptor = descriptor_for_suffix(suffix)
    if descriptor is None:
        return symbol, None
    return ticker, descriptor


def encode(ticker: str, exchange: str | None = None) -> str:
    """Build the provider symbol for a ticker.

    A dotted suffix on ``ticker`` wins over ``exchange``. An unknown exchange
    yields the ticker unchanged; the upstream will simply not answer for it.
    """
    ticker = ticker.strip()
    if "." in ticker:
        bare, descriptor = split_dotted(ticker)
        if descriptor is None:
            return ticker
        return f"{descriptor.provider_prefix}{bare}"

    descriptor = descriptor_for_mic(exchange)
    if descriptor is None:
        return ticker
    return f"{descriptor.provider_prefix}{ticker}"


def decode(provider_symbol: str) -> DecodedSymbol:
    """Recover (ticker, exchange, country) from a provider or dotted symbol."""
    symbol = provider_symbol.strip()
    if "." in symbol:
        bare, descriptor = split_dotted(symbol)
    else:
        split = _split_provider_symbol(symbol)
        descriptor, bare = split if split else (None, symbol)

    if descriptor is None:
        return DecodedSymbol(symbol, None, None)
    return DecodedSymbol(bare, descriptor.mic, descriptor.country_code)


def resolve_exchange(ticker: str, exchange: str | None = None) -> tuple[str, str | None]:
    """Normalize caller input to a bare ticker plus a known MIC (or None)."""
    ticker = ticker.strip()
    bare, descriptor = split_dotted(ticker)
    if descriptor is not None:
        return bare, descriptor.mic
    descriptor = descriptor_for_mic(exchange)
    return ticker, descriptor.mic if descriptor else None


def country_for_exchange(mic: str | None) -> str | None:
    descriptor = descriptor_for_mic(mic)
    return descriptor.country_code if descriptor else None


def currency_for_exchange(mic: str | None, default: str = DEFAULT_CURRENCY) -> str:
    """Trading currency for a market, falling back to ``default``.

    The fallback keeps unknown markets priceable but can hide a missing table
    row, so it is logged.
    """
    descriptor = descriptor_for_mic(mic)
    if descriptor is not None:
        return descriptor.currency_code
    if mic:
        logger.warning("Unknown exchange %r, defaulting currency to %s", mic, default)
    else:
        logger.debug("No exchange given, defaulting currency to %s", default)
    return default
