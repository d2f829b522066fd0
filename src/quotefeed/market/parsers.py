"""Line parsers for the upstream's tilde-delimited real-time responses.

The real-time endpoint answers with one JavaScript-style assignment per
requested symbol::

    v_sz000858="51~五 粮 液~000858~27.78~0.18~0.65~417909~116339~~1054.52";

Quotes and FX lines share the grammar but not the field layout. These are
pure functions over the response text so they can be tested without a network.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from quotefeed.core.exceptions import InvalidValueError, UnsupportedPairError
from quotefeed.core.models import ExchangeRate, FxQuote, Quote
from quotefeed.market.symbols import decode

logger = logging.getLogger(__name__)

SOURCE = "tencent"

# Every assignment in a (possibly combined) response body
_ASSIGNMENT_RE = re.compile(r'\b[A-Za-z]+_([A-Za-z0-9.]+)="([^"]*)"')

# Quote field indices
_Q_NAME = 1
_Q_PRICE = 3
_Q_CHANGE = 4
_Q_CHANGE_PCT = 5
_Q_VOLUME = 6
_Q_TURNOVER = 7
_Q_MARKET_CAP = 9

# FX field indices
_FX_STATUS = 0
_FX_NAME = 1
_FX_RATE = 3
_FX_PREV_CLOSE = 6
_FX_OPEN = 7
_FX_HIGH = 8
_FX_LOW = 9
_FX_CHANGE = 12
_FX_CHANGE_PCT = 13

FX_SUCCESS_STATUS = "310"
FX_PAIR_PREFIX = "wh"
FX_BASE_CURRENCY = "CNY"
FX_QUOTE_CURRENCIES: tuple[str, ...] = (
    "USD",
    "HKD",
    "EUR",
    "GBP",
    "JPY",
    "AUD",
    "CAD",
    "CHF",
    "SGD",
    "NZD",
)
FX_PAIRS: frozenset[tuple[str, str]] = frozenset(
    {(c, FX_BASE_CURRENCY) for c in FX_QUOTE_CURRENCIES}
    | {(FX_BASE_CURRENCY, c) for c in FX_QUOTE_CURRENCIES}
)


# --- Field helpers ---


def _field(fields: list[str], index: int) -> str | None:
    if index >= len(fields):
        return None
    value = fields[index].strip()
    return value or None


def _to_decimal(raw: str | None) -> Decimal | None:
    if raw is None:
        return None
    try:
        value = Decimal(raw.strip())
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return value


def _to_int(raw: str | None) -> int | None:
    value = _to_decimal(raw)
    return int(value) if value is not None else None


def _positive(raw: str | None, field: str) -> Decimal:
    """Parse a strictly positive decimal or raise InvalidValueError."""
    value = _to_decimal(raw)
    if value is None or value <= 0:
        raise InvalidValueError(
            f"{field} is not a positive number: {raw!r}",
            context={"field": field, "value": raw},
        )
    return value


# --- Assignment extraction ---


def find_payload(body: str, provider_symbol: str) -> str | None:
    """Return the quoted payload assigned to exactly ``provider_symbol``."""
    pattern = re.compile(
        r'\b[A-Za-z]+_' + re.escape(provider_symbol) + r'="([^"]*)"'
    )
    match = pattern.search(body)
    return match.group(1) if match else None


def extract_payloads(body: str) -> dict[str, str]:
    """Map every provider symbol in ``body`` to its payload."""
    return {m.group(1): m.group(2) for m in _ASSIGNMENT_RE.finditer(body)}


# --- Quotes ---


def parse_quote(
    body: str,
    provider_symbol: str,
    *,
    allow_partial: bool = False,
    fetched_at: datetime | None = None,
) -> Quote | None:
    """Decode the real-time quote for ``provider_symbol`` from ``body``.

    Returns None when the symbol has no assignment in the body (not traded,
    delisted, or rejected by the upstream) and when the price is missing or
    not strictly positive. With ``allow_partial=True`` the latter case yields a
    Quote whose ``price`` is None instead, which is useful for reading the
    name of a suspended security but must never be priced.
    """
    payload = find_payload(body, provider_symbol)
    if payload is None:
        logger.debug("No quote assignment for %s", provider_symbol)
        return None

    fields = payload.split("~")
    try:
        price: Decimal | None = _positive(_field(fields, _Q_PRICE), "price")
    except InvalidValueError as e:
        logger.debug("Rejected quote for %s: %s", provider_symbol, e)
        if not allow_partial:
            return None
        price = None

    decoded = decode(provider_symbol)
    return Quote(
        symbol=decoded.ticker,
        exchange=decoded.exchange,
        provider_symbol=provider_symbol,
        name=_field(fields, _Q_NAME),
        price=price,
        change_absolute=_to_decimal(_field(fields, _Q_CHANGE)),
        change_percent=_to_decimal(_field(fields, _Q_CHANGE_PCT)),
        volume=_to_int(_field(fields, _Q_VOLUME)),
        turnover=_to_decimal(_field(fields, _Q_TURNOVER)),
        market_cap=_to_decimal(_field(fields, _Q_MARKET_CAP)),
        fetched_at=fetched_at,
    )


# --- FX ---


def fx_pair_code(from_currency: str, to_currency: str) -> str:
    """Build the upstream FX symbol, e.g. ``whUSDCNY``.

    Raises:
        UnsupportedPairError: The pair is not on the allow-list.
    """
    pair = (from_currency.strip().upper(), to_currency.strip().upper())
    if pair not in FX_PAIRS:
        raise UnsupportedPairError(
            f"Unsupported currency pair: {pair[0]}/{pair[1]}",
            context={"from_currency": pair[0], "to_currency": pair[1]},
        )
    return f"{FX_PAIR_PREFIX}{pair[0]}{pair[1]}"


def split_pair_code(pair_code: str) -> tuple[str, str]:
    """``whUSDCNY`` -> ("USD", "CNY")."""
    body = pair_code[len(FX_PAIR_PREFIX) :] if pair_code.startswith(FX_PAIR_PREFIX) else pair_code
    return body[:3].upper(), body[3:6].upper()


def parse_fx_detail(body: str, pair_code: str) -> FxQuote | None:
    """Decode every FX field without applying the status gate."""
    payload = find_payload(body, pair_code)
    if payload is None:
        logger.debug("No FX assignment for %s", pair_code)
        return None

    fields = payload.split("~")
    return FxQuote(
        pair_code=pair_code,
        status=_field(fields, _FX_STATUS) or "",
        name=_field(fields, _FX_NAME),
        rate=_to_decimal(_field(fields, _FX_RATE)),
        previous_close=_to_decimal(_field(fields, _FX_PREV_CLOSE)),
        open=_to_decimal(_field(fields, _FX_OPEN)),
        high=_to_decimal(_field(fields, _FX_HIGH)),
        low=_to_decimal(_field(fields, _FX_LOW)),
        change=_to_decimal(_field(fields, _FX_CHANGE)),
        change_percent=_to_decimal(_field(fields, _FX_CHANGE_PCT)),
    )


def parse_fx(body: str, pair_code: str, *, on_date: date) -> ExchangeRate | None:
    """Decode a real-time FX line into an ExchangeRate.

    A status other than the success sentinel discards the line even when the
    rate field holds a valid number: the upstream uses it to flag stale data.
    """
    payload = find_payload(body, pair_code)
    if payload is None:
        logger.debug("No FX assignment for %s", pair_code)
        return None

    fields = payload.split("~")
    try:
        status = _field(fields, _FX_STATUS)
        if status != FX_SUCCESS_STATUS:
            raise InvalidValueError(
                f"FX status {status!r} is not {FX_SUCCESS_STATUS}",
                context={"field": "status", "value": status},
            )
        rate = _positive(_field(fields, _FX_RATE), "rate")
    except InvalidValueError as e:
        logger.debug("Rejected FX line for %s: %s", pair_code, e)
        return None

    from_currency, to_currency = split_pair_code(pair_code)
    return ExchangeRate(
        from_currency=from_currency,
        to_currency=to_currency,
        date=on_date,
        rate=rate,
        source=SOURCE,
    )
