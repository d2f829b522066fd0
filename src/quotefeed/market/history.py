"""Daily kline (history) parser.

The history endpoint wraps one JSON object in a JavaScript assignment::

    kline_day2024={"code":0,"data":{"sh600000":{"day":[["2024-01-02","10","10.5",...]]}}}

Only the date (index 0) and close (index 2) of each day are used.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from quotefeed.core.exceptions import ParseError
from quotefeed.core.models import PricePoint
from quotefeed.market.symbols import DEFAULT_CURRENCY, currency_for_exchange, decode

logger = logging.getLogger(__name__)

SOURCE = "tencent"
DATE_FORMAT = "%Y-%m-%d"

# "qfqday" is the forward-adjusted series, returned instead of "day" for some symbols
_DAY_KEYS = ("day", "qfqday")
_FRAGMENT_LEN = 200


def locate_json_object(body: str) -> str | None:
    """Return the first balanced ``{...}`` span in ``body``.

    Braces inside JSON strings are ignored.
    """
    start = body.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(body)):
        ch = body[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return body[start : i + 1]
    return None


def _load_document(body: str, provider_symbol: str) -> dict[str, Any]:
    span = locate_json_object(body)
    if span is None:
        raise ParseError(
            f"No JSON object in history response for {provider_symbol}",
            context={"symbol": provider_symbol, "fragment": body[:_FRAGMENT_LEN]},
        )
    try:
        document = json.loads(span, parse_float=Decimal)
    except json.JSONDecodeError as e:
        raise ParseError(
            f"Malformed history JSON for {provider_symbol}: {e}",
            context={"symbol": provider_symbol, "fragment": span[:_FRAGMENT_LEN]},
        ) from e
    if not isinstance(document, dict):
        raise ParseError(
            f"History JSON for {provider_symbol} is not an object",
            context={"symbol": provider_symbol, "fragment": span[:_FRAGMENT_LEN]},
        )
    return document


def _day_records(document: dict[str, Any], provider_symbol: str) -> list[Any]:
    data = document.get("data")
    if not isinstance(data, dict):
        return []
    series = data.get(provider_symbol)
    if not isinstance(series, dict):
        return []
    for key in _DAY_KEYS:
        records = series.get(key)
        if isinstance(records, list):
            return records
    return []


def _close_value(raw: Any) -> Decimal | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, Decimal)):
        return Decimal(raw)
    if isinstance(raw, str):
        try:
            value = Decimal(raw.strip())
        except InvalidOperation:
            return None
        return value if value.is_finite() else None
    return None


def parse_closes(
    body: str,
    provider_symbol: str,
    year: int | None = None,
) -> list[tuple[date, Decimal]]:
    """Extract ``(date, close)`` pairs with a strictly positive close.

    Returns an empty list when the body holds no decodable JSON; the history
    endpoint degrades that way from time to time.
    """
    try:
        document = _load_document(body, provider_symbol)
    except ParseError as e:
        logger.warning("%s (fragment: %r)", e, e.context.get("fragment"))
        return []

    closes: dict[date, Decimal] = {}
    dropped = 0
    for record in _day_records(document, provider_symbol):
        if not isinstance(record, list) or len(record) < 3:
            logger.debug("Skipping malformed kline record for %s: %r", provider_symbol, record)
            continue
        try:
            day = datetime.strptime(str(record[0]), DATE_FORMAT).date()
        except ValueError:
            logger.debug("Skipping kline record with bad date for %s: %r", provider_symbol, record[0])
            continue
        if year is not None and day.year != year:
            continue

        close = _close_value(record[2])
        if close is None or close <= 0:
            dropped += 1
            continue
        closes[day] = close

    if dropped:
        logger.info(
            "Dropped %d non-positive closes for %s%s",
            dropped,
            provider_symbol,
            f" in {year}" if year is not None else "",
        )

    return sorted(closes.items())


def parse_history(
    body: str,
    provider_symbol: str,
    year: int | None = None,
    *,
    currency: str | None = None,
    default_currency: str = DEFAULT_CURRENCY,
) -> list[PricePoint]:
    """Decode one history response into PricePoints ordered by date."""
    decoded = decode(provider_symbol)
    if currency is None:
        currency = currency_for_exchange(decoded.exchange, default=default_currency)

    return [
        PricePoint(
            symbol=decoded.ticker,
            exchange=decoded.exchange,
            date=day,
            price=close,
            currency=currency,
            source=SOURCE,
        )
        for day, close in parse_closes(body, provider_symbol, year)
    ]
