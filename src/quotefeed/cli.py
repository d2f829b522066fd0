"""Click-based CLI for quotefeed.

Commands only parse options and print results; fetching goes through the
configured provider, persistence through the store and the sync jobs.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import datetime
from zoneinfo import ZoneInfo

import click
from rich.console import Console
from rich.table import Table

console = Console(stderr=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run_async(coro):
    """Run an async coroutine from synchronous Click code."""
    return asyncio.run(coro)


def _load_config(ctx: click.Context):
    """Load config lazily, caching on first call."""
    if "config" not in ctx.obj:
        from quotefeed.core import load_config

        ctx.obj["config"] = load_config(config_path=ctx.obj.get("config_path"))
    return ctx.obj["config"]


def _create_provider(config):
    from quotefeed.market import create_provider

    return create_provider(config)


async def _create_store_async(config):
    from quotefeed.market import create_store

    return await create_store(config.storage)


def _parse_listings(tickers: str, exchange: str | None) -> list:
    """Split "600000.SH,000001" into Listings; ``exchange`` applies to bare tickers."""
    from quotefeed.core import Listing

    listings = [
        Listing(ticker=t.strip(), exchange=None if "." in t else exchange)
        for t in tickers.split(",")
        if t.strip()
    ]
    if not listings:
        raise click.UsageError("--tickers must name at least one security")
    return listings


def _echo_json(records) -> None:
    output = [r.model_dump(mode="json") for r in records]
    click.echo(json.dumps(output, indent=2, default=str))


def _quote_table(quotes) -> Table:
    table = Table(title="Real-time Quotes")
    table.add_column("Symbol", style="bold")
    table.add_column("Exchange")
    table.add_column("Name")
    table.add_column("Price", justify="right")
    table.add_column("Change", justify="right")
    table.add_column("Change %", justify="right")
    table.add_column("Volume", justify="right")
    for q in quotes:
        table.add_row(
            q.symbol,
            q.exchange or "",
            q.name or "",
            str(q.price) if q.price is not None else "",
            str(q.change_absolute) if q.change_absolute is not None else "",
            str(q.change_percent) if q.change_percent is not None else "",
            str(q.volume) if q.volume is not None else "",
        )
    return table


def _price_table(points) -> Table:
    table = Table(title="Daily Prices")
    table.add_column("Date")
    table.add_column("Symbol", style="bold")
    table.add_column("Exchange")
    table.add_column("Close", justify="right")
    table.add_column("Currency")
    for p in points:
        table.add_row(str(p.date), p.symbol, p.exchange or "", str(p.price), p.currency)
    return table


def _rate_table(rates) -> Table:
    table = Table(title="Exchange Rates")
    table.add_column("Date")
    table.add_column("From", style="bold")
    table.add_column("To", style="bold")
    table.add_column("Rate", justify="right")
    for r in rates:
        table.add_row(str(r.date), r.from_currency, r.to_currency, str(r.rate))
    return table


def _print_report(label: str, report) -> None:
    console.print(
        f"[green]✓[/green] {label}: stored {report.stored} records "
        f"({report.parsed} parsed, {report.degraded} degraded, {report.failed} failed)"
    )


_FORMAT_OPTION = click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    help="Output format.",
)
_DATE = click.DateTime(formats=["%Y-%m-%d"])


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    envvar="QUOTEFEED_CONFIG",
    default=None,
    help="Path to quotefeed.yml config file.",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    default=False,
    help="Enable debug logging.",
)
@click.version_option(package_name="quotefeed")
@click.pass_context
def cli(ctx: click.Context, config: str | None, verbose: bool) -> None:
    """quotefeed: A-share / H-share quotes, daily prices and FX rates."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose
    ctx.obj["console"] = console
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# quote
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--tickers", "-t", required=True, help="Comma-separated tickers, e.g. 600000.SH,00700.HK")
@click.option("--exchange", "-x", default=None, help="MIC code for bare tickers (XSHG, XSHE, XBSE, XHKG).")
@_FORMAT_OPTION
@click.pass_context
def quote(ctx: click.Context, tickers: str, exchange: str | None, output_format: str) -> None:
    """Show live quotes."""
    config = _load_config(ctx)
    listings = _parse_listings(tickers, exchange)

    async def _run():
        provider = _create_provider(config)
        try:
            return await provider.fetch_batch_quotes(listings)
        finally:
            await provider.close()

    results = _run_async(_run())
    quotes = [results[listing] for listing in listings if listing in results]
    if not quotes:
        console.print("[yellow]No real-time data returned.[/yellow]")
        raise SystemExit(1)

    if output_format == "json":
        _echo_json(quotes)
    else:
        console.print(_quote_table(quotes))
    missing = len(listings) - len(quotes)
    if missing:
        console.print(f"[yellow]{missing} securities had no data.[/yellow]")


# ---------------------------------------------------------------------------
# history
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("ticker")
@click.option("--exchange", "-x", default=None, help="MIC code when TICKER has no suffix.")
@click.option("--start", "-s", type=_DATE, required=True, help="First day (YYYY-MM-DD).")
@click.option("--end", "-e", type=_DATE, required=True, help="Last day (YYYY-MM-DD).")
@_FORMAT_OPTION
@click.pass_context
def history(
    ctx: click.Context,
    ticker: str,
    exchange: str | None,
    start: datetime,
    end: datetime,
    output_format: str,
) -> None:
    """Show daily closes for one security."""
    config = _load_config(ctx)
    if end < start:
        raise click.UsageError("--end must not be before --start")

    async def _run():
        provider = _create_provider(config)
        try:
            return await provider.fetch_price_history(ticker, exchange, start.date(), end.date())
        finally:
            await provider.close()

    points = _run_async(_run())
    if not points:
        console.print(f"[yellow]No prices found for {ticker}.[/yellow]")
        raise SystemExit(1)

    if output_format == "json":
        _echo_json(points)
    else:
        console.print(_price_table(points))


# ---------------------------------------------------------------------------
# fx
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("from_currency")
@click.argument("to_currency")
@click.option("--date", "-d", "on_date", type=_DATE, default=None, help="Day (YYYY-MM-DD). Default: today.")
@click.option("--start", "-s", type=_DATE, default=None, help="Range start; requires --end.")
@click.option("--end", "-e", type=_DATE, default=None, help="Range end; requires --start.")
@_FORMAT_OPTION
@click.pass_context
def fx(
    ctx: click.Context,
    from_currency: str,
    to_currency: str,
    on_date: datetime | None,
    start: datetime | None,
    end: datetime | None,
    output_format: str,
) -> None:
    """Show the exchange rate FROM_CURRENCY -> TO_CURRENCY."""
    config = _load_config(ctx)
    if (start is None) != (end is None):
        raise click.UsageError("--start and --end must be given together")

    async def _run():
        provider = _create_provider(config)
        try:
            if start is not None:
                return await provider.fetch_exchange_rate_range(
                    from_currency, to_currency, start.date(), end.date()
                )
            rate = await provider.fetch_exchange_rate(
                from_currency, to_currency, on_date.date() if on_date else None
            )
            return [rate] if rate is not None else []
        finally:
            await provider.close()

    rates = _run_async(_run())
    if not rates:
        console.print(
            f"[yellow]No rate available for {from_currency.upper()}/{to_currency.upper()}.[/yellow]"
        )
        raise SystemExit(1)

    if output_format == "json":
        _echo_json(rates)
    else:
        console.print(_rate_table(rates))


# ---------------------------------------------------------------------------
# search
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("query")
@click.option("--country", default=None, help="Filter by country code (CN, HK).")
@click.option("--exchange", "-x", default=None, help="Filter by MIC code.")
@_FORMAT_OPTION
@click.pass_context
def search(
    ctx: click.Context,
    query: str,
    country: str | None,
    exchange: str | None,
    output_format: str,
) -> None:
    """Search securities by code or name."""
    config = _load_config(ctx)

    async def _run():
        provider = _create_provider(config)
        try:
            return await provider.search_securities(query, country_code=country, exchange=exchange)
        finally:
            await provider.close()

    matches = _run_async(_run())
    if output_format == "json":
        _echo_json(matches)
        return

    table = Table(title=f"Securities matching {query!r}")
    table.add_column("Symbol", style="bold")
    table.add_column("Name")
    table.add_column("Exchange")
    table.add_column("Country")
    for m in matches:
        table.add_row(m.symbol, m.name or "", m.exchange or "", m.country_code or "")
    console.print(table)


# ---------------------------------------------------------------------------
# health
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_context
def health(ctx: click.Context) -> None:
    """Check that the upstream answers."""
    config = _load_config(ctx)

    async def _run():
        provider = _create_provider(config)
        try:
            return await provider.healthy()
        finally:
            await provider.close()

    if _run_async(_run()):
        console.print(f"[green]✓[/green] {config.provider.name} is reachable")
        return
    console.print(f"[red]✗[/red] {config.provider.name} is not reachable")
    raise SystemExit(1)


# ---------------------------------------------------------------------------
# sync
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--tickers", "-t", required=True, help="Comma-separated tickers to update.")
@click.option("--exchange", "-x", default=None, help="MIC code for bare tickers.")
@click.option("--start", "-s", type=_DATE, default=None, help="Backfill history from this day.")
@click.option("--end", "-e", type=_DATE, default=None, help="Backfill history up to this day.")
@click.option(
    "--force",
    is_flag=True,
    default=False,
    help="Fetch live prices even when the market is closed.",
)
@click.pass_context
def sync(
    ctx: click.Context,
    tickers: str,
    exchange: str | None,
    start: datetime | None,
    end: datetime | None,
    force: bool,
) -> None:
    """Fetch prices and upsert them into the store.

    Without --start/--end, stores today's live prices (only during trading
    hours unless --force). With them, backfills daily closes.
    """
    from quotefeed.market import MarketDataSync, market_open

    config = _load_config(ctx)
    listings = _parse_listings(tickers, exchange)
    if (start is None) != (end is None):
        raise click.UsageError("--start and --end must be given together")
    tz = ZoneInfo(config.provider.market_timezone)
    if start is None and not force and not market_open(tz=tz):
        console.print("[yellow]Market is closed, skipping. Use --force to override.[/yellow]")
        return

    async def _run():
        store = await _create_store_async(config)
        try:
            provider = _create_provider(config)
            try:
                job = MarketDataSync(provider, store, base_currency=config.provider.base_currency)
                if start is not None:
                    return await job.sync_history(listings, start.date(), end.date())
                return await job.sync_realtime(listings)
            finally:
                await provider.close()
        finally:
            await store.close()

    report = _run_async(_run())
    _print_report("Prices", report)


@cli.command(name="sync-rates")
@click.argument("from_currency")
@click.argument("to_currency")
@click.option("--start", "-s", type=_DATE, required=True, help="First day (YYYY-MM-DD).")
@click.option("--end", "-e", type=_DATE, required=True, help="Last day (YYYY-MM-DD).")
@click.pass_context
def sync_rates(
    ctx: click.Context,
    from_currency: str,
    to_currency: str,
    start: datetime,
    end: datetime,
) -> None:
    """Backfill daily exchange rates into the store."""
    from quotefeed.market import MarketDataSync

    config = _load_config(ctx)

    async def _run():
        store = await _create_store_async(config)
        try:
            provider = _create_provider(config)
            try:
                job = MarketDataSync(provider, store, base_currency=config.provider.base_currency)
                return await job.sync_rates(from_currency, to_currency, start.date(), end.date())
            finally:
                await provider.close()
        finally:
            await store.close()

    report = _run_async(_run())
    _print_report(f"{from_currency.upper()}/{to_currency.upper()}", report)
