"""
Click CLI for the polyfeed market data client.

This module implements the `polyfeed` CLI tool with `stream`, `tickers` and
`aggregates` subcommands.
"""

import asyncio
import logging
import sys
from datetime import date, datetime
from typing import Awaitable, Callable, Optional

import click
from pydantic import BaseModel, ValidationError

from polyfeed.api.aggregates import AggregatesRequest, TimeSpan
from polyfeed.api.tickers import TickersRequest
from polyfeed.client import PolygonClient
from polyfeed.common.exceptions import PolyfeedError
from polyfeed.common.logging import setup_logging
from polyfeed.config.settings import ClientSettings, load_settings
from polyfeed.connections.routing import Feed
from polyfeed.messaging.models.messages import SubscriptionKey

logger = logging.getLogger(__name__)

# Valid log levels for validation
VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def validate_date(_ctx: click.Context, _param: click.Parameter, value: str) -> date:
    """Validate and parse date string in YYYY-MM-DD format."""
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise click.BadParameter(
            f"Invalid date format: '{value}'. Expected YYYY-MM-DD (e.g., 2024-01-15)"
        ) from None


def validate_subscriptions(
    _ctx: click.Context, _param: click.Parameter, value: str
) -> list[SubscriptionKey]:
    """Validate and parse comma-separated subscriptions such as ``T.MSFT,Q.*``."""
    if not value or not value.strip():
        raise click.BadParameter("Subscriptions cannot be empty")

    keys = []
    for param in (p.strip() for p in value.split(",")):
        if not param:
            continue
        try:
            keys.append(SubscriptionKey.parse(param))
        except ValueError as e:
            raise click.BadParameter(str(e)) from None

    if not keys:
        raise click.BadParameter("At least one subscription is required")

    return keys


def validate_log_level(_ctx: click.Context, _param: click.Parameter, value: str) -> str:
    """Validate log level."""
    value_upper = value.upper()
    if value_upper not in VALID_LOG_LEVELS:
        raise click.BadParameter(
            f"Invalid log level: '{value}'. "
            f"Valid levels: {', '.join(VALID_LOG_LEVELS)}"
        )
    return value_upper


def echo_model(model: BaseModel) -> None:
    click.echo(model.model_dump_json(by_alias=False, exclude_none=True))


@click.group()
@click.version_option(version="0.1.0", prog_name="polyfeed")
@click.option(
    "--env-file",
    default=".env",
    show_default=True,
    help="Dotenv file holding POLYGON_* settings.",
)
@click.option(
    "--log-level",
    default="INFO",
    callback=validate_log_level,
    help="Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO",
)
@click.option("--json-logs", is_flag=True, default=False, help="Emit logs as JSON lines.")
@click.pass_context
def cli(ctx: click.Context, env_file: str, log_level: str, json_logs: bool) -> None:
    """Polygon market data client.

    \b
    Commands:
      stream      Stream real-time events as JSON lines
      tickers     Page through reference tickers
      aggregates  Print aggregate bars for a symbol
    """
    setup_logging(level=getattr(logging, log_level), json_format=json_logs)
    ctx.ensure_object(dict)
    ctx.obj["env_file"] = env_file


def get_settings(ctx: click.Context) -> ClientSettings:
    try:
        return load_settings(env_file=ctx.obj["env_file"])
    except ValidationError as e:
        raise click.ClickException(f"Invalid configuration: {e}") from None


def run_client(
    coro_factory: Callable[[PolygonClient], Awaitable[None]], settings: ClientSettings
) -> None:
    async def _main() -> None:
        async with PolygonClient.create(settings) as client:
            await coro_factory(client)

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        logger.info("Received interrupt signal - shutting down")
    except PolyfeedError as e:
        logger.error("Fatal error: %s", e)
        sys.exit(1)


@cli.command()
@click.option(
    "--subscriptions",
    required=True,
    callback=validate_subscriptions,
    help="Comma-separated list of subscriptions (e.g., T.MSFT,Q.*,AM.SPY)",
)
@click.pass_context
def stream(ctx: click.Context, subscriptions: list[SubscriptionKey]) -> None:
    """Stream events for SUBSCRIPTIONS until interrupted.

    \b
    Example:
      polyfeed stream --subscriptions T.MSFT,Q.MSFT
    """
    settings = get_settings(ctx)
    logger.info("Streaming %s", ", ".join(key.param for key in subscriptions))

    async def _stream(client: PolygonClient) -> None:
        feeds = [client.subscribe(key.channel, key.symbol) for key in subscriptions]
        await client.start()

        async def _drain(feed: Feed) -> None:
            async for event in feed:
                echo_model(event)

        await asyncio.gather(*(_drain(feed) for feed in feeds))

    run_client(_stream, settings)


@cli.command()
@click.option("--market", default="stocks", show_default=True, help="Market to list.")
@click.option("--search", default=None, help="Search ticker symbol and name.")
@click.option(
    "--limit", default=100, show_default=True, type=click.IntRange(1, 1000), help="Page size."
)
@click.option("--max-pages", default=None, type=int, help="Stop after this many pages.")
@click.pass_context
def tickers(
    ctx: click.Context,
    market: str,
    search: Optional[str],
    limit: int,
    max_pages: Optional[int],
) -> None:
    """Page through reference tickers.

    \b
    Example:
      polyfeed tickers --market stocks --limit 50 --max-pages 2
    """
    settings = get_settings(ctx)
    request = TickersRequest(market=market, search=search, limit=limit)

    async def _tickers(client: PolygonClient) -> None:
        pages = client.paginate(request)
        async for page in pages:
            for ticker in page.results:
                echo_model(ticker)
            if max_pages is not None and pages.pages_fetched >= max_pages:
                break

    run_client(_tickers, settings)


@cli.command()
@click.argument("symbol")
@click.option(
    "--span",
    type=click.Choice([span.value for span in TimeSpan]),
    default=TimeSpan.DAY.value,
    show_default=True,
    help="Bar time span.",
)
@click.option(
    "--multiplier",
    default=1,
    show_default=True,
    type=click.IntRange(min=1),
    help="Span multiplier.",
)
@click.option("--start", required=True, callback=validate_date, help="First day (YYYY-MM-DD).")
@click.option("--end", required=True, callback=validate_date, help="Last day (YYYY-MM-DD).")
@click.pass_context
def aggregates(
    ctx: click.Context, symbol: str, span: str, multiplier: int, start: date, end: date
) -> None:
    """Print aggregate bars for SYMBOL.

    \b
    Example:
      polyfeed aggregates AAPL --span day --start 2024-01-02 --end 2024-01-31
    """
    if end < start:
        raise click.BadParameter("--end must not be before --start")

    settings = get_settings(ctx)
    request = AggregatesRequest(
        symbol=symbol.upper(),
        time_span=TimeSpan(span),
        multiplier=multiplier,
        start=start,
        end=end,
    )

    async def _aggregates(client: PolygonClient) -> None:
        async for bar in client.items(request):
            echo_model(bar)

    run_client(_aggregates, settings)


def main() -> None:
    """Entry point for the polyfeed CLI."""
    cli()


if __name__ == "__main__":
    main()
