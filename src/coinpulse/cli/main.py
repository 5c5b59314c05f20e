"""
Rich CLI interface for coinpulse.

Query cached market data from the terminal or start the API server.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, List

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from coinpulse import __version__
from coinpulse.core.config import get_settings
from coinpulse.providers.base import UpstreamError
from coinpulse.services.crypto import CryptoDataService

app = typer.Typer(
    name="coinpulse",
    help="Crypto market data through a rate-limited, stale-tolerant cache",
    no_args_is_help=True,
)
console = Console()


def get_service() -> CryptoDataService:
    """Get service instance."""
    return CryptoDataService.from_settings(get_settings())


def _run(call: Callable[[CryptoDataService], Awaitable[Any]]) -> Any:
    """Run one service call and close the service afterwards."""

    async def run() -> Any:
        service = get_service()
        try:
            return await call(service)
        finally:
            await service.close()

    try:
        return asyncio.run(run())
    except UpstreamError as e:
        console.print(f"[red]Upstream error: {e}[/red]")
        raise typer.Exit(code=1)


def _money(value: Any) -> str:
    if value is None:
        return "-"
    return f"${value:,.2f}" if value >= 1 else f"${value:,.6f}"


def _percent(value: Any) -> str:
    if value is None:
        return "-"
    color = "green" if value >= 0 else "red"
    return f"[{color}]{value:+.2f}%[/{color}]"


@app.command()
def version():
    """Show version information."""
    console.print(f"[bold cyan]coinpulse[/bold cyan] v{__version__}")


@app.command()
def top(
    limit: int = typer.Option(10, "--limit", "-n", min=1, max=250, help="Coins per page"),
    page: int = typer.Option(1, "--page", "-p", min=1, help="Page number"),
):
    """Show the top coins by market cap."""
    coins = _run(lambda service: service.get_top_coins(limit, page))

    table = Table(title=f"Top Coins (page {page})", show_header=True, header_style="bold magenta")
    table.add_column("#", justify="right")
    table.add_column("Coin", style="cyan")
    table.add_column("Symbol", style="yellow")
    table.add_column("Price", justify="right")
    table.add_column("24h", justify="right")
    table.add_column("Market Cap", justify="right")

    for coin in coins:
        table.add_row(
            str(coin.get("market_cap_rank") or "-"),
            coin.get("name", coin.get("coinId", "?")),
            str(coin.get("symbol", "")).upper(),
            _money(coin.get("current_price")),
            _percent(coin.get("price_change_percentage_24h")),
            f"${coin['market_cap']:,.0f}" if coin.get("market_cap") else "-",
        )

    console.print(table)


@app.command()
def prices(
    coin_ids: List[str] = typer.Argument(..., help="CoinGecko coin ids, e.g. bitcoin ethereum"),
):
    """Show current USD prices for the given coins."""
    result = _run(lambda service: service.get_coin_prices(coin_ids))

    table = Table(title="Prices", show_header=True, header_style="bold magenta")
    table.add_column("Coin", style="cyan")
    table.add_column("USD", justify="right")
    table.add_column("24h", justify="right")

    for coin_id in coin_ids:
        quote = result.get(coin_id)
        if quote is None:
            table.add_row(coin_id, "[dim]unknown[/dim]", "-")
            continue
        table.add_row(coin_id, _money(quote.get("usd")), _percent(quote.get("usd_24h_change")))

    console.print(table)


@app.command()
def serve(
    host: str = typer.Option(None, "--host", "-h", help="Host to bind"),
    port: int = typer.Option(None, "--port", "-p", help="Port to bind"),
    reload: bool = typer.Option(False, "--reload", "-r", help="Enable auto-reload"),
):
    """Start the API server."""
    from coinpulse.api.server import run_server

    settings = get_settings()
    host = host or settings.server.host
    port = port or settings.server.port

    console.print(Panel(
        f"Starting coinpulse API server\n"
        f"Host: [cyan]{host}[/cyan]\n"
        f"Port: [cyan]{port}[/cyan]\n"
        f"Docs: [link]http://{host}:{port}/docs[/link]",
        title="coinpulse Server",
    ))

    run_server(host=host, port=port, reload=reload or settings.server.reload)


@app.command()
def config():
    """Show current configuration."""
    settings = get_settings()

    table = Table(title="coinpulse Configuration", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Environment", settings.environment)
    table.add_row("Debug", str(settings.debug))
    table.add_row("Log Level", settings.logging.log_level)
    table.add_row("Log Format", settings.logging.log_format)
    table.add_row("Cache Duration", f"{settings.cache.cache_duration_seconds}s")
    table.add_row("Request Delay", f"{settings.cache.request_delay_seconds}s")
    table.add_row("Coalesce In-Flight", str(settings.cache.coalesce_in_flight))
    table.add_row("Max Entries", str(settings.cache.max_entries or "unbounded"))
    table.add_row("Max Queue Size", str(settings.cache.max_queue_size or "unbounded"))
    table.add_row("CoinGecko URL", settings.upstream.coingecko_base_url)
    table.add_row("CoinGecko Key", "configured" if settings.upstream.has_coingecko_key else "not set")
    table.add_row("Upstream Timeout", f"{settings.upstream.timeout_seconds}s")
    table.add_row("Server Host", settings.server.host)
    table.add_row("Server Port", str(settings.server.port))

    console.print(table)


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
