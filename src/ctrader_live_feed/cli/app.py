from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ctrader_live_feed.auth.credentials import Credentials
from ctrader_live_feed.auth.oauth import RefreshError
from ctrader_live_feed.core.config import Settings
from ctrader_live_feed.core.events import (
    AccountsListed,
    CredentialsRefreshed,
    ErrorReported,
    FatalError,
    FeedEvent,
    Instrument,
    InstrumentList,
    Reconnecting,
    SpotTick,
    StageChanged,
    TradingAccount,
)
from ctrader_live_feed.core.logging import configure_logging
from ctrader_live_feed.pipeline.orchestrator import FATAL_ERRORS, LiveFeed
from ctrader_live_feed.session.handshake import SessionMode, resolve_instruments
from ctrader_live_feed.transport.connection import ConnectError, Endpoint, open_tls_connection
from ctrader_live_feed.writer.symbols import write_symbols_csv

app = typer.Typer(help="cTrader Open API live price feed")
console = Console()


def _format_event(event: FeedEvent) -> str | None:
    match event:
        case SpotTick():
            bid = f"{event.bid:.5f}" if event.bid is not None else "-"
            ask = f"{event.ask:.5f}" if event.ask is not None else "-"
            stamp = f" [dim]{event.timestamp:%H:%M:%S}[/dim]" if event.timestamp is not None else ""
            return f"[bold]{escape(event.label)}[/bold] bid={bid} ask={ask}{stamp}"
        case StageChanged():
            detail = f" ({escape(event.detail)})" if event.detail else ""
            return f"[cyan]{event.previous} -> {event.current}[/cyan]{detail}"
        case Reconnecting():
            return (
                f"[yellow]Reconnecting in {event.delay_seconds:.1f}s "
                f"(attempt {event.attempt}/{event.max_attempts}):[/yellow] {escape(event.reason)}"
            )
        case ErrorReported():
            colour = "red" if event.fatal else "yellow"
            return f"[{colour}]{escape(event.code)}[/{colour}] {escape(event.description)} [dim]({event.stage})[/dim]"
        case CredentialsRefreshed():
            expiry = f", expires {event.expires_at.isoformat()}" if event.expires_at is not None else ""
            return f"[green]Access token refreshed{expiry}[/green]"
        case FatalError():
            return f"[red]Fatal:[/red] {escape(event.message)}"
        case InstrumentList():
            return f"{len(event.instruments)} instruments available for account {event.account_id}"
        case AccountsListed():
            return f"{len(event.accounts)} trading accounts reachable with this token"
    return None


def _print_event(event: FeedEvent) -> None:
    line = _format_event(event)
    if line is not None:
        console.print(line)


def _accounts_table(accounts: Sequence[TradingAccount]) -> Table:
    table = Table(title="Trading accounts")
    table.add_column("Account ID", justify="right")
    table.add_column("Type")
    table.add_column("Login", justify="right")
    table.add_column("Broker")
    for account in accounts:
        if account.is_live is None:
            kind = "-"
        else:
            kind = "live" if account.is_live else "demo"
        login = str(account.trader_login) if account.trader_login is not None else "-"
        table.add_row(str(account.account_id), kind, login, escape(account.broker or "-"))
    return table


def _choose_symbol(instruments: Sequence[Instrument], prompt: Callable[[str], str]) -> str:
    while True:
        answer = prompt("Symbol to stream (name or id)").strip()
        if resolve_instruments([answer], instruments):
            return answer
        console.print(f"[red]{escape(answer)} is not in the instrument list.[/red]")


async def _drive(feed: LiveFeed, on_event: Callable[[FeedEvent], None]) -> bool:
    async def consume() -> None:
        async for event in feed.bus.events():
            on_event(event)

    consumer = asyncio.create_task(consume())
    try:
        await feed.run()
    except FATAL_ERRORS:
        return False
    finally:
        await consumer
    return True


def _run_one_shot(settings: Settings, mode: SessionMode) -> list[FeedEvent]:
    events: list[FeedEvent] = []
    feed = LiveFeed(settings, mode=mode)
    if not asyncio.run(_drive(feed, events.append)):
        for event in events:
            if isinstance(event, FatalError):
                _print_event(event)
        raise typer.Exit(code=1)
    return events


def _fetch_instruments(settings: Settings) -> tuple[Instrument, ...]:
    events = _run_one_shot(settings, SessionMode.SYMBOLS)
    lists = [event for event in events if isinstance(event, InstrumentList)]
    if not lists:
        console.print("[red]The server did not return an instrument list.[/red]")
        raise typer.Exit(code=1)
    return lists[-1].instruments


@app.command("stream")
def stream(
    symbol: list[str] | None = typer.Option(
        default=None,
        help="Symbol name or id to stream; repeat for several. Defaults to CTRADER_SYMBOLS.",
    ),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level)

    selection = list(symbol or settings.symbol_selection)
    if not selection:
        instruments = _fetch_instruments(settings)
        path = write_symbols_csv(instruments, settings.symbols_csv)
        console.print(f"Instrument list written to [bold]{path}[/bold] ({len(instruments)} symbols)")
        selection = [_choose_symbol(instruments, typer.prompt)]

    feed = LiveFeed(settings, mode=SessionMode.STREAM, selection=selection)
    try:
        completed = asyncio.run(_drive(feed, _print_event))
    except KeyboardInterrupt:
        console.print("Stopped.")
        return
    if not completed:
        raise typer.Exit(code=1)


@app.command("symbols")
def symbols(
    output: Path | None = typer.Option(default=None, help="CSV path, defaults to CTRADER_SYMBOLS_CSV"),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level)

    instruments = _fetch_instruments(settings)
    path = write_symbols_csv(instruments, output or settings.symbols_csv)
    console.print(f"[green]{len(instruments)} symbols written to {path}.[/green]")


@app.command("accounts")
def accounts() -> None:
    settings = Settings()
    configure_logging(settings.log_level)

    events = _run_one_shot(settings, SessionMode.ACCOUNTS)
    listed = [event for event in events if isinstance(event, AccountsListed)]
    if not listed or not listed[-1].accounts:
        console.print("No trading accounts are reachable with this access token.")
        return
    console.print(_accounts_table(listed[-1].accounts))


@app.command("refresh-token")
def refresh_token() -> None:
    settings = Settings()
    configure_logging(settings.log_level)

    feed = LiveFeed(settings)
    try:
        credentials = asyncio.run(feed.refresh_now())
    except RefreshError as exc:
        console.print(f"[red]Refresh failed:[/red] {escape(str(exc))}")
        raise typer.Exit(code=1) from exc

    expiry = credentials.expires_at.isoformat() if credentials.expires_at is not None else "unknown"
    console.print(f"[green]Access token refreshed and saved to {settings.env_file}.[/green] Expires: {expiry}")


async def _probe(endpoint: Endpoint) -> None:
    connection = await open_tls_connection(endpoint)
    await connection.close()


@app.command("check-env")
def check_env(
    probe: bool = typer.Option(default=True, help="Open a TLS connection to the gateway"),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level)

    credentials = Credentials.from_settings(settings)
    missing = credentials.missing_variables()
    table = Table(title="Configuration")
    table.add_column("Variable")
    table.add_column("Status")
    for variable in ("CTRADER_CLIENT_ID", "CTRADER_CLIENT_SECRET", "CTRADER_ACCESS_TOKEN"):
        table.add_row(variable, "[red]missing[/red]" if variable in missing else "[green]set[/green]")
    table.add_row(
        "CTRADER_REFRESH_TOKEN",
        "[green]set[/green]" if credentials.refresh_token else "[yellow]missing (no automatic refresh)[/yellow]",
    )
    table.add_row("CTRADER_ACCOUNT_ID", str(settings.account_id) if settings.account_id else "discovered at login")
    table.add_row("CTRADER_SYMBOLS", ", ".join(settings.symbol_selection) or "prompted")
    console.print(table)

    failed = bool(missing)
    if probe:
        endpoint = Endpoint.from_settings(settings)
        try:
            asyncio.run(_probe(endpoint))
        except ConnectError as exc:
            console.print(f"[red]Gateway unreachable:[/red] {escape(str(exc))}")
            failed = True
        else:
            console.print(f"[green]TLS connection to {endpoint.address} OK.[/green]")

    if failed:
        raise typer.Exit(code=1)
