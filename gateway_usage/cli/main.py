"""
CLI interface for the gateway usage cache.

Provides command-line access to request pages, summaries and daily totals.
"""

import asyncio
import logging
import sys
from dataclasses import replace
from datetime import datetime
from typing import List, Optional, Sequence

import typer
from rich.console import Console
from rich.table import Table

from gateway_usage.config.loader import BackendConfig, BackendKind, PanelConfig, default_panel_config, load_panel_config
from gateway_usage.core.fallback import generate_fallback_rows
from gateway_usage.core.query_key import UsageFilters
from gateway_usage.core.service import FALLBACK_NOTICE, UsageCacheService
from gateway_usage.storage.models import RequestSummary, UsageRequestEntry
from gateway_usage.storage.repository import initialize_schema, insert_usage_requests

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log cache activity to stderr"),
):
    """Gateway usage cache CLI."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s")
    if ctx.invoked_subcommand is None:
        console.print("Gateway Usage - Use --help to see available commands")


def _load_config(config_path: Optional[str], db_path: Optional[str], fallback: bool) -> PanelConfig:
    config = load_panel_config(config_path) if config_path else default_panel_config()
    if db_path:
        config = replace(config, backend=BackendConfig(kind=BackendKind.SQLITE, db_path=db_path))
    if fallback:
        config = replace(config, fallback=replace(config.fallback, enabled=True))
    return config


def _filters(
    hours: int,
    providers: Optional[List[str]],
    models: Optional[List[str]],
    origins: Optional[List[str]],
    sessions: Optional[List[str]],
) -> UsageFilters:
    # Repeated options arrive as empty lists when omitted; the CLI cannot express match-nothing.
    return UsageFilters(
        hours=hours,
        providers=providers or None,
        models=models or None,
        origins=origins or None,
        sessions=sessions or None,
    )


def _fmt_when(unix_ms: int) -> str:
    return datetime.fromtimestamp(unix_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def _display_rows(rows: Sequence[UsageRequestEntry], title: str) -> None:
    table = Table(title=title)
    table.add_column("Time")
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Origin")
    table.add_column("Session")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Total", justify="right")
    for row in rows:
        table.add_row(
            _fmt_when(row.unix_ms),
            row.provider,
            row.model,
            row.origin,
            row.session_id,
            f"{row.input_tokens:,}",
            f"{row.output_tokens:,}",
            f"{row.total_tokens:,}",
        )
    console.print(table)


def _display_summary(summary: Optional[RequestSummary]) -> None:
    if summary is None:
        console.print("[dim]Totals: unknown until every page is loaded[/]")
        return
    console.print(
        f"Requests: {summary.requests:,}  Input: {summary.input:,}  Output: {summary.output:,}  "
        f"Total: {summary.total:,}  Cache create/read: {summary.cache_create:,} / {summary.cache_read:,}"
    )


hours_option = typer.Option(24, "--hours", "-h", help="Window in hours")
provider_option = typer.Option(None, "--provider", "-p", help="Restrict to a provider (repeatable)")
model_option = typer.Option(None, "--model", "-m", help="Restrict to a model (repeatable)")
origin_option = typer.Option(None, "--origin", "-o", help="Restrict to an origin (repeatable)")
session_option = typer.Option(None, "--session", "-s", help="Restrict to a session (repeatable)")
config_option = typer.Option(None, "--config", "-c", help="Path to a YAML panel config")
db_option = typer.Option(None, "--db", help="Read from a local SQLite usage ledger")
fallback_option = typer.Option(False, "--fallback", help="Show generated test data if the gateway is unreachable")


@app.command()
def init(db: str = typer.Option("gateway_usage.db", "--db", help="Ledger path")):
    """Create an empty local usage ledger."""
    try:
        initialize_schema(db)
        console.print(f"[green]✓[/] Ledger initialized at {db}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing ledger:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def requests(
    hours: int = hours_option,
    provider: Optional[List[str]] = provider_option,
    model: Optional[List[str]] = model_option,
    origin: Optional[List[str]] = origin_option,
    session: Optional[List[str]] = session_option,
    pages: int = typer.Option(1, "--pages", help="Number of pages to load"),
    config: Optional[str] = config_option,
    db: Optional[str] = db_option,
    fallback: bool = fallback_option,
):
    """List usage requests newest-first with their totals."""
    try:
        service = UsageCacheService.from_config(_load_config(config, db, fallback))
        filters = _filters(hours, provider, model, origin, session)

        async def _run():
            entry = await service.load_page(filters, requests_tab=True)
            for _ in range(max(0, pages - 1)):
                if entry is None or not entry.has_more:
                    break
                entry = await service.load_more(filters)
            summary = await service.refresh_summary(filters)
            return entry, summary

        entry, summary = asyncio.run(_run())
    except (ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if service.notice:
        console.print(f"[bold yellow]{service.notice}[/]")
    if entry is None:
        console.print("[red]No usage data available[/]")
        sys.exit(EXIT_CODE_FAIL)

    _display_rows(entry.rows, "Usage Requests" + (" (test data)" if entry.using_fallback else ""))
    if entry.has_more:
        console.print("[dim]More rows available; use --pages to load them[/]")
    _display_summary(summary)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def summary(
    hours: int = hours_option,
    provider: Optional[List[str]] = provider_option,
    model: Optional[List[str]] = model_option,
    origin: Optional[List[str]] = origin_option,
    session: Optional[List[str]] = session_option,
    config: Optional[str] = config_option,
    db: Optional[str] = db_option,
):
    """Show request and token totals for the filters."""
    try:
        service = UsageCacheService.from_config(_load_config(config, db, False))
        filters = _filters(hours, provider, model, origin, session)
        result = asyncio.run(service.refresh_summary(filters))
    except (ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_summary(result)
    sys.exit(EXIT_CODE_PASS if result is not None else EXIT_CODE_FAIL)


@app.command()
def daily(
    config: Optional[str] = config_option,
    db: Optional[str] = db_option,
    fallback: bool = fallback_option,
):
    """Show daily token totals per provider over the trailing window."""
    try:
        service = UsageCacheService.from_config(_load_config(config, db, fallback))
        totals = asyncio.run(service.refresh_daily())
    except (ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if totals is None:
        console.print("[red]Daily totals unavailable[/]")
        sys.exit(EXIT_CODE_FAIL)
    if totals.synthetic:
        console.print(f"[bold yellow]{FALLBACK_NOTICE}[/]")
    elif totals.using_fallback:
        console.print("[bold yellow]Derived locally from loaded rows[/]")

    providers = [p.provider for p in totals.providers]
    table = Table(title="Daily Token Totals")
    table.add_column("Day")
    for name in providers:
        table.add_column(name, justify="right")
    table.add_column("Total", justify="right")
    for day in totals.days:
        table.add_row(
            datetime.fromtimestamp(day.day_start_unix_ms / 1000).strftime("%Y-%m-%d"),
            *(f"{day.provider_totals.get(name, 0):,}" for name in providers),
            f"{day.total_tokens:,}",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def preview(
    count: int = typer.Option(20, "--count", "-n", help="Rows to generate"),
    hours: int = hours_option,
    seed_time: Optional[int] = typer.Option(None, "--seed-time", help="Generation timestamp in unix ms"),
):
    """Print generated test rows; the same seed time always yields the same rows."""
    generated_at = seed_time if seed_time is not None else int(datetime.now().timestamp() * 1000)
    rows = generate_fallback_rows(generated_at_ms=generated_at, count=count, hours=hours)
    _display_rows(rows, f"Test Data (seed time {generated_at})")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def seed(
    count: int = typer.Option(500, "--count", "-n", help="Rows to insert"),
    hours: int = typer.Option(24 * 60, "--hours", "-h", help="Spread rows over this many hours"),
    db: str = typer.Option("gateway_usage.db", "--db", help="Ledger path"),
):
    """Fill a local ledger with generated rows for demos."""
    try:
        initialize_schema(db)
        rows = generate_fallback_rows(
            generated_at_ms=int(datetime.now().timestamp() * 1000), count=count, hours=hours
        )
        insert_usage_requests(rows, db)
        console.print(f"[green]✓[/] Inserted {len(rows)} rows into {db}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error seeding ledger:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


if __name__ == "__main__":
    app()
