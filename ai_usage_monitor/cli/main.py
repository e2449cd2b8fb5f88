"""
CLI interface for AI Usage Monitor.

Provides command-line access to cost reports and pricing data.
"""

import json
import sys
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_usage_monitor.config.loader import MonitorConfig, load_config
from ai_usage_monitor.core.cost_store import CostStore, PricingRefreshResult, daily_totals
from ai_usage_monitor.core.pricing_resolver import PricingResolver
from ai_usage_monitor.log import configure_logging
from ai_usage_monitor.scanners import ScanError
from ai_usage_monitor.storage.models import CostSnapshot

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to the YAML config file")


def _build_resolver(settings: MonitorConfig) -> PricingResolver:
    """Create a pricing resolver from settings and load its cache."""
    resolver = PricingResolver(
        cache_path=settings.pricing.cache_path,
        url=settings.pricing.url,
        timeout=settings.polling.request_timeout,
    )
    resolver.load_cache()
    return resolver


def _setup(config: Optional[str]) -> MonitorConfig:
    settings = load_config(config)
    configure_logging(settings.logging.level, settings.logging.file)
    return settings


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


def _format_price(price: Optional[float]) -> str:
    return "-" if price is None else f"${price:,.4g}"


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """AI Usage Monitor CLI."""
    if ctx.invoked_subcommand is None:
        console.print("AI Usage Monitor - Use --help to see available commands")


@app.command()
def cost(
    config: Optional[str] = CONFIG_OPTION,
    account: Optional[str] = typer.Option(None, "--account", "-a", help="Only report this account"),
    json_output: bool = typer.Option(False, "--json", help="Print the report as JSON"),
):
    """
    Report spend computed from local session logs.

    Refreshes model pricing when the cached table is stale, scans each
    configured account and prints today's, month-to-date and 30-day totals.
    """
    try:
        settings = _setup(config)
        accounts = [settings.get_account(account)] if account else settings.enabled_accounts

        cost_store = CostStore.from_config(settings, _build_resolver(settings))
        cost_store.refresh_pricing()

        snapshots: Dict[str, CostSnapshot] = {}
        errors: Dict[str, str] = {}
        for item in accounts:
            try:
                snapshots[item.name] = cost_store.scan_one(item)
            except ScanError as e:
                errors[item.name] = str(e)

        if json_output:
            typer.echo(json.dumps(_report_payload(snapshots, errors), indent=2))
        else:
            _display_cost_report(snapshots, errors, show_daily=account is not None)

        sys.exit(EXIT_CODE_FAIL if errors else EXIT_CODE_OK)
    except (KeyError, ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("refresh-pricing")
def refresh_pricing(config: Optional[str] = CONFIG_OPTION):
    """Fetch the latest model pricing and update the local cache."""
    try:
        settings = _setup(config)
        resolver = _build_resolver(settings)
        result = CostStore(resolver).refresh_pricing(force=True)
    except (ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if result is PricingRefreshResult.REFRESHED:
        console.print(f"[green]✓[/] Pricing refreshed from {resolver.url} ({len(resolver.prices)} models)")
        sys.exit(EXIT_CODE_OK)

    console.print(f"[red]Error:[/] Pricing refresh failed; using {resolver.source.value} prices")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def pricing(
    model: str = typer.Argument(..., help="Model identifier as it appears in logs"),
    config: Optional[str] = CONFIG_OPTION,
):
    """Show the prices a model identifier resolves to."""
    try:
        settings = _setup(config)
        resolver = _build_resolver(settings)
    except (ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    prices = resolver.resolve(model)
    if prices is None:
        console.print(f"[red]Error:[/] No pricing found for model '{model}'")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Pricing for {model} (per million tokens, {resolver.source.value})")
    table.add_column("Kind")
    table.add_column("Price", justify="right")
    table.add_column("Above threshold", justify="right")
    table.add_row("Input", _format_price(prices.input_price), _format_price(prices.input_price_above))
    table.add_row("Output", _format_price(prices.output_price), _format_price(prices.output_price_above))
    table.add_row("Cache write", _format_price(prices.cache_write_price), "-")
    table.add_row("Cache read", _format_price(prices.cache_read_price), "-")
    console.print(table)
    if prices.threshold_tokens is not None:
        console.print(f"Tier threshold: {prices.threshold_tokens:,} tokens")
    sys.exit(EXIT_CODE_OK)


def _report_payload(snapshots: Dict[str, CostSnapshot], errors: Dict[str, str]) -> Dict:
    payload = {}
    for name, snapshot in snapshots.items():
        payload[name] = {
            "currency": snapshot.currency,
            "today": snapshot.today_total,
            "month_to_date": snapshot.month_to_date_total,
            "last_30_days": snapshot.last_30_days_total,
            "today_tokens": snapshot.today_tokens,
            "last_30_days_tokens": snapshot.last_30_days_tokens,
            "pricing_estimate": snapshot.pricing_estimate,
            "unpriced_models": list(snapshot.unpriced_models),
            "daily": [
                {
                    "date": entry.date.isoformat(),
                    "model": entry.model,
                    "cost": entry.cost,
                    "tokens": entry.tokens,
                }
                for entry in snapshot.daily_breakdown
            ],
        }
    for name, message in errors.items():
        payload[name] = {"error": message}
    return payload


def _display_cost_report(snapshots: Dict[str, CostSnapshot], errors: Dict[str, str], show_daily: bool):
    """Display cost totals in a clean, financial format."""
    if not snapshots and not errors:
        console.print("\n[dim]No accounts configured.[/]")
        return

    table = Table(title="AI Usage Cost")
    table.add_column("Account")
    table.add_column("Today", justify="right")
    table.add_column("Month to date", justify="right")
    table.add_column("Last 30 days", justify="right")
    table.add_column("Tokens (30d)", justify="right")
    for name, snapshot in snapshots.items():
        table.add_row(
            name,
            _format_currency(snapshot.today_total),
            _format_currency(snapshot.month_to_date_total),
            _format_currency(snapshot.last_30_days_total),
            f"{snapshot.last_30_days_tokens:,}",
        )
    for name in errors:
        table.add_row(name, "[red]error[/]", "-", "-", "-")
    console.print(table)

    notes: List[str] = []
    if any(snapshot.pricing_estimate for snapshot in snapshots.values()):
        notes.append("Prices are built-in estimates; run refresh-pricing for current rates.")
    unpriced = sorted({model for snapshot in snapshots.values() for model in snapshot.unpriced_models})
    if unpriced:
        notes.append(f"No pricing for: {', '.join(unpriced)}")
    for note in notes:
        console.print(f"[yellow]{note}[/]")
    for name, message in errors.items():
        console.print(f"[red]Error:[/] {name}: {message}")

    if show_daily:
        for name, snapshot in snapshots.items():
            totals = daily_totals(snapshot)
            if not totals:
                continue
            daily = Table(title=f"{name} by day")
            daily.add_column("Date")
            daily.add_column("Cost", justify="right")
            for day in sorted(totals):
                daily.add_row(day.isoformat(), _format_currency(totals[day]))
            console.print(daily)


if __name__ == "__main__":
    app()
