"""
CLI interface for Minute Guard.

Provides command-line access to metering, limits and alerts.
"""

import logging
import sqlite3
import sys
from dataclasses import replace
from decimal import Decimal
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from minute_guard.channels import EmailChannel, InAppChannel, WebhookChannel
from minute_guard.config.loader import YamlConfigProvider, load_settings
from minute_guard.core.errors import MinuteGuardError
from minute_guard.core.policy import LimitDecision
from minute_guard.core.service import MinuteGuard
from minute_guard.storage.repository import SqliteUsageStore, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

# Config, storage and input errors reported without a traceback
_ERRORS = (MinuteGuardError, ValueError, OSError, sqlite3.Error)

_DECISION_STYLE = {
    LimitDecision.PERMIT: "green",
    LimitDecision.CHARGE: "yellow",
    LimitDecision.BLOCK: "red",
}


def _build_service(ctx: typer.Context) -> MinuteGuard:
    """Construct the service from the global options and environment."""
    settings = ctx.obj["settings"]
    if not settings.config_path:
        raise MinuteGuardError("No limits config given; pass --config or set MINUTE_GUARD_CONFIG")
    store = SqliteUsageStore(settings.db_path)
    channels = [
        InAppChannel(store),
        EmailChannel(timeout=settings.channel_timeout),
        WebhookChannel(timeout=settings.channel_timeout),
    ]
    return MinuteGuard(
        store,
        YamlConfigProvider(settings.config_path),
        channels=channels,
        settings=settings
    )


def _format_money(minor_units: int) -> str:
    """Format minor currency units as a major-unit amount."""
    return f"${Decimal(minor_units) / 100:,.2f}"


def _format_minutes(minutes: Decimal) -> str:
    return f"{minutes:,.1f}"


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database path"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Limits YAML file")
):
    """Minute Guard CLI."""
    settings = load_settings()
    if db:
        settings = replace(settings, db_path=db)
    if config:
        settings = replace(settings, config_path=config)
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    ctx.obj = {"settings": settings}
    if ctx.invoked_subcommand is None:
        console.print("Minute Guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the Minute Guard database."""
    try:
        initialize_schema(ctx.obj["settings"].db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def check(
    ctx: typer.Context,
    tenant: str = typer.Argument(..., help="Tenant id"),
    enforced: bool = typer.Option(
        False,
        "--enforced",
        "-e",
        help="Exit with error code if the decision is block"
    )
):
    """Check whether a tenant may start a new metered action."""
    try:
        result = _build_service(ctx).check_limit(tenant)
    except _ERRORS as e:
        _fail(str(e))
        return

    style = _DECISION_STYLE[result.decision]
    console.print(f"\n[bold]Decision:[/bold] [{style}]{result.decision.value.upper()}[/]")
    if result.reason:
        console.print(f"Reason: {result.reason}")
    console.print(result.message)
    console.print(f"Usage: {result.usage_percent:.1f}% of {result.included_minutes} included minutes")
    console.print(f"Remaining included: {_format_minutes(result.remaining_included)}")
    console.print(f"Overage: {_format_minutes(result.overage_minutes)} min, {_format_money(result.overage_charge)}")

    if enforced and result.decision == LimitDecision.BLOCK:
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def record(
    ctx: typer.Context,
    tenant: str = typer.Argument(..., help="Tenant id"),
    source: str = typer.Argument(..., help="Unique id of the usage event"),
    seconds: int = typer.Argument(..., help="Seconds consumed")
):
    """Record consumed seconds for a usage event."""
    try:
        service = _build_service(ctx)
    except _ERRORS as e:
        _fail(str(e))
        return
    try:
        outcome = service.record_usage(tenant, source, seconds)
    except _ERRORS as e:
        _fail(str(e))
        return
    finally:
        service.close()

    result = outcome.record
    if result.replayed:
        console.print(f"[yellow]![/] {source} was already recorded; returning original result")
    else:
        console.print(f"[green]✓[/] Recorded {_format_minutes(result.included_minutes + result.overage_minutes)} min")
    console.print(f"Included used: {_format_minutes(result.included_minutes_used)}")
    console.print(f"Overage used: {_format_minutes(result.overage_minutes_used)}")
    console.print(f"Charge applied: {_format_money(result.charge)}")
    console.print(f"Usage: {result.usage_percent:.1f}%")
    if outcome.dispatch is not None and outcome.dispatch.dispatched:
        confirmed = ", ".join(outcome.dispatch.channels_confirmed) or "none"
        console.print(f"Alert: {outcome.crossed_threshold}% threshold (delivered via {confirmed})")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def summary(ctx: typer.Context, tenant: str = typer.Argument(..., help="Tenant id")):
    """Show current-period usage for a tenant."""
    try:
        usage = _build_service(ctx).usage_summary(tenant)
    except _ERRORS as e:
        _fail(str(e))
        return

    console.print(f"\n[bold]Usage for {tenant}[/bold]")
    console.print("-" * 40)
    console.print(f"Period: {usage.period_start.date()} to {usage.period_end.date()} ({usage.days_remaining} days left)")
    console.print(f"Included used: {_format_minutes(usage.included_minutes_used)} / {usage.included_minutes}")
    console.print(f"Overage used: {_format_minutes(usage.overage_minutes_used)}")
    console.print(f"Overage charge: {_format_money(usage.overage_charge)}")
    console.print(f"Usage: {usage.usage_percent:.1f}%")
    console.print(f"Calls: {usage.call_count}")
    if usage.blocked:
        console.print(f"[red]Blocked:[/] {usage.blocked_reason}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def alerts(
    ctx: typer.Context,
    tenant: str = typer.Argument(..., help="Tenant id"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum alerts to show"),
    unacknowledged: bool = typer.Option(False, "--unacknowledged", "-u", help="Only unacknowledged alerts")
):
    """List recent alerts for a tenant."""
    try:
        service = _build_service(ctx)
        if unacknowledged:
            items = service.list_unacknowledged_alerts(tenant, limit)
        else:
            items = service.list_recent_alerts(tenant, limit)
    except _ERRORS as e:
        _fail(str(e))
        return

    if not items:
        console.print("\n[dim]No alerts found.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Alerts for {tenant}")
    table.add_column("ID", justify="right")
    table.add_column("Threshold", justify="right")
    table.add_column("Severity")
    table.add_column("Created")
    table.add_column("Channels")
    table.add_column("Ack")
    for alert in items:
        table.add_row(
            str(alert.id),
            f"{alert.threshold}%",
            alert.severity,
            alert.created_at.strftime("%Y-%m-%d %H:%M"),
            ", ".join(alert.channels_confirmed) or "-",
            "yes" if alert.acknowledged else "no"
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def ack(
    ctx: typer.Context,
    alert_id: int = typer.Argument(..., help="Alert id"),
    by: str = typer.Option(..., "--by", help="Who acknowledges the alert")
):
    """Acknowledge an alert."""
    try:
        found = _build_service(ctx).acknowledge_alert(alert_id, by)
    except _ERRORS as e:
        _fail(str(e))
        return

    if not found:
        _fail(f"Alert {alert_id} not found")
        return
    console.print(f"[green]✓[/] Alert {alert_id} acknowledged")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def history(
    ctx: typer.Context,
    tenant: str = typer.Argument(..., help="Tenant id"),
    limit: int = typer.Option(12, "--limit", "-n", help="Maximum periods to show")
):
    """Show billing history, newest period first."""
    try:
        billing = _build_service(ctx).billing_history(tenant, limit)
    except _ERRORS as e:
        _fail(str(e))
        return

    table = Table(title=f"Billing history for {tenant} ({billing.total} periods)")
    table.add_column("Period")
    table.add_column("Included", justify="right")
    table.add_column("Overage", justify="right")
    table.add_column("Charge", justify="right")
    table.add_column("Calls", justify="right")
    table.add_column("Billed")
    for period in billing.items:
        table.add_row(
            period.period_start.strftime("%Y-%m"),
            _format_minutes(period.included_minutes_used),
            _format_minutes(period.overage_minutes_used),
            _format_money(period.overage_charge),
            str(period.call_count),
            period.invoice_ref or "-"
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def preview(ctx: typer.Context, tenant: str = typer.Argument(..., help="Tenant id")):
    """Project this period's overage to the end of the period."""
    try:
        projection = _build_service(ctx).preview_overage(tenant)
    except _ERRORS as e:
        _fail(str(e))
        return

    console.print(f"\n[bold]Overage preview for {tenant}[/bold]")
    console.print("-" * 40)
    console.print(f"Current overage: {_format_minutes(projection.current_overage_minutes)} min, {_format_money(projection.current_overage_charge)}")
    console.print(f"Projected overage: {_format_minutes(projection.projected_overage_minutes)} min, {_format_money(projection.projected_overage_charge)}")
    console.print(f"Days elapsed: {projection.days_elapsed} of {projection.days_total}")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
