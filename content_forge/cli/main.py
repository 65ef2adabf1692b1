"""
CLI interface for Content Forge.

Ledger inspection, budget status, CSV export and the HTTP server.
"""

import logging
import sys
from datetime import date, datetime, time, timedelta
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from content_forge.config.loader import load_config
from content_forge.container import build_storage
from content_forge.core.budget import HealthStatus, month_window

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_HEALTH_STYLES = {
    HealthStatus.HEALTHY: "green",
    HealthStatus.WARNING: "yellow",
    HealthStatus.CRITICAL: "red",
}


def configure_logging(level: str = "WARNING") -> None:
    """Install a single stdout handler on the root logger."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.WARNING))
    root_logger.handlers = [handler]


def _format_currency(amount) -> str:
    return f"${amount:,.2f}"


def _format_cost(amount) -> str:
    """Four decimals, for per-call costs below a cent."""
    return f"${amount:,.4f}"


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    log_level: str = typer.Option("WARNING", "--log-level", "-l", help="Logging level"),
):
    """Content Forge CLI."""
    configure_logging(log_level)
    if ctx.invoked_subcommand is None:
        console.print("Content Forge - Use --help to see available commands")


@app.command()
def init():
    """Create the database schema and working directories."""
    try:
        config = load_config()
        build_storage(config)
        Path(config.storage.artifacts_dir).mkdir(parents=True, exist_ok=True)
        Path(config.storage.temp_dir).mkdir(parents=True, exist_ok=True)
        console.print(f"[green]✓[/] Database initialized at {config.storage.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        _fail(f"initializing database: {e}")


@app.command()
def status(
    enforced: bool = typer.Option(
        False,
        "--enforced",
        "-e",
        help="Exit with error code when the monthly budget is exhausted",
    ),
):
    """Show this month's spend against the budget."""
    try:
        _, budget, _, _ = build_storage(load_config())
        summary = budget.monthly_summary()
        health = budget.health(summary)
        daily = budget.daily_status()
        remaining_posts = budget.estimated_remaining_posts()
    except Exception as e:
        _fail(str(e))

    style = _HEALTH_STYLES[health.status]
    console.print("\n[bold]Budget Status[/bold]")
    console.print("-" * 40)
    console.print(
        f"Month: {_format_currency(summary.total_cost)} of {_format_currency(summary.budget_limit)} "
        f"({summary.budget_used_percent:.1f}%)"
    )
    console.print(f"Remaining: {_format_currency(summary.budget_remaining)} (~{remaining_posts} posts)")
    console.print(
        f"Today: {_format_currency(daily.current)} of {_format_currency(daily.limit)}"
        + (" [red](limit reached)[/]" if daily.is_exceeded else "")
    )
    console.print(f"[{style}]{health.status.value.upper()}[/]: {health.message}")

    if enforced and health.status == HealthStatus.CRITICAL:
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def costs():
    """Break this month's spend down by service and by operation."""
    try:
        ledger, budget, _, _ = build_storage(load_config())
        start, end = month_window(budget.clock())
        summary = budget.monthly_summary()
        operations = ledger.by_operation(start, end)
    except Exception as e:
        _fail(str(e))

    if not summary.by_service:
        console.print("\n[bold yellow]No costs recorded this month[/]")
        sys.exit(EXIT_CODE_PASS)

    services = Table(title="Cost by Service")
    services.add_column("Service")
    services.add_column("Calls", justify="right")
    services.add_column("Cost", justify="right")
    for row in summary.by_service:
        services.add_row(row.service.value, str(row.call_count), _format_cost(row.cost))
    console.print(services)

    ops = Table(title="Cost by Operation")
    ops.add_column("Operation")
    ops.add_column("Count", justify="right")
    ops.add_column("Total", justify="right")
    ops.add_column("Average", justify="right")
    ops.add_column("Tokens", justify="right")
    for row in operations:
        ops.add_row(
            row.operation,
            str(row.count),
            _format_cost(row.total_cost),
            _format_cost(row.avg_cost),
            f"{row.total_tokens:,}",
        )
    console.print(ops)
    console.print(f"\n[bold]Total:[/bold] {_format_currency(summary.total_cost)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def recent(limit: int = typer.Option(20, "--limit", "-n", min=1, help="Number of entries")):
    """List the most recent ledger entries."""
    try:
        ledger, _, _, _ = build_storage(load_config())
        entries = ledger.recent(limit)
    except Exception as e:
        _fail(str(e))

    if not entries:
        console.print("\n[bold yellow]No costs recorded yet[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Recent Costs")
    table.add_column("Time")
    table.add_column("Service")
    table.add_column("Operation")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    for entry in entries:
        table.add_row(
            entry.timestamp.strftime("%Y-%m-%d %H:%M"),
            entry.service.value,
            entry.operation,
            str(entry.tokens_used) if entry.tokens_used is not None else "-",
            _format_cost(entry.cost),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def export(
    start: Optional[str] = typer.Option(None, "--start", help="First day, YYYY-MM-DD"),
    end: Optional[str] = typer.Option(None, "--end", help="Last day, YYYY-MM-DD"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write CSV to a file"),
):
    """Export ledger entries as CSV. Defaults to the current month."""
    try:
        ledger, budget, _, _ = build_storage(load_config())
        window_start, window_end = month_window(budget.clock())
        if start:
            window_start = datetime.combine(date.fromisoformat(start), time.min)
        if end:
            window_end = datetime.combine(date.fromisoformat(end) + timedelta(days=1), time.min)
        if window_start >= window_end:
            raise ValueError("--start must not be after --end")
        csv_text = ledger.export_csv(window_start, window_end)
    except Exception as e:
        _fail(str(e))

    if output is None:
        typer.echo(csv_text, nl=False)
    else:
        output.write_text(csv_text, encoding="utf-8")
        console.print(f"[green]✓[/] Exported to {output}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def logs(limit: int = typer.Option(50, "--limit", "-n", min=1, help="Number of entries")):
    """Show the processing log."""
    try:
        _, _, _, process_log = build_storage(load_config())
        entries = process_log.recent(limit)
    except Exception as e:
        _fail(str(e))

    if not entries:
        console.print("\n[dim]No processing logs yet.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Processing Log")
    table.add_column("Time")
    table.add_column("Process")
    table.add_column("Status")
    table.add_column("Cost", justify="right")
    table.add_column("Details")
    for entry in entries:
        color = "green" if entry.status == "success" else "red"
        table.add_row(
            entry.created_at.strftime("%Y-%m-%d %H:%M"),
            entry.process_type,
            f"[{color}]{entry.status}[/]",
            _format_cost(entry.cost),
            entry.details or "",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port"),
):
    """Run the HTTP API."""
    uvicorn.run("content_forge.api.app:create_app", factory=True, host=host, port=port)


if __name__ == "__main__":
    app()
