"""
CLI interface for AI Carbon Monitor.

Provides command-line access to all tool functionality.
"""

import logging
import sys
import threading
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ai_carbon_monitor.config.loader import MonitorConfig, load_monitor_config
from ai_carbon_monitor.core.collector import DataCollector
from ai_carbon_monitor.core.emissions import EmissionModel
from ai_carbon_monitor.core.parser import parse_table_output
from ai_carbon_monitor.core.runner import ProcessRunner
from ai_carbon_monitor.notifications.hub import NotificationHub
from ai_carbon_monitor.storage.models import EmissionFactor, UsageRecord
from ai_carbon_monitor.storage.repository import UsageRepository

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _configure_logging(level: int) -> None:
    logging.basicConfig(
        level=level,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _get_config(ctx: typer.Context) -> MonitorConfig:
    return ctx.obj["config"]


def _build_repository(config: MonitorConfig) -> UsageRepository:
    repository = UsageRepository(config.database.path)
    repository.initialize_schema()
    return repository


def _build_collector(config: MonitorConfig, hub: NotificationHub) -> DataCollector:
    repository = _build_repository(config)
    runner = ProcessRunner(
        command=config.collector.command,
        output_dir=config.collector.output_dir,
        interrupt_after=config.collector.interrupt_after_seconds,
        settle_delay=config.collector.settle_delay_seconds,
    )
    return DataCollector(
        runner=runner,
        emission_model=EmissionModel(repository),
        repository=repository,
        hub=hub,
        interval_seconds=config.collector.interval_seconds,
        sample_size=config.collector.sample_size,
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    ),
):
    """AI Carbon Monitor CLI."""
    try:
        config = load_monitor_config(str(config_path) if config_path else None)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _configure_logging(config.logging.numeric_level)
    ctx.obj = {"config": config}

    if ctx.invoked_subcommand is None:
        console.print("AI Carbon Monitor - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the database and seed default emission factors."""
    try:
        _build_repository(_get_config(ctx))
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def parse(
    file: Path = typer.Argument(..., help="Saved usage report output to parse"),
):
    """Parse a saved usage report and show the rows found."""
    if not file.exists():
        console.print(f"[red]Error:[/] file not found: {file}")
        sys.exit(EXIT_CODE_FAIL)

    rows = parse_table_output(file.read_text(encoding="utf-8", errors="replace"))
    if not rows:
        console.print("[yellow]No usage rows found[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Parsed Usage")
    for column in ("Date", "Model", "Input", "Output", "Cache Create", "Cache Read", "Total", "Cost"):
        table.add_column(column, justify="left" if column in ("Date", "Model") else "right")
    for row in rows:
        table.add_row(
            row.date,
            row.model_name,
            f"{row.input_tokens:,}",
            f"{row.output_tokens:,}",
            f"{row.cache_create_tokens:,}",
            f"{row.cache_read_tokens:,}",
            f"{row.total_tokens:,}",
            _format_currency(row.cost_usd),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def collect(ctx: typer.Context):
    """Run a single collection cycle and show the stored records."""
    hub = NotificationHub()
    try:
        collector = _build_collector(_get_config(ctx), hub)
        collector.emission_model.initialize()
        records = collector.trigger_collection()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        hub.shutdown()

    if records is None:
        console.print("[red]Collection failed, see log output for details[/]")
        sys.exit(EXIT_CODE_FAIL)
    if not records:
        console.print("[dim]No new or changed usage records[/]")
        sys.exit(EXIT_CODE_PASS)

    _display_records(records)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def run(ctx: typer.Context):
    """Collect on a fixed schedule until interrupted."""
    config = _get_config(ctx)
    hub = NotificationHub(
        max_subscribers=config.notifications.max_subscribers,
        heartbeat_interval=config.notifications.heartbeat_interval_seconds,
    )
    try:
        collector = _build_collector(config, hub)
        hub.start_heartbeat()
        collector.start()
    except Exception as e:
        hub.shutdown()
        console.print(f"[red]Error starting collector:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(
        f"[green]✓[/] Collecting every {config.collector.interval_seconds:.0f}s "
        "- press Ctrl+C to stop"
    )
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        console.print("\nStopping...")
    finally:
        collector.stop()
        hub.shutdown()
    sys.exit(EXIT_CODE_PASS)


@app.command()
def factors(ctx: typer.Context):
    """List emission factors."""
    try:
        model = EmissionModel(_build_repository(_get_config(ctx)))
        emission_factors = model.get_emission_factors()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Emission Factors")
    table.add_column("Pattern")
    table.add_column("g CO2 / 1k tokens", justify="right")
    table.add_column("Effective From")
    table.add_column("Description")
    table.add_column("Source")
    for factor in emission_factors:
        table.add_row(
            factor.pattern,
            f"{factor.grams_per_1k_tokens}",
            factor.effective_from,
            factor.description or "",
            factor.source or "",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("set-factor")
def set_factor(
    ctx: typer.Context,
    pattern: str = typer.Argument(..., help="Model name or glob pattern, '*' for the default"),
    grams_per_1k_tokens: str = typer.Argument(..., help="Grams of CO2 per 1,000 tokens"),
    effective_from: str = typer.Option("2024-01-01", "--effective-from", help="First day the factor applies"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    source: Optional[str] = typer.Option(None, "--source", "-s"),
):
    """Add or replace the emission factor for a pattern."""
    try:
        factor = EmissionFactor(
            pattern=pattern,
            grams_per_1k_tokens=Decimal(grams_per_1k_tokens),
            effective_from=effective_from,
            description=description,
            source=source,
        )
        model = EmissionModel(_build_repository(_get_config(ctx)))
        model.initialize()
        model.replace_factor(factor)
    except (InvalidOperation, ValueError) as e:
        console.print(f"[red]Invalid emission factor:[/] {str(e) or grams_per_1k_tokens}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Emission factor for '{pattern}' set to {factor.grams_per_1k_tokens} g/1k tokens")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def stats(ctx: typer.Context):
    """Show usage, cost and CO2 totals."""
    try:
        summary = _build_repository(_get_config(ctx)).get_usage_stats()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print("\n[bold]AI Usage Summary[/bold]")
    console.print("-" * 40)
    for label, key in (("Today", "today"), ("Yesterday", "yesterday")):
        section = summary[key]
        console.print(
            f"{label}: {section['tokens']:,} tokens, "
            f"{_format_currency(section['cost'])}, {section['co2']:,.2f} g CO2"
        )

    window = summary["last_30_days"]
    console.print(
        f"Last 30 days: {window['total_tokens']:,} tokens, "
        f"{_format_currency(window['total_cost'])}, {window['total_co2']:,.2f} g CO2"
    )
    projection = summary["yearly_projection"]
    console.print(
        f"Yearly projection: {projection['tokens']:,.0f} tokens, "
        f"{_format_currency(projection['cost'])}, {projection['co2'] / 1000:,.2f} kg CO2"
    )
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(float(amount)):,.2f}"


def _display_records(records: List[UsageRecord]) -> None:
    table = Table(title=f"Stored {len(records)} usage record(s)")
    table.add_column("Date")
    table.add_column("Model")
    table.add_column("Total Tokens", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("CO2 (g)", justify="right")
    for record in records:
        table.add_row(
            record.date,
            record.model_name,
            f"{record.total_tokens:,}",
            _format_currency(record.cost_usd),
            f"{record.co2_grams:,.2f}",
        )
    console.print(table)


if __name__ == "__main__":
    app()
