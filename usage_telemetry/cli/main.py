"""
CLI interface for usage telemetry.

Provides command-line access to ingestion, queries and health signals.
"""

import sqlite3
import sys
from datetime import datetime
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from usage_telemetry.config.loader import Settings, default_settings, load_settings
from usage_telemetry.core.aggregator import UsageAggregator
from usage_telemetry.core.pipeline import (
    IngestionPipeline,
    JsonLinesSource,
    PartitionWorker,
)
from usage_telemetry.logger_config import setup_logger
from usage_telemetry.storage.models import as_utc
from usage_telemetry.storage.repository import UsageRepository

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_HALTED = 2  # Partition needs operator intervention

_CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to YAML settings file")


def _load(config: Optional[str]) -> Settings:
    settings = load_settings(config) if config else default_settings()
    setup_logger(settings.logging.level, settings.logging.file)
    return settings


def get_repository(settings: Settings) -> UsageRepository:
    return UsageRepository(settings.storage.db_path, settings.storage.timeout_seconds)


def _parse_time(value: str) -> datetime:
    return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Usage telemetry CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Usage Telemetry - Use --help to see available commands")


@app.command()
def init(config: Optional[str] = _CONFIG_OPTION):
    """Initialize the usage ledger database."""
    try:
        settings = _load(config)
        get_repository(settings).initialize()
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def ingest(
    path: str = typer.Argument(..., help="JSON-lines file of raw event envelopes"),
    partition: str = typer.Option("0", "--partition", "-p", help="Partition this file represents"),
    config: Optional[str] = _CONFIG_OPTION
):
    """
    Ingest raw events from a JSON-lines file.

    Resumes after the partition's committed checkpoint, so re-running the
    same file never stores an event twice.
    """
    try:
        settings = _load(config)
        repository = get_repository(settings)
        repository.initialize()
        aggregator = UsageAggregator(settings.aggregation.bucket_width)
        pipeline = IngestionPipeline(partition, repository, aggregator, settings)
        worker = PartitionWorker(
            pipeline,
            JsonLinesSource(path, partition),
            batch_size=settings.pipeline.batch_size
        )
        report = worker.run()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    totals = report.totals
    console.print(f"\n[bold]Partition {partition}[/bold]")
    console.print(f"Stored: {totals.stored:,}")
    console.print(f"Duplicates skipped: {totals.duplicates:,}")
    console.print(f"Dead-lettered: {totals.dead_lettered:,}")
    console.print(f"Parse warnings: {totals.warnings:,}")
    console.print(f"Checkpoint: {totals.checkpoint if totals.checkpoint is not None else '-'}")

    if report.halted:
        console.print(f"\n[bold red]Partition halted:[/] {report.halted.reason}")
        sys.exit(EXIT_CODE_HALTED)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def query(
    identity: str = typer.Argument(..., help="Identity key to report on"),
    start: str = typer.Option(..., "--start", "-s", help="Range start (ISO-8601, inclusive)"),
    end: str = typer.Option(..., "--end", "-e", help="Range end (ISO-8601, exclusive)"),
    config: Optional[str] = _CONFIG_OPTION
):
    """Show bucketed usage for an identity over a time range."""
    try:
        settings = _load(config)
        range_start, range_end = _parse_time(start), _parse_time(end)
        aggregator = UsageAggregator(settings.aggregation.bucket_width)
        # Only the buckets the range touches are rebuilt
        scan_start, scan_end = aggregator.covering_range(range_start, range_end)
        aggregator.rebuild_from(
            get_repository(settings).get_records(identity, scan_start, scan_end)
        )
        buckets = aggregator.query(identity, range_start, range_end)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            console.print("\n[bold yellow]No usage data found[/]")
            console.print("Run `usage-telemetry init` and ingest some events first.\n")
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not buckets:
        console.print(f"\n[dim]No usage recorded for {identity} in that range.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Usage for {identity}")
    table.add_column("Bucket start")
    table.add_column("Calls", justify="right")
    table.add_column("Prompt", justify="right")
    table.add_column("Completion", justify="right")
    table.add_column("Total", justify="right")
    for bucket in buckets:
        table.add_row(
            bucket.bucket_start.isoformat(),
            f"{bucket.call_count:,}",
            f"{bucket.sum_prompt_tokens:,}",
            f"{bucket.sum_completion_tokens:,}",
            f"{bucket.sum_total_tokens:,}",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("dead-letters")
def dead_letters(
    partition: Optional[str] = typer.Option(None, "--partition", "-p", help="Filter to one partition"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum entries to show"),
    config: Optional[str] = _CONFIG_OPTION
):
    """List events routed to the dead-letter sink, newest first."""
    try:
        settings = _load(config)
        entries = get_repository(settings).get_dead_letters(partition=partition, limit=limit)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not entries:
        console.print("[green]✓[/] No dead letters")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Dead letters")
    table.add_column("Key")
    table.add_column("Recorded at")
    table.add_column("Reason")
    for entry in entries:
        table.add_row(entry.dedup_key, entry.recorded_at.isoformat(), entry.reason)
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def status(config: Optional[str] = _CONFIG_OPTION):
    """Show checkpoints and ledger volume."""
    try:
        settings = _load(config)
        repository = get_repository(settings)
        counts = repository.get_counts()
        checkpoints = repository.get_checkpoints()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"Records stored: {counts['records']:,}")
    console.print(f"Dead letters: {counts['dead_letters']:,}")
    if not checkpoints:
        console.print("[dim]No partitions checkpointed yet.[/]")
    for partition_name, position in checkpoints.items():
        console.print(f"Partition {partition_name}: checkpoint {position}")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
