"""Command Line Interface for the Clinical Reconciliation Engine.

This module provides a CLI using Typer for running the reconciliation
pipeline over historical workbooks, with rich summaries of the run report.

Security Impact:
    - Configuration is validated before any write
    - A run report is produced for every run, including dry runs
    - Exit status reflects only fatal configuration or storage failures
"""

import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from reconciler import __version__
from reconciler.domain.report import RunReport
from reconciler.infrastructure.run_report import SUMMARY_KEYS
from reconciler.infrastructure.settings import settings
from reconciler.main import EXIT_OK, exit_code_for, run_reconciliation, write_report

# Initialize Typer app and Rich console
app = typer.Typer(
    name="reconcile",
    help="Clinical-Reconciler: historical clinical data reconciliation engine",
    add_completion=False
)
console = Console()

MAX_ISSUES_SHOWN = 20


def print_report(report: RunReport) -> None:
    """Render counts and the first issues of a run report."""
    console.print("\n[bold]Reconciliation Summary:[/bold]")

    summary_table = Table(show_header=False, box=None, padding=(0, 2))
    for label, key in SUMMARY_KEYS:
        value = report.count(key)
        style = "yellow" if value and key in ("rows_skipped", "ambiguous_matches", "records_newly_flagged") else ""
        summary_table.add_row(f"{label}:", f"[{style}]{value:,}[/{style}]" if style else f"{value:,}")
    summary_table.add_row("Run ID:", report.run_id)
    console.print(summary_table)

    if report.issues:
        console.print(f"\n[bold]Issues[/bold] ({sum(report.issue_counts.values())} total):")
        issues_table = Table(show_header=True, header_style="bold")
        issues_table.add_column("Category")
        issues_table.add_column("Provenance")
        issues_table.add_column("Reason")
        for issue in report.issues[:MAX_ISSUES_SHOWN]:
            issues_table.add_row(issue.category.value, issue.provenance or issue.record_id or "-", issue.reason)
        console.print(issues_table)
        hidden = sum(report.issue_counts.values()) - min(len(report.issues), MAX_ISSUES_SHOWN)
        if hidden > 0:
            console.print(f"[dim]... {hidden} more issues in the saved report[/dim]")


@app.command()
def run(
    sources: List[Path] = typer.Argument(..., help="Workbook (XLSX), CSV file or directory of CSV files", exists=True),
    mapping: Optional[Path] = typer.Option(None, "--mapping", "-m", help="Sheet mapping JSON file", exists=True),
    dry_run: bool = typer.Option(False, "--dry-run", help="Run against an in-memory copy of the store"),
    report_path: Optional[Path] = typer.Option(None, "--report", "-r", help="Path of the JSON run report"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Reconcile historical workbooks into the canonical store.

    The pipeline ingests every mapped sheet, merges duplicate cases, infers
    case end times and flags time-series records whose date fits no case.

    Examples:
        reconcile run historico.xlsx
        reconcile run historico.xlsx --dry-run --report preview.json
        reconcile run exports/ --mapping mapping.json --verbose
    """
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        console.print("[dim]Verbose logging enabled[/dim]")

    # Print startup information
    console.print(f"\n[bold blue]{settings.app_name}[/bold blue]")
    for source in sources:
        console.print(f"[dim]Source:[/dim] {source}")
    console.print(f"[dim]Database:[/dim] {settings.db_config.db_type}")
    if settings.db_config.db_type == "duckdb":
        console.print(f"[dim]Database path:[/dim] {settings.get_db_path()}")
    if dry_run:
        console.print("[yellow]Dry run: no changes will be committed[/yellow]")
    console.print()

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console
        ) as progress:
            task = progress.add_task("Reconciling...", total=None)
            report = run_reconciliation(
                [str(source) for source in sources],
                mapping_path=str(mapping) if mapping else None,
                dry_run=dry_run,
            )
            progress.update(task, completed=True)
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠[/yellow] Reconciliation interrupted by user")
        raise typer.Exit(code=130)

    print_report(report)

    saved = write_report(report, str(report_path) if report_path else None)
    if saved:
        console.print(f"\n[green]✓[/green] Run report saved: {saved}")

    code = exit_code_for(report)
    if code == EXIT_OK:
        console.print("\n[green]✓[/green] Reconciliation completed")
    else:
        console.print(f"\n[red]✗[/red] Reconciliation stopped: {report.fatal_error}")
        if report.last_completed_unit:
            console.print(f"[dim]Last completed unit:[/dim] {report.last_completed_unit}")
    raise typer.Exit(code=code)


@app.command()
def info() -> None:
    """Display system information and configuration."""
    console.print("[bold blue]System Information[/bold blue]\n")

    config = settings.reconciliation_config
    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", settings.app_name)
    info_table.add_row("Database Type:", settings.db_config.db_type)
    if settings.db_config.db_type == "duckdb":
        info_table.add_row("Database Path:", settings.get_db_path())
    info_table.add_row("Source Time Zone:", config.source_timezone)
    info_table.add_row("Match Window:", f"{config.match_window_days} days")
    info_table.add_row("Duplicate Threshold:", f"{config.duplicate_threshold:.2f}")
    info_table.add_row("Max Case Duration:", f"{config.max_case_duration_minutes} min")
    info_table.add_row("Phase Priority:", ", ".join(phase.value for phase in config.phase_priority))
    info_table.add_row("Mapped Sheets:", str(sum(len(m.sheet_names) for m in config.sheet_mappings)))
    info_table.add_row("Report Directory:", settings.report_dir if settings.save_report else "disabled")
    console.print(info_table)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version information")
) -> None:
    """Clinical-Reconciler: historical clinical data reconciliation engine."""
    if version:
        console.print(f"{settings.app_name} v{__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit()


if __name__ == "__main__":
    app()
