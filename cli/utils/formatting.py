"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from jobledger.v1.embeddings.schemas import EmbeddingMetrics
from jobledger.v1.runs.schemas import JobRunRecord, JobRunStats

console = Console()

STATUS_STYLES = {
    "running": "cyan",
    "pending": "blue",
    "succeeded": "green",
    "completed": "green",
    "failed": "red",
    "timeout": "red",
    "cancelled": "yellow",
    "skipped": "dim",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def create_runs_table(runs: list[JobRunRecord], total: int) -> Table:
    """Create a formatted table for job runs"""
    table = Table(title=f"Job Runs ({len(runs)} of {total})", box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Job", justify="left", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Started", justify="left", style="white")
    table.add_column("Duration", justify="right", style="yellow")
    table.add_column("Retries", justify="right")
    table.add_column("Error", justify="left", style="red")

    for run in runs:
        table.add_row(
            str(run.id)[:8],
            run.job_name,
            styled_status(run.status),
            run.started_at.strftime("%Y-%m-%d %H:%M:%S") if run.started_at else "—",
            f"{run.duration_ms} ms" if run.duration_ms is not None else "—",
            str(run.retry_count),
            (run.error_message or "")[:60] or "—",
        )

    return table


def create_run_stats_panel(stats: JobRunStats) -> Panel:
    """Create a panel summarizing ledger statistics"""
    by_status = "\n".join(
        f"  • {styled_status(status)}: {count}"
        for status, count in sorted(stats.by_status.items())
    )
    avg = f"{stats.avg_duration_ms:.0f} ms" if stats.avg_duration_ms is not None else "—"
    content = (
        f"📊 [bold]Total runs:[/bold] {stats.total_runs}\n"
        f"🏃 [bold]Running:[/bold] {stats.running}\n"
        f"🔥 [bold]Failed in last hour:[/bold] {stats.failed_last_hour}\n"
        f"⏱️  [bold]Avg duration (24h):[/bold] {avg}\n\n"
        f"[bold]By status[/bold]\n{by_status or '  —'}"
    )
    return Panel(content, title="Job Run Stats", border_style="cyan")


def create_metrics_panel(metrics: EmbeddingMetrics) -> Panel:
    """Create a panel summarizing embedding queue metrics"""
    avg = (
        f"{metrics.avg_processing_time_minutes:.2f} min"
        if metrics.avg_processing_time_minutes is not None
        else "—"
    )
    content = (
        f"📦 [bold]Jobs:[/bold] {metrics.total_jobs} "
        f"([blue]{metrics.pending_jobs} pending[/blue], "
        f"[cyan]{metrics.processing_jobs} processing[/cyan], "
        f"[green]{metrics.completed_jobs} completed[/green], "
        f"[red]{metrics.failed_jobs} failed[/red])\n"
        f"✅ [bold]Success rate:[/bold] {metrics.success_rate_percent}%\n"
        f"⏱️  [bold]Avg processing time:[/bold] {avg}\n"
        f"🧩 [bold]Active embeddings:[/bold] {metrics.total_embeddings} "
        f"({metrics.total_chunks} chunks)"
    )
    return Panel(content, title="Embedding Metrics", border_style="green")


def create_counts_table(title: str, counts: dict[str, Any]) -> Table:
    """Two-column table for a name -> count mapping"""
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Name", justify="left", style="cyan")
    table.add_column("Count", justify="right", style="yellow")
    for name, count in sorted(counts.items()):
        table.add_row(name, str(count))
    return table
