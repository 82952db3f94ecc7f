"""Runs Commands - Inspect and cancel job runs in the ledger"""

import asyncio
from uuid import UUID

import typer
from rich.console import Console

from jobledger.v1.runs.ledger import request_cancel
from jobledger.v1.runs.models import JobRunStatus
from jobledger.v1.runs.schemas import CompletionOutcome
from jobledger.v1.runs.stats import get_job_run_stats, list_runs

from ..utils.formatting import (
    create_counts_table,
    create_run_stats_panel,
    create_runs_table,
    print_error,
    print_info,
    print_success,
    print_warning,
)
from ..utils.session import session_scope

console = Console()
app = typer.Typer(name="runs", help="Job run ledger commands")


@app.command("list")
def list_job_runs(
    job_name: str | None = typer.Option(None, "--job-name", "-j", help="Filter by job name"),
    status: list[JobRunStatus] | None = typer.Option(
        None, "--status", "-s", help="Filter by status (repeatable)"
    ),
    limit: int = typer.Option(20, "--limit", "-l", min=1, max=500, help="Rows to show"),
    offset: int = typer.Option(0, "--offset", min=0, help="Rows to skip"),
):
    """📋 List recent job runs"""

    async def _list():
        async with session_scope() as session:
            return await list_runs(
                session, job_name=job_name, status=status or None, limit=limit, offset=offset
            )

    page = asyncio.run(_list())
    if page.error:
        print_error(f"Failed to list runs: {page.error}")
        raise typer.Exit(1)

    if not page.runs:
        print_info("No job runs found")
        return

    console.print(create_runs_table(page.runs, page.total))


@app.command("cancel")
def cancel_run(run_id: UUID = typer.Argument(..., help="Job run ID")):
    """🛑 Request cooperative cancellation of a running job"""

    async def _cancel():
        async with session_scope() as session:
            return await request_cancel(session, run_id)

    result = asyncio.run(_cancel())
    if result.success:
        print_success(f"Cancellation requested for {run_id}")
        return

    if result.outcome == CompletionOutcome.NOT_RUNNING:
        print_warning(f"Run {run_id} is not running; nothing to cancel")
        raise typer.Exit(1)

    print_error(f"Failed to request cancellation: {result.error}")
    raise typer.Exit(1)


@app.command("stats")
def run_stats(
    job_name: str | None = typer.Option(None, "--job-name", "-j", help="Scope to one job name"),
):
    """📊 Show ledger statistics"""

    async def _stats():
        async with session_scope() as session:
            return await get_job_run_stats(session, job_name=job_name)

    stats = asyncio.run(_stats())
    if stats is None:
        print_error("Failed to compute job run stats")
        raise typer.Exit(1)

    console.print(create_run_stats_panel(stats))
    if stats.by_job_name:
        console.print(create_counts_table("Runs by job", stats.by_job_name))
