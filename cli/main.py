"""Content Jobs CLI - Main Entry Point"""

import asyncio
from uuid import UUID

import typer
from rich.console import Console
from rich.panel import Panel

from jobledger.config.settings import get_settings
from jobledger.v1.embeddings.client import (
    EmbeddingWorkerClient,
    WorkerError,
    drain_embedding_jobs,
    enqueue_embedding_job,
)
from jobledger.v1.embeddings.metrics import get_embedding_metrics
from jobledger.v1.embeddings.producer import enqueue_organization_embeddings
from jobledger.v1.embeddings.schemas import EmbeddingEnqueueRequest

from .commands import runs
from .utils.formatting import (
    create_counts_table,
    create_metrics_panel,
    print_error,
    print_info,
    print_success,
    print_warning,
)
from .utils.session import session_scope

console = Console()

# Create main Typer app
app = typer.Typer(
    name="content-jobs",
    help="🧾 Job run ledger and embedding queue CLI",
    rich_markup_mode="rich",
)

# Add command subapps
app.add_typer(runs.app, name="runs")


@app.command()
def status():
    """📊 Check embedding worker connectivity"""
    settings = get_settings()
    print_info(f"Checking connection to: {settings.worker_base_url}")

    async def _health():
        async with EmbeddingWorkerClient(settings) as client:
            return await client.health_check()

    try:
        health = asyncio.run(_health())
    except WorkerError as e:
        print_error(f"Failed to connect: {e}")
        console.print(Panel(
            f"🚫 [red]Connection Failed[/red]\n\n"
            f"Make sure the embedding worker is running at:\n"
            f"[blue]{settings.worker_base_url}[/blue]\n\n"
            f"The URL is read from [cyan]WORKER_BASE_URL[/cyan]",
            title="Connection Error",
            border_style="red",
        ))
        raise typer.Exit(1) from None

    queue = health.get("queue") or {}
    console.print(Panel(
        f"🚀 [green]Connected Successfully![/green]\n\n"
        f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
        f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
        f"• Pending jobs: [blue]{queue.get('pending_jobs', '—')}[/blue]\n"
        f"• Running drains: [blue]{queue.get('running_drains', '—')}[/blue]",
        title="Worker Status",
        border_style="green",
    ))


@app.command()
def drain():
    """⚙️ Trigger the worker to process a batch of pending jobs"""
    settings = get_settings()

    async def _drain():
        async with EmbeddingWorkerClient(settings) as client:
            return await drain_embedding_jobs(client)

    result = asyncio.run(_drain())
    if not result.success:
        print_error(f"Drain failed: {result.message}")
        raise typer.Exit(1)

    print_success(
        f"Drain finished: {result.processed_count} processed, "
        f"{result.failed_count} failed ({result.message})"
    )


@app.command()
def enqueue(
    organization_id: UUID = typer.Argument(..., help="Organization ID"),
    source_table: str = typer.Argument(..., help="Content table, e.g. posts"),
    source_id: str = typer.Argument(..., help="Row ID in the content table"),
    source_field: str = typer.Argument(..., help="Text column, e.g. content"),
    text: str = typer.Option(..., "--text", "-t", help="Text to embed"),
    priority: int = typer.Option(5, "--priority", "-p", min=1, max=10, help="1-10, higher first"),
):
    """➕ Enqueue one source field for embedding"""
    settings = get_settings()
    if not text.strip():
        print_error("Text cannot be blank")
        raise typer.Exit(1)

    request = EmbeddingEnqueueRequest(
        organization_id=organization_id,
        source_table=source_table,
        source_id=source_id,
        source_field=source_field,
        content_text=text,
        priority=priority,
    )

    async def _enqueue():
        async with EmbeddingWorkerClient(settings) as client:
            return await enqueue_embedding_job(client, request)

    result = asyncio.run(_enqueue())
    if not result.success:
        print_error(f"Enqueue failed: {result.message}")
        raise typer.Exit(1)

    if result.skipped:
        print_warning(result.message)
    else:
        print_success(f"{result.message} (job {result.job_id})")


@app.command("enqueue-org")
def enqueue_org(
    organization_id: UUID = typer.Argument(..., help="Organization ID"),
    content_types: list[str] | None = typer.Option(
        None, "--type", "-t", help="Content table to include (repeatable)"
    ),
    priority: int = typer.Option(5, "--priority", "-p", min=1, max=10, help="1-10, higher first"),
):
    """📚 Enqueue every populated text field of an organization's content"""
    settings = get_settings()

    async def _enqueue_org():
        async with session_scope() as session, EmbeddingWorkerClient(settings) as client:
            return await enqueue_organization_embeddings(
                session,
                client,
                organization_id,
                content_types=content_types or None,
                priority=priority,
                settings=settings,
            )

    result = asyncio.run(_enqueue_org())
    if not result.success:
        print_error(result.message)
        raise typer.Exit(1)

    print_success(result.message)
    if result.failed_count:
        print_warning(f"{result.failed_count} submissions failed; re-run to retry them")


@app.command()
def metrics(
    organization_id: UUID | None = typer.Option(None, "--org", "-o", help="Scope to one organization"),
):
    """📈 Show embedding queue metrics"""

    async def _metrics():
        async with session_scope() as session:
            return await get_embedding_metrics(session, organization_id)

    result = asyncio.run(_metrics())
    if not result.success or result.metrics is None:
        print_error(f"Failed to load metrics: {result.error}")
        raise typer.Exit(1)

    console.print(create_metrics_panel(result.metrics))
    if result.metrics.embeddings_by_table:
        console.print(create_counts_table("Active chunks by table", result.metrics.embeddings_by_table))
    if result.metrics.embeddings_by_model:
        console.print(create_counts_table("Active chunks by model", result.metrics.embeddings_by_model))


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None, "--version", "-v", help="Show version and exit"
    ),
):
    """
    🧾 Content Jobs CLI

    Trigger and inspect embedding work, and browse the job run ledger.
    """
    if version:
        from . import __version__

        console.print(f"Content Jobs CLI v{__version__}")
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


if __name__ == "__main__":
    app()
