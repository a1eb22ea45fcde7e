"""PriceBridge CLI.

Commands:
- init: Initialize database schema
- register: Create (or find) an aggregate record for an identifier
- reconcile: Run one vendor price reconciliation pass
- complete: Run one-time completion for a temporary record
- lease-status: Inspect the lease on a record
- trigger: Publish reconciliation jobs for every record
- cleanup-leases: Delete expired leases
- cleanup-temporary: Delete temporary records that never completed
- web serve: Run the HTTP API
"""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from pricebridge.canonical.keys import record_id_for
from pricebridge.config import get_config
from pricebridge.core.logging import configure_logging
from pricebridge.core.queue import enqueue_reconcile, get_queue
from pricebridge.db.connection import create_engine_for, create_session_factory
from pricebridge.db.models import Base
from pricebridge.models import ReconcileStatus
from pricebridge.reconciliation.cleanup import cleanup_stale_temporary_records
from pricebridge.reconciliation.leases import VENDOR_PRICES
from pricebridge.reconciliation.trigger import trigger_vendor_prices
from pricebridge.runtime import Services

app = typer.Typer(
    name="pricebridge",
    help="PriceBridge - cross-vendor price reconciliation",
    no_args_is_help=True,
)
web_cli = typer.Typer(help="HTTP API")
app.add_typer(web_cli, name="web")

console = Console()


@app.callback()
def main(
    log_level: str | None = typer.Option(None, "--log-level", help="Override LOG_LEVEL"),
):
    configure_logging(log_level, json_logs=False)


def _resolve_record_id(record: str, by_identifier: bool) -> str:
    return record_id_for(record) if by_identifier else record


async def _with_services(work):
    services = await Services.create()
    try:
        return await work(services)
    finally:
        await services.close()


@app.command()
def init(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables"),
):
    """Initialize database schema."""
    config = get_config()
    console.print(f"[bold]Initializing database:[/bold] {config.db.url}")

    async def _init():
        engine = create_engine_for(config.db)
        async with engine.begin() as conn:
            if drop:
                console.print("[yellow]Dropping existing tables...[/yellow]")
                await conn.run_sync(Base.metadata.drop_all)
            console.print("[green]Creating tables...[/green]")
            await conn.run_sync(Base.metadata.create_all)
        await engine.dispose()

    asyncio.run(_init())
    console.print("[bold green]✓[/bold green] Database initialized")


@app.command()
def register(
    identifier: str = typer.Argument(..., help="Canonical identifier (barcode)"),
    name: str | None = typer.Option(None, "--name", help="Product name"),
    temporary: bool = typer.Option(False, "--temporary", help="Mark as temporary until completed"),
    reconcile_now: bool = typer.Option(False, "--reconcile", help="Reconcile immediately"),
):
    """Create (or find) the aggregate record for an identifier."""

    async def _run(services: Services):
        record_id, created = await services.recorder.ensure_record(
            identifier, name=name, temporary=temporary
        )
        verb = "Created" if created else "Found existing"
        console.print(f"[bold green]✓[/bold green] {verb} record {record_id}")
        if reconcile_now:
            result = await services.reconciler.reconcile(record_id)
            _print_reconcile(result)
        await services.tasks.join()

    asyncio.run(_with_services(_run))


def _print_reconcile(result) -> None:
    color = {
        ReconcileStatus.OK: "green",
        ReconcileStatus.BUSY: "yellow",
        ReconcileStatus.NOT_FOUND: "yellow",
        ReconcileStatus.FAILED: "red",
    }[result.status]
    console.print(
        f"[{color}]{result.status.value}[/{color}] {result.record_id} "
        f"({result.state.value}, {result.duration_seconds:.1f}s) {result.message}"
    )
    if result.stats is None:
        return

    stats = result.stats
    table = Table(title=f"Period {result.period_key}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Vendor hits", str(stats.hits))
    table.add_row("Links created", str(stats.links_created))
    table.add_row("Links updated", str(stats.links_updated))
    table.add_row("Links deactivated", str(stats.links_deactivated))
    table.add_row("Observations created", str(stats.observations_created))
    table.add_row("Active vendors", str(stats.active_vendor_brands))
    if stats.best_price is not None:
        table.add_row("Best price", f"{stats.best_price} ({stats.best_price_vendor_id})")
    console.print(table)


@app.command()
def reconcile(
    record: str = typer.Argument(..., help="Record id (or identifier with --identifier)"),
    by_identifier: bool = typer.Option(False, "--identifier", help="Treat RECORD as a barcode"),
    period_key: str | None = typer.Option(None, "--period", help="Period key YYYYMMDD"),
):
    """Run one reconciliation pass for a record."""
    record_id = _resolve_record_id(record, by_identifier)

    async def _run(services: Services):
        return await services.reconciler.reconcile(record_id, period_key)

    result = asyncio.run(_with_services(_run))
    _print_reconcile(result)
    if result.status is ReconcileStatus.FAILED:
        raise typer.Exit(code=1)


@app.command()
def complete(
    record: str = typer.Argument(..., help="Record id (or identifier with --identifier)"),
    by_identifier: bool = typer.Option(False, "--identifier", help="Treat RECORD as a barcode"),
    product_input: str | None = typer.Option(None, "--input", help="Product description text"),
):
    """Classify and complete a temporary record."""
    record_id = _resolve_record_id(record, by_identifier)

    async def _run(services: Services):
        if services.completion is None:
            console.print("[red]✗[/red] OPENAI_API_KEY is not configured")
            raise typer.Exit(code=1)
        return await services.completion.complete(record_id, product_input)

    result = asyncio.run(_with_services(_run))
    console.print(f"[bold]{result.status.value}[/bold] {record_id} {result.message}")
    if result.category:
        console.print(f"  Category: {result.category}")
    if result.brand_id:
        console.print(f"  Brand: {result.brand_id}")


@app.command(name="lease-status")
def lease_status(
    record: str = typer.Argument(..., help="Record id (or identifier with --identifier)"),
    by_identifier: bool = typer.Option(False, "--identifier", help="Treat RECORD as a barcode"),
    lease_type: str = typer.Option(VENDOR_PRICES, "--type", help="Lease type"),
):
    """Show who holds the lease on a record."""
    record_id = _resolve_record_id(record, by_identifier)

    async def _run(services: Services):
        return await services.leases.status(record_id, lease_type)

    lease = asyncio.run(_with_services(_run))
    if lease.holder_id is None:
        console.print(f"[green]No lease[/green] on {record_id}/{lease_type}")
        return
    state = "[red]expired[/red]" if lease.expired else "[yellow]held[/yellow]"
    console.print(f"{state} by {lease.holder_id}")
    console.print(f"  Remaining: {lease.remaining_seconds:.0f}s")
    console.print(f"  Age: {lease.age_seconds:.0f}s")
    console.print(f"  Extensions: {lease.extension_count}")


@app.command()
def trigger(
    period_key: str | None = typer.Option(None, "--period", help="Period key YYYYMMDD"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Count records without publishing"),
):
    """Publish one reconciliation job per record to the worker queue."""
    config = get_config()

    async def _run():
        engine = create_engine_for(config.db)
        session_factory = create_session_factory(engine)
        queue = None if dry_run else await get_queue()

        async def publish(record_id: str, period: str) -> None:
            if queue is not None:
                await enqueue_reconcile(queue, record_id, period)

        try:
            return await trigger_vendor_prices(
                session_factory, publish, config.worker.trigger_page_size, period_key
            )
        finally:
            if queue is not None:
                await queue.close()
            await engine.dispose()

    result = asyncio.run(_run())
    action = "Would publish" if dry_run else "Published"
    console.print(
        f"[bold green]✓[/bold green] {action} {result.published} jobs for {result.period_key}"
    )
    if result.failed:
        console.print(f"[yellow]⚠[/yellow] {result.failed} publish failures (see logs)")


@app.command(name="cleanup-leases")
def cleanup_leases():
    """Delete expired leases."""

    async def _run(services: Services):
        return await services.leases.cleanup_expired()

    result = asyncio.run(_with_services(_run))
    console.print(f"[bold green]✓[/bold green] Deleted {result.deleted} expired leases")


@app.command(name="cleanup-temporary")
def cleanup_temporary(
    ttl_hours: int | None = typer.Option(None, "--ttl-hours", help="Age threshold in hours"),
):
    """Delete temporary records that never completed."""

    async def _run(services: Services):
        worker = services.config.worker
        return await cleanup_stale_temporary_records(
            services.session_factory,
            ttl_hours=ttl_hours or worker.temporary_ttl_hours,
            batch_size=worker.trigger_page_size,
        )

    result = asyncio.run(_with_services(_run))
    console.print(f"[bold green]✓[/bold green] Deleted {result.deleted} temporary records")
    if result.errors:
        console.print(f"[yellow]⚠[/yellow] {result.errors} errors (see logs)")


@web_cli.command("serve")
def web_serve(
    host: str = typer.Option("0.0.0.0", help="Host to bind"),
    port: int = typer.Option(8080, help="Port to bind"),
    reload: bool = typer.Option(False, help="Enable autoreload (dev only)"),
):
    """Run the HTTP API."""
    import uvicorn

    typer.echo(f"Starting PriceBridge API on http://{host}:{port}")
    uvicorn.run("pricebridge.web.app:app", host=host, port=port, reload=reload, workers=1)


if __name__ == "__main__":
    app()
