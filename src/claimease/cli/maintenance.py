"""Maintenance CLI commands."""

import asyncio

import typer
from rich.console import Console

from claimease.tasks import queue
from claimease.tasks.maintenance import MAINTENANCE_TIMEOUT_SECONDS

console = Console()
app = typer.Typer(help="Maintenance and cleanup commands")


@app.command("purge")
def purge(
    background: bool = typer.Option(False, "--background", "-b", help="Run in background worker"),
):
    """Delete expired magic links and finished rate-limit windows."""

    async def _purge():
        if background:
            job = await queue.enqueue("purge_expired_records", timeout=MAINTENANCE_TIMEOUT_SECONDS)
            console.print(f"[green]Queued purge job:[/green] {job.id if job else 'unknown'}")
            return

        from claimease.tasks.maintenance import purge_expired_records

        result = await purge_expired_records({})
        if not result.get("success"):
            console.print(f"[red]Error:[/red] {result.get('error')}")
            raise typer.Exit(1)

        console.print(
            f"[green]Purged[/green] {result['tokens_deleted']} magic links, "
            f"{result['counters_deleted']} rate-limit counters"
        )

    asyncio.run(_purge())
