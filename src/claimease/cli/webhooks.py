"""Webhook follow-up CLI commands."""

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from claimease.database import get_session_context
from claimease.services.checkout import list_failed_events

console = Console()
app = typer.Typer(help="Payment webhook commands")


@app.command("failed")
def failed(
    limit: int = typer.Option(50, "--limit", "-l", help="Number of events to show"),
):
    """List webhook events whose reconciliation failed."""

    async def _failed():
        async with get_session_context() as session:
            events = await list_failed_events(session, limit=limit)

        if not events:
            console.print("[green]No failed webhook events[/green]")
            return

        table = Table(title="Failed webhook events")
        table.add_column("Event", style="cyan")
        table.add_column("Type")
        table.add_column("Received", style="dim")
        table.add_column("Error", style="red")

        for event in events:
            table.add_row(
                event.event_id,
                event.event_type,
                event.received_at.strftime("%Y-%m-%d %H:%M"),
                event.last_error or "-",
            )

        console.print(table)

    asyncio.run(_failed())
