"""Account management CLI commands."""

import asyncio
from datetime import timedelta

import typer
from rich.console import Console
from rich.table import Table
from sqlmodel import select

from claimease.config import settings
from claimease.database import get_session_context
from claimease.models import Account, PlanTier, utcnow
from claimease.services.auth import get_account_by_email, get_or_create_account
from claimease.services.email import build_magic_link_url
from claimease.services.entitlements import claims_remaining, effective_tier, set_tier
from claimease.services.magic_link import MagicLinkService, build_magic_link_store
from claimease.services.rate_limit import RateLimitedError, build_rate_limiter

console = Console()
app = typer.Typer(help="Account management commands")


@app.command("list")
def list_users(
    plan: PlanTier | None = typer.Option(None, "--plan", "-p", help="Only accounts on this plan"),
):
    """List accounts with their plan and usage."""

    async def _list():
        async with get_session_context() as session:
            stmt = select(Account).order_by(Account.email)
            if plan is not None:
                stmt = stmt.where(Account.plan == plan)
            result = await session.execute(stmt)
            accounts = result.scalars().all()

        table = Table(title="Accounts")
        table.add_column("ID", style="cyan")
        table.add_column("Email", style="green")
        table.add_column("Plan", style="magenta")
        table.add_column("Used", justify="right")
        table.add_column("Remaining", justify="right")
        table.add_column("Expires", style="dim")

        for account in accounts:
            remaining = claims_remaining(account)
            expires = account.plan_expires_at.strftime("%Y-%m-%d") if account.plan_expires_at else "-"
            table.add_row(
                account.id,
                account.email,
                effective_tier(account).value,
                str(account.claims_used),
                "unlimited" if remaining is None else str(remaining),
                expires,
            )

        console.print(table)

    asyncio.run(_list())


@app.command("create")
def create_user(
    email: str = typer.Argument(..., help="Account email"),
    name: str | None = typer.Option(None, "--name", "-n", help="Display name"),
):
    """Create a Free account."""

    async def _create():
        async with get_session_context() as session:
            account, created = await get_or_create_account(session, email, name=name)
            if not created:
                console.print(f"[red]Error:[/red] Account {email} already exists")
                raise typer.Exit(1)
            await session.commit()
            console.print(f"[green]Created account:[/green] {email} ({account.id})")

    asyncio.run(_create())


@app.command("set-plan")
def set_plan(
    email: str = typer.Argument(..., help="Account email"),
    plan: PlanTier = typer.Argument(..., help="New plan tier"),
    days: int | None = typer.Option(
        None, "--days", "-d", help="Plan validity in days (default: paid plan duration)"
    ),
):
    """Change an account's plan. Claim usage is left unchanged."""

    async def _set():
        async with get_session_context() as session:
            account = await get_account_by_email(session, email)
            if not account:
                console.print(f"[red]Error:[/red] Account {email} not found")
                raise typer.Exit(1)

            expires_at = None
            if plan != PlanTier.FREE:
                expires_at = utcnow() + timedelta(days=days or settings.plan_duration_days)
            set_tier(account, plan, expires_at)
            await session.commit()
            console.print(
                f"[green]Set plan:[/green] {email} -> {plan.value}"
                + (f" until {expires_at:%Y-%m-%d}" if expires_at else "")
            )

    asyncio.run(_set())


@app.command("login-url")
def login_url(email: str = typer.Argument(..., help="Account email")):
    """Issue a magic link for an existing account."""
    if settings.store_backend == "memory":
        console.print(
            "[yellow]Warning:[/yellow] STORE_BACKEND=memory; the running server will not see this token"
        )

    async def _generate():
        async with get_session_context() as session:
            if not await get_account_by_email(session, email):
                console.print(f"[red]Error:[/red] Account {email} not found")
                raise typer.Exit(1)

            service = MagicLinkService(build_magic_link_store(session), build_rate_limiter(session))
            try:
                record = await service.issue(email)
            except RateLimitedError as e:
                console.print(f"[red]Error:[/red] Rate limited, retry in {e.retry_after}s")
                raise typer.Exit(1) from e

            console.print(f"[green]Login URL:[/green] {build_magic_link_url(record.token, email)}")
            console.print(f"[dim]Expires: {record.expires_at}[/dim]")

    asyncio.run(_generate())
