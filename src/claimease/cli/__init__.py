"""CLI commands using Typer."""

import typer

from claimease.cli.db import app as db_app
from claimease.cli.maintenance import app as maintenance_app
from claimease.cli.users import app as users_app
from claimease.cli.webhooks import app as webhooks_app

app = typer.Typer(name="claimease", help="ClaimEase CLI")

app.add_typer(db_app, name="db")
app.add_typer(users_app, name="users")
app.add_typer(maintenance_app, name="maintenance")
app.add_typer(webhooks_app, name="webhooks")


@app.command()
def version():
    """Show version information."""
    from claimease import __version__

    typer.echo(f"ClaimEase v{__version__}")


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Host to bind to"),
    port: int = typer.Option(8000, help="Port to bind to"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
):
    """Run the API server."""
    import uvicorn

    from claimease.logging import get_uvicorn_log_config

    uvicorn.run(
        "claimease.main:app",
        host=host,
        port=port,
        reload=reload,
        log_config=get_uvicorn_log_config(),
    )


@app.command()
def worker():
    """Run the background worker, including the expired-record purge schedule."""
    from claimease.worker import main

    typer.echo("Starting worker")
    main()


if __name__ == "__main__":
    app()
