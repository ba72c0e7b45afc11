"""CLI entrypoint (Typer).

Commands:
- ``fixflow serve``         run the API server
- ``fixflow init-db``       create database tables
- ``fixflow generate-key``  print a fresh ENCRYPTION_KEY
- ``fixflow resume RUN_ID`` re-invoke one run in the foreground
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import typer

from fixflow.config import get_settings
from fixflow.errors import FixFlowError
from fixflow.tools.encryption import generate_encryption_key

app = typer.Typer(help="FixFlow: turn GitHub issues into pull requests.")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    """Run the API server."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "fixflow.api.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload or settings.debug,
    )


@app.command("init-db")
def init_db_command():
    """Create database tables."""
    from fixflow.database.session import close_db, init_db

    async def _init() -> None:
        try:
            await init_db()
        finally:
            await close_db()

    asyncio.run(_init())
    typer.echo("Database initialized")


@app.command("generate-key")
def generate_key():
    """Print a new 256-bit key for ENCRYPTION_KEY."""
    typer.echo(generate_encryption_key())


@app.command()
def resume(run_id: str):
    """Resume a run from its first uncommitted step."""
    from fixflow.api.deps import get_workflow_engine
    from fixflow.database.session import close_db

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    async def _resume():
        try:
            return await get_workflow_engine().resume(run_id)
        finally:
            await close_db()

    try:
        result = asyncio.run(_resume())
    except FixFlowError as exc:
        typer.echo(f"Error: {exc.message}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"Run {result.run_id}: {result.status.value}")
    if result.pr_url:
        typer.echo(f"Pull request: {result.pr_url}")
    if result.error:
        typer.echo(f"Error: {result.error}", err=True)
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
