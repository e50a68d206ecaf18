"""Typer CLI for Custody-Engine."""

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(name="custody", help="Custody-Engine: multi-party vault approvals and audit")
console = Console()


def _run_with_db(operation):
    """Open the configured database, run ``operation(session)`` and commit."""
    from custody_engine.common.config import get_settings
    from custody_engine.common.database import DatabaseManager

    async def runner():
        db = DatabaseManager(get_settings())
        await db.init()
        try:
            await db.create_all()
            async with db.get_session() as session:
                return await operation(session)
        finally:
            await db.close()

    return asyncio.run(runner())


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host (defaults to CUSTODY_HOST)"),
    port: Optional[int] = typer.Option(None, help="Bind port (defaults to CUSTODY_PORT)"),
):
    """Start the Custody-Engine API server."""
    import uvicorn
    from custody_engine.app import create_app
    from custody_engine.common.config import get_settings

    settings = get_settings()
    host = host or settings.host
    port = port or settings.port
    console.print(f"[bold green]Starting Custody-Engine on {host}:{port}[/bold green]")
    uvicorn.run(create_app(), host=host, port=port)


@app.command("init-db")
def init_db():
    """Create all tables in the configured database."""
    async def noop(session):
        return None

    _run_with_db(noop)
    console.print("[bold green]Database initialized[/bold green]")


@app.command()
def cleanup(
    retention_days: Optional[int] = typer.Option(
        None, "--retention-days", min=0, help="Keep entries newer than this many days",
    ),
):
    """Delete audit entries older than the retention window."""
    from custody_engine.deps import get_audit_ledger

    ledger = get_audit_ledger()
    deleted = _run_with_db(lambda session: ledger.cleanup(session, retention_days))
    console.print(f"Removed [bold]{deleted}[/bold] audit entries")


@app.command()
def expire():
    """Expire every live escrow whose deadline has passed."""
    from custody_engine.deps import get_approval_engine

    engine = get_approval_engine()
    expired = _run_with_db(engine.expire_overdue)
    console.print(f"Expired [bold]{expired}[/bold] escrows")


@app.command("apply-scheduled")
def apply_scheduled(
    actor: str = typer.Option("system", help="Actor recorded in the audit entries"),
):
    """Apply scheduled policy changes whose effective time has passed."""
    from custody_engine.deps import get_policy_store

    store = get_policy_store()
    applied = _run_with_db(lambda session: store.apply_due_changes(session, actor))
    console.print(f"Applied [bold]{applied}[/bold] scheduled policy changes")


@app.command()
def canonical(
    address: str = typer.Argument(..., help="0x-prefixed 20-byte address"),
    chain_id: int = typer.Option(..., "--chain-id", help="Numeric chain id"),
):
    """Print the canonical identifier for an address (offline, no DB required)."""
    from custody_engine.common.exceptions import ValidationError
    from custody_engine.identifiers.caip10 import ChainAccount

    try:
        account = ChainAccount(address, chain_id)
    except ValidationError as e:
        console.print(f"[bold red]{e.code}[/bold red] {e.message}")
        raise typer.Exit(1)

    table = Table(show_header=False)
    table.add_row("canonical", account.canonical)
    table.add_row("key", account.key)
    table.add_row("short", account.short)
    console.print(table)


@app.command()
def health(
    url: str = typer.Option("http://localhost:8080", help="Server URL"),
):
    """Check Custody-Engine server health."""
    import httpx

    try:
        resp = httpx.get(f"{url}/health", timeout=5)
        data = resp.json()
        console.print(f"[bold green]{data['status']}[/bold green] v{data['version']}")
    except httpx.HTTPError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
