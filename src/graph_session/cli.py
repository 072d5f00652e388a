"""graph-session CLI - sign in to Microsoft Graph and inspect the session."""

import asyncio
import json
import logging
from typing import Optional

import httpx
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .config import settings

app = typer.Typer(
    name="graph-session",
    help="Delegated Microsoft Graph session manager",
    no_args_is_help=True,
)
console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _initialized_manager(client_id: str | None, scopes: list[str] | None):
    """Get the process-wide manager, initialized from options or settings."""
    from .auth import get_session_manager
    from .errors import ConfigurationError

    manager = get_session_manager()
    try:
        manager.initialize(client_id or settings.client_id, scopes or settings.scope_list)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        console.print("[dim]Set GRAPH_SESSION_CLIENT_ID or pass --client-id.[/dim]")
        raise typer.Exit(1)
    return manager


ClientIdOption = typer.Option(None, "--client-id", "-c", help="Application (client) ID")
ScopeOption = typer.Option(None, "--scope", "-s", help="Scope to request (repeatable)")


@app.command("config")
def show_config():
    """Show the effective session configuration."""
    table = Table(title="Graph Session Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Client ID", settings.client_id or "[red]Not set[/red]")
    table.add_row("Scopes", ", ".join(settings.scope_list) or "[red]Not set[/red]")
    table.add_row("Authority", settings.authority)
    table.add_row("Graph URL", settings.graph_base_url)
    table.add_row("Refresh margin", f"{settings.refresh_margin_seconds}s")

    console.print(table)


@app.command("connect")
def connect(
    client_id: Optional[str] = ClientIdOption,
    scope: Optional[list[str]] = ScopeOption,
):
    """Sign in, silently if possible, otherwise through the browser."""
    manager = _initialized_manager(client_id, scope)

    console.print("[dim]Connecting...[/dim]")
    if not asyncio.run(manager.connect()):
        _print_failure(manager, "Sign-in failed")
        raise typer.Exit(1)

    _print_connected(manager)


@app.command("switch-user")
def switch_user(
    client_id: Optional[str] = ClientIdOption,
    scope: Optional[list[str]] = ScopeOption,
):
    """Sign in with a different account (always prompts)."""
    manager = _initialized_manager(client_id, scope)

    if not asyncio.run(manager.connect_as_another_user()):
        _print_failure(manager, "Account switch failed")
        raise typer.Exit(1)

    _print_connected(manager)


@app.command("whoami")
def whoami(
    client_id: Optional[str] = ClientIdOption,
    scope: Optional[list[str]] = ScopeOption,
    as_json: bool = typer.Option(False, "--json", help="Output raw JSON"),
):
    """Show the signed-in user's Graph profile."""
    from .api import GraphError

    manager = _initialized_manager(client_id, scope)

    async def _profile():
        if not await manager.connect():
            return None
        async with await manager.build_authenticated_client() as client:
            return await client.me()

    try:
        profile = asyncio.run(_profile())
    except GraphError as e:
        console.print(f"[red]Graph error: {e}[/red]")
        raise typer.Exit(1)
    except httpx.HTTPError as e:
        console.print(f"[red]Could not reach Microsoft Graph: {e}[/red]")
        raise typer.Exit(1)

    if profile is None:
        _print_failure(manager, "Sign-in failed")
        raise typer.Exit(1)

    if as_json:
        console.print(json.dumps(profile, indent=2))
        return

    table = Table(title="Signed-in User")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key in ("id", "displayName", "userPrincipalName", "mail", "jobTitle"):
        table.add_row(key, str(profile.get(key) or "-"))
    console.print(table)


@app.command("sign-out")
def sign_out(
    client_id: Optional[str] = ClientIdOption,
    scope: Optional[list[str]] = ScopeOption,
):
    """Forget remembered accounts and clear the session."""
    manager = _initialized_manager(client_id, scope)
    asyncio.run(manager.sign_out())
    console.print("[green]Signed out.[/green]")
    console.print("[dim]Run 'graph-session connect' to sign in again.[/dim]")


def _print_connected(manager) -> None:
    status = manager.status()
    expires_in = status["token_expires_in_seconds"] or 0
    console.print(
        Panel(
            f"[bold green]Connected[/bold green]\n\n"
            f"User ID: {status['current_user_id']}\n"
            f"Scopes: {', '.join(status['scopes'])}\n"
            f"Token expires in: {expires_in // 60}m",
            title="Graph Session",
        )
    )


def _print_failure(manager, message: str) -> None:
    from .auth import AcquisitionStatus

    result = manager.last_acquisition
    if result is not None and result.status is AcquisitionStatus.CANCELLED:
        console.print(f"[yellow]{message}: sign-in was cancelled.[/yellow]")
    elif result is not None and result.error is not None:
        console.print(f"[red]{message}: {result.error}[/red]")
    else:
        console.print(f"[red]{message}.[/red]")


if __name__ == "__main__":
    app()
