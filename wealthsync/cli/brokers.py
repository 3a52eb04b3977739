"""Broker integration CLI commands."""

from typing import Optional
from urllib.parse import parse_qs, urlparse

import typer
from rich.console import Console
from rich.table import Table

from wealthsync.db.database import get_db
from wealthsync.db.models import BrokerConnection
from wealthsync.core.brokers import BrokerError, BrokerSyncService, BrokerType, get_runtime
from wealthsync.core.portfolio.repository import AccountRepository

console = Console()
app = typer.Typer()


def _resolve_connection(service: BrokerSyncService, user_id: str, connection_id: str) -> BrokerConnection:
    """Find a connection by ID or ID prefix."""
    connection = (
        service.db.query(BrokerConnection)
        .filter(
            BrokerConnection.id.like(f"{connection_id}%"),
            BrokerConnection.user_id == user_id,
        )
        .first()
    )
    if not connection:
        console.print(f"[red]Error: Connection {connection_id} not found[/red]")
        raise typer.Exit(1)
    return connection


def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "Never"


@app.command("list")
def list_connections():
    """List broker connections."""
    with get_db() as db:
        user = AccountRepository(db).get_or_create_default_user()
        service = BrokerSyncService(db, get_runtime())
        connections = service.connections.get_by_user(user.id)

        if not connections:
            console.print("[yellow]No broker connections.[/yellow]")
            console.print("\nAdd one with: wealthsync brokers add nordnet --country dk --username <MitID user>")
            return

        table = Table(title="Broker Connections")
        table.add_column("ID", style="dim")
        table.add_column("Broker")
        table.add_column("Identity")
        table.add_column("Mapped", justify="right")
        table.add_column("Last Synced")
        table.add_column("Status")
        table.add_column("Error")

        for conn in connections:
            if conn.broker_type == BrokerType.NORDNET.value:
                identity = f"{conn.username} ({conn.country})"
            else:
                identity = conn.app_key or "-"

            status = conn.last_sync_status or "-"
            if status == "success":
                status = "[green]success[/green]"
            elif status in ("error", "auth_failed"):
                status = f"[red]{status}[/red]"
            if not conn.is_active:
                status = "[dim]inactive[/dim]"

            table.add_row(
                conn.id[:8] + "...",
                conn.broker_type,
                identity,
                str(len(service.mappings.get_by_connection(conn.id))),
                _fmt_time(conn.last_sync_at),
                status,
                (conn.last_sync_error[:30] + "...") if conn.last_sync_error else "-",
            )

        console.print(table)


@app.command("add")
def add_connection(
    broker: str = typer.Argument(..., help="Broker: nordnet or saxo"),
    country: Optional[str] = typer.Option(None, "--country", "-c", help="Nordnet market: dk, se, no, fi"),
    username: Optional[str] = typer.Option(None, "--username", "-u", help="MitID user id (Nordnet)"),
    app_key: Optional[str] = typer.Option(None, "--app-key", help="Saxo application key"),
    app_secret: Optional[str] = typer.Option(None, "--app-secret", help="Saxo application secret"),
    redirect_uri: Optional[str] = typer.Option(None, "--redirect-uri", help="Saxo redirect URI"),
):
    """Add a broker connection."""
    with get_db() as db:
        user = AccountRepository(db).get_or_create_default_user()
        service = BrokerSyncService(db, get_runtime())
        try:
            connection = service.create_connection(
                user.id,
                broker,
                country=country,
                username=username,
                app_key=app_key,
                app_secret=app_secret,
                redirect_uri=redirect_uri,
            )
        except BrokerError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)

        console.print(f"[green]Added {connection.broker_type} connection {connection.id}[/green]")


@app.command("remove")
def remove_connection(
    connection_id: str = typer.Argument(..., help="Connection ID (or prefix)"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
):
    """Delete a connection with its mappings and history."""
    with get_db() as db:
        user = AccountRepository(db).get_or_create_default_user()
        service = BrokerSyncService(db, get_runtime())
        connection = _resolve_connection(service, user.id, connection_id)

        if not force:
            confirm = typer.confirm(f"Delete {connection.broker_type} connection {connection.id[:8]}?")
            if not confirm:
                console.print("[yellow]Cancelled.[/yellow]")
                raise typer.Exit(0)

        service.delete_connection(connection)
        console.print("[green]Connection deleted.[/green]")


@app.command("accounts")
def external_accounts(
    connection_id: str = typer.Argument(..., help="Connection ID (or prefix)"),
):
    """List the broker's accounts. May require MitID or Saxo login."""
    with get_db() as db:
        user = AccountRepository(db).get_or_create_default_user()
        service = BrokerSyncService(db, get_runtime())
        connection = _resolve_connection(service, user.id, connection_id)
        _prepare_login(service, connection)

        try:
            accounts = service.get_external_accounts(connection.id)
        except BrokerError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)

        mapped = {m.external_account_id: m for m in service.mappings.get_by_connection(connection.id)}

        table = Table(title=f"{connection.broker_type.title()} Accounts")
        table.add_column("External ID")
        table.add_column("Number")
        table.add_column("Name")
        table.add_column("Currency")
        table.add_column("Type")
        table.add_column("Mapped To", style="dim")

        for acc in accounts:
            mapping = mapped.get(acc.id)
            table.add_row(
                acc.id,
                acc.account_number,
                acc.name if acc.active else f"{acc.name} [dim](blocked)[/dim]",
                acc.currency,
                acc.type,
                mapping.local_account_id[:8] + "..." if mapping else "-",
            )

        console.print(table)


@app.command("map")
def map_account(
    connection_id: str = typer.Argument(..., help="Connection ID (or prefix)"),
    external_account_id: str = typer.Argument(..., help="Broker account ID"),
    local_account_id: str = typer.Argument(..., help="Local account ID"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Broker account name"),
    no_auto_sync: bool = typer.Option(False, "--no-auto-sync", help="Map without syncing automatically"),
):
    """Map a broker account to a local account."""
    with get_db() as db:
        user = AccountRepository(db).get_or_create_default_user()
        service = BrokerSyncService(db, get_runtime())
        connection = _resolve_connection(service, user.id, connection_id)

        items = [
            {
                "local_account_id": m.local_account_id,
                "external_account_id": m.external_account_id,
                "external_account_name": m.external_account_name,
                "auto_sync": m.auto_sync,
            }
            for m in service.mappings.get_by_connection(connection.id)
            if m.external_account_id != external_account_id
        ]
        items.append(
            {
                "local_account_id": local_account_id,
                "external_account_id": external_account_id,
                "external_account_name": name,
                "auto_sync": not no_auto_sync,
            }
        )

        try:
            service.save_mappings(connection, items)
        except BrokerError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)

        console.print(f"[green]Mapped {external_account_id} to {local_account_id}[/green]")


@app.command("sync")
def sync_connections(
    connection_id: Optional[str] = typer.Argument(None, help="Connection ID or prefix (default: all active)"),
):
    """Sync mapped accounts from brokers."""
    with get_db() as db:
        user = AccountRepository(db).get_or_create_default_user()
        service = BrokerSyncService(db, get_runtime())

        if connection_id:
            connections = [_resolve_connection(service, user.id, connection_id)]
        else:
            connections = service.connections.get_active_by_user(user.id)

        if not connections:
            console.print("[yellow]No connections to sync.[/yellow]")
            return

        failed = False
        for connection in connections:
            console.print(f"[bold]{connection.broker_type.title()}[/bold] ({connection.id[:8]})")
            _prepare_login(service, connection)
            try:
                result = service.sync_connection(connection.id)
            except BrokerError as e:
                console.print(f"  [red]Sync failed:[/red] {e}")
                failed = True
                continue

            console.print(
                f"  [green]OK[/green] - {result.accounts_synced} accounts, "
                f"{result.positions_synced} positions"
            )
            for err in result.errors:
                console.print(f"  [yellow]-[/yellow] {err}")

        if failed:
            raise typer.Exit(1)


@app.command("history")
def sync_history(
    connection_id: str = typer.Argument(..., help="Connection ID (or prefix)"),
    limit: int = typer.Option(10, "--limit", "-l", help="Number of entries to show"),
):
    """Show recent sync attempts."""
    with get_db() as db:
        user = AccountRepository(db).get_or_create_default_user()
        service = BrokerSyncService(db, get_runtime())
        connection = _resolve_connection(service, user.id, connection_id)
        entries = service.history.get_by_connection(connection.id, limit=limit)

        if not entries:
            console.print("[dim]No sync history[/dim]")
            return

        table = Table(title="Sync History")
        table.add_column("Started")
        table.add_column("Status")
        table.add_column("Accounts", justify="right")
        table.add_column("Positions", justify="right")
        table.add_column("Duration", justify="right")
        table.add_column("Error")

        for entry in entries:
            color = {"success": "green", "error": "red"}.get(entry.status, "yellow")
            table.add_row(
                _fmt_time(entry.started_at),
                f"[{color}]{entry.status}[/{color}]",
                str(entry.accounts_synced),
                str(entry.positions_synced),
                f"{entry.duration_ms / 1000:.1f}s" if entry.duration_ms is not None else "-",
                entry.error_message or "-",
            )

        console.print(table)


@app.command("auth-status")
def auth_status(
    connection_id: str = typer.Argument(..., help="Connection ID (or prefix)"),
):
    """Show the interactive login state of a connection."""
    runtime = get_runtime()
    with get_db() as db:
        user = AccountRepository(db).get_or_create_default_user()
        service = BrokerSyncService(db, runtime)
        connection = _resolve_connection(service, user.id, connection_id)

        if connection.broker_type == BrokerType.NORDNET.value:
            console.print(f"MitID: [bold]{runtime.mitid.get_status(connection.id)}[/bold]")
        else:
            console.print(f"Saxo: [bold]{runtime.saxo_oauth.get_status(connection)}[/bold]")
            auth_url = runtime.saxo_oauth.get_auth_url(connection.id)
            if auth_url:
                console.print(f"Login URL: {auth_url}")


@app.command("saxo-login")
def saxo_login(
    connection_id: str = typer.Argument(..., help="Connection ID (or prefix)"),
):
    """Log in to Saxo by pasting the redirect URL back into the terminal."""
    with get_db() as db:
        user = AccountRepository(db).get_or_create_default_user()
        service = BrokerSyncService(db, get_runtime())
        connection = _resolve_connection(service, user.id, connection_id)
        if connection.broker_type != BrokerType.SAXO.value:
            console.print("[red]Error: Not a Saxo connection[/red]")
            raise typer.Exit(1)
        if not _paste_login(service, connection):
            raise typer.Exit(1)


def _prepare_login(service: BrokerSyncService, connection: BrokerConnection) -> None:
    """Tell the user what to do before a sync blocks on interactive login."""
    runtime = service.runtime
    if connection.broker_type == BrokerType.NORDNET.value:
        work_dir = runtime.mitid.work_dir_for(connection.id)
        console.print(f"  Approve the MitID login. QR frames are written to {work_dir}")
    elif connection.broker_type == BrokerType.SAXO.value:
        if runtime.saxo_oauth.get_valid_session(connection) is None:
            _paste_login(service, connection)


def _paste_login(service: BrokerSyncService, connection: BrokerConnection) -> bool:
    oauth = service.runtime.saxo_oauth
    # Tokens are stored through a separate session
    service.db.commit()
    try:
        auth_url = oauth.start(connection)
    except BrokerError as e:
        console.print(f"[red]Error:[/red] {e}")
        return False

    console.print("Open this URL in a browser and log in to Saxo:\n")
    console.print(auth_url, soft_wrap=True)
    redirected = typer.prompt("\nPaste the URL you were redirected to")

    params = parse_qs(urlparse(redirected.strip()).query)
    try:
        oauth.complete(
            state=params.get("state", [""])[0],
            code=params.get("code", [None])[0],
            error=params.get("error", [None])[0],
            error_description=params.get("error_description", [""])[0],
        )
    except BrokerError as e:
        console.print(f"[red]Login failed:[/red] {e}")
        return False

    console.print("[green]Saxo login complete.[/green]")
    return True
