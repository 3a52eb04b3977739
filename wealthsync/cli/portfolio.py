"""Local account CLI commands."""

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from wealthsync.db.database import get_db
from wealthsync.db.models import Account
from wealthsync.core.portfolio.repository import (
    AccountRepository,
    HoldingRepository,
    TransactionRepository,
)

console = Console()
app = typer.Typer()


@app.command("list")
def list_accounts():
    """List local accounts with their balances."""
    with get_db() as db:
        repo = AccountRepository(db)
        user = repo.get_or_create_default_user()
        accounts = repo.get_by_user(user.id)

        if not accounts:
            console.print("[yellow]No accounts yet.[/yellow]")
            console.print("\nCreate one with: wealthsync accounts add \"My Nordnet\"")
            return

        transactions = TransactionRepository(db)
        table = Table(title="Accounts")
        table.add_column("ID", style="dim")
        table.add_column("Name")
        table.add_column("Type")
        table.add_column("Balance", justify="right")

        total_by_currency = {}
        for acc in accounts:
            balance = transactions.get_latest_balance(acc.id)
            total_by_currency[acc.currency] = total_by_currency.get(acc.currency, 0.0) + balance
            table.add_row(
                acc.id,
                acc.name,
                acc.account_type,
                f"{balance:,.2f} {acc.currency}",
            )

        console.print(table)
        for currency, total in sorted(total_by_currency.items()):
            console.print(f"[bold]Total {currency}:[/bold] {total:,.2f}")


@app.command("add")
def add_account(
    name: str = typer.Argument(..., help="Account name"),
    currency: str = typer.Option("DKK", "--currency", "-c", help="Account currency"),
    account_type: str = typer.Option("investment", "--type", "-t", help="Account type"),
):
    """Create a local account."""
    if len(currency.strip()) != 3:
        console.print(f"[red]Error:[/red] Invalid currency '{currency}'")
        raise typer.Exit(1)

    with get_db() as db:
        repo = AccountRepository(db)
        user = repo.get_or_create_default_user()
        account = repo.create(user.id, name, currency=currency.strip(), account_type=account_type)
        console.print(f"[green]Created account {account.name}[/green] ({account.id})")


@app.command("holdings")
def show_holdings(
    account_id: str = typer.Argument(..., help="Account ID (or prefix)"),
):
    """Show synced holdings of an account."""
    with get_db() as db:
        user = AccountRepository(db).get_or_create_default_user()
        account = (
            db.query(Account)
            .filter(Account.id.like(f"{account_id}%"), Account.user_id == user.id)
            .first()
        )
        if not account:
            console.print(f"[red]Error: Account {account_id} not found[/red]")
            raise typer.Exit(1)

        holdings = HoldingRepository(db).get_by_account(account.id)
        if not holdings:
            console.print("[dim]No holdings[/dim]")
            return

        table = Table(title=f"Holdings: {account.name}")
        table.add_column("Symbol", style="cyan")
        table.add_column("Name")
        table.add_column("Quantity", justify="right")
        table.add_column("Avg Price", justify="right")
        table.add_column("Price", justify="right")
        table.add_column("Value", justify="right")
        table.add_column("Updated")

        for h in holdings:
            table.add_row(
                h.symbol,
                (h.name or "-")[:30],
                f"{h.quantity:,.4g}",
                f"{h.avg_price:,.2f}",
                f"{h.current_price:,.2f}",
                f"{h.current_value:,.2f} {h.currency or ''}".rstrip(),
                h.last_updated.strftime("%Y-%m-%d %H:%M"),
            )

        console.print(table)
        total = HoldingRepository(db).total_value(account.id)
        console.print(f"[bold]Positions value:[/bold] {total:,.2f}")


@app.command("history")
def balance_history(
    account_id: str = typer.Argument(..., help="Account ID (or prefix)"),
    limit: Optional[int] = typer.Option(20, "--limit", "-l", help="Number of entries"),
):
    """Show balance changes of an account."""
    with get_db() as db:
        user = AccountRepository(db).get_or_create_default_user()
        account = (
            db.query(Account)
            .filter(Account.id.like(f"{account_id}%"), Account.user_id == user.id)
            .first()
        )
        if not account:
            console.print(f"[red]Error: Account {account_id} not found[/red]")
            raise typer.Exit(1)

        entries = TransactionRepository(db).get_by_account(account.id, limit=limit)
        if not entries:
            console.print("[dim]No balance history[/dim]")
            return

        table = Table(title=f"Balance History: {account.name}")
        table.add_column("Date")
        table.add_column("Change", justify="right")
        table.add_column("Balance", justify="right")
        table.add_column("Description")

        for t in entries:
            color = "green" if t.amount >= 0 else "red"
            table.add_row(
                t.transaction_date.strftime("%Y-%m-%d %H:%M"),
                f"[{color}]{t.amount:+,.2f}[/{color}]",
                f"{t.balance_after:,.2f}",
                t.description or "-",
            )

        console.print(table)
