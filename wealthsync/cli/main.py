"""Main CLI entry point using Typer."""

import logging

import typer
from rich.console import Console

from wealthsync.db.database import init_db
from wealthsync.config import PRODUCT_NAME, PRODUCT_TAGLINE, PRODUCT_VERSION, get_settings

# Configure logging
logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

# Reduce noise from third-party libraries
logging.getLogger("urllib3").setLevel(logging.WARNING)

console = Console()
app = typer.Typer(
    name="wealthsync",
    help=f"{PRODUCT_NAME}: {PRODUCT_TAGLINE}",
    add_completion=False,
)


@app.callback()
def main_callback():
    """Initialize database on startup."""
    init_db()


# Import and add subcommands
from wealthsync.cli.portfolio import app as accounts_app
from wealthsync.cli.brokers import app as brokers_app

app.add_typer(accounts_app, name="accounts", help="Manage local accounts and holdings")
app.add_typer(brokers_app, name="brokers", help="Broker connections and account sync")


@app.command()
def version():
    """Show version information."""
    console.print(f"[bold]{PRODUCT_NAME}[/] {PRODUCT_VERSION}")
    console.print(f"[bold]Tagline:[/] {PRODUCT_TAGLINE}")


if __name__ == "__main__":
    app()
