"""Main CLI entry point for feeledger."""

import typer
from rich.console import Console

from feeledger import __version__
from feeledger.utils.config import get_settings
from feeledger.utils.logging import configure_from_settings

from ..billing.cli import app as billing_app
from .commands import events

app = typer.Typer(
    name="feeledger",
    help="🎓 Student fee billing ledger",
    add_completion=True,
    rich_markup_mode="rich",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"[bold blue]feeledger[/bold blue] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    """
    feeledger - fee issuance, payments, reminders and student reconciliation.
    """
    configure_from_settings(get_settings())


app.add_typer(billing_app, name="billing", help="💰 Fees, payments and reminders")
app.add_typer(events.app, name="events", help="📜 View the activity log")


if __name__ == "__main__":
    app()
