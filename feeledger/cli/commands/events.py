"""Activity log CLI commands."""

from __future__ import annotations

import json
from datetime import timedelta

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from feeledger.core.events.repository import ActivityLogRepository
from feeledger.storage.database.base import init_db
from feeledger.storage.session import db_session
from feeledger.utils.config import get_settings
from feeledger.utils.datetime import as_utc, utc_now

app = typer.Typer(help="View the activity log", no_args_is_help=True)
console = Console()


def ensure_db() -> None:
    settings = get_settings()
    init_db(settings.database_url, busy_timeout=settings.database_busy_timeout)


@app.command("list")
def list_events(
    event_type: str | None = typer.Option(None, "--type", "-t", help="Filter by event type"),
    entity_type: str | None = typer.Option(
        None, "--entity", "-e", help="Filter by entity type (balance, payment, student...)"
    ),
    entity_id: int | None = typer.Option(None, "--entity-id", help="Filter by entity ID"),
    last_days: int | None = typer.Option(None, "--last-days", "-d", help="Only the last N days"),
    limit: int = typer.Option(50, "--limit", "-l", help="Maximum number of events to show"),
) -> None:
    """List recent activity with optional filtering."""
    ensure_db()
    since = utc_now() - timedelta(days=last_days) if last_days else None

    with db_session() as db:
        events = ActivityLogRepository(db).get_all(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            since=since,
            limit=limit,
        )

        if not events:
            console.print("[yellow]No events found matching the criteria[/yellow]")
            return

        table = Table(title=f"Activity ({len(events)} events)")
        table.add_column("Timestamp", style="cyan", width=19)
        table.add_column("Action", style="bold white")
        table.add_column("Entity", style="green")
        table.add_column("Actor")
        table.add_column("Description")
        for event in events:
            table.add_row(
                as_utc(event.occurred_at).strftime("%Y-%m-%d %H:%M:%S"),
                event.action,
                f"{event.entity_type or '-'}:{event.entity_id or '-'}",
                f"{event.actor_id or '-'} ({event.actor_role or '-'})",
                event.description or "",
            )
        console.print(table)


@app.command("show")
def show_event(event_id: str = typer.Argument(..., help="Event ID (UUID)")) -> None:
    """Show the full payload of one event."""
    ensure_db()
    with db_session() as db:
        event = ActivityLogRepository(db).get_by_event_id(event_id)
        if event is None:
            console.print(f"[red]Event {event_id} not found[/red]")
            raise typer.Exit(1)

        payload = json.dumps(json.loads(event.event_data), indent=2, ensure_ascii=False)
        console.print(
            Panel(
                payload,
                title=f"{event.event_type} ({event.action})",
                subtitle=as_utc(event.occurred_at).isoformat(),
            )
        )


@app.command("stats")
def stats() -> None:
    """Count events by type."""
    ensure_db()
    with db_session() as db:
        counts = ActivityLogRepository(db).count_by_type()

    table = Table(title="Events by type")
    table.add_column("Event type", style="cyan")
    table.add_column("Count", justify="right", style="bold")
    for event_type, count in sorted(counts.items()):
        table.add_row(event_type, str(count))
    console.print(table)
