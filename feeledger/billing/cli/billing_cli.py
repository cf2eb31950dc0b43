"""Billing ledger CLI commands.

Admin commands for issuing fees, recording payments, running reminders and
reconciling duplicate students. Commands run as the system actor.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from decimal import Decimal
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ...core.events import initialize_event_system
from ...exceptions import (
    ConflictError,
    FeeLedgerError,
    NotFoundError,
    TransientStorageError,
    ValidationError,
)
from ...storage.database.base import init_db
from ...utils.config import get_settings
from ...utils.logging import get_logger
from ...utils.retry import STORAGE_RETRY, retry_sync
from ..application.services import (
    BalanceService,
    BulkIssuanceEngine,
    NotificationService,
    PaymentProcessor,
    ReconciliationService,
    ReminderScheduler,
    iter_roster_chunks,
)
from ..domain.value_objects import format_amount

app = typer.Typer(name="billing", help="💰 Student fee billing ledger", no_args_is_help=True)
console = Console()
logger = get_logger(__name__)


def ensure_db() -> None:
    """Initialize the database and event system from settings."""
    settings = get_settings()
    init_db(
        settings.database_url,
        echo=settings.database_echo,
        busy_timeout=settings.database_busy_timeout,
    )
    initialize_event_system(settings)


@contextmanager
def cli_errors() -> Iterator[None]:
    """Render ledger errors for the terminal and exit non-zero."""
    try:
        yield
    except ValidationError as e:
        console.print(f"[red]✗ {e.message}[/]")
        for field, message in sorted(e.errors.items()):
            console.print(f"  [yellow]{field}[/]: {message}")
        raise typer.Exit(2)
    except NotFoundError as e:
        console.print(f"[red]✗ {e.message}[/]")
        if e.missing_ids:
            console.print(f"  Invalid ids: {', '.join(str(i) for i in e.missing_ids)}")
        raise typer.Exit(3)
    except ConflictError as e:
        console.print(f"[red]✗ {e.message}[/]")
        raise typer.Exit(4)
    except TransientStorageError as e:
        console.print(f"[red]✗ {e.message}[/] [dim](nothing was written, safe to retry)[/]")
        raise typer.Exit(5)
    except FeeLedgerError as e:
        console.print(f"[red]✗ {e}[/]")
        raise typer.Exit(1)


def _money(amount: Decimal | float) -> str:
    return f"{get_settings().currency_symbol}{format_amount(Decimal(str(amount)))}"


# ============================================================================
# Database
# ============================================================================


@app.command("init-db")
def init_database() -> None:
    """🗄️  Create the ledger tables."""
    settings = get_settings()
    if settings.is_sqlite:
        settings.data_dir.mkdir(parents=True, exist_ok=True)
    ensure_db()
    console.print(f"[green]✓ Database ready:[/] {settings.database_url}")


# ============================================================================
# Fees
# ============================================================================


@app.command()
def issue(
    students: list[int] = typer.Option(..., "--student", "-s", help="Student id (repeatable)"),
    fee_type: str = typer.Option(..., "--type", "-t", help="Fee type, e.g. 'Tuition Fee'"),
    amount: str = typer.Option(..., "--amount", "-a", help="Amount per student"),
    description: str = typer.Option(..., "--description", "-d"),
    due: str = typer.Option(..., "--due", help="Due date (YYYY-MM-DD, in the future)"),
    chunk: bool = typer.Option(
        False, "--chunk", help="Split rosters larger than MAX_BATCH_SIZE into atomic chunks"
    ),
    idempotency_key: Optional[str] = typer.Option(None, "--key", help="Idempotency key"),
) -> None:
    """📄 Issue one fee to a roster of students (all or nothing)."""
    ensure_db()
    engine = BulkIssuanceEngine()
    fee = {"type": fee_type, "amount": amount, "description": description, "dueDate": due}

    with cli_errors():
        if chunk and len(students) > engine.settings.max_batch_size:
            total = 0
            chunks = list(iter_roster_chunks(students, engine.settings.max_batch_size))
            for index, roster in enumerate(chunks, start=1):
                key = f"{idempotency_key}:{index}" if idempotency_key else None
                result = engine.issue(roster, fee, idempotency_key=key)
                total += result.count
                console.print(f"[cyan]Chunk {index}/{len(chunks)}:[/] {result.count} balances")
            console.print(f"[green]✓ Issued {fee_type} to {total} students[/]")
            return

        result = engine.issue(students, fee, idempotency_key=idempotency_key)
    console.print(
        f"[green]✓ Issued {fee_type} ({_money(amount)}) to {result.count} students[/] "
        f"[dim]{result.timestamp.isoformat()}[/]"
    )


@app.command()
def add(
    student_id: int = typer.Argument(..., help="Student id"),
    fee_type: str = typer.Option(..., "--type", "-t"),
    amount: str = typer.Option(..., "--amount", "-a"),
    due: Optional[str] = typer.Option(None, "--due", help="Due date (YYYY-MM-DD)"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
) -> None:
    """➕ Add a single balance to one student."""
    ensure_db()
    with cli_errors():
        balance = BalanceService().add_balance(student_id, fee_type, amount, due, description)
    console.print(
        f"[green]✓ Balance {balance['id']} added:[/] {fee_type} {_money(balance['amount'])}"
    )


@app.command()
def cancel(
    balance_id: int = typer.Argument(..., help="Balance id"),
    reason: Optional[str] = typer.Option(None, "--reason", "-r"),
) -> None:
    """🚫 Cancel an unpaid balance."""
    ensure_db()
    with cli_errors():
        BalanceService().cancel_balance(balance_id, reason)
    console.print(f"[green]✓ Balance {balance_id} cancelled[/]")


# ============================================================================
# Payments
# ============================================================================


@app.command()
def pay(
    balance_ids: list[int] = typer.Argument(..., help="Balance id(s); several ids make a group payment"),
    method: str = typer.Option(..., "--method", "-m", help="Payment method (gcash, maya, ...)"),
    reference: Optional[str] = typer.Option(None, "--reference", help="Reference number"),
    idempotency_key: Optional[str] = typer.Option(None, "--key", help="Idempotency key"),
    retry: bool = typer.Option(
        False, "--retry", help="Retry on transient storage errors (use with --key)"
    ),
) -> None:
    """💳 Pay one balance, or several of one student as a group."""
    ensure_db()
    processor = PaymentProcessor()

    def _pay():
        if len(balance_ids) == 1:
            return processor.pay_balance(
                balance_ids[0], method, reference, idempotency_key=idempotency_key
            )
        return processor.pay_group(balance_ids, method, reference, idempotency_key=idempotency_key)

    with cli_errors():
        result = retry_sync(_pay, config=STORAGE_RETRY) if retry else _pay()

    table = Table(title="✅ Payment recorded", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="bold")
    table.add_row("Payment id", str(result.payment_id))
    table.add_row("Reference", result.reference_number)
    table.add_row("Amount", _money(result.amount))
    table.add_row("Balances", ", ".join(str(b) for b in result.balance_ids))
    table.add_row("Group", "yes" if result.is_group else "no")
    console.print(table)


# ============================================================================
# Reminders
# ============================================================================


@app.command()
def remind(
    threshold: Optional[int] = typer.Option(
        None, "--threshold", "-t", help="Days before due date (default from settings)"
    ),
    include_overdue: Optional[bool] = typer.Option(
        None, "--include-overdue/--no-include-overdue"
    ),
    send_all: Optional[bool] = typer.Option(None, "--send-all/--no-send-all"),
    run_all: bool = typer.Option(True, "--all/--batch", help="Run every batch, or only one"),
    cursor: Optional[int] = typer.Option(None, "--cursor", help="Resume after this balance id"),
) -> None:
    """🔔 Send upcoming and overdue payment reminders."""
    ensure_db()
    scheduler = ReminderScheduler()
    with cli_errors():
        config = scheduler.build_config(
            days_threshold=threshold, include_overdue=include_overdue, send_all=send_all
        )
        if run_all and cursor is None:
            result = scheduler.run_all(config)
        else:
            result = scheduler.run(config, cursor=cursor)

    console.print(
        f"[green]✓ {result.reminder_count} reminders sent[/] [dim]({result.skipped} skipped)[/]"
    )
    if result.next_cursor is not None:
        console.print(f"[yellow]More balances pending: rerun with --cursor {result.next_cursor}[/]")


# ============================================================================
# Reconciliation
# ============================================================================


@app.command()
def reconcile(
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the plan without deleting"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """🧹 Collapse duplicate student records sharing an email."""
    ensure_db()
    service = ReconciliationService()

    with cli_errors():
        plan = service.reconcile(dry_run=True)

    if not plan.plan:
        console.print("[green]✓ No duplicate students found[/]")
        return

    table = Table(title=f"Duplicate students ({plan.duplicates_found})")
    table.add_column("Email", style="cyan")
    table.add_column("Keep", style="green", justify="right")
    table.add_column("Remove", style="red")
    for group in plan.plan:
        table.add_row(group.email, str(group.canonical_id), ", ".join(map(str, group.duplicate_ids)))
    console.print(table)

    if dry_run:
        return
    if not yes and not typer.confirm("Remove the duplicate records?"):
        raise typer.Abort()

    with cli_errors():
        result = service.reconcile()
    console.print(
        f"[green]✓ Removed {len(result.removed_ids)} duplicates[/] "
        f"[dim](repointed {result.repointed_balances} balances, "
        f"{result.repointed_payments} payments, "
        f"{result.repointed_notifications} notifications)[/]"
    )
    if result.failed_ids:
        console.print(f"[yellow]Failed (rerun to retry): {result.failed_ids}[/]")
        raise typer.Exit(5)


# ============================================================================
# Reads
# ============================================================================


@app.command()
def balances(
    student_id: Optional[int] = typer.Option(None, "--student", "-s"),
    status: Optional[str] = typer.Option(None, "--status", help="pending|paid|cancelled|overdue"),
    limit: int = typer.Option(50, "--limit", "-l"),
) -> None:
    """📋 List balances."""
    ensure_db()
    with cli_errors():
        rows = BalanceService().list_balances(student_id, status, limit=limit)

    if not rows:
        console.print("[yellow]No balances found[/]")
        return

    table = Table(title=f"Balances ({len(rows)})")
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Student", justify="right")
    table.add_column("Type")
    table.add_column("Amount", justify="right", style="bold")
    table.add_column("Due")
    table.add_column("Status")
    table.add_column("Reference", style="dim")
    colors = {"pending": "yellow", "paid": "green", "cancelled": "dim", "overdue": "red"}
    for row in rows:
        color = colors.get(row["status"], "white")
        table.add_row(
            str(row["id"]),
            str(row["studentId"]),
            row["type"],
            _money(row["amount"]),
            row["dueDate"] or "-",
            f"[{color}]{row['status']}[/]",
            row["referenceNumber"] or "",
        )
    console.print(table)


@app.command()
def students(
    email: Optional[str] = typer.Option(None, "--email", "-e", help="Match a normalized email"),
    limit: int = typer.Option(50, "--limit", "-l"),
) -> None:
    """🎓 List the student directory."""
    ensure_db()
    with cli_errors():
        rows = BalanceService().list_students(email, limit=limit)

    if not rows:
        console.print("[yellow]No students found[/]")
        return

    table = Table(title=f"Students ({len(rows)})")
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Email")
    table.add_column("Name", style="bold")
    table.add_column("Grade")
    table.add_column("Strand")
    table.add_column("Section")
    for row in rows:
        table.add_row(
            str(row["id"]),
            row["email"],
            row["fullName"],
            row["grade"],
            row["strand"],
            row["section"],
        )
    console.print(table)

@app.command()
def notifications(
    student_id: int = typer.Argument(..., help="Student id"),
    unread: bool = typer.Option(False, "--unread", help="Only unread notifications"),
    limit: int = typer.Option(50, "--limit", "-l"),
) -> None:
    """📬 Show a student's notifications."""
    ensure_db()
    with cli_errors():
        rows = NotificationService().list_for_student(
            student_id, status="unread" if unread else None, limit=limit
        )

    if not rows:
        console.print("[yellow]No notifications[/]")
        return

    table = Table(title=f"Notifications for student {student_id}")
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Title", style="bold")
    table.add_column("Message")
    table.add_column("Status")
    for row in rows:
        table.add_row(str(row["id"]), row["title"], row["message"], row["status"])
    console.print(table)
