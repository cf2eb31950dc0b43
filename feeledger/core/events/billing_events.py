"""Billing ledger events.

Published by the application services after their transaction commits.
Every event lands in the activity log.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from .base import BaseEvent


@dataclass(frozen=True)
class FeesIssuedEvent(BaseEvent):
    """A fee template was issued to a roster of students."""

    action = "fees_issued"

    fee_type: str
    amount: Decimal
    due_date: date | None
    count: int
    student_ids: list[int] = field(default_factory=list)
    balance_ids: list[int] = field(default_factory=list)

    def describe(self) -> str:
        return f"Issued {self.fee_type} ({self.amount}) to {self.count} students"


@dataclass(frozen=True)
class BalanceAddedEvent(BaseEvent):
    """A single balance was added manually."""

    action = "balance_added"

    balance_id: int
    student_id: int
    fee_type: str
    amount: Decimal

    def describe(self) -> str:
        return f"Added {self.fee_type} balance of {self.amount} for student {self.student_id}"


@dataclass(frozen=True)
class BalanceCancelledEvent(BaseEvent):
    action = "balance_cancelled"

    balance_id: int
    student_id: int
    reason: str | None = None

    def describe(self) -> str:
        return f"Cancelled balance {self.balance_id}"


@dataclass(frozen=True)
class PaymentCompletedEvent(BaseEvent):
    """One or more balances were settled by a payment."""

    action = "payment_completed"

    payment_id: int
    student_id: int
    amount: Decimal
    reference_number: str
    payment_method: str
    balance_ids: list[int] = field(default_factory=list)
    is_group: bool = False

    def describe(self) -> str:
        kind = "Group payment" if self.is_group else "Payment"
        return f"{kind} {self.reference_number} of {self.amount} via {self.payment_method}"


@dataclass(frozen=True)
class RemindersSentEvent(BaseEvent):
    action = "reminders_sent"

    reminder_count: int
    skipped: int
    days_threshold: int
    include_overdue: bool
    send_all: bool
    next_cursor: int | None = None

    def describe(self) -> str:
        return f"Sent {self.reminder_count} payment reminders"


@dataclass(frozen=True)
class NotificationReadEvent(BaseEvent):
    action = "notification_read"

    notification_id: int
    student_id: int


@dataclass(frozen=True)
class StudentDuplicatesRemovedEvent(BaseEvent):
    """Duplicate student records were collapsed onto their canonical record."""

    action = "student_duplicates_removed"

    removed_ids: list[int]
    groups: int
    repointed_balances: int = 0
    repointed_payments: int = 0
    repointed_notifications: int = 0

    def describe(self) -> str:
        return f"Removed {len(self.removed_ids)} duplicate student records"
