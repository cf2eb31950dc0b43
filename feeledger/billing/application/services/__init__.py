"""Billing application services."""

from .balances import BalanceService
from .issuance import BulkIssuanceEngine, iter_roster_chunks
from .notifications import NotificationService
from .payments import PaymentProcessor, generate_reference_number
from .reconciliation import ReconciliationService
from .reminders import ReminderScheduler

__all__ = [
    "BalanceService",
    "BulkIssuanceEngine",
    "NotificationService",
    "PaymentProcessor",
    "ReconciliationService",
    "ReminderScheduler",
    "generate_reference_number",
    "iter_roster_chunks",
]
