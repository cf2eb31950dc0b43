"""Billing domain: enums and value objects."""

from .enums import (
    ActorRole,
    BalanceStatus,
    NotificationKind,
    NotificationStatus,
    NotificationType,
    PaymentStatus,
    StudentPaymentStatus,
    StudentStatus,
)
from .value_objects import (
    Actor,
    FeeTemplate,
    IssuanceResult,
    PaymentResult,
    ReconciliationResult,
    ReminderConfig,
    ReminderRunResult,
)

__all__ = [
    "ActorRole",
    "BalanceStatus",
    "NotificationKind",
    "NotificationStatus",
    "NotificationType",
    "PaymentStatus",
    "StudentPaymentStatus",
    "StudentStatus",
    "Actor",
    "FeeTemplate",
    "IssuanceResult",
    "PaymentResult",
    "ReconciliationResult",
    "ReminderConfig",
    "ReminderRunResult",
]
