"""Enumerations for the billing domain."""

from enum import Enum


class BalanceStatus(Enum):
    """Lifecycle of a fee obligation."""

    PENDING = "pending"  # Issued, awaiting payment
    PAID = "paid"  # Settled by a Payment
    CANCELLED = "cancelled"  # Withdrawn by an admin
    OVERDUE = "overdue"  # Legacy status, treated as unpaid by cancellation


class PaymentStatus(Enum):
    """Payment status. Payments are only recorded once completed."""

    COMPLETED = "completed"


class StudentStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class StudentPaymentStatus(Enum):
    """Denormalized flag: does the student still owe anything?"""

    PENDING = "pending"
    PAID = "paid"


class NotificationKind(Enum):
    """Why a notification was emitted."""

    UPCOMING = "upcoming"
    OVERDUE = "overdue"
    CONFIRMATION = "confirmation"


class NotificationType(Enum):
    """Notification type as consumed by the notification surface."""

    PAYMENT_REMINDER = "payment_reminder"
    OVERDUE_REMINDER = "overdue_reminder"
    PAYMENT_CONFIRMATION = "payment_confirmation"


class NotificationStatus(Enum):
    UNREAD = "unread"
    READ = "read"


class ActorRole(Enum):
    """Role of the caller, as asserted by the upstream auth layer."""

    ADMIN = "admin"
    STUDENT = "student"
    SYSTEM = "system"
