"""Database models and engine configuration."""

from .base import Base, get_db, get_session, init_db
from .models import (
    ActivityLog,
    Balance,
    IdempotencyKey,
    Notification,
    Payment,
    Student,
    StudentAlias,
)

__all__ = [
    "Base",
    "init_db",
    "get_session",
    "get_db",
    "Student",
    "Balance",
    "Payment",
    "Notification",
    "ActivityLog",
    "IdempotencyKey",
    "StudentAlias",
]
