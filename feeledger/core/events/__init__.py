"""Domain event system for feeledger.

Services publish immutable events after their transaction commits; the
activity log listener persists each one as an audit record.

Example:
    >>> from feeledger.core.events import get_global_event_bus, PaymentCompletedEvent
    >>> bus = get_global_event_bus()
    >>> bus.subscribe(PaymentCompletedEvent, my_handler)
"""

from __future__ import annotations

__all__ = [
    # Base
    "BaseEvent",
    "GlobalEventBus",
    "get_global_event_bus",
    "reset_global_event_bus",
    # Billing events
    "FeesIssuedEvent",
    "BalanceAddedEvent",
    "BalanceCancelledEvent",
    "PaymentCompletedEvent",
    "RemindersSentEvent",
    "NotificationReadEvent",
    "StudentDuplicatesRemovedEvent",
    # Listeners
    "ActivityLogListener",
    "audit_log_listener",
    "register_default_listeners",
    "initialize_event_system",
    "ActivityLogRepository",
]

from .base import BaseEvent, GlobalEventBus, get_global_event_bus, reset_global_event_bus
from .billing_events import (
    BalanceAddedEvent,
    BalanceCancelledEvent,
    FeesIssuedEvent,
    NotificationReadEvent,
    PaymentCompletedEvent,
    RemindersSentEvent,
    StudentDuplicatesRemovedEvent,
)
from .listeners import audit_log_listener, initialize_event_system, register_default_listeners
from .persistence import ActivityLogListener
from .repository import ActivityLogRepository
