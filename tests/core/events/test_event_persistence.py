"""Tests for activity log persistence."""

from __future__ import annotations

import json
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from feeledger.core.events.base import BaseEvent
from feeledger.core.events.billing_events import (
    FeesIssuedEvent,
    NotificationReadEvent,
    PaymentCompletedEvent,
    StudentDuplicatesRemovedEvent,
)
from feeledger.core.events.persistence import ActivityLogListener
from feeledger.storage.database.models import ActivityLog


@pytest.fixture
def persistence_listener(event_bus, session_factory):
    listener = ActivityLogListener(session_factory)
    event_bus.subscribe(BaseEvent, listener.handle_event, priority=-100)
    return listener


def _logged(session_factory) -> list[ActivityLog]:
    with session_factory() as session:
        return list(session.scalars(select(ActivityLog).order_by(ActivityLog.id)))


def test_listener_enable_disable():
    listener = ActivityLogListener()
    assert listener._enabled is True
    listener.disable()
    assert listener._enabled is False
    listener.enable()
    assert listener._enabled is True


def test_persist_payment_event(event_bus, persistence_listener, session_factory):
    event = PaymentCompletedEvent(
        payment_id=11,
        student_id=4,
        amount=Decimal("16750.50"),
        reference_number="PAY-654321XYZ",
        payment_method="bank_transfer",
        balance_ids=[1, 2, 3],
        is_group=True,
        actor_id="admin",
        actor_role="admin",
    )
    event_bus.publish(event)

    [row] = _logged(session_factory)
    assert row.event_id == str(event.event_id)
    assert row.event_type == "PaymentCompletedEvent"
    assert row.action == "payment_completed"
    assert row.entity_type == "payment"
    assert row.entity_id == 11
    assert row.actor_id == "admin"
    assert row.actor_role == "admin"
    assert row.description.startswith("Group payment PAY-654321XYZ")

    data = json.loads(row.event_data)
    assert data["amount"] == 16750.5
    assert data["balance_ids"] == [1, 2, 3]
    assert data["event_id"] == str(event.event_id)


def test_notification_id_wins_over_student_id(event_bus, persistence_listener, session_factory):
    event_bus.publish(NotificationReadEvent(notification_id=5, student_id=9))

    [row] = _logged(session_factory)
    assert (row.entity_type, row.entity_id) == ("notification", 5)


def test_events_without_entity(event_bus, persistence_listener, session_factory):
    event_bus.publish(
        FeesIssuedEvent(
            fee_type="Tuition Fee",
            amount=Decimal("15000"),
            due_date=date(2026, 1, 15),
            count=2,
            student_ids=[1, 2],
            balance_ids=[10, 11],
        )
    )
    event_bus.publish(StudentDuplicatesRemovedEvent(removed_ids=[3], groups=1))

    rows = _logged(session_factory)
    assert [(r.entity_type, r.entity_id) for r in rows] == [(None, None), (None, None)]
    assert json.loads(rows[0].event_data)["due_date"] == "2026-01-15"


def test_disabled_listener_writes_nothing(event_bus, persistence_listener, session_factory):
    persistence_listener.disable()
    event_bus.publish(NotificationReadEvent(notification_id=1, student_id=1))
    assert _logged(session_factory) == []


def test_write_failure_is_swallowed(event_bus, mocker):
    broken_factory = mocker.Mock(side_effect=RuntimeError("no database"))
    listener = ActivityLogListener(broken_factory)
    after = []
    event_bus.subscribe(BaseEvent, listener.handle_event, priority=-100)
    event_bus.subscribe(BaseEvent, after.append, priority=-200)

    listener.handle_event(NotificationReadEvent(notification_id=1, student_id=1))
    event_bus.publish(NotificationReadEvent(notification_id=2, student_id=1))

    assert len(after) == 1
