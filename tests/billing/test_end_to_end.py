"""End-to-end billing scenario: issue, pay, remind."""

from decimal import Decimal

from feeledger.billing.domain.value_objects import Actor
from feeledger.core.events import ActivityLogRepository, register_default_listeners
from feeledger.storage.database.models import Balance, Payment


def test_tuition_term(
    issuance,
    payments,
    reminders,
    notifications,
    students,
    fee_template,
    session_factory,
    event_bus,
    test_settings,
):
    register_default_listeners(event_bus, test_settings, session_factory)
    student_a, student_b = students[:2]
    admin = Actor.admin("registrar")

    issued = issuance.issue(
        [student_a, student_b],
        fee_template(type="Tuition Fee", amount=15000, days=30),
        actor=admin,
    )
    response = issued.to_response()
    assert response["success"] is True
    assert response["count"] == 2

    balance_a, balance_b = issued.balance_ids
    payment = payments.pay_balance(balance_a, "gcash", actor=Actor.student(student_a))
    assert payment.amount == Decimal("15000.00")

    with session_factory() as session:
        assert session.get(Balance, balance_a).status.value == "paid"
        assert session.get(Balance, balance_b).status.value == "pending"
        assert session.get(Payment, payment.payment_id).amount == Decimal("15000.00")

    run = reminders.run(reminders.build_config(days_threshold=7), actor=admin)
    assert run.reminder_count == 0
    assert notifications.list_for_student(student_b) == []

    with session_factory() as session:
        logged = ActivityLogRepository(session).count_by_type()
    assert logged == {
        "FeesIssuedEvent": 1,
        "PaymentCompletedEvent": 1,
        "RemindersSentEvent": 1,
    }
