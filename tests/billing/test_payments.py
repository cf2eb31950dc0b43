"""Tests for PaymentProcessor: single and grouped payments."""

import re
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from feeledger.billing.application.services import generate_reference_number
from feeledger.billing.domain.enums import (
    BalanceStatus,
    NotificationType,
    StudentPaymentStatus,
)
from feeledger.billing.domain.value_objects import Actor
from feeledger.core.events import PaymentCompletedEvent
from feeledger.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionError,
    TransientStorageError,
    ValidationError,
)
from feeledger.storage.database.models import Balance, Notification, Payment, Student


@pytest.fixture
def three_balances(make_student, issuance, fee_template) -> tuple[int, list[int]]:
    """One student owing three different fees."""
    student_id = make_student("group@school.edu", "Group Payer")
    ids = []
    for fee_type, amount in (("Tuition Fee", 15000), ("Lab Fee", 1500), ("ID Fee", 250.50)):
        ids += issuance.issue([student_id], fee_template(type=fee_type, amount=amount)).balance_ids
    return student_id, ids


def _payment_count(session_factory) -> int:
    with session_factory() as session:
        return session.scalar(select(func.count(Payment.id)))


class TestReferenceNumber:
    def test_format(self):
        assert re.fullmatch(r"PAY-\d{6}[0-9A-Z]{3}", generate_reference_number())

    def test_custom_prefix(self):
        assert generate_reference_number("OR").startswith("OR-")


class TestPayBalance:
    def test_pays_pending_balance(self, payments, students, issue_balances, session_factory):
        balance_id = issue_balances(students[:1])[0]

        result = payments.pay_balance(balance_id, "GCash")

        assert result.amount == Decimal("15000.00")
        assert result.status == "completed"
        assert result.balance_ids == [balance_id]
        assert result.is_group is False
        with session_factory() as session:
            balance = session.get(Balance, balance_id)
            assert balance.status is BalanceStatus.PAID
            assert balance.payment_method == "gcash"
            assert balance.reference_number == result.reference_number
            assert balance.payment_id == result.payment_id
            assert balance.paid_at is not None
            payment = session.get(Payment, result.payment_id)
            assert payment.amount == Decimal("15000.00")
            assert payment.balance_ids == [balance_id]
            student = session.get(Student, students[0])
            assert student.payment_status is StudentPaymentStatus.PAID

    def test_client_reference_number(self, payments, students, issue_balances):
        balance_id = issue_balances(students[:1])[0]
        result = payments.pay_balance(balance_id, "maya", "MAYA-0001")
        assert result.reference_number == "MAYA-0001"

    def test_duplicate_reference_rejected(self, payments, students, issue_balances):
        first, second = issue_balances(students[:2])
        payments.pay_balance(first, "gcash", "REF-1")
        with pytest.raises(ConflictError, match="already in use"):
            payments.pay_balance(second, "gcash", "REF-1")

    def test_paying_twice_is_conflict(self, payments, students, issue_balances, session_factory):
        balance_id = issue_balances(students[:1])[0]
        payments.pay_balance(balance_id, "gcash")

        with pytest.raises(ConflictError) as exc_info:
            payments.pay_balance(balance_id, "gcash")

        assert exc_info.value.context["current_state"] == "paid"
        assert _payment_count(session_factory) == 1

    def test_unknown_balance(self, payments):
        with pytest.raises(NotFoundError) as exc_info:
            payments.pay_balance(404, "gcash")
        assert exc_info.value.missing_ids == [404]

    @pytest.mark.parametrize("method", ["", "   ", None, "bitcoin"])
    def test_invalid_payment_method(self, payments, students, issue_balances, method):
        balance_id = issue_balances(students[:1])[0]
        with pytest.raises(ValidationError) as exc_info:
            payments.pay_balance(balance_id, method)
        assert "paymentMethod" in exc_info.value.errors

    def test_student_pays_own_balance(self, payments, students, issue_balances):
        balance_id = issue_balances(students[:1])[0]
        result = payments.pay_balance(balance_id, "gcash", actor=Actor.student(students[0]))
        assert result.status == "completed"

    def test_student_cannot_pay_others_balance(
        self, payments, students, issue_balances, session_factory
    ):
        balance_id = issue_balances(students[:1])[0]
        with pytest.raises(PermissionError):
            payments.pay_balance(balance_id, "gcash", actor=Actor.student(students[1]))
        assert _payment_count(session_factory) == 0

    def test_confirmation_notification(self, payments, students, issue_balances, session_factory):
        balance_id = issue_balances(students[:1])[0]
        result = payments.pay_balance(balance_id, "gcash")

        with session_factory() as session:
            notification = session.scalar(select(Notification))
            assert notification.type is NotificationType.PAYMENT_CONFIRMATION
            assert notification.title == "Payment Received"
            assert notification.balance_id == balance_id
            assert notification.payment_id == result.payment_id
            assert "15,000" in notification.message

    def test_confirmation_disabled(
        self, payments, students, issue_balances, session_factory, test_settings
    ):
        test_settings.notify_on_payment = False
        payments.pay_balance(issue_balances(students[:1])[0], "gcash")
        with session_factory() as session:
            assert session.scalar(select(func.count(Notification.id))) == 0

    def test_event_published(self, payments, students, issue_balances, published):
        balance_id = issue_balances(students[:1])[0]
        result = payments.pay_balance(balance_id, "gcash")

        completed = [e for e in published if isinstance(e, PaymentCompletedEvent)]
        assert len(completed) == 1
        assert completed[0].payment_id == result.payment_id
        assert completed[0].student_id == students[0]
        assert completed[0].balance_ids == [balance_id]


class TestGroupPayment:
    def test_settles_all_balances_with_one_payment(self, payments, three_balances, session_factory):
        student_id, balance_ids = three_balances

        result = payments.pay_group(balance_ids, "bank_transfer")

        assert result.is_group is True
        assert result.amount == Decimal("16750.50")
        assert result.balance_ids == sorted(balance_ids)
        with session_factory() as session:
            assert session.scalar(select(func.count(Payment.id))) == 1
            rows = session.scalars(select(Balance).where(Balance.id.in_(balance_ids))).all()
            assert {b.status for b in rows} == {BalanceStatus.PAID}
            assert {b.payment_id for b in rows} == {result.payment_id}
            payment = session.get(Payment, result.payment_id)
            assert payment.amount == sum(b.amount for b in rows)
            assert payment.is_group is True
            confirmation = session.scalar(select(Notification))
            assert confirmation.balance_id is None

    def test_interrupted_write_changes_nothing(
        self, payments, three_balances, session_factory, mocker
    ):
        _, balance_ids = three_balances
        real_factory = payments.session_factory

        def failing_factory():
            session = real_factory()
            mocker.patch.object(
                session,
                "commit",
                side_effect=OperationalError("COMMIT", {}, Exception("database is locked")),
            )
            return session

        payments.session_factory = failing_factory
        with pytest.raises(TransientStorageError):
            payments.pay_group(balance_ids, "gcash")

        with session_factory() as session:
            rows = session.scalars(select(Balance).where(Balance.id.in_(balance_ids))).all()
            assert {b.status for b in rows} == {BalanceStatus.PENDING}
            assert {b.payment_id for b in rows} == {None}
            assert session.scalar(select(func.count(Payment.id))) == 0

    def test_one_paid_balance_aborts_group(self, payments, three_balances, session_factory):
        _, balance_ids = three_balances
        payments.pay_balance(balance_ids[1], "gcash")

        with pytest.raises(ConflictError):
            payments.pay_group(balance_ids, "gcash")

        with session_factory() as session:
            assert session.get(Balance, balance_ids[0]).status is BalanceStatus.PENDING
            assert session.get(Balance, balance_ids[2]).status is BalanceStatus.PENDING
            assert session.scalar(select(func.count(Payment.id))) == 1

    def test_balances_of_different_students_rejected(self, payments, students, issue_balances):
        balance_ids = issue_balances(students[:2])
        with pytest.raises(ValidationError) as exc_info:
            payments.pay_group(balance_ids, "gcash")
        assert "balanceIds" in exc_info.value.errors

    @pytest.mark.parametrize("balance_ids", [[], [1, 1], [1, "2"], "1,2"])
    def test_malformed_ids(self, payments, balance_ids):
        with pytest.raises(ValidationError):
            payments.pay_group(balance_ids, "gcash")

    def test_missing_balance_in_group(self, payments, three_balances):
        _, balance_ids = three_balances
        with pytest.raises(NotFoundError) as exc_info:
            payments.pay_group([*balance_ids, 999], "gcash")
        assert exc_info.value.missing_ids == [999]

    def test_idempotent_group_payment(self, payments, three_balances, session_factory, published):
        _, balance_ids = three_balances
        first = payments.pay_group(balance_ids, "gcash", idempotency_key="checkout-7")
        second = payments.pay_group(balance_ids, "gcash", idempotency_key="checkout-7")

        assert second == first
        assert _payment_count(session_factory) == 1
        assert len([e for e in published if isinstance(e, PaymentCompletedEvent)]) == 1

    def test_key_reused_for_another_balance(self, payments, three_balances, session_factory):
        _, (first_id, second_id, _) = three_balances
        payments.pay_balance(first_id, "gcash", idempotency_key="k1")

        with pytest.raises(ConflictError) as exc_info:
            payments.pay_balance(second_id, "gcash", idempotency_key="k1")

        assert exc_info.value.context["current_state"] == "used"
        with session_factory() as session:
            assert session.get(Balance, second_id).status is BalanceStatus.PENDING
        assert _payment_count(session_factory) == 1
