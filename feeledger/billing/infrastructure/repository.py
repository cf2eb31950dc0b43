"""Repositories for the billing ledger.

Thin, session-bound data access objects. They never commit: the application
services own the transaction boundary and call them inside
``storage.session.transaction()``.

State transitions that can race (paying, cancelling) are expressed as
conditional UPDATE statements returning the affected row count, so the
storage engine decides which of two concurrent writers wins.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from ...storage.database.models import (
    Balance,
    IdempotencyKey,
    Notification,
    Payment,
    Student,
    StudentAlias,
)
from ...utils.datetime import utc_now
from ..domain.enums import (
    BalanceStatus,
    NotificationStatus,
    StudentPaymentStatus,
)

UNPAID_STATUSES = (BalanceStatus.PENDING, BalanceStatus.OVERDUE)


class StudentRepository:
    """Read access to the student directory plus the writes reconciliation needs."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, student_id: int) -> Student | None:
        return self.session.get(Student, student_id)

    def get_many(self, student_ids: Iterable[int]) -> dict[int, Student]:
        """Fetch students in one query, keyed by id."""
        ids = list(set(student_ids))
        if not ids:
            return {}
        rows = self.session.scalars(select(Student).where(Student.id.in_(ids)))
        return {s.id: s for s in rows}

    def missing_ids(self, student_ids: Sequence[int]) -> list[int]:
        """Ids from ``student_ids`` (in input order) with no student record."""
        found = self.get_many(student_ids)
        return [sid for sid in student_ids if sid not in found]

    def list_all(self) -> list[Student]:
        return list(self.session.scalars(select(Student).order_by(Student.id)))

    def find(self, *, email: str | None = None, limit: int = 100, offset: int = 0) -> list[Student]:
        """Students in id order. ``email`` is compared against the trimmed, lower-cased column."""
        query = select(Student)
        if email is not None:
            query = query.where(func.lower(func.trim(Student.email)) == email)
        return list(self.session.scalars(query.order_by(Student.id).limit(limit).offset(offset)))

    def delete(self, student_id: int) -> bool:
        """Delete a student. Returns False if it was already gone."""
        result = self.session.execute(delete(Student).where(Student.id == student_id))
        return result.rowcount > 0

    def refresh_payment_status(self, student_id: int) -> StudentPaymentStatus:
        """Recompute the denormalized payment status from outstanding balances."""
        outstanding = self.session.scalar(
            select(func.count(Balance.id)).where(
                Balance.student_id == student_id,
                Balance.status.in_(UNPAID_STATUSES),
            )
        )
        status = StudentPaymentStatus.PENDING if outstanding else StudentPaymentStatus.PAID
        self.session.execute(
            update(Student)
            .where(Student.id == student_id)
            .values(payment_status=status, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return status

    def mark_pending(self, student_ids: Iterable[int]) -> int:
        ids = list(student_ids)
        if not ids:
            return 0
        result = self.session.execute(
            update(Student)
            .where(Student.id.in_(ids))
            .values(payment_status=StudentPaymentStatus.PENDING, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class BalanceRepository:
    """Balance store. Keyed by id with a ``student_id`` index."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, balance_id: int) -> Balance | None:
        return self.session.get(Balance, balance_id)

    def get_many(self, balance_ids: Iterable[int]) -> dict[int, Balance]:
        ids = list(set(balance_ids))
        if not ids:
            return {}
        rows = self.session.scalars(select(Balance).where(Balance.id.in_(ids)))
        return {b.id: b for b in rows}

    def add_all(self, balances: Sequence[Balance]) -> None:
        self.session.add_all(balances)

    def find(
        self,
        *,
        student_id: int | None = None,
        status: BalanceStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Balance]:
        query = select(Balance)
        if student_id is not None:
            query = query.where(Balance.student_id == student_id)
        if status is not None:
            query = query.where(Balance.status == status)
        query = query.order_by(Balance.id).limit(limit).offset(offset)
        return list(self.session.scalars(query))

    def pending_after(self, cursor: int | None, limit: int) -> list[Balance]:
        """Pending balances with id greater than ``cursor``, in id order."""
        query = select(Balance).where(Balance.status == BalanceStatus.PENDING)
        if cursor is not None:
            query = query.where(Balance.id > cursor)
        return list(self.session.scalars(query.order_by(Balance.id).limit(limit)))

    def mark_paid(
        self,
        balance_ids: Sequence[int],
        *,
        payment_id: int,
        paid_at: datetime,
        payment_method: str,
        reference_number: str,
    ) -> int:
        """Conditionally move pending balances to paid.

        Returns the number of rows actually transitioned; fewer than
        ``len(balance_ids)`` means some balance was not pending.
        """
        result = self.session.execute(
            update(Balance)
            .where(Balance.id.in_(balance_ids), Balance.status == BalanceStatus.PENDING)
            .values(
                status=BalanceStatus.PAID,
                paid_at=paid_at,
                payment_method=payment_method,
                reference_number=reference_number,
                payment_id=payment_id,
                updated_at=paid_at,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def cancel(self, balance_id: int, *, reason: str | None, cancelled_at: datetime) -> int:
        """Conditionally cancel an unpaid balance. Returns affected row count."""
        result = self.session.execute(
            update(Balance)
            .where(Balance.id == balance_id, Balance.status.in_(UNPAID_STATUSES))
            .values(
                status=BalanceStatus.CANCELLED,
                cancelled_at=cancelled_at,
                cancel_reason=reason,
                updated_at=cancelled_at,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def summary(self, student_id: int) -> dict[BalanceStatus, tuple[int, Decimal]]:
        """Count and total amount per status for one student."""
        rows = self.session.execute(
            select(Balance.status, func.count(Balance.id), func.coalesce(func.sum(Balance.amount), 0))
            .where(Balance.student_id == student_id)
            .group_by(Balance.status)
        )
        return {status: (count, Decimal(str(total))) for status, count, total in rows}

    def repoint(self, from_student_id: int, to_student_id: int) -> int:
        result = self.session.execute(
            update(Balance)
            .where(Balance.student_id == from_student_id)
            .values(student_id=to_student_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class PaymentRepository:
    def __init__(self, session: Session):
        self.session = session

    def get(self, payment_id: int) -> Payment | None:
        return self.session.get(Payment, payment_id)

    def add(self, payment: Payment) -> Payment:
        self.session.add(payment)
        self.session.flush()
        return payment

    def reference_exists(self, reference_number: str) -> bool:
        return (
            self.session.scalar(
                select(Payment.id).where(Payment.reference_number == reference_number)
            )
            is not None
        )

    def list_for_student(self, student_id: int, limit: int = 100) -> list[Payment]:
        return list(
            self.session.scalars(
                select(Payment)
                .where(Payment.student_id == student_id)
                .order_by(Payment.id.desc())
                .limit(limit)
            )
        )

    def repoint(self, from_student_id: int, to_student_id: int) -> int:
        result = self.session.execute(
            update(Payment)
            .where(Payment.student_id == from_student_id)
            .values(student_id=to_student_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class NotificationRepository:
    def __init__(self, session: Session):
        self.session = session

    def get(self, notification_id: int) -> Notification | None:
        return self.session.get(Notification, notification_id)

    def add(self, notification: Notification) -> None:
        self.session.add(notification)

    def existing_buckets(self, balance_ids: Iterable[int]) -> set[tuple[int, str]]:
        """``(balance_id, threshold_bucket)`` pairs already notified."""
        ids = list(balance_ids)
        if not ids:
            return set()
        rows = self.session.execute(
            select(Notification.balance_id, Notification.threshold_bucket).where(
                Notification.balance_id.in_(ids),
                Notification.threshold_bucket.is_not(None),
            )
        )
        return {(balance_id, bucket) for balance_id, bucket in rows}

    def list_for_student(
        self,
        student_id: int,
        *,
        status: NotificationStatus | None = None,
        limit: int = 100,
    ) -> list[Notification]:
        query = select(Notification).where(Notification.student_id == student_id)
        if status is not None:
            query = query.where(Notification.status == status)
        query = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
        return list(self.session.scalars(query))

    def repoint(self, from_student_id: int, to_student_id: int) -> int:
        result = self.session.execute(
            update(Notification)
            .where(Notification.student_id == from_student_id)
            .values(student_id=to_student_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class IdempotencyRepository:
    """Stored responses of already-processed client request tokens."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, key: str, operation: str) -> IdempotencyKey | None:
        return self.session.scalar(
            select(IdempotencyKey).where(
                IdempotencyKey.key == key, IdempotencyKey.operation == operation
            )
        )

    def save(
        self, key: str, operation: str, request_hash: str, response: dict[str, Any]
    ) -> None:
        self.session.add(
            IdempotencyKey(
                key=key,
                operation=operation,
                request_hash=request_hash,
                response_json=json.dumps(response),
            )
        )


class StudentAliasRepository:
    def __init__(self, session: Session):
        self.session = session

    def add(self, removed_student_id: int, canonical_student_id: int, email: str) -> None:
        self.session.add(
            StudentAlias(
                removed_student_id=removed_student_id,
                canonical_student_id=canonical_student_id,
                email=email,
            )
        )

    def exists(self, removed_student_id: int) -> bool:
        return (
            self.session.scalar(
                select(StudentAlias.id).where(
                    StudentAlias.removed_student_id == removed_student_id
                )
            )
            is not None
        )

    def canonical_for(self, removed_student_id: int) -> int | None:
        return self.session.scalar(
            select(StudentAlias.canonical_student_id).where(
                StudentAlias.removed_student_id == removed_student_id
            )
        )
