"""Balance store operations: manual single-add, cancellation and reads."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any

from ....core.events.billing_events import BalanceAddedEvent, BalanceCancelledEvent
from ....exceptions import ConflictError, NotFoundError, ValidationError
from ....storage.database.models import Balance
from ....storage.session import db_session, transaction
from ....utils.datetime import today, utc_now
from ....utils.logging import get_logger
from ...domain.enums import BalanceStatus
from ...domain.value_objects import Actor, FeeTemplate
from ...infrastructure.repository import BalanceRepository, StudentRepository
from .base import LedgerService
from .reconciliation import normalize_email

logger = get_logger(__name__)


def balance_to_dict(balance: Balance) -> dict[str, Any]:
    return {
        "id": balance.id,
        "studentId": balance.student_id,
        "type": balance.type,
        "description": balance.description,
        "amount": float(balance.amount),
        "status": balance.status.value,
        "dueDate": balance.due_date.isoformat() if balance.due_date else None,
        "createdAt": balance.created_at.isoformat() if balance.created_at else None,
        "paidAt": balance.paid_at.isoformat() if balance.paid_at else None,
        "paymentMethod": balance.payment_method,
        "referenceNumber": balance.reference_number,
        "paymentId": balance.payment_id,
    }


class BalanceService(LedgerService):
    """Single-record balance operations and read access to the balance store."""

    def add_balance(
        self,
        student_id: int,
        fee_type: str,
        amount: Decimal | int | float | str,
        due_date: date | str | None = None,
        description: str | None = None,
        *,
        actor: Actor | None = None,
    ) -> dict[str, Any]:
        """Add one pending balance for a student.

        Raises:
            ValidationError: Invalid amount, type or due date
            NotFoundError: Unknown student
        """
        actor = actor or Actor.system()
        self._require_admin(actor, "add_balances")

        template = FeeTemplate.parse(
            {"type": fee_type, "amount": amount, "description": description, "dueDate": due_date},
            today=today(),
            require_due_date=False,
            require_description=False,
        )

        with transaction(self.session_factory, operation="add_balance") as db:
            students = StudentRepository(db)
            if students.get(student_id) is None:
                raise NotFoundError(
                    "Student not found",
                    entity_type="Student",
                    entity_id=student_id,
                    missing_ids=[student_id],
                )
            balance = Balance(
                student_id=student_id,
                type=template.type,
                description=template.description or None,
                amount=template.amount,
                due_date=template.due_date,
                status=BalanceStatus.PENDING,
            )
            db.add(balance)
            db.flush()
            students.mark_pending([student_id])
            data = balance_to_dict(balance)

        logger.info("balance_added", balance_id=data["id"], student_id=student_id, actor_id=actor.id)
        self._publish(
            BalanceAddedEvent(
                balance_id=data["id"],
                student_id=student_id,
                fee_type=template.type,
                amount=template.amount,
                actor_id=actor.id,
                actor_role=actor.role.value,
            )
        )
        return data

    def cancel_balance(
        self,
        balance_id: int,
        reason: str | None = None,
        *,
        actor: Actor | None = None,
    ) -> dict[str, Any]:
        """Cancel an unpaid (pending or overdue) balance.

        Raises:
            NotFoundError: Unknown balance
            ConflictError: Balance already paid or cancelled
        """
        actor = actor or Actor.system()
        self._require_admin(actor, "cancel_balances")

        with transaction(self.session_factory, operation="cancel_balance") as db:
            balances = BalanceRepository(db)
            balance = balances.get(balance_id)
            if balance is None:
                raise NotFoundError("Balance not found", entity_type="Balance", entity_id=balance_id)

            if balances.cancel(balance_id, reason=reason, cancelled_at=utc_now()) != 1:
                db.refresh(balance)
                raise ConflictError(
                    f"Balance {balance_id} cannot be cancelled",
                    entity_type="Balance",
                    entity_id=balance_id,
                    current_state=balance.status.value,
                    attempted_action="cancel",
                )

            student_id = balance.student_id
            StudentRepository(db).refresh_payment_status(student_id)
            db.refresh(balance)
            data = balance_to_dict(balance)

        logger.info("balance_cancelled", balance_id=balance_id, reason=reason, actor_id=actor.id)
        self._publish(
            BalanceCancelledEvent(
                balance_id=balance_id,
                student_id=student_id,
                reason=reason,
                actor_id=actor.id,
                actor_role=actor.role.value,
            )
        )
        return data

    def get_balance(self, balance_id: int, *, actor: Actor | None = None) -> dict[str, Any]:
        actor = actor or Actor.system()
        with db_session(self.session_factory) as db:
            balance = BalanceRepository(db).get(balance_id)
            if balance is None:
                raise NotFoundError("Balance not found", entity_type="Balance", entity_id=balance_id)
            self._require_owner_or_admin(actor, balance.student_id, "view_balance")
            return balance_to_dict(balance)

    def list_balances(
        self,
        student_id: int | None = None,
        status: BalanceStatus | str | None = None,
        *,
        limit: int = 100,
        offset: int = 0,
        actor: Actor | None = None,
    ) -> list[dict[str, Any]]:
        actor = actor or Actor.system()
        if not actor.is_admin:
            student_id = actor.student_id if student_id is None else student_id
            if student_id is None:
                self._require_admin(actor, "list_balances")
            self._require_owner_or_admin(actor, student_id, "list_balances")

        if isinstance(status, str):
            try:
                status = BalanceStatus(status.lower())
            except ValueError as e:
                raise ValidationError("Validation failed", field="status", value=status) from e

        with db_session(self.session_factory) as db:
            rows = BalanceRepository(db).find(
                student_id=student_id, status=status, limit=limit, offset=offset
            )
            return [balance_to_dict(b) for b in rows]

    def student_summary(self, student_id: int, *, actor: Actor | None = None) -> dict[str, Any]:
        """Per-status counts and totals for one student."""
        actor = actor or Actor.system()
        self._require_owner_or_admin(actor, student_id, "view_summary")

        with db_session(self.session_factory) as db:
            student = StudentRepository(db).get(student_id)
            if student is None:
                raise NotFoundError("Student not found", entity_type="Student", entity_id=student_id)
            rows = BalanceRepository(db).summary(student_id)
            summary: dict[str, Any] = {
                "studentId": student_id,
                "paymentStatus": student.payment_status.value,
            }
            for status in BalanceStatus:
                count, total = rows.get(status, (0, Decimal("0")))
                summary[status.value] = {"count": count, "total": float(total)}
            return summary

    def get_student(self, student_id: int, *, actor: Actor | None = None) -> dict[str, Any]:
        """Student directory entry: id, email, fullName, grade, strand, section."""
        actor = actor or Actor.system()
        self._require_owner_or_admin(actor, student_id, "view_student")
        with db_session(self.session_factory) as db:
            student = StudentRepository(db).get(student_id)
            if student is None:
                raise NotFoundError("Student not found", entity_type="Student", entity_id=student_id)
            return student.to_directory_entry()

    def list_students(
        self,
        email: str | None = None,
        *,
        limit: int = 100,
        offset: int = 0,
        actor: Actor | None = None,
    ) -> list[dict[str, Any]]:
        """Directory entries in id order.

        ``email`` is normalized the way reconciliation groups students, so a
        lookup also surfaces duplicate records that differ only in case or
        surrounding whitespace.
        """
        actor = actor or Actor.system()
        self._require_admin(actor, "list_students")
        if limit < 1:
            raise ValidationError("Validation failed", field="limit", value=limit)
        if offset < 0:
            raise ValidationError("Validation failed", field="offset", value=offset)

        normalized = normalize_email(email) if email is not None else None
        if normalized == "":
            raise ValidationError("Validation failed", field="email", value=email)

        with db_session(self.session_factory) as db:
            rows = StudentRepository(db).find(email=normalized, limit=limit, offset=offset)
            return [s.to_directory_entry() for s in rows]
