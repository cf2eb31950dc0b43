"""Payment processing for single and grouped balances.

The pending -> paid transition is one conditional UPDATE inside the payment
transaction. When it touches fewer rows than requested, some balance was
paid or cancelled concurrently: the whole transaction (payment record
included) is rolled back and a ConflictError is raised. The storage engine's
write isolation decides races; there is no application-level lock.
"""

from __future__ import annotations

import secrets
import string
import time
from collections.abc import Mapping, Sequence
from decimal import Decimal
from typing import Any

from ....core.events.billing_events import PaymentCompletedEvent
from ....exceptions import (
    ConflictError,
    DatabaseIntegrityError,
    NotFoundError,
    ValidationError,
)
from ....storage.database.models import Notification, Payment
from ....storage.session import transaction
from ....utils.datetime import utc_now
from ....utils.logging import get_logger
from ...domain.enums import (
    BalanceStatus,
    NotificationKind,
    NotificationType,
    PaymentStatus,
)
from ...domain.value_objects import Actor, PaymentResult, format_amount
from ...infrastructure.repository import (
    BalanceRepository,
    NotificationRepository,
    PaymentRepository,
    StudentRepository,
)
from .base import LedgerService

logger = get_logger(__name__)

OPERATION = "payment"
REFERENCE_ATTEMPTS = 5
_BASE36 = string.digits + string.ascii_uppercase


def generate_reference_number(prefix: str = "PAY") -> str:
    """``{prefix}-{last 6 digits of epoch ms}{3 random base-36 chars}``."""
    millis = str(int(time.time() * 1000))[-6:]
    suffix = "".join(secrets.choice(_BASE36) for _ in range(3))
    return f"{prefix}-{millis}{suffix}"


class PaymentProcessor(LedgerService):
    """Converts pending balances into a completed payment, atomically."""

    def pay_balance(
        self,
        balance_id: int,
        payment_method: str,
        reference_number: str | None = None,
        *,
        actor: Actor | None = None,
        idempotency_key: str | None = None,
    ) -> PaymentResult:
        """Pay a single pending balance.

        Raises:
            ValidationError: Malformed input or unsupported payment method
            NotFoundError: Balance does not exist
            ConflictError: Balance is not pending (already paid, cancelled...)
            PermissionError: A student paying someone else's balance
            TransientStorageError: Nothing was written; safe to resubmit
        """
        if isinstance(balance_id, bool) or not isinstance(balance_id, int):
            raise ValidationError("Validation failed", field="balanceId", value=balance_id)
        return self._process(
            [balance_id],
            payment_method,
            reference_number,
            is_group=False,
            actor=actor or Actor.system(),
            idempotency_key=idempotency_key,
        )

    def pay_group(
        self,
        balance_ids: Sequence[int],
        payment_method: str,
        reference_number: str | None = None,
        *,
        actor: Actor | None = None,
        idempotency_key: str | None = None,
    ) -> PaymentResult:
        """Settle several pending balances of one student with a single payment.

        Either every balance transitions to paid referencing the new payment,
        or none does.
        """
        if isinstance(balance_ids, (str, bytes)) or not isinstance(balance_ids, Sequence):
            raise ValidationError("Validation failed", field="balanceIds", value=balance_ids)
        if not balance_ids:
            raise ValidationError("At least one balance is required", field="balanceIds")
        if any(isinstance(b, bool) or not isinstance(b, int) for b in balance_ids):
            raise ValidationError(
                "Balance ids must be integers", field="balanceIds", value=balance_ids
            )
        if len(set(balance_ids)) != len(balance_ids):
            raise ValidationError(
                "Duplicate balance ids", field="balanceIds", value=list(balance_ids)
            )
        if len(balance_ids) > self.settings.max_batch_size:
            raise ValidationError(
                f"A group payment may cover at most {self.settings.max_batch_size} balances",
                field="balanceIds",
                value=len(balance_ids),
            )
        return self._process(
            list(balance_ids),
            payment_method,
            reference_number,
            is_group=True,
            actor=actor or Actor.system(),
            idempotency_key=idempotency_key,
        )

    def _validate_method(self, payment_method: Any) -> str:
        if not isinstance(payment_method, str) or not payment_method.strip():
            raise ValidationError("Validation failed", field="paymentMethod", value=payment_method)
        method = payment_method.strip().lower()
        accepted = self.settings.payment_methods_list
        if accepted and method not in accepted:
            raise ValidationError(
                f"Unsupported payment method '{payment_method}'. "
                f"Accepted: {', '.join(accepted)}",
                field="paymentMethod",
                value=payment_method,
            )
        return method

    def _process(
        self,
        balance_ids: list[int],
        payment_method: str,
        reference_number: str | None,
        *,
        is_group: bool,
        actor: Actor,
        idempotency_key: str | None,
    ) -> PaymentResult:
        method = self._validate_method(payment_method)
        if reference_number is not None:
            if not isinstance(reference_number, str) or not reference_number.strip():
                raise ValidationError(
                    "Validation failed", field="referenceNumber", value=reference_number
                )
            reference_number = reference_number.strip()

        request = {
            "balanceIds": sorted(balance_ids),
            "paymentMethod": method,
            "referenceNumber": reference_number,
            "isGroup": is_group,
        }
        try:
            result, student_id, replayed = self._commit_payment(
                balance_ids, method, reference_number, is_group, actor, idempotency_key, request
            )
        except DatabaseIntegrityError as e:
            stored = self._stored_response(idempotency_key, OPERATION, request)
            if stored is not None:
                return PaymentResult.from_response(stored)
            # Lost the race for a generated or client-supplied reference number
            raise ConflictError(
                "Payment could not be recorded: reference number already in use",
                entity_type="Payment",
                attempted_action="create",
                original_error=e,
            ) from e

        if replayed:
            return result

        logger.info(
            "payment_completed",
            payment_id=result.payment_id,
            reference_number=result.reference_number,
            amount=str(result.amount),
            balance_ids=result.balance_ids,
            is_group=is_group,
            actor_id=actor.id,
        )
        self._publish(
            PaymentCompletedEvent(
                payment_id=result.payment_id,
                student_id=student_id,
                amount=result.amount,
                reference_number=result.reference_number,
                payment_method=method,
                balance_ids=result.balance_ids,
                is_group=is_group,
                actor_id=actor.id,
                actor_role=actor.role.value,
            )
        )
        return result

    def _commit_payment(
        self,
        balance_ids: list[int],
        method: str,
        reference_number: str | None,
        is_group: bool,
        actor: Actor,
        idempotency_key: str | None,
        request: Mapping[str, Any],
    ) -> tuple[PaymentResult, int | None, bool]:
        with transaction(self.session_factory, operation=OPERATION) as db:
            stored = self._replay(db, idempotency_key, OPERATION, request)
            if stored is not None:
                return PaymentResult.from_response(stored), None, True

            balances_repo = BalanceRepository(db)
            payments = PaymentRepository(db)

            balances = balances_repo.get_many(balance_ids)
            missing = [bid for bid in balance_ids if bid not in balances]
            if missing:
                raise NotFoundError(
                    "Balance not found",
                    entity_type="Balance",
                    entity_id=missing[0],
                    missing_ids=missing,
                )

            owners = {b.student_id for b in balances.values()}
            if len(owners) > 1:
                raise ValidationError(
                    "All balances in a group payment must belong to the same student",
                    field="balanceIds",
                    value=balance_ids,
                )
            student_id = owners.pop()
            self._require_owner_or_admin(actor, student_id, "pay_balance")

            # Fast rejection of stale requests; the conditional update below is the real guard
            for bid in balance_ids:
                balance = balances[bid]
                if balance.status is not BalanceStatus.PENDING:
                    raise ConflictError(
                        f"Balance {bid} is not payable",
                        entity_type="Balance",
                        entity_id=bid,
                        current_state=balance.status.value,
                        attempted_action="pay",
                    )

            reference = self._reserve_reference(payments, reference_number)
            amount = sum((balances[bid].amount for bid in balance_ids), Decimal("0.00"))
            paid_at = utc_now()

            payment = payments.add(
                Payment(
                    student_id=student_id,
                    amount=amount,
                    payment_method=method,
                    reference_number=reference,
                    status=PaymentStatus.COMPLETED,
                    is_group=is_group,
                    paid_at=paid_at,
                )
            )

            updated = balances_repo.mark_paid(
                balance_ids,
                payment_id=payment.id,
                paid_at=paid_at,
                payment_method=method,
                reference_number=reference,
            )
            if updated != len(balance_ids):
                logger.warning(
                    "payment_conflict",
                    balance_ids=balance_ids,
                    requested=len(balance_ids),
                    updated=updated,
                )
                raise ConflictError(
                    "Balance is not payable: it was settled or cancelled concurrently",
                    entity_type="Balance",
                    entity_id=balance_ids[0] if len(balance_ids) == 1 else None,
                    attempted_action="pay",
                )

            StudentRepository(db).refresh_payment_status(student_id)

            if self.settings.notify_on_payment:
                NotificationRepository(db).add(
                    self._confirmation(student_id, payment.id, balance_ids, balances, amount, reference)
                )

            result = PaymentResult(
                payment_id=payment.id,
                reference_number=reference,
                amount=amount,
                status=PaymentStatus.COMPLETED.value,
                balance_ids=sorted(balance_ids),
                is_group=is_group,
            )
            self._remember(db, idempotency_key, OPERATION, request, result.to_response())
        return result, student_id, False

    def _reserve_reference(self, payments: PaymentRepository, requested: str | None) -> str:
        if requested is not None:
            if payments.reference_exists(requested):
                raise ConflictError(
                    f"Reference number {requested} is already in use",
                    entity_type="Payment",
                    entity_id=requested,
                    attempted_action="create",
                )
            return requested

        for _ in range(REFERENCE_ATTEMPTS):
            candidate = generate_reference_number(self.settings.reference_prefix)
            if not payments.reference_exists(candidate):
                return candidate
            logger.debug("reference_number_collision", reference_number=candidate)
        raise ConflictError(
            "Could not generate a unique reference number",
            entity_type="Payment",
            attempted_action="create",
        )

    def _confirmation(
        self,
        student_id: int,
        payment_id: int,
        balance_ids: list[int],
        balances: Mapping[int, Any],
        amount: Decimal,
        reference: str,
    ) -> Notification:
        types = ", ".join(dict.fromkeys(balances[bid].type for bid in balance_ids))
        return Notification(
            student_id=student_id,
            balance_id=balance_ids[0] if len(balance_ids) == 1 else None,
            payment_id=payment_id,
            kind=NotificationKind.CONFIRMATION,
            type=NotificationType.PAYMENT_CONFIRMATION,
            title="Payment Received",
            message=(
                f"Your payment of {self.settings.currency_symbol}{format_amount(amount)} "
                f"for {types} was received. Reference: {reference}."
            ),
            amount=amount,
        )
