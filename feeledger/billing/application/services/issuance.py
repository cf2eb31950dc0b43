"""Bulk fee issuance.

Creates one pending balance per roster entry from a single fee template, as
one atomic multi-record write: either every balance is persisted or none is.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from datetime import datetime
from typing import Any

from ....core.events.billing_events import FeesIssuedEvent
from ....exceptions import DatabaseIntegrityError, NotFoundError, ValidationError
from ....storage.database.models import Balance
from ....storage.session import transaction
from ....utils.datetime import today, utc_now
from ....utils.logging import get_logger, timed
from ...domain.enums import BalanceStatus
from ...domain.value_objects import Actor, FeeTemplate, IssuanceResult
from ...infrastructure.repository import BalanceRepository, StudentRepository
from .base import LedgerService

logger = get_logger(__name__)

OPERATION = "bulk_issue"


def normalize_roster(student_ids: Any) -> tuple[list[int], dict[str, str]]:
    """Validate a roster and drop repeated ids, keeping first-seen order.

    Returns:
        (roster, errors) where ``errors`` is empty when the roster is usable
    """
    if not isinstance(student_ids, Sequence) or isinstance(student_ids, (str, bytes)):
        return [], {"students": "students must be a list of student ids"}
    if not student_ids:
        return [], {"students": "at least one student is required"}

    roster: list[int] = []
    seen: set[int] = set()
    for raw in student_ids:
        if isinstance(raw, bool) or not isinstance(raw, int):
            return [], {"students": f"invalid student id: {raw!r}"}
        if raw not in seen:
            seen.add(raw)
            roster.append(raw)
    return roster, {}


def iter_roster_chunks(student_ids: Sequence[int], size: int) -> Iterator[list[int]]:
    """Split a roster into chunks a single issuance call accepts.

    Each chunk is issued atomically on its own; a failed chunk must be
    resubmitted by the caller.
    """
    if size < 1:
        raise ValueError("size must be >= 1")
    for start in range(0, len(student_ids), size):
        yield list(student_ids[start : start + size])


class BulkIssuanceEngine(LedgerService):
    """Issues one fee template to a roster of students.

    Example:
        >>> engine = BulkIssuanceEngine()
        >>> result = engine.issue(
        ...     [1, 2],
        ...     {"type": "Tuition Fee", "amount": 15000,
        ...      "description": "First semester", "dueDate": "2026-11-16"},
        ... )
        >>> result.count
        2
    """

    def issue(
        self,
        student_ids: Sequence[int],
        fee: Mapping[str, Any] | FeeTemplate,
        *,
        actor: Actor | None = None,
        idempotency_key: str | None = None,
    ) -> IssuanceResult:
        """Create one pending balance per student.

        Raises:
            PermissionError: Caller is not an administrator
            ValidationError: Roster or fee template invalid (all fields reported)
            NotFoundError: Some student ids do not exist; ``missing_ids`` lists them
            TransientStorageError: Write failed; nothing was persisted
        """
        actor = actor or Actor.system()
        self._require_admin(actor, "issue_fees")

        roster, errors = normalize_roster(student_ids)
        if isinstance(fee, FeeTemplate):
            fee = {
                "type": fee.type,
                "amount": fee.amount,
                "description": fee.description,
                "dueDate": fee.due_date,
            }
        template: FeeTemplate | None = None
        try:
            template = FeeTemplate.parse(fee, today=today())
        except ValidationError as e:
            errors.update(e.errors)

        if errors:
            logger.info("bulk_issue_rejected", fields=sorted(errors))
            raise ValidationError("Validation failed", errors=errors)

        if len(roster) > self.settings.max_batch_size:
            raise ValidationError(
                f"Roster exceeds the maximum batch size of {self.settings.max_batch_size}; "
                "split it with iter_roster_chunks()",
                field="students",
                value=len(roster),
            )

        request = {
            "students": roster,
            "type": template.type,
            "amount": str(template.amount),
            "description": template.description,
            "dueDate": template.due_date,
        }
        try:
            result, replayed = self._issue(roster, template, idempotency_key, request)
        except DatabaseIntegrityError:
            stored = self._stored_response(idempotency_key, OPERATION, request)
            if stored is None:
                raise
            return self._result_from_response(stored)

        if not replayed:
            logger.info(
                "fees_issued",
                fee_type=template.type,
                amount=str(template.amount),
                count=result.count,
                actor_id=actor.id,
            )
            self._publish(
                FeesIssuedEvent(
                    fee_type=template.type,
                    amount=template.amount,
                    due_date=template.due_date,
                    count=result.count,
                    student_ids=roster,
                    balance_ids=result.balance_ids,
                    actor_id=actor.id,
                    actor_role=actor.role.value,
                )
            )
        return result

    def _issue(
        self,
        roster: list[int],
        template: FeeTemplate,
        idempotency_key: str | None,
        request: Mapping[str, Any],
    ) -> tuple[IssuanceResult, bool]:
        with timed("bulk_issue", logger, students=len(roster)):
            with transaction(self.session_factory, operation=OPERATION) as db:
                stored = self._replay(db, idempotency_key, OPERATION, request)
                if stored is not None:
                    return self._result_from_response(stored), True

                students = StudentRepository(db)
                missing = students.missing_ids(roster)
                if missing:
                    logger.info("bulk_issue_invalid_students", invalid_ids=missing)
                    raise NotFoundError(
                        "Invalid student IDs",
                        entity_type="Student",
                        missing_ids=missing,
                    )

                now = utc_now()
                balances = [
                    Balance(
                        student_id=student_id,
                        type=template.type,
                        description=template.description,
                        amount=template.amount,
                        due_date=template.due_date,
                        status=BalanceStatus.PENDING,
                        created_at=now,
                        updated_at=now,
                    )
                    for student_id in roster
                ]
                BalanceRepository(db).add_all(balances)
                db.flush()
                students.mark_pending(roster)

                result = IssuanceResult(
                    count=len(balances),
                    timestamp=now,
                    balance_ids=[b.id for b in balances],
                )
                self._remember(db, idempotency_key, OPERATION, request, result.to_response())
        return result, False

    @staticmethod
    def _result_from_response(data: Mapping[str, Any]) -> IssuanceResult:
        return IssuanceResult(
            count=data["count"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            balance_ids=list(data.get("balanceIds", [])),
        )
