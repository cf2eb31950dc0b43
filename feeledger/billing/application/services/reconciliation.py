"""Duplicate student reconciliation.

Out-of-band account provisioning can leave several student records sharing
one email. Reconciliation keeps the most recently created record per email
and removes the others. Before a duplicate is deleted, its balances,
payments and notifications are repointed to the surviving record and a
forwarding alias is written, all in the same transaction.

Each duplicate is handled in its own transaction: a failure on one record
leaves the others untouched, and rerunning is safe.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime

from ....core.events.billing_events import StudentDuplicatesRemovedEvent
from ....exceptions import NotFoundError, StorageError
from ....storage.database.models import Student
from ....storage.session import db_session, transaction
from ....utils.datetime import as_utc
from ....utils.logging import get_logger
from ...domain.value_objects import Actor, DuplicateGroup, ReconciliationResult
from ...infrastructure.repository import (
    BalanceRepository,
    NotificationRepository,
    PaymentRepository,
    StudentAliasRepository,
    StudentRepository,
)
from .base import LedgerService

logger = get_logger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
MAX_ALIAS_HOPS = 10


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def canonical_sort_key(student: Student) -> tuple[datetime, int]:
    """Latest creation wins; a missing timestamp counts as oldest; ties go to the higher id."""
    return (as_utc(student.created_at) or EPOCH, student.id)


def plan_duplicates(students: list[Student]) -> tuple[int, list[DuplicateGroup]]:
    """Group students by normalized email and pick the canonical record of each group.

    Returns:
        (number of email groups scanned, groups that contain duplicates)
    """
    groups: dict[str, list[Student]] = defaultdict(list)
    for student in students:
        email = normalize_email(student.email)
        if email:
            groups[email].append(student)

    plan = []
    for email, members in sorted(groups.items()):
        if len(members) < 2:
            continue
        ordered = sorted(members, key=canonical_sort_key, reverse=True)
        plan.append(
            DuplicateGroup(
                email=email,
                canonical_id=ordered[0].id,
                duplicate_ids=sorted(s.id for s in ordered[1:]),
            )
        )
    return len(groups), plan


@dataclass
class _RemovalOutcome:
    removed: bool
    balances: int = 0
    payments: int = 0
    notifications: int = 0


class ReconciliationService(LedgerService):
    """Collapses duplicate student records onto one canonical record per email."""

    def reconcile(self, *, dry_run: bool = False, actor: Actor | None = None) -> ReconciliationResult:
        """Detect duplicates and (unless ``dry_run``) remove them.

        Raises:
            PermissionError: Caller is not an administrator
        """
        actor = actor or Actor.system()
        self._require_admin(actor, "reconcile_students")

        with db_session(self.session_factory) as db:
            groups_scanned, plan = plan_duplicates(StudentRepository(db).list_all())

        duplicates_found = sum(len(g.duplicate_ids) for g in plan)
        logger.info(
            "reconciliation_planned",
            groups_scanned=groups_scanned,
            duplicate_groups=len(plan),
            duplicates_found=duplicates_found,
            dry_run=dry_run,
        )

        if dry_run or not plan:
            return ReconciliationResult(
                groups_scanned=groups_scanned,
                duplicates_found=duplicates_found,
                removed_ids=[],
                dry_run=dry_run,
                plan=plan,
            )

        removed: list[int] = []
        failed: list[int] = []
        totals = _RemovalOutcome(removed=False)
        for group in plan:
            for duplicate_id in group.duplicate_ids:
                try:
                    outcome = self.remove_duplicate(duplicate_id, group.canonical_id, group.email)
                except StorageError as e:
                    # Independent per record: keep going, the record stays for a rerun
                    logger.error(
                        "duplicate_removal_failed",
                        student_id=duplicate_id,
                        canonical_id=group.canonical_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    failed.append(duplicate_id)
                    continue
                if outcome.removed:
                    removed.append(duplicate_id)
                totals.balances += outcome.balances
                totals.payments += outcome.payments
                totals.notifications += outcome.notifications

        logger.info("duplicate_students_removed", removed_ids=removed, failed_ids=failed)

        result = ReconciliationResult(
            groups_scanned=groups_scanned,
            duplicates_found=duplicates_found,
            removed_ids=removed,
            failed_ids=failed,
            repointed_balances=totals.balances,
            repointed_payments=totals.payments,
            repointed_notifications=totals.notifications,
            plan=plan,
        )
        if removed:
            self._publish(
                StudentDuplicatesRemovedEvent(
                    removed_ids=removed,
                    groups=len(plan),
                    repointed_balances=totals.balances,
                    repointed_payments=totals.payments,
                    repointed_notifications=totals.notifications,
                    actor_id=actor.id,
                    actor_role=actor.role.value,
                )
            )
        return result

    def remove_duplicate(self, duplicate_id: int, canonical_id: int, email: str) -> _RemovalOutcome:
        """Repoint one duplicate's records, leave an alias and delete it.

        Idempotent: a duplicate that is already gone is skipped.
        """
        with transaction(self.session_factory, operation="remove_duplicate") as db:
            students = StudentRepository(db)
            if students.get(duplicate_id) is None:
                logger.info("duplicate_already_removed", student_id=duplicate_id)
                return _RemovalOutcome(removed=False)

            outcome = _RemovalOutcome(
                removed=True,
                balances=BalanceRepository(db).repoint(duplicate_id, canonical_id),
                payments=PaymentRepository(db).repoint(duplicate_id, canonical_id),
                notifications=NotificationRepository(db).repoint(duplicate_id, canonical_id),
            )

            aliases = StudentAliasRepository(db)
            if not aliases.exists(duplicate_id):
                aliases.add(duplicate_id, canonical_id, email)

            students.delete(duplicate_id)
            if outcome.balances:
                students.refresh_payment_status(canonical_id)

        logger.debug(
            "duplicate_student_removed",
            student_id=duplicate_id,
            canonical_id=canonical_id,
            balances=outcome.balances,
            payments=outcome.payments,
            notifications=outcome.notifications,
        )
        return outcome

    def resolve_student_id(self, student_id: int) -> int:
        """Follow forwarding aliases left by reconciliation to a live student id.

        Raises:
            NotFoundError: Neither a student nor an alias exists for the id
        """
        with db_session(self.session_factory) as db:
            students = StudentRepository(db)
            aliases = StudentAliasRepository(db)
            current = student_id
            for _ in range(MAX_ALIAS_HOPS):
                if students.get(current) is not None:
                    return current
                target = aliases.canonical_for(current)
                if target is None:
                    break
                current = target
        raise NotFoundError("Student not found", entity_type="Student", entity_id=student_id)
