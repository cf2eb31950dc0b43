"""Due-date reminder scheduling.

Scans pending balances against a threshold configuration and writes
reminder notifications. Every reminder carries a threshold bucket
(``{kind}:{threshold|all}:{dueDate}``); a balance already notified in a
bucket is skipped, and a unique constraint on (balance, bucket) backs this
up, so repeated runs never duplicate reminders.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, replace
from typing import Any

from ....core.events.billing_events import RemindersSentEvent
from ....exceptions import DatabaseIntegrityError, ValidationError
from ....storage.database.models import Notification
from ....storage.session import transaction
from ....utils.datetime import today
from ....utils.logging import get_logger
from ...domain.enums import NotificationKind, NotificationType
from ...domain.value_objects import (
    Actor,
    ReminderConfig,
    ReminderRunResult,
    classify_balance,
    reminder_bucket,
    render_reminder,
)
from ...infrastructure.repository import BalanceRepository, NotificationRepository
from .base import LedgerService

logger = get_logger(__name__)

OPERATION = "reminders"

TITLES = {
    NotificationKind.UPCOMING: "Payment Reminder",
    NotificationKind.OVERDUE: "Payment Overdue",
}
TYPES = {
    NotificationKind.UPCOMING: NotificationType.PAYMENT_REMINDER,
    NotificationKind.OVERDUE: NotificationType.OVERDUE_REMINDER,
}


class ReminderScheduler(LedgerService):
    """Emits upcoming and overdue payment reminders.

    A run is bounded by ``settings.max_batch_size`` notifications and is
    resumable: pass the returned ``next_cursor`` back in to continue, or use
    :meth:`run_all`.
    """

    def build_config(self, **overrides: Any) -> ReminderConfig:
        """Reminder config from settings defaults with non-None overrides applied."""
        return ReminderConfig.from_settings(self.settings, **overrides)

    def run(
        self,
        config: ReminderConfig | None = None,
        *,
        cursor: int | None = None,
        limit: int | None = None,
        actor: Actor | None = None,
        idempotency_key: str | None = None,
    ) -> ReminderRunResult:
        """Run one reminder batch.

        Raises:
            ValidationError: Invalid threshold, templates or limit
            PermissionError: Caller is not an administrator
            TransientStorageError: The batch was rolled back; safe to rerun
        """
        actor = actor or Actor.system()
        self._require_admin(actor, "run_reminders")

        config = config or self.build_config()
        config.validate()

        limit = limit or self.settings.max_batch_size
        if limit < 1 or limit > self.settings.max_batch_size:
            raise ValidationError(
                f"limit must be between 1 and {self.settings.max_batch_size}",
                field="limit",
                value=limit,
            )

        request = {**asdict(config), "cursor": cursor, "limit": limit}
        try:
            result, replayed = self._run_batch(config, cursor, limit, idempotency_key, request)
        except DatabaseIntegrityError:
            stored = self._stored_response(idempotency_key, OPERATION, request)
            if stored is None:
                raise
            return self._result_from_response(stored)

        if replayed:
            return result

        logger.info(
            "reminders_sent",
            reminder_count=result.reminder_count,
            skipped=result.skipped,
            next_cursor=result.next_cursor,
            days_threshold=config.days_threshold,
            send_all=config.send_all,
        )
        self._publish(
            RemindersSentEvent(
                reminder_count=result.reminder_count,
                skipped=result.skipped,
                days_threshold=config.days_threshold,
                include_overdue=config.include_overdue,
                send_all=config.send_all,
                next_cursor=result.next_cursor,
                actor_id=actor.id,
                actor_role=actor.role.value,
            )
        )
        return result

    def run_all(
        self,
        config: ReminderConfig | None = None,
        *,
        actor: Actor | None = None,
    ) -> ReminderRunResult:
        """Run batches until every pending balance has been scanned.

        Each batch commits on its own; a failure leaves earlier batches in
        place and rerunning is safe thanks to threshold buckets.
        """
        config = config or self.build_config()
        total = ReminderRunResult(reminder_count=0, skipped=0)
        cursor: int | None = None
        while True:
            batch = self.run(config, cursor=cursor, actor=actor)
            total = replace(
                total,
                reminder_count=total.reminder_count + batch.reminder_count,
                skipped=total.skipped + batch.skipped,
                notification_ids=total.notification_ids + batch.notification_ids,
            )
            if batch.next_cursor is None:
                return total
            cursor = batch.next_cursor

    def _run_batch(
        self,
        config: ReminderConfig,
        cursor: int | None,
        limit: int,
        idempotency_key: str | None,
        request: Mapping[str, Any],
    ) -> tuple[ReminderRunResult, bool]:
        current_date = today()

        with transaction(self.session_factory, operation=OPERATION) as db:
            stored = self._replay(db, idempotency_key, OPERATION, request)
            if stored is not None:
                return self._result_from_response(stored), True

            balances = BalanceRepository(db)
            notifications = NotificationRepository(db)

            created: list[Notification] = []
            skipped = 0
            next_cursor: int | None = None
            scan_from = cursor

            while True:
                page = balances.pending_after(scan_from, limit)
                if not page:
                    break
                already = notifications.existing_buckets(b.id for b in page)

                for balance in page:
                    scan_from = balance.id
                    decision = classify_balance(balance.due_date, current_date, config)
                    if decision is None:
                        skipped += 1
                        continue
                    kind, days = decision
                    bucket = reminder_bucket(kind, config, balance.due_date)
                    if (balance.id, bucket) in already:
                        skipped += 1
                        continue

                    template = (
                        config.overdue_template
                        if kind is NotificationKind.OVERDUE
                        else config.upcoming_template
                    )
                    notification = Notification(
                        student_id=balance.student_id,
                        balance_id=balance.id,
                        kind=kind,
                        type=TYPES[kind],
                        title=TITLES[kind],
                        message=render_reminder(
                            template, amount=balance.amount, fee_type=balance.type, days=days
                        ),
                        amount=balance.amount,
                        due_date=balance.due_date,
                        threshold_bucket=bucket,
                    )
                    notifications.add(notification)
                    created.append(notification)
                    if len(created) >= limit:
                        next_cursor = balance.id
                        break

                if next_cursor is not None or len(page) < limit:
                    break

            db.flush()
            result = ReminderRunResult(
                reminder_count=len(created),
                skipped=skipped,
                next_cursor=next_cursor,
                notification_ids=[n.id for n in created],
            )
            self._remember(db, idempotency_key, OPERATION, request, result.to_response())
        return result, False

    @staticmethod
    def _result_from_response(data: dict[str, Any]) -> ReminderRunResult:
        return ReminderRunResult(
            reminder_count=data["reminderCount"],
            skipped=data["skipped"],
            next_cursor=data.get("nextCursor"),
        )
