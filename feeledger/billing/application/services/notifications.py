"""Notification store reads for the external notification surface."""

from __future__ import annotations

from typing import Any

from ....core.events.billing_events import NotificationReadEvent
from ....exceptions import NotFoundError, ValidationError
from ....storage.session import db_session, transaction
from ...domain.enums import NotificationStatus
from ...domain.value_objects import Actor
from ...infrastructure.repository import NotificationRepository
from .base import LedgerService


class NotificationService(LedgerService):
    """Lists a student's notifications and marks them read."""

    def list_for_student(
        self,
        student_id: int,
        *,
        status: NotificationStatus | str | None = None,
        limit: int = 100,
        actor: Actor | None = None,
    ) -> list[dict[str, Any]]:
        """Newest first, as notification records."""
        actor = actor or Actor.system()
        self._require_owner_or_admin(actor, student_id, "view_notifications")

        if isinstance(status, str):
            try:
                status = NotificationStatus(status.lower())
            except ValueError as e:
                raise ValidationError("Validation failed", field="status", value=status) from e

        with db_session(self.session_factory) as db:
            rows = NotificationRepository(db).list_for_student(student_id, status=status, limit=limit)
            return [n.to_record() for n in rows]

    def mark_read(self, notification_id: int, *, actor: Actor | None = None) -> dict[str, Any]:
        actor = actor or Actor.system()
        with transaction(self.session_factory, operation="mark_notification_read") as db:
            notification = NotificationRepository(db).get(notification_id)
            if notification is None:
                raise NotFoundError(
                    "Notification not found", entity_type="Notification", entity_id=notification_id
                )
            self._require_owner_or_admin(actor, notification.student_id, "read_notification")
            changed = notification.status is not NotificationStatus.READ
            notification.status = NotificationStatus.READ
            db.flush()
            record = notification.to_record()
            student_id = notification.student_id

        if changed:
            self._publish(
                NotificationReadEvent(
                    notification_id=notification_id,
                    student_id=student_id,
                    actor_id=actor.id,
                    actor_role=actor.role.value,
                )
            )
        return record
