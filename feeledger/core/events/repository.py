"""Query access to the activity log."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ...storage.database.models import ActivityLog


class ActivityLogRepository:
    """Read-only queries over persisted ledger events."""

    def __init__(self, session: Session):
        self.session = session

    def get_all(
        self,
        *,
        event_type: str | None = None,
        entity_type: str | None = None,
        entity_id: int | None = None,
        actor_id: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ActivityLog]:
        """Most recent first, with optional filters."""
        query = select(ActivityLog)
        if event_type:
            query = query.where(ActivityLog.event_type == event_type)
        if entity_type:
            query = query.where(ActivityLog.entity_type == entity_type)
        if entity_id is not None:
            query = query.where(ActivityLog.entity_id == entity_id)
        if actor_id:
            query = query.where(ActivityLog.actor_id == actor_id)
        if since:
            query = query.where(ActivityLog.occurred_at >= since)
        query = query.order_by(ActivityLog.occurred_at.desc(), ActivityLog.id.desc())
        return list(self.session.scalars(query.limit(limit).offset(offset)))

    def get_by_event_id(self, event_id: str) -> ActivityLog | None:
        return self.session.scalar(select(ActivityLog).where(ActivityLog.event_id == event_id))

    def count_by_type(self) -> dict[str, int]:
        rows = self.session.execute(
            select(ActivityLog.event_type, func.count(ActivityLog.id)).group_by(
                ActivityLog.event_type
            )
        )
        return {event_type: count for event_type, count in rows}
