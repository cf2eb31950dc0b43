"""Activity log persistence.

Writes every published domain event into the ``activity_log`` table. This is
the ledger's audit sink: write-only, and never allowed to break the
operation that produced the event.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import asdict
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from ...storage.database.base import get_session
from ...storage.database.models import ActivityLog
from ...utils.logging import get_logger
from .base import BaseEvent

logger = get_logger(__name__)

# Checked in order: the most specific identifier wins
ENTITY_FIELDS = (
    ("payment_id", "payment"),
    ("notification_id", "notification"),
    ("balance_id", "balance"),
    ("student_id", "student"),
)


class ActivityLogListener:
    """Persists events to the activity log.

    Registered with low priority (-100) so business handlers run first.
    Failed writes are logged and swallowed: the originating transaction has
    already committed and must not appear to fail.
    """

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        self._session_factory = session_factory
        self._enabled = True

    def handle_event(self, event: BaseEvent) -> None:
        if not self._enabled:
            return

        try:
            event_dict = asdict(event)
            entity_type, entity_id = self._extract_entity_info(event_dict)
            event_data = self._prepare_json_data(event_dict)

            db = self._session_factory() if self._session_factory else get_session()
            try:
                db.add(
                    ActivityLog(
                        event_id=str(event.event_id),
                        event_type=event.__class__.__name__,
                        action=event.action,
                        description=event.describe(),
                        entity_type=entity_type,
                        entity_id=entity_id,
                        actor_id=event.actor_id,
                        actor_role=event.actor_role,
                        event_data=json.dumps(event_data),
                        occurred_at=event.occurred_at,
                    )
                )
                db.commit()
            finally:
                db.close()

            logger.debug(
                "activity_logged",
                event_type=event.__class__.__name__,
                event_id=str(event.event_id),
                entity_type=entity_type,
                entity_id=entity_id,
            )
        except Exception as e:
            logger.error(
                "activity_log_write_failed",
                event_type=event.__class__.__name__,
                event_id=str(event.event_id),
                error=str(e),
                error_type=type(e).__name__,
            )

    def _extract_entity_info(self, event_dict: dict[str, Any]) -> tuple[str | None, int | None]:
        for field_name, entity_type in ENTITY_FIELDS:
            value = event_dict.get(field_name)
            if isinstance(value, int) and not isinstance(value, bool):
                return entity_type, value
        return None, None

    def _prepare_json_data(self, value: Any) -> Any:
        """Convert an event payload into JSON-serializable values."""
        if isinstance(value, dict):
            return {k: self._prepare_json_data(v) for k, v in value.items()}
        if isinstance(value, (list, tuple, set)):
            return [self._prepare_json_data(v) for v in value]
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, Decimal):
            return float(value)
        if isinstance(value, (UUID, Enum)):
            return str(value.value) if isinstance(value, Enum) else str(value)
        return value

    def disable(self) -> None:
        """Disable persistence (useful for testing)."""
        self._enabled = False

    def enable(self) -> None:
        self._enabled = True
