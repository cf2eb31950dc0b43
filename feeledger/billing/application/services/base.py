"""Shared plumbing for the billing services.

Each public service operation is one atomic transaction. Events are
published only after that transaction commits, so the activity log never
records an effect that was rolled back.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Callable, Mapping
from typing import Any

from sqlalchemy.orm import Session

from ....core.events.base import BaseEvent, GlobalEventBus, get_global_event_bus
from ....exceptions import ConflictError, PermissionError
from ....storage.session import db_session
from ....utils.config import Settings, get_settings
from ....utils.logging import get_logger
from ...domain.value_objects import Actor
from ...infrastructure.repository import IdempotencyRepository

logger = get_logger(__name__)


def request_fingerprint(request: Mapping[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of a request's fields."""
    canonical = json.dumps(request, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


class LedgerService:
    """Base class wiring session factory, settings and event bus.

    Args:
        session_factory: Callable returning a new Session. Defaults to the
            factory configured by ``init_db()``.
        settings: Settings instance (defaults to the cached singleton)
        event_bus: Bus receiving domain events (defaults to the global bus)
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        *,
        settings: Settings | None = None,
        event_bus: GlobalEventBus | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.event_bus = event_bus or get_global_event_bus()

    def _require_admin(self, actor: Actor, operation: str) -> None:
        if not actor.is_admin:
            logger.warning(
                "permission_denied",
                operation=operation,
                actor_id=actor.id,
                actor_role=actor.role.value,
            )
            raise PermissionError(
                f"Only administrators may {operation.replace('_', ' ')}",
                actor_id=actor.id,
                required_role="admin",
            )

    def _require_owner_or_admin(self, actor: Actor, student_id: int, operation: str) -> None:
        if actor.is_admin or actor.student_id == student_id:
            return
        logger.warning(
            "permission_denied",
            operation=operation,
            actor_id=actor.id,
            actor_role=actor.role.value,
            student_id=student_id,
        )
        raise PermissionError(
            "Students may only access their own records",
            actor_id=actor.id,
            required_role="admin",
        )

    def _replay(
        self,
        session: Session,
        key: str | None,
        operation: str,
        request: Mapping[str, Any],
    ) -> dict[str, Any] | None:
        """Stored response for an already-processed idempotency key, if any.

        Raises:
            ConflictError: The key was first used with a different request
        """
        if not key:
            return None
        record = IdempotencyRepository(session).get(key, operation)
        if record is None:
            return None
        if record.request_hash != request_fingerprint(request):
            logger.warning("idempotency_key_reused", operation=operation, idempotency_key=key)
            raise ConflictError(
                "Idempotency key was already used for a different request",
                entity_type="IdempotencyKey",
                entity_id=key,
                current_state="used",
                attempted_action=operation,
            )
        logger.info("idempotent_replay", operation=operation, idempotency_key=key)
        return json.loads(record.response_json)

    def _remember(
        self,
        session: Session,
        key: str | None,
        operation: str,
        request: Mapping[str, Any],
        response: dict[str, Any],
    ) -> None:
        if key:
            IdempotencyRepository(session).save(
                key, operation, request_fingerprint(request), response
            )

    def _stored_response(
        self, key: str | None, operation: str, request: Mapping[str, Any]
    ) -> dict[str, Any] | None:
        """Re-read a stored response outside the failed transaction.

        Used when a concurrent request with the same key won the insert race.
        """
        if not key:
            return None
        with db_session(self.session_factory) as db:
            return self._replay(db, key, operation, request)

    def _publish(self, event: BaseEvent) -> None:
        self.event_bus.publish(event)
