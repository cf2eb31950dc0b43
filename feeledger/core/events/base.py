"""Base event system infrastructure.

Provides the core event classes and the in-memory event bus that carries
ledger events to the activity log and any other subscribers.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, ClassVar
from uuid import UUID, uuid4

import structlog

logger = structlog.get_logger("events")


@dataclass(frozen=True)
class BaseEvent:
    """Base class for all domain events.

    Events are immutable and carry standard metadata:
    - event_id: Unique identifier for this event instance
    - occurred_at: Timestamp when the event occurred (UTC)
    - actor_id / actor_role: Who triggered the operation
    - context: Optional additional context data

    Subclasses set ``action`` (the activity log verb) and may override
    ``describe()`` for a human readable summary.
    """

    action: ClassVar[str] = "event"

    event_id: UUID = field(default_factory=uuid4, init=False)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC), init=False)
    actor_id: str | None = field(default=None, kw_only=True)
    actor_role: str | None = field(default=None, kw_only=True)
    context: dict[str, Any] | None = field(default=None, kw_only=True)

    def describe(self) -> str:
        return self.__class__.__name__


@dataclass
class _HandlerRegistration:
    """Internal registration data for event handlers."""

    handler: Callable[[BaseEvent], Any]
    priority: int


class GlobalEventBus:
    """In-memory synchronous event bus.

    - Priority-based handler execution (higher priority = executed first)
    - Handlers subscribed to a base class receive every subclass event
    - Error isolation: one handler failure doesn't affect others or the publisher

    Example:
        >>> bus = GlobalEventBus()
        >>> bus.subscribe(PaymentCompletedEvent, my_handler, priority=10)
        >>> bus.publish(PaymentCompletedEvent(payment_id=1, ...))
    """

    def __init__(self) -> None:
        self._handlers: dict[type[BaseEvent], list[_HandlerRegistration]] = defaultdict(list)
        self._event_count: dict[str, int] = defaultdict(int)

    def subscribe(
        self,
        event_type: type[BaseEvent],
        handler: Callable[[BaseEvent], Any],
        priority: int = 0,
    ) -> None:
        """Register a handler for the given event type.

        Args:
            event_type: The event class to listen for
            handler: Callable that processes the event
            priority: Handler priority (higher = executed first). Default: 0
        """
        self._handlers[event_type].append(_HandlerRegistration(handler=handler, priority=priority))
        self._handlers[event_type].sort(key=lambda r: r.priority, reverse=True)

        logger.debug(
            "handler_registered",
            event_type=event_type.__name__,
            handler=_handler_name(handler),
            priority=priority,
        )

    def unsubscribe(
        self,
        event_type: type[BaseEvent],
        handler: Callable[[BaseEvent], Any],
    ) -> None:
        """Remove a handler for the given event type."""
        if event_type in self._handlers:
            self._handlers[event_type] = [
                reg for reg in self._handlers[event_type] if reg.handler != handler
            ]
            logger.debug(
                "handler_unregistered",
                event_type=event_type.__name__,
                handler=_handler_name(handler),
            )

    def is_subscribed(self, event_type: type[BaseEvent], handler: Callable[[BaseEvent], Any]) -> bool:
        return any(reg.handler == handler for reg in self._handlers.get(event_type, []))

    def publish(self, event: BaseEvent) -> None:
        """Publish an event synchronously to all registered handlers, in priority order."""
        event_name = type(event).__name__
        self._event_count[event_name] += 1

        logger.info(
            "event_published",
            event_type=event_name,
            event_id=str(event.event_id),
            occurred_at=event.occurred_at.isoformat(),
        )

        handlers = self._get_handlers_for_event(event)
        if not handlers:
            logger.debug("no_handlers_found", event_type=event_name)
            return

        for registration in handlers:
            try:
                registration.handler(event)

                logger.debug(
                    "handler_executed",
                    event_type=event_name,
                    handler=_handler_name(registration.handler),
                    priority=registration.priority,
                )
            except Exception as e:
                # Isolate handler failures - log but don't propagate
                logger.error(
                    "handler_failed",
                    event_type=event_name,
                    handler=_handler_name(registration.handler),
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

    def _get_handlers_for_event(self, event: BaseEvent) -> list[_HandlerRegistration]:
        handlers: list[_HandlerRegistration] = []
        for event_type, registrations in self._handlers.items():
            if isinstance(event, event_type):
                handlers.extend(registrations)
        handlers.sort(key=lambda r: r.priority, reverse=True)
        return handlers

    def get_stats(self) -> dict[str, Any]:
        """Event counts and handler counts."""
        return {
            "total_handlers": sum(len(regs) for regs in self._handlers.values()),
            "event_types": len(self._handlers),
            "events_published": dict(self._event_count),
            "total_events": sum(self._event_count.values()),
        }


def _handler_name(handler: Callable[..., Any]) -> str:
    return getattr(handler, "__qualname__", None) or type(handler).__name__


# Global singleton instance
_global_event_bus: GlobalEventBus | None = None


def get_global_event_bus() -> GlobalEventBus:
    """Get the global event bus singleton instance."""
    global _global_event_bus
    if _global_event_bus is None:
        _global_event_bus = GlobalEventBus()
        logger.info("global_event_bus_initialized")
    return _global_event_bus


def reset_global_event_bus() -> None:
    """Drop the global bus and its subscriptions (used by tests)."""
    global _global_event_bus
    _global_event_bus = None
