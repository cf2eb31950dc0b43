"""Default event listeners and registration utilities."""

from __future__ import annotations

import importlib
from collections.abc import Callable
from typing import Any

from sqlalchemy.orm import Session

from ...exceptions import ConfigurationError
from ...utils.config import Settings, get_settings
from ...utils.logging import get_logger
from .base import BaseEvent, GlobalEventBus, get_global_event_bus
from .persistence import ActivityLogListener

logger = get_logger("event_listeners")

_activity_listener: ActivityLogListener | None = None


def audit_log_listener(event: BaseEvent) -> None:
    """Write every event to the structured log."""
    logger.info(
        "domain_event",
        event_type=event.__class__.__name__,
        event_id=str(event.event_id),
        action=event.action,
        actor_id=event.actor_id,
        description=event.describe(),
    )


def register_default_listeners(
    event_bus: GlobalEventBus | None = None,
    settings: Settings | None = None,
    session_factory: Callable[[], Session] | None = None,
) -> list[str]:
    """Register the structured-log and activity-log listeners (idempotent).

    Returns:
        Names of the listeners registered by this call
    """
    global _activity_listener

    event_bus = event_bus or get_global_event_bus()
    settings = settings or get_settings()
    registered: list[str] = []

    if not event_bus.is_subscribed(BaseEvent, audit_log_listener):
        event_bus.subscribe(BaseEvent, audit_log_listener, priority=-50)
        registered.append("audit_log_listener")

    if settings.activity_log_enabled:
        if _activity_listener is None or session_factory is not None:
            _activity_listener = ActivityLogListener(session_factory)

        already = any(
            isinstance(getattr(reg.handler, "__self__", None), ActivityLogListener)
            for reg in event_bus._handlers.get(BaseEvent, [])
        )
        if not already:
            event_bus.subscribe(BaseEvent, _activity_listener.handle_event, priority=-100)
            registered.append("activity_log_listener")

    if registered:
        logger.info("default_listeners_registered", listeners=registered)
    return registered


def _import_listener(path: str) -> Callable[[BaseEvent], Any]:
    """Import a listener callable from a dotted path ('module.function').

    Raises:
        ConfigurationError: The path does not resolve to a callable
    """
    module_name, _, attr_name = path.rpartition(".")
    if not module_name:
        raise ConfigurationError(
            f"Invalid listener path '{path}'", setting="EVENT_LISTENERS", expected="module.function"
        )

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(
            f"Cannot import listener module '{module_name}'",
            setting="EVENT_LISTENERS",
            original_error=e,
        ) from e

    handler = getattr(module, attr_name, None)
    if not callable(handler):
        raise ConfigurationError(f"Listener '{path}' is not callable", setting="EVENT_LISTENERS")
    return handler


def load_custom_listeners(
    event_bus: GlobalEventBus | None = None,
    settings: Settings | None = None,
) -> int:
    """Subscribe listeners named in ``EVENT_LISTENERS`` (comma separated paths).

    Returns:
        Number of listeners successfully loaded
    """
    event_bus = event_bus or get_global_event_bus()
    settings = settings or get_settings()

    paths = settings.event_listeners_list
    if not paths:
        logger.debug("no_custom_listeners_configured")
        return 0

    loaded = 0
    for path in paths:
        try:
            handler = _import_listener(path)
        except ConfigurationError as e:
            logger.error("custom_listener_load_failed", listener=path, error=str(e))
            continue
        event_bus.subscribe(BaseEvent, handler, priority=0)
        logger.info("custom_listener_loaded", listener=path)
        loaded += 1

    logger.info("custom_listeners_loaded", total=loaded, failed=len(paths) - loaded)
    return loaded


def initialize_event_system(
    settings: Settings | None = None,
    session_factory: Callable[[], Session] | None = None,
) -> GlobalEventBus:
    """Set up the global event bus with default and custom listeners.

    Called once at application startup (CLI callback, API lifespan).
    """
    settings = settings or get_settings()
    event_bus = get_global_event_bus()

    defaults = register_default_listeners(event_bus, settings, session_factory)
    custom_count = load_custom_listeners(event_bus, settings)

    logger.info(
        "event_system_initialized",
        default_listeners=len(defaults),
        custom_listeners=custom_count,
    )
    return event_bus


def reset_listeners() -> None:
    """Forget the cached activity listener (used by tests)."""
    global _activity_listener
    _activity_listener = None
