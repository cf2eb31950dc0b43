"""
Structured logging for the ledger, built on structlog.

Every entry carries the request correlation id and, when known, the acting
user. Student email addresses are masked before rendering.
"""

import logging
import sys
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, cast

import structlog
from structlog.contextvars import bind_contextvars, get_contextvars, unbind_contextvars
from structlog.types import EventDict, Processor

REDACTED = "***REDACTED***"
_SECRET_KEYS = frozenset({"password", "secret", "token", "api_key", "database_url"})
_EMAIL_KEYS = frozenset({"email", "emails"})


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Bind a correlation id (a fresh uuid4 when None) to the current context."""
    correlation_id = correlation_id or str(uuid.uuid4())
    bind_contextvars(correlation_id=correlation_id)
    return correlation_id


def get_correlation_id() -> str | None:
    return get_contextvars().get("correlation_id")


def bind_actor(actor_id: str, actor_role: str) -> None:
    """Attach the acting user to every entry logged in this context."""
    bind_contextvars(actor_id=actor_id, actor_role=actor_role)


def clear_request_context() -> None:
    unbind_contextvars("correlation_id", "actor_id", "actor_role")


def mask_email(email: str) -> str:
    """``ana.santos@school.edu`` -> ``a***@school.edu``"""
    local, sep, domain = email.partition("@")
    if not sep:
        return REDACTED
    return f"{local[:1]}***@{domain}"


def redact_fields(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Hide credentials and mask student emails."""
    for key in _SECRET_KEYS & event_dict.keys():
        event_dict[key] = REDACTED
    for key in _EMAIL_KEYS & event_dict.keys():
        value = event_dict[key]
        if isinstance(value, str):
            event_dict[key] = mask_email(value)
        elif isinstance(value, list | tuple | set):
            event_dict[key] = [mask_email(str(v)) for v in value]
    return event_dict


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    from feeledger import __version__

    event_dict.setdefault("app", "feeledger")
    event_dict.setdefault("version", __version__)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_logs: bool = False,
    dev_mode: bool = True,
) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_logs: Render one JSON object per line
        dev_mode: Colored console output (ignored when json_logs is set)
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_app_context,
        redact_fields,
    ]

    if json_logs:
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    elif dev_mode:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.append(
            structlog.processors.KeyValueRenderer(key_order=["timestamp", "level", "event"])
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def configure_from_settings(settings) -> None:
    level = "DEBUG" if settings.debug else settings.log_level
    configure_logging(log_level=level, json_logs=settings.json_logs, dev_mode=not settings.json_logs)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Usage:
        logger = get_logger(__name__)
        logger.info("fees_issued", count=120, fee_type="Tuition Fee")
    """
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))


@contextmanager
def timed(operation: str, logger: structlog.stdlib.BoundLogger, **fields: Any) -> Iterator[None]:
    """Log ``{operation}_completed`` or ``{operation}_failed`` with the elapsed time.

    Usage:
        with timed("bulk_issue", logger, count=len(roster)):
            ...
    """
    start = time.perf_counter()
    try:
        yield
    except Exception as e:
        logger.error(
            f"{operation}_failed",
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
            error=str(e),
            error_type=type(e).__name__,
            **fields,
        )
        raise
    logger.info(
        f"{operation}_completed",
        duration_ms=round((time.perf_counter() - start) * 1000, 2),
        **fields,
    )


configure_logging()
