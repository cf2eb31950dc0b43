"""Exception hierarchy for feeledger.

Every error raised by the billing engine carries a structured ``context``
dict so it can be logged with structlog and mapped onto an HTTP status by the
API layer.

Usage:
    from feeledger.exceptions import ConflictError, ValidationError

    try:
        processor.pay_balance(balance_id, payment_method="gcash")
    except ConflictError as e:
        logger.warning("payment_rejected", error=str(e), context=e.context)
"""

from __future__ import annotations

from typing import Any


class FeeLedgerError(Exception):
    """Base exception for all feeledger errors.

    Attributes:
        message: Human-readable error message
        context: Additional context for debugging (dict)
        original_error: Original exception if wrapped
    """

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.original_error = original_error

    def __str__(self) -> str:
        """Format exception with context for logging."""
        base = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base = f"{base} ({ctx_str})"
        if self.original_error:
            base = f"{base} [caused by: {type(self.original_error).__name__}]"
        return base

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, context={self.context!r})"


# =============================================================================
# Validation & Input Errors
# =============================================================================


class ValidationError(FeeLedgerError):
    """Raised when input validation fails.

    ``errors`` maps every failing field to its message, so callers can report
    all problems at once instead of only the first one.
    """

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        errors: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        self.errors: dict[str, str] = dict(errors or {})
        if field:
            context["field"] = field
            self.errors.setdefault(field, message)
        if value is not None:
            context["value"] = str(value)[:100]  # Truncate for safety
        if self.errors:
            context["fields"] = sorted(self.errors)
        kwargs["context"] = context
        super().__init__(message, **kwargs)


class ConfigurationError(FeeLedgerError):
    """Raised when application configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        *,
        setting: str | None = None,
        expected: str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if setting:
            context["setting"] = setting
        if expected:
            context["expected"] = expected
        kwargs["context"] = context
        super().__init__(message, **kwargs)


class PermissionError(FeeLedgerError):
    """Raised when the calling actor may not perform the requested operation."""

    def __init__(
        self,
        message: str,
        *,
        actor_id: str | None = None,
        required_role: str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if actor_id:
            context["actor_id"] = actor_id
        if required_role:
            context["required_role"] = required_role
        kwargs["context"] = context
        super().__init__(message, **kwargs)


# =============================================================================
# Lookup & State Errors
# =============================================================================


class NotFoundError(FeeLedgerError):
    """Raised when a referenced student, balance or payment does not exist.

    Args:
        entity_type: Type of entity (e.g., "Student", "Balance")
        entity_id: ID of the missing entity
        missing_ids: All unresolved ids when a batch lookup fails
    """

    def __init__(
        self,
        message: str,
        *,
        entity_type: str | None = None,
        entity_id: int | str | None = None,
        missing_ids: list[int] | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        self.missing_ids: list[int] = list(missing_ids or [])
        if entity_type:
            context["entity_type"] = entity_type
        if entity_id is not None:
            context["entity_id"] = str(entity_id)
        if self.missing_ids:
            context["missing_ids"] = self.missing_ids
        kwargs["context"] = context
        super().__init__(message, **kwargs)


class ConflictError(FeeLedgerError):
    """Raised when an entity is not in the state required for a transition.

    Example: paying a balance that is already paid, or cancelling one that was
    settled in the meantime. Retrying does not change the outcome.
    """

    def __init__(
        self,
        message: str,
        *,
        entity_type: str | None = None,
        entity_id: int | str | None = None,
        current_state: str | None = None,
        attempted_action: str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if entity_type:
            context["entity_type"] = entity_type
        if entity_id is not None:
            context["entity_id"] = str(entity_id)
        if current_state:
            context["current_state"] = current_state
        if attempted_action:
            context["attempted_action"] = attempted_action
        kwargs["context"] = context
        super().__init__(message, **kwargs)


# =============================================================================
# Storage Errors
# =============================================================================


class StorageError(FeeLedgerError):
    """Base class for database-related errors."""


class TransientStorageError(StorageError):
    """Raised for retryable infrastructure failures (lock timeouts, dropped connections).

    The failed transaction has been rolled back in full, so the whole
    operation may be resubmitted.
    """


class DatabaseIntegrityError(StorageError):
    """Raised when database integrity constraints are violated."""


# =============================================================================
# Utility Functions
# =============================================================================


def wrap_exception(
    error: Exception,
    message: str,
    *,
    exception_class: type[FeeLedgerError] = FeeLedgerError,
    **context: Any,
) -> FeeLedgerError:
    """Wrap an external exception in the feeledger hierarchy.

    Example:
        try:
            session.commit()
        except OperationalError as e:
            raise wrap_exception(
                e,
                "Database is locked",
                exception_class=TransientStorageError,
                operation="pay_balance",
            )
    """
    return exception_class(
        message,
        context=context,
        original_error=error,
    )


__all__ = [
    "FeeLedgerError",
    "ValidationError",
    "ConfigurationError",
    "PermissionError",
    "NotFoundError",
    "ConflictError",
    "StorageError",
    "TransientStorageError",
    "DatabaseIntegrityError",
    "wrap_exception",
]
