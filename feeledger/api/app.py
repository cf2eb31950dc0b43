"""HTTP interface to the billing ledger.

Actor identity comes from the upstream auth layer in the ``X-Actor-Id`` and
``X-Actor-Role`` headers; requests without them run as the system actor.
An optional ``Idempotency-Key`` header makes issuance, payments and
reminder runs safe to resubmit.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from .. import __version__
from ..billing.application.services import (
    BalanceService,
    BulkIssuanceEngine,
    NotificationService,
    PaymentProcessor,
    ReconciliationService,
    ReminderScheduler,
)
from ..billing.domain.enums import ActorRole
from ..billing.domain.value_objects import Actor
from ..core.events import GlobalEventBus, get_global_event_bus, register_default_listeners
from ..exceptions import (
    ConflictError,
    DatabaseIntegrityError,
    FeeLedgerError,
    NotFoundError,
    PermissionError,
    TransientStorageError,
    ValidationError,
)
from ..storage.database.base import init_db
from ..utils.config import Settings, get_settings
from ..utils.logging import bind_actor, clear_request_context, get_logger, set_correlation_id

logger = get_logger(__name__)


# ============================================================================
# Request bodies (loosely typed: the services do the real validation)
# ============================================================================


class FeeIn(BaseModel):
    type: Any = None
    amount: Any = None
    description: Any = None
    dueDate: Any = None


class BulkFeesIn(BaseModel):
    students: Any = None
    fee: FeeIn = Field(default_factory=FeeIn)


class PaymentIn(BaseModel):
    balanceId: int | None = None
    balanceIds: list[int] | None = None
    paymentMethod: Any = None
    referenceNumber: str | None = None


class MessageTemplateIn(BaseModel):
    upcoming: str | None = None
    overdue: str | None = None


class ReminderRunIn(BaseModel):
    sendAll: bool | None = None
    daysThreshold: int | None = None
    includeOverdue: bool | None = None
    messageTemplate: MessageTemplateIn | None = None
    cursor: int | None = None
    limit: int | None = None
    runAll: bool = False


class BalanceIn(BaseModel):
    studentId: int
    type: Any = None
    amount: Any = None
    dueDate: Any = None
    description: Any = None


class CancelIn(BaseModel):
    reason: str | None = None


class ReconcileIn(BaseModel):
    dryRun: bool = False


# ============================================================================
# Dependencies
# ============================================================================


async def get_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
) -> Actor:
    """Actor asserted by the upstream auth layer (system actor when absent)."""
    if x_actor_id is None and x_actor_role is None:
        return Actor.system()
    try:
        role = ActorRole((x_actor_role or "").strip().lower())
    except ValueError as e:
        raise ValidationError(
            "Validation failed", errors={"X-Actor-Role": "must be 'admin' or 'student'"}
        ) from e
    if role is ActorRole.SYSTEM:
        raise ValidationError("Validation failed", errors={"X-Actor-Role": "must be 'admin' or 'student'"})
    if not x_actor_id:
        raise ValidationError("Validation failed", errors={"X-Actor-Id": "is required"})
    actor = Actor(id=x_actor_id.strip(), role=role)
    bind_actor(actor.id, actor.role.value)
    return actor


def get_idempotency_key(idempotency_key: str | None = Header(default=None)) -> str | None:
    return idempotency_key.strip() if idempotency_key and idempotency_key.strip() else None


def _services(request: Request) -> dict[str, Any]:
    return request.app.state.services


# ============================================================================
# Error mapping
# ============================================================================


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = {
            ".".join(str(p) for p in err["loc"] if p != "body") or "body": err["msg"]
            for err in exc.errors()
        }
        return JSONResponse(status_code=400, content={"error": "Validation failed", "fields": fields})

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        content: dict[str, Any] = {"error": "Validation failed", "fields": exc.errors}
        if exc.message != "Validation failed":
            content["message"] = exc.message
        return JSONResponse(status_code=400, content=content)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        content: dict[str, Any] = {"error": exc.message}
        if exc.missing_ids:
            content["missingIds"] = exc.missing_ids
        return JSONResponse(status_code=404, content=content)

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError):
        return JSONResponse(
            status_code=409,
            content={"error": exc.message, "currentState": exc.context.get("current_state")},
        )

    @app.exception_handler(DatabaseIntegrityError)
    async def integrity_handler(request: Request, exc: DatabaseIntegrityError):
        return JSONResponse(status_code=409, content={"error": exc.message})

    @app.exception_handler(PermissionError)
    async def permission_handler(request: Request, exc: PermissionError):
        return JSONResponse(status_code=403, content={"error": exc.message})

    @app.exception_handler(TransientStorageError)
    async def transient_handler(request: Request, exc: TransientStorageError):
        return JSONResponse(
            status_code=503,
            content={"error": exc.message, "retryable": True},
            headers={"Retry-After": "1"},
        )

    @app.exception_handler(FeeLedgerError)
    async def ledger_error_handler(request: Request, exc: FeeLedgerError):
        logger.error("unhandled_ledger_error", error=str(exc), path=request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal error"})


# ============================================================================
# Application factory
# ============================================================================


def create_app(
    settings: Settings | None = None,
    *,
    session_factory: Callable[[], Session] | None = None,
    event_bus: GlobalEventBus | None = None,
) -> FastAPI:
    """Build the API application.

    Without a ``session_factory`` the database configured in settings is
    initialized (tables created if missing).
    """
    settings = settings or get_settings()
    event_bus = event_bus or get_global_event_bus()

    if session_factory is None:
        init_db(
            settings.database_url,
            echo=settings.database_echo,
            busy_timeout=settings.database_busy_timeout,
        )
    register_default_listeners(event_bus, settings, session_factory)

    app = FastAPI(title="feeledger", version=__version__)
    deps = {"settings": settings, "event_bus": event_bus}
    app.state.services = {
        "balances": BalanceService(session_factory, **deps),
        "issuance": BulkIssuanceEngine(session_factory, **deps),
        "payments": PaymentProcessor(session_factory, **deps),
        "reminders": ReminderScheduler(session_factory, **deps),
        "reconciliation": ReconciliationService(session_factory, **deps),
        "notifications": NotificationService(session_factory, **deps),
    }
    _install_error_handlers(app)

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        set_correlation_id(request.headers.get("x-correlation-id"))
        try:
            return await call_next(request)
        finally:
            clear_request_context()

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    # ------------------------------------------------------------------ fees

    @app.post("/fees/bulk")
    def issue_fees(
        body: BulkFeesIn,
        request: Request,
        actor: Actor = Depends(get_actor),
        idempotency_key: str | None = Depends(get_idempotency_key),
    ):
        engine: BulkIssuanceEngine = _services(request)["issuance"]
        try:
            result = engine.issue(
                body.students,
                body.fee.model_dump(),
                actor=actor,
                idempotency_key=idempotency_key,
            )
        except NotFoundError as e:
            return JSONResponse(
                status_code=400,
                content={"error": "Invalid student IDs", "invalidIds": e.missing_ids},
            )
        return result.to_response()

    @app.post("/balances")
    def add_balance(body: BalanceIn, request: Request, actor: Actor = Depends(get_actor)):
        service: BalanceService = _services(request)["balances"]
        return service.add_balance(
            body.studentId, body.type, body.amount, body.dueDate, body.description, actor=actor
        )

    @app.post("/balances/{balance_id}/cancel")
    def cancel_balance(
        balance_id: int,
        request: Request,
        body: CancelIn | None = None,
        actor: Actor = Depends(get_actor),
    ):
        service: BalanceService = _services(request)["balances"]
        return service.cancel_balance(balance_id, body.reason if body else None, actor=actor)

    @app.get("/balances/{balance_id}")
    def get_balance(balance_id: int, request: Request, actor: Actor = Depends(get_actor)):
        return _services(request)["balances"].get_balance(balance_id, actor=actor)

    # -------------------------------------------------------------- payments

    @app.post("/payments")
    def process_payment(
        body: PaymentIn,
        request: Request,
        actor: Actor = Depends(get_actor),
        idempotency_key: str | None = Depends(get_idempotency_key),
    ):
        processor: PaymentProcessor = _services(request)["payments"]
        if (body.balanceId is None) == (body.balanceIds is None):
            raise ValidationError(
                "Validation failed",
                errors={"balanceId": "provide exactly one of balanceId or balanceIds"},
            )
        if body.balanceId is not None:
            result = processor.pay_balance(
                body.balanceId,
                body.paymentMethod,
                body.referenceNumber,
                actor=actor,
                idempotency_key=idempotency_key,
            )
        else:
            result = processor.pay_group(
                body.balanceIds,
                body.paymentMethod,
                body.referenceNumber,
                actor=actor,
                idempotency_key=idempotency_key,
            )
        return result.to_response()

    # ------------------------------------------------------------- reminders

    @app.post("/reminders/run")
    def run_reminders(
        request: Request,
        body: ReminderRunIn | None = None,
        actor: Actor = Depends(get_actor),
        idempotency_key: str | None = Depends(get_idempotency_key),
    ):
        """Run one reminder batch, or every batch with ``runAll``.

        ``runAll`` commits batch by batch and cannot be replayed as a unit, so
        it refuses an ``Idempotency-Key`` header.
        """
        scheduler: ReminderScheduler = _services(request)["reminders"]
        body = body or ReminderRunIn()
        if body.runAll and idempotency_key is not None:
            raise ValidationError(
                "runAll cannot be combined with an idempotency key",
                field="Idempotency-Key",
                value=idempotency_key,
            )
        templates = body.messageTemplate or MessageTemplateIn()
        config = scheduler.build_config(
            send_all=body.sendAll,
            days_threshold=body.daysThreshold,
            include_overdue=body.includeOverdue,
            upcoming_template=templates.upcoming,
            overdue_template=templates.overdue,
        )
        if body.runAll:
            result = scheduler.run_all(config, actor=actor)
        else:
            result = scheduler.run(
                config,
                cursor=body.cursor,
                limit=body.limit,
                actor=actor,
                idempotency_key=idempotency_key,
            )
        return result.to_response()

    # ---------------------------------------------------------- notifications

    @app.get("/students/{student_id}/notifications")
    def list_notifications(
        student_id: int,
        request: Request,
        status: str | None = None,
        limit: int = 100,
        actor: Actor = Depends(get_actor),
    ):
        service: NotificationService = _services(request)["notifications"]
        return service.list_for_student(student_id, status=status, limit=limit, actor=actor)

    @app.post("/notifications/{notification_id}/read")
    def mark_notification_read(
        notification_id: int, request: Request, actor: Actor = Depends(get_actor)
    ):
        return _services(request)["notifications"].mark_read(notification_id, actor=actor)

    # -------------------------------------------------------------- students

    @app.get("/students")
    def list_students(
        request: Request,
        email: str | None = None,
        limit: int = 100,
        offset: int = 0,
        actor: Actor = Depends(get_actor),
    ):
        service: BalanceService = _services(request)["balances"]
        return service.list_students(email, limit=limit, offset=offset, actor=actor)

    @app.get("/students/{student_id}")
    def get_student(student_id: int, request: Request, actor: Actor = Depends(get_actor)):
        return _services(request)["balances"].get_student(student_id, actor=actor)

    @app.get("/students/{student_id}/balances")
    def list_student_balances(
        student_id: int,
        request: Request,
        status: str | None = None,
        limit: int = 100,
        actor: Actor = Depends(get_actor),
    ):
        service: BalanceService = _services(request)["balances"]
        return service.list_balances(student_id, status, limit=limit, actor=actor)

    @app.get("/students/{student_id}/summary")
    def student_summary(student_id: int, request: Request, actor: Actor = Depends(get_actor)):
        return _services(request)["balances"].student_summary(student_id, actor=actor)

    @app.post("/students/reconcile")
    def reconcile_students(
        request: Request,
        body: ReconcileIn | None = None,
        actor: Actor = Depends(get_actor),
    ):
        service: ReconciliationService = _services(request)["reconciliation"]
        result = service.reconcile(dry_run=body.dryRun if body else False, actor=actor)
        return result.to_response()

    logger.info("api_app_created", version=__version__)
    return app
