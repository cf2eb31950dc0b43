"""Value objects for the billing domain.

Immutable inputs and results passed between the API/CLI surfaces and the
application services. Input parsing collects every problem before raising,
so callers can report all failing fields at once.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from ...exceptions import ValidationError
from ...utils.config import DEFAULT_OVERDUE_TEMPLATE, DEFAULT_UPCOMING_TEMPLATE
from .enums import ActorRole, NotificationKind

TWO_PLACES = Decimal("0.01")
# Largest value a Numeric(12, 2) column holds
MAX_AMOUNT = Decimal("9999999999.99")


@dataclass(frozen=True)
class Actor:
    """Caller identity as asserted by the upstream auth layer."""

    id: str
    role: ActorRole

    @classmethod
    def system(cls) -> Actor:
        return cls(id="system", role=ActorRole.SYSTEM)

    @classmethod
    def admin(cls, actor_id: str = "admin") -> Actor:
        return cls(id=actor_id, role=ActorRole.ADMIN)

    @classmethod
    def student(cls, student_id: int) -> Actor:
        return cls(id=str(student_id), role=ActorRole.STUDENT)

    @property
    def is_admin(self) -> bool:
        return self.role in (ActorRole.ADMIN, ActorRole.SYSTEM)

    @property
    def student_id(self) -> int | None:
        """Student id for student actors, None otherwise."""
        if self.role is ActorRole.STUDENT and self.id.isdigit():
            return int(self.id)
        return None


def parse_amount(value: Any) -> Decimal:
    """Parse a money amount into a two-place Decimal.

    Raises:
        ValueError: If the value is not a finite number or exceeds MAX_AMOUNT
    """
    if isinstance(value, bool):
        raise ValueError("amount must be a number")
    try:
        amount = Decimal(str(value).strip())
        if not amount.is_finite():
            raise ValueError("amount must be a number")
        amount = amount.quantize(TWO_PLACES)
    except (InvalidOperation, AttributeError) as e:
        raise ValueError("amount must be a number") from e
    if abs(amount) > MAX_AMOUNT:
        raise ValueError(f"amount must not exceed {MAX_AMOUNT:,}")
    return amount


def parse_due_date(value: Any) -> date:
    """Parse a date-only due date (``date`` or ``YYYY-MM-DD``).

    Raises:
        ValueError: If the value carries a time component or is malformed
    """
    if isinstance(value, datetime):
        raise ValueError("dueDate must be a date without time")
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if "T" in text or " " in text:
            raise ValueError("dueDate must be a date without time")
        try:
            return date.fromisoformat(text)
        except ValueError as e:
            raise ValueError("dueDate must be an ISO date (YYYY-MM-DD)") from e
    raise ValueError("dueDate must be an ISO date (YYYY-MM-DD)")


@dataclass(frozen=True)
class FeeTemplate:
    """Fee applied to every student of a bulk issuance roster."""

    type: str
    amount: Decimal
    description: str
    due_date: date | None

    @classmethod
    def parse(
        cls,
        data: Mapping[str, Any],
        *,
        today: date,
        require_due_date: bool = True,
        require_description: bool = True,
    ) -> FeeTemplate:
        """Validate raw input, reporting every failing field.

        Accepts both ``dueDate`` and ``due_date`` keys.

        Raises:
            ValidationError: With ``errors`` listing each invalid field
        """
        errors: dict[str, str] = {}

        fee_type = data.get("type")
        if not isinstance(fee_type, str) or not fee_type.strip():
            errors["type"] = "type is required"

        amount: Decimal | None = None
        raw_amount = data.get("amount")
        if raw_amount is None or raw_amount == "":
            errors["amount"] = "amount is required"
        else:
            try:
                amount = parse_amount(raw_amount)
            except ValueError as e:
                errors["amount"] = str(e)
            else:
                if amount <= 0:
                    errors["amount"] = "amount must be greater than 0"

        description = data.get("description")
        if description is not None and not isinstance(description, str):
            errors["description"] = "description must be text"
        elif require_description and (not description or not description.strip()):
            errors["description"] = "description is required"

        due_date: date | None = None
        raw_due = data.get("dueDate", data.get("due_date"))
        if raw_due is None or raw_due == "":
            if require_due_date:
                errors["dueDate"] = "dueDate is required"
        else:
            try:
                due_date = parse_due_date(raw_due)
            except ValueError as e:
                errors["dueDate"] = str(e)
            else:
                if due_date <= today:
                    errors["dueDate"] = "dueDate must be in the future"

        if errors:
            raise ValidationError("Validation failed", errors=errors)

        return cls(
            type=fee_type.strip(),
            amount=amount,
            description=description.strip() if description else "",
            due_date=due_date,
        )


@dataclass(frozen=True)
class ReminderConfig:
    """Reminder run configuration."""

    send_all: bool = False
    days_threshold: int = 7
    include_overdue: bool = True
    upcoming_template: str = DEFAULT_UPCOMING_TEMPLATE
    overdue_template: str = DEFAULT_OVERDUE_TEMPLATE

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> ReminderConfig:
        """Build a config from settings defaults, applying non-None overrides."""
        values: dict[str, Any] = {
            "send_all": settings.reminder_send_all,
            "days_threshold": settings.reminder_days_threshold,
            "include_overdue": settings.reminder_include_overdue,
            "upcoming_template": settings.reminder_upcoming_template,
            "overdue_template": settings.reminder_overdue_template,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        config = cls(**values)
        config.validate()
        return config

    def validate(self) -> None:
        errors: dict[str, str] = {}
        if isinstance(self.days_threshold, bool) or not isinstance(self.days_threshold, int):
            errors["daysThreshold"] = "daysThreshold must be an integer"
        elif self.days_threshold < 0:
            errors["daysThreshold"] = "daysThreshold must be >= 0"
        for name, template in (
            ("upcoming", self.upcoming_template),
            ("overdue", self.overdue_template),
        ):
            if not template or not template.strip():
                errors[f"messageTemplate.{name}"] = f"{name} template is required"
        if errors:
            raise ValidationError("Validation failed", errors=errors)

    @property
    def threshold_label(self) -> str:
        return "all" if self.send_all else str(self.days_threshold)


def classify_balance(
    due_date: date | None,
    today: date,
    config: ReminderConfig,
) -> tuple[NotificationKind, int] | None:
    """Decide whether a pending balance gets a reminder.

    Returns ``(kind, days)`` where ``days`` is the value rendered into the
    template (days until due, or days overdue), or None when skipped.
    With ``send_all`` every pending balance is an upcoming reminder, whatever
    its due date; days are clamped at 0.
    """
    days_until_due = (due_date - today).days if due_date is not None else 0
    if config.send_all:
        return NotificationKind.UPCOMING, max(days_until_due, 0)
    if due_date is None:
        return None

    if 0 <= days_until_due <= config.days_threshold:
        return NotificationKind.UPCOMING, days_until_due
    if days_until_due < 0 and config.include_overdue:
        return NotificationKind.OVERDUE, -days_until_due
    return None


def format_amount(amount: Decimal) -> str:
    """Thousands-separated amount; cents only when non-zero (15000 -> 15,000)."""
    amount = Decimal(amount).quantize(TWO_PLACES)
    if amount == amount.to_integral_value():
        return f"{int(amount):,}"
    return f"{amount:,.2f}"


def render_reminder(template: str, *, amount: Decimal, fee_type: str, days: int) -> str:
    """Substitute ``{amount}``, ``{type}`` and ``{days}`` into a template.

    Plain replacement: unknown braces in admin-edited templates are left as is.
    """
    return (
        template.replace("{amount}", format_amount(amount))
        .replace("{type}", fee_type)
        .replace("{days}", str(days))
    )


def reminder_bucket(kind: NotificationKind, config: ReminderConfig, due_date: date | None) -> str:
    """Dedupe key of a reminder: ``{kind}:{threshold|all}:{dueDate}``."""
    due = due_date.isoformat() if due_date else "none"
    return f"{kind.value}:{config.threshold_label}:{due}"


# =============================================================================
# Operation results
# =============================================================================


@dataclass(frozen=True)
class IssuanceResult:
    count: int
    timestamp: datetime
    balance_ids: list[int] = field(default_factory=list)

    def to_response(self) -> dict[str, Any]:
        return {
            "success": True,
            "count": self.count,
            "timestamp": self.timestamp.isoformat(),
            "balanceIds": list(self.balance_ids),
        }


@dataclass(frozen=True)
class PaymentResult:
    payment_id: int
    reference_number: str
    amount: Decimal
    status: str
    balance_ids: list[int]
    is_group: bool

    def to_response(self) -> dict[str, Any]:
        return {
            "paymentId": self.payment_id,
            "referenceNumber": self.reference_number,
            "amount": float(self.amount),
            "status": self.status,
            "balanceIds": list(self.balance_ids),
            "isGroup": self.is_group,
        }

    @classmethod
    def from_response(cls, data: Mapping[str, Any]) -> PaymentResult:
        return cls(
            payment_id=data["paymentId"],
            reference_number=data["referenceNumber"],
            amount=parse_amount(data["amount"]),
            status=data["status"],
            balance_ids=list(data["balanceIds"]),
            is_group=data["isGroup"],
        )


@dataclass(frozen=True)
class ReminderRunResult:
    reminder_count: int
    skipped: int
    next_cursor: int | None = None
    notification_ids: list[int] = field(default_factory=list)

    def to_response(self) -> dict[str, Any]:
        return {
            "reminderCount": self.reminder_count,
            "skipped": self.skipped,
            "nextCursor": self.next_cursor,
        }


@dataclass(frozen=True)
class DuplicateGroup:
    """Students sharing one normalized email, with the record that survives."""

    email: str
    canonical_id: int
    duplicate_ids: list[int]


@dataclass(frozen=True)
class ReconciliationResult:
    groups_scanned: int
    duplicates_found: int
    removed_ids: list[int]
    failed_ids: list[int] = field(default_factory=list)
    repointed_balances: int = 0
    repointed_payments: int = 0
    repointed_notifications: int = 0
    dry_run: bool = False
    plan: list[DuplicateGroup] = field(default_factory=list)

    def to_response(self) -> dict[str, Any]:
        data = asdict(self)
        return {
            "groupsScanned": data["groups_scanned"],
            "duplicatesFound": data["duplicates_found"],
            "removedIds": data["removed_ids"],
            "failedIds": data["failed_ids"],
            "repointed": {
                "balances": data["repointed_balances"],
                "payments": data["repointed_payments"],
                "notifications": data["repointed_notifications"],
            },
            "dryRun": data["dry_run"],
            "plan": [
                {
                    "email": g["email"],
                    "canonicalId": g["canonical_id"],
                    "duplicateIds": g["duplicate_ids"],
                }
                for g in data["plan"]
            ],
        }
