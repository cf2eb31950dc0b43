"""SQLAlchemy models for feeledger."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ...billing.domain.enums import (
    BalanceStatus,
    NotificationKind,
    NotificationStatus,
    NotificationType,
    PaymentStatus,
    StudentPaymentStatus,
    StudentStatus,
)
from ...utils.datetime import utc_now
from .base import Base, IntPKMixin, TimestampMixin


class Student(IntPKMixin, Base):
    """Student identity record.

    Email is the business key but is deliberately not unique at the storage
    level: out-of-band provisioning can create a second record for the same
    email, which the reconciliation service later collapses.
    """

    __tablename__ = "students"

    email: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)

    # Enrollment
    grade: Mapped[str] = mapped_column(String(50), default="Unassigned")
    strand: Mapped[str] = mapped_column(String(50), default="Unassigned")
    section: Mapped[str] = mapped_column(String(50), default="Unassigned")

    status: Mapped[StudentStatus] = mapped_column(
        Enum(StudentStatus), nullable=False, default=StudentStatus.ACTIVE
    )
    payment_status: Mapped[StudentPaymentStatus] = mapped_column(
        Enum(StudentPaymentStatus), nullable=False, default=StudentPaymentStatus.PAID
    )

    # Nullable: provisioning scripts do not always stamp records
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    balances: Mapped[list[Balance]] = relationship(back_populates="student")
    payments: Mapped[list[Payment]] = relationship(back_populates="student")

    def to_directory_entry(self) -> dict:
        """Read model consumed by issuance and payment validation."""
        return {
            "id": self.id,
            "email": self.email,
            "fullName": self.full_name,
            "grade": self.grade,
            "strand": self.strand,
            "section": self.section,
        }

    def __repr__(self) -> str:
        return f"<Student(id={self.id}, email='{self.email}')>"


class Balance(IntPKMixin, TimestampMixin, Base):
    """A single fee obligation owed by a student."""

    __tablename__ = "balances"
    __table_args__ = (CheckConstraint("amount > 0", name="amount_positive"),)

    student_id: Mapped[int] = mapped_column(ForeignKey("students.id"), nullable=False, index=True)
    student: Mapped[Student] = relationship(back_populates="balances")

    # Fee
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, index=True)

    status: Mapped[BalanceStatus] = mapped_column(
        Enum(BalanceStatus), nullable=False, default=BalanceStatus.PENDING, index=True
    )

    # Settlement (set by the payment processor)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    payment_method: Mapped[str | None] = mapped_column(String(50))
    reference_number: Mapped[str | None] = mapped_column(String(40))
    payment_id: Mapped[int | None] = mapped_column(ForeignKey("payments.id"), index=True)
    payment: Mapped[Payment | None] = relationship(back_populates="balances")

    # Cancellation (admin action)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancel_reason: Mapped[str | None] = mapped_column(Text)

    def __repr__(self) -> str:
        return (
            f"<Balance(id={self.id}, student_id={self.student_id}, "
            f"amount={self.amount}, status='{self.status.value}')>"
        )


class Payment(IntPKMixin, TimestampMixin, Base):
    """A completed transaction settling one or more balances."""

    __tablename__ = "payments"

    student_id: Mapped[int] = mapped_column(ForeignKey("students.id"), nullable=False, index=True)
    student: Mapped[Student] = relationship(back_populates="payments")

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(50), nullable=False)
    reference_number: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), nullable=False, default=PaymentStatus.COMPLETED
    )
    is_group: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    balances: Mapped[list[Balance]] = relationship(back_populates="payment")

    @property
    def balance_ids(self) -> list[int]:
        return sorted(b.id for b in self.balances)

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, reference='{self.reference_number}', "
            f"amount={self.amount}, group={self.is_group})>"
        )


class Notification(IntPKMixin, Base):
    """Student-facing notification (reminders and payment confirmations).

    ``threshold_bucket`` identifies the reminder window a notification was
    emitted for; the unique constraint keeps repeated reminder runs from
    creating duplicates.
    """

    __tablename__ = "notifications"
    __table_args__ = (UniqueConstraint("balance_id", "threshold_bucket", name="uq_reminder_bucket"),)

    student_id: Mapped[int] = mapped_column(ForeignKey("students.id"), nullable=False, index=True)
    balance_id: Mapped[int | None] = mapped_column(ForeignKey("balances.id"), index=True)
    payment_id: Mapped[int | None] = mapped_column(ForeignKey("payments.id"))

    kind: Mapped[NotificationKind] = mapped_column(Enum(NotificationKind), nullable=False)
    type: Mapped[NotificationType] = mapped_column(Enum(NotificationType), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[NotificationStatus] = mapped_column(
        Enum(NotificationStatus), nullable=False, default=NotificationStatus.UNREAD, index=True
    )

    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    due_date: Mapped[date | None] = mapped_column(Date)
    threshold_bucket: Mapped[str | None] = mapped_column(String(100))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, index=True
    )

    def to_record(self) -> dict:
        """Record shape consumed by the external notification surface."""
        return {
            "id": self.id,
            "studentId": self.student_id,
            "title": self.title,
            "message": self.message,
            "type": self.type.value,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "relatedBalanceId": self.balance_id,
            "dueDate": self.due_date.isoformat() if self.due_date else None,
            "amount": float(self.amount) if self.amount is not None else None,
        }

    def __repr__(self) -> str:
        return (
            f"<Notification(id={self.id}, student_id={self.student_id}, "
            f"kind='{self.kind.value}', status='{self.status.value}')>"
        )


class IdempotencyKey(IntPKMixin, Base):
    """Processed client request token, stored with the response it produced."""

    __tablename__ = "idempotency_keys"
    __table_args__ = (UniqueConstraint("key", "operation", name="uq_idempotency_key_operation"),)

    key: Mapped[str] = mapped_column(String(128), nullable=False)
    operation: Mapped[str] = mapped_column(String(50), nullable=False)
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    response_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    def __repr__(self) -> str:
        return f"<IdempotencyKey(operation='{self.operation}', key='{self.key}')>"


class StudentAlias(IntPKMixin, Base):
    """Forwarding pointer from a removed duplicate student id to its canonical record."""

    __tablename__ = "student_aliases"

    removed_student_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    canonical_student_id: Mapped[int] = mapped_column(
        ForeignKey("students.id"), nullable=False, index=True
    )
    email: Mapped[str] = mapped_column(String(256), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    def __repr__(self) -> str:
        return (
            f"<StudentAlias(removed={self.removed_student_id}, "
            f"canonical={self.canonical_student_id})>"
        )


class ActivityLog(IntPKMixin, Base):
    """Audit trail of every domain event published by the ledger.

    Write-only from the engine's point of view: rows are appended by the
    activity log listener and never updated.
    """

    __tablename__ = "activity_log"

    event_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)

    # Entity tracking
    entity_type: Mapped[str | None] = mapped_column(String(50), index=True)
    entity_id: Mapped[int | None] = mapped_column(Integer, index=True)

    # Who
    actor_id: Mapped[str | None] = mapped_column(String(64))
    actor_role: Mapped[str | None] = mapped_column(String(20))

    # Event payload (JSON serialized)
    event_data: Mapped[str] = mapped_column(Text, nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    published_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    def __repr__(self) -> str:
        return (
            f"<ActivityLog(id={self.id}, event_type='{self.event_type}', "
            f"entity={self.entity_type}:{self.entity_id})>"
        )
