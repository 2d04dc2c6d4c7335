"""SQLAlchemy database models for the application and payment ledger."""
import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class ProgramStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ApplicationStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    SHORTLISTED = "SHORTLISTED"
    INTERVIEW_SCHEDULED = "INTERVIEW_SCHEDULED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    ENROLLED = "ENROLLED"
    CANCELLED = "CANCELLED"


class ReservationState(str, enum.Enum):
    """Where an application's seat stands: provisional, consumed, or handed back."""

    HELD = "HELD"
    COMMITTED = "COMMITTED"
    RELEASED = "RELEASED"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ConfirmationSource(str, enum.Enum):
    """Channel that delivered the provider's verdict for a payment."""

    VERIFY = "verify"
    WEBHOOK = "webhook"
    SWEEPER = "sweeper"


def _enum_check(column: str, enum_cls: type[enum.Enum], name: str) -> CheckConstraint:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return CheckConstraint(f"{column} IN ({values})", name=name)


class Program(Base):
    """
    Capacity-limited training program.

    `available_slots` is written only through the slot allocator's
    conditional decrement/increment.
    """

    __tablename__ = "programs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    total_slots: Mapped[int] = mapped_column(Integer, nullable=False)
    available_slots: Mapped[int] = mapped_column(Integer, nullable=False)
    application_fee: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="GHS")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ProgramStatus.DRAFT.value, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("total_slots >= 0", name="non_negative_total_slots"),
        CheckConstraint(
            "available_slots >= 0 AND available_slots <= total_slots",
            name="available_slots_within_total",
        ),
        CheckConstraint("application_fee >= 0", name="non_negative_fee"),
        _enum_check("status", ProgramStatus, "valid_program_status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Program(id={self.id}, available={self.available_slots}/{self.total_slots}, "
            f"status={self.status})>"
        )


class Application(Base):
    """
    A student's application to one program.

    At most one non-cancelled application may exist per (student, program);
    the partial unique index enforces it against concurrent inserts.
    """

    __tablename__ = "applications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    application_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    program_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=ApplicationStatus.DRAFT.value, index=True
    )
    reservation_state: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ReservationState.HELD.value
    )
    motivation_letter: Mapped[str | None] = mapped_column(Text, nullable=True)
    additional_answers: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    interview_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    enrolled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        _enum_check("status", ApplicationStatus, "valid_application_status"),
        _enum_check("reservation_state", ReservationState, "valid_reservation_state"),
        Index(
            "uq_active_application_per_student_program",
            "student_id",
            "program_id",
            unique=True,
            postgresql_where=text("status <> 'CANCELLED'"),
            sqlite_where=text("status <> 'CANCELLED'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Application(id={self.id}, number={self.application_number}, "
            f"status={self.status})>"
        )


class Payment(Base):
    """
    Application-fee payment.

    The provider reference is immutable once set and identifies exactly one
    payment; it is the idempotency key for both confirmation channels.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    application_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="paystack")
    provider_reference: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=PaymentStatus.PENDING.value, index=True
    )
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    confirmed_via: Mapped[str | None] = mapped_column(String(16), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Last time the sweeper asked the provider about this payment
    last_checked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        _enum_check("status", PaymentStatus, "valid_payment_status"),
        Index(
            "uq_completed_payment_per_application",
            "application_id",
            unique=True,
            postgresql_where=text("status = 'COMPLETED'"),
            sqlite_where=text("status = 'COMPLETED'"),
        ),
        Index("idx_payments_status_created", "status", "created_at"),
    )

    @property
    def amount_minor(self) -> int:
        """Amount in the currency's minor unit, as the provider expects it."""
        return int((self.amount * 100).to_integral_value())

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, reference={self.provider_reference}, "
            f"amount={self.amount}, status={self.status})>"
        )


class ReviewerGrant(Base):
    """Review and hiring authority a principal holds over a program."""

    __tablename__ = "reviewer_grants"

    principal_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    program_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    can_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    can_approve_hires: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return (
            f"<ReviewerGrant(principal={self.principal_id}, program={self.program_id}, "
            f"review={self.can_review}, hires={self.can_approve_hires})>"
        )
