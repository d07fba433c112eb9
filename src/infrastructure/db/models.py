# src/infrastructure/db/models.py

from sqlalchemy import (
    String,
    Integer,
    Numeric,
    Boolean,
    DateTime,
    Enum,
    Text,
    JSON,
    UniqueConstraint,
    CheckConstraint,
    ForeignKey,
    Index,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import uuid4

from src.infrastructure.db.session import Base
from src.domain.state_machine import BookingStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Booking(Base):
    """
    Booking table reflecting domain state.
    Domain controls transitions.
    DB stores current state safely; ``version`` guards concurrent writers.
    """

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    retiree_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    client_profile_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    retiree_profile_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    service_category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    engagement_type: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="freelance",
    )

    status: Mapped[BookingStatus] = mapped_column(
        Enum(
            BookingStatus,
            name="booking_status",
            values_callable=_enum_values,
        ),
        nullable=False,
        default=BookingStatus.REQUEST,
    )
    status_changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
    )
    status_changed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    proposed_rate: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    proposed_rate_type: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="hourly",
    )
    agreed_rate: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    agreed_rate_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    estimated_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    flexible_timing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    timezone: Mapped[str] = mapped_column(String(50), nullable=False, default="UTC")

    delivery_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completion_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    client_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retiree_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    terms: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    delivery_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    deliverables: Mapped[list | None] = mapped_column(JSON, nullable=True)
    next_steps: Mapped[str | None] = mapped_column(Text, nullable=True)
    final_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    urgency_level: Mapped[str] = mapped_column(String(16), nullable=False, default="normal")
    remote_work: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)

    client_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    retiree_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    client_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    retiree_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)

    payment_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        default=utc_now,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "client_id <> retiree_id",
            name="ck_booking_distinct_parties",
        ),
        CheckConstraint(
            "engagement_type IN ('freelance', 'consulting', 'project', 'keynote', 'mentoring')",
            name="ck_booking_engagement_type",
        ),
        CheckConstraint(
            "urgency_level IN ('low', 'normal', 'high', 'urgent')",
            name="ck_booking_urgency_level",
        ),
        CheckConstraint(
            "proposed_rate IS NULL OR proposed_rate >= 0",
            name="ck_booking_proposed_rate_nonnegative",
        ),
        CheckConstraint(
            "agreed_rate IS NULL OR agreed_rate >= 0",
            name="ck_booking_agreed_rate_nonnegative",
        ),
        CheckConstraint(
            "client_rating IS NULL OR (client_rating >= 1 AND client_rating <= 5)",
            name="ck_booking_client_rating_range",
        ),
        CheckConstraint(
            "retiree_rating IS NULL OR (retiree_rating >= 1 AND retiree_rating <= 5)",
            name="ck_booking_retiree_rating_range",
        ),
        Index("ix_bookings_status", "status"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "retiree_id": self.retiree_id,
            "client_profile_id": self.client_profile_id,
            "retiree_profile_id": self.retiree_profile_id,
            "title": self.title,
            "description": self.description,
            "service_category": self.service_category,
            "engagement_type": self.engagement_type,
            "status": self.status.value,
            "status_changed_at": as_utc(self.status_changed_at),
            "status_changed_by": self.status_changed_by,
            "proposed_rate": self.proposed_rate,
            "proposed_rate_type": self.proposed_rate_type,
            "agreed_rate": self.agreed_rate,
            "agreed_rate_type": self.agreed_rate_type,
            "currency": self.currency,
            "start_date": as_utc(self.start_date),
            "end_date": as_utc(self.end_date),
            "estimated_hours": self.estimated_hours,
            "flexible_timing": self.flexible_timing,
            "timezone": self.timezone,
            "delivery_date": as_utc(self.delivery_date),
            "completion_date": as_utc(self.completion_date),
            "client_message": self.client_message,
            "retiree_response": self.retiree_response,
            "terms": self.terms,
            "rejection_reason": self.rejection_reason,
            "cancellation_reason": self.cancellation_reason,
            "delivery_notes": self.delivery_notes,
            "deliverables": self.deliverables,
            "next_steps": self.next_steps,
            "final_notes": self.final_notes,
            "urgency_level": self.urgency_level,
            "remote_work": self.remote_work,
            "location": self.location,
            "client_rating": self.client_rating,
            "retiree_rating": self.retiree_rating,
            "client_feedback": self.client_feedback,
            "retiree_feedback": self.retiree_feedback,
            "payment_status": self.payment_status,
            "version": self.version,
            "created_at": as_utc(self.created_at),
            "updated_at": as_utc(self.updated_at),
        }

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, status={self.status.value}, "
            f"client_id={self.client_id}, retiree_id={self.retiree_id})>"
        )


class BookingRequirement(Base):
    __tablename__ = "booking_requirements"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    booking_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    requirement_type: Mapped[str] = mapped_column(String(32), nullable=False, default="other")
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_mandatory: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skill_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    required_proficiency: Mapped[str | None] = mapped_column(String(32), nullable=True)
    min_years_experience: Mapped[int | None] = mapped_column(Integer, nullable=True)
    deliverable_format: Mapped[str | None] = mapped_column(String(100), nullable=True)
    expected_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_met: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    met_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    verification_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        default=utc_now,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "requirement_type IN ('skill', 'experience', 'certification', 'tool', 'deliverable', 'other')",
            name="ck_requirement_type",
        ),
        CheckConstraint("expected_quantity > 0", name="ck_requirement_quantity_positive"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "booking_id": self.booking_id,
            "requirement_type": self.requirement_type,
            "title": self.title,
            "description": self.description,
            "is_mandatory": self.is_mandatory,
            "priority": self.priority,
            "skill_id": self.skill_id,
            "required_proficiency": self.required_proficiency,
            "min_years_experience": self.min_years_experience,
            "deliverable_format": self.deliverable_format,
            "expected_quantity": self.expected_quantity,
            "is_met": self.is_met,
            "met_at": as_utc(self.met_at),
            "verified_by": self.verified_by,
            "verification_notes": self.verification_notes,
            "created_at": as_utc(self.created_at),
        }


class BookingHistory(Base):
    """Append-only audit trail; rows are never updated or deleted by the core."""

    __tablename__ = "booking_history"

    # Integer key doubles as the insertion-order tie breaker.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    to_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    event_title: Mapped[str] = mapped_column(String(200), nullable=False)
    event_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    actor_role: Mapped[str] = mapped_column(String(16), nullable=False, default="unknown")
    event_metadata: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint(
            "event_type IN ('status_change', 'booking_update', 'booking_deleted')",
            name="ck_history_event_type",
        ),
        CheckConstraint(
            "actor_role IN ('client', 'retiree', 'admin', 'system', 'unknown')",
            name="ck_history_actor_role",
        ),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "booking_id": self.booking_id,
            "event_type": self.event_type,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "event_title": self.event_title,
            "event_description": self.event_description,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "metadata": self.event_metadata or {},
            "created_at": as_utc(self.created_at),
        }

    def __repr__(self) -> str:
        return (
            f"<BookingHistory(id={self.id}, booking_id={self.booking_id}, "
            f"event_type={self.event_type}, created_at={self.created_at})>"
        )


class UserAccount(Base):
    """Identity directory record consumed by the booking core."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    email_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="user")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        default=utc_now,
        nullable=False,
    )


class Profile(Base):
    """Profile directory record; only the fields the booking core reads or writes."""

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )
    display_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    headline: Mapped[str | None] = mapped_column(String(200), nullable=True)
    profile_photo_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    availability_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="available",
    )
    average_rating: Mapped[Decimal] = mapped_column(
        Numeric(3, 2),
        nullable=False,
        default=Decimal("0.00"),
    )
    total_reviews: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint(
            "average_rating >= 0 AND average_rating <= 5",
            name="ck_profile_average_rating_range",
        ),
    )


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    aggregate_type: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        default=utc_now,
        nullable=False,
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_outbox_dedupe_key"),
    )
