"""SQLAlchemy ORM models."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from service_dispatch.core.enums import BookingStatus, ChangedBy, ServiceType
from service_dispatch.db.session import Base


def utcnow() -> datetime:
    # Microsecond resolution keeps FIFO order stable between close inserts.
    return datetime.now(timezone.utc)


def _enum_column(enum_cls, name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members],
    )


class Provider(Base):
    """A service worker with one fixed service type."""

    __tablename__ = "providers"
    __table_args__ = (
        Index("ix_providers_service_type_available", "service_type", "is_available"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    service_type: Mapped[ServiceType] = mapped_column(
        _enum_column(ServiceType, "service_type"),
        nullable=False,
        index=True,
    )

    is_available: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=true(),
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    bookings: Mapped[list["Booking"]] = relationship(back_populates="provider")


class Booking(Base):
    """A customer service request tracked through its lifecycle."""

    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_queue", "service_type", "status", "created_at"),
        Index("ix_bookings_provider_status", "provider_id", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    customer_id: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
        unique=True,
    )

    service_type: Mapped[ServiceType] = mapped_column(
        _enum_column(ServiceType, "service_type"),
        nullable=False,
    )

    status: Mapped[BookingStatus] = mapped_column(
        _enum_column(BookingStatus, "booking_status"),
        nullable=False,
        default=BookingStatus.PENDING,
        index=True,
    )

    provider_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("providers.id"),
        nullable=True,
        index=True,
    )

    rejection_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )

    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    provider: Mapped[Optional["Provider"]] = relationship(back_populates="bookings")

    events: Mapped[list["BookingEvent"]] = relationship(
        back_populates="booking",
        order_by="BookingEvent.timestamp",
    )


class BookingEvent(Base):
    """Immutable audit record of one booking status change."""

    __tablename__ = "booking_events"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    booking_id: Mapped[int] = mapped_column(
        ForeignKey("bookings.id"),
        nullable=False,
        index=True,
    )

    old_status: Mapped[BookingStatus] = mapped_column(
        _enum_column(BookingStatus, "booking_status"),
        nullable=False,
    )
    new_status: Mapped[BookingStatus] = mapped_column(
        _enum_column(BookingStatus, "booking_status"),
        nullable=False,
    )

    changed_by: Mapped[ChangedBy] = mapped_column(
        _enum_column(ChangedBy, "changed_by"),
        nullable=False,
    )

    note: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    booking: Mapped["Booking"] = relationship(back_populates="events")
