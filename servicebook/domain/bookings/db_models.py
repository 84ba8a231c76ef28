import secrets
import string
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from servicebook.infra.db import Base

_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


def _booking_reference() -> str:
    return "SB-" + "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(8))


class ServiceArea(Base):
    """A worker pool. Pool holds lock this row to consume one unit of capacity."""

    __tablename__ = "service_areas"

    area_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Service(Base):
    __tablename__ = "services"

    service_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    deposit_percent: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Booking(Base):
    __tablename__ = "bookings"

    booking_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    booking_reference: Mapped[str] = mapped_column(
        String(16), nullable=False, unique=True, default=_booking_reference
    )
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    service_id: Mapped[int] = mapped_column(ForeignKey("services.service_id"), nullable=False)
    area_id: Mapped[int] = mapped_column(ForeignKey("service_areas.area_id"), nullable=False)
    preferred_worker_id: Mapped[int | None] = mapped_column(ForeignKey("workers.worker_id"), nullable=True)
    worker_id: Mapped[int | None] = mapped_column(ForeignKey("workers.worker_id"), nullable=True, index=True)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    payment_status: Mapped[str] = mapped_column(String(32), nullable=False, default="unpaid")
    payment_method: Mapped[str | None] = mapped_column(String(16), nullable=True)
    payment_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completion_otp: Mapped[str | None] = mapped_column(String(6), nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    dispatch_flag: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    quote_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    quote_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    quote_provided_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    quote_provided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    quote_accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (Index("ix_bookings_area_starts", "area_id", "starts_at"),)


class SlotHold(Base):
    """Phase one of reserve-then-pay.

    ``expires_at`` is the single authoritative expiry: hold lifetime while
    ``held``, the payment deadline while ``pending_payment`` and NULL once
    promoted by full payment.
    """

    __tablename__ = "slot_holds"

    hold_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.booking_id"), nullable=False, unique=True)
    area_id: Mapped[int] = mapped_column(ForeignKey("service_areas.area_id"), nullable=False)
    worker_id: Mapped[int | None] = mapped_column(ForeignKey("workers.worker_id"), nullable=True, index=True)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_slot_holds_area_window", "area_id", "starts_at", "ends_at"),)
