from datetime import date, datetime

from pydantic import BaseModel, Field, field_validator

from servicebook.domain.bookings import statuses
from servicebook.domain.bookings.db_models import Booking, SlotHold
from servicebook.domain.bookings.slots import DaySlot, service_timezone
from servicebook.infra.db import as_utc


class DaySlotResponse(BaseModel):
    starts_at: datetime
    ends_at: datetime
    available_workers: int
    is_available: bool

    @classmethod
    def from_slot(cls, slot: DaySlot) -> "DaySlotResponse":
        return cls(
            starts_at=slot.starts_at,
            ends_at=slot.ends_at,
            available_workers=slot.available_workers,
            is_available=slot.is_available,
        )


class SlotListResponse(BaseModel):
    service_id: int
    area_id: int
    date: date
    slots: list[DaySlotResponse]


class BookingCreateRequest(BaseModel):
    service_id: int
    area_id: int
    starts_at: datetime
    preferred_worker_id: int | None = None
    address: str | None = Field(None, max_length=255)
    latitude: float | None = Field(None, ge=-90, le=90)
    longitude: float | None = Field(None, ge=-180, le=180)

    def normalized_start(self) -> datetime:
        # naive input is wall-clock time in the service timezone
        if self.starts_at.tzinfo is None:
            return as_utc(self.starts_at.replace(tzinfo=service_timezone()))
        return as_utc(self.starts_at)


class BookingWithPaymentRequest(BookingCreateRequest):
    payment_method: str

    @field_validator("payment_method")
    @classmethod
    def validate_method(cls, value: str) -> str:
        return statuses.normalize_payment_method(value)


class CancelBookingRequest(BaseModel):
    reason: str | None = Field(None, max_length=255)


class BookingResponse(BaseModel):
    booking_id: str
    booking_reference: str
    status: str
    service_id: int
    area_id: int
    worker_id: int | None = None
    preferred_worker_id: int | None = None
    starts_at: datetime
    ends_at: datetime
    duration_minutes: int
    total_cents: int
    currency: str
    payment_status: str
    payment_method: str | None = None
    payment_expires_at: datetime | None = None
    hold_expires_at: datetime | None = None
    completion_otp: str | None = None
    dispatch_flag: str | None = None
    cancellation_reason: str | None = None
    quote_status: str | None = None
    quote_notes: str | None = None

    @classmethod
    def from_model(
        cls, booking: Booking, *, hold: SlotHold | None = None, include_otp: bool = True
    ) -> "BookingResponse":
        return cls(
            booking_id=booking.booking_id,
            booking_reference=booking.booking_reference,
            status=booking.status,
            service_id=booking.service_id,
            area_id=booking.area_id,
            worker_id=booking.worker_id,
            preferred_worker_id=booking.preferred_worker_id,
            starts_at=as_utc(booking.starts_at),
            ends_at=as_utc(booking.ends_at),
            duration_minutes=booking.duration_minutes,
            total_cents=booking.total_cents,
            currency=booking.currency,
            payment_status=booking.payment_status,
            payment_method=booking.payment_method,
            payment_expires_at=as_utc(booking.payment_expires_at),
            hold_expires_at=as_utc(hold.expires_at) if hold is not None else None,
            completion_otp=booking.completion_otp if include_otp else None,
            dispatch_flag=booking.dispatch_flag,
            cancellation_reason=booking.cancellation_reason,
            quote_status=booking.quote_status,
            quote_notes=booking.quote_notes,
        )


class CancellationResponse(BaseModel):
    booking: BookingResponse
    refund_cents: int
    fee_cents: int
    within_free_window: bool
    refund_failures: list[str] = Field(default_factory=list)
