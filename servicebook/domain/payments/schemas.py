from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from servicebook.domain.bookings import statuses as booking_statuses
from servicebook.domain.payments.db_models import LedgerEntry, PaymentSegment
from servicebook.infra.db import as_utc


class PaymentSegmentResponse(BaseModel):
    segment_id: str
    segment_number: int
    amount_cents: int
    status: str
    required: bool
    method: str | None = None
    refunded_cents: int = 0
    failure_reason: str | None = None
    paid_at: datetime | None = None
    notes: str | None = None

    @classmethod
    def from_model(cls, segment: PaymentSegment) -> "PaymentSegmentResponse":
        return cls(
            segment_id=segment.segment_id,
            segment_number=segment.segment_number,
            amount_cents=segment.amount_cents,
            status=segment.status,
            required=segment.required,
            method=segment.method,
            refunded_cents=segment.refunded_cents,
            failure_reason=segment.failure_reason,
            paid_at=as_utc(segment.paid_at),
            notes=segment.notes,
        )


class PaymentSegmentListResponse(BaseModel):
    booking_id: str
    total_cents: int
    paid_cents: int
    payment_status: str
    segments: list[PaymentSegmentResponse]


class PaySegmentRequest(BaseModel):
    segment_number: int = Field(ge=1)
    payment_method: str
    amount_cents: int | None = Field(None, gt=0)

    @field_validator("payment_method")
    @classmethod
    def validate_method(cls, value: str) -> str:
        return booking_statuses.normalize_payment_method(value)


class PaymentResponse(BaseModel):
    booking_id: str
    booking_status: str
    payment_status: str
    segment: PaymentSegmentResponse
    checkout_url: str | None = None
    checkout_session_id: str | None = None
    checkout_expires_at: datetime | None = None
    fully_funded: bool = False


class VerifyPaymentRequest(BaseModel):
    checkout_session_id: str = Field(min_length=1)


class SegmentRefundRequest(BaseModel):
    amount_cents: int | None = Field(None, gt=0)
    reason: str = Field(min_length=1, max_length=255)


class LedgerEntryResponse(BaseModel):
    entry_id: str
    kind: str
    amount_cents: int
    currency: str
    method: str | None = None
    reference: str | None = None
    actor: str
    note: str | None = None
    created_at: datetime

    @classmethod
    def from_model(cls, entry: LedgerEntry) -> "LedgerEntryResponse":
        return cls(
            entry_id=entry.entry_id,
            kind=entry.kind,
            amount_cents=entry.amount_cents,
            currency=entry.currency,
            method=entry.method,
            reference=entry.reference,
            actor=entry.actor,
            note=entry.note,
            created_at=as_utc(entry.created_at),
        )


class QuoteSegmentRequest(BaseModel):
    amount_cents: int = Field(gt=0)
    notes: str | None = Field(None, max_length=255)


class QuoteRequest(BaseModel):
    segments: list[QuoteSegmentRequest] = Field(min_length=1)
    notes: str | None = Field(None, max_length=2000)


class QuoteResponse(BaseModel):
    booking_id: str
    quote_status: str | None = None
    quote_notes: str | None = None
    total_cents: int
    hold_expires_at: datetime | None = None
    segments: list[PaymentSegmentResponse]
