"""Payment segments, wallet movements, refunds and the audit ledger.

The ledger knows nothing about booking states. It reports whether a booking
became fully funded and leaves the reaction to the booking state machine.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from servicebook.domain.bookings import statuses as booking_statuses
from servicebook.domain.bookings.db_models import Booking
from servicebook.domain.errors import (
    DuplicateWebhook,
    InsufficientWalletBalance,
    InvalidTransition,
    NotFound,
    PaymentMismatch,
)
from servicebook.domain.payments import statuses
from servicebook.domain.payments.db_models import LedgerEntry, PaymentSegment, Wallet
from servicebook.infra.metrics import metrics
from servicebook.infra.stripe_client import safe_get
from servicebook.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class SegmentPaymentResult:
    segment: PaymentSegment
    fully_funded: bool


@dataclass
class RefundOutcome:
    segment: PaymentSegment
    amount_cents: int
    succeeded: bool
    reference: str | None = None
    error: str | None = None


@dataclass
class BookingRefund:
    refunded_cents: int = 0
    retained_cents: int = 0
    failures: list[RefundOutcome] = field(default_factory=list)


@dataclass
class CheckoutInfo:
    checkout_url: str
    checkout_session_id: str
    expires_at: datetime


def split_amounts(total_cents: int, deposit_percent: int | None) -> list[int]:
    """One segment, or deposit + balance when the service asks for a deposit."""

    if not deposit_percent or deposit_percent <= 0 or deposit_percent >= 100 or total_cents <= 1:
        return [total_cents]
    deposit = math.ceil(total_cents * deposit_percent / 100)
    deposit = min(max(deposit, 1), total_cents - 1)
    return [deposit, total_cents - deposit]


def _add_entry(
    session: AsyncSession,
    booking: Booking,
    *,
    kind: str,
    amount_cents: int,
    segment: PaymentSegment | None = None,
    method: str | None = None,
    reference: str | None = None,
    actor: str = "system",
    note: str | None = None,
) -> LedgerEntry:
    entry = LedgerEntry(
        booking_id=booking.booking_id,
        segment_id=segment.segment_id if segment else None,
        kind=kind,
        amount_cents=amount_cents,
        currency=booking.currency,
        method=method,
        reference=reference,
        actor=actor,
        note=note,
    )
    session.add(entry)
    return entry


async def declare_segments(
    session: AsyncSession,
    booking: Booking,
    amounts: list[int],
    *,
    notes: list[str | None] | None = None,
) -> list[PaymentSegment]:
    if not amounts or any(amount <= 0 for amount in amounts):
        raise PaymentMismatch("Every payment segment needs a positive amount", amounts=amounts)
    if sum(amounts) != booking.total_cents:
        raise PaymentMismatch(
            "Payment segments must add up to the booking total",
            expected=booking.total_cents,
            received=sum(amounts),
        )
    segments = [
        PaymentSegment(
            booking_id=booking.booking_id,
            segment_number=number,
            amount_cents=amount,
            status=statuses.SEGMENT_PENDING,
            required=True,
            notes=note,
        )
        for number, (amount, note) in enumerate(zip(amounts, notes or [None] * len(amounts)), start=1)
    ]
    session.add_all(segments)
    await session.flush()
    return segments


async def replace_segments(
    session: AsyncSession,
    booking: Booking,
    amounts: list[int],
    *,
    notes: list[str | None] | None = None,
) -> list[PaymentSegment]:
    """Swap an untouched payment plan for a new one; the booking total follows the plan."""

    current = await list_segments(session, booking.booking_id, lock=True)
    touched = [
        segment
        for segment in current
        if segment.status != statuses.SEGMENT_PENDING or segment.checkout_session_id is not None
    ]
    if touched:
        raise InvalidTransition(
            "Payment plan already has payments or open checkouts",
            from_status=touched[0].status,
            to_status=statuses.SEGMENT_PENDING,
            segment_number=touched[0].segment_number,
        )
    if not amounts or any(amount <= 0 for amount in amounts):
        raise PaymentMismatch("Every payment segment needs a positive amount", amounts=amounts)

    for segment in current:
        await session.delete(segment)
    await session.flush()
    booking.total_cents = sum(amounts)
    return await declare_segments(session, booking, amounts, notes=notes)


async def list_segments(session: AsyncSession, booking_id: str, *, lock: bool = False) -> list[PaymentSegment]:
    stmt = select(PaymentSegment).where(PaymentSegment.booking_id == booking_id).order_by(PaymentSegment.segment_number)
    if lock:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_segment(
    session: AsyncSession,
    booking_id: str,
    *,
    segment_number: int | None = None,
    segment_id: str | None = None,
) -> PaymentSegment:
    stmt = select(PaymentSegment).where(PaymentSegment.booking_id == booking_id)
    if segment_id is not None:
        stmt = stmt.where(PaymentSegment.segment_id == segment_id)
    elif segment_number is not None:
        stmt = stmt.where(PaymentSegment.segment_number == segment_number)
    else:
        raise ValueError("segment_number or segment_id is required")
    segment = await session.scalar(stmt.with_for_update())
    if segment is None:
        raise NotFound(
            "Payment segment not found",
            resource="payment_segment",
            booking_id=booking_id,
            segment_number=segment_number,
        )
    return segment


def is_fully_funded(segments: list[PaymentSegment]) -> bool:
    required = [segment for segment in segments if segment.required]
    return bool(required) and all(segment.status == statuses.SEGMENT_PAID for segment in required)


def paid_cents(segments: list[PaymentSegment]) -> int:
    return sum(
        segment.amount_cents - segment.refunded_cents
        for segment in segments
        if segment.status in {statuses.SEGMENT_PAID, statuses.SEGMENT_REFUNDED}
    )


def next_payable_segment(segments: list[PaymentSegment]) -> PaymentSegment | None:
    for segment in segments:
        if segment.status in statuses.PAYABLE_SEGMENT_STATUSES:
            return segment
    return None


def _refresh_payment_status(booking: Booking, segments: list[PaymentSegment]) -> None:
    refunded = sum(segment.refunded_cents for segment in segments)
    collected = sum(
        segment.amount_cents
        for segment in segments
        if segment.status in {statuses.SEGMENT_PAID, statuses.SEGMENT_REFUNDED}
    )
    if refunded and refunded >= collected:
        booking.payment_status = booking_statuses.PAYMENT_REFUNDED
    elif refunded:
        booking.payment_status = booking_statuses.PAYMENT_PARTIALLY_REFUNDED
    elif is_fully_funded(segments):
        booking.payment_status = booking_statuses.PAYMENT_PAID
    elif collected:
        booking.payment_status = booking_statuses.PAYMENT_PARTIALLY_PAID
    else:
        booking.payment_status = booking_statuses.PAYMENT_UNPAID


async def pay_segment(
    session: AsyncSession,
    booking: Booking,
    segment: PaymentSegment,
    *,
    amount_cents: int,
    method: str,
    reference: str,
    now: datetime,
) -> SegmentPaymentResult:
    """Mark one segment paid.

    Raises :class:`DuplicateWebhook` when the reference was already applied or
    the segment is already paid, so redelivered callbacks never double-credit.
    """

    if segment.status == statuses.SEGMENT_PAID or segment.payment_reference == reference:
        raise DuplicateWebhook(
            "Segment already paid",
            segment_id=segment.segment_id,
            reference=reference,
        )
    claimed = await session.scalar(
        select(PaymentSegment.segment_id).where(PaymentSegment.payment_reference == reference)
    )
    if claimed is not None:
        raise DuplicateWebhook("Payment reference already applied", reference=reference, segment_id=claimed)
    if segment.status not in statuses.PAYABLE_SEGMENT_STATUSES:
        raise InvalidTransition(
            f"Segment cannot be paid from status {segment.status}",
            from_status=segment.status,
            to_status=statuses.SEGMENT_PAID,
        )
    if amount_cents != segment.amount_cents:
        raise PaymentMismatch(
            "Paid amount does not match the segment due amount",
            segment_number=segment.segment_number,
            expected=segment.amount_cents,
            received=amount_cents,
        )

    segment.status = statuses.SEGMENT_PAID
    segment.method = method
    segment.payment_reference = reference
    segment.failure_reason = None
    segment.paid_at = now
    _add_entry(
        session,
        booking,
        kind=statuses.LEDGER_PAYMENT,
        amount_cents=amount_cents,
        segment=segment,
        method=method,
        reference=reference,
    )
    await session.flush()

    segments = await list_segments(session, booking.booking_id)
    _refresh_payment_status(booking, segments)
    funded = is_fully_funded(segments)
    logger.info(
        "segment_paid",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "segment_number": segment.segment_number,
                "amount_cents": amount_cents,
                "method": method,
                "fully_funded": funded,
            }
        },
    )
    return SegmentPaymentResult(segment=segment, fully_funded=funded)


async def _lock_wallet(session: AsyncSession, customer_id: str) -> Wallet | None:
    stmt = select(Wallet).where(Wallet.customer_id == customer_id).with_for_update()
    return await session.scalar(stmt)


async def pay_segment_from_wallet(
    session: AsyncSession,
    booking: Booking,
    segment: PaymentSegment,
    *,
    amount_cents: int,
    now: datetime,
) -> SegmentPaymentResult:
    if segment.status == statuses.SEGMENT_PAID:
        raise DuplicateWebhook("Segment already paid", segment_id=segment.segment_id)
    if amount_cents != segment.amount_cents:
        raise PaymentMismatch(
            "Paid amount does not match the segment due amount",
            segment_number=segment.segment_number,
            expected=segment.amount_cents,
            received=amount_cents,
        )
    wallet = await _lock_wallet(session, booking.customer_id)
    balance = wallet.balance_cents if wallet else 0
    if wallet is None or balance < amount_cents:
        raise InsufficientWalletBalance(
            "Wallet balance is too low for this payment",
            balance=balance,
            required=amount_cents,
        )

    reference = f"wallet:{segment.segment_id}"
    wallet.balance_cents = balance - amount_cents
    _add_entry(
        session,
        booking,
        kind=statuses.LEDGER_WALLET_DEBIT,
        amount_cents=-amount_cents,
        segment=segment,
        method=booking_statuses.METHOD_WALLET,
        reference=reference,
    )
    return await pay_segment(
        session,
        booking,
        segment,
        amount_cents=amount_cents,
        method=booking_statuses.METHOD_WALLET,
        reference=reference,
        now=now,
    )


async def credit_wallet(
    session: AsyncSession,
    booking: Booking,
    amount_cents: int,
    *,
    segment: PaymentSegment | None = None,
    actor: str = "system",
    note: str | None = None,
) -> Wallet:
    wallet = await _lock_wallet(session, booking.customer_id)
    if wallet is None:
        wallet = Wallet(customer_id=booking.customer_id, balance_cents=0, currency=booking.currency)
        session.add(wallet)
    wallet.balance_cents = (wallet.balance_cents or 0) + amount_cents
    _add_entry(
        session,
        booking,
        kind=statuses.LEDGER_WALLET_CREDIT,
        amount_cents=amount_cents,
        segment=segment,
        method=booking_statuses.METHOD_WALLET,
        actor=actor,
        note=note,
    )
    return wallet


async def record_segment_failure(
    session: AsyncSession,
    booking: Booking,
    segment: PaymentSegment,
    *,
    reason: str,
) -> PaymentSegment:
    if segment.status != statuses.SEGMENT_PENDING:
        # paid never reverts to failed; a second failure keeps the first reason
        return segment
    segment.status = statuses.SEGMENT_FAILED
    segment.failure_reason = reason
    await session.flush()
    logger.info(
        "segment_payment_failed",
        extra={"extra": {"booking_id": booking.booking_id, "segment_number": segment.segment_number, "reason": reason}},
    )
    return segment


async def refund_segment(
    session: AsyncSession,
    booking: Booking,
    segment: PaymentSegment,
    *,
    actor: str,
    reason: str,
    amount_cents: int | None = None,
    stripe_client: Any | None = None,
) -> RefundOutcome:
    """Explicit, audited refund of a paid segment.

    Wallet payments go back to the wallet. Gateway payments are refunded
    through Stripe; if that call fails the segment stays ``paid`` and a
    ``refund_failed`` ledger entry records the attempt.
    """

    if segment.status != statuses.SEGMENT_PAID:
        raise InvalidTransition(
            f"Only paid segments can be refunded, not {segment.status}",
            from_status=segment.status,
            to_status=statuses.SEGMENT_REFUNDED,
        )
    refundable = segment.amount_cents - segment.refunded_cents
    amount = refundable if amount_cents is None else amount_cents
    if amount <= 0 or amount > refundable:
        raise PaymentMismatch("Refund amount exceeds what was paid", expected=refundable, received=amount)

    reference: str | None = None
    if segment.method == booking_statuses.METHOD_WALLET:
        await credit_wallet(session, booking, amount, segment=segment, actor=actor, note=reason)
        reference = f"wallet-refund:{segment.segment_id}:{segment.refunded_cents + amount}"
    else:
        try:
            if stripe_client is None:
                raise ValueError("Stripe client unavailable")
            refund = stripe_client.create_refund(
                payment_intent=str(segment.payment_reference),
                amount_cents=amount,
                metadata={"booking_id": booking.booking_id, "segment_number": str(segment.segment_number)},
                idempotency_key=f"refund:{segment.segment_id}:{segment.refunded_cents + amount}",
            )
            reference = safe_get(refund, "id")
        except Exception as exc:  # noqa: BLE001
            _add_entry(
                session,
                booking,
                kind=statuses.LEDGER_REFUND_FAILED,
                amount_cents=0,
                segment=segment,
                method=segment.method,
                reference=segment.payment_reference,
                actor=actor,
                note=f"{reason}: {type(exc).__name__}",
            )
            await session.flush()
            metrics.record_booking("refund_failed")
            logger.warning(
                "refund_failed",
                extra={
                    "extra": {
                        "booking_id": booking.booking_id,
                        "segment_number": segment.segment_number,
                        "amount_cents": amount,
                        "reason": type(exc).__name__,
                    }
                },
            )
            return RefundOutcome(segment=segment, amount_cents=amount, succeeded=False, error=type(exc).__name__)

    segment.refunded_cents += amount
    if segment.refunded_cents >= segment.amount_cents:
        segment.status = statuses.SEGMENT_REFUNDED
    _add_entry(
        session,
        booking,
        kind=statuses.LEDGER_REFUND,
        amount_cents=-amount,
        segment=segment,
        method=segment.method,
        reference=reference,
        actor=actor,
        note=reason,
    )
    await session.flush()
    _refresh_payment_status(booking, await list_segments(session, booking.booking_id))
    metrics.record_booking("refunded")
    logger.info(
        "segment_refunded",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "segment_number": segment.segment_number,
                "amount_cents": amount,
                "actor": actor,
            }
        },
    )
    return RefundOutcome(segment=segment, amount_cents=amount, succeeded=True, reference=reference)


async def refund_booking(
    session: AsyncSession,
    booking: Booking,
    *,
    retain_cents: int,
    actor: str,
    reason: str,
    stripe_client: Any | None = None,
) -> BookingRefund:
    """Refund everything paid except ``retain_cents``, newest segment first."""

    segments = await list_segments(session, booking.booking_id, lock=True)
    refundable = [segment for segment in segments if segment.status == statuses.SEGMENT_PAID]
    total = sum(segment.amount_cents - segment.refunded_cents for segment in refundable)
    retained = max(0, min(retain_cents, total))
    remaining = total - retained
    outcome = BookingRefund(retained_cents=retained)

    for segment in sorted(refundable, key=lambda item: item.segment_number, reverse=True):
        if remaining <= 0:
            break
        amount = min(remaining, segment.amount_cents - segment.refunded_cents)
        result = await refund_segment(
            session,
            booking,
            segment,
            actor=actor,
            reason=reason,
            amount_cents=amount,
            stripe_client=stripe_client,
        )
        if result.succeeded:
            outcome.refunded_cents += amount
        else:
            outcome.failures.append(result)
        remaining -= amount

    if retained:
        _add_entry(
            session,
            booking,
            kind=statuses.LEDGER_CANCELLATION_FEE,
            amount_cents=-retained,
            actor=actor,
            note=reason,
        )
    await session.flush()
    return outcome


async def list_ledger_entries(session: AsyncSession, booking_id: str) -> list[LedgerEntry]:
    stmt = select(LedgerEntry).where(LedgerEntry.booking_id == booking_id).order_by(LedgerEntry.created_at)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def start_gateway_checkout(
    session: AsyncSession,
    booking: Booking,
    segment: PaymentSegment,
    *,
    stripe_client: Any,
    now: datetime,
) -> CheckoutInfo:
    if segment.status not in statuses.PAYABLE_SEGMENT_STATUSES:
        raise InvalidTransition(
            f"Segment cannot be paid from status {segment.status}",
            from_status=segment.status,
            to_status=statuses.SEGMENT_PAID,
        )
    expires_at = now + timedelta(minutes=settings.gateway_checkout_ttl_minutes)
    metadata = {
        "booking_id": booking.booking_id,
        "segment_number": str(segment.segment_number),
    }
    checkout_session = stripe_client.create_checkout_session(
        amount_cents=segment.amount_cents,
        currency=booking.currency,
        success_url=settings.stripe_success_url,
        cancel_url=settings.stripe_cancel_url,
        expires_at=expires_at,
        metadata=metadata,
        payment_intent_metadata=metadata,
        product_name=f"Booking {booking.booking_reference} - payment {segment.segment_number}",
    )
    checkout_id = safe_get(checkout_session, "id")
    segment.checkout_session_id = checkout_id
    segment.method = booking_statuses.METHOD_GATEWAY
    segment.status = statuses.SEGMENT_PENDING
    segment.failure_reason = None
    await session.flush()
    logger.info(
        "gateway_checkout_created",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "segment_number": segment.segment_number,
                "checkout_session_id": checkout_id,
            }
        },
    )
    return CheckoutInfo(
        checkout_url=safe_get(checkout_session, "url"),
        checkout_session_id=checkout_id,
        expires_at=expires_at,
    )
