"""Booking lifecycle: creation, payment progress, cancellation and expiry.

Every status change goes through :func:`transition_booking`, which checks the
transition table and appends an outbox event in the caller's transaction.
Functions here flush but never commit; routes and sweeps own the commit.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from servicebook.domain.bookings import holds, slots, statuses
from servicebook.domain.bookings.db_models import Booking, Service, SlotHold
from servicebook.domain.config.service import ConfigSnapshot
from servicebook.domain.errors import (
    DuplicateWebhook,
    HoldExpired,
    InvalidTransition,
    NotFound,
    PaymentMismatch,
)
from servicebook.domain.outbox.service import enqueue_outbox_event
from servicebook.domain.payments import service as ledger
from servicebook.domain.payments import statuses as payment_statuses
from servicebook.domain.payments.db_models import PaymentSegment
from servicebook.domain.workers import buffers
from servicebook.domain.workers import statuses as assignment_statuses
from servicebook.domain.workers.db_models import WorkerAssignment
from servicebook.infra.db import as_utc, utcnow
from servicebook.infra.metrics import metrics
from servicebook.infra.stripe_client import safe_get
from servicebook.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class BookingHold:
    booking: Booking
    hold: SlotHold
    segments: list[PaymentSegment]


@dataclass
class PaymentOutcome:
    booking: Booking
    segment: PaymentSegment
    fully_funded: bool = False
    checkout: ledger.CheckoutInfo | None = None
    duplicate: bool = False
    refunded_late: bool = False


@dataclass
class CancellationResult:
    booking: Booking
    refund_cents: int
    fee_cents: int
    within_free_window: bool
    refund_failures: list[str] = field(default_factory=list)


def _new_completion_otp() -> str:
    return f"{secrets.randbelow(10**6):06d}"


async def lock_booking(session: AsyncSession, booking_id: str) -> Booking:
    stmt = select(Booking).where(Booking.booking_id == booking_id).with_for_update()
    booking = await session.scalar(stmt)
    if booking is None:
        raise NotFound("Booking not found", resource="booking", booking_id=booking_id)
    return booking


async def get_customer_booking(session: AsyncSession, booking_id: str, customer_id: str) -> Booking:
    booking = await session.get(Booking, booking_id)
    if booking is None or booking.customer_id != customer_id:
        raise NotFound("Booking not found", resource="booking", booking_id=booking_id)
    return booking


async def list_bookings(
    session: AsyncSession,
    *,
    status: str | None = None,
    flag: str | None = None,
    customer_id: str | None = None,
    limit: int = 100,
) -> list[Booking]:
    stmt = select(Booking)
    if status:
        stmt = stmt.where(Booking.status == status)
    if flag:
        stmt = stmt.where(Booking.dispatch_flag == flag)
    if customer_id:
        stmt = stmt.where(Booking.customer_id == customer_id)
    result = await session.execute(stmt.order_by(Booking.starts_at, Booking.booking_id).limit(limit))
    return list(result.scalars().all())


async def transition_booking(
    session: AsyncSession,
    booking: Booking,
    target: str,
    *,
    now: datetime,
    actor: str = "system",
    reason: str | None = None,
    payload: dict | None = None,
) -> Booking:
    current = booking.status
    statuses.assert_valid_booking_transition(current, target)
    booking.status = target
    if target == statuses.CONFIRMED and booking.confirmed_at is None:
        booking.confirmed_at = now
    elif target == statuses.IN_PROGRESS:
        booking.started_at = now
    elif target == statuses.COMPLETED:
        booking.completed_at = now
    elif target in {statuses.CANCELLED, statuses.REJECTED}:
        booking.cancelled_at = now
        booking.cancelled_by = actor
        booking.cancellation_reason = reason

    await enqueue_outbox_event(
        session,
        kind=f"booking.{target}",
        booking_id=booking.booking_id,
        dedupe_key=f"booking.{target}:{booking.booking_id}:{now.isoformat()}",
        payload={
            "booking_id": booking.booking_id,
            "booking_reference": booking.booking_reference,
            "from_status": current,
            "to_status": target,
            "actor": actor,
            "reason": reason,
            **(payload or {}),
        },
    )
    await session.flush()
    metrics.record_booking(target)
    logger.info(
        "booking_transition",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "from_status": current,
                "to_status": target,
                "actor": actor,
                "reason": reason,
            }
        },
    )
    return booking


async def create_booking(
    session: AsyncSession,
    config: ConfigSnapshot,
    *,
    customer_id: str,
    service_id: int,
    area_id: int,
    starts_at: datetime,
    preferred_worker_id: int | None = None,
    address: str | None = None,
    latitude: float | None = None,
    longitude: float | None = None,
    now: datetime | None = None,
) -> BookingHold:
    current = as_utc(now) if now else utcnow()
    token = await slots.ensure_slot(
        session,
        config,
        service_id=service_id,
        area_id=area_id,
        starts_at=starts_at,
        worker_id=preferred_worker_id,
        now=current,
    )
    service = await session.get(Service, service_id)

    booking = Booking(
        customer_id=customer_id,
        service_id=service_id,
        area_id=area_id,
        preferred_worker_id=preferred_worker_id,
        starts_at=token.starts_at,
        ends_at=token.ends_at,
        duration_minutes=token.duration_minutes,
        address=address,
        latitude=latitude,
        longitude=longitude,
        status=statuses.HELD,
        total_cents=service.price_cents,
        currency=settings.payment_currency,
        payment_status=statuses.PAYMENT_UNPAID,
    )
    session.add(booking)
    await session.flush()

    hold = await holds.create_hold(session, config, token, booking_id=booking.booking_id, now=current)
    segments = await ledger.declare_segments(
        session, booking, ledger.split_amounts(booking.total_cents, service.deposit_percent)
    )

    await enqueue_outbox_event(
        session,
        kind="booking.held",
        booking_id=booking.booking_id,
        dedupe_key=f"booking.held:{booking.booking_id}",
        payload={
            "booking_id": booking.booking_id,
            "booking_reference": booking.booking_reference,
            "starts_at": token.starts_at.isoformat(),
            "hold_expires_at": as_utc(hold.expires_at).isoformat(),
        },
    )
    metrics.record_booking("created")
    logger.info(
        "booking_created",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "service_id": service_id,
                "area_id": area_id,
                "worker_id": preferred_worker_id,
                "starts_at": token.starts_at,
                "segments": len(segments),
            }
        },
    )
    return BookingHold(booking=booking, hold=hold, segments=segments)


def _payment_deadline(config: ConfigSnapshot, method: str, now: datetime) -> datetime:
    if method == statuses.METHOD_WALLET:
        return now + timedelta(minutes=config.wallet_payment_timeout_minutes)
    return now + timedelta(
        minutes=settings.gateway_checkout_ttl_minutes + settings.gateway_callback_grace_minutes
    )


async def mark_payment_initiated(
    session: AsyncSession,
    config: ConfigSnapshot,
    booking: Booking,
    *,
    method: str,
    now: datetime,
) -> Booking:
    """``held -> pending_payment`` and move the hold expiry to the payment deadline."""

    method = statuses.normalize_payment_method(method)
    hold = await holds.get_hold(session, booking.booking_id, lock=True)
    if booking.status == statuses.HELD:
        if hold is None or not holds.is_live(hold, now):
            raise HoldExpired(
                "Slot hold expired before payment started",
                booking_id=booking.booking_id,
                expired_at=as_utc(hold.expires_at) if hold else None,
            )
    elif booking.status == statuses.PENDING_PAYMENT:
        deadline = as_utc(booking.payment_expires_at)
        if deadline is not None and deadline <= now:
            raise HoldExpired(
                "Payment window has closed",
                booking_id=booking.booking_id,
                expired_at=deadline,
            )
    else:
        raise InvalidTransition(
            f"Cannot start payment for a booking in status {booking.status}",
            from_status=booking.status,
            to_status=statuses.PENDING_PAYMENT,
        )

    deadline = _payment_deadline(config, method, now)
    current_deadline = as_utc(booking.payment_expires_at)
    if current_deadline is not None and current_deadline > deadline:
        deadline = current_deadline
    booking.payment_method = method
    booking.payment_expires_at = deadline
    if hold is not None:
        holds.extend_hold(hold, deadline)
    if booking.status == statuses.HELD:
        await transition_booking(
            session,
            booking,
            statuses.PENDING_PAYMENT,
            now=now,
            actor="customer",
            payload={"payment_method": method, "payment_expires_at": deadline.isoformat()},
        )
    await session.flush()
    return booking


async def handle_fully_funded(
    session: AsyncSession,
    config: ConfigSnapshot,
    booking: Booking,
    *,
    now: datetime,
) -> Booking:
    if booking.status != statuses.PENDING_PAYMENT:
        return booking
    hold = await holds.get_hold(session, booking.booking_id, lock=True)
    if hold is not None:
        holds.promote_hold(hold)
    booking.payment_expires_at = None
    booking.completion_otp = _new_completion_otp()
    booking.dispatch_flag = None
    await transition_booking(session, booking, statuses.CONFIRMED, now=now)

    if config.auto_assign_workers_on_booking:
        from servicebook.domain.workers import assignment

        await assignment.dispatch_booking(session, config, booking, now=now, raise_on_empty=False)
    return booking


def _ensure_payable(booking: Booking, segment: PaymentSegment) -> None:
    if booking.status in statuses.TERMINAL_STATUSES:
        raise InvalidTransition(
            f"Booking is already {booking.status}",
            from_status=booking.status,
            to_status=statuses.PENDING_PAYMENT,
        )
    if booking.quote_status == statuses.QUOTE_PROVIDED:
        raise InvalidTransition(
            "Accept the quoted payment plan before paying",
            from_status=statuses.QUOTE_PROVIDED,
            to_status=statuses.PENDING_PAYMENT,
        )
    if segment.status not in payment_statuses.PAYABLE_SEGMENT_STATUSES:
        raise InvalidTransition(
            f"Segment {segment.segment_number} is already {segment.status}",
            from_status=segment.status,
            to_status=payment_statuses.SEGMENT_PAID,
        )


async def pay_booking_segment(
    session: AsyncSession,
    config: ConfigSnapshot,
    booking: Booking,
    *,
    segment_number: int,
    method: str,
    amount_cents: int | None = None,
    stripe_client: Any | None = None,
    now: datetime,
) -> PaymentOutcome:
    """Collect one segment.

    Wallet payments settle immediately. Gateway payments open a Stripe
    checkout session and settle later through the webhook or
    :func:`verify_gateway_payment`.
    """

    method = statuses.normalize_payment_method(method)
    segment = await ledger.get_segment(session, booking.booking_id, segment_number=segment_number)
    _ensure_payable(booking, segment)
    if amount_cents is not None and amount_cents != segment.amount_cents:
        raise PaymentMismatch(
            "Paid amount does not match the segment due amount",
            segment_number=segment_number,
            expected=segment.amount_cents,
            received=amount_cents,
        )
    await mark_payment_initiated(session, config, booking, method=method, now=now)

    if method == statuses.METHOD_GATEWAY:
        checkout = await ledger.start_gateway_checkout(
            session, booking, segment, stripe_client=stripe_client, now=now
        )
        return PaymentOutcome(booking=booking, segment=segment, checkout=checkout)

    result = await ledger.pay_segment_from_wallet(
        session, booking, segment, amount_cents=segment.amount_cents, now=now
    )
    if result.fully_funded:
        await handle_fully_funded(session, config, booking, now=now)
    return PaymentOutcome(booking=booking, segment=segment, fully_funded=result.fully_funded)


async def apply_gateway_payment(
    session: AsyncSession,
    config: ConfigSnapshot,
    booking: Booking,
    segment: PaymentSegment,
    *,
    amount_cents: int,
    reference: str,
    now: datetime,
    stripe_client: Any | None = None,
) -> PaymentOutcome:
    """Settle a gateway-confirmed segment. Raises :class:`DuplicateWebhook` on replays."""

    result = await ledger.pay_segment(
        session,
        booking,
        segment,
        amount_cents=amount_cents,
        method=statuses.METHOD_GATEWAY,
        reference=reference,
        now=now,
    )
    if booking.status in statuses.TERMINAL_STATUSES:
        await ledger.refund_segment(
            session,
            booking,
            segment,
            actor="system",
            reason="payment_after_close",
            stripe_client=stripe_client,
        )
        logger.warning(
            "late_payment_refunded",
            extra={"extra": {"booking_id": booking.booking_id, "status": booking.status, "reference": reference}},
        )
        return PaymentOutcome(booking=booking, segment=segment, refunded_late=True)

    if result.fully_funded:
        hold = await holds.get_hold(session, booking.booking_id, lock=True)
        if hold is not None and not await holds.reclaim_hold(session, config, booking, hold, now=now):
            await _close_booking(
                session,
                booking,
                statuses.CANCELLED,
                actor="system",
                reason="slot_lost",
                retain_cents=0,
                now=now,
                stripe_client=stripe_client,
                hold_status=statuses.HOLD_EXPIRED,
            )
            logger.warning(
                "late_payment_refunded",
                extra={"extra": {"booking_id": booking.booking_id, "status": booking.status, "reference": reference}},
            )
            return PaymentOutcome(booking=booking, segment=segment, refunded_late=True)

    if booking.status == statuses.HELD:
        await mark_payment_initiated(session, config, booking, method=statuses.METHOD_GATEWAY, now=now)
    if result.fully_funded:
        await handle_fully_funded(session, config, booking, now=now)
    return PaymentOutcome(booking=booking, segment=segment, fully_funded=result.fully_funded)


async def find_segment_by_checkout(session: AsyncSession, checkout_session_id: str) -> PaymentSegment | None:
    stmt = select(PaymentSegment).where(PaymentSegment.checkout_session_id == checkout_session_id)
    return await session.scalar(stmt)


async def verify_gateway_payment(
    session: AsyncSession,
    config: ConfigSnapshot,
    *,
    checkout_session_id: str,
    customer_id: str,
    stripe_client: Any,
    now: datetime,
) -> PaymentOutcome:
    segment = await find_segment_by_checkout(session, checkout_session_id)
    if segment is None:
        raise NotFound("Checkout session not found", resource="checkout_session")
    booking = await lock_booking(session, segment.booking_id)
    if booking.customer_id != customer_id:
        raise NotFound("Checkout session not found", resource="checkout_session")
    segment = await ledger.get_segment(session, booking.booking_id, segment_id=segment.segment_id)

    checkout = stripe_client.retrieve_checkout_session(checkout_session_id)
    if safe_get(checkout, "payment_status") != "paid":
        return PaymentOutcome(booking=booking, segment=segment)
    reference = safe_get(checkout, "payment_intent") or checkout_session_id
    amount = safe_get(checkout, "amount_total")
    try:
        return await apply_gateway_payment(
            session,
            config,
            booking,
            segment,
            amount_cents=int(amount) if amount is not None else segment.amount_cents,
            reference=str(reference),
            now=now,
            stripe_client=stripe_client,
        )
    except DuplicateWebhook:
        return PaymentOutcome(booking=booking, segment=segment, duplicate=True)


async def _close_assignments(session: AsyncSession, booking: Booking, *, now: datetime) -> int:
    stmt = (
        select(WorkerAssignment)
        .where(
            WorkerAssignment.booking_id == booking.booking_id,
            WorkerAssignment.status.in_(assignment_statuses.ACTIVE_ASSIGNMENT_STATUSES),
        )
        .with_for_update()
    )
    result = await session.execute(stmt)
    closed = 0
    for assignment in result.scalars().all():
        assignment.status = assignment_statuses.CANCELLED
        assignment.ended_at = now
        await buffers.release(session, assignment.assignment_id)
        closed += 1
    return closed


async def _close_booking(
    session: AsyncSession,
    booking: Booking,
    target: str,
    *,
    actor: str,
    reason: str,
    retain_cents: int,
    now: datetime,
    stripe_client: Any | None,
    hold_status: str = statuses.HOLD_RELEASED,
    payload: dict | None = None,
) -> ledger.BookingRefund:
    refund = await ledger.refund_booking(
        session,
        booking,
        retain_cents=retain_cents,
        actor=actor,
        reason=reason,
        stripe_client=stripe_client,
    )
    await _close_assignments(session, booking, now=now)
    holds.release_hold(await holds.get_hold(session, booking.booking_id, lock=True), now, status=hold_status)
    booking.payment_expires_at = None
    await transition_booking(
        session,
        booking,
        target,
        now=now,
        actor=actor,
        reason=reason,
        payload={
            "refund_cents": refund.refunded_cents,
            "fee_cents": refund.retained_cents,
            **(payload or {}),
        },
    )
    return refund


async def cancel_booking(
    session: AsyncSession,
    config: ConfigSnapshot,
    booking: Booking,
    *,
    actor: str,
    reason: str | None = None,
    now: datetime,
    stripe_client: Any | None = None,
    waive_fee: bool = False,
) -> CancellationResult:
    """Cancel with the late-cancellation fee unless ``waive_fee`` or early enough."""

    statuses.assert_valid_booking_transition(booking.status, statuses.CANCELLED)
    notice = as_utc(booking.starts_at) - now
    within_free_window = notice >= timedelta(hours=config.booking_cancellation_hours)

    segments = await ledger.list_segments(session, booking.booking_id)
    fee_cents = 0
    if not within_free_window and not waive_fee:
        fee_cents = ledger.paid_cents(segments) * config.booking_cancellation_fee_percent // 100

    refund = await _close_booking(
        session,
        booking,
        statuses.CANCELLED,
        actor=actor,
        reason=reason or "cancelled",
        retain_cents=fee_cents,
        now=now,
        stripe_client=stripe_client,
        payload={"within_free_window": within_free_window},
    )
    return CancellationResult(
        booking=booking,
        refund_cents=refund.refunded_cents,
        fee_cents=refund.retained_cents,
        within_free_window=within_free_window,
        refund_failures=[failure.segment.segment_id for failure in refund.failures],
    )


async def reject_booking(
    session: AsyncSession,
    booking: Booking,
    *,
    actor: str,
    reason: str | None = None,
    now: datetime,
    stripe_client: Any | None = None,
) -> CancellationResult:
    statuses.assert_valid_booking_transition(booking.status, statuses.REJECTED)
    refund = await _close_booking(
        session,
        booking,
        statuses.REJECTED,
        actor=actor,
        reason=reason or "rejected",
        retain_cents=0,
        now=now,
        stripe_client=stripe_client,
    )
    return CancellationResult(
        booking=booking,
        refund_cents=refund.refunded_cents,
        fee_cents=0,
        within_free_window=True,
        refund_failures=[failure.segment.segment_id for failure in refund.failures],
    )


async def refund_paid_segment(
    session: AsyncSession,
    booking: Booking,
    segment: PaymentSegment,
    *,
    actor: str,
    reason: str,
    amount_cents: int | None = None,
    stripe_client: Any | None = None,
) -> ledger.RefundOutcome:
    """Manual refund of one segment.

    Partial refunds are allowed at any stage. A required segment can only be
    refunded in full once the booking is closed; open bookings go through
    cancel or reject so the booking state follows the money.
    """

    outstanding = segment.amount_cents - segment.refunded_cents
    full_refund = amount_cents is None or amount_cents == outstanding
    if full_refund and segment.required and booking.status not in statuses.TERMINAL_STATUSES:
        raise InvalidTransition(
            f"Cancel or reject the {booking.status} booking to refund segment {segment.segment_number} in full",
            from_status=booking.status,
            to_status=statuses.CANCELLED,
            segment_number=segment.segment_number,
        )
    return await ledger.refund_segment(
        session,
        booking,
        segment,
        actor=actor,
        reason=reason,
        amount_cents=amount_cents,
        stripe_client=stripe_client,
    )


async def expire_gateway_checkout(
    session: AsyncSession,
    booking: Booking,
    segment: PaymentSegment,
    *,
    checkout_session_id: str,
    now: datetime,
    stripe_client: Any | None = None,
) -> bool:
    """Cancel a gateway booking whose live checkout session lapsed unpaid."""

    if (
        booking.status != statuses.PENDING_PAYMENT
        or booking.payment_method != statuses.METHOD_GATEWAY
        or segment.checkout_session_id != checkout_session_id
        or segment.status == payment_statuses.SEGMENT_PAID
    ):
        return False
    await _close_booking(
        session,
        booking,
        statuses.CANCELLED,
        actor="system",
        reason="checkout_expired",
        retain_cents=0,
        now=now,
        stripe_client=stripe_client,
        hold_status=statuses.HOLD_EXPIRED,
    )
    return True


async def expire_booking(
    session: AsyncSession,
    booking: Booking,
    *,
    now: datetime,
    stripe_client: Any | None = None,
) -> str | None:
    """Lapse a booking whose hold or payment deadline passed. Returns the new status."""

    hold = await holds.get_hold(session, booking.booking_id, lock=True)
    if hold is None or hold.status != statuses.HOLD_ACTIVE:
        return None
    expires_at = as_utc(hold.expires_at)
    if expires_at is None or expires_at > now:
        return None

    if booking.status == statuses.HELD:
        holds.release_hold(hold, now, status=statuses.HOLD_EXPIRED)
        await transition_booking(session, booking, statuses.EXPIRED, now=now, reason="hold_expired")
        return statuses.EXPIRED
    if booking.status == statuses.PENDING_PAYMENT:
        await _close_booking(
            session,
            booking,
            statuses.CANCELLED,
            actor="system",
            reason="payment_timeout",
            retain_cents=0,
            now=now,
            stripe_client=stripe_client,
            hold_status=statuses.HOLD_EXPIRED,
        )
        return statuses.CANCELLED
    return None


async def expire_stale_holds(
    session_factory: async_sessionmaker,
    *,
    now: datetime | None = None,
    batch_size: int | None = None,
    stripe_client: Any | None = None,
) -> dict[str, int]:
    current = as_utc(now) if now else utcnow()
    limit = batch_size or settings.sweep_batch_size
    async with session_factory() as session:
        result = await session.execute(
            select(SlotHold.booking_id)
            .where(SlotHold.status == statuses.HOLD_ACTIVE, SlotHold.expires_at <= current)
            .order_by(SlotHold.expires_at)
            .limit(limit)
        )
        booking_ids = list(result.scalars().all())

    counts = {"expired": 0, "cancelled": 0, "skipped": 0, "failed": 0}
    for booking_id in booking_ids:
        try:
            async with session_factory() as session:
                booking = await lock_booking(session, booking_id)
                outcome = await expire_booking(session, booking, now=current, stripe_client=stripe_client)
                await session.commit()
        except Exception as exc:  # noqa: BLE001
            counts["failed"] += 1
            metrics.record_sweep("expire-holds", "failed")
            logger.warning(
                "sweep_item_failed",
                extra={"extra": {"job": "expire-holds", "booking_id": booking_id, "reason": type(exc).__name__}},
            )
            continue
        key = {statuses.EXPIRED: "expired", statuses.CANCELLED: "cancelled"}.get(outcome, "skipped")
        counts[key] += 1
        metrics.record_sweep("expire-holds", key)
    return counts
