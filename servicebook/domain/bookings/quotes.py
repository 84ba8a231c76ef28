"""Admin-declared payment plans.

An admin can replace the automatic deposit split of an unpaid booking with a
quoted plan. The quote keeps the slot hold alive for
``quote_acceptance_minutes``; the customer must accept it before any segment
can be paid, and rejecting it cancels the booking without a fee.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from servicebook.domain.bookings import holds, statuses
from servicebook.domain.bookings import service as booking_service
from servicebook.domain.bookings.db_models import Booking
from servicebook.domain.config.service import ConfigSnapshot
from servicebook.domain.errors import HoldExpired, InvalidTransition
from servicebook.domain.outbox.service import enqueue_outbox_event
from servicebook.domain.payments import service as ledger
from servicebook.domain.payments.db_models import PaymentSegment
from servicebook.infra.db import as_utc

logger = logging.getLogger(__name__)

QUOTABLE_STATUSES = {statuses.HELD, statuses.PENDING_PAYMENT}


async def _live_hold(session: AsyncSession, booking: Booking, now: datetime):
    hold = await holds.get_hold(session, booking.booking_id, lock=True)
    if hold is None or not holds.is_live(hold, now):
        raise HoldExpired(
            "Slot hold expired",
            booking_id=booking.booking_id,
            expired_at=as_utc(hold.expires_at) if hold else None,
        )
    return hold


def _ensure_quote_open(booking: Booking, target: str) -> None:
    if booking.quote_status != statuses.QUOTE_PROVIDED or booking.status not in QUOTABLE_STATUSES:
        raise InvalidTransition(
            "No quote is awaiting the customer",
            from_status=booking.quote_status or "none",
            to_status=target,
        )


async def provide_quote(
    session: AsyncSession,
    config: ConfigSnapshot,
    booking: Booking,
    *,
    amounts: list[int],
    segment_notes: list[str | None] | None = None,
    notes: str | None = None,
    actor: str,
    now: datetime,
) -> list[PaymentSegment]:
    if booking.status not in QUOTABLE_STATUSES:
        raise InvalidTransition(
            f"Cannot quote a booking in status {booking.status}",
            from_status=booking.status,
            to_status=statuses.QUOTE_PROVIDED,
        )
    hold = await _live_hold(session, booking, now)
    segments = await ledger.replace_segments(session, booking, amounts, notes=segment_notes)

    deadline = now + timedelta(minutes=config.quote_acceptance_minutes)
    current = as_utc(hold.expires_at)
    if current is not None and current > deadline:
        deadline = current
    holds.extend_hold(hold, deadline)
    if booking.status == statuses.PENDING_PAYMENT:
        booking.payment_expires_at = deadline

    booking.quote_status = statuses.QUOTE_PROVIDED
    booking.quote_notes = notes
    booking.quote_provided_by = actor
    booking.quote_provided_at = now
    booking.quote_accepted_at = None

    await enqueue_outbox_event(
        session,
        kind="booking.quote_provided",
        booking_id=booking.booking_id,
        dedupe_key=f"booking.quote_provided:{booking.booking_id}:{now.isoformat()}",
        payload={
            "booking_id": booking.booking_id,
            "booking_reference": booking.booking_reference,
            "total_cents": booking.total_cents,
            "segments": [segment.amount_cents for segment in segments],
            "quote_expires_at": deadline.isoformat(),
        },
    )
    await session.flush()
    logger.info(
        "quote_provided",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "total_cents": booking.total_cents,
                "segments": len(segments),
                "actor": actor,
            }
        },
    )
    return segments


async def accept_quote(session: AsyncSession, booking: Booking, *, actor: str, now: datetime) -> Booking:
    _ensure_quote_open(booking, statuses.QUOTE_ACCEPTED)
    await _live_hold(session, booking, now)
    booking.quote_status = statuses.QUOTE_ACCEPTED
    booking.quote_accepted_at = now
    await enqueue_outbox_event(
        session,
        kind="booking.quote_accepted",
        booking_id=booking.booking_id,
        dedupe_key=f"booking.quote_accepted:{booking.booking_id}",
        payload={
            "booking_id": booking.booking_id,
            "booking_reference": booking.booking_reference,
            "total_cents": booking.total_cents,
        },
    )
    await session.flush()
    logger.info("quote_accepted", extra={"extra": {"booking_id": booking.booking_id, "actor": actor}})
    return booking


async def reject_quote(
    session: AsyncSession,
    config: ConfigSnapshot,
    booking: Booking,
    *,
    actor: str,
    reason: str | None = None,
    now: datetime,
    stripe_client: Any | None = None,
) -> booking_service.CancellationResult:
    _ensure_quote_open(booking, statuses.QUOTE_REJECTED)
    booking.quote_status = statuses.QUOTE_REJECTED
    result = await booking_service.cancel_booking(
        session,
        config,
        booking,
        actor=actor,
        reason=reason or "quote_rejected",
        now=now,
        stripe_client=stripe_client,
        waive_fee=True,
    )
    logger.info("quote_rejected", extra={"extra": {"booking_id": booking.booking_id, "actor": actor}})
    return result
